from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from ..config import settings
from ..core.database import get_db
from ..core.preferences import NotificationPreferences
from ..models import PushSubscription, User
from .deps import get_current_user

router = APIRouter(prefix="/users", tags=["users"])


# ---------- Pydantic schemas ----------

class UserCreate(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {v!r}")
        return v


class UserOut(BaseModel):
    id: str
    email: Optional[str]
    name: Optional[str]
    timezone: str
    created_at: datetime

    class Config:
        from_attributes = True


class PreferencesBody(BaseModel):
    pushNotifications: bool = True
    taskReminders: bool = True
    goalReminders: bool = True
    dueDateReminders: bool = True
    routineReminders: bool = True
    projectInvitations: bool = True
    taskAssignments: bool = True
    taskComments: bool = True
    emailReminders: bool = False


class PreferencesUpdate(BaseModel):
    pushNotifications: Optional[bool] = None
    taskReminders: Optional[bool] = None
    goalReminders: Optional[bool] = None
    dueDateReminders: Optional[bool] = None
    routineReminders: Optional[bool] = None
    projectInvitations: Optional[bool] = None
    taskAssignments: Optional[bool] = None
    taskComments: Optional[bool] = None
    emailReminders: Optional[bool] = None


class SubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class SubscriptionIn(BaseModel):
    endpoint: str
    keys: SubscriptionKeys


class SubscriptionOut(BaseModel):
    id: str
    endpoint: str
    created_at: datetime

    class Config:
        from_attributes = True


# ---------- Users ----------

@router.post("", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, db: Session = Depends(get_db)):
    if payload.email and db.query(User).filter(User.email == payload.email).first():
        raise HTTPException(status_code=409, detail="Email already registered")
    user = User(email=payload.email, name=payload.name, timezone=payload.timezone, settings={})
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@router.get("/me", response_model=UserOut)
def get_me(user: User = Depends(get_current_user)):
    return user


# ---------- Notification preferences ----------

@router.get("/me/preferences", response_model=PreferencesBody)
def get_preferences(user: User = Depends(get_current_user)):
    return PreferencesBody(**NotificationPreferences.from_settings(user.settings).to_settings())


@router.patch("/me/preferences", response_model=PreferencesBody)
def update_preferences(
    payload: PreferencesUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    current = NotificationPreferences.from_settings(user.settings).to_settings()
    current.update(payload.model_dump(exclude_none=True))

    # Reassign so the JSON column is flagged dirty
    user.settings = {**(user.settings or {}), "notifications": current}
    db.commit()
    return PreferencesBody(**current)


# ---------- Push subscriptions ----------

@router.get("/push-public-key")
def push_public_key():
    """VAPID application server key the browser needs to subscribe."""
    if not settings.vapid_public_key:
        raise HTTPException(status_code=404, detail="Push notifications are not configured")
    return {"publicKey": settings.vapid_public_key}


@router.post("/me/push-subscriptions", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
def subscribe(
    payload: SubscriptionIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    sub = db.query(PushSubscription).filter(PushSubscription.endpoint == payload.endpoint).first()
    if sub is None:
        sub = PushSubscription(endpoint=payload.endpoint, user_id=user.id)
        db.add(sub)
    sub.user_id = user.id
    sub.p256dh = payload.keys.p256dh
    sub.auth = payload.keys.auth
    db.commit()
    db.refresh(sub)
    return sub


@router.delete("/me/push-subscriptions/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
def unsubscribe(
    subscription_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    sub = db.get(PushSubscription, subscription_id)
    if sub is None or sub.user_id != user.id:
        raise HTTPException(status_code=404, detail="Subscription not found")
    db.delete(sub)
    db.commit()
    return None

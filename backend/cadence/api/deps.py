from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from ..core.context import SchedulerContext
from ..core.database import get_db
from ..models import User


def get_context(request: Request) -> SchedulerContext:
    return request.app.state.scheduler


# Authentication is handled upstream; the gateway forwards the user id.
def get_current_user(
    x_user_id: str = Header(..., alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    user = db.get(User, x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models import User

# Job/notification type -> preference flag that can silence it
CATEGORY_FLAGS = {
    "TASK_REMINDER": "task_reminders",
    "GOAL_REMINDER": "goal_reminders",
    "DUE_DATE_REMINDER": "due_date_reminders",
    "ROUTINE_REMINDER": "routine_reminders",
    "PROJECT_INVITATION": "project_invitations",
    "TASK_ASSIGNMENT": "task_assignments",
    "TASK_COMMENT": "task_comments",
}

# Stored camelCase keys in User.settings["notifications"]
_KEYS = {
    "push_notifications": "pushNotifications",
    "task_reminders": "taskReminders",
    "goal_reminders": "goalReminders",
    "due_date_reminders": "dueDateReminders",
    "routine_reminders": "routineReminders",
    "project_invitations": "projectInvitations",
    "task_assignments": "taskAssignments",
    "task_comments": "taskComments",
    "email_reminders": "emailReminders",
}


@dataclass
class NotificationPreferences:
    push_notifications: bool = True
    task_reminders: bool = True
    goal_reminders: bool = True
    due_date_reminders: bool = True
    routine_reminders: bool = True
    project_invitations: bool = True
    task_assignments: bool = True
    task_comments: bool = True
    email_reminders: bool = False

    @classmethod
    def from_settings(cls, raw: Optional[dict]) -> "NotificationPreferences":
        stored = (raw or {}).get("notifications") or {}
        prefs = cls()
        for attr, key in _KEYS.items():
            if key in stored and stored[key] is not None:
                setattr(prefs, attr, bool(stored[key]))
        return prefs

    def to_settings(self) -> dict:
        return {key: getattr(self, attr) for attr, key in _KEYS.items()}

    def allows(self, category: Optional[str]) -> bool:
        """Whether a push of this category may be sent."""
        if not self.push_notifications:
            return False
        flag = CATEGORY_FLAGS.get(category or "")
        return getattr(self, flag) if flag else True


def get_notification_preferences(db: Session, user_id: str) -> NotificationPreferences:
    user = db.get(User, user_id)
    return NotificationPreferences.from_settings(user.settings if user else None)


def user_timezone(db: Session, user_id: str) -> str:
    user = db.get(User, user_id)
    if user is None or not user.timezone:
        return settings.default_timezone
    return user.timezone

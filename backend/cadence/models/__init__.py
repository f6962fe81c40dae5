from .alarms import Alarm
from .notification import Notification
from .reminders import Reminder
from .routines import Routine, RoutineTask
from .tasks import Goal, Milestone, Task
from .users import PushSubscription, User


__all__ = [
    "Alarm",
    "Goal",
    "Milestone",
    "Notification",
    "PushSubscription",
    "Reminder",
    "Routine",
    "RoutineTask",
    "Task",
    "User",
]

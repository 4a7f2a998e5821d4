from .user import User
from .settings import UserSettings
from .water_event import ActiveSession, FlowStatus, WaterEvent
from .reminder import Reminder, ReminderType

__all__ = ["User", "UserSettings", "ActiveSession", "FlowStatus", "WaterEvent", "Reminder", "ReminderType"]

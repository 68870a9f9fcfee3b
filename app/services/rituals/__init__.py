from .notification_copy import build_reminder_copy, reminder_data
from .ritual_service import RitualService

__all__ = ["RitualService", "build_reminder_copy", "reminder_data"]

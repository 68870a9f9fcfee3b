from .cron import *

__all__ = [
    # Scheduled/Cron Tasks
    "missed_ritual_sweeper_task",
    "completed_past_due_sweeper_task",
    "ritual_reminder_dispatcher_task",
]

from .completed_past_due_sweeper import (
    CompletedPastDueSweeper,
    completed_past_due_sweeper_task,
)
from .missed_ritual_sweeper import MissedRitualSweeper, missed_ritual_sweeper_task
from .ritual_reminder_dispatcher import (
    RitualReminderDispatcher,
    ritual_reminder_dispatcher_task,
)

__all__ = [
    "MissedRitualSweeper",
    "CompletedPastDueSweeper",
    "RitualReminderDispatcher",
    "missed_ritual_sweeper_task",
    "completed_past_due_sweeper_task",
    "ritual_reminder_dispatcher_task",
]

from datetime import timedelta
from .settings import settings

# Basic Celery Configuration
broker_url = settings.redis_url
result_backend = settings.redis_url

# Task Discovery
include = ["app.tasks.cron"]

# Timezone Configuration
timezone = "UTC"
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = settings.TICK_TIME_LIMIT_SECONDS
task_soft_time_limit = settings.TICK_TIME_LIMIT_SECONDS - 60

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# A failed tick is not retried; the next beat interval re-scans from scratch
task_acks_late = False
task_max_retries = 0

# Sweeps and reminders run on fixed intervals, not wall-clock crontabs,
# because every deadline is computed per user timezone inside the tick.
beat_schedule = {
    "ritual-reminder-dispatcher": {
        "task": "app.tasks.cron.ritual_reminder_dispatcher.ritual_reminder_dispatcher_task",
        "schedule": timedelta(seconds=settings.REMINDER_INTERVAL_SECONDS),
        "args": ("ritual_reminder_dispatcher_cron",),
        "options": {"expires": settings.REMINDER_INTERVAL_SECONDS},
    },
    "missed-ritual-sweeper": {
        "task": "app.tasks.cron.missed_ritual_sweeper.missed_ritual_sweeper_task",
        "schedule": timedelta(seconds=settings.MISSED_SWEEP_INTERVAL_SECONDS),
        "args": ("missed_ritual_sweeper_cron",),
        "options": {"expires": settings.MISSED_SWEEP_INTERVAL_SECONDS},
    },
    "completed-past-due-sweeper": {
        "task": "app.tasks.cron.completed_past_due_sweeper.completed_past_due_sweeper_task",
        "schedule": timedelta(seconds=settings.PAST_DUE_SWEEP_INTERVAL_SECONDS),
        "args": ("completed_past_due_sweeper_cron",),
        "options": {"expires": settings.PAST_DUE_SWEEP_INTERVAL_SECONDS},
    },
}

# Default Queue
task_default_queue = "whisper"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"

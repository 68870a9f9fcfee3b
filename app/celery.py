from celery import Celery

# Beat-driven alternative to the in-process scheduler runtime
celery = Celery("whisper")

# Load configuration from app.config.celeryconfig module
celery.config_from_object("app.config.celeryconfig")

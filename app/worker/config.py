### app/worker/config.py

"""
Celery configuration: broker, serialization and the beat schedule.
"""

# Third party imports
from celery.schedules import crontab

# Local imports
from app.core.config import settings

broker_url = settings.celery_broker
result_backend = settings.celery_backend

task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"
timezone = "UTC"
enable_utc = True

task_track_started = True
task_time_limit = 10 * 60
task_soft_time_limit = 8 * 60
worker_prefetch_multiplier = 1
task_acks_late = True

beat_schedule = {
    # Outbox rows are picked up within a minute of the change that queued them
    "drain-recompute-requests": {
        "task": "app.tuition.tasks.drain_recompute_requests",
        "schedule": crontab(minute="*"),
    },
    "check-ledger-integrity": {
        "task": "app.ledger.tasks.check_ledger_integrity",
        "schedule": crontab(hour=2, minute=30),
    },
}

worker_hijack_root_logger = False
worker_log_color = False

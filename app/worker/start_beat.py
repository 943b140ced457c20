### app/worker/start_beat.py

"""
Start celery beat, which queues the periodic tasks in `app.worker.config`.
"""

# Local imports
from app.worker.app import app


def start_beat():
    """Start the celery beat scheduler."""
    argv = [
        "beat",
        "--loglevel=info",
        "--schedule=/tmp/tuition-celerybeat-schedule",
        "--pidfile=/tmp/tuition-celerybeat.pid",
    ]

    print("Starting Celery Beat Scheduler ...")
    for name, entry in app.conf.beat_schedule.items():
        print(f"- {name}: {entry['task']} -> {entry['schedule']}")

    app.start(argv)


if __name__ == "__main__":
    start_beat()

### app/worker/start_worker.py

"""
Start a Celery worker for the billing tasks.
"""

# Local imports
from app.core.config import settings
from app.worker.app import app, TASK_MODULES


def start_worker():
    """Start the celery worker."""
    argv = [
        "worker",
        f"--loglevel={settings.log_level.lower()}",
        "--concurrency=2",
        "--max-tasks-per-child=200",
        "--prefetch-multiplier=1",
    ]

    print("Starting Celery worker ...")
    print(f"Broker: {settings.redis_host}:{settings.redis_port}")
    for module in TASK_MODULES:
        print(f"- {module}.tasks")

    app.worker_main(argv)


if __name__ == "__main__":
    start_worker()

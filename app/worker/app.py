### app/worker/app.py

"""
Celery application for background billing work.

Redis is the broker and result backend. Tasks live in the `tasks.py`
module of each domain package.
"""

# Third party imports
from celery import Celery

TASK_MODULES = [
    "app.tuition",
    "app.ledger",
]

app = Celery("tuition_billing")

app.config_from_object("app.worker.config")

app.autodiscover_tasks(TASK_MODULES)

if __name__ == "__main__":
    app.start()

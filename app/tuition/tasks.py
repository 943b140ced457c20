# app/tuition/tasks.py

"""
Celery tasks for the recompute outbox.
"""

import asyncio

from celery import shared_task

from app.utils.logger import get_logger
from app.core.db import AsyncSessionLocal, async_engine
from app.tuition.services import TuitionCalculator

logger = get_logger(__name__)


@shared_task(bind=True, name="app.tuition.tasks.drain_recompute_requests")
def drain_recompute_requests(self, batch_size: int = None):
    """
    Recompute invoices for pending outbox rows.

    Runs on a short beat interval; each request is retried on later runs
    until it succeeds or reaches the attempt limit.
    """
    task_id = self.request.id
    logger.info("Draining recompute requests", task_id=task_id)

    async def drain_async():
        try:
            async with AsyncSessionLocal() as db:
                return await TuitionCalculator(db).drain_recompute_requests(batch_size)
        finally:
            # Pooled connections are bound to this asyncio.run loop
            await async_engine.dispose()

    try:
        result = asyncio.run(drain_async())
    except Exception as e:
        logger.error("Recompute drain failed", task_id=task_id, error=str(e), exc_info=True)
        raise

    return {"status": "success", "task_id": task_id, **result.model_dump()}

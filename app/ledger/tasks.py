# app/ledger/tasks.py

"""
Celery tasks for ledger maintenance.
"""

import asyncio

from celery import shared_task

from app.utils.logger import get_logger
from app.core.db import AsyncSessionLocal, async_engine
from app.ledger.services import LedgerService

logger = get_logger(__name__)


@shared_task(bind=True, name="app.ledger.tasks.check_ledger_integrity")
def check_ledger_integrity(self):
    """
    Scan every transaction for debit/credit mismatches.

    Postings are rejected at write time when imbalanced, so any hit here
    means rows were written outside the ledger service.
    """
    task_id = self.request.id
    logger.info("Starting ledger integrity check", task_id=task_id)

    async def check_async():
        try:
            async with AsyncSessionLocal() as db:
                return await LedgerService(db).integrity_report()
        finally:
            await async_engine.dispose()

    report = asyncio.run(check_async())

    if report.imbalanced_tx_ids:
        logger.error(
            "Ledger integrity check failed",
            task_id=task_id, imbalanced=len(report.imbalanced_tx_ids)
        )
        status = "imbalanced"
    else:
        logger.info("Ledger integrity check passed", task_id=task_id, checked=report.checked_transactions)
        status = "ok"

    return {
        "status": status,
        "task_id": task_id,
        "checked_transactions": report.checked_transactions,
        "imbalanced_tx_ids": report.imbalanced_tx_ids,
    }

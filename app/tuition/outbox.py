# app/tuition/outbox.py

"""
Durable "recompute needed" work items.

Writers enqueue inside their own transaction, so a request exists if and
only if the change that caused it committed. The Celery beat task in
`app.tuition.tasks` drains them.
"""

from datetime import date
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.utils.general import month_of, ordered_unique, validate_month
from app.utils.logger import get_logger
from app.tuition.models import RecomputeRequest
from app.tuition.repository import InvoiceRepository, RecomputeRepository

logger = get_logger(__name__)


async def enqueue_recompute(db: AsyncSession, student_id: int, month: str, reason: str) -> RecomputeRequest:
    """Record that (student, month) needs recomputing; collapses into an existing pending request"""
    validate_month(month)
    repo = RecomputeRepository(db)

    pending = await repo.get_pending(student_id, month)
    if pending is not None:
        if reason not in pending.reason.split("; "):
            pending.reason = f"{pending.reason}; {reason}"[:255]
            await db.flush()
        return pending

    request = await repo.add(RecomputeRequest(student_id=student_id, month=month, reason=reason))
    logger.info("Recompute enqueued", student_id=student_id, month=month, reason=reason)
    return request


async def enqueue_for_window(
    db: AsyncSession,
    student_id: int,
    effective_from: date,
    effective_to: Optional[date],
    reason: str,
) -> List[str]:
    """
    Enqueue every invoiced month a [effective_from, effective_to) window
    touches, plus the window's first month.
    """
    first_month = month_of(effective_from)
    invoices = await InvoiceRepository(db).get_student_invoices(student_id, from_month=first_month)

    months = [first_month]
    for invoice in invoices:
        if effective_to is not None and invoice.month > month_of(effective_to):
            break
        months.append(invoice.month)

    months = ordered_unique(months)
    for month in months:
        await enqueue_recompute(db, student_id, month, reason)
    return months

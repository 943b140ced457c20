# app/tuition/router.py

"""
FastAPI router for invoices and recompute requests.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_async_db
from app.core.dependencies import get_current_actor
from app.utils.logger import get_logger
from app.tuition.repository import RecomputeRepository
from app.tuition.services import TuitionCalculator
from app.tuition.schemas import (
    CalculateTuitionRequest, InvoiceResponse, RecomputeTrigger,
    RecomputeRequestResponse, RecomputeDrainResult,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/tuition", tags=["Tuition"])

MONTH_REGEX = r"^\d{4}-(0[1-9]|1[0-2])$"


@router.post("/calculate", response_model=InvoiceResponse)
async def calculate_tuition(
    request: CalculateTuitionRequest,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Compute (or refresh) a student's invoice for a month.

    Idempotent: with unchanged inputs the returned snapshot is identical.
    """
    logger.info("Calculating tuition", student_id=request.student_id, month=request.month, actor_id=actor_id)
    return await TuitionCalculator(db).calculate(request.student_id, request.month, actor_id=actor_id)


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(invoice_id: int, db: AsyncSession = Depends(get_async_db)):
    """Get an invoice by id"""
    return await TuitionCalculator(db).get_invoice(invoice_id)


@router.get("/students/{student_id}/invoices", response_model=List[InvoiceResponse])
async def list_student_invoices(
    student_id: int,
    from_month: Optional[str] = Query(None, pattern=MONTH_REGEX),
    through_month: Optional[str] = Query(None, pattern=MONTH_REGEX),
    db: AsyncSession = Depends(get_async_db),
):
    """A student's invoices, oldest first"""
    return await TuitionCalculator(db).list_student_invoices(student_id, from_month, through_month)


@router.get("/students/{student_id}/invoices/{month}", response_model=InvoiceResponse)
async def get_invoice_for_month(student_id: int, month: str, db: AsyncSession = Depends(get_async_db)):
    """A student's invoice for one month"""
    return await TuitionCalculator(db).get_invoice_for_month(student_id, month)


# === Recompute outbox ===

@router.post("/recompute", response_model=RecomputeRequestResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_recompute(
    trigger: RecomputeTrigger,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Record that an external event (attendance, enrollment change) requires
    the invoice to be recomputed. The worker picks it up.
    """
    logger.info("Recompute requested", student_id=trigger.student_id, month=trigger.month, reason=trigger.reason)
    return await TuitionCalculator(db).request_recompute(
        trigger.student_id, trigger.month, trigger.reason, actor_id=actor_id
    )


@router.get("/recompute", response_model=List[RecomputeRequestResponse])
async def list_recompute_requests(
    request_status: Optional[str] = Query(None, alias="status", pattern="^(pending|done|failed)$"),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_async_db),
):
    """Recent outbox rows"""
    return await RecomputeRepository(db).list_requests(request_status, limit)


@router.post("/recompute/drain", response_model=RecomputeDrainResult)
async def drain_recompute(
    batch_size: Optional[int] = Query(None, ge=1, le=1000),
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Process a batch of pending recomputes now instead of waiting for the worker"""
    logger.info("Manual recompute drain", actor_id=actor_id, batch_size=batch_size)
    return await TuitionCalculator(db).drain_recompute_requests(batch_size)

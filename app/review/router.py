# app/review/router.py

"""
FastAPI router for the tuition review queue.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_async_db
from app.core.dependencies import get_current_actor
from app.utils.exporter.factory import get_exporter
from app.utils.logger import get_logger
from app.review.services import ReviewQueueService
from app.review.schemas import (
    ReviewQueueResponse, ConfirmTuitionRequest, ConfirmGroupRequest, ConfirmResult,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/review-queue", tags=["Review Queue"])

MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


@router.get("", response_model=ReviewQueueResponse)
async def get_review_queue(
    month: Optional[str] = Query(None, pattern=MONTH_PATTERN),
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Invoices needing confirmation, grouped by flag"""
    logger.info("Getting review queue", month=month, actor_id=actor_id)
    return await ReviewQueueService(db).get_queue(month)


@router.post("/confirm", response_model=ConfirmResult)
async def confirm_tuition(
    data: ConfirmTuitionRequest,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Confirm one or more invoices without touching their amounts"""
    return await ReviewQueueService(db).confirm(
        data.invoice_ids, notes=data.notes, confirmation_status=data.confirmation_status, actor_id=actor_id
    )


@router.post("/confirm-group", response_model=ConfirmResult)
async def confirm_group(
    data: ConfirmGroupRequest,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Confirm every pending invoice in one flag group"""
    return await ReviewQueueService(db).confirm_group(
        data.flag_type, month=data.month, notes=data.notes, actor_id=actor_id
    )


@router.get("/export")
async def export_review_queue(
    format: str = Query("excel", description="Export format: excel, csv"),
    month: Optional[str] = Query(None, pattern=MONTH_PATTERN),
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Download the review queue, one row per invoice and flag"""
    logger.info("Export review queue request", month=month, format=format, actor_id=actor_id)

    queue = await ReviewQueueService(db).get_queue(month)
    rows = [
        {
            "flag": group.flag_type.value,
            "label": group.label,
            "invoice_id": invoice.id,
            "student_id": invoice.student_id,
            "month": invoice.month,
            "base_amount": invoice.base_amount,
            "discount_amount": invoice.discount_amount,
            "total_amount": invoice.total_amount,
            "paid_amount": invoice.paid_amount,
            "status": invoice.status.value,
        }
        for group in queue.groups
        for invoice in group.invoices
    ]
    if not rows:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Review queue is empty")

    try:
        exporter = get_exporter(format, rows, title="Review queue")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    filename = f"review_queue_{month or 'all'}.{exporter.extension}"
    return StreamingResponse(
        exporter.export(),
        media_type=exporter.media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )

# app/ledger/router.py

"""
FastAPI router for ledger balances, statements and integrity checks.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_async_db
from app.core.dependencies import get_current_actor
from app.utils.exporter.factory import get_exporter
from app.utils.general import validate_month
from app.utils.logger import get_logger
from app.ledger.services import LedgerService
from app.ledger.schemas import (
    StudentBalances, StudentStatement, TransactionResponse, IntegrityReport,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/ledger", tags=["Ledger"])


def _through_month(through_month: Optional[str]) -> Optional[str]:
    if through_month is None:
        return None
    try:
        return validate_month(through_month)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e


@router.get("/students/{student_id}/balances", response_model=StudentBalances)
async def get_student_balances(
    student_id: int,
    through_month: Optional[str] = Query(None, description="YYYY-MM, inclusive"),
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Per-account balances for a student"""
    logger.info("Getting student balances", student_id=student_id, actor_id=actor_id)
    return await LedgerService(db).student_balances(student_id, _through_month(through_month))


@router.get("/students/{student_id}/statement", response_model=StudentStatement)
async def get_student_statement(
    student_id: int,
    through_month: Optional[str] = Query(None, description="YYYY-MM, inclusive"),
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Balances plus every entry behind them"""
    logger.info("Getting student statement", student_id=student_id, actor_id=actor_id)
    return await LedgerService(db).statement(student_id, _through_month(through_month))


@router.get("/students/{student_id}/statement/export")
async def export_student_statement(
    student_id: int,
    format: str = Query("excel", description="Export format: excel, csv"),
    through_month: Optional[str] = Query(None, description="YYYY-MM, inclusive"),
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Download a student's ledger entries"""
    logger.info("Export statement request", student_id=student_id, format=format, actor_id=actor_id)

    statement = await LedgerService(db).statement(student_id, _through_month(through_month))
    if not statement.entries:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No ledger entries for student {student_id}"
        )

    codes = {b.account_id: code for code, b in statement.accounts.items()}
    rows = [
        {
            "tx_id": e.tx_id,
            "occurred_at": e.occurred_at.isoformat(),
            "month": e.month,
            "account": codes.get(e.account_id, e.account_id),
            "debit": e.debit,
            "credit": e.credit,
            "memo": e.memo or "",
        }
        for e in statement.entries
    ]

    try:
        exporter = get_exporter(format, rows, title=f"Statement {student_id}")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    filename = f"statement_{student_id}.{exporter.extension}"
    return StreamingResponse(
        exporter.export(),
        media_type=exporter.media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/transactions/{tx_id}", response_model=TransactionResponse)
async def get_transaction(
    tx_id: str,
    db: AsyncSession = Depends(get_async_db),
):
    """All entries of one transaction"""
    return await LedgerService(db).get_transaction(tx_id)


@router.get("/integrity", response_model=IntegrityReport)
async def check_integrity(
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Verify that every transaction balances"""
    logger.info("Ledger integrity check requested", actor_id=actor_id)
    return await LedgerService(db).integrity_report()

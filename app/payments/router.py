# app/payments/router.py

"""
FastAPI router for student payments, family payments and reversals.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_async_db
from app.core.dependencies import get_current_actor
from app.utils.logger import get_logger
from app.payments.allocator import FamilyWaterfallAllocator
from app.payments.services import PaymentService
from app.payments.schemas import (
    PaymentCreate, PaymentResult, FamilyPaymentCreate, FamilyPaymentResult,
    PaymentReversalRequest, PaymentReversalResult, PaymentResponse,
    PaymentAllocationResponse, PaymentStatus,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("", response_model=PaymentResult, status_code=status.HTTP_201_CREATED)
async def post_payment(
    data: PaymentCreate,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Record a payment for one student.

    The money is applied to the student's open invoices oldest month first.
    Anything beyond what they owe is kept as credit. Sending the same
    idempotency key again returns the original result.
    """
    logger.info("Posting payment", student_id=data.student_id, amount=data.amount, actor_id=actor_id)
    return await PaymentService(db).post_payment(data, actor_id=actor_id)


@router.post("/family", response_model=FamilyPaymentResult, status_code=status.HTTP_201_CREATED)
async def family_payment(
    data: FamilyPaymentCreate,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Split one payment across every active sibling of a family, largest
    debt first. The leftover becomes credit or, with consent, a voluntary
    contribution.
    """
    logger.info(
        "Posting family payment",
        family_id=data.family_id, amount=data.amount, policy=data.leftover_policy.value, actor_id=actor_id
    )
    return await FamilyWaterfallAllocator(db).allocate(data, actor_id=actor_id)


@router.post("/{payment_id}/reverse", response_model=PaymentReversalResult)
async def reverse_payment(
    payment_id: int,
    data: PaymentReversalRequest,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Reverse a posted payment"""
    return await PaymentService(db).reverse_payment(payment_id, data.reason, actor_id=actor_id)


@router.get("", response_model=List[PaymentResponse])
async def list_payments(
    student_id: Optional[int] = Query(None),
    family_id: Optional[int] = Query(None),
    payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_async_db),
):
    """List payments, newest first"""
    return await PaymentService(db).list_payments(
        student_id=student_id,
        family_id=family_id,
        status=payment_status.value if payment_status else None,
        limit=limit,
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: int, db: AsyncSession = Depends(get_async_db)):
    return await PaymentService(db).get_payment(payment_id)


@router.get("/{payment_id}/allocations", response_model=List[PaymentAllocationResponse])
async def get_allocations(payment_id: int, db: AsyncSession = Depends(get_async_db)):
    """Per-sibling breakdown of a family payment"""
    return await PaymentService(db).list_allocations(payment_id)

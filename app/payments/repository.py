# app/payments/repository.py

"""
Repository layer for payments, allocations and invoice applications.
"""

from typing import List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import supports_row_locks
from app.payments.models import Payment, PaymentAllocation, PaymentApplication


class PaymentRepository:
    """Data access for payments"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, obj):
        self.db.add(obj)
        await self.db.flush()
        return obj

    async def get(self, payment_id: int, lock: bool = False) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.id == payment_id)
        if lock and supports_row_locks(self.db):
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, key: str) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.idempotency_key == key)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_payments(
        self,
        student_id: Optional[int] = None,
        family_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Payment]:
        conditions = []
        if student_id is not None:
            conditions.append(Payment.student_id == student_id)
        if family_id is not None:
            conditions.append(Payment.family_id == family_id)
        if status:
            conditions.append(Payment.status == status)
        stmt = select(Payment).order_by(Payment.occurred_at.desc(), Payment.id.desc()).limit(limit)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_allocations(self, payment_id: int) -> List[PaymentAllocation]:
        stmt = (
            select(PaymentAllocation)
            .where(PaymentAllocation.parent_payment_id == payment_id)
            .order_by(PaymentAllocation.allocation_order)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_applications(self, payment_id: int) -> List[PaymentApplication]:
        stmt = (
            select(PaymentApplication)
            .where(PaymentApplication.payment_id == payment_id)
            .order_by(PaymentApplication.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_credit_sources(self, student_id: int, lock: bool = False) -> List[Payment]:
        """Posted payments whose CREDIT for this student is not used up, oldest first"""
        stmt = (
            select(Payment)
            .where(
                and_(
                    Payment.credit_student_id == student_id,
                    Payment.status == "posted",
                    Payment.credit_amount > Payment.credit_used,
                )
            )
            .order_by(Payment.occurred_at, Payment.id)
        )
        if lock and supports_row_locks(self.db):
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

# app/tuition/repository.py

"""
Repository layer for invoices and recompute requests.
"""

from typing import List, Optional

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import supports_row_locks
from app.tuition.models import Invoice, RecomputeRequest


class InvoiceRepository:
    """Data access for invoices"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _locked(self, stmt, lock: bool):
        return stmt.with_for_update() if lock and supports_row_locks(self.db) else stmt

    async def get(self, invoice_id: int, lock: bool = False) -> Optional[Invoice]:
        stmt = self._locked(select(Invoice).where(Invoice.id == invoice_id), lock)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many(self, invoice_ids: List[int], lock: bool = False) -> List[Invoice]:
        stmt = self._locked(
            select(Invoice).where(Invoice.id.in_(invoice_ids)).order_by(Invoice.id), lock
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_for_month(self, student_id: int, month: str, lock: bool = False) -> Optional[Invoice]:
        stmt = self._locked(
            select(Invoice).where(and_(Invoice.student_id == student_id, Invoice.month == month)),
            lock,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_open_invoices(self, student_id: int, lock: bool = False) -> List[Invoice]:
        """Invoices not yet paid, oldest month first"""
        stmt = self._locked(
            select(Invoice)
            .where(and_(Invoice.student_id == student_id, Invoice.status != "paid"))
            .order_by(Invoice.month, Invoice.id),
            lock,
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_student_invoices(
        self, student_id: int, from_month: Optional[str] = None, through_month: Optional[str] = None
    ) -> List[Invoice]:
        conditions = [Invoice.student_id == student_id]
        if from_month:
            conditions.append(Invoice.month >= from_month)
        if through_month:
            conditions.append(Invoice.month <= through_month)
        stmt = select(Invoice).where(and_(*conditions)).order_by(Invoice.month)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def outstanding_before(self, student_id: int, month: str) -> int:
        """Unpaid remainder of every invoice strictly before `month`"""
        stmt = select(
            func.coalesce(func.sum(Invoice.total_amount - Invoice.paid_amount), 0)
        ).where(
            and_(
                Invoice.student_id == student_id,
                Invoice.month < month,
                Invoice.total_amount > Invoice.paid_amount,
            )
        )
        result = await self.db.execute(stmt)
        return int(result.scalar() or 0)

    async def get_by_confirmation(self, statuses: List[str], month: Optional[str] = None) -> List[Invoice]:
        conditions = [Invoice.confirmation_status.in_(statuses)]
        if month:
            conditions.append(Invoice.month == month)
        stmt = select(Invoice).where(and_(*conditions)).order_by(Invoice.month, Invoice.student_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def add(self, invoice: Invoice) -> Invoice:
        self.db.add(invoice)
        await self.db.flush()
        return invoice


class RecomputeRepository:
    """Data access for the recompute outbox"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_pending(self, student_id: int, month: str) -> Optional[RecomputeRequest]:
        stmt = select(RecomputeRequest).where(
            and_(
                RecomputeRequest.student_id == student_id,
                RecomputeRequest.month == month,
                RecomputeRequest.status == "pending",
            )
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def next_batch(self, limit: int) -> List[RecomputeRequest]:
        stmt = (
            select(RecomputeRequest)
            .where(RecomputeRequest.status == "pending")
            .order_by(RecomputeRequest.created_on, RecomputeRequest.id)
            .limit(limit)
        )
        if supports_row_locks(self.db):
            stmt = stmt.with_for_update(skip_locked=True)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_requests(self, status: Optional[str] = None, limit: int = 100) -> List[RecomputeRequest]:
        stmt = select(RecomputeRequest).order_by(RecomputeRequest.id.desc()).limit(limit)
        if status:
            stmt = stmt.where(RecomputeRequest.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def add(self, request: RecomputeRequest) -> RecomputeRequest:
        self.db.add(request)
        await self.db.flush()
        return request

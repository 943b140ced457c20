# app/discounts/repository.py

"""
Repository layer for discount definitions, assignments and referral bonuses.
"""

from datetime import date
from typing import List, Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import supports_row_locks
from app.discounts.models import DiscountDefinition, DiscountAssignment, ReferralBonus, SiblingDiscountState


def _overlaps_month(model, month_start: date, month_end: date):
    """Window [effective_from, effective_to) intersects [month_start, month_end]"""
    return and_(
        model.effective_from <= month_end,
        or_(model.effective_to.is_(None), model.effective_to > month_start),
    )


class DiscountRepository:
    """Data access for discounts"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _locked(self, stmt):
        return stmt.with_for_update() if supports_row_locks(self.db) else stmt

    # === Definitions ===

    async def get_definition(self, definition_id: int) -> Optional[DiscountDefinition]:
        stmt = select(DiscountDefinition).where(DiscountDefinition.id == definition_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_definitions(self, include_inactive: bool = False) -> List[DiscountDefinition]:
        stmt = select(DiscountDefinition).order_by(DiscountDefinition.name, DiscountDefinition.id)
        if not include_inactive:
            stmt = stmt.where(DiscountDefinition.is_active.is_(True))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def add(self, obj):
        self.db.add(obj)
        await self.db.flush()
        await self.db.refresh(obj)
        return obj

    async def delete(self, obj) -> None:
        await self.db.delete(obj)
        await self.db.flush()

    # === Assignments ===

    async def get_assignment(self, assignment_id: int) -> Optional[DiscountAssignment]:
        stmt = self._locked(select(DiscountAssignment).where(DiscountAssignment.id == assignment_id))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_assignments_for_definition(
        self, student_id: int, discount_def_id: int, lock: bool = False
    ) -> List[DiscountAssignment]:
        """Every assignment of one definition to one student"""
        stmt = (
            select(DiscountAssignment)
            .where(
                and_(
                    DiscountAssignment.student_id == student_id,
                    DiscountAssignment.discount_def_id == discount_def_id,
                )
            )
            .order_by(DiscountAssignment.effective_from)
        )
        if lock:
            stmt = self._locked(stmt)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_student_assignments(self, student_id: int) -> List[DiscountAssignment]:
        stmt = (
            select(DiscountAssignment)
            .where(DiscountAssignment.student_id == student_id)
            .order_by(DiscountAssignment.effective_from, DiscountAssignment.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_assignments_for_month(
        self, student_id: int, month_start: date, month_end: date
    ) -> List[DiscountAssignment]:
        """Assignments whose window touches the month, oldest first"""
        stmt = (
            select(DiscountAssignment)
            .where(
                and_(
                    DiscountAssignment.student_id == student_id,
                    _overlaps_month(DiscountAssignment, month_start, month_end),
                )
            )
            .order_by(DiscountAssignment.effective_from, DiscountAssignment.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # === Referral bonuses ===

    async def get_referral_bonus(self, bonus_id: int) -> Optional[ReferralBonus]:
        stmt = self._locked(select(ReferralBonus).where(ReferralBonus.id == bonus_id))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_student_referral_bonuses(self, student_id: int, lock: bool = False) -> List[ReferralBonus]:
        stmt = (
            select(ReferralBonus)
            .where(ReferralBonus.student_id == student_id)
            .order_by(ReferralBonus.effective_from, ReferralBonus.id)
        )
        if lock:
            stmt = self._locked(stmt)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_referral_bonuses_for_month(
        self, student_id: int, month_start: date, month_end: date
    ) -> List[ReferralBonus]:
        stmt = (
            select(ReferralBonus)
            .where(
                and_(
                    ReferralBonus.student_id == student_id,
                    ReferralBonus.is_active.is_(True),
                    _overlaps_month(ReferralBonus, month_start, month_end),
                )
            )
            .order_by(ReferralBonus.effective_from, ReferralBonus.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # === Sibling discount state ===

    async def get_sibling_state(self, family_id: int, month: str) -> Optional[SiblingDiscountState]:
        stmt = select(SiblingDiscountState).where(
            and_(SiblingDiscountState.family_id == family_id, SiblingDiscountState.month == month)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

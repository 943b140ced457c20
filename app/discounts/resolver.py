# app/discounts/resolver.py

"""
Discount resolution for one student and one billing month.

Sources are evaluated independently and stack, in this order:

1. Sibling discount: with two or more active siblings, the one with the
   lowest positive projected base for the month holds the family percent.
2. Enrollment discount: per enrollment, priced against that enrollment's line.
3. Special discount assignments.
4. Referral bonuses.

Percent discounts are taken on the undiscounted base of the line they apply
to, never compounded. The total is capped at the base amount.

Cadence `once` is pinned by storing the month of first application
(`applied_month` on assignments and bonuses, `first_billed_month` on
enrollments), so re-running a month can never move or repeat it.
"""

from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.utils.general import month_bounds, ordered_unique, validate_month
from app.utils.logger import get_logger
from app.students.exceptions import StudentNotFoundException
from app.students.models import Enrollment
from app.students.repository import StudentRepository
from app.tuition.pricing import price_enrollment
from app.tuition.outbox import enqueue_recompute
from app.tuition.schemas import LineItem
from app.discounts.models import SiblingDiscountState
from app.discounts.repository import DiscountRepository
from app.discounts.schemas import (
    DiscountCadence, DiscountResolution, DiscountSource, DiscountType,
    ResolvedDiscount,
)

logger = get_logger(__name__)


def percent_of(amount: int, percent: int) -> int:
    """Percent of a non-negative integer amount, rounded half up"""
    return (amount * percent + 50) // 100


def discount_value(base: int, discount_type: str, value: int) -> int:
    """Reduction a single discount yields against `base`"""
    if base <= 0:
        return 0
    if discount_type == DiscountType.PERCENT.value:
        return percent_of(base, value)
    return value


class DiscountResolver:
    """Computes applicable discounts; never commits"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = DiscountRepository(db)
        self.student_repo = StudentRepository(db)

    async def resolve(
        self,
        student_id: int,
        month: str,
        base_amount: int,
        line_items: Optional[List[LineItem]] = None,
        record_application: bool = False,
    ) -> DiscountResolution:
        """
        Resolve every discount for (student, month) against `base_amount`.

        `line_items` are the per-enrollment prices the base was built from;
        they are priced here when not given. With `record_application`, the
        month is stamped on `once` rows that apply for the first time.
        """
        validate_month(month)
        student = await self.student_repo.get_student(student_id)
        if student is None:
            raise StudentNotFoundException(student_id)

        month_start, month_end = month_bounds(month)
        enrollments = await self.student_repo.get_enrollments_for_period(student_id, month_start, month_end)
        if line_items is None:
            line_items = [price_enrollment(e, month_start, month_end) for e in enrollments]

        discounts: List[ResolvedDiscount] = []

        active_siblings, sibling_state = await self._sibling(
            student, month, month_start, month_end, base_amount, record_application, discounts
        )
        self._enrollment(month, enrollments, line_items, discounts)
        await self._special(student_id, month, month_start, month_end, base_amount, record_application, discounts)
        await self._referral(student_id, month, month_start, month_end, base_amount, record_application, discounts)

        total = sum(d.amount for d in discounts)
        discount_amount = min(total, max(base_amount, 0))
        if total > discount_amount:
            logger.info(
                "Discounts capped at base amount",
                student_id=student_id, month=month, requested=total, base_amount=base_amount
            )

        sources = []
        for d in discounts:
            if d.amount > 0 and d.source not in sources:
                sources.append(d.source)

        return DiscountResolution(
            student_id=student_id,
            month=month,
            base_amount=base_amount,
            discounts=discounts,
            discount_amount=discount_amount,
            sources=sources,
            active_siblings=active_siblings,
            sibling_status=sibling_state.status if sibling_state else None,
            sibling_winner_id=sibling_state.winner_student_id if sibling_state else None,
        )

    async def _sibling(
        self, student, month: str, month_start, month_end, base_amount: int,
        record_application: bool, discounts: List[ResolvedDiscount],
    ) -> Tuple[int, Optional[SiblingDiscountState]]:
        """
        One sibling per family holds the discount: the one with the lowest
        positive projected base for the month, ties going to the lowest id.
        """
        if student.family_id is None or not student.is_active:
            return 0, None

        family = student.family
        percent = family.sibling_percent_override
        if percent is None:
            percent = settings.default_sibling_percent

        siblings = await self.student_repo.get_active_students(student.family_id)
        if len(siblings) < 2:
            status, winner_id = "none", None
            reason = f"Family has {len(siblings)} active student(s), needs 2"
        else:
            projected = []
            for sibling in siblings:
                if sibling.id == student.id:
                    projected.append((base_amount, sibling.id))
                    continue
                enrollments = await self.student_repo.get_enrollments_for_period(sibling.id, month_start, month_end)
                projected_base = sum(price_enrollment(e, month_start, month_end).amount for e in enrollments)
                projected.append((projected_base, sibling.id))
            positive = sorted(p for p in projected if p[0] > 0)
            if len(positive) < 2:
                status, winner_id = "pending", None
                reason = f"Only {len(positive)} student(s) with positive tuition, needs 2"
            else:
                status, winner_id = "assigned", positive[0][1]
                reason = f"Lowest positive projected base ({positive[0][0]})"

        state = await self._record_sibling_state(
            family.id, month, status, winner_id, percent, reason, student.id, record_application
        )

        if winner_id == student.id and percent > 0:
            discounts.append(
                ResolvedDiscount(
                    source=DiscountSource.SIBLING,
                    source_id=family.id,
                    name="Sibling discount",
                    type=DiscountType.PERCENT,
                    value=percent,
                    cadence=DiscountCadence.MONTHLY,
                    amount=percent_of(max(base_amount, 0), percent),
                )
            )
        return len(siblings), state

    async def _record_sibling_state(
        self, family_id: int, month: str, status: str, winner_id: Optional[int], percent: int,
        reason: str, student_id: int, record_application: bool,
    ) -> SiblingDiscountState:
        if not record_application:
            return SiblingDiscountState(
                family_id=family_id, month=month, status=status,
                winner_student_id=winner_id, sibling_percent=percent, reason=reason,
            )

        state = await self.repo.get_sibling_state(family_id, month)

        if state is None:
            state = SiblingDiscountState(family_id=family_id, month=month)
            self.db.add(state)
            previous_winner = None
        else:
            previous_winner = state.winner_student_id

        if (state.status, state.winner_student_id, state.sibling_percent) != (status, winner_id, percent):
            state.status = status
            state.winner_student_id = winner_id
            state.sibling_percent = percent
            state.reason = reason
            await self.db.flush()
            # Whoever gained or lost the discount needs a fresh invoice
            for affected in ordered_unique([previous_winner, winner_id]):
                if affected is not None and affected != student_id:
                    await enqueue_recompute(self.db, affected, month, "sibling_winner_changed")
            logger.info(
                "Sibling discount state changed",
                family_id=family_id, month=month, status=status,
                winner_student_id=winner_id, previous_winner=previous_winner
            )
        return state

    def _enrollment(
        self,
        month: str,
        enrollments: List[Enrollment],
        line_items: List[LineItem],
        discounts: List[ResolvedDiscount],
    ) -> None:
        lines: Dict[int, LineItem] = {item.enrollment_id: item for item in line_items}

        for enrollment in enrollments:
            if not enrollment.discount_type or not enrollment.discount_value:
                continue
            line = lines.get(enrollment.id)
            if line is None or line.missing_class:
                continue

            cadence = enrollment.discount_cadence or DiscountCadence.MONTHLY.value
            if cadence == DiscountCadence.ONCE.value:
                if enrollment.first_billed_month is not None:
                    if enrollment.first_billed_month != month:
                        continue
                elif line.amount <= 0:
                    continue

            discounts.append(
                ResolvedDiscount(
                    source=DiscountSource.ENROLLMENT,
                    source_id=enrollment.id,
                    name=f"Enrollment discount ({line.class_name or enrollment.class_id})",
                    type=DiscountType(enrollment.discount_type),
                    value=enrollment.discount_value,
                    cadence=DiscountCadence(cadence),
                    amount=discount_value(line.amount, enrollment.discount_type, enrollment.discount_value),
                )
            )

    @staticmethod
    def _once_applies(row, month: str, base_amount: int, record_application: bool) -> bool:
        if row.applied_month is not None:
            return row.applied_month == month
        if base_amount <= 0:
            return False
        if record_application:
            row.applied_month = month
        return True

    async def _special(
        self, student_id, month, month_start, month_end, base_amount, record_application, discounts
    ) -> None:
        assignments = await self.repo.get_assignments_for_month(student_id, month_start, month_end)
        for assignment in assignments:
            definition = assignment.definition
            if not assignment.is_active or definition is None or not definition.is_active:
                continue
            if definition.cadence == DiscountCadence.ONCE.value and not self._once_applies(
                assignment, month, base_amount, record_application
            ):
                continue

            discounts.append(
                ResolvedDiscount(
                    source=DiscountSource.SPECIAL,
                    source_id=assignment.id,
                    name=definition.name,
                    type=DiscountType(definition.type),
                    value=definition.value,
                    cadence=DiscountCadence(definition.cadence),
                    amount=discount_value(base_amount, definition.type, definition.value),
                )
            )

    async def _referral(
        self, student_id, month, month_start, month_end, base_amount, record_application, discounts
    ) -> None:
        bonuses = await self.repo.get_referral_bonuses_for_month(student_id, month_start, month_end)
        for bonus in bonuses:
            if bonus.cadence == DiscountCadence.ONCE.value and not self._once_applies(
                bonus, month, base_amount, record_application
            ):
                continue

            discounts.append(
                ResolvedDiscount(
                    source=DiscountSource.REFERRAL,
                    source_id=bonus.id,
                    name="Referral bonus",
                    type=DiscountType(bonus.type),
                    value=bonus.value,
                    cadence=DiscountCadence(bonus.cadence),
                    amount=discount_value(base_amount, bonus.type, bonus.value),
                )
            )

# app/discounts/services.py

"""
Business logic for discount definitions, assignments and referral bonuses.

Every mutation is audited and enqueues a recompute for the months it
touches, in the same transaction.
"""

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BillingValidationException
from app.utils.general import month_bounds, month_of
from app.utils.logger import get_logger
from app.audit_trail.schemas import AuditAction
from app.audit_trail.services import audit_trail_service
from app.ledger.schemas import AccountCode
from app.ledger.services import LedgerService
from app.students.exceptions import StudentNotFoundException
from app.students.repository import StudentRepository
from app.tuition.outbox import enqueue_for_window
from app.tuition.pricing import price_enrollment
from app.discounts.models import DiscountDefinition, DiscountAssignment, ReferralBonus
from app.discounts.repository import DiscountRepository
from app.discounts.resolver import DiscountResolver
from app.discounts.schemas import (
    DiscountDefinitionCreate, DiscountAssignmentCreate, ReferralBonusCreate,
    ReferralReversalRequest, ReferralReversalResponse, DiscountResolution,
)
from app.discounts.exceptions import (
    OverlapConflictException, DiscountDefinitionNotFoundException,
    DiscountAssignmentNotFoundException, ReferralBonusNotFoundException,
)

logger = get_logger(__name__)


def windows_overlap(a_from: date, a_to: Optional[date], b_from: date, b_to: Optional[date]) -> bool:
    """Half-open ranges; a missing end is +infinity"""
    a_before_b_ends = b_to is None or a_from < b_to
    b_before_a_ends = a_to is None or b_from < a_to
    return a_before_b_ends and b_before_a_ends


def _snapshot(row: Union[DiscountAssignment, ReferralBonus]) -> dict:
    data = {
        "student_id": row.student_id,
        "effective_from": row.effective_from.isoformat(),
        "effective_to": row.effective_to.isoformat() if row.effective_to else None,
        "note": row.note,
        "applied_month": row.applied_month,
    }
    if isinstance(row, DiscountAssignment):
        data["discount_def_id"] = row.discount_def_id
    else:
        data.update(type=row.type, value=row.value, cadence=row.cadence)
    return data


def _end_window(row, today: Optional[date], field: str = "effective_to") -> Optional[date]:
    """
    New effective_to for ending a window as of yesterday, or None when the
    window already ended on or before then.
    """
    yesterday = (today or date.today()) - timedelta(days=1)
    if row.effective_to is not None and row.effective_to <= yesterday:
        return None
    if yesterday <= row.effective_from:
        raise BillingValidationException(
            field, f"window starts {row.effective_from.isoformat()}, it cannot end before it starts; remove it instead"
        )
    return yesterday


class DiscountService:
    """Discount lifecycle operations"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = DiscountRepository(db)
        self.student_repo = StudentRepository(db)

    async def _require_student(self, student_id: int):
        student = await self.student_repo.get_student(student_id)
        if student is None:
            raise StudentNotFoundException(student_id)
        return student

    # === Definitions ===

    async def create_definition(
        self, data: DiscountDefinitionCreate, actor_id: Optional[int] = None
    ) -> DiscountDefinition:
        """Create a reusable discount definition"""
        try:
            definition = await self.repo.add(
                DiscountDefinition(
                    name=data.name,
                    type=data.type.value,
                    value=data.value,
                    cadence=data.cadence.value,
                    created_by=actor_id,
                )
            )
            await audit_trail_service.record(
                self.db, AuditAction.DISCOUNT_DEFINITION_CREATED, "discount_definition", definition.id,
                diff=data.model_dump(mode="json"), actor_id=actor_id,
            )
            await self.db.commit()
            logger.info("Discount definition created", definition_id=definition.id, name=definition.name)
            return definition
        except Exception:
            await self.db.rollback()
            raise

    async def list_definitions(self, include_inactive: bool = False) -> List[DiscountDefinition]:
        return await self.repo.list_definitions(include_inactive)

    # === Assignments ===

    async def create_assignment(
        self, data: DiscountAssignmentCreate, actor_id: Optional[int] = None
    ) -> DiscountAssignment:
        """
        Assign a definition to a student.

        Existing assignments of the same definition are locked first so two
        concurrent creations cannot both pass the overlap check.
        """
        try:
            await self._require_student(data.student_id)
            definition = await self.repo.get_definition(data.discount_def_id)
            if definition is None:
                raise DiscountDefinitionNotFoundException(data.discount_def_id)

            existing = await self.repo.get_assignments_for_definition(
                data.student_id, data.discount_def_id, lock=True
            )
            for other in existing:
                if windows_overlap(data.effective_from, data.effective_to, other.effective_from, other.effective_to):
                    logger.warning(
                        "Discount assignment overlap rejected",
                        student_id=data.student_id, discount_def_id=data.discount_def_id, existing_id=other.id
                    )
                    raise OverlapConflictException(other.id, other.effective_from, other.effective_to)

            assignment = await self.repo.add(
                DiscountAssignment(
                    student_id=data.student_id,
                    discount_def_id=data.discount_def_id,
                    effective_from=data.effective_from,
                    effective_to=data.effective_to,
                    note=data.note,
                    created_by=actor_id,
                )
            )
            await audit_trail_service.record(
                self.db, AuditAction.DISCOUNT_ASSIGNED, "discount_assignment", assignment.id,
                diff={"after": _snapshot(assignment)}, actor_id=actor_id,
            )
            await enqueue_for_window(
                self.db, data.student_id, data.effective_from, data.effective_to, "discount_assigned"
            )
            await self.db.commit()

            logger.info(
                "Discount assigned",
                assignment_id=assignment.id, student_id=data.student_id, discount_def_id=data.discount_def_id
            )
            return assignment
        except Exception:
            await self.db.rollback()
            raise

    async def get_assignment(self, assignment_id: int) -> DiscountAssignment:
        assignment = await self.repo.get_assignment(assignment_id)
        if assignment is None:
            raise DiscountAssignmentNotFoundException(assignment_id)
        return assignment

    async def list_student_assignments(self, student_id: int) -> List[DiscountAssignment]:
        await self._require_student(student_id)
        return await self.repo.get_student_assignments(student_id)

    async def end_discount(
        self, assignment_id: int, actor_id: Optional[int] = None, today: Optional[date] = None
    ) -> DiscountAssignment:
        """Stop an assignment: effective_to becomes yesterday"""
        try:
            assignment = await self.get_assignment(assignment_id)
            new_end = _end_window(assignment, today)
            if new_end is None:
                logger.info("Discount already ended", assignment_id=assignment_id)
                return assignment

            before = _snapshot(assignment)
            assignment.effective_to = new_end
            assignment.modified_by = actor_id
            await self.db.flush()

            await audit_trail_service.record(
                self.db, AuditAction.DISCOUNT_ENDED, "discount_assignment", assignment.id,
                diff={"before": before, "after": _snapshot(assignment)}, actor_id=actor_id,
            )
            await enqueue_for_window(self.db, assignment.student_id, new_end, None, "discount_ended")
            await self.db.commit()

            logger.info("Discount ended", assignment_id=assignment_id, effective_to=new_end.isoformat())
            return assignment
        except Exception:
            await self.db.rollback()
            raise

    async def remove_discount(self, assignment_id: int, actor_id: Optional[int] = None) -> None:
        """Hard-delete an assignment; the audit record keeps its last state"""
        try:
            assignment = await self.get_assignment(assignment_id)
            snapshot = _snapshot(assignment)
            student_id = assignment.student_id
            effective_from, effective_to = assignment.effective_from, assignment.effective_to

            await self.repo.delete(assignment)
            await audit_trail_service.record(
                self.db, AuditAction.DISCOUNT_REMOVED, "discount_assignment", assignment_id,
                diff={"before": snapshot}, actor_id=actor_id,
            )
            await enqueue_for_window(self.db, student_id, effective_from, effective_to, "discount_removed")
            await self.db.commit()

            logger.info("Discount removed", assignment_id=assignment_id, student_id=student_id)
        except Exception:
            await self.db.rollback()
            raise

    # === Referral bonuses ===

    async def create_referral_bonus(
        self, data: ReferralBonusCreate, actor_id: Optional[int] = None
    ) -> ReferralBonus:
        """Grant a referral bonus; bonuses for one student never overlap"""
        try:
            await self._require_student(data.student_id)

            existing = await self.repo.get_student_referral_bonuses(data.student_id, lock=True)
            for other in existing:
                if windows_overlap(data.effective_from, data.effective_to, other.effective_from, other.effective_to):
                    logger.warning(
                        "Referral bonus overlap rejected", student_id=data.student_id, existing_id=other.id
                    )
                    raise OverlapConflictException(other.id, other.effective_from, other.effective_to)

            bonus = await self.repo.add(
                ReferralBonus(
                    student_id=data.student_id,
                    type=data.type.value,
                    value=data.value,
                    cadence=data.cadence.value,
                    effective_from=data.effective_from,
                    effective_to=data.effective_to,
                    note=data.note,
                    created_by=actor_id,
                )
            )
            await audit_trail_service.record(
                self.db, AuditAction.REFERRAL_BONUS_CREATED, "referral_bonus", bonus.id,
                diff={"after": _snapshot(bonus)}, actor_id=actor_id,
            )
            await enqueue_for_window(
                self.db, data.student_id, data.effective_from, data.effective_to, "referral_bonus_created"
            )
            await self.db.commit()

            logger.info("Referral bonus created", bonus_id=bonus.id, student_id=data.student_id)
            return bonus
        except Exception:
            await self.db.rollback()
            raise

    async def get_referral_bonus(self, bonus_id: int) -> ReferralBonus:
        bonus = await self.repo.get_referral_bonus(bonus_id)
        if bonus is None:
            raise ReferralBonusNotFoundException(bonus_id)
        return bonus

    async def list_student_referral_bonuses(self, student_id: int) -> List[ReferralBonus]:
        await self._require_student(student_id)
        return await self.repo.get_student_referral_bonuses(student_id)

    async def end_referral_bonus(
        self, bonus_id: int, actor_id: Optional[int] = None, today: Optional[date] = None
    ) -> ReferralBonus:
        try:
            bonus = await self.get_referral_bonus(bonus_id)
            new_end = _end_window(bonus, today)
            if new_end is None:
                logger.info("Referral bonus already ended", bonus_id=bonus_id)
                return bonus

            before = _snapshot(bonus)
            bonus.effective_to = new_end
            bonus.modified_by = actor_id
            await self.db.flush()

            await audit_trail_service.record(
                self.db, AuditAction.REFERRAL_BONUS_ENDED, "referral_bonus", bonus.id,
                diff={"before": before, "after": _snapshot(bonus)}, actor_id=actor_id,
            )
            await enqueue_for_window(self.db, bonus.student_id, new_end, None, "referral_bonus_ended")
            await self.db.commit()

            logger.info("Referral bonus ended", bonus_id=bonus_id, effective_to=new_end.isoformat())
            return bonus
        except Exception:
            await self.db.rollback()
            raise

    async def remove_referral_bonus(self, bonus_id: int, actor_id: Optional[int] = None) -> None:
        try:
            bonus = await self.get_referral_bonus(bonus_id)
            snapshot = _snapshot(bonus)
            student_id = bonus.student_id
            effective_from, effective_to = bonus.effective_from, bonus.effective_to

            await self.repo.delete(bonus)
            await audit_trail_service.record(
                self.db, AuditAction.REFERRAL_BONUS_REMOVED, "referral_bonus", bonus_id,
                diff={"before": snapshot}, actor_id=actor_id,
            )
            await enqueue_for_window(self.db, student_id, effective_from, effective_to, "referral_bonus_removed")
            await self.db.commit()

            logger.info("Referral bonus removed", bonus_id=bonus_id, student_id=student_id)
        except Exception:
            await self.db.rollback()
            raise

    async def reverse_referral_bonus(
        self,
        bonus_id: int,
        request: ReferralReversalRequest,
        actor_id: Optional[int] = None,
        occurred_at: Optional[datetime] = None,
    ) -> ReferralReversalResponse:
        """
        Take back (part of) a granted bonus with a new balanced adjustment:
        debit AR, credit DISCOUNT. Prior entries are untouched.
        """
        try:
            bonus = await self.get_referral_bonus(bonus_id)
            occurred_at = occurred_at or datetime.now(timezone.utc)
            month = request.month or bonus.applied_month or month_of(occurred_at)

            ledger = LedgerService(self.db)
            accounts = await ledger.ensure_accounts(bonus.student_id)
            memo = f"Referral bonus {bonus_id} reversal: {request.reason}"
            tx_id = await ledger.transfer(
                accounts[AccountCode.AR.value],
                accounts[AccountCode.DISCOUNT.value],
                request.amount,
                occurred_at=occurred_at,
                month=month,
                debit_memo=memo,
                credit_memo=memo,
                created_by=actor_id,
            )

            await audit_trail_service.record(
                self.db, AuditAction.REFERRAL_BONUS_REVERSED, "referral_bonus", bonus_id,
                diff={"amount": request.amount, "reason": request.reason, "month": month, "tx_id": tx_id},
                actor_id=actor_id,
            )
            await self.db.commit()

            logger.info(
                "Referral bonus reversed",
                bonus_id=bonus_id, student_id=bonus.student_id, amount=request.amount, tx_id=tx_id
            )
            return ReferralReversalResponse(
                bonus_id=bonus_id, student_id=bonus.student_id, tx_id=tx_id, amount=request.amount
            )
        except Exception:
            await self.db.rollback()
            raise

    # === Preview ===

    async def preview(self, student_id: int, month: str) -> DiscountResolution:
        """Resolve discounts without stamping anything"""
        await self._require_student(student_id)
        month_start, month_end = month_bounds(month)
        enrollments = await self.student_repo.get_enrollments_for_period(student_id, month_start, month_end)
        line_items = [price_enrollment(e, month_start, month_end) for e in enrollments]
        base_amount = sum(item.amount for item in line_items)
        return await DiscountResolver(self.db).resolve(student_id, month, base_amount, line_items)

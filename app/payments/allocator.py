# app/payments/allocator.py

"""
Family waterfall allocator: splits one family payment across siblings.

Siblings are ordered by outstanding debt (largest first, then name). Each
in turn receives min(remaining, debt), posted and applied FIFO exactly like
a single-student payment. Money left once everyone is paid up follows the
leftover policy:

- unapplied_cash: parked in the primary (first-ordered) student's CREDIT.
- voluntary_contribution: booked straight to REVENUE; needs explicit consent.

The whole family is allocated in a single transaction. Every sibling's
invoices are locked in student-id order first so two family payments cannot
deadlock on each other.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BillingValidationException, IdempotencyConflictException
from app.utils.concurrency import is_retryable, with_concurrency_retry
from app.utils.general import month_of
from app.utils.logger import get_logger
from app.audit_trail.schemas import AuditAction
from app.audit_trail.services import audit_trail_service
from app.ledger.schemas import AccountCode
from app.students.exceptions import EmptyFamilyException, FamilyNotFoundException
from app.students.models import Student
from app.students.repository import StudentRepository
from app.tuition.outbox import enqueue_recompute
from app.tuition.repository import InvoiceRepository
from app.tuition.services import TuitionCalculator
from app.payments.models import Payment, PaymentAllocation
from app.payments.repository import PaymentRepository
from app.payments.services import (
    PaymentService, request_fingerprint, validate_amount, validate_method,
)
from app.payments.schemas import (
    AllocationResult, FamilyPaymentCreate, FamilyPaymentResult, LeftoverPolicy,
)

logger = get_logger(__name__)


def waterfall_order(students: List[Student], debts: Dict[int, int]) -> List[Student]:
    """Largest debt first; ties by name, then id"""
    return sorted(students, key=lambda s: (-debts[s.id], s.full_name, s.id))


class FamilyWaterfallAllocator:
    """smartFamilyPayment"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = PaymentRepository(db)
        self.student_repo = StudentRepository(db)
        self.invoice_repo = InvoiceRepository(db)
        self.payments = PaymentService(db)
        self.calculator = TuitionCalculator(db)

    async def current_debt(self, student_id: int, month: str, actor_id: Optional[int] = None) -> int:
        """
        Outstanding through `month`, net of the student's CREDIT. The month's
        invoice is calculated first when it does not exist yet; otherwise any
        unused credit is applied to the open invoices before measuring.
        """
        invoice = await self.invoice_repo.get_for_month(student_id, month, lock=True)
        if invoice is None:
            invoice = await self.calculator.compute(student_id, month, actor_id=actor_id)
        else:
            await self.calculator.apply_available_credit(student_id, month, actor_id=actor_id)
        gross = await self.invoice_repo.outstanding_before(student_id, month) + invoice.outstanding
        credit = max(await self.calculator.ledger.account_balance(student_id, AccountCode.CREDIT), 0)
        return max(gross - credit, 0)

    @with_concurrency_retry
    async def allocate(self, request: FamilyPaymentCreate, actor_id: Optional[int] = None) -> FamilyPaymentResult:
        validate_amount(request.amount)
        method = validate_method(request.method)
        if request.leftover_policy == LeftoverPolicy.VOLUNTARY_CONTRIBUTION and not request.consent_given:
            raise BillingValidationException(
                "consent_given", "a voluntary contribution needs the family's explicit consent"
            )
        request_fp = request_fingerprint(request)

        try:
            if request.idempotency_key:
                existing = await self.repo.get_by_idempotency_key(request.idempotency_key)
                if existing is not None:
                    if existing.request_fingerprint != request_fp or existing.kind != "family":
                        logger.warning(
                            "Idempotency key reused with a different payload",
                            idempotency_key=request.idempotency_key
                        )
                        raise IdempotencyConflictException(request.idempotency_key)
                    logger.info("Replaying family payment", payment_id=existing.id)
                    return FamilyPaymentResult(**{**existing.result_snapshot, "replayed": True})

            family = await self.student_repo.get_family(request.family_id)
            if family is None:
                raise FamilyNotFoundException(request.family_id)
            students = await self.student_repo.get_active_students(family.id)
            if not students:
                raise EmptyFamilyException(family.id)

            occurred_at = request.occurred_at or datetime.now(timezone.utc)

            payment = await self.repo.add(
                Payment(
                    kind="family",
                    family_id=family.id,
                    amount=request.amount,
                    method=method,
                    occurred_at=occurred_at,
                    month=request.month,
                    memo=request.memo,
                    leftover_policy=request.leftover_policy.value,
                    idempotency_key=request.idempotency_key,
                    request_fingerprint=request_fp if request.idempotency_key else None,
                    created_by=actor_id,
                )
            )
            await audit_trail_service.record(
                self.db, AuditAction.FAMILY_PAYMENT_INITIATED, "payment", payment.id,
                diff={
                    "family_id": family.id,
                    "amount": request.amount,
                    "method": method,
                    "month": request.month,
                    "leftover_policy": request.leftover_policy.value,
                    "students": [s.id for s in students],
                },
                actor_id=actor_id,
            )

            debts = {}
            for student in sorted(students, key=lambda s: s.id):
                await self.invoice_repo.get_open_invoices(student.id, lock=True)
                debts[student.id] = await self.current_debt(student.id, request.month, actor_id)

            ordered = waterfall_order(students, debts)

            if len(ordered) == 1 and request.leftover_policy == LeftoverPolicy.UNAPPLIED_CASH:
                result = await self._single_student(payment, ordered[0], debts, method, occurred_at, actor_id)
            else:
                result = await self._waterfall(payment, ordered, debts, method, occurred_at, request, actor_id)

            payment.result_snapshot = result.model_dump(mode="json")

            await audit_trail_service.record(
                self.db, AuditAction.FAMILY_PAYMENT_COMPLETED, "payment", payment.id,
                diff={
                    "total_allocated": result.total_allocated,
                    "leftover": result.leftover,
                    "allocations": [
                        {"student_id": a.student_id, "order": a.allocation_order, "amount": a.allocated_amount}
                        for a in result.allocations
                    ],
                },
                actor_id=actor_id,
            )

            payment_month = month_of(occurred_at)
            for allocation in result.allocations:
                months = {payment_month, request.month} | {a.month for a in allocation.applications}
                for month in sorted(months):
                    await enqueue_recompute(self.db, allocation.student_id, month, "family_payment")

            await self.db.commit()
            logger.info(
                "Family payment allocated",
                payment_id=payment.id, family_id=family.id, amount=request.amount,
                total_allocated=result.total_allocated, leftover=result.leftover
            )
            return result
        except Exception as e:
            await self.db.rollback()
            if not is_retryable(e) and not isinstance(e, IdempotencyConflictException):
                await self._record_failure(request, e, actor_id)
            raise

    async def _single_student(
        self, payment: Payment, student: Student, debts: Dict[int, int], method: str,
        occurred_at: datetime, actor_id: Optional[int],
    ) -> FamilyPaymentResult:
        """One active student: exactly the single-student posting path"""
        before = debts[student.id]
        posting = await self.payments.apply_to_student(
            student.id, payment.amount, method, occurred_at, payment.id, actor_id, payment.memo
        )
        allocation = AllocationResult(
            student_id=student.id,
            student_name=student.full_name,
            allocation_order=1,
            before_debt=before,
            allocated_amount=posting.applied_amount,
            after_debt=max(before - posting.applied_amount, 0),
            tx_id=posting.tx_id,
            applications=posting.applications,
        )
        await self._record_allocation(payment, allocation, actor_id)

        leftover_tx_ids = []
        if posting.credit_tx_id:
            leftover_tx_ids.append(posting.credit_tx_id)
            await self._record_leftover(payment, student.id, posting.credit_amount, leftover_tx_ids, actor_id)

        payment.applied_amount = posting.applied_amount
        payment.credit_amount = posting.credit_amount
        payment.credit_student_id = student.id if posting.credit_amount else None
        payment.leftover_amount = posting.credit_amount
        payment.tx_ids = [posting.tx_id] + leftover_tx_ids
        payment.recorded_by_student = {str(student.id): payment.amount}

        return FamilyPaymentResult(
            parent_payment_id=payment.id,
            family_id=payment.family_id,
            amount=payment.amount,
            total_allocated=posting.applied_amount,
            allocations=[allocation],
            leftover=posting.credit_amount,
            leftover_policy=LeftoverPolicy.UNAPPLIED_CASH,
            leftover_student_id=student.id if posting.credit_amount else None,
            leftover_tx_ids=leftover_tx_ids,
        )

    async def _waterfall(
        self, payment: Payment, ordered: List[Student], debts: Dict[int, int], method: str,
        occurred_at: datetime, request: FamilyPaymentCreate, actor_id: Optional[int],
    ) -> FamilyPaymentResult:
        remaining = payment.amount
        allocations = []
        tx_ids = []
        recorded: Dict[str, int] = {}

        for order, student in enumerate(ordered, start=1):
            before = debts[student.id]
            applied = min(remaining, before)
            allocation = AllocationResult(
                student_id=student.id,
                student_name=student.full_name,
                allocation_order=order,
                before_debt=before,
                allocated_amount=applied,
                after_debt=before - applied,
            )
            if applied > 0:
                posting = await self.payments.apply_to_student(
                    student.id, applied, method, occurred_at, payment.id, actor_id, payment.memo
                )
                allocation.tx_id = posting.tx_id
                allocation.applications = posting.applications
                tx_ids.append(posting.tx_id)
                recorded[str(student.id)] = applied
                remaining -= applied
                await self._record_allocation(payment, allocation, actor_id)
            allocations.append(allocation)

        primary = ordered[0]
        leftover_tx_ids = []
        if remaining > 0:
            if request.leftover_policy == LeftoverPolicy.VOLUNTARY_CONTRIBUTION:
                leftover_tx_ids.append(
                    await self.payments.book_to_revenue(
                        primary.id, remaining, method, occurred_at, payment.id, actor_id
                    )
                )
            else:
                leftover_tx_ids.extend(
                    await self.payments.book_to_credit(
                        primary.id, remaining, method, occurred_at, payment.id, actor_id
                    )
                )
                payment.credit_amount = remaining
                payment.credit_student_id = primary.id
            recorded[str(primary.id)] = recorded.get(str(primary.id), 0) + remaining
            await self._record_leftover(payment, primary.id, remaining, leftover_tx_ids, actor_id)

        total_allocated = payment.amount - remaining
        payment.applied_amount = total_allocated
        payment.leftover_amount = remaining
        payment.tx_ids = tx_ids + leftover_tx_ids
        payment.recorded_by_student = recorded

        return FamilyPaymentResult(
            parent_payment_id=payment.id,
            family_id=payment.family_id,
            amount=payment.amount,
            total_allocated=total_allocated,
            allocations=allocations,
            leftover=remaining,
            leftover_policy=request.leftover_policy,
            leftover_student_id=primary.id if remaining else None,
            leftover_tx_ids=leftover_tx_ids,
        )

    async def _record_allocation(self, payment: Payment, allocation: AllocationResult, actor_id: Optional[int]):
        self.db.add(
            PaymentAllocation(
                parent_payment_id=payment.id,
                student_id=allocation.student_id,
                allocated_amount=allocation.allocated_amount,
                allocation_order=allocation.allocation_order,
                before_debt=allocation.before_debt,
                after_debt=allocation.after_debt,
                tx_id=allocation.tx_id,
            )
        )
        await audit_trail_service.record(
            self.db, AuditAction.FAMILY_PAYMENT_ALLOCATION, "payment", payment.id,
            diff={
                "student_id": allocation.student_id,
                "allocation_order": allocation.allocation_order,
                "before_debt": allocation.before_debt,
                "allocated_amount": allocation.allocated_amount,
                "after_debt": allocation.after_debt,
                "tx_id": allocation.tx_id,
            },
            actor_id=actor_id,
        )
        logger.info(
            "Family payment allocation",
            payment_id=payment.id, student_id=allocation.student_id, order=allocation.allocation_order,
            before_debt=allocation.before_debt, allocated=allocation.allocated_amount
        )

    async def _record_leftover(
        self, payment: Payment, student_id: int, amount: int, tx_ids: List[str], actor_id: Optional[int]
    ):
        await audit_trail_service.record(
            self.db, AuditAction.FAMILY_PAYMENT_LEFTOVER, "payment", payment.id,
            diff={
                "student_id": student_id,
                "amount": amount,
                "policy": payment.leftover_policy,
                "tx_ids": tx_ids,
            },
            actor_id=actor_id,
        )
        logger.info(
            "Family payment leftover booked",
            payment_id=payment.id, student_id=student_id, amount=amount, policy=payment.leftover_policy
        )

    async def _record_failure(self, request: FamilyPaymentCreate, error: Exception, actor_id: Optional[int]):
        """Audit a failed allocation in its own transaction; nothing else from the attempt survives"""
        logger.error(
            "Family payment failed",
            family_id=request.family_id, amount=request.amount, error=str(error)
        )
        try:
            await audit_trail_service.record(
                self.db, AuditAction.FAMILY_PAYMENT_FAILED, "family", request.family_id,
                diff={
                    "amount": request.amount,
                    "month": request.month,
                    "error": str(error)[:1000],
                    "error_type": type(error).__name__,
                },
                actor_id=actor_id,
            )
            await self.db.commit()
        except Exception as audit_error:
            await self.db.rollback()
            logger.error("Could not record family payment failure", error=str(audit_error))

# app/payments/services.py

"""
Payment poster: records one payment for one student.

1. Ensure the student's ledger accounts exist.
2. Record the payment.
3. Post Dr CASH/BANK, Cr AR for the full amount.
4. Apply FIFO to the student's open invoices, oldest month first.
5. Move anything left to CREDIT (Dr AR, Cr CREDIT) for future months.

Everything runs in one database transaction; a failure anywhere rolls the
whole payment back.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import BillingValidationException, IdempotencyConflictException
from app.utils.concurrency import with_concurrency_retry
from app.utils.general import fingerprint, month_of, ordered_unique
from app.utils.logger import get_logger
from app.audit_trail.schemas import AuditAction
from app.audit_trail.services import audit_trail_service
from app.ledger.schemas import AccountCode
from app.ledger.services import LedgerService
from app.students.exceptions import StudentNotFoundException
from app.students.repository import StudentRepository
from app.tuition.outbox import enqueue_recompute
from app.tuition.repository import InvoiceRepository
from app.tuition.schemas import derive_status
from app.payments.models import Payment, PaymentAllocation, PaymentApplication
from app.payments.repository import PaymentRepository
from app.payments.exceptions import PaymentNotFoundException, PaymentAlreadyReversedException
from app.payments.schemas import (
    PaymentCreate, PaymentResult, InvoiceApplication, PaymentReversalResult,
    PaymentStatus,
)

logger = get_logger(__name__)


class StudentPosting(BaseModel):
    """What posting money to one student did"""
    student_id: int
    tx_id: str
    applied_amount: int = 0
    credit_amount: int = 0
    credit_tx_id: Optional[str] = None
    outstanding_before: int = 0
    applications: List[InvoiceApplication] = []


def validate_amount(amount: int) -> None:
    """Reject amounts outside the configured bounds"""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise BillingValidationException("amount", "must be an integer amount in the smallest currency unit")
    if amount <= 0:
        raise BillingValidationException("amount", "must be positive")
    if amount < settings.payment_min_amount:
        raise BillingValidationException("amount", f"below the minimum of {settings.payment_min_amount}")
    if amount > settings.payment_max_amount:
        raise BillingValidationException("amount", f"above the maximum of {settings.payment_max_amount}")


def validate_method(method: str) -> str:
    """Normalized payment method, or a validation error"""
    normalized = (method or "").strip().lower()
    if normalized not in settings.payment_methods:
        raise BillingValidationException(
            "method", f"unknown payment method '{method}'; accepted: {', '.join(settings.payment_methods)}"
        )
    return normalized


def receiving_account(method: str) -> AccountCode:
    """Cash goes to CASH, everything else lands in BANK"""
    return AccountCode.CASH if method == "cash" else AccountCode.BANK


def request_fingerprint(request: BaseModel) -> str:
    """Fingerprint of a request as the client sent it, without its idempotency key"""
    return fingerprint(request.model_dump(mode="json", exclude={"idempotency_key"}))


class PaymentService:
    """Single-student payments and reversals"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = PaymentRepository(db)
        self.invoice_repo = InvoiceRepository(db)
        self.student_repo = StudentRepository(db)
        self.ledger = LedgerService(db)

    # === Posting ===

    @with_concurrency_retry
    async def post_payment(self, request: PaymentCreate, actor_id: Optional[int] = None) -> PaymentResult:
        """
        Post a payment for one student.

        With an idempotency key, a replay of the same request returns the
        first result without writing; a different request under the same
        key is rejected.
        """
        validate_amount(request.amount)
        method = validate_method(request.method)
        request_fp = request_fingerprint(request)

        try:
            if request.idempotency_key:
                existing = await self.repo.get_by_idempotency_key(request.idempotency_key)
                if existing is not None:
                    return self._replay(existing, request_fp, request.idempotency_key)

            student = await self.student_repo.get_student(request.student_id)
            if student is None:
                raise StudentNotFoundException(request.student_id)

            occurred_at = request.occurred_at or datetime.now(timezone.utc)
            month = month_of(occurred_at)

            payment = await self.repo.add(
                Payment(
                    kind="student",
                    student_id=student.id,
                    amount=request.amount,
                    method=method,
                    occurred_at=occurred_at,
                    month=month,
                    memo=request.memo,
                    idempotency_key=request.idempotency_key,
                    request_fingerprint=request_fp if request.idempotency_key else None,
                    created_by=actor_id,
                )
            )

            posting = await self.apply_to_student(
                student.id, request.amount, method, occurred_at, payment.id, actor_id, request.memo
            )

            overpayment = request.amount - posting.outstanding_before
            flagged = overpayment > settings.overpayment_threshold
            credit_balance = max(await self.ledger.account_balance(student.id, AccountCode.CREDIT), 0)

            result = PaymentResult(
                payment_id=payment.id,
                student_id=student.id,
                tx_id=posting.tx_id,
                applied_amount=posting.applied_amount,
                credit_amount=posting.credit_amount,
                credit_tx_id=posting.credit_tx_id,
                credit_balance=credit_balance,
                overpayment_flagged=flagged,
                applications=posting.applications,
            )

            payment.applied_amount = posting.applied_amount
            payment.credit_amount = posting.credit_amount
            payment.credit_student_id = student.id if posting.credit_amount else None
            payment.overpayment_flagged = flagged
            payment.tx_ids = [tx for tx in (posting.tx_id, posting.credit_tx_id) if tx]
            payment.recorded_by_student = {str(student.id): request.amount}
            payment.result_snapshot = result.model_dump(mode="json")

            await audit_trail_service.record(
                self.db, AuditAction.PAYMENT_POSTED, "payment", payment.id,
                diff={
                    "student_id": student.id,
                    "amount": request.amount,
                    "method": method,
                    "applied_amount": posting.applied_amount,
                    "credit_amount": posting.credit_amount,
                    "tx_ids": payment.tx_ids,
                },
                actor_id=actor_id,
            )

            if flagged:
                logger.warning(
                    "Payment exceeds outstanding balance",
                    payment_id=payment.id, student_id=student.id, amount=request.amount,
                    outstanding=posting.outstanding_before, threshold=settings.overpayment_threshold
                )
                await audit_trail_service.record(
                    self.db, AuditAction.PAYMENT_OVERPAYMENT_FLAGGED, "payment", payment.id,
                    diff={
                        "amount": request.amount,
                        "outstanding": posting.outstanding_before,
                        "excess": overpayment,
                        "threshold": settings.overpayment_threshold,
                    },
                    actor_id=actor_id,
                )

            await self._enqueue_affected(student.id, month, posting.applications, "payment_posted")
            await self.db.commit()

            logger.info(
                "Posted payment",
                payment_id=payment.id, student_id=student.id, amount=request.amount,
                applied=posting.applied_amount, credit=posting.credit_amount
            )
            return result
        except Exception:
            await self.db.rollback()
            raise

    def _replay(self, existing: Payment, request_fp: str, key: str) -> PaymentResult:
        if existing.request_fingerprint != request_fp or existing.kind != "student":
            logger.warning("Idempotency key reused with a different payload", idempotency_key=key)
            raise IdempotencyConflictException(key)
        logger.info("Replaying payment for idempotency key", payment_id=existing.id, idempotency_key=key)
        return PaymentResult(**{**existing.result_snapshot, "replayed": True})

    async def apply_to_student(
        self,
        student_id: int,
        amount: int,
        method: str,
        occurred_at: datetime,
        payment_id: int,
        actor_id: Optional[int] = None,
        memo: Optional[str] = None,
    ) -> StudentPosting:
        """
        Book `amount` received for a student and apply it FIFO to their open
        invoices; anything left becomes CREDIT. Runs inside the caller's
        transaction.
        """
        month = month_of(occurred_at)
        accounts = await self.ledger.ensure_accounts(student_id)
        ar = accounts[AccountCode.AR.value]

        tx_id = await self.ledger.transfer(
            accounts[receiving_account(method).value], ar, amount,
            occurred_at=occurred_at, month=month,
            debit_memo=memo or f"Payment {payment_id} ({method})",
            credit_memo=f"Payment {payment_id}",
            created_by=actor_id,
        )

        open_invoices = await self.invoice_repo.get_open_invoices(student_id, lock=True)
        outstanding_before = sum(i.outstanding for i in open_invoices)

        remaining = amount
        applications = []
        for invoice in open_invoices:
            if remaining <= 0:
                break
            applied = min(remaining, invoice.outstanding)
            if applied <= 0:
                continue
            invoice.paid_amount += applied
            invoice.status = derive_status(invoice.paid_amount, invoice.total_amount).value
            remaining -= applied

            self.db.add(
                PaymentApplication(
                    payment_id=payment_id, invoice_id=invoice.id, student_id=student_id,
                    month=invoice.month, amount=applied,
                )
            )
            applications.append(
                InvoiceApplication(
                    invoice_id=invoice.id, month=invoice.month, amount=applied,
                    paid_amount=invoice.paid_amount, status=invoice.status,
                )
            )
            logger.debug(
                "Applied payment to invoice",
                payment_id=payment_id, invoice_id=invoice.id, month=invoice.month, applied=applied
            )

        credit_tx_id = None
        if remaining > 0:
            credit_tx_id = await self.ledger.transfer(
                ar, accounts[AccountCode.CREDIT.value], remaining,
                occurred_at=occurred_at, month=month,
                debit_memo=f"Payment {payment_id} excess to credit",
                credit_memo=f"Payment {payment_id} credit for future months",
                created_by=actor_id,
            )

        await self.record_received(student_id, month, amount)
        await self.db.flush()

        return StudentPosting(
            student_id=student_id,
            tx_id=tx_id,
            applied_amount=amount - remaining,
            credit_amount=remaining,
            credit_tx_id=credit_tx_id,
            outstanding_before=outstanding_before,
            applications=applications,
        )

    async def book_to_credit(
        self,
        student_id: int,
        amount: int,
        method: str,
        occurred_at: datetime,
        payment_id: int,
        actor_id: Optional[int] = None,
    ) -> List[str]:
        """Receive `amount` and park it in CREDIT without touching invoices"""
        month = month_of(occurred_at)
        accounts = await self.ledger.ensure_accounts(student_id)
        ar = accounts[AccountCode.AR.value]

        received = await self.ledger.transfer(
            accounts[receiving_account(method).value], ar, amount,
            occurred_at=occurred_at, month=month,
            debit_memo=f"Payment {payment_id} unapplied cash ({method})",
            credit_memo=f"Payment {payment_id}",
            created_by=actor_id,
        )
        parked = await self.ledger.transfer(
            ar, accounts[AccountCode.CREDIT.value], amount,
            occurred_at=occurred_at, month=month,
            debit_memo=f"Payment {payment_id} unapplied cash to credit",
            credit_memo=f"Payment {payment_id} credit for future months",
            created_by=actor_id,
        )
        await self.record_received(student_id, month, amount)
        return [received, parked]

    async def book_to_revenue(
        self,
        student_id: int,
        amount: int,
        method: str,
        occurred_at: datetime,
        payment_id: int,
        actor_id: Optional[int] = None,
    ) -> str:
        """Book a voluntary contribution straight to REVENUE, bypassing AR and CREDIT"""
        month = month_of(occurred_at)
        accounts = await self.ledger.ensure_accounts(student_id)
        tx_id = await self.ledger.transfer(
            accounts[receiving_account(method).value], accounts[AccountCode.REVENUE.value], amount,
            occurred_at=occurred_at, month=month,
            debit_memo=f"Payment {payment_id} voluntary contribution ({method})",
            credit_memo=f"Payment {payment_id} voluntary contribution",
            created_by=actor_id,
        )
        await self.record_received(student_id, month, amount)
        return tx_id

    async def record_received(self, student_id: int, month: str, amount: int) -> None:
        """Add money received to that month's invoice, when it exists"""
        invoice = await self.invoice_repo.get_for_month(student_id, month, lock=True)
        if invoice is not None:
            invoice.recorded_payment = max(invoice.recorded_payment + amount, 0)

    async def _enqueue_affected(
        self, student_id: int, month: str, applications: List[InvoiceApplication], reason: str
    ) -> None:
        for affected in ordered_unique([month] + [a.month for a in applications]):
            await enqueue_recompute(self.db, student_id, affected, reason)

    # === Reversal ===

    @with_concurrency_retry
    async def reverse_payment(
        self, payment_id: int, reason: str, actor_id: Optional[int] = None
    ) -> PaymentReversalResult:
        """
        Undo a posted payment with offsetting transactions and un-apply it
        from exactly the invoices it was applied to. Works for student and
        family payments.
        """
        try:
            payment = await self.repo.get(payment_id, lock=True)
            if payment is None:
                raise PaymentNotFoundException(payment_id)
            if payment.status == PaymentStatus.REVERSED.value:
                raise PaymentAlreadyReversedException(payment_id)

            now = datetime.now(timezone.utc)
            memo = f"Reversal of payment {payment_id}: {reason}"
            reversal_tx_ids = [
                await self.ledger.reverse_transaction(tx_id, occurred_at=now, memo=memo, created_by=actor_id)
                for tx_id in payment.tx_ids
            ]

            unapplied = []
            affected: Dict[int, List[str]] = {}
            for application in await self.repo.get_applications(payment_id):
                invoice = await self.invoice_repo.get(application.invoice_id, lock=True)
                invoice.paid_amount = max(invoice.paid_amount - application.amount, 0)
                invoice.status = derive_status(invoice.paid_amount, invoice.total_amount).value
                unapplied.append(
                    InvoiceApplication(
                        invoice_id=invoice.id, month=invoice.month, amount=application.amount,
                        paid_amount=invoice.paid_amount, status=invoice.status,
                    )
                )
                affected.setdefault(invoice.student_id, []).append(invoice.month)

            payment_month = month_of(payment.occurred_at)
            for student_key, amount in (payment.recorded_by_student or {}).items():
                student_id = int(student_key)
                await self.record_received(student_id, payment_month, -amount)
                affected.setdefault(student_id, []).append(payment_month)

            payment.status = PaymentStatus.REVERSED.value
            payment.reversed_at = now
            payment.reversal_reason = reason
            payment.reversal_tx_ids = reversal_tx_ids
            payment.modified_by = actor_id

            await audit_trail_service.record(
                self.db, AuditAction.PAYMENT_REVERSED, "payment", payment_id,
                diff={
                    "reason": reason,
                    "reversed_tx_ids": payment.tx_ids,
                    "reversal_tx_ids": reversal_tx_ids,
                    "unapplied": [u.model_dump() for u in unapplied],
                },
                actor_id=actor_id,
            )

            for student_id, months in affected.items():
                for month in ordered_unique(months):
                    await enqueue_recompute(self.db, student_id, month, "payment_reversed")

            await self.db.commit()
            logger.info("Payment reversed", payment_id=payment_id, reversal_tx_ids=reversal_tx_ids)

            return PaymentReversalResult(
                payment_id=payment_id,
                status=PaymentStatus.REVERSED,
                reversal_tx_ids=reversal_tx_ids,
                unapplied=unapplied,
            )
        except Exception:
            await self.db.rollback()
            raise

    # === Reads ===

    async def get_payment(self, payment_id: int) -> Payment:
        payment = await self.repo.get(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def list_payments(self, student_id=None, family_id=None, status=None, limit: int = 100) -> List[Payment]:
        return await self.repo.list_payments(student_id, family_id, status, limit)

    async def list_allocations(self, payment_id: int) -> List[PaymentAllocation]:
        await self.get_payment(payment_id)
        return await self.repo.get_allocations(payment_id)

# app/tuition/services.py

"""
Tuition calculator: builds or refreshes one student's invoice for a month.

Steps:
1. Price every enrollment active in the month (sessions x effective rate).
2. Resolve discounts against the summed base.
3. total = base - discount (the resolver caps the discount at base).
4. Attach review flags; no flags means auto_approved.
5. Upsert the invoice, keeping paid_amount and recorded_payment.
6. Post the change in charges to the ledger.
7. Apply CREDIT left by earlier payments to the open invoices.
8. Record the carried debt and credit, netted against each other.

Re-running with unchanged inputs writes nothing: values are only assigned
when they differ, so the row version, the ledger and the audit trail stay
put.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import BillingValidationException
from app.utils.concurrency import with_concurrency_retry
from app.utils.general import month_bounds, shift_month, validate_month
from app.utils.logger import get_logger
from app.audit_trail.schemas import AuditAction
from app.audit_trail.services import audit_trail_service
from app.ledger.schemas import AccountCode, PostingLine
from app.ledger.services import LedgerService, new_tx_id
from app.students.exceptions import StudentNotFoundException
from app.students.repository import StudentRepository
from app.discounts.resolver import DiscountResolver
from app.discounts.schemas import DiscountResolution, DiscountSource
from app.tuition.models import Invoice, RecomputeRequest
from app.tuition.pricing import price_enrollment
from app.tuition.repository import InvoiceRepository, RecomputeRepository
from app.tuition.exceptions import InvoiceNotFoundException
from app.tuition.outbox import enqueue_recompute
from app.payments.models import PaymentApplication
from app.payments.repository import PaymentRepository
from app.tuition.schemas import (
    ConfirmationStatus, DataIntegrityFlag, DataIntegrityIssue, InvoiceResponse,
    LineItem, LowTuitionFlag, RateOverrideDetail, RateOverrideFlag,
    RecomputeDrainResult, ReferralBonusFlag, SiblingDiscountFlag,
    SpecialDiscountFlag, TuitionAdjustmentFlag, derive_status,
)

logger = get_logger(__name__)

# Fields whose change invalidates a human confirmation
_REVIEWED_FIELDS = ("base_amount", "discount_amount", "total_amount", "review_flags")


def build_review_flags(
    line_items: List[LineItem],
    resolution: DiscountResolution,
    base_amount: int,
    total_amount: int,
    previous: Optional[Invoice],
) -> List[Dict[str, Any]]:
    """Review flags as JSON-ready dicts, in a fixed order"""
    flags = []

    missing = [item for item in line_items if item.missing_class]
    if missing:
        flags.append(
            DataIntegrityFlag(
                issues=[
                    DataIntegrityIssue(
                        enrollment_id=item.enrollment_id,
                        class_id=item.class_id,
                        reason="class missing or inactive",
                    )
                    for item in missing
                ]
            )
        )

    if previous is not None and previous.recorded_payment > 0:
        difference = total_amount - previous.recorded_payment
        if abs(difference) > settings.tuition_adjustment_tolerance:
            flags.append(
                TuitionAdjustmentFlag(
                    expected=previous.recorded_payment, actual=total_amount, difference=difference
                )
            )

    overrides = [item for item in line_items if item.rate_overridden]
    if overrides:
        flags.append(
            RateOverrideFlag(
                overrides=[
                    RateOverrideDetail(
                        enrollment_id=item.enrollment_id, class_rate=item.class_rate, override_rate=item.rate
                    )
                    for item in overrides
                ]
            )
        )

    sibling = [d for d in resolution.discounts if d.source == DiscountSource.SIBLING and d.amount > 0]
    if sibling:
        had_sibling = previous is not None and any(
            d.get("source") == DiscountSource.SIBLING.value and d.get("amount", 0) > 0
            for d in previous.discount_breakdown or []
        )
        if not had_sibling:
            flags.append(
                SiblingDiscountFlag(
                    percent=sibling[0].value,
                    amount=sibling[0].amount,
                    active_siblings=resolution.active_siblings,
                )
            )

    special = [d for d in resolution.discounts if d.source == DiscountSource.SPECIAL and d.amount > 0]
    if special:
        flags.append(SpecialDiscountFlag(names=[d.name for d in special], amount=sum(d.amount for d in special)))

    referral = [d for d in resolution.discounts if d.source == DiscountSource.REFERRAL and d.amount > 0]
    if referral:
        flags.append(
            ReferralBonusFlag(bonus_ids=[d.source_id for d in referral], amount=sum(d.amount for d in referral))
        )

    if base_amount > 0 and total_amount < base_amount * settings.low_tuition_ratio:
        flags.append(
            LowTuitionFlag(
                base_amount=base_amount,
                total_amount=total_amount,
                ratio=round(total_amount / base_amount, 4),
            )
        )

    return [flag.model_dump(mode="json") for flag in flags]


def _assign(obj, field: str, value) -> bool:
    """Set an attribute only when it changes; report whether it did"""
    if getattr(obj, field) == value:
        return False
    setattr(obj, field, value)
    return True


class TuitionCalculator:
    """Produces and refreshes invoices"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = InvoiceRepository(db)
        self.student_repo = StudentRepository(db)
        self.ledger = LedgerService(db)

    @with_concurrency_retry
    async def calculate(self, student_id: int, month: str, actor_id: Optional[int] = None) -> InvoiceResponse:
        """Compute the invoice in its own transaction and return its snapshot"""
        try:
            invoice = await self.compute(student_id, month, actor_id=actor_id)
            snapshot = InvoiceResponse.model_validate(invoice)
            await self.db.commit()
            return snapshot
        except Exception:
            await self.db.rollback()
            raise

    async def compute(
        self,
        student_id: int,
        month: str,
        actor_id: Optional[int] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Invoice:
        """
        Build or refresh the invoice inside the caller's transaction.

        Any failure propagates before commit, so a partial invoice is never
        persisted.
        """
        try:
            validate_month(month)
        except ValueError as e:
            raise BillingValidationException("month", str(e)) from e

        student = await self.student_repo.get_student(student_id)
        if student is None:
            raise StudentNotFoundException(student_id)

        occurred_at = occurred_at or datetime.now(timezone.utc)
        month_start, month_end = month_bounds(month)

        enrollments = await self.student_repo.get_enrollments_for_period(student_id, month_start, month_end)
        line_items = [price_enrollment(e, month_start, month_end) for e in enrollments]
        for enrollment, item in zip(enrollments, line_items):
            if item.amount > 0 and enrollment.first_billed_month is None:
                enrollment.first_billed_month = month

        missing = [item.enrollment_id for item in line_items if item.missing_class]
        if missing:
            logger.warning(
                "Enrollments excluded for missing class data",
                student_id=student_id, month=month, enrollment_ids=missing
            )

        base_amount = sum(item.amount for item in line_items)
        resolution = await DiscountResolver(self.db).resolve(
            student_id, month, base_amount, line_items, record_application=True
        )
        discount_amount = resolution.discount_amount
        total_amount = base_amount - discount_amount

        previous = await self.repo.get_for_month(student_id, shift_month(month, -1))
        review_flags = build_review_flags(line_items, resolution, base_amount, total_amount, previous)

        invoice = await self.repo.get_for_month(student_id, month, lock=True)
        created = invoice is None
        before = None
        if created:
            invoice = Invoice(
                student_id=student_id,
                month=month,
                paid_amount=0,
                recorded_payment=await self.ledger.received_in_month(student_id, month),
                posted_base=0,
                posted_discount=0,
                created_by=actor_id,
            )
        else:
            before = {f: getattr(invoice, f) for f in _REVIEWED_FIELDS}

        changed = {
            "base_amount": _assign(invoice, "base_amount", base_amount),
            "discount_amount": _assign(invoice, "discount_amount", discount_amount),
            "total_amount": _assign(invoice, "total_amount", total_amount),
            "review_flags": _assign(invoice, "review_flags", review_flags),
        }
        _assign(invoice, "line_items", [item.model_dump(mode="json") for item in line_items])
        _assign(invoice, "discount_breakdown", [d.model_dump(mode="json") for d in resolution.discounts])
        _assign(invoice, "status", derive_status(invoice.paid_amount, total_amount).value)

        reviewed_change = created or any(changed.values())
        if reviewed_change:
            # Amounts or flags moved: any earlier confirmation no longer holds
            new_status = ConfirmationStatus.NEEDS_REVIEW if review_flags else ConfirmationStatus.AUTO_APPROVED
            _assign(invoice, "confirmation_status", new_status.value)
            _assign(invoice, "confirmed_by", None)
            _assign(invoice, "confirmed_at", None)

        if created:
            await self.repo.add(invoice)

        await self._post_charges(invoice, actor_id, occurred_at)
        await self.db.flush()
        await self.apply_available_credit(student_id, month, actor_id=actor_id, occurred_at=occurred_at)
        await self._apply_carry(invoice, student_id, month)

        if created or any(changed.values()):
            await audit_trail_service.record(
                self.db, AuditAction.INVOICE_CALCULATED, "invoice", invoice.id,
                diff={
                    "student_id": student_id,
                    "month": month,
                    "before": before,
                    "after": {f: getattr(invoice, f) for f in _REVIEWED_FIELDS},
                },
                actor_id=actor_id,
            )
            logger.info(
                "Invoice calculated",
                student_id=student_id, month=month, base_amount=base_amount,
                discount_amount=discount_amount, total_amount=total_amount,
                flags=[f["type"] for f in review_flags], created=created
            )
        else:
            logger.debug("Invoice unchanged", student_id=student_id, month=month)

        await self.db.flush()
        return invoice

    async def apply_available_credit(
        self,
        student_id: int,
        month: str,
        actor_id: Optional[int] = None,
        occurred_at: Optional[datetime] = None,
    ) -> int:
        """
        Spend CREDIT left by earlier payments on the student's open invoices,
        oldest payment against oldest month first. Each payment's share is
        posted Dr CREDIT / Cr AR and recorded as an application of that
        payment, so reversing it later also takes the credit back.

        Runs inside the caller's transaction; returns the amount applied.
        """
        available = await self.ledger.account_balance(student_id, AccountCode.CREDIT)
        if available <= 0:
            return 0
        sources = await PaymentRepository(self.db).get_credit_sources(student_id, lock=True)
        if not sources:
            return 0
        open_invoices = [i for i in await self.repo.get_open_invoices(student_id, lock=True) if i.outstanding > 0]
        if not open_invoices:
            return 0

        occurred_at = occurred_at or datetime.now(timezone.utc)
        accounts = await self.ledger.ensure_accounts(student_id)
        consumed = 0

        for source in sources:
            budget = min(source.credit_amount - source.credit_used, available - consumed)
            used = 0
            applied_to = []
            for invoice in open_invoices:
                if used >= budget:
                    break
                applied = min(budget - used, invoice.outstanding)
                if applied <= 0:
                    continue
                invoice.paid_amount += applied
                invoice.status = derive_status(invoice.paid_amount, invoice.total_amount).value
                used += applied
                applied_to.append({"invoice_id": invoice.id, "month": invoice.month, "amount": applied})
                self.db.add(
                    PaymentApplication(
                        payment_id=source.id, invoice_id=invoice.id, student_id=student_id,
                        month=invoice.month, amount=applied,
                    )
                )
            if used == 0:
                break

            tx_id = await self.ledger.transfer(
                accounts[AccountCode.CREDIT.value], accounts[AccountCode.AR.value], used,
                occurred_at=occurred_at, month=month,
                debit_memo=f"Credit from payment {source.id} applied",
                credit_memo=f"Payment {source.id} credit applied to tuition",
                created_by=actor_id,
            )
            source.credit_used += used
            source.tx_ids = list(source.tx_ids or []) + [tx_id]
            consumed += used

            await audit_trail_service.record(
                self.db, AuditAction.CREDIT_APPLIED, "payment", source.id,
                diff={"student_id": student_id, "amount": used, "tx_id": tx_id, "applications": applied_to},
                actor_id=actor_id,
            )
            logger.info(
                "Applied credit to invoices",
                payment_id=source.id, student_id=student_id, amount=used, tx_id=tx_id
            )
            if consumed >= available:
                break

        await self.db.flush()
        return consumed

    async def _apply_carry(self, invoice: Invoice, student_id: int, month: str) -> None:
        """Debt and credit carried in and out of the month, netted against each other"""
        prior_debt = await self.repo.outstanding_before(student_id, month)
        prior_credit = max(
            await self.ledger.account_balance(student_id, AccountCode.CREDIT, shift_month(month, -1)), 0
        )
        credit = max(await self.ledger.account_balance(student_id, AccountCode.CREDIT, month), 0)

        opening = prior_debt - prior_credit
        closing = prior_debt + invoice.outstanding - credit

        _assign(invoice, "carry_in_debt", max(opening, 0))
        _assign(invoice, "carry_in_credit", max(-opening, 0))
        _assign(invoice, "carry_out_debt", max(closing, 0))
        _assign(invoice, "carry_out_credit", max(-closing, 0))

    async def _post_charges(self, invoice: Invoice, actor_id: Optional[int], occurred_at: datetime) -> None:
        """Post the difference between the invoice's charges and what it already posted"""
        base_delta = invoice.base_amount - invoice.posted_base
        discount_delta = invoice.discount_amount - invoice.posted_discount
        if base_delta == 0 and discount_delta == 0:
            return

        accounts = await self.ledger.ensure_accounts(invoice.student_id)
        ar = accounts[AccountCode.AR.value].id
        revenue = accounts[AccountCode.REVENUE.value].id
        discount = accounts[AccountCode.DISCOUNT.value].id

        lines = []
        if base_delta > 0:
            lines += [PostingLine(account_id=ar, debit=base_delta), PostingLine(account_id=revenue, credit=base_delta)]
        elif base_delta < 0:
            lines += [PostingLine(account_id=revenue, debit=-base_delta), PostingLine(account_id=ar, credit=-base_delta)]
        if discount_delta > 0:
            lines += [PostingLine(account_id=discount, debit=discount_delta), PostingLine(account_id=ar, credit=discount_delta)]
        elif discount_delta < 0:
            lines += [PostingLine(account_id=ar, debit=-discount_delta), PostingLine(account_id=discount, credit=-discount_delta)]

        await self.ledger.post(
            new_tx_id(), lines, occurred_at=occurred_at, month=invoice.month,
            memo=f"Tuition {invoice.month}", created_by=actor_id,
        )
        invoice.posted_base = invoice.base_amount
        invoice.posted_discount = invoice.discount_amount

    # === Reads ===

    async def get_invoice(self, invoice_id: int) -> InvoiceResponse:
        invoice = await self.repo.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundException(invoice_id=invoice_id)
        return InvoiceResponse.model_validate(invoice)

    async def get_invoice_for_month(self, student_id: int, month: str) -> InvoiceResponse:
        invoice = await self.repo.get_for_month(student_id, month)
        if invoice is None:
            raise InvoiceNotFoundException(student_id=student_id, month=month)
        return InvoiceResponse.model_validate(invoice)

    async def list_student_invoices(
        self, student_id: int, from_month: Optional[str] = None, through_month: Optional[str] = None
    ) -> List[InvoiceResponse]:
        invoices = await self.repo.get_student_invoices(student_id, from_month, through_month)
        return [InvoiceResponse.model_validate(i) for i in invoices]

    # === Outbox ===

    async def request_recompute(
        self, student_id: int, month: str, reason: str, actor_id: Optional[int] = None
    ):
        """Durably record that (student, month) must be recomputed"""
        try:
            if await self.student_repo.get_student(student_id) is None:
                raise StudentNotFoundException(student_id)
            request = await enqueue_recompute(self.db, student_id, month, reason)
            await audit_trail_service.record(
                self.db, AuditAction.RECOMPUTE_REQUESTED, "recompute_request", request.id,
                diff={"student_id": student_id, "month": month, "reason": reason}, actor_id=actor_id,
            )
            await self.db.commit()
            return request
        except Exception:
            await self.db.rollback()
            raise

    async def drain_recompute_requests(self, batch_size: Optional[int] = None) -> RecomputeDrainResult:
        """
        Process one batch of pending recompute requests, each in its own
        transaction. Failures stay pending until `recompute_max_attempts`.
        """
        outbox = RecomputeRepository(self.db)
        batch = await outbox.next_batch(batch_size or settings.recompute_batch_size)
        work = [(r.id, r.student_id, r.month) for r in batch]
        result = RecomputeDrainResult()

        for request_id, student_id, month in work:
            result.processed += 1
            try:
                await self.compute(student_id, month)
                request = await self.db.get(RecomputeRequest, request_id)
                request.status = "done"
                request.processed_at = datetime.now(timezone.utc)
                await self.db.commit()
                result.succeeded += 1
            except Exception as e:
                await self.db.rollback()
                request = await self.db.get(RecomputeRequest, request_id)
                request.attempts += 1
                request.last_error = str(e)[:2000]
                if request.attempts >= settings.recompute_max_attempts:
                    request.status = "failed"
                    request.processed_at = datetime.now(timezone.utc)
                    result.gave_up += 1
                    logger.error(
                        "Recompute abandoned",
                        request_id=request_id, student_id=student_id, month=month, error=str(e)
                    )
                else:
                    logger.warning(
                        "Recompute failed, will retry",
                        request_id=request_id, student_id=student_id, month=month,
                        attempts=request.attempts, error=str(e)
                    )
                result.failed += 1
                await self.db.commit()

        if work:
            logger.info("Recompute batch drained", **result.model_dump())
        return result

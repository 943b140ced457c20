# app/review/services.py

"""
Review queue: invoices waiting for a human to confirm them.

Confirmation only changes review state and notes. Amounts stay as the
calculator left them; recalculation is a separate action.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BillingValidationException
from app.utils.concurrency import with_concurrency_retry
from app.utils.logger import get_logger
from app.audit_trail.schemas import AuditAction
from app.audit_trail.services import audit_trail_service
from app.tuition.exceptions import InvoiceNotFoundException
from app.tuition.models import Invoice
from app.tuition.repository import InvoiceRepository
from app.tuition.schemas import (
    ConfirmationStatus, InvoiceResponse, ReviewFlagType, REVIEW_FLAGS_ADAPTER,
)
from app.review.schemas import ReviewGroup, ReviewQueueResponse, ConfirmResult

logger = get_logger(__name__)

CONFIRMED_STATES = (ConfirmationStatus.CONFIRMED, ConfirmationStatus.ADJUSTED)


def flag_types(invoice: Invoice) -> List[ReviewFlagType]:
    """Distinct flag kinds on an invoice"""
    flags = REVIEW_FLAGS_ADAPTER.validate_python(invoice.review_flags or [])
    seen = []
    for flag in flags:
        kind = ReviewFlagType(flag.type)
        if kind not in seen:
            seen.append(kind)
    return seen


class ReviewQueueService:
    """Grouping and confirmation of flagged invoices"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.invoice_repo = InvoiceRepository(db)

    async def pending(self, month: Optional[str] = None) -> List[Invoice]:
        return await self.invoice_repo.get_by_confirmation(
            [ConfirmationStatus.NEEDS_REVIEW.value], month
        )

    async def get_queue(self, month: Optional[str] = None) -> ReviewQueueResponse:
        """
        Pending invoices grouped by flag kind. An invoice with several flags
        shows up in each of its groups.
        """
        invoices = await self.pending(month)
        grouped: Dict[ReviewFlagType, List[InvoiceResponse]] = {}
        labels: Dict[ReviewFlagType, str] = {}

        for invoice in invoices:
            response = InvoiceResponse.model_validate(invoice)
            for flag in response.review_flags:
                kind = ReviewFlagType(flag.type)
                labels.setdefault(kind, flag.label)
                bucket = grouped.setdefault(kind, [])
                if not bucket or bucket[-1].id != invoice.id:
                    bucket.append(response)

        groups = [
            ReviewGroup(flag_type=kind, label=labels[kind], count=len(grouped[kind]), invoices=grouped[kind])
            for kind in ReviewFlagType
            if kind in grouped
        ]
        return ReviewQueueResponse(month=month, total_invoices=len(invoices), groups=groups)

    @with_concurrency_retry
    async def confirm(
        self,
        invoice_ids: List[int],
        notes: Optional[str] = None,
        confirmation_status: ConfirmationStatus = ConfirmationStatus.CONFIRMED,
        actor_id: Optional[int] = None,
    ) -> ConfirmResult:
        """Confirm a selected set of invoices"""
        if confirmation_status not in CONFIRMED_STATES:
            raise BillingValidationException(
                "confirmation_status", "must be 'confirmed' or 'adjusted'"
            )
        try:
            wanted = sorted(set(invoice_ids))
            invoices = await self.invoice_repo.get_many(wanted, lock=True)
            missing = set(wanted) - {i.id for i in invoices}
            if missing:
                raise InvoiceNotFoundException(invoice_id=min(missing))

            confirmed = await self._confirm_all(invoices, notes, confirmation_status, actor_id)
            await self.db.commit()
            return confirmed
        except Exception:
            await self.db.rollback()
            raise

    @with_concurrency_retry
    async def confirm_group(
        self,
        flag_type: ReviewFlagType,
        month: Optional[str] = None,
        notes: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> ConfirmResult:
        """Confirm every pending invoice that carries `flag_type`"""
        try:
            candidates = [i for i in await self.pending(month) if flag_type in flag_types(i)]
            invoices = await self.invoice_repo.get_many([i.id for i in candidates], lock=True) if candidates else []
            confirmed = await self._confirm_all(
                invoices, notes, ConfirmationStatus.CONFIRMED, actor_id, flag_type=flag_type
            )
            await self.db.commit()
            return confirmed
        except Exception:
            await self.db.rollback()
            raise

    async def _confirm_all(
        self,
        invoices: List[Invoice],
        notes: Optional[str],
        confirmation_status: ConfirmationStatus,
        actor_id: Optional[int],
        flag_type: Optional[ReviewFlagType] = None,
    ) -> ConfirmResult:
        now = datetime.now(timezone.utc)
        for invoice in invoices:
            previous = invoice.confirmation_status
            invoice.confirmation_status = confirmation_status.value
            invoice.confirmation_notes = notes
            invoice.confirmed_by = actor_id
            invoice.confirmed_at = now
            invoice.modified_by = actor_id
            await audit_trail_service.record(
                self.db, AuditAction.CONFIRM_TUITION, "invoice", invoice.id,
                diff={
                    "from": previous,
                    "to": confirmation_status.value,
                    "notes": notes,
                    "flag_group": flag_type.value if flag_type else None,
                },
                actor_id=actor_id,
            )

        ids = [i.id for i in invoices]
        logger.info(
            "Confirmed invoices",
            count=len(ids), status=confirmation_status.value,
            flag_group=flag_type.value if flag_type else None, actor_id=actor_id
        )
        return ConfirmResult(confirmed=len(ids), invoice_ids=ids)

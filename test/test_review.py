from datetime import date

import pytest

from app.core.exceptions import BillingValidationException
from app.discounts.schemas import DiscountAssignmentCreate, DiscountDefinitionCreate, DiscountType
from app.discounts.services import DiscountService
from app.review.services import ReviewQueueService
from app.tuition.exceptions import InvoiceNotFoundException
from app.tuition.schemas import ConfirmationStatus, ReviewFlagType
from app.tuition.services import TuitionCalculator

from conftest import SEPT


@pytest.fixture
def flagged_invoices(roster, run):
    """
    Three September invoices: one with a rate override, one with a rate
    override and a special discount, one clean.
    """
    async def _create():
        class_id = await roster.klass()
        override = await roster.student("Ana Le")
        await roster.enroll(override, class_id, rate_override=90_000)
        both = await roster.student("Binh Le")
        await roster.enroll(both, class_id, rate_override=95_000)
        clean = await roster.student("Cuong Le")
        await roster.enroll(clean, class_id)

        definition = await run(lambda db: DiscountService(db).create_definition(
            DiscountDefinitionCreate(name="Bursary", type=DiscountType.AMOUNT, value=10_000)
        ))
        await run(lambda db: DiscountService(db).create_assignment(
            DiscountAssignmentCreate(student_id=both, discount_def_id=definition.id, effective_from=date(2025, 9, 1))
        ))

        invoices = {}
        for name, student_id in (("override", override), ("both", both), ("clean", clean)):
            invoices[name] = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
        return invoices
    return _create


async def test_queue_groups_by_flag_kind(run, flagged_invoices):
    invoices = await flagged_invoices()

    queue = await run(lambda db: ReviewQueueService(db).get_queue(SEPT))

    assert queue.total_invoices == 2
    groups = {g.flag_type: [i.id for i in g.invoices] for g in queue.groups}
    assert [g.flag_type for g in queue.groups] == [ReviewFlagType.RATE_OVERRIDE, ReviewFlagType.HAS_SPECIAL_DISCOUNT]
    assert groups[ReviewFlagType.RATE_OVERRIDE] == [invoices["override"].id, invoices["both"].id]
    assert groups[ReviewFlagType.HAS_SPECIAL_DISCOUNT] == [invoices["both"].id]
    assert invoices["clean"].confirmation_status == ConfirmationStatus.AUTO_APPROVED


async def test_confirming_keeps_amounts(run, flagged_invoices):
    invoices = await flagged_invoices()
    target = invoices["override"]

    result = await run(lambda db: ReviewQueueService(db).confirm(
        [target.id], notes="rate agreed in enrollment interview", actor_id=7
    ))
    confirmed = await run(lambda db: TuitionCalculator(db).get_invoice(target.id))
    queue = await run(lambda db: ReviewQueueService(db).get_queue(SEPT))

    assert result.invoice_ids == [target.id]
    assert confirmed.confirmation_status == ConfirmationStatus.CONFIRMED
    assert confirmed.confirmation_notes == "rate agreed in enrollment interview"
    assert (confirmed.base_amount, confirmed.total_amount) == (target.base_amount, target.total_amount)
    assert queue.total_invoices == 1


async def test_confirm_group_only_touches_that_flag(run, flagged_invoices):
    invoices = await flagged_invoices()

    result = await run(lambda db: ReviewQueueService(db).confirm_group(ReviewFlagType.HAS_SPECIAL_DISCOUNT, SEPT))
    override = await run(lambda db: TuitionCalculator(db).get_invoice(invoices["override"].id))

    assert result.invoice_ids == [invoices["both"].id]
    assert override.confirmation_status == ConfirmationStatus.NEEDS_REVIEW


async def test_confirm_rejects_unknown_invoices_and_bad_status(run, flagged_invoices):
    invoices = await flagged_invoices()

    with pytest.raises(InvoiceNotFoundException):
        await run(lambda db: ReviewQueueService(db).confirm([invoices["override"].id, 999]))
    with pytest.raises(BillingValidationException):
        await run(lambda db: ReviewQueueService(db).confirm(
            [invoices["override"].id], confirmation_status=ConfirmationStatus.NEEDS_REVIEW
        ))

    untouched = await run(lambda db: TuitionCalculator(db).get_invoice(invoices["override"].id))
    assert untouched.confirmation_status == ConfirmationStatus.NEEDS_REVIEW

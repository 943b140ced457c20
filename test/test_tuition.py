from datetime import date

import pytest
from sqlalchemy import func, select

from app.core.exceptions import BillingValidationException
from app.discounts.schemas import (
    DiscountAssignmentCreate, DiscountCadence, DiscountDefinitionCreate, DiscountType,
)
from app.discounts.repository import DiscountRepository
from app.discounts.services import DiscountService
from app.ledger.models import LedgerEntry
from app.ledger.schemas import AccountCode
from app.payments.schemas import PaymentCreate
from app.payments.services import PaymentService
from app.review.services import ReviewQueueService
from app.students.exceptions import StudentNotFoundException
from app.tuition.models import RecomputeRequest
from app.tuition.repository import InvoiceRepository
from app.tuition.services import TuitionCalculator

from conftest import MID_SEPT, OCT, SEPT, balance


def flag_types(invoice):
    return [flag.type for flag in invoice.review_flags]


async def give_special_discount(run, student_id, amount, effective_from=date(2025, 9, 1), effective_to=None,
                                type_=DiscountType.AMOUNT, cadence=DiscountCadence.MONTHLY, name="Scholarship"):
    definition = await run(lambda db: DiscountService(db).create_definition(
        DiscountDefinitionCreate(name=name, type=type_, value=amount, cadence=cadence)
    ))
    return await run(lambda db: DiscountService(db).create_assignment(
        DiscountAssignmentCreate(
            student_id=student_id, discount_def_id=definition.id,
            effective_from=effective_from, effective_to=effective_to,
        )
    ))


async def test_invoice_from_sessions(run, roster):
    student_id = await roster.enrolled_student()

    invoice = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    assert invoice.base_amount == 900_000
    assert invoice.discount_amount == 0
    assert invoice.total_amount == 900_000
    assert invoice.paid_amount == 0
    assert invoice.status == "unpaid"
    assert invoice.confirmation_status == "auto_approved"
    assert invoice.review_flags == []
    assert invoice.line_items[0].sessions == 9

    async def ledger_state(db):
        return await balance(db, student_id, AccountCode.AR), await balance(db, student_id, AccountCode.REVENUE)

    assert await run(ledger_state) == (900_000, 900_000)


async def test_recalculating_unchanged_inputs_is_identical(run, roster):
    student_id = await roster.enrolled_student()
    await give_special_discount(run, student_id, 100_000)

    first = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    entries_after_first = await run(lambda db: db.scalar(select(func.count(LedgerEntry.id))))
    second = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    entries_after_second = await run(lambda db: db.scalar(select(func.count(LedgerEntry.id))))

    assert first.model_dump() == second.model_dump()
    assert entries_after_first == entries_after_second


async def test_total_is_base_minus_discount_and_never_negative(run, roster):
    student_id = await roster.enrolled_student()
    await give_special_discount(run, student_id, 1_000_000)

    invoice = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    assert invoice.base_amount == 900_000
    assert invoice.discount_amount == 900_000
    assert invoice.total_amount == 0
    assert invoice.status == "paid"


async def test_rate_override_and_allowed_days(run, roster):
    student_id = await roster.student()
    class_id = await roster.klass()
    await roster.enroll(student_id, class_id, rate_override=80_000, allowed_days=[1])

    invoice = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    # Mondays only: 1, 8, 15, 22, 29
    assert invoice.base_amount == 5 * 80_000
    assert flag_types(invoice) == ["rate_override"]
    assert invoice.review_flags[0].overrides[0].class_rate == 100_000
    assert invoice.confirmation_status == "needs_review"


async def test_enrollment_window_limits_sessions(run, roster):
    student_id = await roster.student()
    class_id = await roster.klass()
    await roster.enroll(student_id, class_id, start_date=date(2025, 9, 15), end_date=date(2025, 9, 24))

    invoice = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    # 15, 17, 22, 24
    assert invoice.base_amount == 400_000


async def test_missing_class_is_flagged_not_fatal(run, roster):
    student_id = await roster.enrolled_student()
    closed_class = await roster.klass(name="Closed", is_active=False)
    await roster.enroll(student_id, closed_class)

    invoice = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    assert invoice.base_amount == 900_000
    assert flag_types(invoice) == ["data_integrity"]
    assert invoice.review_flags[0].issues[0].class_id == closed_class


async def test_sibling_discount_flagged_only_when_new(run, roster):
    family_id = await roster.family()
    alice = await roster.enrolled_student("Alice Tran", family_id=family_id)
    await roster.enrolled_student("Bob Tran", family_id=family_id, start_date=date(2025, 9, 1))

    september = await run(lambda db: TuitionCalculator(db).calculate(alice, SEPT))
    october = await run(lambda db: TuitionCalculator(db).calculate(alice, OCT))

    assert september.discount_amount == 45_000
    assert september.total_amount == 855_000
    assert flag_types(september) == ["sibling_discount"]
    assert september.review_flags[0].active_siblings == 2
    assert october.discount_amount == 45_000
    assert "sibling_discount" not in flag_types(october)


async def test_family_override_percent(run, roster):
    family_id = await roster.family(sibling_percent_override=10)
    alice = await roster.enrolled_student("Alice Tran", family_id=family_id)
    await roster.enrolled_student("Bob Tran", family_id=family_id)

    invoice = await run(lambda db: TuitionCalculator(db).calculate(alice, SEPT))

    assert invoice.discount_amount == 90_000


async def sibling_state(run, family_id, month=SEPT):
    return await run(lambda db: DiscountRepository(db).get_sibling_state(family_id, month))


async def test_sibling_discount_goes_only_to_the_smaller_tuition(run, roster):
    family_id = await roster.family()
    alice = await roster.enrolled_student("Alice Tran", family_id=family_id)
    bob = await roster.enrolled_student("Bob Tran", family_id=family_id, allowed_days=[1])

    alice_invoice = await run(lambda db: TuitionCalculator(db).calculate(alice, SEPT))
    bob_invoice = await run(lambda db: TuitionCalculator(db).calculate(bob, SEPT))

    assert (alice_invoice.discount_amount, alice_invoice.total_amount) == (0, 900_000)
    assert "sibling_discount" not in flag_types(alice_invoice)
    assert (bob_invoice.discount_amount, bob_invoice.total_amount) == (25_000, 475_000)
    state = await sibling_state(run, family_id)
    assert (state.status, state.winner_student_id, state.sibling_percent) == ("assigned", bob, 5)


async def test_sibling_discount_waits_while_only_one_child_has_tuition(run, roster):
    family_id = await roster.family()
    alice = await roster.enrolled_student("Alice Tran", family_id=family_id)
    await roster.student("Bob Tran", family_id=family_id)

    invoice = await run(lambda db: TuitionCalculator(db).calculate(alice, SEPT))

    assert invoice.discount_amount == 0
    state = await sibling_state(run, family_id)
    assert (state.status, state.winner_student_id) == ("pending", None)


async def test_new_sibling_winner_queues_the_previous_one(run, roster):
    family_id = await roster.family()
    alice = await roster.enrolled_student("Alice Tran", family_id=family_id)
    bob = await roster.enrolled_student("Bob Tran", family_id=family_id, allowed_days=[1])
    first = await run(lambda db: TuitionCalculator(db).calculate(bob, SEPT))
    assert first.discount_amount == 25_000

    await roster.enroll(bob, await roster.klass("Art"))
    alice_invoice = await run(lambda db: TuitionCalculator(db).calculate(alice, SEPT))

    assert alice_invoice.discount_amount == 45_000
    assert (await sibling_state(run, family_id)).winner_student_id == alice

    async def queued(db):
        rows = await db.scalars(select(RecomputeRequest).where(RecomputeRequest.status == "pending"))
        return [(r.student_id, r.reason) for r in rows.all()]

    assert any(student_id == bob and "sibling_winner_changed" in reason for student_id, reason in await run(queued))

    await run(lambda db: TuitionCalculator(db).drain_recompute_requests())
    bob_invoice = await run(lambda db: TuitionCalculator(db).get_invoice_for_month(bob, SEPT))
    assert (bob_invoice.base_amount, bob_invoice.discount_amount) == (1_400_000, 0)


async def test_low_tuition_and_special_discount_flags(run, roster):
    student_id = await roster.enrolled_student()
    await give_special_discount(run, student_id, 600_000)

    invoice = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    assert invoice.total_amount == 300_000
    assert flag_types(invoice) == ["has_special_discount", "low_tuition"]


async def test_once_enrollment_discount_applies_only_first_month(run, roster):
    student_id = await roster.student()
    class_id = await roster.klass()
    await roster.enroll(student_id, class_id, discount_type="percent", discount_value=10, discount_cadence="once")

    september = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    october = await run(lambda db: TuitionCalculator(db).calculate(student_id, OCT))
    september_again = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    assert september.discount_amount == 90_000
    assert october.discount_amount == 0
    assert september_again.discount_amount == 90_000


async def test_tuition_adjustment_against_last_months_payment(run, roster):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    await run(lambda db: PaymentService(db).post_payment(
        PaymentCreate(student_id=student_id, amount=900_000, method="cash", occurred_at=MID_SEPT)
    ))
    await give_special_discount(run, student_id, 200_000, effective_from=date(2025, 10, 1))

    october = await run(lambda db: TuitionCalculator(db).calculate(student_id, OCT))

    assert october.total_amount == 700_000
    adjustment = next(f for f in october.review_flags if f.type == "tuition_adjustment")
    assert adjustment.expected == 900_000
    assert adjustment.difference == -200_000


async def test_confirmation_survives_unchanged_recalculation(run, roster):
    student_id = await roster.student()
    class_id = await roster.klass()
    await roster.enroll(student_id, class_id, rate_override=90_000)
    invoice = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    await run(lambda db: ReviewQueueService(db).confirm([invoice.id], notes="agreed with parent"))

    unchanged = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    assert unchanged.confirmation_status == "confirmed"

    await give_special_discount(run, student_id, 50_000)
    changed = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    assert changed.confirmation_status == "needs_review"


async def test_discount_change_reposts_only_the_delta(run, roster):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    await give_special_discount(run, student_id, 100_000)
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    async def state(db):
        invoice = await InvoiceRepository(db).get_for_month(student_id, SEPT)
        return (
            await balance(db, student_id, AccountCode.AR),
            await balance(db, student_id, AccountCode.DISCOUNT),
            invoice.posted_discount,
        )

    assert await run(state) == (800_000, 100_000, 100_000)


async def test_unknown_student_and_bad_month(run):
    with pytest.raises(StudentNotFoundException):
        await run(lambda db: TuitionCalculator(db).calculate(4242, SEPT))
    with pytest.raises(BillingValidationException):
        await run(lambda db: TuitionCalculator(db).calculate(1, "2025-13"))

from datetime import date

import pytest
from sqlalchemy import select

from app.core.exceptions import BillingValidationException
from app.discounts.exceptions import OverlapConflictException
from app.discounts.models import ReferralBonus
from app.discounts.resolver import percent_of
from app.discounts.schemas import (
    DiscountAssignmentCreate, DiscountCadence, DiscountDefinitionCreate, DiscountType,
    ReferralBonusCreate, ReferralReversalRequest,
)
from app.discounts.services import DiscountService, windows_overlap
from app.ledger.schemas import AccountCode
from app.tuition.models import RecomputeRequest
from app.tuition.services import TuitionCalculator

from conftest import OCT, SEPT, balance


@pytest.mark.parametrize("a_from, a_to, b_from, b_to, expected", [
    (date(2025, 9, 1), date(2025, 10, 1), date(2025, 10, 1), None, False),
    (date(2025, 9, 1), date(2025, 10, 2), date(2025, 10, 1), None, True),
    (date(2025, 9, 1), None, date(2026, 1, 1), date(2026, 2, 1), True),
    (date(2025, 11, 1), date(2025, 12, 1), date(2025, 9, 1), date(2025, 11, 1), False),
])
def test_windows_overlap_is_half_open(a_from, a_to, b_from, b_to, expected):
    assert windows_overlap(a_from, a_to, b_from, b_to) is expected
    assert windows_overlap(b_from, b_to, a_from, a_to) is expected


def test_percent_rounds_half_up():
    assert percent_of(900_000, 5) == 45_000
    assert percent_of(333, 5) == 17
    assert percent_of(10, 5) == 1
    assert percent_of(9, 5) == 0


async def create_definition(run, name="Scholarship", type_=DiscountType.AMOUNT, value=100_000,
                            cadence=DiscountCadence.MONTHLY):
    return await run(lambda db: DiscountService(db).create_definition(
        DiscountDefinitionCreate(name=name, type=type_, value=value, cadence=cadence)
    ))


async def assign(run, student_id, definition_id, effective_from, effective_to=None):
    return await run(lambda db: DiscountService(db).create_assignment(
        DiscountAssignmentCreate(
            student_id=student_id, discount_def_id=definition_id,
            effective_from=effective_from, effective_to=effective_to,
        )
    ))


async def test_overlapping_assignment_is_rejected(run, roster):
    student_id = await roster.student()
    definition = await create_definition(run)
    first = await assign(run, student_id, definition.id, date(2025, 9, 1), date(2025, 10, 1))

    with pytest.raises(OverlapConflictException) as exc_info:
        await assign(run, student_id, definition.id, date(2025, 9, 15))
    assert exc_info.value.status_code == 409
    assert str(first.id) in exc_info.value.detail

    adjacent = await assign(run, student_id, definition.id, date(2025, 10, 1))
    assert adjacent.id != first.id


async def test_same_window_for_other_definition_is_allowed(run, roster):
    student_id = await roster.student()
    scholarship = await create_definition(run)
    staff = await create_definition(run, name="Staff child", type_=DiscountType.PERCENT, value=20)

    await assign(run, student_id, scholarship.id, date(2025, 9, 1))
    await assign(run, student_id, staff.id, date(2025, 9, 1))

    assignments = await run(lambda db: DiscountService(db).list_student_assignments(student_id))
    assert len(assignments) == 2


async def test_end_discount_stops_yesterday(run, roster):
    student_id = await roster.student()
    definition = await create_definition(run)
    assignment = await assign(run, student_id, definition.id, date(2025, 9, 1))

    ended = await run(lambda db: DiscountService(db).end_discount(assignment.id, today=date(2025, 10, 15)))
    assert ended.effective_to == date(2025, 10, 14)

    again = await run(lambda db: DiscountService(db).end_discount(assignment.id, today=date(2025, 11, 1)))
    assert again.effective_to == date(2025, 10, 14)


async def test_end_discount_before_start_is_rejected(run, roster):
    student_id = await roster.student()
    definition = await create_definition(run)
    assignment = await assign(run, student_id, definition.id, date(2025, 9, 1))

    with pytest.raises(BillingValidationException):
        await run(lambda db: DiscountService(db).end_discount(assignment.id, today=date(2025, 9, 2)))


async def test_assignment_queues_recompute_for_affected_months(run, roster):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    await run(lambda db: TuitionCalculator(db).calculate(student_id, OCT))
    definition = await create_definition(run)

    await assign(run, student_id, definition.id, date(2025, 9, 1))

    async def pending(db):
        result = await db.scalars(select(RecomputeRequest).order_by(RecomputeRequest.month))
        return [(r.month, r.status) for r in result.all()]

    assert await run(pending) == [(SEPT, "pending"), (OCT, "pending")]


async def test_stacking_order_and_cap(run, roster):
    family_id = await roster.family()
    student_id = await roster.student("Alice Tran", family_id=family_id)
    await roster.enrolled_student("Bob Tran", family_id=family_id)
    class_id = await roster.klass()
    await roster.enroll(student_id, class_id, discount_type="amount", discount_value=50_000, discount_cadence="monthly")
    definition = await create_definition(run, value=100_000)
    await assign(run, student_id, definition.id, date(2025, 9, 1))
    await run(lambda db: DiscountService(db).create_referral_bonus(
        ReferralBonusCreate(
            student_id=student_id, type=DiscountType.PERCENT, value=10,
            cadence=DiscountCadence.MONTHLY, effective_from=date(2025, 9, 1),
        )
    ))

    resolution = await run(lambda db: DiscountService(db).preview(student_id, SEPT))

    assert [d.source for d in resolution.discounts] == ["sibling", "enrollment", "special", "referral"]
    # 5% + 50,000 + 100,000 + 10%, percents on the undiscounted base
    assert [d.amount for d in resolution.discounts] == [45_000, 50_000, 100_000, 90_000]
    assert resolution.discount_amount == 285_000


async def test_once_referral_bonus_is_pinned_to_first_month(run, roster):
    student_id = await roster.enrolled_student()
    bonus = await run(lambda db: DiscountService(db).create_referral_bonus(
        ReferralBonusCreate(
            student_id=student_id, type=DiscountType.AMOUNT, value=50_000,
            cadence=DiscountCadence.ONCE, effective_from=date(2025, 9, 1),
        )
    ))

    september = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    october = await run(lambda db: TuitionCalculator(db).calculate(student_id, OCT))
    september_again = await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    stored = await run(lambda db: DiscountService(db).get_referral_bonus(bonus.id))

    assert september.discount_amount == 50_000
    assert [f.type for f in september.review_flags] == ["has_referral_bonus"]
    assert october.discount_amount == 0
    assert september_again.discount_amount == 50_000
    assert stored.applied_month == SEPT


async def test_referral_bonus_reversal_is_a_ledger_adjustment(run, roster):
    student_id = await roster.enrolled_student()
    bonus = await run(lambda db: DiscountService(db).create_referral_bonus(
        ReferralBonusCreate(
            student_id=student_id, type=DiscountType.AMOUNT, value=50_000,
            cadence=DiscountCadence.ONCE, effective_from=date(2025, 9, 1),
        )
    ))
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    result = await run(lambda db: DiscountService(db).reverse_referral_bonus(
        bonus.id, ReferralReversalRequest(amount=50_000, reason="referred family withdrew")
    ))

    async def balances(db):
        return await balance(db, student_id, AccountCode.AR), await balance(db, student_id, AccountCode.DISCOUNT)

    assert result.tx_id
    assert await run(balances) == (900_000, 0)


async def test_removed_referral_overlap_window_frees_the_slot(run, roster):
    student_id = await roster.student()
    create = ReferralBonusCreate(
        student_id=student_id, type=DiscountType.AMOUNT, value=20_000,
        cadence=DiscountCadence.MONTHLY, effective_from=date(2025, 9, 1),
    )
    bonus = await run(lambda db: DiscountService(db).create_referral_bonus(create))

    with pytest.raises(OverlapConflictException):
        await run(lambda db: DiscountService(db).create_referral_bonus(create))

    await run(lambda db: DiscountService(db).remove_referral_bonus(bonus.id))
    again = await run(lambda db: DiscountService(db).create_referral_bonus(create))

    async def bonuses(db):
        rows = await db.scalars(select(ReferralBonus).where(ReferralBonus.student_id == student_id))
        return [(b.id, b.effective_from, b.is_active) for b in rows.all()]

    assert await run(bonuses) == [(again.id, date(2025, 9, 1), True)]

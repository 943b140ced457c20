from sqlalchemy import select

from app.core.config import settings
from app.tuition.models import RecomputeRequest
from app.tuition.outbox import enqueue_recompute
from app.tuition.repository import InvoiceRepository
from app.tuition.services import TuitionCalculator
from app.students.services import StudentService

from conftest import SEPT


async def outbox_rows(run):
    async def load(db):
        result = await db.scalars(select(RecomputeRequest).order_by(RecomputeRequest.student_id, RecomputeRequest.id))
        return [(r.student_id, r.month, r.status, r.attempts, r.reason) for r in result.all()]
    return await run(load)


async def test_pending_requests_are_collapsed(run, roster):
    student_id = await roster.student()

    async def enqueue_twice(db):
        await enqueue_recompute(db, student_id, SEPT, "attendance_changed")
        await enqueue_recompute(db, student_id, SEPT, "enrollment_changed")
        await enqueue_recompute(db, student_id, SEPT, "attendance_changed")
        await db.commit()

    await run(enqueue_twice)

    assert await outbox_rows(run) == [
        (student_id, SEPT, "pending", 0, "attendance_changed; enrollment_changed"),
    ]


async def test_drain_computes_the_invoice(run, roster):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).request_recompute(student_id, SEPT, "attendance_changed"))

    result = await run(lambda db: TuitionCalculator(db).drain_recompute_requests())

    assert (result.processed, result.succeeded, result.failed) == (1, 1, 0)
    invoice = await run(lambda db: InvoiceRepository(db).get_for_month(student_id, SEPT))
    assert invoice.total_amount == 900_000
    assert (await outbox_rows(run))[0][2] == "done"


async def test_failed_request_is_retried_then_abandoned(run, monkeypatch):
    monkeypatch.setattr(settings, "recompute_max_attempts", 2)

    async def enqueue_orphan(db):
        await enqueue_recompute(db, 4242, SEPT, "enrollment_changed")
        await db.commit()

    await run(enqueue_orphan)

    first = await run(lambda db: TuitionCalculator(db).drain_recompute_requests())
    assert (first.failed, first.gave_up) == (1, 0)
    assert (await outbox_rows(run))[0][2:4] == ("pending", 1)

    second = await run(lambda db: TuitionCalculator(db).drain_recompute_requests())
    assert (second.failed, second.gave_up) == (1, 1)
    assert (await outbox_rows(run))[0][2:4] == ("failed", 2)

    third = await run(lambda db: TuitionCalculator(db).drain_recompute_requests())
    assert third.processed == 0


async def test_deactivating_a_sibling_recomputes_the_others(run, roster):
    family_id = await roster.family()
    alice = await roster.enrolled_student("Alice Tran", family_id=family_id)
    bob = await roster.enrolled_student("Bob Tran", family_id=family_id)
    before = await run(lambda db: TuitionCalculator(db).calculate(alice, SEPT))
    assert before.discount_amount == 45_000

    change = await run(lambda db: StudentService(db).set_active(bob, False, month=SEPT))

    assert change.changed is True
    assert change.recompute_student_ids == [bob, alice]
    assert sorted(row[0] for row in await outbox_rows(run)) == sorted([alice, bob])

    await run(lambda db: TuitionCalculator(db).drain_recompute_requests())
    after = await run(lambda db: TuitionCalculator(db).get_invoice_for_month(alice, SEPT))
    assert after.discount_amount == 0
    assert after.total_amount == 900_000


async def test_activation_without_change_is_a_no_op(run, roster):
    student_id = await roster.student()

    change = await run(lambda db: StudentService(db).set_active(student_id, True, month=SEPT))

    assert change.changed is False
    assert await outbox_rows(run) == []

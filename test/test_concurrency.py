import asyncio
import sqlite3

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.core.exceptions import ConcurrencyConflictException
from app.ledger.models import LedgerEntry
from app.ledger.schemas import AccountCode
from app.ledger.services import LedgerService
from app.payments.models import Payment
from app.payments.schemas import PaymentCreate
from app.payments.services import PaymentService
from app.tuition.models import Invoice
from app.tuition.repository import InvoiceRepository
from app.tuition.services import TuitionCalculator
from app.utils.concurrency import is_unique_violation, with_concurrency_retry

from conftest import MID_SEPT, SEPT, balance, ledger_totals


def pay(student_id, amount):
    return PaymentCreate(student_id=student_id, amount=amount, method="cash", occurred_at=MID_SEPT)


async def september(run, student_id):
    return await run(lambda db: InvoiceRepository(db).get_for_month(student_id, SEPT))


def bump_version_after_read(monkeypatch, times):
    """Each of the first `times` invoice reads is followed by another writer moving the row version"""
    original = InvoiceRepository.get_open_invoices
    calls = []

    async def racing(self, student_id, lock=False):
        invoices = await original(self, student_id, lock=lock)
        calls.append(student_id)
        if len(calls) <= times and invoices:
            await self.db.execute(
                update(Invoice)
                .where(Invoice.id == invoices[0].id)
                .values(version=Invoice.version + 1)
                .execution_options(synchronize_session=False)
            )
        return invoices

    monkeypatch.setattr(InvoiceRepository, "get_open_invoices", racing)
    return calls


async def test_concurrent_payments_for_one_student_both_land(run, roster):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    first, second = await asyncio.gather(
        run(lambda db: PaymentService(db).post_payment(pay(student_id, 300_000))),
        run(lambda db: PaymentService(db).post_payment(pay(student_id, 500_000))),
    )

    assert first.applied_amount + second.applied_amount == 800_000
    invoice = await september(run, student_id)
    assert (invoice.paid_amount, invoice.recorded_payment, invoice.status) == (800_000, 800_000, "partial")

    async def state(db):
        report = await LedgerService(db).integrity_report()
        return (
            await db.scalar(select(func.count(Payment.id))),
            await balance(db, student_id, AccountCode.AR),
            report.imbalanced_tx_ids,
            await ledger_totals(db),
        )

    payments, ar, imbalanced, (debits, credits) = await run(state)
    assert (payments, ar, imbalanced) == (2, 100_000, [])
    assert debits == credits


async def test_payment_retries_after_a_recompute_moved_the_invoice(run, roster, monkeypatch):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    calls = bump_version_after_read(monkeypatch, times=1)

    result = await run(lambda db: PaymentService(db).post_payment(pay(student_id, 400_000)))

    assert len(calls) == 2
    assert result.applied_amount == 400_000
    assert (await september(run, student_id)).paid_amount == 400_000

    async def state(db):
        return (
            await db.scalar(select(func.count(Payment.id))),
            await balance(db, student_id, AccountCode.CASH),
        )

    assert await run(state) == (1, 400_000)


async def test_conflict_surfaces_after_max_retries_without_writing(run, roster, monkeypatch):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    entries_before = await run(lambda db: db.scalar(select(func.count(LedgerEntry.id))))
    monkeypatch.setattr(settings, "concurrency_max_retries", 2)
    calls = bump_version_after_read(monkeypatch, times=99)

    with pytest.raises(ConcurrencyConflictException):
        await run(lambda db: PaymentService(db).post_payment(pay(student_id, 400_000)))

    assert len(calls) == 2
    assert (await september(run, student_id)).paid_amount == 0

    async def counts(db):
        return (
            await db.scalar(select(func.count(Payment.id))),
            await db.scalar(select(func.count(LedgerEntry.id))),
        )

    assert await run(counts) == (0, entries_before)


class FakeSession:
    def __init__(self):
        self.rollbacks = 0

    async def rollback(self):
        self.rollbacks += 1


class Writer:
    """Minimal service shape: a `db` and a method that owns its transaction"""

    def __init__(self, error):
        self.db = FakeSession()
        self.error = error
        self.calls = 0

    @with_concurrency_retry
    async def write(self):
        self.calls += 1
        raise self.error


def integrity_error(orig):
    return IntegrityError("INSERT INTO payments ...", {}, orig)


@pytest.mark.parametrize("orig, unique", [
    (sqlite3.IntegrityError("UNIQUE constraint failed: payments.idempotency_key"), True),
    (Exception(1062, "Duplicate entry 'receipt-1' for key 'idempotency_key'"), True),
    (sqlite3.IntegrityError("CHECK constraint failed: ck_payment_amount_positive"), False),
    (sqlite3.IntegrityError("NOT NULL constraint failed: payments.method"), False),
    (Exception(3819, "Check constraint 'ck_payment_amount_positive' is violated."), False),
])
def test_only_duplicate_keys_count_as_races(orig, unique):
    assert is_unique_violation(integrity_error(orig)) is unique


async def test_duplicate_key_is_retried_until_the_limit(monkeypatch):
    monkeypatch.setattr(settings, "concurrency_max_retries", 3)
    writer = Writer(integrity_error(sqlite3.IntegrityError("UNIQUE constraint failed: payments.idempotency_key")))

    with pytest.raises(ConcurrencyConflictException):
        await writer.write()

    assert (writer.calls, writer.db.rollbacks) == (3, 3)


async def test_check_violation_propagates_on_first_attempt(monkeypatch):
    monkeypatch.setattr(settings, "concurrency_max_retries", 3)
    writer = Writer(integrity_error(sqlite3.IntegrityError("CHECK constraint failed: ck_payment_amount_positive")))

    with pytest.raises(IntegrityError):
        await writer.write()

    assert (writer.calls, writer.db.rollbacks) == (1, 0)

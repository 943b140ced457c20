from datetime import date

import pytest
from sqlalchemy import func, select

from app.audit_trail.models import AuditTrail
from app.core.exceptions import BillingValidationException, IdempotencyConflictException
from app.ledger.models import LedgerEntry
from app.ledger.schemas import AccountCode
from app.ledger.services import LedgerService
from app.payments.exceptions import PaymentAlreadyReversedException, PaymentNotFoundException
from app.payments.models import Payment
from app.payments.schemas import PaymentCreate
from app.payments.services import PaymentService
from app.tuition.repository import InvoiceRepository
from app.tuition.services import TuitionCalculator

from conftest import AUG, MID_SEPT, SEPT, balance, ledger_totals


def pay(student_id, amount, method="cash", **extra):
    return PaymentCreate(student_id=student_id, amount=amount, method=method, occurred_at=MID_SEPT, **extra)


async def invoices_by_month(run, student_id):
    async def load(db):
        invoices = await InvoiceRepository(db).get_student_invoices(student_id)
        return {i.month: (i.paid_amount, i.status) for i in invoices}
    return await run(load)


async def test_payment_is_applied_oldest_month_first(run, roster):
    student_id = await roster.enrolled_student(start_date=date(2025, 8, 1))
    await run(lambda db: TuitionCalculator(db).calculate(student_id, AUG))
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    result = await run(lambda db: PaymentService(db).post_payment(pay(student_id, 1_000_000)))

    # August has 8 Mon/Wed sessions, September 9
    assert [(a.month, a.amount) for a in result.applications] == [(AUG, 800_000), (SEPT, 200_000)]
    assert result.applied_amount == 1_000_000
    assert result.credit_amount == 0
    assert result.overpayment_flagged is False
    assert await invoices_by_month(run, student_id) == {AUG: (800_000, "paid"), SEPT: (200_000, "partial")}

    async def ledger_state(db):
        return await balance(db, student_id, AccountCode.AR), await balance(db, student_id, AccountCode.CASH)

    assert await run(ledger_state) == (700_000, 1_000_000)


async def test_overpayment_becomes_credit_and_is_flagged(run, roster):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))

    result = await run(lambda db: PaymentService(db).post_payment(pay(student_id, 1_000_000, method="bank_transfer")))

    assert result.applied_amount == 900_000
    assert result.credit_amount == 100_000
    assert result.credit_balance == 100_000
    assert result.overpayment_flagged is True

    async def state(db):
        flagged = await db.scalar(
            select(func.count(AuditTrail.id)).where(AuditTrail.action == "payment_overpayment_flagged")
        )
        return (
            await balance(db, student_id, AccountCode.AR),
            await balance(db, student_id, AccountCode.BANK),
            await balance(db, student_id, AccountCode.CREDIT),
            flagged,
        )

    assert await run(state) == (0, 1_000_000, 100_000, 1)


async def test_payment_without_invoices_is_all_credit(run, roster):
    student_id = await roster.student()

    result = await run(lambda db: PaymentService(db).post_payment(pay(student_id, 50_000)))

    assert result.applications == []
    assert result.credit_amount == 50_000
    assert result.overpayment_flagged is True


async def test_payment_updates_recorded_payment_for_the_month(run, roster):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    await run(lambda db: PaymentService(db).post_payment(pay(student_id, 300_000)))
    await run(lambda db: PaymentService(db).post_payment(pay(student_id, 200_000)))

    invoice = await run(lambda db: TuitionCalculator(db).get_invoice_for_month(student_id, SEPT))

    assert invoice.recorded_payment == 500_000
    assert invoice.paid_amount == 500_000


@pytest.mark.parametrize("amount, method", [
    (500, "cash"),
    (600_000_000, "cash"),
    (100_000, "cheque"),
])
async def test_invalid_payment_is_rejected_before_any_write(run, roster, amount, method):
    student_id = await roster.student()

    with pytest.raises(BillingValidationException):
        await run(lambda db: PaymentService(db).post_payment(pay(student_id, amount, method=method)))

    async def counts(db):
        return (
            await db.scalar(select(func.count(Payment.id))),
            await db.scalar(select(func.count(LedgerEntry.id))),
        )

    assert await run(counts) == (0, 0)


async def test_replay_with_same_key_returns_first_result(run, roster):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    request = pay(student_id, 400_000, idempotency_key="receipt-0001")

    first = await run(lambda db: PaymentService(db).post_payment(request))
    second = await run(lambda db: PaymentService(db).post_payment(request))

    assert second.replayed is True
    assert second.payment_id == first.payment_id
    assert second.tx_id == first.tx_id
    assert await run(lambda db: db.scalar(select(func.count(Payment.id)))) == 1
    assert await invoices_by_month(run, student_id) == {SEPT: (400_000, "partial")}


async def test_same_key_different_payload_conflicts(run, roster):
    student_id = await roster.student()
    await run(lambda db: PaymentService(db).post_payment(pay(student_id, 400_000, idempotency_key="receipt-0002")))

    with pytest.raises(IdempotencyConflictException):
        await run(lambda db: PaymentService(db).post_payment(
            pay(student_id, 450_000, idempotency_key="receipt-0002")
        ))


async def test_reversal_unapplies_exactly_what_was_applied(run, roster):
    student_id = await roster.enrolled_student(start_date=date(2025, 8, 1))
    await run(lambda db: TuitionCalculator(db).calculate(student_id, AUG))
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    kept = await run(lambda db: PaymentService(db).post_payment(pay(student_id, 300_000)))
    mistaken = await run(lambda db: PaymentService(db).post_payment(pay(student_id, 1_000_000)))

    result = await run(lambda db: PaymentService(db).reverse_payment(mistaken.payment_id, "bounced"))

    assert result.status == "reversed"
    assert len(result.reversal_tx_ids) == 1
    assert [(u.month, u.amount) for u in result.unapplied] == [(AUG, 500_000), (SEPT, 500_000)]
    assert kept.applications[0].amount == 300_000
    assert await invoices_by_month(run, student_id) == {AUG: (300_000, "partial"), SEPT: (0, "unpaid")}

    async def state(db):
        payment = await PaymentService(db).get_payment(mistaken.payment_id)
        invoice = await InvoiceRepository(db).get_for_month(student_id, SEPT)
        return (
            payment.status,
            await balance(db, student_id, AccountCode.AR),
            await balance(db, student_id, AccountCode.CASH),
            invoice.recorded_payment,
        )

    assert await run(state) == ("reversed", 1_400_000, 300_000, 300_000)

    with pytest.raises(PaymentAlreadyReversedException):
        await run(lambda db: PaymentService(db).reverse_payment(mistaken.payment_id, "again"))


async def test_reversing_an_overpayment_removes_the_credit(run, roster):
    student_id = await roster.enrolled_student()
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    payment = await run(lambda db: PaymentService(db).post_payment(pay(student_id, 1_000_000)))

    result = await run(lambda db: PaymentService(db).reverse_payment(payment.payment_id, "duplicate receipt"))

    assert len(result.reversal_tx_ids) == 2

    async def state(db):
        return (
            await balance(db, student_id, AccountCode.AR),
            await balance(db, student_id, AccountCode.CREDIT),
            await balance(db, student_id, AccountCode.CASH),
        )

    assert await run(state) == (900_000, 0, 0)


async def test_unknown_payment(run):
    with pytest.raises(PaymentNotFoundException):
        await run(lambda db: PaymentService(db).reverse_payment(999, "nope"))


async def test_every_transaction_balances(run, roster):
    student_id = await roster.enrolled_student(start_date=date(2025, 8, 1))
    await run(lambda db: TuitionCalculator(db).calculate(student_id, AUG))
    await run(lambda db: TuitionCalculator(db).calculate(student_id, SEPT))
    first = await run(lambda db: PaymentService(db).post_payment(pay(student_id, 1_200_000)))
    await run(lambda db: PaymentService(db).post_payment(pay(student_id, 700_000, method="card")))
    await run(lambda db: PaymentService(db).reverse_payment(first.payment_id, "chargeback"))

    async def check(db):
        report = await LedgerService(db).integrity_report()
        return report.imbalanced_tx_ids, await ledger_totals(db)

    imbalanced, (debits, credits) = await run(check)
    assert imbalanced == []
    assert debits == credits

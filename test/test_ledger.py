import pytest
from sqlalchemy import func, select

from app.ledger.exceptions import ImbalancedTransactionException, InvalidLedgerEntryException
from app.ledger.models import LedgerAccount, LedgerEntry
from app.ledger.schemas import AccountCode, PostingLine
from app.ledger.services import LedgerService, new_tx_id, normal_balance

from conftest import MID_SEPT, SEPT, balance, ledger_totals


async def test_ensure_accounts_is_idempotent(db_session, roster):
    student_id = await roster.student()
    ledger = LedgerService(db_session)

    first = await ledger.ensure_accounts(student_id)
    second = await ledger.ensure_accounts(student_id)
    await db_session.commit()

    assert set(first) == {c.value for c in AccountCode}
    assert {k: a.id for k, a in first.items()} == {k: a.id for k, a in second.items()}
    count = await db_session.scalar(select(func.count(LedgerAccount.id)))
    assert count == len(AccountCode)


async def test_balanced_transfer_moves_money(db_session, roster):
    student_id = await roster.student()
    ledger = LedgerService(db_session)
    accounts = await ledger.ensure_accounts(student_id)

    await ledger.transfer(
        accounts["AR"], accounts["REVENUE"], 250_000, occurred_at=MID_SEPT, month=SEPT
    )
    await db_session.commit()

    assert await balance(db_session, student_id, AccountCode.AR) == 250_000
    assert await balance(db_session, student_id, AccountCode.REVENUE) == 250_000
    assert await ledger_totals(db_session) == (250_000, 250_000)


async def test_imbalanced_transaction_writes_nothing(db_session, roster):
    student_id = await roster.student()
    ledger = LedgerService(db_session)
    accounts = await ledger.ensure_accounts(student_id)

    with pytest.raises(ImbalancedTransactionException):
        await ledger.post(
            new_tx_id(),
            [
                PostingLine(account_id=accounts["AR"].id, debit=100_000),
                PostingLine(account_id=accounts["REVENUE"].id, credit=99_999),
            ],
            occurred_at=MID_SEPT,
            month=SEPT,
        )

    assert await db_session.scalar(select(func.count(LedgerEntry.id))) == 0


async def test_entry_needs_exactly_one_side(db_session, roster):
    student_id = await roster.student()
    ledger = LedgerService(db_session)
    accounts = await ledger.ensure_accounts(student_id)

    with pytest.raises(InvalidLedgerEntryException):
        await ledger.post(
            new_tx_id(),
            [
                PostingLine(account_id=accounts["AR"].id, debit=5_000, credit=5_000),
            ],
            occurred_at=MID_SEPT,
            month=SEPT,
        )


async def test_reversal_nets_to_zero(db_session, roster):
    student_id = await roster.student()
    ledger = LedgerService(db_session)
    accounts = await ledger.ensure_accounts(student_id)
    tx_id = await ledger.transfer(accounts["CASH"], accounts["AR"], 40_000, occurred_at=MID_SEPT, month=SEPT)

    reversal_id = await ledger.reverse_transaction(tx_id, occurred_at=MID_SEPT, memo="entered twice")
    await db_session.commit()

    assert reversal_id != tx_id
    assert await balance(db_session, student_id, AccountCode.CASH) == 0
    assert await balance(db_session, student_id, AccountCode.AR) == 0
    original = await ledger.get_transaction(tx_id)
    assert original.total_debit == original.total_credit == 40_000


def test_normal_balance_flips_credit_normal_accounts():
    assert normal_balance("AR", 500) == 500
    assert normal_balance("CASH", 500) == 500
    assert normal_balance("REVENUE", -500) == 500
    assert normal_balance("CREDIT", -500) == 500


async def test_statement_and_integrity(db_session, roster):
    student_id = await roster.student()
    ledger = LedgerService(db_session)
    accounts = await ledger.ensure_accounts(student_id)
    await ledger.transfer(accounts["AR"], accounts["REVENUE"], 900_000, occurred_at=MID_SEPT, month=SEPT)
    await ledger.transfer(accounts["BANK"], accounts["AR"], 300_000, occurred_at=MID_SEPT, month=SEPT)
    await db_session.commit()

    statement = await ledger.statement(student_id)
    assert statement.amount_owed == 600_000
    assert statement.credit_available == 0
    assert len(statement.entries) == 4

    report = await ledger.integrity_report()
    assert report.checked_transactions == 2
    assert report.imbalanced_tx_ids == []

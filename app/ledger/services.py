# app/ledger/services.py

"""
Service layer for the double-entry ledger.

The ledger has no business meaning: it only guarantees that every
transaction balances, that entries are append-only, and that balances are
sums over entries. Callers own the surrounding database transaction.
"""

from datetime import datetime
from typing import Dict, List, Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.utils.logger import get_logger
from app.ledger.repository import LedgerRepository
from app.ledger.models import LedgerAccount, LedgerEntry
from app.ledger.schemas import (
    AccountCode, CREDIT_NORMAL_CODES, PostingLine, AccountBalance,
    StudentBalances, StudentStatement, LedgerEntryResponse,
    TransactionResponse, IntegrityReport,
)
from app.ledger.exceptions import (
    ImbalancedTransactionException, InvalidLedgerEntryException,
    LedgerNotFoundException,
)

logger = get_logger(__name__)


def new_tx_id() -> str:
    """Generate a transaction id"""
    return str(uuid.uuid4())


def normal_balance(code: str, raw: int) -> int:
    """Express a raw debit-minus-credit balance on the account's normal side"""
    return -raw if AccountCode(code) in CREDIT_NORMAL_CODES else raw


class LedgerService:
    """
    Business-agnostic ledger operations.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = LedgerRepository(db)

    # === Accounts ===

    async def ensure_accounts(self, student_id: int) -> Dict[str, LedgerAccount]:
        """
        Make sure every account code exists for a student and return them keyed
        by code. Safe to call concurrently; duplicate creation is a no-op.
        """
        existing = {a.code: a for a in await self.repo.get_accounts(student_id)}
        missing = [c.value for c in AccountCode if c.value not in existing]
        if missing:
            await self.repo.insert_accounts_ignoring_existing(student_id, missing)
            existing = {a.code: a for a in await self.repo.get_accounts(student_id)}
            logger.info("Ensured ledger accounts", student_id=student_id, created=missing)
        return existing

    # === Posting ===

    async def post(
        self,
        tx_id: str,
        lines: List[PostingLine],
        occurred_at: datetime,
        month: str,
        memo: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> List[LedgerEntry]:
        """
        Post a balanced transaction.

        Raises ImbalancedTransactionException if debits and credits differ;
        nothing is written in that case. All lines are flushed together, so
        they commit or roll back with the caller's transaction as a unit.
        """
        if not lines:
            raise InvalidLedgerEntryException(f"Transaction {tx_id} has no entries")

        for line in lines:
            if (line.debit == 0) == (line.credit == 0):
                raise InvalidLedgerEntryException(
                    f"Transaction {tx_id}: each entry needs exactly one non-zero side "
                    f"(account {line.account_id}, debit {line.debit}, credit {line.credit})"
                )

        total_debit = sum(line.debit for line in lines)
        total_credit = sum(line.credit for line in lines)
        if total_debit != total_credit:
            logger.error(
                "Rejected imbalanced transaction",
                tx_id=tx_id, total_debit=total_debit, total_credit=total_credit
            )
            raise ImbalancedTransactionException(tx_id, total_debit, total_credit)

        entries = [
            LedgerEntry(
                tx_id=tx_id,
                account_id=line.account_id,
                debit=line.debit,
                credit=line.credit,
                occurred_at=occurred_at,
                month=month,
                memo=line.memo or memo,
                created_by=created_by,
            )
            for line in lines
        ]
        await self.repo.add_entries(entries)

        logger.info("Posted ledger transaction", tx_id=tx_id, amount=total_debit, lines=len(entries), month=month)
        return entries

    async def transfer(
        self,
        debit_account: LedgerAccount,
        credit_account: LedgerAccount,
        amount: int,
        occurred_at: datetime,
        month: str,
        debit_memo: Optional[str] = None,
        credit_memo: Optional[str] = None,
        created_by: Optional[int] = None,
        tx_id: Optional[str] = None,
    ) -> str:
        """Post a two-line transaction moving `amount` from one account to another"""
        tx_id = tx_id or new_tx_id()
        await self.post(
            tx_id,
            [
                PostingLine(account_id=debit_account.id, debit=amount, memo=debit_memo),
                PostingLine(account_id=credit_account.id, credit=amount, memo=credit_memo),
            ],
            occurred_at=occurred_at,
            month=month,
            created_by=created_by,
        )
        return tx_id

    async def reverse_transaction(
        self,
        tx_id: str,
        occurred_at: datetime,
        memo: str,
        created_by: Optional[int] = None,
    ) -> str:
        """Post a new transaction that mirrors `tx_id` with sides swapped"""
        original = await self.repo.get_entries_by_tx(tx_id)
        if not original:
            raise LedgerNotFoundException(tx_id)

        reversal_id = new_tx_id()
        lines = [
            PostingLine(account_id=e.account_id, debit=e.credit, credit=e.debit, memo=memo)
            for e in original
        ]
        await self.post(reversal_id, lines, occurred_at=occurred_at, month=original[0].month, created_by=created_by)
        logger.info("Reversed ledger transaction", tx_id=tx_id, reversal_tx_id=reversal_id)
        return reversal_id

    # === Balances ===

    async def balance(self, account_id: int, through_month: Optional[str] = None) -> int:
        """sum(debit - credit) for an account up to and including `through_month`"""
        return await self.repo.sum_account(account_id, through_month)

    async def account_balance(
        self, student_id: int, code: AccountCode, through_month: Optional[str] = None
    ) -> int:
        """Balance of one student account on its normal side"""
        raw = (await self.repo.sum_by_code(student_id, through_month)).get(code.value, 0)
        return normal_balance(code.value, raw)

    async def received_in_month(self, student_id: int, month: str) -> int:
        """Net money booked to CASH and BANK for a student within one month"""
        raw = await self.repo.sum_by_code(student_id, in_month=month)
        return raw.get(AccountCode.CASH.value, 0) + raw.get(AccountCode.BANK.value, 0)

    async def student_balances(self, student_id: int, through_month: Optional[str] = None) -> StudentBalances:
        """Every account balance for a student"""
        accounts = {a.code: a for a in await self.repo.get_accounts(student_id)}
        raw_by_code = await self.repo.sum_by_code(student_id, through_month)

        balances = {}
        for code in AccountCode:
            raw = raw_by_code.get(code.value, 0)
            account = accounts.get(code.value)
            balances[code.value] = AccountBalance(
                code=code,
                account_id=account.id if account else None,
                raw_balance=raw,
                balance=normal_balance(code.value, raw),
            )

        return StudentBalances(
            student_id=student_id,
            through_month=through_month,
            accounts=balances,
            amount_owed=max(balances[AccountCode.AR.value].balance, 0),
            credit_available=max(balances[AccountCode.CREDIT.value].balance, 0),
        )

    async def statement(self, student_id: int, through_month: Optional[str] = None) -> StudentStatement:
        """Balances plus the underlying entries"""
        balances = await self.student_balances(student_id, through_month)
        entries = await self.repo.get_student_entries(student_id, through_month)
        return StudentStatement(
            **balances.model_dump(),
            entries=[LedgerEntryResponse.model_validate(e) for e in entries],
        )

    async def get_transaction(self, tx_id: str) -> TransactionResponse:
        """All entries of one transaction"""
        entries = await self.repo.get_entries_by_tx(tx_id)
        if not entries:
            raise LedgerNotFoundException(tx_id)
        return TransactionResponse(
            tx_id=tx_id,
            total_debit=sum(e.debit for e in entries),
            total_credit=sum(e.credit for e in entries),
            entries=[LedgerEntryResponse.model_validate(e) for e in entries],
        )

    async def integrity_report(self) -> IntegrityReport:
        """Scan for transactions that violate the balance invariant"""
        imbalanced = await self.repo.get_imbalanced_tx_ids()
        if imbalanced:
            logger.error("Imbalanced transactions found", tx_ids=imbalanced)
        return IntegrityReport(
            checked_transactions=await self.repo.count_transactions(),
            imbalanced_tx_ids=imbalanced,
        )

# app/ledger/repository.py

"""
Repository layer for the ledger module.
Handles all database operations for ledger_accounts and ledger_entries.
"""

from typing import Dict, List, Optional

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.utils.logger import get_logger
from app.ledger.models import LedgerAccount, LedgerEntry

logger = get_logger(__name__)


class LedgerRepository:
    """
    Repository for ledger database operations.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # === Account Operations ===

    async def insert_accounts_ignoring_existing(self, student_id: int, codes: List[str]) -> None:
        """
        Create the given accounts for a student; rows that already exist are
        left alone, including rows created concurrently by another request.
        """
        rows = [{"student_id": student_id, "code": code} for code in codes]
        dialect = self.db.get_bind().dialect.name

        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
            stmt = insert(LedgerAccount).values(rows).on_conflict_do_nothing(
                index_elements=["student_id", "code"]
            )
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
            stmt = insert(LedgerAccount).values(rows).on_conflict_do_nothing(
                index_elements=["student_id", "code"]
            )
        elif dialect in ("mysql", "mariadb"):
            from sqlalchemy.dialects.mysql import insert
            stmt = insert(LedgerAccount).values(rows).prefix_with("IGNORE")
        else:
            for row in rows:
                try:
                    async with self.db.begin_nested():
                        self.db.add(LedgerAccount(**row))
                except IntegrityError:
                    logger.debug("Account already exists", **row)
            return

        await self.db.execute(stmt)

    async def get_accounts(self, student_id: int) -> List[LedgerAccount]:
        """All accounts of a student"""
        stmt = select(LedgerAccount).where(LedgerAccount.student_id == student_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # === Entry Operations ===

    async def add_entries(self, entries: List[LedgerEntry]) -> List[LedgerEntry]:
        """Write a group of entries in one flush"""
        self.db.add_all(entries)
        await self.db.flush()
        logger.debug("Flushed ledger entries", count=len(entries), tx_id=entries[0].tx_id)
        return entries

    async def get_entries_by_tx(self, tx_id: str) -> List[LedgerEntry]:
        """Entries belonging to one transaction"""
        stmt = select(LedgerEntry).where(LedgerEntry.tx_id == tx_id).order_by(LedgerEntry.id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def sum_account(self, account_id: int, through_month: Optional[str] = None) -> int:
        """sum(debit - credit) for an account up to and including a month"""
        conditions = [LedgerEntry.account_id == account_id]
        if through_month:
            conditions.append(LedgerEntry.month <= through_month)
        stmt = select(
            func.coalesce(func.sum(LedgerEntry.debit - LedgerEntry.credit), 0)
        ).where(and_(*conditions))
        result = await self.db.execute(stmt)
        return int(result.scalar() or 0)

    async def sum_by_code(
        self, student_id: int, through_month: Optional[str] = None, in_month: Optional[str] = None
    ) -> Dict[str, int]:
        """Raw balances of every account of a student, keyed by code; `in_month` limits to one month"""
        conditions = [LedgerAccount.student_id == student_id]
        if through_month:
            conditions.append(LedgerEntry.month <= through_month)
        if in_month:
            conditions.append(LedgerEntry.month == in_month)
        stmt = (
            select(
                LedgerAccount.code,
                func.coalesce(func.sum(LedgerEntry.debit - LedgerEntry.credit), 0).label("raw"),
            )
            .join(LedgerEntry, LedgerEntry.account_id == LedgerAccount.id)
            .where(and_(*conditions))
            .group_by(LedgerAccount.code)
        )
        result = await self.db.execute(stmt)
        return {row.code: int(row.raw or 0) for row in result.all()}

    async def get_student_entries(
        self, student_id: int, through_month: Optional[str] = None
    ) -> List[LedgerEntry]:
        """Entries on any account of a student, in posting order"""
        conditions = [LedgerAccount.student_id == student_id]
        if through_month:
            conditions.append(LedgerEntry.month <= through_month)
        stmt = (
            select(LedgerEntry)
            .join(LedgerAccount, LedgerEntry.account_id == LedgerAccount.id)
            .where(and_(*conditions))
            .order_by(LedgerEntry.occurred_at, LedgerEntry.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_transactions(self) -> int:
        """Number of distinct transactions"""
        stmt = select(func.count(func.distinct(LedgerEntry.tx_id)))
        result = await self.db.execute(stmt)
        return int(result.scalar() or 0)

    async def get_imbalanced_tx_ids(self) -> List[str]:
        """Transactions whose debits and credits differ"""
        stmt = (
            select(LedgerEntry.tx_id)
            .group_by(LedgerEntry.tx_id)
            .having(func.sum(LedgerEntry.debit) != func.sum(LedgerEntry.credit))
        )
        result = await self.db.execute(stmt)
        return [row[0] for row in result.all()]


# app/ledger/models.py

"""
Double-entry ledger models - SQLAlchemy 2.x

- LedgerAccount: one per (student, code), created lazily, never deleted.
- LedgerEntry: immutable debit or credit line; entries sharing a tx_id balance.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger, String, DateTime, Index, ForeignKey, Integer, Text,
    UniqueConstraint, CheckConstraint, event, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.db import Base
from app.ledger.exceptions import ImmutablePostingException


class LedgerAccount(Base):
    """
    Per-student account. Codes: AR, REVENUE, DISCOUNT, CASH, BANK, CREDIT.
    """
    __tablename__ = "ledger_accounts"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(
        SQLEnum("AR", "REVENUE", "DISCOUNT", "CASH", "BANK", "CREDIT", name="ledger_account_code_enum"),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("student_id", "code", name="uq_ledger_account_student_code"),
    )

    def __repr__(self) -> str:
        return f"<LedgerAccount(id={self.id}, student_id={self.student_id}, code='{self.code}')>"


class LedgerEntry(Base):
    """
    Immutable record of one side of a financial transaction.

    Core Principles:
    - Entries with the same tx_id always balance (sum debit == sum credit)
    - Exactly one of debit/credit is non-zero
    - Never edited or deleted after creation; corrections are new offsetting entries
    """
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    tx_id: Mapped[str] = mapped_column(
        String(36), nullable=False, index=True,
        comment="Groups the entries of one balanced transaction"
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_accounts.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    debit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    credit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    month: Mapped[str] = mapped_column(
        String(7), nullable=False, index=True, comment="Billing month YYYY-MM"
    )
    memo: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    account: Mapped["LedgerAccount"] = relationship(lazy="selectin")

    __table_args__ = (
        CheckConstraint("debit >= 0 AND credit >= 0", name="ck_ledger_entry_non_negative"),
        Index("idx_entry_account_month", "account_id", "month"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry(id={self.id}, tx_id='{self.tx_id}', account_id={self.account_id}, "
            f"debit={self.debit}, credit={self.credit})>"
        )


@event.listens_for(LedgerEntry, "before_update")
def _block_entry_update(mapper, connection, target):
    raise ImmutablePostingException(target.tx_id)


@event.listens_for(LedgerEntry, "before_delete")
def _block_entry_delete(mapper, connection, target):
    raise ImmutablePostingException(target.tx_id)

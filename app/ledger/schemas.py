# app/ledger/schemas.py

"""
Pydantic schemas for the ledger module.
"""

from datetime import datetime
from typing import Dict, List, Optional
from enum import Enum

from pydantic import BaseModel, Field, ConfigDict


class AccountCode(str, Enum):
    """Per-student ledger account codes"""
    AR = "AR"
    REVENUE = "REVENUE"
    DISCOUNT = "DISCOUNT"
    CASH = "CASH"
    BANK = "BANK"
    CREDIT = "CREDIT"


# Accounts whose balance grows with credits (liability/revenue side)
CREDIT_NORMAL_CODES = {AccountCode.REVENUE, AccountCode.CREDIT}


class PostingLine(BaseModel):
    """One side of a transaction to post"""
    account_id: int
    debit: int = Field(0, ge=0)
    credit: int = Field(0, ge=0)
    memo: Optional[str] = None


class LedgerEntryResponse(BaseModel):
    """Schema for a posted entry"""
    id: int
    tx_id: str
    account_id: int
    debit: int
    credit: int
    occurred_at: datetime
    month: str
    memo: Optional[str] = None
    created_by: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class AccountBalance(BaseModel):
    """Balance of one account"""
    code: AccountCode
    account_id: Optional[int] = None
    raw_balance: int = Field(..., description="sum(debit) - sum(credit)")
    balance: int = Field(..., description="Balance on the account's normal side")


class StudentBalances(BaseModel):
    """All account balances for a student through a month"""
    student_id: int
    through_month: Optional[str] = None
    accounts: Dict[str, AccountBalance]
    amount_owed: int
    credit_available: int


class StudentStatement(StudentBalances):
    """Balances plus the entries behind them"""
    entries: List[LedgerEntryResponse]


class TransactionResponse(BaseModel):
    """All entries of one transaction"""
    tx_id: str
    total_debit: int
    total_credit: int
    entries: List[LedgerEntryResponse]


class IntegrityReport(BaseModel):
    """Result of the balance-invariant scan"""
    checked_transactions: int
    imbalanced_tx_ids: List[str]

# app/ledger/exceptions.py

"""
Custom exceptions for the ledger module.
"""

from fastapi import status

from app.core.exceptions import BillingBaseException


class LedgerBaseException(BillingBaseException):
    """Base exception for all ledger errors"""


class ImbalancedTransactionException(LedgerBaseException):
    """A posting attempted with sum(debit) != sum(credit). Never retried."""
    def __init__(self, tx_id: str, total_debit: int, total_credit: int):
        self.tx_id = tx_id
        self.total_debit = total_debit
        self.total_credit = total_credit
        super().__init__(
            f"Transaction {tx_id} is imbalanced: debit {total_debit} != credit {total_credit}",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class InvalidLedgerEntryException(LedgerBaseException):
    """Invalid ledger entry"""
    def __init__(self, message: str):
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)


class ImmutablePostingException(LedgerBaseException):
    """Cannot edit posted entry"""
    def __init__(self, tx_id: str):
        super().__init__(
            f"Cannot modify posted entry of transaction {tx_id}. Use a reversal instead.",
            status.HTTP_403_FORBIDDEN,
        )


class LedgerNotFoundException(LedgerBaseException):
    """Ledger transaction not found"""
    def __init__(self, tx_id: str):
        super().__init__(f"Ledger transaction not found: {tx_id}", status.HTTP_404_NOT_FOUND)

# app/payments/exceptions.py

"""
Custom exceptions for the payments module.
"""

from fastapi import status

from app.core.exceptions import BillingBaseException


class PaymentBaseException(BillingBaseException):
    """Base exception for all payment errors"""


class PaymentNotFoundException(PaymentBaseException):
    """Payment not found"""
    def __init__(self, payment_id: int):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}", status.HTTP_404_NOT_FOUND)


class PaymentAlreadyReversedException(PaymentBaseException):
    """Payment was already reversed"""
    def __init__(self, payment_id: int):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} is already reversed", status.HTTP_409_CONFLICT)

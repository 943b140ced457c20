# app/tuition/exceptions.py

"""
Custom exceptions for the tuition module.
"""

from fastapi import status

from app.core.exceptions import BillingBaseException


class TuitionBaseException(BillingBaseException):
    """Base exception for tuition errors"""


class InvoiceNotFoundException(TuitionBaseException):
    """Invoice not found"""
    def __init__(self, invoice_id=None, student_id=None, month=None):
        if invoice_id is not None:
            message = f"Invoice not found: {invoice_id}"
        else:
            message = f"No invoice for student {student_id} in {month}"
        super().__init__(message, status.HTTP_404_NOT_FOUND)

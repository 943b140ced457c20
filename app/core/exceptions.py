# app/core/exceptions.py

"""
Exceptions shared by every billing module.
"""

from typing import Optional

from fastapi import HTTPException, status


class BillingBaseException(HTTPException):
    """Base exception for all billing errors"""
    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR):
        self.message = message
        super().__init__(status_code=status_code, detail=message)


class BillingValidationException(BillingBaseException):
    """Malformed or out-of-range input, rejected before any write"""
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}", status.HTTP_422_UNPROCESSABLE_ENTITY)


class ConcurrencyConflictException(BillingBaseException):
    """A concurrent write lost a race; safe to retry the whole operation"""
    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message or "The record was modified concurrently. Please try again.",
            status.HTTP_409_CONFLICT,
        )


class IdempotencyConflictException(BillingBaseException):
    """Idempotency key reused with a different request payload"""
    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Idempotency key '{idempotency_key}' was already used for a different request",
            status.HTTP_409_CONFLICT,
        )

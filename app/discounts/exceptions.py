# app/discounts/exceptions.py

"""
Custom exceptions for the discounts module.
"""

from datetime import date
from typing import Optional

from fastapi import status

from app.core.exceptions import BillingBaseException


class DiscountBaseException(BillingBaseException):
    """Base exception for all discount errors"""


class OverlapConflictException(DiscountBaseException):
    """New window overlaps an existing assignment for the same student+source"""
    def __init__(self, existing_id: int, effective_from: date, effective_to: Optional[date]):
        self.existing_id = existing_id
        window_end = effective_to.isoformat() if effective_to else "open-ended"
        super().__init__(
            f"Overlaps existing assignment {existing_id} "
            f"[{effective_from.isoformat()}, {window_end}); choose a non-overlapping window",
            status.HTTP_409_CONFLICT,
        )


class DiscountDefinitionNotFoundException(DiscountBaseException):
    """Discount definition not found"""
    def __init__(self, definition_id: int):
        super().__init__(f"Discount definition not found: {definition_id}", status.HTTP_404_NOT_FOUND)


class DiscountAssignmentNotFoundException(DiscountBaseException):
    """Discount assignment not found"""
    def __init__(self, assignment_id: int):
        super().__init__(f"Discount assignment not found: {assignment_id}", status.HTTP_404_NOT_FOUND)


class ReferralBonusNotFoundException(DiscountBaseException):
    """Referral bonus not found"""
    def __init__(self, bonus_id: int):
        super().__init__(f"Referral bonus not found: {bonus_id}", status.HTTP_404_NOT_FOUND)

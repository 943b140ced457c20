# app/review/schemas.py

"""
Pydantic schemas for the review queue.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from app.tuition.schemas import ConfirmationStatus, InvoiceResponse, ReviewFlagType


class ReviewGroup(BaseModel):
    """Invoices sharing one review-flag kind"""
    flag_type: ReviewFlagType
    label: str
    count: int
    invoices: List[InvoiceResponse]


class ReviewQueueResponse(BaseModel):
    """Invoices awaiting confirmation, grouped by flag kind in display order"""
    month: Optional[str] = None
    total_invoices: int
    groups: List[ReviewGroup]


class ConfirmTuitionRequest(BaseModel):
    """Confirm a selected set of invoices"""
    invoice_ids: List[int] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=2048)
    confirmation_status: ConfirmationStatus = ConfirmationStatus.CONFIRMED


class ConfirmGroupRequest(BaseModel):
    """Confirm every pending invoice carrying one flag kind"""
    flag_type: ReviewFlagType
    month: Optional[str] = Field(None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    notes: Optional[str] = Field(None, max_length=2048)


class ConfirmResult(BaseModel):
    """Outcome of a confirmation"""
    confirmed: int
    invoice_ids: List[int]

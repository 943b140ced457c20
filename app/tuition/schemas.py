# app/tuition/schemas.py

"""
Pydantic schemas for invoices, review flags and recompute requests.

Review flags are a closed set of kinds, each with its own typed payload.
They are persisted as JSON and parsed back through `REVIEW_FLAGS_ADAPTER`.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.discounts.schemas import ResolvedDiscount


class InvoiceStatus(str, Enum):
    """Payment state of an invoice"""
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class ConfirmationStatus(str, Enum):
    """Review state of an invoice"""
    NEEDS_REVIEW = "needs_review"
    CONFIRMED = "confirmed"
    ADJUSTED = "adjusted"
    AUTO_APPROVED = "auto_approved"


class ReviewFlagType(str, Enum):
    """Every kind of review flag, in display order"""
    DATA_INTEGRITY = "data_integrity"
    TUITION_ADJUSTMENT = "tuition_adjustment"
    RATE_OVERRIDE = "rate_override"
    SIBLING_DISCOUNT = "sibling_discount"
    HAS_SPECIAL_DISCOUNT = "has_special_discount"
    HAS_REFERRAL_BONUS = "has_referral_bonus"
    LOW_TUITION = "low_tuition"


def derive_status(paid_amount: int, total_amount: int) -> InvoiceStatus:
    """paid when fully covered (a zero invoice counts as paid), partial when anything was paid"""
    if paid_amount >= total_amount:
        return InvoiceStatus.PAID
    if paid_amount > 0:
        return InvoiceStatus.PARTIAL
    return InvoiceStatus.UNPAID


# === Line items ===

class LineItem(BaseModel):
    """One enrollment's contribution to the base amount"""
    enrollment_id: int
    class_id: Optional[int] = None
    class_name: Optional[str] = None
    sessions: int = 0
    rate: int = 0
    class_rate: Optional[int] = None
    rate_overridden: bool = False
    amount: int = 0
    missing_class: bool = False


# === Review flags ===

class DataIntegrityIssue(BaseModel):
    enrollment_id: int
    class_id: Optional[int] = None
    reason: str


class DataIntegrityFlag(BaseModel):
    type: Literal["data_integrity"] = "data_integrity"
    label: str = "Enrollment excluded: class data missing"
    issues: List[DataIntegrityIssue]


class TuitionAdjustmentFlag(BaseModel):
    type: Literal["tuition_adjustment"] = "tuition_adjustment"
    label: str = "Tuition differs from last month's payment"
    expected: int = Field(..., description="Previous month's recorded payment")
    actual: int = Field(..., description="This month's total")
    difference: int


class RateOverrideDetail(BaseModel):
    enrollment_id: int
    class_rate: Optional[int] = None
    override_rate: int


class RateOverrideFlag(BaseModel):
    type: Literal["rate_override"] = "rate_override"
    label: str = "Custom session rate"
    overrides: List[RateOverrideDetail]


class SiblingDiscountFlag(BaseModel):
    type: Literal["sibling_discount"] = "sibling_discount"
    label: str = "Sibling discount newly applied"
    percent: int
    amount: int
    active_siblings: int


class SpecialDiscountFlag(BaseModel):
    type: Literal["has_special_discount"] = "has_special_discount"
    label: str = "Special discount applied"
    names: List[str]
    amount: int


class ReferralBonusFlag(BaseModel):
    type: Literal["has_referral_bonus"] = "has_referral_bonus"
    label: str = "Referral bonus applied"
    bonus_ids: List[int]
    amount: int


class LowTuitionFlag(BaseModel):
    type: Literal["low_tuition"] = "low_tuition"
    label: str = "Total unusually low for the base amount"
    base_amount: int
    total_amount: int
    ratio: float


ReviewFlag = Annotated[
    Union[
        DataIntegrityFlag,
        TuitionAdjustmentFlag,
        RateOverrideFlag,
        SiblingDiscountFlag,
        SpecialDiscountFlag,
        ReferralBonusFlag,
        LowTuitionFlag,
    ],
    Field(discriminator="type"),
]

REVIEW_FLAGS_ADAPTER = TypeAdapter(List[ReviewFlag])


# === Invoices ===

class InvoiceResponse(BaseModel):
    """Invoice snapshot"""
    id: int
    student_id: int
    month: str
    base_amount: int
    discount_amount: int
    total_amount: int
    paid_amount: int
    recorded_payment: int
    status: InvoiceStatus
    confirmation_status: ConfirmationStatus
    review_flags: List[ReviewFlag] = []
    confirmation_notes: Optional[str] = None
    line_items: List[LineItem] = []
    discount_breakdown: List[ResolvedDiscount] = []
    carry_in_debt: int = 0
    carry_in_credit: int = 0
    carry_out_debt: int = 0
    carry_out_credit: int = 0
    version: int

    model_config = ConfigDict(from_attributes=True)


class CalculateTuitionRequest(BaseModel):
    """Compute (or refresh) one student's invoice"""
    student_id: int
    month: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")


class RecomputeTrigger(BaseModel):
    """External event asking for a recompute (attendance, enrollment change, ...)"""
    student_id: int
    month: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    reason: str = Field(..., min_length=1, max_length=255)


class RecomputeRequestResponse(BaseModel):
    """Outbox row"""
    id: int
    student_id: int
    month: str
    reason: str
    status: str
    attempts: int
    last_error: Optional[str] = None
    created_on: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RecomputeDrainResult(BaseModel):
    """Summary of one outbox drain pass"""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    gave_up: int = 0

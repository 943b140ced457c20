# app/discounts/schemas.py

"""
Pydantic schemas for discounts, assignments and referral bonuses.
"""

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class DiscountType(str, Enum):
    """How a discount value is interpreted"""
    PERCENT = "percent"
    AMOUNT = "amount"


class DiscountCadence(str, Enum):
    """Whether a discount recurs"""
    ONCE = "once"
    MONTHLY = "monthly"


class DiscountSource(str, Enum):
    """Discount sources, in stacking order"""
    SIBLING = "sibling"
    ENROLLMENT = "enrollment"
    SPECIAL = "special"
    REFERRAL = "referral"


# === Definitions ===

class DiscountDefinitionCreate(BaseModel):
    """Schema for creating a discount definition"""
    name: str = Field(..., min_length=1, max_length=255)
    type: DiscountType
    value: int = Field(..., gt=0)
    cadence: DiscountCadence = DiscountCadence.MONTHLY

    @model_validator(mode="after")
    def check_percent(self):
        if self.type == DiscountType.PERCENT and self.value > 100:
            raise ValueError("Percent discounts cannot exceed 100")
        return self


class DiscountDefinitionResponse(BaseModel):
    """Schema for a discount definition"""
    id: int
    name: str
    type: DiscountType
    value: int
    cadence: DiscountCadence
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


# === Windows ===

class EffectiveWindow(BaseModel):
    """Half-open [effective_from, effective_to) window"""
    effective_from: date
    effective_to: Optional[date] = None
    note: Optional[str] = None

    @model_validator(mode="after")
    def check_window(self):
        if self.effective_to is not None and self.effective_to <= self.effective_from:
            raise ValueError("effective_to must be after effective_from")
        return self


class DiscountAssignmentCreate(EffectiveWindow):
    """Schema for assigning a discount definition to a student"""
    student_id: int
    discount_def_id: int


class DiscountAssignmentResponse(BaseModel):
    """Schema for a discount assignment"""
    id: int
    student_id: int
    discount_def_id: int
    effective_from: date
    effective_to: Optional[date] = None
    note: Optional[str] = None
    applied_month: Optional[str] = None
    created_on: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReferralBonusCreate(EffectiveWindow):
    """Schema for granting a referral bonus"""
    student_id: int
    type: DiscountType
    value: int = Field(..., gt=0)
    cadence: DiscountCadence = DiscountCadence.ONCE

    @model_validator(mode="after")
    def check_percent(self):
        if self.type == DiscountType.PERCENT and self.value > 100:
            raise ValueError("Percent bonuses cannot exceed 100")
        return self


class ReferralBonusResponse(BaseModel):
    """Schema for a referral bonus"""
    id: int
    student_id: int
    type: DiscountType
    value: int
    cadence: DiscountCadence
    effective_from: date
    effective_to: Optional[date] = None
    note: Optional[str] = None
    applied_month: Optional[str] = None
    created_on: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReferralReversalRequest(BaseModel):
    """Reverse part or all of a granted referral bonus"""
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=512)
    month: Optional[str] = Field(None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$")


class ReferralReversalResponse(BaseModel):
    """Result of a referral bonus reversal"""
    bonus_id: int
    student_id: int
    tx_id: str
    amount: int


# === Resolution ===

class ResolvedDiscount(BaseModel):
    """One discount that applies to a billing month"""
    source: DiscountSource
    source_id: Optional[int] = None
    name: str
    type: DiscountType
    value: int
    cadence: DiscountCadence
    amount: int = Field(..., ge=0, description="Reduction computed for this month")


class DiscountResolution(BaseModel):
    """Discounts for a (student, month) against a base amount"""
    student_id: int
    month: str
    base_amount: int
    discounts: List[ResolvedDiscount] = []
    discount_amount: int = 0
    sources: List[DiscountSource] = []
    active_siblings: int = 0
    sibling_status: Optional[str] = None
    sibling_winner_id: Optional[int] = None

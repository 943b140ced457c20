# app/payments/schemas.py

"""
Pydantic schemas for single-student and family payments.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LeftoverPolicy(str, Enum):
    """What happens to money left after every sibling is paid up"""
    UNAPPLIED_CASH = "unapplied_cash"
    VOLUNTARY_CONTRIBUTION = "voluntary_contribution"


class PaymentStatus(str, Enum):
    POSTED = "posted"
    REVERSED = "reversed"


# === Requests ===

class PaymentCreate(BaseModel):
    """
    Post a payment for one student.

    Amount bounds and accepted methods are business policy (see settings)
    and are checked by the service so the error names the field.
    """
    student_id: int
    amount: int
    method: str
    occurred_at: Optional[datetime] = None
    memo: Optional[str] = Field(None, max_length=512)
    idempotency_key: Optional[str] = Field(None, max_length=128)


class FamilyPaymentCreate(BaseModel):
    """Split one payment across a family's active students"""
    family_id: int
    amount: int
    method: str
    month: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    occurred_at: Optional[datetime] = None
    leftover_policy: LeftoverPolicy = LeftoverPolicy.UNAPPLIED_CASH
    consent_given: bool = False
    memo: Optional[str] = Field(None, max_length=512)
    idempotency_key: Optional[str] = Field(None, max_length=128)


class PaymentReversalRequest(BaseModel):
    """Reverse a posted payment"""
    reason: str = Field(..., min_length=1, max_length=1024)


# === Results ===

class InvoiceApplication(BaseModel):
    """Amount applied to one invoice"""
    invoice_id: int
    month: str
    amount: int
    paid_amount: int
    status: str


class PaymentResult(BaseModel):
    """Outcome of postPayment"""
    payment_id: int
    student_id: int
    tx_id: str
    applied_amount: int
    credit_amount: int
    credit_tx_id: Optional[str] = None
    credit_balance: int
    overpayment_flagged: bool = False
    applications: List[InvoiceApplication] = []
    replayed: bool = False


class AllocationResult(BaseModel):
    """One sibling's share of a family payment"""
    student_id: int
    student_name: str
    allocation_order: int
    before_debt: int
    allocated_amount: int
    after_debt: int
    tx_id: Optional[str] = None
    applications: List[InvoiceApplication] = []


class FamilyPaymentResult(BaseModel):
    """Outcome of smartFamilyPayment"""
    parent_payment_id: int
    family_id: int
    amount: int
    total_allocated: int
    allocations: List[AllocationResult]
    leftover: int
    leftover_policy: LeftoverPolicy
    leftover_student_id: Optional[int] = None
    leftover_tx_ids: List[str] = []
    replayed: bool = False


class PaymentReversalResult(BaseModel):
    """Outcome of reversePayment"""
    payment_id: int
    status: PaymentStatus
    reversal_tx_ids: List[str]
    unapplied: List[InvoiceApplication]


# === Reads ===

class PaymentResponse(BaseModel):
    """Stored payment"""
    id: int
    kind: str
    student_id: Optional[int] = None
    family_id: Optional[int] = None
    amount: int
    method: str
    occurred_at: datetime
    month: str
    memo: Optional[str] = None
    status: PaymentStatus
    applied_amount: int
    credit_amount: int
    credit_student_id: Optional[int] = None
    credit_used: int = 0
    leftover_policy: Optional[str] = None
    leftover_amount: int
    overpayment_flagged: bool
    tx_ids: List[str] = []
    reversal_tx_ids: List[str] = []
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PaymentAllocationResponse(BaseModel):
    """Stored allocation row"""
    id: int
    parent_payment_id: int
    student_id: int
    allocated_amount: int
    allocation_order: int
    before_debt: int
    after_debt: int
    tx_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

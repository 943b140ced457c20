## app/audit_trail/schemas.py

# Standard library imports
from enum import Enum as PyEnum
from datetime import datetime
from typing import Any, Dict, List, Optional

# Third party imports
from pydantic import BaseModel, ConfigDict


class AuditAction(str, PyEnum):
    """Actions recorded by the billing core"""
    PAYMENT_POSTED = "payment_posted"
    PAYMENT_OVERPAYMENT_FLAGGED = "payment_overpayment_flagged"
    PAYMENT_REVERSED = "payment_reversed"
    FAMILY_PAYMENT_INITIATED = "family_payment_initiated"
    FAMILY_PAYMENT_ALLOCATION = "family_payment_allocation"
    CREDIT_TRANSFER = "credit_transfer"
    CREDIT_APPLIED = "credit_applied"
    FAMILY_PAYMENT_LEFTOVER = "family_payment_leftover"
    FAMILY_PAYMENT_COMPLETED = "family_payment_completed"
    FAMILY_PAYMENT_FAILED = "family_payment_failed"
    INVOICE_CALCULATED = "invoice_calculated"
    CONFIRM_TUITION = "confirm_tuition"
    DISCOUNT_DEFINITION_CREATED = "discount_definition_created"
    DISCOUNT_ASSIGNED = "discount_assigned"
    DISCOUNT_ENDED = "discount_ended"
    DISCOUNT_REMOVED = "discount_removed"
    REFERRAL_BONUS_CREATED = "referral_bonus_created"
    REFERRAL_BONUS_ENDED = "referral_bonus_ended"
    REFERRAL_BONUS_REMOVED = "referral_bonus_removed"
    REFERRAL_BONUS_REVERSED = "referral_bonus_reversed"
    STUDENT_ACTIVATION_CHANGED = "student_activation_changed"
    RECOMPUTE_REQUESTED = "recompute_requested"


class AuditTrailResponse(BaseModel):
    """Audit trail response"""
    id: int
    timestamp: datetime
    actor_id: Optional[int] = None
    action: str
    entity: str
    entity_id: str
    diff: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class PaginatedAuditTrailResponse(BaseModel):
    """Paginated audit trail"""
    items: List[AuditTrailResponse]
    total_items: int
    page: int
    per_page: int

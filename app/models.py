# app/models.py

"""
Imports every model module so `Base.metadata` knows all tables.
"""

from app.students.models import Family, Student, ClassGroup, Enrollment  # noqa: F401
from app.ledger.models import LedgerAccount, LedgerEntry  # noqa: F401
from app.discounts.models import (  # noqa: F401
    DiscountDefinition, DiscountAssignment, ReferralBonus, SiblingDiscountState,
)
from app.tuition.models import Invoice, RecomputeRequest  # noqa: F401
from app.payments.models import Payment, PaymentAllocation, PaymentApplication  # noqa: F401
from app.audit_trail.models import AuditTrail  # noqa: F401

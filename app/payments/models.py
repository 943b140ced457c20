# app/payments/models.py

"""
SQLAlchemy 2.x models for payments.

- Payment: one received payment, for a student or for a whole family.
- PaymentAllocation: how a family payment was split across siblings.
- PaymentApplication: how much of a payment went to each invoice, so a
  reversal can un-apply exactly what was applied.

Payments are never edited after posting except for their reversal marker;
corrections are offsetting ledger transactions.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
    CheckConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base
from app.core.mixins import AuditMixin, utc_now


class Payment(Base, AuditMixin):
    """A received payment"""
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    kind: Mapped[str] = mapped_column(
        SQLEnum("student", "family", name="payment_kind_enum"), nullable=False, default="student"
    )
    student_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("students.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    family_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("families.id", ondelete="RESTRICT"), nullable=True, index=True
    )

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    month: Mapped[str] = mapped_column(
        String(7), nullable=False, comment="Billing month the payment was taken against"
    )
    memo: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    status: Mapped[str] = mapped_column(
        SQLEnum("posted", "reversed", name="payment_status_enum"), nullable=False, default="posted"
    )
    applied_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    credit_amount: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, comment="Booked to CREDIT for future months"
    )
    credit_student_id: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, comment="Student whose CREDIT holds credit_amount"
    )
    credit_used: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, comment="Part of credit_amount since applied to invoices"
    )
    leftover_policy: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    leftover_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    overpayment_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    tx_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    recorded_by_student: Mapped[dict] = mapped_column(
        JSON, nullable=False, default=dict,
        comment="Cash received per student id, added to that month's recorded_payment"
    )
    result_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    request_fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    reversed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reversal_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reversal_tx_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        Index("idx_payment_student_occurred", "student_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, kind='{self.kind}', student_id={self.student_id}, "
            f"family_id={self.family_id}, amount={self.amount}, status='{self.status}')>"
        )


class PaymentAllocation(Base):
    """One sibling's share of a family payment"""
    __tablename__ = "payment_allocations"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    parent_payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    allocated_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    allocation_order: Mapped[int] = mapped_column(Integer, nullable=False)
    before_debt: Mapped[int] = mapped_column(BigInteger, nullable=False)
    after_debt: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_on: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PaymentAllocation(parent={self.parent_payment_id}, student_id={self.student_id}, "
            f"order={self.allocation_order}, amount={self.allocated_amount})>"
        )


class PaymentApplication(Base):
    """Amount of a payment applied to one invoice"""
    __tablename__ = "payment_applications"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    invoice_id: Mapped[int] = mapped_column(
        ForeignKey("invoices.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    student_id: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_on: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<PaymentApplication(payment_id={self.payment_id}, invoice_id={self.invoice_id}, amount={self.amount})>"

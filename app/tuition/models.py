# app/tuition/models.py

"""
Invoice snapshots and the recompute outbox.

An invoice is a materialized view over enrollments, discounts and the
ledger: only the tuition calculator writes its amounts, payments only move
paid_amount/recorded_payment, and the review queue only touches the
confirmation fields.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
    UniqueConstraint, CheckConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base
from app.core.mixins import AuditMixin, utc_now


class Invoice(Base, AuditMixin):
    """One invoice per (student, month)"""
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False, comment="YYYY-MM")

    base_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    paid_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    recorded_payment: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0,
        comment="Money received from the student during this month"
    )

    status: Mapped[str] = mapped_column(
        SQLEnum("unpaid", "partial", "paid", name="invoice_status_enum"),
        nullable=False, default="unpaid"
    )
    confirmation_status: Mapped[str] = mapped_column(
        SQLEnum("needs_review", "confirmed", "adjusted", "auto_approved", name="invoice_confirmation_enum"),
        nullable=False, default="auto_approved"
    )
    review_flags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    confirmation_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confirmed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    line_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    discount_breakdown: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    carry_in_debt: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    carry_in_credit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    carry_out_debt: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    carry_out_credit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # What this invoice has already posted to the ledger
    posted_base: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    posted_discount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("student_id", "month", name="uq_invoice_student_month"),
        CheckConstraint("total_amount = base_amount - discount_amount", name="ck_invoice_total"),
        CheckConstraint("total_amount >= 0", name="ck_invoice_total_non_negative"),
        Index("idx_invoice_confirmation", "confirmation_status"),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def outstanding(self) -> int:
        """Amount still owed on this invoice"""
        return max(self.total_amount - self.paid_amount, 0)

    def __repr__(self) -> str:
        return (
            f"<Invoice(id={self.id}, student_id={self.student_id}, month='{self.month}', "
            f"total={self.total_amount}, paid={self.paid_amount}, status='{self.status}')>"
        )


class RecomputeRequest(Base):
    """Durable "recompute (student, month)" work item"""
    __tablename__ = "recompute_requests"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        SQLEnum("pending", "done", "failed", name="recompute_status_enum"),
        nullable=False, default="pending"
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_on: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_recompute_pending", "status", "student_id", "month"),
    )

    def __repr__(self) -> str:
        return (
            f"<RecomputeRequest(id={self.id}, student_id={self.student_id}, "
            f"month='{self.month}', status='{self.status}', attempts={self.attempts})>"
        )

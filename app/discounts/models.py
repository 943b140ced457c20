# app/discounts/models.py

"""
Discount sources that are assigned to students over an effective window.

Windows are half-open: [effective_from, effective_to). A NULL effective_to
means open-ended. Assignments for the same (student, definition) and referral
bonuses for the same student never overlap.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    BigInteger, Date, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.db import Base
from app.core.mixins import AuditMixin, utc_now


class DiscountDefinition(Base, AuditMixin):
    """A reusable discount (scholarship, promotion, staff child, ...)"""
    __tablename__ = "discount_definitions"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(
        SQLEnum("percent", "amount", name="discount_type_enum"), nullable=False
    )
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cadence: Mapped[str] = mapped_column(
        SQLEnum("once", "monthly", name="discount_cadence_enum"), nullable=False, default="monthly"
    )

    def __repr__(self) -> str:
        return f"<DiscountDefinition(id={self.id}, name='{self.name}', {self.type}={self.value})>"


class DiscountAssignment(Base, AuditMixin):
    """A discount definition assigned to one student"""
    __tablename__ = "discount_assignments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    discount_def_id: Mapped[int] = mapped_column(
        ForeignKey("discount_definitions.id", ondelete="RESTRICT"), nullable=False
    )
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    applied_month: Mapped[Optional[str]] = mapped_column(
        String(7), nullable=True,
        comment="For cadence=once: the month it was applied to, stamped on first application"
    )

    definition: Mapped["DiscountDefinition"] = relationship(lazy="selectin")

    __table_args__ = (
        Index("idx_assignment_student_def", "student_id", "discount_def_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<DiscountAssignment(id={self.id}, student_id={self.student_id}, "
            f"def_id={self.discount_def_id}, {self.effective_from}..{self.effective_to})>"
        )


class ReferralBonus(Base, AuditMixin):
    """A referral reward carrying its own inline terms"""
    __tablename__ = "referral_bonuses"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(
        SQLEnum("percent", "amount", name="referral_type_enum"), nullable=False
    )
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cadence: Mapped[str] = mapped_column(
        SQLEnum("once", "monthly", name="referral_cadence_enum"), nullable=False, default="once"
    )
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    applied_month: Mapped[Optional[str]] = mapped_column(String(7), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ReferralBonus(id={self.id}, student_id={self.student_id}, "
            f"{self.type}={self.value}, {self.effective_from}..{self.effective_to})>"
        )


class SiblingDiscountState(Base):
    """
    Which sibling holds the family discount for a month.

    status is `none` (fewer than two active students), `pending` (fewer than
    two with positive tuition) or `assigned` (winner_student_id holds it).
    """
    __tablename__ = "sibling_discount_state"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    family_id: Mapped[int] = mapped_column(
        ForeignKey("families.id", ondelete="CASCADE"), nullable=False, index=True
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    status: Mapped[str] = mapped_column(
        SQLEnum("none", "pending", "assigned", name="sibling_state_enum"), nullable=False
    )
    winner_student_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("students.id", ondelete="SET NULL"), nullable=True
    )
    sibling_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("family_id", "month", name="uq_sibling_state_family_month"),
    )

    def __repr__(self) -> str:
        return (
            f"<SiblingDiscountState(family_id={self.family_id}, month='{self.month}', "
            f"status='{self.status}', winner={self.winner_student_id})>"
        )

# app/students/models.py

"""
Roster and enrollment tables read by the billing core.

Families, students, classes and enrollments are owned by the scheduling and
roster screens; billing only reads them (plus `first_billed_month`, which the
tuition calculator stamps the first time an enrollment is billed).
"""

from datetime import date
from typing import List, Optional

from sqlalchemy import (
    BigInteger, Date, ForeignKey, Index, Integer, JSON, String,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.db import Base
from app.core.mixins import AuditMixin


class Family(Base, AuditMixin):
    """A household paying for one or more students"""
    __tablename__ = "families"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sibling_percent_override: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True,
        comment="Family-specific sibling discount percent; default policy applies when NULL"
    )

    students: Mapped[List["Student"]] = relationship(
        back_populates="family", lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Family(id={self.id}, name='{self.name}')>"


class Student(Base, AuditMixin):
    """Student model"""
    __tablename__ = "students"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    family_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("families.id", ondelete="SET NULL"), nullable=True, index=True
    )

    family: Mapped[Optional["Family"]] = relationship(back_populates="students", lazy="selectin")
    enrollments: Mapped[List["Enrollment"]] = relationship(back_populates="student")

    def __repr__(self) -> str:
        return f"<Student(id={self.id}, name='{self.full_name}', is_active={self.is_active})>"


class ClassGroup(Base, AuditMixin):
    """A taught class with a weekly schedule template and a default session rate"""
    __tablename__ = "classes"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    session_rate: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="Default price per session"
    )
    schedule_days: Mapped[list] = mapped_column(
        JSON, nullable=False, default=list,
        comment="ISO weekdays (1=Mon..7=Sun) the class meets"
    )

    def __repr__(self) -> str:
        return f"<ClassGroup(id={self.id}, name='{self.name}', rate={self.session_rate})>"


class Enrollment(Base, AuditMixin):
    """A student's enrollment in a class over a date window"""
    __tablename__ = "enrollments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    class_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("classes.id", ondelete="SET NULL"), nullable=True, index=True
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    allowed_days: Mapped[Optional[list]] = mapped_column(
        JSON, nullable=True,
        comment="Attendance-day allow-list (ISO weekdays); NULL means every scheduled day"
    )
    rate_override: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True, comment="Per-enrollment session rate"
    )

    discount_type: Mapped[Optional[str]] = mapped_column(
        SQLEnum("percent", "amount", name="enrollment_discount_type_enum"), nullable=True
    )
    discount_value: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    discount_cadence: Mapped[Optional[str]] = mapped_column(
        SQLEnum("once", "monthly", name="enrollment_discount_cadence_enum"), nullable=True
    )
    first_billed_month: Mapped[Optional[str]] = mapped_column(
        String(7), nullable=True,
        comment="YYYY-MM of the first invoice this enrollment contributed to"
    )

    student: Mapped["Student"] = relationship(back_populates="enrollments")
    klass: Mapped[Optional["ClassGroup"]] = relationship(lazy="selectin")

    __table_args__ = (
        Index("idx_enrollment_student_dates", "student_id", "start_date", "end_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Enrollment(id={self.id}, student_id={self.student_id}, "
            f"class_id={self.class_id}, start={self.start_date}, end={self.end_date})>"
        )

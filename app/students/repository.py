# app/students/repository.py

"""
Repository layer for roster data (families, students, enrollments).
"""

from datetime import date
from typing import List, Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.utils.logger import get_logger
from app.students.models import Family, Student, Enrollment

logger = get_logger(__name__)


class StudentRepository:
    """Read access to the roster"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_student(self, student_id: int) -> Optional[Student]:
        """Get student by primary key"""
        stmt = select(Student).where(Student.id == student_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_family(self, family_id: int) -> Optional[Family]:
        """Get family by primary key"""
        stmt = select(Family).where(Family.id == family_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_students(self, family_id: int) -> List[Student]:
        """Active students of a family, ordered by name"""
        stmt = (
            select(Student)
            .where(and_(Student.family_id == family_id, Student.is_active.is_(True)))
            .order_by(Student.full_name, Student.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_enrollments_for_period(
        self, student_id: int, period_start: date, period_end: date
    ) -> List[Enrollment]:
        """Enrollments overlapping [period_start, period_end], oldest first"""
        stmt = (
            select(Enrollment)
            .where(
                and_(
                    Enrollment.student_id == student_id,
                    Enrollment.is_active.is_(True),
                    Enrollment.start_date <= period_end,
                    or_(Enrollment.end_date.is_(None), Enrollment.end_date >= period_start),
                )
            )
            .order_by(Enrollment.start_date, Enrollment.id)
        )
        result = await self.db.execute(stmt)
        enrollments = list(result.scalars().all())
        logger.debug(
            "Loaded enrollments for period",
            student_id=student_id, count=len(enrollments), period_start=str(period_start)
        )
        return enrollments

    async def set_student_active(self, student: Student, is_active: bool) -> Student:
        """Flip a student's active flag"""
        student.is_active = is_active
        await self.db.flush()
        return student

# app/students/services.py

"""
Roster operations the billing core owns: lookups and activation changes.

A student joining or leaving a family's active roster can move the sibling
discount to another child, so each remaining active sibling gets a recompute.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BillingValidationException
from app.utils.concurrency import with_concurrency_retry
from app.utils.general import month_bounds, month_of, validate_month
from app.utils.logger import get_logger
from app.audit_trail.schemas import AuditAction
from app.audit_trail.services import audit_trail_service
from app.tuition.outbox import enqueue_recompute
from app.students.models import Family, Student
from app.students.repository import StudentRepository
from app.students.exceptions import StudentNotFoundException, FamilyNotFoundException
from app.students.schemas import StudentResponse, StudentActivationResult

logger = get_logger(__name__)


class StudentService:
    """Roster service"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = StudentRepository(db)

    async def get_student(self, student_id: int) -> Student:
        student = await self.repo.get_student(student_id)
        if student is None:
            raise StudentNotFoundException(student_id)
        return student

    async def get_family(self, family_id: int) -> Family:
        family = await self.repo.get_family(family_id)
        if family is None:
            raise FamilyNotFoundException(family_id)
        return family

    async def list_enrollments(self, student_id: int, month: str):
        """Enrollments billable in a month"""
        await self.get_student(student_id)
        start, end = month_bounds(month)
        return await self.repo.get_enrollments_for_period(student_id, start, end)

    @with_concurrency_retry
    async def set_active(
        self,
        student_id: int,
        is_active: bool,
        month: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> StudentActivationResult:
        """
        Flip a student's active flag and enqueue a recompute of `month`
        (default: the current month) for the student and every active
        sibling.
        """
        try:
            month = validate_month(month) if month else month_of(datetime.now(timezone.utc))
        except ValueError as e:
            raise BillingValidationException("month", str(e)) from e

        try:
            student = await self.get_student(student_id)
            if student.is_active == is_active:
                return StudentActivationResult(student=StudentResponse.model_validate(student), changed=False)

            await self.repo.set_student_active(student, is_active)
            student.modified_by = actor_id

            affected: List[int] = [student.id]
            if student.family_id is not None:
                for sibling in await self.repo.get_active_students(student.family_id):
                    if sibling.id not in affected:
                        affected.append(sibling.id)

            for affected_id in affected:
                await enqueue_recompute(self.db, affected_id, month, "roster_changed")

            await audit_trail_service.record(
                self.db, AuditAction.STUDENT_ACTIVATION_CHANGED, "student", student.id,
                diff={
                    "is_active": {"from": not is_active, "to": is_active},
                    "family_id": student.family_id,
                    "recompute_month": month,
                    "recompute_student_ids": affected,
                },
                actor_id=actor_id,
            )
            await self.db.commit()
            logger.info(
                "Student activation changed",
                student_id=student.id, is_active=is_active, family_id=student.family_id, recompute=affected
            )
            return StudentActivationResult(
                student=StudentResponse.model_validate(student),
                changed=True,
                recompute_months=[month],
                recompute_student_ids=affected,
            )
        except Exception:
            await self.db.rollback()
            raise

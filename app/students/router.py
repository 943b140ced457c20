# app/students/router.py

"""
FastAPI router for roster lookups and activation changes.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_async_db
from app.core.dependencies import get_current_actor
from app.utils.logger import get_logger
from app.students.services import StudentService
from app.students.schemas import (
    StudentResponse, FamilyResponse, EnrollmentResponse,
    StudentActivationRequest, StudentActivationResult,
)

logger = get_logger(__name__)

router = APIRouter(tags=["Roster"])


@router.get("/students/{student_id}", response_model=StudentResponse)
async def get_student(student_id: int, db: AsyncSession = Depends(get_async_db)):
    return await StudentService(db).get_student(student_id)


@router.get("/students/{student_id}/enrollments", response_model=List[EnrollmentResponse])
async def list_enrollments(
    student_id: int,
    month: str = Query(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$"),
    db: AsyncSession = Depends(get_async_db),
):
    """Enrollments that fall in a billing month"""
    return await StudentService(db).list_enrollments(student_id, month)


@router.post("/students/{student_id}/activation", response_model=StudentActivationResult)
async def set_student_activation(
    student_id: int,
    data: StudentActivationRequest,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Activate or deactivate a student; siblings are queued for recompute"""
    logger.info("Changing student activation", student_id=student_id, is_active=data.is_active, actor_id=actor_id)
    return await StudentService(db).set_active(student_id, data.is_active, month=data.month, actor_id=actor_id)


@router.get("/families/{family_id}", response_model=FamilyResponse)
async def get_family(family_id: int, db: AsyncSession = Depends(get_async_db)):
    """A family and its students"""
    return await StudentService(db).get_family(family_id)

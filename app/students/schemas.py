# app/students/schemas.py

"""
Pydantic schemas for the roster read model.
"""

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class StudentResponse(BaseModel):
    id: int
    full_name: str
    family_id: Optional[int] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class FamilyResponse(BaseModel):
    id: int
    name: str
    sibling_percent_override: Optional[int] = None
    is_active: bool
    students: List[StudentResponse] = []

    model_config = ConfigDict(from_attributes=True)


class EnrollmentResponse(BaseModel):
    id: int
    student_id: int
    class_id: Optional[int] = None
    start_date: date
    end_date: Optional[date] = None
    allowed_days: Optional[List[int]] = None
    rate_override: Optional[int] = None
    discount_type: Optional[str] = None
    discount_value: Optional[int] = None
    discount_cadence: Optional[str] = None
    first_billed_month: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class StudentActivationRequest(BaseModel):
    """Activate or deactivate a student"""
    is_active: bool
    month: Optional[str] = None


class StudentActivationResult(BaseModel):
    student: StudentResponse
    changed: bool
    recompute_months: List[str] = []
    recompute_student_ids: List[int] = []

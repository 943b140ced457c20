# app/students/exceptions.py

"""
Custom exceptions for the roster read model.
"""

from fastapi import HTTPException, status


class RosterBaseException(HTTPException):
    """Base exception for roster lookups"""
    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR):
        super().__init__(status_code=status_code, detail=message)


class StudentNotFoundException(RosterBaseException):
    """Student not found"""
    def __init__(self, student_id: int):
        self.student_id = student_id
        super().__init__(f"Student not found: {student_id}", status.HTTP_404_NOT_FOUND)


class FamilyNotFoundException(RosterBaseException):
    """Family not found"""
    def __init__(self, family_id: int):
        self.family_id = family_id
        super().__init__(f"Family not found: {family_id}", status.HTTP_404_NOT_FOUND)


class EmptyFamilyException(RosterBaseException):
    """Family has no active students"""
    def __init__(self, family_id: int):
        self.family_id = family_id
        super().__init__(
            f"No active students found in family {family_id}", status.HTTP_422_UNPROCESSABLE_ENTITY
        )

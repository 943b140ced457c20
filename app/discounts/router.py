# app/discounts/router.py

"""
FastAPI router for discount definitions, assignments and referral bonuses.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_async_db
from app.core.dependencies import get_current_actor
from app.utils.logger import get_logger
from app.discounts.services import DiscountService
from app.discounts.schemas import (
    DiscountDefinitionCreate, DiscountDefinitionResponse,
    DiscountAssignmentCreate, DiscountAssignmentResponse,
    ReferralBonusCreate, ReferralBonusResponse,
    ReferralReversalRequest, ReferralReversalResponse,
    DiscountResolution,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/discounts", tags=["Discounts"])


# === Definitions ===

@router.post("/definitions", response_model=DiscountDefinitionResponse, status_code=status.HTTP_201_CREATED)
async def create_definition(
    data: DiscountDefinitionCreate,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Create a reusable discount definition"""
    return await DiscountService(db).create_definition(data, actor_id=actor_id)


@router.get("/definitions", response_model=List[DiscountDefinitionResponse])
async def list_definitions(
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_async_db),
):
    """List discount definitions"""
    return await DiscountService(db).list_definitions(include_inactive)


# === Assignments ===

@router.post("/assignments", response_model=DiscountAssignmentResponse, status_code=status.HTTP_201_CREATED)
async def create_assignment(
    data: DiscountAssignmentCreate,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Assign a discount to a student.

    Returns 409 when the window overlaps an existing assignment of the same
    definition for the same student.
    """
    logger.info(
        "Creating discount assignment",
        student_id=data.student_id, discount_def_id=data.discount_def_id, actor_id=actor_id
    )
    return await DiscountService(db).create_assignment(data, actor_id=actor_id)


@router.get("/students/{student_id}/assignments", response_model=List[DiscountAssignmentResponse])
async def list_student_assignments(student_id: int, db: AsyncSession = Depends(get_async_db)):
    """Every assignment for a student"""
    return await DiscountService(db).list_student_assignments(student_id)


@router.post("/assignments/{assignment_id}/end", response_model=DiscountAssignmentResponse)
async def end_discount(
    assignment_id: int,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """End an assignment as of yesterday"""
    return await DiscountService(db).end_discount(assignment_id, actor_id=actor_id)


@router.delete("/assignments/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_discount(
    assignment_id: int,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Delete an assignment (audited)"""
    await DiscountService(db).remove_discount(assignment_id, actor_id=actor_id)


# === Referral bonuses ===

@router.post("/referral-bonuses", response_model=ReferralBonusResponse, status_code=status.HTTP_201_CREATED)
async def create_referral_bonus(
    data: ReferralBonusCreate,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Grant a referral bonus"""
    return await DiscountService(db).create_referral_bonus(data, actor_id=actor_id)


@router.get("/students/{student_id}/referral-bonuses", response_model=List[ReferralBonusResponse])
async def list_student_referral_bonuses(student_id: int, db: AsyncSession = Depends(get_async_db)):
    """Every referral bonus for a student"""
    return await DiscountService(db).list_student_referral_bonuses(student_id)


@router.post("/referral-bonuses/{bonus_id}/end", response_model=ReferralBonusResponse)
async def end_referral_bonus(
    bonus_id: int,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """End a referral bonus as of yesterday"""
    return await DiscountService(db).end_referral_bonus(bonus_id, actor_id=actor_id)


@router.delete("/referral-bonuses/{bonus_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_referral_bonus(
    bonus_id: int,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Delete a referral bonus (audited)"""
    await DiscountService(db).remove_referral_bonus(bonus_id, actor_id=actor_id)


@router.post("/referral-bonuses/{bonus_id}/reverse", response_model=ReferralReversalResponse)
async def reverse_referral_bonus(
    bonus_id: int,
    request: ReferralReversalRequest,
    actor_id: Optional[int] = Depends(get_current_actor),
    db: AsyncSession = Depends(get_async_db),
):
    """Post a balanced adjustment that takes back part or all of a bonus"""
    logger.info("Reversing referral bonus", bonus_id=bonus_id, amount=request.amount, actor_id=actor_id)
    return await DiscountService(db).reverse_referral_bonus(bonus_id, request, actor_id=actor_id)


# === Preview ===

@router.get("/students/{student_id}/resolve", response_model=DiscountResolution)
async def resolve_discounts(
    student_id: int,
    month: str = Query(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$"),
    db: AsyncSession = Depends(get_async_db),
):
    """Discounts that would apply to a month, without recording anything"""
    return await DiscountService(db).preview(student_id, month)

## app/audit_trail/router.py

# Standard library imports
from typing import Optional

# Third party imports
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

# Local application imports
from app.utils.logger import get_logger
from app.core.db import get_async_db
from app.audit_trail.schemas import AuditTrailResponse, PaginatedAuditTrailResponse
from app.audit_trail.services import audit_trail_service

router = APIRouter(prefix="/audit-trail", tags=["Audit Trail"])
logger = get_logger(__name__)


@router.get("", response_model=PaginatedAuditTrailResponse)
async def list_audit_trail(
    entity: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    actor_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_async_db),
):
    """List audit records, newest first"""
    logger.debug("Listing audit trail", entity=entity, entity_id=entity_id, action=action, page=page)
    entries, total = await audit_trail_service.list_entries(
        db, entity=entity, entity_id=entity_id, action=action,
        actor_id=actor_id, page=page, per_page=per_page,
    )
    return PaginatedAuditTrailResponse(
        items=[AuditTrailResponse.model_validate(e) for e in entries],
        total_items=total,
        page=page,
        per_page=per_page,
    )

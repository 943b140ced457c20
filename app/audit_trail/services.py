## app/audit_trail/services.py

# Standard library imports
from typing import Any, Dict, List, Optional, Tuple

# Third party imports
from sqlalchemy import select, func, and_, desc
from sqlalchemy.ext.asyncio import AsyncSession

# Local imports
from app.utils.logger import get_logger
from app.audit_trail.models import AuditTrail
from app.audit_trail.schemas import AuditAction

logger = get_logger(__name__)


class AuditTrailService:
    """Service for audit trail operations"""

    async def record(
        self,
        db: AsyncSession,
        action: AuditAction,
        entity: str,
        entity_id: Any,
        diff: Optional[Dict] = None,
        actor_id: Optional[int] = None,
    ) -> AuditTrail:
        """
        Append an audit record inside the caller's transaction.

        The caller commits or rolls back; an audit row never outlives the
        change it describes.
        """
        entry = AuditTrail(
            actor_id=actor_id,
            action=action.value,
            entity=entity,
            entity_id=str(entity_id),
            diff=diff or {},
        )
        db.add(entry)
        await db.flush()
        logger.debug("Audit recorded", action=action.value, entity=entity, entity_id=str(entity_id))
        return entry

    async def list_entries(
        self,
        db: AsyncSession,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[str] = None,
        actor_id: Optional[int] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Tuple[List[AuditTrail], int]:
        """Filtered, newest-first audit entries with a total count"""
        conditions = []
        if entity:
            conditions.append(AuditTrail.entity == entity)
        if entity_id:
            conditions.append(AuditTrail.entity_id == str(entity_id))
        if action:
            conditions.append(AuditTrail.action == action)
        if actor_id is not None:
            conditions.append(AuditTrail.actor_id == actor_id)

        stmt = select(AuditTrail)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        count_stmt = select(func.count()).select_from(stmt.subquery())
        total = (await db.execute(count_stmt)).scalar() or 0

        stmt = stmt.order_by(desc(AuditTrail.timestamp), desc(AuditTrail.id))
        stmt = stmt.offset((page - 1) * per_page).limit(per_page)
        result = await db.execute(stmt)
        return list(result.scalars().all()), total


audit_trail_service = AuditTrailService()

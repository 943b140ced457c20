## app/audit_trail/models.py

# Standard library imports
from datetime import datetime, timezone

# Third party imports
from sqlalchemy import Column, String, DateTime, Integer, JSON, Index

# Local imports
from app.core.db import Base


def _utcnow():
    return datetime.now(timezone.utc)


class AuditTrail(Base):
    """
    Append-only audit record for every mutating billing operation.

    Rows are metadata, not money: they sit outside the ledger and are never
    updated or deleted.
    """
    __tablename__ = "audit_trail"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    actor_id = Column(Integer, nullable=True, comment="User who performed the action; NULL for system")
    action = Column(String(64), nullable=False, index=True)
    entity = Column(String(64), nullable=False)
    entity_id = Column(String(64), nullable=False)
    diff = Column(JSON, nullable=True, default=dict)

    __table_args__ = (
        Index("idx_audit_entity", "entity", "entity_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditTrail(id={self.id}, action='{self.action}', entity='{self.entity}:{self.entity_id}')>"

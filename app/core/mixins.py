# app/core/mixins.py

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer
from sqlalchemy.orm import declared_attr


def utc_now() -> datetime:
    """Timezone-aware current time"""
    return datetime.now(timezone.utc)


class AuditMixin:
    """Mixin for auditing fields."""

    @declared_attr
    def created_by(cls):
        """
        Column for the user who created this record
        """
        return Column(Integer, nullable=True, comment="User who created this record")

    @declared_attr
    def modified_by(cls):
        """
        Column for the user who last modified this record
        """
        return Column(Integer, nullable=True, comment="User who last modified this record")

    @declared_attr
    def created_on(cls):
        """
        Column for the timestamp when this record was created
        """
        # Python-side defaults keep the value loaded after flush, so async
        # code never triggers an implicit refresh
        return Column(
            DateTime(timezone=True),
            default=utc_now,
            comment="Timestamp when this record was created",
        )

    @declared_attr
    def updated_on(cls):
        """
        Column for the timestamp when this record was last updated
        """
        return Column(
            DateTime(timezone=True),
            default=utc_now,
            onupdate=utc_now,
            comment="Timestamp when this record was last updated",
        )

    is_active = Column(
        Boolean, default=True, comment="Flag to keep track of record is active or not"
    )

"""
Common mixins for business-scoped ledger models
"""
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, ForeignKey, Uuid
from sqlalchemy.sql import func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantMixin:
    """Mixin for multi-tenant models: every row belongs to exactly one business"""

    business_id = Column(Uuid, ForeignKey("businesses.id"), nullable=False, index=True)


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class SoftDeleteMixin:
    """Mixin for soft delete functionality"""

    deleted_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def soft_delete(self):
        self.deleted_at = utcnow()


class AppendOnlyMixin:
    """Mixin for audit rows: creation timestamp only, rows are never updated"""

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

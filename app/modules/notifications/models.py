from app.database.database import Base
from sqlalchemy import Column, String, Boolean, DateTime, Text, Uuid
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin


class Notification(Base, TenantMixin, TimestampMixin):
    """Notificación in-app escrita por el worker de Celery"""
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid4)
    recipient_id = Column(Uuid, nullable=False, index=True)
    type = Column(String(50), nullable=False)  # BILL_APPROVAL_REQUIRED, BILL_APPROVED, BILL_REJECTED, PAYMENT_RECEIVED
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)

    entity_type = Column(String(50), nullable=True)
    entity_id = Column(Uuid, nullable=True)

    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)

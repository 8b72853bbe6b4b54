"""
Modelos de auditoría (solo inserción)

- BillHistory: un registro por cada mutación de una factura.
- BillApprovalHistory: un registro por cada envío/decisión de aprobación.
- AuditLog: registro genérico para pagos y otras entidades.

Ninguna de estas filas se actualiza ni se borra.
"""

from app.database.database import Base
from sqlalchemy import Column, String, Text, JSON, ForeignKey, Uuid, event
from uuid import uuid4
from app.common.mixins import AppendOnlyMixin


class BillHistory(Base, AppendOnlyMixin):
    __tablename__ = "bill_history"

    id = Column(Uuid, primary_key=True, default=uuid4)
    business_id = Column(Uuid, ForeignKey("businesses.id"), nullable=False, index=True)
    bill_id = Column(Uuid, ForeignKey("bills.id"), nullable=False, index=True)

    # CREATED, UPDATED, SUBMITTED, APPROVED, REJECTED, PAYMENT_ALLOCATED, OVERDUE, VOIDED, DELETED
    action = Column(String(50), nullable=False, index=True)
    performed_by = Column(Uuid, nullable=True, index=True)  # None = sistema

    old_status = Column(String(50), nullable=True)
    new_status = Column(String(50), nullable=True)

    # Detalle de campos cambiados: {"campo": {"old": ..., "new": ...}}
    changes = Column(JSON, nullable=True)
    bill_snapshot = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)


class BillApprovalHistory(Base, AppendOnlyMixin):
    __tablename__ = "bill_approval_history"

    id = Column(Uuid, primary_key=True, default=uuid4)
    business_id = Column(Uuid, ForeignKey("businesses.id"), nullable=False, index=True)
    bill_id = Column(Uuid, ForeignKey("bills.id"), nullable=False, index=True)

    action = Column(String(50), nullable=False)  # SUBMITTED, APPROVED, REJECTED, AUTO_APPROVED, CANCELLED
    performed_by = Column(Uuid, nullable=True, index=True)
    notes = Column(Text, nullable=True)

    old_status = Column(String(50), nullable=True)
    new_status = Column(String(50), nullable=True)
    old_approval_status = Column(String(50), nullable=True)
    new_approval_status = Column(String(50), nullable=True)


class AuditLog(Base, AppendOnlyMixin):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    business_id = Column(Uuid, ForeignKey("businesses.id"), nullable=False, index=True)

    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(Uuid, nullable=False, index=True)
    action = Column(String(100), nullable=False)
    performed_by = Column(Uuid, nullable=True, index=True)

    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)


def _reject_mutation(mapper, connection, target):
    raise RuntimeError(f"{target.__tablename__} es de solo inserción")


for _model in (BillHistory, BillApprovalHistory, AuditLog):
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)

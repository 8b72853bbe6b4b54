"""
Registro de historial y auditoría.

Las escrituras se agregan a la sesión del llamador sin hacer commit, de modo
que quedan en la misma transacción que la mutación que describen: si la
mutación se revierte, el historial también, y viceversa.
"""

import enum
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from app.modules.history.models import AuditLog, BillApprovalHistory, BillHistory

logger = logging.getLogger(__name__)


def to_jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def snapshot(entity, exclude: Optional[List[str]] = None) -> Dict[str, Any]:
    """Copia serializable de las columnas de una entidad ORM"""
    exclude = set(exclude or [])
    mapper = inspect(entity).mapper
    return {
        column.key: to_jsonable(getattr(entity, column.key))
        for column in mapper.column_attrs
        if column.key not in exclude
    }


def status_value(status) -> Optional[str]:
    if status is None:
        return None
    return status.value if isinstance(status, enum.Enum) else str(status)


class HistoryRecorder:
    """Sumidero de solo inserción usado por facturas, aprobaciones y pagos"""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        business_id: UUID,
        entity_type: str,
        entity_id: UUID,
        action: str,
        actor_id: Optional[UUID],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> AuditLog:
        entry = AuditLog(
            business_id=business_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            performed_by=actor_id,
            old_values=to_jsonable(old_value) if old_value is not None else None,
            new_values=to_jsonable(new_value) if new_value is not None else None,
            notes=notes,
        )
        self.db.add(entry)
        return entry

    def record_bill_change(
        self,
        bill,
        action: str,
        actor_id: Optional[UUID],
        old_status=None,
        new_status=None,
        changes: Optional[Dict[str, Dict[str, Any]]] = None,
        notes: Optional[str] = None,
        include_snapshot: bool = False,
    ) -> BillHistory:
        entry = BillHistory(
            business_id=bill.business_id,
            bill_id=bill.id,
            action=action,
            performed_by=actor_id,
            old_status=status_value(old_status),
            new_status=status_value(new_status if new_status is not None else bill.status),
            changes=to_jsonable(changes) if changes else None,
            bill_snapshot=snapshot(bill) if include_snapshot else None,
            notes=notes,
        )
        self.db.add(entry)
        return entry

    def record_approval(
        self,
        bill,
        action: str,
        actor_id: Optional[UUID],
        old_status,
        new_status,
        old_approval_status,
        new_approval_status,
        notes: Optional[str] = None,
    ) -> BillApprovalHistory:
        entry = BillApprovalHistory(
            business_id=bill.business_id,
            bill_id=bill.id,
            action=action,
            performed_by=actor_id,
            notes=notes,
            old_status=status_value(old_status),
            new_status=status_value(new_status),
            old_approval_status=status_value(old_approval_status),
            new_approval_status=status_value(new_approval_status),
        )
        self.db.add(entry)
        return entry

    def bill_history(self, bill_id: UUID) -> List[BillHistory]:
        return self.db.query(BillHistory).filter(
            BillHistory.bill_id == bill_id
        ).order_by(BillHistory.created_at.asc()).all()

    def approval_history(self, bill_id: UUID) -> List[BillApprovalHistory]:
        return self.db.query(BillApprovalHistory).filter(
            BillApprovalHistory.bill_id == bill_id
        ).order_by(BillApprovalHistory.created_at.asc()).all()

    def entity_log(self, business_id: UUID, entity_type: str, entity_id: UUID) -> List[AuditLog]:
        return self.db.query(AuditLog).filter(
            AuditLog.business_id == business_id,
            AuditLog.entity_type == entity_type,
            AuditLog.entity_id == entity_id
        ).order_by(AuditLog.created_at.asc()).all()

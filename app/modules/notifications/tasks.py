"""
Tareas asíncronas de Celery del ledger: notificaciones in-app y marcado
periódico de facturas vencidas.
"""
import logging
from datetime import date
from typing import Any, Dict, Optional
from uuid import UUID

from app.core.celery import celery_app
from app.database.database import SessionLocal
from app.modules.notifications.models import Notification

logger = logging.getLogger(__name__)


def _as_uuid(value: Optional[str]) -> Optional[UUID]:
    return UUID(value) if value else None


@celery_app.task(bind=True, max_retries=3)
def send_notification_task(self, payload: Dict[str, Any]):
    """
    Persiste la notificación in-app. Los canales externos (email, SMS)
    quedan fuera del ledger.
    """
    db = SessionLocal()
    try:
        notification = Notification(
            business_id=UUID(payload["business_id"]),
            recipient_id=UUID(payload["recipient_id"]),
            type=payload["type"],
            title=payload["title"],
            message=payload["message"],
            entity_type=payload.get("entity_type"),
            entity_id=_as_uuid(payload.get("entity_id")),
        )
        db.add(notification)
        db.commit()
        logger.info(f"Notification {payload['type']} stored for {payload['recipient_id']}")
        return {"status": "success", "notification_id": str(notification.id)}

    except Exception as exc:
        db.rollback()
        logger.error(f"Notification delivery failed: {str(exc)}")

        # Retry with exponential backoff
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))

        return {"status": "failed", "error": str(exc)}
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=1)
def mark_overdue_bills_task(self, as_of: Optional[str] = None):
    """Marca como vencidas las facturas con saldo y fecha de vencimiento pasada"""
    from app.modules.bills.service import BillService

    db = SessionLocal()
    try:
        today = date.fromisoformat(as_of) if as_of else date.today()
        marked = BillService(db).mark_overdue_bills(today=today)
        return {"status": "success", "marked": marked, "as_of": today.isoformat()}
    except Exception as exc:
        db.rollback()
        logger.error(f"Overdue marking failed: {str(exc)}", exc_info=True)
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=300)
        return {"status": "failed", "error": str(exc)}
    finally:
        db.close()

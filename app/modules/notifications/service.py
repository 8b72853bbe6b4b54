"""
Capacidad de notificación del ledger.

``notify`` solo encola el mensaje; la entrega la hace el worker. Un fallo al
encolar se registra en el log y nunca se propaga al llamador, que ya hizo
commit de su operación.
"""

import logging
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from app.core.config import settings

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Dict[str, Any]], Any]


def celery_dispatcher(payload: Dict[str, Any]) -> Any:
    from app.modules.notifications.tasks import send_notification_task
    return send_notification_task.delay(payload)


class NotificationService:

    def __init__(self, dispatcher: Optional[Dispatcher] = None, enabled: Optional[bool] = None):
        self.dispatcher = dispatcher or celery_dispatcher
        self.enabled = settings.NOTIFICATIONS_ENABLED if enabled is None else enabled

    def notify(
        self,
        type: str,
        recipient_id: Optional[UUID],
        business_id: UUID,
        title: str,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[UUID] = None,
    ) -> bool:
        """Encola una notificación. Devuelve False si no se pudo encolar."""
        if not self.enabled or recipient_id is None:
            return False

        payload = {
            "type": type,
            "recipient_id": str(recipient_id),
            "business_id": str(business_id),
            "title": title,
            "message": message,
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id else None,
        }
        try:
            self.dispatcher(payload)
            logger.debug(f"Notification {type} queued for {recipient_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to queue notification {type} for {recipient_id}: {str(e)}", exc_info=True)
            return False

"""
Tests para notificaciones y tareas periódicas
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

from app.modules.bills.models import Bill, BillStatus
from app.modules.notifications.models import Notification
from app.modules.notifications.service import NotificationService
from app.modules.notifications.tasks import send_notification_task, mark_overdue_bills_task


class TestNotificationService:

    def test_disabled_sends_nothing(self, dispatcher, business):
        service = NotificationService(dispatcher=dispatcher, enabled=False)
        assert service.notify("BILL_APPROVED", uuid4(), business.id, "t", "m") is False
        assert dispatcher.sent == []

    def test_without_recipient(self, notifier, dispatcher, business):
        assert notifier.notify("BILL_APPROVED", None, business.id, "t", "m") is False
        assert dispatcher.sent == []

    def test_payload(self, notifier, dispatcher, business):
        recipient, entity = uuid4(), uuid4()
        assert notifier.notify("BILL_APPROVED", recipient, business.id, "Título", "Mensaje", "BILL", entity)
        assert dispatcher.sent == [{
            "type": "BILL_APPROVED",
            "recipient_id": str(recipient),
            "business_id": str(business.id),
            "title": "Título",
            "message": "Mensaje",
            "entity_type": "BILL",
            "entity_id": str(entity),
        }]

    def test_dispatch_failure_is_swallowed(self, failing_notifier, business):
        assert failing_notifier.notify("BILL_APPROVED", uuid4(), business.id, "t", "m") is False


class TestTasks:

    def test_send_notification_persists(self, db_session, business):
        recipient = uuid4()
        result = send_notification_task({
            "type": "PAYMENT_RECEIVED",
            "recipient_id": str(recipient),
            "business_id": str(business.id),
            "title": "Pago recibido",
            "message": "Se aplicaron 10.00",
            "entity_type": "BILL",
            "entity_id": None,
        })

        assert result["status"] == "success"
        stored = db_session.query(Notification).filter_by(recipient_id=recipient).one()
        assert stored.type == "PAYMENT_RECEIVED"
        assert stored.is_read is False

    def test_mark_overdue_task(self, db_session, business, bill_factory):
        today = date.today()
        overdue = bill_factory(amount=Decimal("10"), bill_date=today - timedelta(days=5), due_date=today - timedelta(days=1))
        current = bill_factory(amount=Decimal("10"), due_date=today + timedelta(days=5))

        result = mark_overdue_bills_task(today.isoformat())

        assert result == {"status": "success", "marked": 1, "as_of": today.isoformat()}
        db_session.expire_all()
        assert db_session.get(Bill, overdue.id).status == BillStatus.OVERDUE
        assert db_session.get(Bill, current.id).status == BillStatus.PENDING

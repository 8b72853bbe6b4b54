"""
Tests para el registro de historial y auditoría
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import InvalidStateError
from app.modules.bills.models import BillStatus, PaymentMethod
from app.modules.history.models import AuditLog, BillHistory
from app.modules.history.service import HistoryRecorder, snapshot, to_jsonable
from app.modules.payments.schemas import SinglePaymentCreate
from app.modules.payments.service import PaymentAllocationService
from app.modules.notifications.service import NotificationService


class TestSerialization:

    def test_to_jsonable(self):
        ident = uuid4()
        value = to_jsonable({"status": BillStatus.PAID, "amount": Decimal("1.50"), "ids": [ident]})
        assert value == {"status": "PAID", "amount": "1.50", "ids": [str(ident)]}

    def test_snapshot_excludes_fields(self, bill_factory):
        bill = bill_factory()
        data = snapshot(bill, exclude=["notes"])
        assert data["bill_number"] == bill.bill_number
        assert data["total_amount"] == "100.00"
        assert "notes" not in data


class TestRecorder:

    def test_history_is_append_only(self, db_session, bill_factory):
        bill = bill_factory()
        entry = HistoryRecorder(db_session).bill_history(bill.id)[0]

        entry.notes = "editado"
        with pytest.raises(RuntimeError):
            db_session.flush()
        db_session.rollback()

        db_session.delete(HistoryRecorder(db_session).bill_history(bill.id)[0])
        with pytest.raises(RuntimeError):
            db_session.flush()
        db_session.rollback()

    def test_audit_log_is_append_only(self, db_session, business, owner_id):
        entry = HistoryRecorder(db_session).record(business.id, "PAYMENT", uuid4(), "CREATED", owner_id, new_value={"a": 1})
        db_session.commit()

        entry.action = "OTRA"
        with pytest.raises(RuntimeError):
            db_session.commit()
        db_session.rollback()

    def test_rollback_discards_history(self, db_session, business, owner_id):
        recorder = HistoryRecorder(db_session)
        recorder.record(business.id, "PAYMENT", uuid4(), "CREATED", owner_id)
        db_session.rollback()
        assert db_session.query(AuditLog).count() == 0

    def test_failed_payment_writes_no_history(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(submit=False)
        before = db_session.query(BillHistory).filter_by(bill_id=bill.id).count()

        with pytest.raises(InvalidStateError):
            PaymentAllocationService(db_session, notifier=NotificationService(enabled=False)).allocate_single_payment(
                business.id, owner_id,
                SinglePaymentCreate(bill_id=bill.id, amount=Decimal("10"), method=PaymentMethod.CASH)
            )

        assert db_session.query(BillHistory).filter_by(bill_id=bill.id).count() == before
        assert db_session.query(AuditLog).count() == 0

    def test_bill_lifecycle_history(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("50"))
        PaymentAllocationService(db_session, notifier=NotificationService(enabled=False)).allocate_single_payment(
            business.id, owner_id,
            SinglePaymentCreate(bill_id=bill.id, amount=Decimal("50"), method=PaymentMethod.CASH)
        )

        history = HistoryRecorder(db_session).bill_history(bill.id)
        assert [h.action for h in history] == ["CREATED", "SUBMITTED", "PAYMENT_ALLOCATED"]
        assert history[-1].old_status == "PENDING"
        assert history[-1].new_status == "PAID"
        assert history[-1].changes["balance_amount"] == {"old": "50.00", "new": "0.00"}
        assert history[0].bill_snapshot["status"] == "DRAFT"
        assert all(h.performed_by == owner_id for h in history)

    def test_entity_log(self, db_session, business, owner_id):
        entity_id = uuid4()
        recorder = HistoryRecorder(db_session)
        recorder.record(business.id, "PAYMENT", entity_id, "CREATED", owner_id)
        recorder.record(business.id, "PAYMENT", entity_id, "VERIFIED", owner_id)
        recorder.record(business.id, "PAYMENT", uuid4(), "CREATED", owner_id)
        db_session.commit()

        assert [e.action for e in recorder.entity_log(business.id, "PAYMENT", entity_id)] == ["CREATED", "VERIFIED"]

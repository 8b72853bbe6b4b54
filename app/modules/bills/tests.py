"""
Tests para el módulo de Facturas

Cubren:
- Cálculo de totales y sus invariantes
- Numeración por negocio e idempotencia
- Reglas de edición, anulación y borrado lógico
- Historial: una fila por cada mutación
- Marcado de facturas vencidas
- Aislamiento por negocio y permisos
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import ValidationError, InvalidStateError, ForbiddenError, NotFoundError
from app.modules.bills.calculator import compute_bill_totals
from app.modules.bills.models import Bill, BillStatus, ApprovalStatus
from app.modules.bills.schemas import BillCreate, BillItemCreate, BillUpdate
from app.modules.bills.service import BillService
from app.modules.business.models import StaffRole
from app.modules.history.models import BillHistory, BillApprovalHistory
from app.modules.payments.schemas import SinglePaymentCreate
from app.modules.payments.service import PaymentAllocationService
from app.modules.bills.models import PaymentMethod


def item(rate, quantity="1", **extra):
    return BillItemCreate(product_name="Producto", quantity=Decimal(quantity), rate=Decimal(rate), **extra)


def pay(db, business, actor, bill, amount):
    return PaymentAllocationService(db).allocate_single_payment(
        business.id, actor,
        SinglePaymentCreate(bill_id=bill.id, amount=Decimal(amount), method=PaymentMethod.CASH)
    )


# ===== CÁLCULO DE TOTALES =====

class TestBillTotals:
    """Tests del cálculo de totales"""

    def test_line_discount_and_tax_percent(self):
        totals = compute_bill_totals([item("50", "2", discount_percent=Decimal("10"), tax_percent=Decimal("18"))])
        assert totals.subtotal == Decimal("100.00")
        assert totals.discount_amount == Decimal("10.00")
        assert totals.tax_amount == Decimal("16.20")
        assert totals.total_amount == Decimal("106.20")

    def test_total_identity_with_all_charges(self):
        totals = compute_bill_totals(
            [item("33.33", "3", tax_percent=Decimal("5")), item("10")],
            discount_amount=Decimal("5"),
            shipping_cost=Decimal("7.50"),
            adjustment_amount=Decimal("-1.25"),
            round_off_amount=Decimal("0.04"),
        )
        expected = (
            totals.subtotal - totals.discount_amount + totals.tax_amount
            + totals.shipping_cost + totals.adjustment_amount + totals.round_off_amount
        )
        assert totals.total_amount == expected
        assert totals.total_amount == Decimal("116.28")

    def test_half_up_rounding(self):
        totals = compute_bill_totals([item("0.125", "1")])
        assert totals.subtotal == Decimal("0.13")

    def test_empty_items_rejected(self):
        with pytest.raises(ValidationError) as exc:
            compute_bill_totals([])
        assert exc.value.errors[0]["field"] == "items"

    def test_negative_line_total_rejected(self):
        with pytest.raises(ValidationError):
            compute_bill_totals([item("10", discount_amount=Decimal("15"))])

    def test_negative_bill_total_rejected(self):
        with pytest.raises(ValidationError):
            compute_bill_totals([item("10")], adjustment_amount=Decimal("-20"))


# ===== CREACIÓN =====

class TestCreateBill:
    """Tests de creación de facturas"""

    def test_create_bill_defaults(self, db_session, business, owner_id, customer):
        bill = BillService(db_session).create_bill(
            business.id, owner_id,
            BillCreate(customer_id=customer.id, items=[item("100")], shipping_cost=Decimal("10"))
        )
        assert bill.status == BillStatus.DRAFT
        assert bill.approval_status == ApprovalStatus.NOT_REQUIRED
        assert bill.total_amount == Decimal("110.00")
        assert bill.balance_amount == bill.total_amount
        assert bill.paid_amount == Decimal("0.00")
        assert len(bill.items) == 1
        assert bill.bill_number == f"INV-{date.today().year}-00001"

    def test_numbers_are_sequential_per_business(self, db_session, business, other_business, owner_id):
        service = BillService(db_session)
        first = service.create_bill(business.id, owner_id, BillCreate(items=[item("10")]))
        second = service.create_bill(business.id, owner_id, BillCreate(items=[item("10")]))
        other = service.create_bill(other_business.id, other_business.owner_id, BillCreate(items=[item("10")]))

        assert first.sequence_number == 1
        assert second.sequence_number == 2
        assert second.bill_number.endswith("-00002")
        assert other.sequence_number == 1

    def test_idempotency_key_returns_same_bill(self, db_session, business, owner_id):
        service = BillService(db_session)
        data = BillCreate(items=[item("10")], idempotency_key="req-123")
        first = service.create_bill(business.id, owner_id, data)
        second = service.create_bill(business.id, owner_id, data)

        assert first.id == second.id
        assert db_session.query(Bill).filter(Bill.business_id == business.id).count() == 1

    def test_empty_bill_rejected(self, db_session, business, owner_id):
        with pytest.raises(ValidationError):
            BillService(db_session).create_bill(business.id, owner_id, BillCreate(items=[]))
        assert db_session.query(Bill).count() == 0

    def test_unknown_customer_rejected(self, db_session, business, owner_id):
        with pytest.raises(NotFoundError):
            BillService(db_session).create_bill(
                business.id, owner_id, BillCreate(customer_id=uuid4(), items=[item("10")])
            )

    def test_created_history_row(self, db_session, business, owner_id):
        bill = BillService(db_session).create_bill(business.id, owner_id, BillCreate(items=[item("10")]))
        history = BillService(db_session).get_bill_history(business.id, bill.id)
        assert [h.action for h in history] == ["CREATED"]
        assert history[0].new_status == "DRAFT"
        assert history[0].bill_snapshot["bill_number"] == bill.bill_number

    def test_viewer_cannot_create(self, db_session, business, staff_factory):
        viewer = staff_factory(StaffRole.VIEWER)
        with pytest.raises(ForbiddenError):
            BillService(db_session).create_bill(business.id, viewer, BillCreate(items=[item("10")]))
        assert db_session.query(Bill).count() == 0


# ===== ACTUALIZACIÓN =====

class TestUpdateBill:
    """Tests de edición de facturas"""

    def test_update_recomputes_totals(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("100"), submit=False)
        updated = BillService(db_session).update_bill(
            business.id, owner_id, bill.id,
            BillUpdate(items=[item("40", "2")], notes="corregida")
        )
        assert updated.subtotal == Decimal("80.00")
        assert updated.total_amount == Decimal("80.00")
        assert updated.balance_amount == Decimal("80.00")
        assert updated.notes == "corregida"

        history = BillService(db_session).get_bill_history(business.id, bill.id)
        assert history[-1].action == "UPDATED"
        assert history[-1].changes["total_amount"] == {"old": "100.00", "new": "80.00"}

    def test_update_keeps_global_discount(self, db_session, business, owner_id):
        service = BillService(db_session)
        bill = service.create_bill(
            business.id, owner_id, BillCreate(items=[item("100")], discount_amount=Decimal("10"))
        )
        updated = service.update_bill(business.id, owner_id, bill.id, BillUpdate(shipping_cost=Decimal("5")))
        assert updated.discount_amount == Decimal("10.00")
        assert updated.total_amount == Decimal("95.00")

    def test_update_pending_bill_allowed(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory()
        assert bill.status == BillStatus.PENDING
        updated = BillService(db_session).update_bill(business.id, owner_id, bill.id, BillUpdate(terms="30 días"))
        assert updated.terms == "30 días"

    def test_update_approved_bill_rejected(self, db_session, business, owner_id):
        business.approval_enabled = True
        business.auto_approve_below_threshold = True
        business.approval_threshold_amount = Decimal("1000")
        db_session.commit()

        from app.modules.approvals.service import BillApprovalService
        from app.modules.notifications.service import NotificationService
        service = BillService(db_session)
        bill = service.create_bill(business.id, owner_id, BillCreate(items=[item("10")]))
        bill = BillApprovalService(db_session, notifier=NotificationService(enabled=False)).submit_for_approval(
            business.id, owner_id, bill.id
        )
        assert bill.approval_status == ApprovalStatus.APPROVED

        with pytest.raises(InvalidStateError):
            service.update_bill(business.id, owner_id, bill.id, BillUpdate(notes="x"))

    def test_update_paid_bill_rejected(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("50"))
        pay(db_session, business, owner_id, bill, "50")
        with pytest.raises(InvalidStateError):
            BillService(db_session).update_bill(business.id, owner_id, bill.id, BillUpdate(notes="x"))

    def test_update_money_rejected_after_allocation(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("100"))
        pay(db_session, business, owner_id, bill, "10")
        # PARTIAL ya no es editable; se fuerza PENDING para probar el congelamiento de montos
        bill = db_session.get(Bill, bill.id)
        bill.status = BillStatus.PENDING
        db_session.commit()

        service = BillService(db_session)
        with pytest.raises(InvalidStateError):
            service.update_bill(business.id, owner_id, bill.id, BillUpdate(shipping_cost=Decimal("5")))
        updated = service.update_bill(business.id, owner_id, bill.id, BillUpdate(notes="solo texto"))
        assert updated.notes == "solo texto"
        assert updated.total_amount == Decimal("100.00")

    def test_empty_patch_rejected(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(submit=False)
        with pytest.raises(ValidationError):
            BillService(db_session).update_bill(business.id, owner_id, bill.id, BillUpdate())

    def test_null_bill_date_rejected(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(submit=False)
        with pytest.raises(ValidationError) as exc:
            BillService(db_session).update_bill(business.id, owner_id, bill.id, BillUpdate(bill_date=None))
        assert exc.value.errors == [{"field": "bill_date", "issue": "La fecha de la factura es obligatoria"}]

        db_session.expire_all()
        assert db_session.get(Bill, bill.id).bill_date == bill.bill_date


# ===== ANULACIÓN Y BORRADO =====

class TestVoidAndDelete:
    """Tests de anulación y borrado lógico"""

    def test_void_partial_keeps_allocations(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("100"))
        pay(db_session, business, owner_id, bill, "40")

        voided = BillService(db_session).void_bill(business.id, owner_id, bill.id, "Error de facturación")
        assert voided.status == BillStatus.VOID
        assert voided.voided_by == owner_id
        assert voided.void_reason == "Error de facturación"
        assert voided.paid_amount == Decimal("40.00")
        assert len(PaymentAllocationService(db_session).list_bill_allocations(business.id, bill.id)) == 1

    def test_void_cancels_pending_approval(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(requires_approval=True)
        assert bill.approval_status == ApprovalStatus.PENDING

        voided = BillService(db_session).void_bill(business.id, owner_id, bill.id, "Duplicada")
        assert voided.approval_status == ApprovalStatus.CANCELLED
        actions = [h.action for h in db_session.query(BillApprovalHistory).filter_by(bill_id=bill.id)]
        assert "CANCELLED" in actions

    def test_void_twice_rejected(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory()
        service = BillService(db_session)
        service.void_bill(business.id, owner_id, bill.id, "motivo")
        with pytest.raises(InvalidStateError):
            service.void_bill(business.id, owner_id, bill.id, "otra vez")

    def test_void_paid_rejected(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("20"))
        pay(db_session, business, owner_id, bill, "20")
        with pytest.raises(InvalidStateError):
            BillService(db_session).void_bill(business.id, owner_id, bill.id, "motivo")

    def test_cashier_cannot_void(self, db_session, business, staff_factory, bill_factory):
        cashier = staff_factory(StaffRole.CASHIER)
        bill = bill_factory()
        with pytest.raises(ForbiddenError):
            BillService(db_session).void_bill(business.id, cashier, bill.id, "motivo")
        db_session.expire_all()
        assert db_session.get(Bill, bill.id).status == BillStatus.PENDING

    def test_soft_delete(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(submit=False)
        service = BillService(db_session)
        service.delete_bill(business.id, owner_id, bill.id)

        with pytest.raises(NotFoundError):
            service.get_bill(business.id, bill.id)
        assert service.get_bill(business.id, bill.id, include_deleted=True).deleted_at is not None
        assert service.get_bill_history(business.id, bill.id)[-1].action == "DELETED"

    def test_delete_with_payments_rejected(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory()
        pay(db_session, business, owner_id, bill, "10")
        with pytest.raises(InvalidStateError):
            BillService(db_session).delete_bill(business.id, owner_id, bill.id)


# ===== CONSULTAS =====

class TestQueries:
    """Tests de listado, aislamiento y vencimiento"""

    def test_list_filters(self, db_session, business, owner_id, customer, bill_factory):
        bill_factory(customer_id=customer.id)
        bill_factory(submit=False)
        paid = bill_factory(amount=Decimal("10"))
        pay(db_session, business, owner_id, paid, "10")

        service = BillService(db_session)
        assert service.list_bills(business.id).total == 3
        assert service.list_bills(business.id, status=BillStatus.DRAFT).total == 1
        assert service.list_bills(business.id, customer_id=customer.id).total == 1
        assert service.list_bills(business.id, has_balance=False).total == 1
        assert len(service.list_bills(business.id, limit=2).items) == 2

    def test_other_business_cannot_read(self, db_session, business, other_business, bill_factory):
        bill = bill_factory()
        with pytest.raises(NotFoundError):
            BillService(db_session).get_bill(other_business.id, bill.id)
        with pytest.raises(NotFoundError):
            BillService(db_session).get_bill_history(other_business.id, bill.id)

    def test_mark_overdue(self, db_session, business, owner_id, bill_factory):
        today = date.today()
        late = bill_factory(due_date=today - timedelta(days=1), bill_date=today - timedelta(days=30))
        on_time = bill_factory(due_date=today + timedelta(days=5))
        draft = bill_factory(due_date=today - timedelta(days=3), bill_date=today - timedelta(days=30), submit=False)

        marked = BillService(db_session).mark_overdue_bills(today=today)

        assert marked == 1
        db_session.expire_all()
        assert db_session.get(Bill, late.id).status == BillStatus.OVERDUE
        assert db_session.get(Bill, on_time.id).status == BillStatus.PENDING
        assert db_session.get(Bill, draft.id).status == BillStatus.DRAFT
        assert BillService(db_session).get_bill_history(business.id, late.id)[-1].action == "OVERDUE"

    def test_mark_overdue_skips_bills_awaiting_approval(self, db_session, business, owner_id, bill_factory):
        from app.modules.approvals.schemas import ApprovalAction
        from app.modules.approvals.service import BillApprovalService
        from app.modules.notifications.service import NotificationService

        today = date.today()
        awaiting = bill_factory(
            due_date=today - timedelta(days=3), bill_date=today - timedelta(days=30), requires_approval=True
        )

        assert BillService(db_session).mark_overdue_bills(today=today) == 0

        rejected = BillApprovalService(db_session, notifier=NotificationService(enabled=False)).process_approval(
            business.id, owner_id, awaiting.id, ApprovalAction.REJECT, "corregir"
        )
        assert rejected.status == BillStatus.DRAFT
        assert rejected.approval_status == ApprovalStatus.REJECTED

    def test_mark_overdue_includes_approved_bills(self, db_session, business, owner_id, bill_factory):
        from app.modules.approvals.schemas import ApprovalAction
        from app.modules.approvals.service import BillApprovalService
        from app.modules.notifications.service import NotificationService

        today = date.today()
        bill = bill_factory(
            due_date=today - timedelta(days=3), bill_date=today - timedelta(days=30), requires_approval=True
        )
        BillApprovalService(db_session, notifier=NotificationService(enabled=False)).process_approval(
            business.id, owner_id, bill.id, ApprovalAction.APPROVE
        )

        assert BillService(db_session).mark_overdue_bills(today=today) == 1

    def test_list_orders_across_years(self, db_session, business, bill_factory):
        december = bill_factory(bill_date=date(2025, 12, 1), submit=False)
        january = bill_factory(bill_date=date(2026, 1, 10), submit=False)
        late_december = bill_factory(bill_date=date(2025, 12, 15), submit=False)
        assert (december.sequence_number, january.sequence_number, late_december.sequence_number) == (1, 1, 2)

        listed = BillService(db_session).list_bills(business.id)
        assert [b.id for b in listed.items] == [january.id, late_december.id, december.id]


# ===== HISTORIAL =====

class TestHistory:
    """Una fila de historial por cada transición"""

    def test_one_history_row_per_transition(self, db_session, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("100"))
        pay(db_session, business, owner_id, bill, "30")
        pay(db_session, business, owner_id, bill, "70")

        rows = db_session.query(BillHistory).filter(BillHistory.bill_id == bill.id).order_by(BillHistory.created_at).all()
        transitions = [(r.old_status, r.new_status) for r in rows]
        assert transitions == [
            (None, "DRAFT"),
            ("DRAFT", "PENDING"),
            ("PENDING", "PARTIAL"),
            ("PARTIAL", "PAID"),
        ]

"""
Tests para el motor de asignación de pagos

Cubren:
- Pago a una factura: parcial, total, excedente, validaciones
- Bloqueo por aprobación pendiente sin efectos secundarios
- Pago masivo FIFO y excedente sin asignar
- Invariantes de pago y asignación
- Escrituras concurrentes sobre la misma factura
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

from sqlalchemy.orm.exc import StaleDataError

from app.common.exceptions import ValidationError, InvalidStateError, NotFoundError, ConflictError, ForbiddenError
from app.common.retry import run_with_retry
from app.modules.approvals.schemas import ApprovalAction
from app.modules.approvals.service import BillApprovalService
from app.modules.bills.models import Bill, BillStatus, PaymentMethod
from app.modules.business.models import StaffRole
from app.modules.history.models import AuditLog
from app.modules.notifications.service import NotificationService
from app.modules.payments.models import Payment, PaymentAllocation, PaymentStatus
from app.modules.payments.schemas import SinglePaymentCreate, BulkPaymentCreate
from app.modules.payments.service import PaymentAllocationService


def single(bill_id, amount, **extra):
    return SinglePaymentCreate(bill_id=bill_id, amount=Decimal(amount), method=PaymentMethod.UPI, **extra)


def bulk(customer_id, amount, **extra):
    return BulkPaymentCreate(customer_id=customer_id, amount=Decimal(amount), method=PaymentMethod.BANK_TRANSFER, **extra)


@pytest.fixture
def payments(db_session, notifier):
    return PaymentAllocationService(db_session, notifier=notifier)


def assert_payment_invariants(payment):
    assert payment.allocated_amount + payment.unallocated_amount == payment.amount
    for allocation in payment.allocations:
        assert allocation.bill_balance_after == allocation.bill_balance_before - allocation.allocated_amount
        assert allocation.allocated_amount <= allocation.bill_balance_before


class TestSinglePayment:
    """Pago contra una sola factura"""

    def test_partial_then_paid(self, payments, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("100.00"))

        payment, allocation = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "40"))
        refreshed = payments.bills.get_bill(business.id, bill.id)
        assert refreshed.status == BillStatus.PARTIAL
        assert refreshed.paid_amount == Decimal("40.00")
        assert refreshed.balance_amount == Decimal("60.00")
        assert allocation.bill_balance_before == Decimal("100.00")
        assert allocation.bill_balance_after == Decimal("60.00")
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.payment_number == f"PAY-{date.today().year}-00001"

        payment, allocation = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "60"))
        refreshed = payments.bills.get_bill(business.id, bill.id)
        assert refreshed.status == BillStatus.PAID
        assert refreshed.balance_amount == Decimal("0.00")
        assert refreshed.total_amount == refreshed.paid_amount + refreshed.balance_amount
        assert payment.payment_number.endswith("-00002")

    def test_overpayment_left_unallocated(self, payments, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("75.00"))
        payment, allocation = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "100"))

        assert allocation.allocated_amount == Decimal("75.00")
        assert payment.allocated_amount == Decimal("75.00")
        assert payment.unallocated_amount == Decimal("25.00")
        assert_payment_invariants(payment)

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount_rejected(self, payments, business, owner_id, bill_factory, amount):
        bill = bill_factory()
        with pytest.raises(ValidationError):
            payments.allocate_single_payment(business.id, owner_id, single(bill.id, amount))

    def test_draft_bill_not_payable(self, db_session, payments, business, owner_id, bill_factory):
        bill = bill_factory(submit=False)
        with pytest.raises(InvalidStateError):
            payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10"))
        assert db_session.query(Payment).count() == 0

    def test_void_bill_not_payable(self, payments, business, owner_id, bill_factory):
        bill = bill_factory()
        payments.bills.void_bill(business.id, owner_id, bill.id, "anulada")
        with pytest.raises(InvalidStateError):
            payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10"))

    def test_paid_bill_not_payable(self, payments, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("10"))
        payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10"))
        with pytest.raises(InvalidStateError):
            payments.allocate_single_payment(business.id, owner_id, single(bill.id, "1"))

    def test_overdue_bill_payable(self, db_session, payments, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("50"), due_date=date.today() - timedelta(days=1),
                            bill_date=date.today() - timedelta(days=10))
        payments.bills.mark_overdue_bills()
        _, allocation = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "20"))
        assert allocation.allocated_amount == Decimal("20.00")
        assert payments.bills.get_bill(business.id, bill.id).status == BillStatus.PARTIAL

    def test_approval_gate_leaves_no_trace(self, db_session, payments, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("300.00"), requires_approval=True)
        before = (bill.status, bill.paid_amount, bill.balance_amount, bill.version_id)
        assert not bill.is_payable

        with pytest.raises(InvalidStateError):
            payments.allocate_single_payment(business.id, owner_id, single(bill.id, "100"))

        db_session.expire_all()
        fresh = db_session.get(Bill, bill.id)
        assert (fresh.status, fresh.paid_amount, fresh.balance_amount, fresh.version_id) == before
        assert db_session.query(Payment).count() == 0
        assert db_session.query(PaymentAllocation).count() == 0

        approved = BillApprovalService(db_session, notifier=NotificationService(enabled=False)).process_approval(
            business.id, owner_id, bill.id, ApprovalAction.APPROVE
        )
        assert approved.is_payable
        _, allocation = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "100"))
        assert allocation.bill_balance_before == Decimal("300.00")

    def test_viewer_cannot_pay(self, payments, business, staff_factory, bill_factory):
        viewer = staff_factory(StaffRole.VIEWER)
        bill = bill_factory()
        with pytest.raises(ForbiddenError):
            payments.allocate_single_payment(business.id, viewer, single(bill.id, "10"))

    def test_idempotent_payment(self, db_session, payments, business, owner_id, bill_factory):
        bill = bill_factory()
        first, _ = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10", idempotency_key="pay-1"))
        second, _ = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10", idempotency_key="pay-1"))
        assert first.id == second.id
        assert payments.bills.get_bill(business.id, bill.id).paid_amount == Decimal("10.00")

    def test_same_key_race_replays_winner(self, db_session, payments, business, owner_id, bill_factory, monkeypatch):
        bill = bill_factory()
        first, _ = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10", idempotency_key="pay-race"))

        # La primera búsqueda no ve el pago, como si llegara en paralelo
        original = PaymentAllocationService._find_by_idempotency_key
        calls = []

        def late_lookup(self, business_id, key):
            calls.append(key)
            if len(calls) == 1:
                return None
            return original(self, business_id, key)

        monkeypatch.setattr(PaymentAllocationService, "_find_by_idempotency_key", late_lookup)

        second, allocation = payments.allocate_single_payment(
            business.id, owner_id, single(bill.id, "10", idempotency_key="pay-race")
        )
        assert second.id == first.id
        assert allocation.payment_id == first.id
        assert len(calls) == 2
        assert payments.bills.get_bill(business.id, bill.id).paid_amount == Decimal("10.00")
        assert db_session.query(Payment).count() == 1

    def test_payment_notifies_bill_creator(self, payments, business, owner_id, bill_factory, dispatcher):
        bill = bill_factory()
        payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10"))
        assert dispatcher.sent[-1]["type"] == "PAYMENT_RECEIVED"
        assert dispatcher.sent[-1]["entity_id"] == str(bill.id)

    def test_audit_log_written(self, db_session, payments, business, owner_id, bill_factory):
        bill = bill_factory()
        payment, _ = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10"))
        log = db_session.query(AuditLog).filter_by(entity_type="PAYMENT", entity_id=payment.id).one()
        assert log.action == "CREATED"
        assert log.new_values["amount"] == "10.00"


class TestBulkPayment:
    """Pago masivo FIFO"""

    def test_fifo_by_due_date(self, payments, business, owner_id, customer, bill_factory):
        today = date.today()
        older = bill_factory(amount=Decimal("100.00"), customer_id=customer.id, due_date=today + timedelta(days=1))
        newer = bill_factory(amount=Decimal("50.00"), customer_id=customer.id, due_date=today + timedelta(days=10))

        result = payments.allocate_bulk_payment(business.id, owner_id, bulk(customer.id, "120"))

        assert [a.bill_id for a in result.allocations] == [older.id, newer.id]
        assert [a.allocated_amount for a in result.allocations] == [Decimal("100.00"), Decimal("20.00")]
        assert [a.allocation_order for a in result.allocations] == [1, 2]
        assert payments.bills.get_bill(business.id, older.id).status == BillStatus.PAID
        newer_fresh = payments.bills.get_bill(business.id, newer.id)
        assert newer_fresh.status == BillStatus.PARTIAL
        assert newer_fresh.balance_amount == Decimal("30.00")
        assert result.payment.status == PaymentStatus.COMPLETED
        assert result.payment.unallocated_amount == Decimal("0.00")
        assert_payment_invariants(result.payment)

    def test_bulk_overpayment(self, payments, business, owner_id, customer, bill_factory):
        bill_factory(amount=Decimal("100.00"), customer_id=customer.id)
        bill_factory(amount=Decimal("50.00"), customer_id=customer.id)

        result = payments.allocate_bulk_payment(business.id, owner_id, bulk(customer.id, "200"))

        assert result.payment.allocated_amount == Decimal("150.00")
        assert result.payment.unallocated_amount == Decimal("50.00")
        assert all(o.status == "allocated" for o in result.outcomes)

    def test_bills_without_due_date_last(self, payments, business, owner_id, customer, bill_factory):
        no_due = bill_factory(amount=Decimal("10"), customer_id=customer.id)
        due = bill_factory(amount=Decimal("10"), customer_id=customer.id, due_date=date.today() + timedelta(days=30))

        result = payments.allocate_bulk_payment(business.id, owner_id, bulk(customer.id, "15"))

        assert [a.bill_id for a in result.allocations] == [due.id, no_due.id]
        assert result.allocations[1].allocated_amount == Decimal("5.00")

    def test_ties_broken_by_bill_date_then_creation(self, payments, business, owner_id, customer, bill_factory):
        due = date.today() + timedelta(days=5)
        later_date = bill_factory(amount=Decimal("10"), customer_id=customer.id, due_date=due, bill_date=date.today())
        earlier_date = bill_factory(amount=Decimal("10"), customer_id=customer.id, due_date=due,
                                    bill_date=date.today() - timedelta(days=3))
        same_date = bill_factory(amount=Decimal("10"), customer_id=customer.id, due_date=due, bill_date=date.today())

        result = payments.allocate_bulk_payment(business.id, owner_id, bulk(customer.id, "30"))

        assert [a.bill_id for a in result.allocations] == [earlier_date.id, later_date.id, same_date.id]

    def test_skips_unpayable_bills(self, payments, business, owner_id, customer, bill_factory):
        draft = bill_factory(customer_id=customer.id, submit=False)
        gated = bill_factory(customer_id=customer.id, requires_approval=True)
        payable = bill_factory(amount=Decimal("40"), customer_id=customer.id)

        result = payments.allocate_bulk_payment(business.id, owner_id, bulk(customer.id, "100"))

        assert [a.bill_id for a in result.allocations] == [payable.id]
        assert payments.bills.get_bill(business.id, draft.id).paid_amount == Decimal("0.00")
        assert payments.bills.get_bill(business.id, gated.id).paid_amount == Decimal("0.00")
        assert result.payment.unallocated_amount == Decimal("60.00")

    def test_other_customers_untouched(self, db_session, payments, business, owner_id, customer, bill_factory):
        from app.modules.customers.service import CustomerService
        someone_else = CustomerService(db_session).create_customer(business.id, "Otro Cliente")
        mine = bill_factory(amount=Decimal("10"), customer_id=customer.id)
        theirs = bill_factory(amount=Decimal("10"), customer_id=someone_else.id)

        result = payments.allocate_bulk_payment(business.id, owner_id, bulk(customer.id, "50"))

        assert [a.bill_id for a in result.allocations] == [mine.id]
        assert payments.bills.get_bill(business.id, theirs.id).balance_amount == Decimal("10.00")

    def test_same_key_race_replays_winner(self, db_session, payments, business, owner_id, customer, bill_factory,
                                          monkeypatch):
        bill = bill_factory(amount=Decimal("100"), customer_id=customer.id)
        first = payments.allocate_bulk_payment(business.id, owner_id, bulk(customer.id, "40", idempotency_key="bulk-race"))

        original = PaymentAllocationService._find_by_idempotency_key
        calls = []

        def late_lookup(self, business_id, key):
            calls.append(key)
            if len(calls) == 1:
                return None
            return original(self, business_id, key)

        monkeypatch.setattr(PaymentAllocationService, "_find_by_idempotency_key", late_lookup)

        second = payments.allocate_bulk_payment(business.id, owner_id, bulk(customer.id, "40", idempotency_key="bulk-race"))
        assert second.payment.id == first.payment.id
        assert [a.bill_id for a in second.allocations] == [bill.id]
        assert payments.bills.get_bill(business.id, bill.id).paid_amount == Decimal("40.00")
        assert db_session.query(Payment).count() == 1

    def test_unknown_customer(self, db_session, payments, business, owner_id):
        with pytest.raises(NotFoundError):
            payments.allocate_bulk_payment(business.id, owner_id, bulk(uuid4(), "10"))
        assert db_session.query(Payment).count() == 0

    def test_customer_from_other_business(self, payments, other_business, customer):
        with pytest.raises(NotFoundError):
            payments.allocate_bulk_payment(other_business.id, other_business.owner_id, bulk(customer.id, "10"))


class TestConcurrency:
    """Dos instancias escribiendo sobre la misma factura"""

    def test_concurrent_allocations_never_overdraw(self, db_session, other_session, business, owner_id, bill_factory):
        bill = bill_factory(amount=Decimal("100.00"))
        silent = NotificationService(enabled=False)

        # La segunda instancia leyó la factura antes del primer pago
        stale = other_session.get(Bill, bill.id)
        assert stale.balance_amount == Decimal("100.00")

        _, first = PaymentAllocationService(db_session, notifier=silent).allocate_single_payment(
            business.id, owner_id, single(bill.id, "80")
        )
        try:
            _, second = PaymentAllocationService(other_session, notifier=silent).allocate_single_payment(
                business.id, owner_id, single(bill.id, "80")
            )
            second_amount = second.allocated_amount
        except ConflictError:
            second_amount = Decimal("0.00")

        db_session.expire_all()
        fresh = db_session.get(Bill, bill.id)
        assert first.allocated_amount == Decimal("80.00")
        assert second_amount <= Decimal("20.00")
        assert fresh.paid_amount == first.allocated_amount + second_amount
        assert fresh.balance_amount == fresh.total_amount - fresh.paid_amount
        assert fresh.balance_amount >= 0

    def test_stale_write_detected(self, db_session, other_session, business, owner_id, bill_factory):
        bill = bill_factory()
        stale = other_session.get(Bill, bill.id)

        PaymentAllocationService(db_session, notifier=NotificationService(enabled=False)).allocate_single_payment(
            business.id, owner_id, single(bill.id, "30")
        )

        stale.notes = "edición concurrente"
        with pytest.raises(StaleDataError):
            other_session.commit()
        other_session.rollback()

    def test_retry_recovers_from_stale_write(self, db_session, other_session, business, owner_id, bill_factory):
        bill = bill_factory()
        stale = other_session.get(Bill, bill.id)
        PaymentAllocationService(db_session, notifier=NotificationService(enabled=False)).allocate_single_payment(
            business.id, owner_id, single(bill.id, "30")
        )
        attempts = []

        def unit():
            attempts.append(1)
            if len(attempts) > 1:
                other_session.refresh(stale)
            stale.notes = "reintento"
            other_session.commit()
            return stale.notes

        assert run_with_retry(other_session, unit, "test") == "reintento"
        assert len(attempts) == 2

    def test_retry_exhaustion_raises_conflict(self, db_session):
        def unit():
            raise StaleDataError("siempre obsoleto")

        with pytest.raises(ConflictError) as exc:
            run_with_retry(db_session, unit, "test", max_retries=2, backoff=0)
        assert exc.value.kind == "conflict"


class TestQueries:
    """Consultas y verificación"""

    def test_get_list_and_allocations(self, payments, business, owner_id, customer, bill_factory):
        bill = bill_factory(customer_id=customer.id)
        payment, _ = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10"))
        payments.allocate_single_payment(business.id, owner_id, single(bill.id, "15"))

        assert payments.get_payment(business.id, payment.id).id == payment.id
        assert payments.list_payments(business.id).total == 2
        assert payments.list_payments(business.id, customer_id=customer.id).total == 2
        allocations = payments.list_bill_allocations(business.id, bill.id)
        assert [a.allocated_amount for a in allocations] == [Decimal("10.00"), Decimal("15.00")]

    def test_get_payment_other_business(self, payments, business, other_business, owner_id, bill_factory):
        bill = bill_factory()
        payment, _ = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10"))
        with pytest.raises(NotFoundError):
            payments.get_payment(other_business.id, payment.id)

    def test_verify_payment(self, payments, business, owner_id, bill_factory):
        bill = bill_factory()
        payment, _ = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10"))

        verified = payments.verify_payment(business.id, owner_id, payment.id, "conciliado")
        assert verified.verified_by == owner_id
        assert verified.verified_at is not None
        assert verified.allocated_amount == Decimal("10.00")

        with pytest.raises(InvalidStateError):
            payments.verify_payment(business.id, owner_id, payment.id)

    def test_allocations_are_append_only(self, db_session, payments, business, owner_id, bill_factory):
        bill = bill_factory()
        _, allocation = payments.allocate_single_payment(business.id, owner_id, single(bill.id, "10"))
        allocation.allocated_amount = Decimal("1.00")
        with pytest.raises(RuntimeError):
            db_session.flush()
        db_session.rollback()

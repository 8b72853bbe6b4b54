"""
Tests para el flujo de aprobación de facturas

Cubren envío, aprobación, rechazo, decisiones repetidas, permisos, lote,
configuración por negocio y notificaciones.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import ConflictError, ForbiddenError, InvalidStateError, NotFoundError
from app.modules.approvals.schemas import ApprovalAction
from app.modules.approvals.service import BillApprovalService
from app.modules.bills.models import Bill, BillStatus, ApprovalStatus, PaymentMethod
from app.modules.bills.schemas import BillItemCreate, BillUpdate
from app.modules.bills.service import BillService
from app.modules.business.models import StaffRole
from app.modules.business.schemas import ApprovalWorkflowConfig
from app.modules.history.models import AuditLog, BillApprovalHistory
from app.modules.notifications.service import NotificationService
from app.modules.payments.schemas import SinglePaymentCreate
from app.modules.payments.service import PaymentAllocationService


@pytest.fixture
def approvals(db_session, notifier):
    return BillApprovalService(db_session, notifier=notifier)


@pytest.fixture
def threshold_business(db_session, business):
    business.approval_enabled = True
    business.approval_threshold_amount = Decimal("500.00")
    db_session.commit()
    return business


class TestSubmit:
    """Envío de facturas en borrador"""

    def test_submit_without_policy(self, approvals, business, owner_id, bill_factory, dispatcher):
        bill = bill_factory(submit=False)
        submitted = approvals.submit_for_approval(business.id, owner_id, bill.id)

        assert submitted.status == BillStatus.PENDING
        assert submitted.approval_status == ApprovalStatus.NOT_REQUIRED
        assert submitted.requires_approval is False
        assert dispatcher.sent == []

    def test_threshold_policy(self, approvals, threshold_business, owner_id, bill_factory, dispatcher):
        small = approvals.submit_for_approval(
            threshold_business.id, owner_id, bill_factory(amount=Decimal("499.99"), submit=False).id
        )
        large = approvals.submit_for_approval(
            threshold_business.id, owner_id, bill_factory(amount=Decimal("500.00"), submit=False).id
        )

        assert small.approval_status == ApprovalStatus.NOT_REQUIRED
        assert large.approval_status == ApprovalStatus.PENDING
        assert large.requires_approval is True
        assert len(dispatcher.sent) == 1
        assert dispatcher.sent[0]["type"] == "BILL_APPROVAL_REQUIRED"
        assert dispatcher.sent[0]["recipient_id"] == str(threshold_business.owner_id)

    def test_no_threshold_means_always(self, db_session, approvals, business, owner_id, bill_factory):
        business.approval_enabled = True
        db_session.commit()
        bill = approvals.submit_for_approval(business.id, owner_id, bill_factory(amount=Decimal("1"), submit=False).id)
        assert bill.approval_status == ApprovalStatus.PENDING

    def test_caller_can_require_approval(self, approvals, business, owner_id, bill_factory):
        bill = approvals.submit_for_approval(
            business.id, owner_id, bill_factory(submit=False).id, requires_approval=True
        )
        assert bill.approval_status == ApprovalStatus.PENDING

    def test_auto_approve_below_threshold(self, db_session, approvals, threshold_business, owner_id, bill_factory):
        threshold_business.auto_approve_below_threshold = True
        db_session.commit()

        bill = approvals.submit_for_approval(threshold_business.id, owner_id, bill_factory(amount=Decimal("10"), submit=False).id)

        assert bill.approval_status == ApprovalStatus.APPROVED
        assert bill.approved_by == owner_id
        history = approvals.get_bill_approval_history(threshold_business.id, bill.id)
        assert [h.action for h in history] == ["AUTO_APPROVED"]

    def test_submit_non_draft_rejected(self, approvals, business, owner_id, bill_factory):
        bill = bill_factory()
        with pytest.raises(InvalidStateError):
            approvals.submit_for_approval(business.id, owner_id, bill.id)


class TestDecision:
    """Aprobación y rechazo"""

    def test_approve(self, approvals, business, owner_id, bill_factory, dispatcher):
        bill = bill_factory(requires_approval=True)
        approved = approvals.process_approval(business.id, owner_id, bill.id, ApprovalAction.APPROVE, "ok")

        assert approved.approval_status == ApprovalStatus.APPROVED
        assert approved.status == BillStatus.PENDING
        assert approved.approved_by == owner_id
        assert approved.approved_at is not None
        assert dispatcher.sent[-1]["type"] == "BILL_APPROVED"
        assert dispatcher.sent[-1]["recipient_id"] == str(bill.created_by)

    def test_reject_returns_to_draft(self, approvals, business, owner_id, bill_factory):
        bill = bill_factory(requires_approval=True)
        rejected = approvals.process_approval(business.id, owner_id, bill.id, "reject", "Monto incorrecto")

        assert rejected.approval_status == ApprovalStatus.REJECTED
        assert rejected.status == BillStatus.DRAFT
        assert rejected.rejection_reason == "Monto incorrecto"
        assert rejected.rejected_by == owner_id

    def test_rejected_bill_can_be_resubmitted(self, approvals, business, owner_id, bill_factory):
        bill = bill_factory(requires_approval=True)
        approvals.process_approval(business.id, owner_id, bill.id, ApprovalAction.REJECT, "corregir")
        again = approvals.submit_for_approval(business.id, owner_id, bill.id, requires_approval=True)
        assert again.approval_status == ApprovalStatus.PENDING

    def test_second_decision_conflicts(self, approvals, business, owner_id, bill_factory):
        bill = bill_factory(requires_approval=True)
        approvals.process_approval(business.id, owner_id, bill.id, ApprovalAction.APPROVE)
        with pytest.raises(ConflictError) as exc:
            approvals.process_approval(business.id, owner_id, bill.id, ApprovalAction.REJECT)
        assert exc.value.retryable is True

    def test_not_pending_conflicts(self, approvals, business, owner_id, bill_factory):
        bill = bill_factory()
        with pytest.raises(ConflictError):
            approvals.process_approval(business.id, owner_id, bill.id, ApprovalAction.APPROVE)

    def test_manager_cannot_approve(self, db_session, approvals, business, staff_factory, bill_factory):
        manager = staff_factory(StaffRole.MANAGER)
        bill = bill_factory(requires_approval=True)

        with pytest.raises(ForbiddenError):
            approvals.process_approval(business.id, manager, bill.id, ApprovalAction.APPROVE)

        db_session.expire_all()
        assert db_session.get(Bill, bill.id).approval_status == ApprovalStatus.PENDING
        assert db_session.query(BillApprovalHistory).filter_by(bill_id=bill.id).count() == 1

    def test_admin_can_approve(self, approvals, business, staff_factory, bill_factory):
        admin = staff_factory(StaffRole.ADMIN)
        bill = bill_factory(requires_approval=True)
        assert approvals.process_approval(business.id, admin, bill.id, ApprovalAction.APPROVE).approved_by == admin

    def test_notification_failure_does_not_roll_back(self, db_session, business, owner_id, bill_factory, failing_notifier):
        bill = bill_factory(requires_approval=True)

        approved = BillApprovalService(db_session, notifier=failing_notifier).process_approval(
            business.id, owner_id, bill.id, ApprovalAction.APPROVE
        )

        assert approved.approval_status == ApprovalStatus.APPROVED
        db_session.expire_all()
        assert db_session.get(Bill, bill.id).approval_status == ApprovalStatus.APPROVED


class TestEditAfterSubmit:
    """Cambios de monto sobre facturas ya emitidas"""

    def line(self, rate):
        return BillUpdate(items=[BillItemCreate(product_name="Servicio", quantity=Decimal("1"), rate=Decimal(rate))])

    def test_raising_total_requires_approval(self, db_session, approvals, threshold_business, owner_id,
                                             bill_factory, notifier, dispatcher):
        bill = bill_factory(amount=Decimal("50.00"))
        assert bill.approval_status == ApprovalStatus.NOT_REQUIRED

        updated = BillService(db_session, notifier=notifier).update_bill(
            threshold_business.id, owner_id, bill.id, self.line("5000")
        )

        assert updated.status == BillStatus.PENDING
        assert updated.requires_approval is True
        assert updated.approval_status == ApprovalStatus.PENDING
        history = approvals.get_bill_approval_history(threshold_business.id, bill.id)
        assert history[-1].action == "SUBMITTED"
        assert history[-1].old_approval_status == "NOT_REQUIRED"
        assert dispatcher.sent[-1]["type"] == "BILL_APPROVAL_REQUIRED"
        assert dispatcher.sent[-1]["entity_id"] == str(bill.id)

        payments = PaymentAllocationService(db_session, notifier=NotificationService(enabled=False))
        with pytest.raises(InvalidStateError):
            payments.allocate_single_payment(
                threshold_business.id, owner_id,
                SinglePaymentCreate(bill_id=bill.id, amount=Decimal("10"), method=PaymentMethod.CASH)
            )

        approved = approvals.process_approval(threshold_business.id, owner_id, bill.id, ApprovalAction.APPROVE)
        assert approved.approval_status == ApprovalStatus.APPROVED

    def test_total_below_threshold_stays_unrestricted(self, db_session, threshold_business, owner_id,
                                                      bill_factory, notifier, dispatcher):
        bill = bill_factory(amount=Decimal("50.00"))

        updated = BillService(db_session, notifier=notifier).update_bill(
            threshold_business.id, owner_id, bill.id, self.line("120")
        )

        assert updated.total_amount == Decimal("120.00")
        assert updated.approval_status == ApprovalStatus.NOT_REQUIRED
        assert updated.requires_approval is False
        assert dispatcher.sent == []


class TestBulkAndQueries:
    """Aprobación en lote, pendientes e historial"""

    def test_bulk_approve_reports_each_bill(self, approvals, business, owner_id, bill_factory):
        pending = bill_factory(requires_approval=True)
        not_pending = bill_factory()
        missing = uuid4()

        results = approvals.bulk_approve(business.id, owner_id, [pending.id, not_pending.id, missing])

        by_id = {r.bill_id: r for r in results}
        assert by_id[pending.id].success is True
        assert by_id[not_pending.id].success is False
        assert by_id[not_pending.id].error_kind == "conflict"
        assert by_id[missing].error_kind == "not_found"

    def test_list_pending(self, approvals, business, owner_id, bill_factory):
        first = bill_factory(requires_approval=True)
        bill_factory()
        second = bill_factory(requires_approval=True)

        pending = approvals.list_pending_approvals(business.id)
        assert pending.total == 2
        assert [b.id for b in pending.items] == [first.id, second.id]

    def test_list_pending_across_years(self, approvals, business, bill_factory):
        january = bill_factory(bill_date=date(2026, 1, 5), requires_approval=True)
        december = bill_factory(bill_date=date(2025, 12, 20), requires_approval=True)

        pending = approvals.list_pending_approvals(business.id)
        assert [b.id for b in pending.items] == [december.id, january.id]

    def test_approval_history_ordered(self, approvals, business, owner_id, bill_factory):
        bill = bill_factory(requires_approval=True)
        approvals.process_approval(business.id, owner_id, bill.id, ApprovalAction.REJECT, "no")
        approvals.submit_for_approval(business.id, owner_id, bill.id, requires_approval=True)
        approvals.process_approval(business.id, owner_id, bill.id, ApprovalAction.APPROVE)

        history = approvals.get_bill_approval_history(business.id, bill.id)
        assert [h.action for h in history] == ["SUBMITTED", "REJECTED", "SUBMITTED", "APPROVED"]
        assert history[1].old_approval_status == "PENDING"
        assert history[1].new_approval_status == "REJECTED"
        assert history[1].new_status == "DRAFT"

    def test_approval_history_other_business(self, approvals, other_business, bill_factory):
        bill = bill_factory(requires_approval=True)
        with pytest.raises(NotFoundError):
            approvals.get_bill_approval_history(other_business.id, bill.id)


class TestWorkflowConfig:
    """Configuración del flujo por negocio"""

    def test_configure_records_audit(self, db_session, approvals, business, owner_id):
        updated = approvals.configure_approval_workflow(
            business.id, owner_id,
            ApprovalWorkflowConfig(enabled=True, threshold_amount=Decimal("250"), auto_approve_below_threshold=True)
        )
        assert updated.approval_enabled is True
        assert updated.approval_threshold_amount == Decimal("250.00")

        log = db_session.query(AuditLog).filter_by(entity_id=business.id).one()
        assert log.action == "CONFIGURE_APPROVAL_WORKFLOW"
        assert log.old_values["approval_enabled"] is False
        assert log.new_values["enabled"] is True

    def test_cashier_cannot_configure(self, approvals, business, staff_factory):
        cashier = staff_factory(StaffRole.CASHIER)
        with pytest.raises(ForbiddenError):
            approvals.configure_approval_workflow(business.id, cashier, ApprovalWorkflowConfig(enabled=True))

"""
Flujo de aprobación de facturas

DRAFT --submit--> PENDING (approval PENDING si se requiere aprobación)
approval PENDING --approve--> APPROVED (la factura queda PENDING y pagable)
approval PENDING --reject--> REJECTED (la factura vuelve a DRAFT)

Cada decisión deja una fila en BillApprovalHistory. Las notificaciones se
encolan después del commit y su fallo no revierte la decisión.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import HTTPException, status

from sqlalchemy.orm import Session

from app.common.exceptions import ConflictError, InvalidStateError, LedgerError
from app.common.mixins import utcnow
from app.common.retry import run_with_retry
from app.modules.approvals.schemas import ApprovalAction, ApprovalOutcome
from app.modules.bills.models import Bill, BillStatus, ApprovalStatus
from app.modules.bills.schemas import BillList
from app.modules.bills.service import BillService, assert_transition
from app.modules.business.schemas import ApprovalWorkflowConfig
from app.modules.business.service import BusinessService
from app.modules.notifications.service import NotificationService
from app.modules.permissions.constants import Resource, Action
from app.modules.permissions.service import PermissionService

logger = logging.getLogger(__name__)


class BillApprovalService:
    """Servicio para el flujo de aprobación de facturas"""

    def __init__(
        self,
        db: Session,
        permissions: Optional[PermissionService] = None,
        notifier: Optional[NotificationService] = None
    ):
        self.db = db
        self.permissions = permissions or PermissionService(db)
        self.notifier = notifier or NotificationService()
        self.bills = BillService(db, self.permissions, self.notifier)
        self.business = BusinessService(db, self.permissions)

    def _run(self, unit, operation: str, bill_id: UUID) -> Bill:
        try:
            return run_with_retry(self.db, unit, operation)
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Unexpected error in {operation} for bill {bill_id}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error procesando aprobación"
            )

    def submit_for_approval(
        self,
        business_id: UUID,
        actor_id: UUID,
        bill_id: UUID,
        requires_approval: Optional[bool] = None,
        notes: Optional[str] = None
    ) -> Bill:
        """
        Emitir una factura en borrador.

        La aprobación se exige si el llamador la pide o si la política del
        negocio la requiere para el total de la factura. Con aprobación
        automática bajo el umbral, las facturas que no la requieren quedan
        APPROVED directamente.
        """
        self.permissions.require(actor_id, business_id, Resource.BILLS, Action.UPDATE)
        business = self.business.get_business(business_id)

        def unit() -> Bill:
            bill = self.bills.lock_bill(business_id, bill_id)
            if bill.status != BillStatus.DRAFT:
                raise InvalidStateError(
                    f"Solo se pueden enviar facturas en borrador; {bill.bill_number} está en {bill.status.value}"
                )
            assert_transition(bill, BillStatus.PENDING)

            required = bool(requires_approval) or self.business.requires_approval(business, bill.total_amount)
            auto_approved = (
                not required
                and business.approval_enabled
                and business.auto_approve_below_threshold
            )

            old_status = bill.status
            old_approval = bill.approval_status
            bill.status = BillStatus.PENDING
            bill.requires_approval = required

            if required:
                bill.approval_status = ApprovalStatus.PENDING
                self.bills.history.record_approval(
                    bill, "SUBMITTED", actor_id,
                    old_status, BillStatus.PENDING,
                    old_approval, ApprovalStatus.PENDING,
                    notes=notes
                )
            elif auto_approved:
                bill.approval_status = ApprovalStatus.APPROVED
                bill.approved_by = actor_id
                bill.approved_at = utcnow()
                self.bills.history.record_approval(
                    bill, "AUTO_APPROVED", actor_id,
                    old_status, BillStatus.PENDING,
                    old_approval, ApprovalStatus.APPROVED,
                    notes="Total bajo el umbral de aprobación"
                )
            else:
                bill.approval_status = ApprovalStatus.NOT_REQUIRED

            self.bills.history.record_bill_change(
                bill, "SUBMITTED", actor_id,
                old_status=old_status, new_status=BillStatus.PENDING,
                changes={"approval_status": {"old": old_approval.value, "new": bill.approval_status.value}},
                notes=notes
            )
            self.db.commit()
            self.db.refresh(bill)
            return bill

        bill = self._run(unit, "submit_for_approval", bill_id)
        logger.info(
            f"Bill {bill.bill_number} submitted by {actor_id}: approval={bill.approval_status.value}"
        )

        if bill.approval_status == ApprovalStatus.PENDING:
            self.notifier.notify(
                type="BILL_APPROVAL_REQUIRED",
                recipient_id=business.owner_id,
                business_id=business_id,
                title=f"Factura {bill.bill_number} pendiente de aprobación",
                message=f"La factura {bill.bill_number} por {bill.total_amount} requiere aprobación",
                entity_type="BILL",
                entity_id=bill.id,
            )
        return bill

    def process_approval(
        self,
        business_id: UUID,
        actor_id: UUID,
        bill_id: UUID,
        action: ApprovalAction,
        notes: Optional[str] = None
    ) -> Bill:
        """Aprobar o rechazar una factura con aprobación pendiente"""
        action = ApprovalAction(action)
        self.permissions.require(actor_id, business_id, Resource.BILLS, Action.APPROVE)

        def unit() -> Bill:
            bill = self.bills.lock_bill(business_id, bill_id)
            if bill.approval_status != ApprovalStatus.PENDING:
                raise ConflictError(
                    f"La factura {bill.bill_number} ya no está pendiente de aprobación "
                    f"({bill.approval_status.value})"
                )

            old_status = bill.status
            old_approval = bill.approval_status

            if action == ApprovalAction.APPROVE:
                bill.approval_status = ApprovalStatus.APPROVED
                bill.approved_by = actor_id
                bill.approved_at = utcnow()
                history_action = "APPROVED"
            else:
                assert_transition(bill, BillStatus.DRAFT)
                bill.approval_status = ApprovalStatus.REJECTED
                bill.status = BillStatus.DRAFT
                bill.rejected_by = actor_id
                bill.rejected_at = utcnow()
                bill.rejection_reason = notes
                history_action = "REJECTED"

            self.bills.history.record_approval(
                bill, history_action, actor_id,
                old_status, bill.status,
                old_approval, bill.approval_status,
                notes=notes
            )
            self.bills.history.record_bill_change(
                bill, history_action, actor_id,
                old_status=old_status, new_status=bill.status,
                changes={"approval_status": {"old": old_approval.value, "new": bill.approval_status.value}},
                notes=notes
            )
            self.db.commit()
            self.db.refresh(bill)
            return bill

        bill = self._run(unit, "process_approval", bill_id)
        logger.info(f"Bill {bill.bill_number} {bill.approval_status.value} by {actor_id}")

        approved = bill.approval_status == ApprovalStatus.APPROVED
        self.notifier.notify(
            type="BILL_APPROVED" if approved else "BILL_REJECTED",
            recipient_id=bill.created_by,
            business_id=business_id,
            title=f"Factura {bill.bill_number} {'aprobada' if approved else 'rechazada'}",
            message=notes or f"La factura {bill.bill_number} fue {'aprobada' if approved else 'rechazada'}",
            entity_type="BILL",
            entity_id=bill.id,
        )
        return bill

    def bulk_approve(
        self,
        business_id: UUID,
        actor_id: UUID,
        bill_ids: List[UUID],
        notes: Optional[str] = None
    ) -> List[ApprovalOutcome]:
        """Aprueba cada factura por separado; un fallo no detiene el lote"""
        results = []
        for bill_id in bill_ids:
            try:
                bill = self.process_approval(business_id, actor_id, bill_id, ApprovalAction.APPROVE, notes)
                results.append(ApprovalOutcome(
                    bill_id=bill_id,
                    success=True,
                    approval_status=bill.approval_status.value
                ))
            except LedgerError as exc:
                results.append(ApprovalOutcome(
                    bill_id=bill_id,
                    success=False,
                    error_kind=exc.kind,
                    error=exc.message
                ))
            except HTTPException as exc:
                results.append(ApprovalOutcome(
                    bill_id=bill_id,
                    success=False,
                    error_kind="internal",
                    error=str(exc.detail)
                ))

        approved = sum(1 for r in results if r.success)
        logger.info(f"Bulk approve by {actor_id}: {approved}/{len(results)} approved")
        return results

    def list_pending_approvals(self, business_id: UUID, limit: int = 100, offset: int = 0) -> BillList:
        query = self.db.query(Bill).filter(
            Bill.business_id == business_id,
            Bill.approval_status == ApprovalStatus.PENDING,
            Bill.deleted_at.is_(None)
        )
        total = query.count()
        bills = query.order_by(Bill.bill_date.asc(), Bill.sequence_number.asc()).offset(offset).limit(limit).all()
        return BillList(items=bills, total=total, limit=limit, offset=offset)

    def get_bill_approval_history(self, business_id: UUID, bill_id: UUID):
        self.bills.get_bill(business_id, bill_id, include_deleted=True)
        return self.bills.history.approval_history(bill_id)

    def configure_approval_workflow(self, business_id: UUID, actor_id: UUID, config: ApprovalWorkflowConfig):
        return self.business.configure_approval_workflow(business_id, actor_id, config)

"""
Routers FastAPI para el flujo de aprobación de facturas
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from app.database.database import get_db
from app.dependencies.businessDependencies import BusinessContext, RequestContext, require_permission
from app.modules.approvals.schemas import (
    SubmitForApprovalRequest, ApprovalDecisionRequest, BulkApproveRequest,
    BulkApproveResult, ApprovalHistoryOut
)
from app.modules.approvals.service import BillApprovalService
from app.modules.bills.schemas import BillOut, BillList
from app.modules.business.models import Business
from app.modules.business.schemas import ApprovalWorkflowConfig, ApprovalWorkflowOut
from app.modules.business.service import BusinessService
from app.modules.permissions.constants import Resource, Action

approvals_router = APIRouter(prefix="/approvals", tags=["Bill Approvals"])


def _workflow_out(business: Business) -> ApprovalWorkflowOut:
    return ApprovalWorkflowOut(
        business_id=business.id,
        approval_enabled=business.approval_enabled,
        approval_threshold_amount=business.approval_threshold_amount,
        auto_approve_below_threshold=business.auto_approve_below_threshold,
    )


@approvals_router.post("/bills/{bill_id}/submit", response_model=BillOut)
def submit_for_approval(
    bill_id: UUID,
    submit_data: SubmitForApprovalRequest,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    """
    Emitir una factura en borrador

    Si se requiere aprobación queda pendiente y se notifica al dueño del negocio.
    """
    return BillApprovalService(db).submit_for_approval(
        context.business_id, context.user_id, bill_id,
        requires_approval=submit_data.requires_approval, notes=submit_data.notes
    )


@approvals_router.post("/bills/{bill_id}/decision", response_model=BillOut)
def process_approval(
    bill_id: UUID,
    decision: ApprovalDecisionRequest,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    """Aprobar o rechazar; 409 si la factura ya fue decidida"""
    return BillApprovalService(db).process_approval(
        context.business_id, context.user_id, bill_id, decision.action, decision.notes
    )


@approvals_router.post("/bulk-approve", response_model=BulkApproveResult)
def bulk_approve(
    request_data: BulkApproveRequest,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    results = BillApprovalService(db).bulk_approve(
        context.business_id, context.user_id, request_data.bill_ids, request_data.notes
    )
    approved = sum(1 for r in results if r.success)
    return BulkApproveResult(approved=approved, failed=len(results) - approved, results=results)


@approvals_router.get("/pending", response_model=BillList)
def list_pending_approvals(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.APPROVALS, Action.READ))
):
    return BillApprovalService(db).list_pending_approvals(context.business_id, limit=limit, offset=offset)


@approvals_router.get("/bills/{bill_id}/history", response_model=List[ApprovalHistoryOut])
def get_bill_approval_history(
    bill_id: UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.APPROVALS, Action.READ))
):
    return BillApprovalService(db).get_bill_approval_history(context.business_id, bill_id)


@approvals_router.get("/settings", response_model=ApprovalWorkflowOut)
def get_approval_workflow(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.SETTINGS, Action.READ))
):
    return _workflow_out(BusinessService(db).get_business(context.business_id))


@approvals_router.put("/settings", response_model=ApprovalWorkflowOut)
def configure_approval_workflow(
    config: ApprovalWorkflowConfig,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    business = BillApprovalService(db).configure_approval_workflow(
        context.business_id, context.user_id, config
    )
    return _workflow_out(business)

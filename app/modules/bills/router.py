"""
Routers FastAPI para el módulo de Facturas (Bills)

El negocio y el usuario llegan en los headers X-Business-ID / X-User-ID.
Las lecturas validan permisos en la dependencia; las mutaciones los validan
dentro del servicio.
"""

from fastapi import APIRouter, Depends, status, Query, Response
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID
from datetime import date

from app.database.database import get_db
from app.dependencies.businessDependencies import BusinessContext, RequestContext, require_permission
from app.modules.bills.models import BillStatus, ApprovalStatus
from app.modules.bills.schemas import (
    BillCreate, BillUpdate, BillVoidRequest, BillOut, BillDetail, BillList,
    BillHistoryOut, OverdueResult
)
from app.modules.bills.service import BillService
from app.modules.payments.schemas import AllocationOut
from app.modules.payments.service import PaymentAllocationService
from app.modules.permissions.constants import Resource, Action

bills_router = APIRouter(prefix="/bills", tags=["Bills"])


@bills_router.post("/", response_model=BillDetail, status_code=status.HTTP_201_CREATED)
def create_bill(
    bill_data: BillCreate,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    """
    Crear una nueva factura en borrador

    Con `idempotency_key` un reintento devuelve la misma factura.
    """
    service = BillService(db)
    return service.create_bill(context.business_id, context.user_id, bill_data)


@bills_router.get("/", response_model=BillList)
def list_bills(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    status: Optional[BillStatus] = Query(None, description="Filtrar por estado"),
    approval_status: Optional[ApprovalStatus] = Query(None, description="Filtrar por estado de aprobación"),
    customer_id: Optional[UUID] = Query(None, description="Filtrar por cliente"),
    has_balance: Optional[bool] = Query(None, description="Solo facturas con (o sin) saldo"),
    start_date: Optional[date] = Query(None, description="Fecha inicial (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Fecha final (YYYY-MM-DD)"),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.BILLS, Action.READ))
):
    service = BillService(db)
    return service.list_bills(
        context.business_id, limit=limit, offset=offset, status=status,
        approval_status=approval_status, customer_id=customer_id, has_balance=has_balance,
        start_date=start_date, end_date=end_date
    )


@bills_router.post("/mark-overdue", response_model=OverdueResult)
def mark_overdue_bills(
    as_of: Optional[date] = Query(None, description="Fecha de corte; por defecto hoy"),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.BILLS, Action.UPDATE))
):
    """Marcar como vencidas las facturas del negocio (la tarea periódica lo hace para todos)"""
    as_of = as_of or date.today()
    marked = BillService(db).mark_overdue_bills(today=as_of, business_id=context.business_id)
    return OverdueResult(marked=marked, as_of=as_of)


@bills_router.get("/{bill_id}", response_model=BillDetail)
def get_bill(
    bill_id: UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.BILLS, Action.READ))
):
    return BillService(db).get_bill(context.business_id, bill_id)


@bills_router.patch("/{bill_id}", response_model=BillDetail)
def update_bill(
    bill_id: UUID,
    bill_update: BillUpdate,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    """
    Actualizar una factura

    Solo en DRAFT/PENDING y sin aprobación otorgada. Los montos no se pueden
    cambiar si la factura ya tiene pagos asignados.
    """
    return BillService(db).update_bill(context.business_id, context.user_id, bill_id, bill_update)


@bills_router.post("/{bill_id}/void", response_model=BillOut)
def void_bill(
    bill_id: UUID,
    void_data: BillVoidRequest,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    """Anular una factura; los pagos ya asignados no se revierten"""
    return BillService(db).void_bill(context.business_id, context.user_id, bill_id, void_data.reason)


@bills_router.delete("/{bill_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_bill(
    bill_id: UUID,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    BillService(db).delete_bill(context.business_id, context.user_id, bill_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@bills_router.get("/{bill_id}/history", response_model=List[BillHistoryOut])
def get_bill_history(
    bill_id: UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.BILLS, Action.READ))
):
    return BillService(db).get_bill_history(context.business_id, bill_id)


@bills_router.get("/{bill_id}/allocations", response_model=List[AllocationOut])
def list_bill_allocations(
    bill_id: UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.PAYMENTS, Action.READ))
):
    return PaymentAllocationService(db).list_bill_allocations(context.business_id, bill_id)

"""
Routers FastAPI para pagos
"""

from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID
from datetime import date

from app.database.database import get_db
from app.dependencies.businessDependencies import BusinessContext, RequestContext, require_permission
from app.modules.payments.models import PaymentStatus
from app.modules.payments.schemas import (
    SinglePaymentCreate, BulkPaymentCreate, PaymentVerifyRequest,
    PaymentOut, PaymentDetail, PaymentList, SinglePaymentResult, BulkPaymentResult
)
from app.modules.payments.service import PaymentAllocationService
from app.modules.permissions.constants import Resource, Action

payments_router = APIRouter(prefix="/payments", tags=["Payments"])


@payments_router.post("/", response_model=SinglePaymentResult, status_code=status.HTTP_201_CREATED)
def allocate_single_payment(
    payment_data: SinglePaymentCreate,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    """
    Registrar un pago contra una factura

    Se asigna hasta el saldo de la factura; el excedente queda sin asignar.
    """
    payment, allocation = PaymentAllocationService(db).allocate_single_payment(
        context.business_id, context.user_id, payment_data
    )
    return SinglePaymentResult(payment=payment, allocation=allocation)


@payments_router.post("/bulk", response_model=BulkPaymentResult, status_code=status.HTTP_201_CREATED)
def allocate_bulk_payment(
    payment_data: BulkPaymentCreate,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    """
    Registrar un pago de un cliente y distribuirlo FIFO

    Las facturas con vencimiento más antiguo se pagan primero. El resultado
    incluye el desenlace de cada factura.
    """
    result = PaymentAllocationService(db).allocate_bulk_payment(
        context.business_id, context.user_id, payment_data
    )
    return BulkPaymentResult(
        payment=result.payment,
        allocations=result.allocations,
        outcomes=result.outcomes
    )


@payments_router.get("/", response_model=PaymentList)
def list_payments(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    customer_id: Optional[UUID] = Query(None, description="Filtrar por cliente"),
    status: Optional[PaymentStatus] = Query(None, description="Filtrar por estado"),
    start_date: Optional[date] = Query(None, description="Fecha inicial (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Fecha final (YYYY-MM-DD)"),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.PAYMENTS, Action.READ))
):
    return PaymentAllocationService(db).list_payments(
        context.business_id, limit=limit, offset=offset, customer_id=customer_id,
        payment_status=status, start_date=start_date, end_date=end_date
    )


@payments_router.get("/{payment_id}", response_model=PaymentDetail)
def get_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.PAYMENTS, Action.READ))
):
    return PaymentAllocationService(db).get_payment(context.business_id, payment_id)


@payments_router.post("/{payment_id}/verify", response_model=PaymentOut)
def verify_payment(
    payment_id: UUID,
    verify_data: PaymentVerifyRequest,
    context: BusinessContext,
    db: Session = Depends(get_db)
):
    return PaymentAllocationService(db).verify_payment(
        context.business_id, context.user_id, payment_id, verify_data.notes
    )

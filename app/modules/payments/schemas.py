"""
Esquemas Pydantic para pagos y asignaciones
"""

from pydantic import BaseModel, ConfigDict, Field
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime

from app.modules.bills.models import PaymentMethod
from app.modules.payments.models import PaymentStatus


class PaymentBase(BaseModel):
    amount: Decimal = Field(..., description="Monto recibido")
    method: PaymentMethod = Field(..., description="Método de pago")
    payment_date: Optional[date] = None
    reference_number: Optional[str] = Field(None, max_length=100)
    transaction_id: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=100)


class SinglePaymentCreate(PaymentBase):
    bill_id: UUID


class BulkPaymentCreate(PaymentBase):
    customer_id: UUID


class PaymentVerifyRequest(BaseModel):
    notes: Optional[str] = None


class AllocationOut(BaseModel):
    id: UUID
    payment_id: UUID
    bill_id: UUID
    allocated_amount: Decimal
    bill_balance_before: Decimal
    bill_balance_after: Decimal
    allocation_order: int
    allocation_date: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentOut(BaseModel):
    id: UUID
    business_id: UUID
    payment_number: str
    customer_id: Optional[UUID]
    amount: Decimal
    allocated_amount: Decimal
    unallocated_amount: Decimal
    method: PaymentMethod
    status: PaymentStatus
    payment_date: date
    reference_number: Optional[str]
    transaction_id: Optional[str]
    notes: Optional[str]
    created_by: UUID
    verified_by: Optional[UUID]
    verified_at: Optional[datetime]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentDetail(PaymentOut):
    allocations: List[AllocationOut] = []


class PaymentList(BaseModel):
    items: List[PaymentOut]
    total: int
    limit: int
    offset: int


class SinglePaymentResult(BaseModel):
    payment: PaymentOut
    allocation: AllocationOut


class BillAllocationOutcome(BaseModel):
    bill_id: UUID
    bill_number: Optional[str] = None
    status: str  # allocated, skipped, failed
    allocated_amount: Decimal = Decimal("0.00")
    error: Optional[str] = None


class BulkPaymentResult(BaseModel):
    payment: PaymentOut
    allocations: List[AllocationOut]
    outcomes: List[BillAllocationOutcome]

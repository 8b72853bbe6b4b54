"""
Esquemas Pydantic para el módulo de Facturas (Bills)

Los signos y rangos de montos se validan en el servicio, que devuelve el
error con la ruta del campo; aquí solo se define la forma de los datos.
"""

from pydantic import BaseModel, ConfigDict, Field
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import date, datetime

from app.modules.bills.models import BillStatus, ApprovalStatus, RecurringFrequency


# ===== BILL ITEM SCHEMAS =====

class BillItemCreate(BaseModel):
    product_name: str = Field(..., min_length=1, max_length=200)
    product_code: Optional[str] = Field(None, max_length=100)
    unit: Optional[str] = Field(None, max_length=20)
    quantity: Decimal = Field(..., description="Cantidad")
    rate: Decimal = Field(..., description="Precio unitario")
    discount_percent: Optional[Decimal] = Field(None, ge=0, le=100)
    discount_amount: Optional[Decimal] = None
    tax_percent: Optional[Decimal] = Field(None, ge=0, le=100)
    tax_amount: Optional[Decimal] = None


class BillItemOut(BaseModel):
    id: UUID
    product_name: str
    product_code: Optional[str]
    unit: Optional[str]
    quantity: Decimal
    rate: Decimal
    discount_percent: Optional[Decimal]
    discount_amount: Decimal
    tax_percent: Optional[Decimal]
    tax_amount: Decimal
    subtotal: Decimal
    total: Decimal
    sort_order: int

    model_config = ConfigDict(from_attributes=True)


# ===== BILL SCHEMAS =====

class BillCreate(BaseModel):
    customer_id: Optional[UUID] = Field(None, description="Cliente; nulo para venta de mostrador")
    items: List[BillItemCreate] = Field(default_factory=list)
    bill_date: Optional[date] = None
    due_date: Optional[date] = None

    discount_amount: Optional[Decimal] = None
    discount_percent: Optional[Decimal] = Field(None, ge=0, le=100)
    shipping_cost: Optional[Decimal] = None
    adjustment_amount: Optional[Decimal] = None
    round_off_amount: Optional[Decimal] = None

    notes: Optional[str] = None
    terms: Optional[str] = None
    internal_notes: Optional[str] = None
    customer_notes: Optional[str] = None
    billing_address: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None

    is_recurring: bool = False
    recurring_frequency: Optional[RecurringFrequency] = None
    parent_bill_id: Optional[UUID] = None

    idempotency_key: Optional[str] = Field(None, max_length=100)


class BillUpdate(BaseModel):
    """Parche parcial: solo se aplican los campos enviados"""
    customer_id: Optional[UUID] = None
    items: Optional[List[BillItemCreate]] = None
    bill_date: Optional[date] = None
    due_date: Optional[date] = None

    discount_amount: Optional[Decimal] = None
    discount_percent: Optional[Decimal] = Field(None, ge=0, le=100)
    shipping_cost: Optional[Decimal] = None
    adjustment_amount: Optional[Decimal] = None
    round_off_amount: Optional[Decimal] = None

    notes: Optional[str] = None
    terms: Optional[str] = None
    internal_notes: Optional[str] = None
    customer_notes: Optional[str] = None
    billing_address: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None


class BillVoidRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500, description="Motivo de anulación")


class BillOut(BaseModel):
    id: UUID
    business_id: UUID
    bill_number: str
    sequence_number: int
    customer_id: Optional[UUID]
    bill_date: date
    due_date: Optional[date]
    status: BillStatus
    approval_status: ApprovalStatus
    requires_approval: bool

    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    adjustment_amount: Decimal
    round_off_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    currency: str

    notes: Optional[str]
    terms: Optional[str]
    customer_notes: Optional[str]
    is_recurring: bool
    parent_bill_id: Optional[UUID]

    created_by: UUID
    approved_by: Optional[UUID]
    approved_at: Optional[datetime]
    rejected_by: Optional[UUID]
    rejected_at: Optional[datetime]
    rejection_reason: Optional[str]
    voided_by: Optional[UUID]
    voided_at: Optional[datetime]
    void_reason: Optional[str]
    version_id: int

    model_config = ConfigDict(from_attributes=True)


class BillDetail(BillOut):
    items: List[BillItemOut] = []
    internal_notes: Optional[str]
    billing_address: Optional[Dict[str, Any]]
    shipping_address: Optional[Dict[str, Any]]


class BillList(BaseModel):
    items: List[BillOut]
    total: int
    limit: int
    offset: int


class BillHistoryOut(BaseModel):
    id: UUID
    bill_id: UUID
    action: str
    performed_by: Optional[UUID]
    old_status: Optional[str]
    new_status: Optional[str]
    changes: Optional[Dict[str, Any]]
    notes: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OverdueResult(BaseModel):
    marked: int
    as_of: date

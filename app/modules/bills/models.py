"""
Modelos SQLAlchemy para el módulo de Facturas (Bills)

- Bill: factura emitida por un negocio a un cliente (o venta de mostrador).
  Guarda totales derivados, estado del ciclo de vida, estado de aprobación
  y saldo pendiente.
- BillItem: líneas de la factura; se congelan cuando la factura recibe pagos.

Arquitectura multi-tenant: todas las tablas incluyen business_id.
"""

from app.database.database import Base
from sqlalchemy import (
    Column, String, Boolean, DateTime, ForeignKey, Numeric, Enum, Date, Text, JSON,
    Integer, UniqueConstraint, CheckConstraint, Index, Uuid
)
from sqlalchemy.orm import relationship
from datetime import date
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin, SoftDeleteMixin
import enum


# ===== ENUMS =====

class BillStatus(enum.Enum):
    """Estados del ciclo de vida de una factura"""
    DRAFT = "DRAFT"           # Borrador, editable
    PENDING = "PENDING"       # Emitida, pendiente de pago
    PAID = "PAID"             # Pagada completamente
    PARTIAL = "PARTIAL"       # Pago parcial
    OVERDUE = "OVERDUE"       # Vencida con saldo
    CANCELLED = "CANCELLED"   # Cancelada
    VOID = "VOID"             # Anulada


class ApprovalStatus(enum.Enum):
    """Estados del flujo de aprobación"""
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class PaymentMethod(enum.Enum):
    """Métodos de pago"""
    CASH = "CASH"
    CARD = "CARD"
    UPI = "UPI"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHEQUE = "CHEQUE"
    DIGITAL_WALLET = "DIGITAL_WALLET"
    NET_BANKING = "NET_BANKING"
    OTHER = "OTHER"


class RecurringFrequency(enum.Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


# Estados que aceptan pagos
PAYABLE_STATUSES = (BillStatus.PENDING, BillStatus.PARTIAL, BillStatus.OVERDUE)

# Estados que aceptan edición de contenido
EDITABLE_STATUSES = (BillStatus.DRAFT, BillStatus.PENDING)

# Campos que alteran montos; bloqueados cuando existen asignaciones de pago
MONETARY_FIELDS = (
    "items", "discount_amount", "discount_percent", "shipping_cost",
    "adjustment_amount", "round_off_amount",
)

# Transiciones válidas del ciclo de vida
ALLOWED_TRANSITIONS = {
    BillStatus.DRAFT: {BillStatus.PENDING, BillStatus.VOID},
    BillStatus.PENDING: {
        BillStatus.DRAFT, BillStatus.PARTIAL, BillStatus.PAID,
        BillStatus.OVERDUE, BillStatus.CANCELLED, BillStatus.VOID,
    },
    BillStatus.PARTIAL: {BillStatus.PAID, BillStatus.OVERDUE, BillStatus.VOID},
    BillStatus.OVERDUE: {BillStatus.PARTIAL, BillStatus.PAID, BillStatus.VOID},
    BillStatus.CANCELLED: {BillStatus.VOID},
    BillStatus.PAID: set(),
    BillStatus.VOID: set(),
}


# ===== MODELOS =====

class Bill(Base, TenantMixin, TimestampMixin, SoftDeleteMixin):
    """
    Factura de un negocio

    Invariantes de montos:
    total = subtotal - descuento + impuestos + envío + ajuste + redondeo
    saldo = total - pagado, nunca negativo salvo en facturas anuladas
    """
    __tablename__ = "bills"

    id = Column(Uuid, primary_key=True, default=uuid4)
    bill_number = Column(String(50), nullable=False, index=True)
    sequence_number = Column(Integer, nullable=False)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=True, index=True)

    bill_date = Column(Date, nullable=False, default=date.today, index=True)
    due_date = Column(Date, nullable=True, index=True)

    status = Column(Enum(BillStatus), nullable=False, default=BillStatus.DRAFT, index=True)
    approval_status = Column(Enum(ApprovalStatus), nullable=False, default=ApprovalStatus.NOT_REQUIRED, index=True)
    requires_approval = Column(Boolean, nullable=False, default=False)

    # Totales calculados
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    discount_percent = Column(Numeric(5, 2), nullable=True)
    discount_amount = Column(Numeric(15, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(15, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(15, 2), nullable=False, default=0)
    adjustment_amount = Column(Numeric(15, 2), nullable=False, default=0)
    round_off_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)
    paid_amount = Column(Numeric(15, 2), nullable=False, default=0)
    balance_amount = Column(Numeric(15, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")

    notes = Column(Text, nullable=True)
    terms = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)
    customer_notes = Column(Text, nullable=True)
    billing_address = Column(JSON, nullable=True)
    shipping_address = Column(JSON, nullable=True)

    # Serie recurrente: referencia por id, se resuelve bajo demanda
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurring_frequency = Column(Enum(RecurringFrequency), nullable=True)
    parent_bill_id = Column(Uuid, ForeignKey("bills.id"), nullable=True, index=True)

    created_by = Column(Uuid, nullable=False, index=True)
    approved_by = Column(Uuid, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(Uuid, nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    voided_by = Column(Uuid, nullable=True)
    voided_at = Column(DateTime(timezone=True), nullable=True)
    void_reason = Column(Text, nullable=True)

    idempotency_key = Column(String(100), nullable=True)
    version_id = Column(Integer, nullable=False)

    # Relationships
    items = relationship(
        "BillItem",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="BillItem.sort_order",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        UniqueConstraint("business_id", "bill_number", name="uq_bill_business_number"),
        UniqueConstraint("business_id", "idempotency_key", name="uq_bill_business_idempotency"),
        CheckConstraint("balance_amount >= 0 OR status = 'VOID'", name="ck_bill_balance_non_negative"),
        CheckConstraint("paid_amount >= 0", name="ck_bill_paid_non_negative"),
        Index("ix_bill_business_customer_status", "business_id", "customer_id", "status"),
    )

    @property
    def is_payable(self) -> bool:
        if self.status not in PAYABLE_STATUSES or self.balance_amount <= 0:
            return False
        if self.requires_approval and self.approval_status != ApprovalStatus.APPROVED:
            return False
        return True

    def __repr__(self):
        return f"<Bill(number='{self.bill_number}', status='{self.status}', balance={self.balance_amount})>"


class BillItem(Base, TimestampMixin):
    """Línea de factura con descuento e impuesto por línea"""
    __tablename__ = "bill_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    bill_id = Column(Uuid, ForeignKey("bills.id", ondelete="CASCADE"), nullable=False, index=True)

    product_name = Column(String(200), nullable=False)
    product_code = Column(String(100), nullable=True)
    unit = Column(String(20), nullable=True)
    quantity = Column(Numeric(15, 3), nullable=False)
    rate = Column(Numeric(15, 2), nullable=False)

    discount_percent = Column(Numeric(5, 2), nullable=True)
    discount_amount = Column(Numeric(15, 2), nullable=False, default=0)
    tax_percent = Column(Numeric(5, 2), nullable=True)
    tax_amount = Column(Numeric(15, 2), nullable=False, default=0)

    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    total = Column(Numeric(15, 2), nullable=False, default=0)
    sort_order = Column(Integer, nullable=False, default=0)

    # Relationships
    bill = relationship("Bill", back_populates="items")

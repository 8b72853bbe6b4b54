"""
Modelos SQLAlchemy para pagos y asignaciones

- Payment: dinero recibido de un cliente. Invariante:
  allocated_amount + unallocated_amount = amount
- PaymentAllocation: porción de un pago aplicada a una factura, con el saldo
  de la factura antes y después. Nunca se actualiza ni se borra.
"""

from app.database.database import Base
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Numeric, Enum, Date, Text, Integer,
    UniqueConstraint, CheckConstraint, Uuid, event
)
from sqlalchemy.orm import relationship
from datetime import date
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin, utcnow
from app.modules.bills.models import PaymentMethod
import enum


class PaymentStatus(enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"   # Asignación masiva en curso
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class Payment(Base, TenantMixin, TimestampMixin):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    payment_number = Column(String(50), nullable=False, index=True)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=True, index=True)

    amount = Column(Numeric(15, 2), nullable=False)
    allocated_amount = Column(Numeric(15, 2), nullable=False, default=0)
    unallocated_amount = Column(Numeric(15, 2), nullable=False, default=0)
    method = Column(Enum(PaymentMethod), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)

    payment_date = Column(Date, nullable=False, default=date.today)
    reference_number = Column(String(100), nullable=True)  # Número de referencia, cheque, etc.
    transaction_id = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    created_by = Column(Uuid, nullable=False)
    verified_by = Column(Uuid, nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    idempotency_key = Column(String(100), nullable=True)

    # Relationships
    allocations = relationship(
        "PaymentAllocation",
        back_populates="payment",
        order_by="PaymentAllocation.allocation_order",
    )

    __table_args__ = (
        UniqueConstraint("business_id", "payment_number", name="uq_payment_business_number"),
        UniqueConstraint("business_id", "idempotency_key", name="uq_payment_business_idempotency"),
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        CheckConstraint("allocated_amount >= 0", name="ck_payment_allocated_non_negative"),
        CheckConstraint("unallocated_amount >= 0", name="ck_payment_unallocated_non_negative"),
    )

    def __repr__(self):
        return f"<Payment(number='{self.payment_number}', amount={self.amount}, allocated={self.allocated_amount})>"


class PaymentAllocation(Base, TenantMixin):
    __tablename__ = "payment_allocations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=False, index=True)
    bill_id = Column(Uuid, ForeignKey("bills.id"), nullable=False, index=True)

    allocated_amount = Column(Numeric(15, 2), nullable=False)
    bill_balance_before = Column(Numeric(15, 2), nullable=False)
    bill_balance_after = Column(Numeric(15, 2), nullable=False)
    allocation_order = Column(Integer, nullable=False, default=1)
    allocation_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = Column(Uuid, nullable=False)

    # Relationships
    payment = relationship("Payment", back_populates="allocations")

    __table_args__ = (
        UniqueConstraint("payment_id", "bill_id", name="uq_allocation_payment_bill"),
        CheckConstraint("allocated_amount > 0", name="ck_allocation_positive"),
        CheckConstraint("allocated_amount <= bill_balance_before", name="ck_allocation_within_balance"),
        CheckConstraint("bill_balance_after >= 0", name="ck_allocation_after_non_negative"),
    )


def _reject_mutation(mapper, connection, target):
    raise RuntimeError("payment_allocations es de solo inserción")


event.listen(PaymentAllocation, "before_update", _reject_mutation)
event.listen(PaymentAllocation, "before_delete", _reject_mutation)

"""
Modelos SQLAlchemy del tenant (Business)

- Business: negocio dueño de clientes, facturas y pagos; guarda la
  configuración del flujo de aprobación y los prefijos de numeración.
- BusinessStaff: pertenencia de un usuario a un negocio con un rol.
- LedgerSequence: contador por negocio para números de factura y pago.
"""

from app.database.database import Base
from sqlalchemy import Column, String, Boolean, Numeric, Enum, Integer, BigInteger, ForeignKey, UniqueConstraint, Uuid
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


class StaffRole(enum.Enum):
    """Roles del personal dentro de un negocio"""
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    ACCOUNTANT = "ACCOUNTANT"
    CASHIER = "CASHIER"
    VIEWER = "VIEWER"


class Business(Base, TimestampMixin):
    __tablename__ = "businesses"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(200), nullable=False)
    owner_id = Column(Uuid, nullable=False, index=True)
    currency = Column(String(3), nullable=False, default="INR")

    # Flujo de aprobación
    approval_enabled = Column(Boolean, nullable=False, default=False)
    approval_threshold_amount = Column(Numeric(15, 2), nullable=True)  # None = toda factura requiere aprobación
    auto_approve_below_threshold = Column(Boolean, nullable=False, default=False)

    # Numeración
    bill_prefix = Column(String(20), nullable=False, default="INV")
    payment_prefix = Column(String(20), nullable=False, default="PAY")

    is_active = Column(Boolean, nullable=False, default=True)


class BusinessStaff(Base, TenantMixin, TimestampMixin):
    __tablename__ = "business_staff"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    role = Column(Enum(StaffRole), nullable=False, default=StaffRole.VIEWER)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("business_id", "user_id", name="uq_business_staff_user"),
    )


class LedgerSequence(Base, TenantMixin):
    """
    Contador de secuencia por negocio.

    Una fila por (negocio, nombre). Se incrementa bajo SELECT ... FOR UPDATE,
    nunca con MAX()+1, para que no haya números repetidos entre instancias.
    """
    __tablename__ = "ledger_sequences"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(50), nullable=False)  # p.ej. "bill:2026", "payment:2026"
    current_value = Column(BigInteger().with_variant(Integer, "sqlite"), nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("business_id", "name", name="uq_ledger_sequence_business_name"),
    )

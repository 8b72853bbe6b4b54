from app.database.database import Base
from sqlalchemy import Column, String, Boolean, Uuid
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin, SoftDeleteMixin


class Customer(Base, TenantMixin, TimestampMixin, SoftDeleteMixin):
    """Cliente de un negocio; las facturas lo referencian por id (nulo para venta de mostrador)"""
    __tablename__ = "customers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(200), nullable=False, index=True)
    email = Column(String(100), nullable=True)
    phone = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

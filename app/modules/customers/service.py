from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.common.exceptions import NotFoundError
from app.modules.customers.models import Customer


class CustomerService:
    """Acceso a clientes con aislamiento por negocio"""

    def __init__(self, db: Session):
        self.db = db

    def create_customer(self, business_id: UUID, name: str, email: Optional[str] = None, phone: Optional[str] = None) -> Customer:
        customer = Customer(business_id=business_id, name=name, email=email, phone=phone)
        self.db.add(customer)
        self.db.commit()
        self.db.refresh(customer)
        return customer

    def require_customer(self, customer_id: UUID, business_id: UUID) -> Customer:
        customer = self.db.query(Customer).filter(
            Customer.id == customer_id,
            Customer.business_id == business_id,
            Customer.deleted_at.is_(None),
            Customer.is_active == True
        ).first()
        if not customer:
            raise NotFoundError("Cliente no encontrado")
        return customer

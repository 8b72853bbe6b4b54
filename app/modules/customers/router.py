from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from uuid import UUID

from app.database.database import get_db
from app.dependencies.businessDependencies import RequestContext, require_permission
from app.modules.customers.schemas import CustomerCreate, CustomerOut
from app.modules.customers.service import CustomerService
from app.modules.permissions.constants import Resource, Action

customers_router = APIRouter(prefix="/customers", tags=["Customers"])


@customers_router.post("/", response_model=CustomerOut, status_code=status.HTTP_201_CREATED)
def create_customer(
    customer_data: CustomerCreate,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.CUSTOMERS, Action.CREATE))
):
    return CustomerService(db).create_customer(
        context.business_id, customer_data.name, customer_data.email, customer_data.phone
    )


@customers_router.get("/{customer_id}", response_model=CustomerOut)
def get_customer(
    customer_id: UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(require_permission(Resource.CUSTOMERS, Action.READ))
):
    return CustomerService(db).require_customer(customer_id, context.business_id)

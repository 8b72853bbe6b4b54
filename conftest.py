"""
Fixtures compartidas por los tests de los módulos.

La base de datos es un archivo SQLite temporal que se recrea en cada test;
al ser un archivo (y no memoria) dos sesiones distintas ven los mismos datos,
lo que permite probar escrituras concurrentes.
"""

import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="ledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'ledger.db')}"
os.environ["ENVIRONMENT"] = "test"
os.environ["NOTIFICATIONS_ENABLED"] = "false"
os.environ["LEDGER_RETRY_BACKOFF_SECONDS"] = "0.001"

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import uuid4, UUID

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.database.database import Base, SessionLocal, engine
from app.modules.approvals.service import BillApprovalService
from app.modules.bills.schemas import BillCreate, BillItemCreate
from app.modules.bills.service import BillService
from app.modules.business.models import StaffRole
from app.modules.business.service import BusinessService
from app.modules.customers.service import CustomerService
from app.modules.notifications.service import NotificationService


class RecordingDispatcher:
    """Captura las notificaciones encoladas"""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def __call__(self, payload):
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.sent.append(payload)


# ===== FIXTURES =====

@pytest.fixture(autouse=True)
def schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    engine.dispose()


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def other_session():
    """Segunda sesión independiente, simula otra instancia del servicio"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def owner_id() -> UUID:
    return uuid4()


@pytest.fixture
def business(db_session, owner_id):
    return BusinessService(db_session).create_business("Tienda Demo", owner_id)


@pytest.fixture
def other_business(db_session):
    return BusinessService(db_session).create_business("Otra Tienda", uuid4())


@pytest.fixture
def customer(db_session, business):
    return CustomerService(db_session).create_customer(business.id, "Cliente Demo", email="cliente@demo.com")


@pytest.fixture
def staff_factory(db_session, business):
    """Crea un usuario con el rol indicado y devuelve su id"""
    def make(role: StaffRole) -> UUID:
        user_id = uuid4()
        BusinessService(db_session).add_staff(business.id, user_id, role)
        return user_id
    return make


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def notifier(dispatcher):
    return NotificationService(dispatcher=dispatcher, enabled=True)


@pytest.fixture
def failing_notifier():
    return NotificationService(dispatcher=RecordingDispatcher(fail=True), enabled=True)


@pytest.fixture
def bill_factory(db_session, business, owner_id):
    """
    Crea una factura de una línea por ``amount``. Con ``submit`` la emite
    (DRAFT -> PENDING) según la política del negocio.
    """
    def make(
        amount: Decimal = Decimal("100.00"),
        customer_id: Optional[UUID] = None,
        due_date: Optional[date] = None,
        bill_date: Optional[date] = None,
        submit: bool = True,
        requires_approval: Optional[bool] = None,
    ):
        bill = BillService(db_session).create_bill(
            business.id,
            owner_id,
            BillCreate(
                customer_id=customer_id,
                bill_date=bill_date,
                due_date=due_date,
                items=[BillItemCreate(product_name="Servicio", quantity=Decimal("1"), rate=amount)],
            ),
        )
        if submit:
            bill = BillApprovalService(
                db_session, notifier=NotificationService(enabled=False)
            ).submit_for_approval(business.id, owner_id, bill.id, requires_approval=requires_approval)
        return bill
    return make


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def headers(business, owner_id):
    return {"X-Business-ID": str(business.id), "X-User-ID": str(owner_id)}

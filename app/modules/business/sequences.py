"""
Numeración por negocio mediante filas contador bloqueadas.

El incremento es transaccional: solo queda visible cuando la transacción del
llamador hace commit, y un rollback devuelve el número.
"""

import logging
from datetime import date
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.modules.business.models import LedgerSequence

logger = logging.getLogger(__name__)


class SequenceService:
    """Incremento atómico de contadores por (negocio, nombre)"""

    BILL = "bill"
    PAYMENT = "payment"

    def __init__(self, db: Session):
        self.db = db

    def _lock_counter(self, business_id: UUID, name: str) -> Optional[LedgerSequence]:
        return self.db.execute(
            select(LedgerSequence)
            .where(LedgerSequence.business_id == business_id, LedgerSequence.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, business_id: UUID, name: str) -> int:
        """Bloquea (o crea) el contador y devuelve el siguiente valor."""
        counter = self._lock_counter(business_id, name)

        if counter is None:
            # Otro proceso puede crear el contador a la vez: savepoint y reintento
            savepoint = self.db.begin_nested()
            try:
                counter = LedgerSequence(business_id=business_id, name=name, current_value=1)
                self.db.add(counter)
                self.db.flush()
                savepoint.commit()
                logger.debug(f"Sequence {name} started for business {business_id}")
                return 1
            except IntegrityError:
                savepoint.rollback()
                logger.debug(f"Sequence {name} race on creation for business {business_id}, retrying")
                counter = self._lock_counter(business_id, name)

        counter.current_value += 1
        self.db.flush()
        return counter.current_value

    def current_value(self, business_id: UUID, name: str) -> int:
        counter = self.db.execute(
            select(LedgerSequence).where(
                LedgerSequence.business_id == business_id,
                LedgerSequence.name == name
            )
        ).scalar_one_or_none()
        return counter.current_value if counter else 0

    @staticmethod
    def format_number(prefix: str, year: int, value: int) -> str:
        """Formato {PREFIX}-{YEAR}-{NUMBER}, p.ej. INV-2026-00001"""
        return f"{prefix}-{year}-{value:0{settings.SEQUENCE_PADDING}d}"

    def next_bill_number(self, business_id: UUID, prefix: str, on: Optional[date] = None) -> tuple:
        year = (on or date.today()).year
        value = self.next_value(business_id, f"{self.BILL}:{year}")
        return self.format_number(prefix, year, value), value

    def next_payment_number(self, business_id: UUID, prefix: str, on: Optional[date] = None) -> str:
        year = (on or date.today()).year
        value = self.next_value(business_id, f"{self.PAYMENT}:{year}")
        return self.format_number(prefix, year, value)

"""
Tests para el negocio, su política de aprobación y la numeración
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import NotFoundError
from app.modules.business.sequences import SequenceService
from app.modules.business.service import BusinessService


class TestSequences:

    def test_consecutive_per_business(self, db_session, business, other_business):
        sequences = SequenceService(db_session)
        assert sequences.next_value(business.id, "bill:2026") == 1
        assert sequences.next_value(business.id, "bill:2026") == 2
        assert sequences.next_value(other_business.id, "bill:2026") == 1
        db_session.commit()
        assert sequences.current_value(business.id, "bill:2026") == 2

    def test_rollback_returns_number(self, db_session, business):
        sequences = SequenceService(db_session)
        sequences.next_value(business.id, "payment:2026")
        db_session.commit()
        sequences.next_value(business.id, "payment:2026")
        db_session.rollback()
        assert sequences.current_value(business.id, "payment:2026") == 1

    def test_number_format(self, db_session, business):
        number, value = SequenceService(db_session).next_bill_number(business.id, "INV", on=date(2026, 3, 1))
        assert number == "INV-2026-00001"
        assert value == 1

    def test_new_year_restarts(self, db_session, business):
        sequences = SequenceService(db_session)
        sequences.next_payment_number(business.id, "PAY", on=date(2025, 12, 31))
        assert sequences.next_payment_number(business.id, "PAY", on=date(2026, 1, 1)) == "PAY-2026-00001"

    def test_bill_numbers_unique(self, bill_factory):
        numbers = {bill_factory().bill_number for _ in range(5)}
        assert len(numbers) == 5


class TestApprovalPolicy:

    @pytest.mark.parametrize("enabled,threshold,total,expected", [
        (False, None, "1000", False),
        (True, None, "1", True),
        (True, "500", "499.99", False),
        (True, "500", "500", True),
    ])
    def test_requires_approval(self, db_session, business, enabled, threshold, total, expected):
        business.approval_enabled = enabled
        business.approval_threshold_amount = Decimal(threshold) if threshold else None
        assert BusinessService(db_session).requires_approval(business, Decimal(total)) is expected

    def test_unknown_business(self, db_session):
        with pytest.raises(NotFoundError):
            BusinessService(db_session).get_business(uuid4())

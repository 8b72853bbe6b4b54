"""
Tests for money helpers, retry policy and the error taxonomy
"""

import pytest
from decimal import Decimal

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from app.common.exceptions import ConflictError, ValidationError, NotFoundError
from app.common.money import quantize, percent_of, money_sum, to_decimal
from app.common.retry import is_lock_contention, run_with_retry


class TestMoney:

    def test_quantize_half_up(self):
        assert quantize("2.345") == Decimal("2.35")
        assert quantize("2.344") == Decimal("2.34")
        assert quantize(None) == Decimal("0.00")

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            to_decimal(0.1)

    def test_invalid_string(self):
        with pytest.raises(ValueError):
            to_decimal("abc")

    def test_percent_and_sum(self):
        assert percent_of(Decimal("200"), "12.5") == Decimal("25")
        assert percent_of(Decimal("200"), None) == Decimal("0.00")
        assert money_sum(["0.10", "0.20", 1]) == Decimal("1.30")


class _FakeOrig(Exception):
    def __init__(self, pgcode):
        super().__init__("boom")
        self.pgcode = pgcode


class TestRetry:

    def test_contention_detection(self):
        assert is_lock_contention(StaleDataError("stale"))
        assert is_lock_contention(OperationalError("UPDATE", {}, _FakeOrig("55P03")))
        assert is_lock_contention(OperationalError("UPDATE", {}, Exception("database is locked")))
        assert not is_lock_contention(OperationalError("UPDATE", {}, _FakeOrig("23505")))
        assert not is_lock_contention(ValueError("nope"))
        assert not is_lock_contention(ConflictError("ya procesado"))

    def test_returns_after_transient_failures(self, db_session):
        calls = []

        def unit():
            calls.append(1)
            if len(calls) < 3:
                raise StaleDataError("stale")
            return "ok"

        assert run_with_retry(db_session, unit, "test", max_retries=3, backoff=0) == "ok"
        assert len(calls) == 3

    def test_non_contention_errors_propagate(self, db_session):
        def unit():
            raise NotFoundError("Factura no encontrada")

        with pytest.raises(NotFoundError):
            run_with_retry(db_session, unit, "test", backoff=0)

    def test_timeout_bounds_retries(self, db_session):
        calls = []

        def unit():
            calls.append(1)
            raise StaleDataError("stale")

        with pytest.raises(ConflictError):
            run_with_retry(db_session, unit, "test", max_retries=100, backoff=0, timeout=0)
        assert len(calls) == 1


class TestErrors:

    def test_validation_error_body(self):
        error = ValidationError("Cantidad inválida", field="items[0].quantity")
        assert error.status_code == 422
        assert error.to_dict() == {
            "kind": "validation_error",
            "message": "Cantidad inválida",
            "errors": [{"field": "items[0].quantity", "issue": "Cantidad inválida"}],
        }

    def test_conflict_is_retryable(self):
        assert ConflictError("x").retryable is True
        assert NotFoundError("x").retryable is False

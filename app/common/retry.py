"""
Bounded retry with backoff for lock contention on ledger rows.

An atomic unit (one function that runs a full transaction) is re-run when the
store reports contention: a stale optimistic-lock write, a lock timeout, a
deadlock or a serialization failure. Retries stop after
``LEDGER_MAX_RETRIES`` attempts or once ``LEDGER_LOCK_TIMEOUT_SECONDS`` has
elapsed, whichever comes first, and the last failure is surfaced as a
retryable ``ConflictError``.
"""
import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.common.exceptions import ConflictError
from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# lock_not_available, deadlock_detected, serialization_failure
CONTENTION_PGCODES = {"55P03", "40P01", "40001"}
CONTENTION_MESSAGES = ("database is locked", "lock timeout", "could not obtain lock", "deadlock")


def is_lock_contention(exc: BaseException) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, (OperationalError, DBAPIError)):
        pgcode = getattr(getattr(exc, "orig", None), "pgcode", None)
        if pgcode in CONTENTION_PGCODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in CONTENTION_MESSAGES)
    return False


def apply_lock_timeout(db: Session, seconds: Optional[float] = None) -> None:
    """Acota la espera por locks de fila dentro de la transacción actual (solo PostgreSQL)."""
    bind = db.get_bind()
    if bind.dialect.name != "postgresql":
        return
    timeout_ms = int((seconds or settings.LEDGER_LOCK_TIMEOUT_SECONDS) * 1000)
    db.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


def run_with_retry(
    db: Session,
    unit: Callable[[], T],
    operation: str,
    max_retries: Optional[int] = None,
    backoff: Optional[float] = None,
    timeout: Optional[float] = None,
) -> T:
    """Ejecuta ``unit`` reintentando ante contención; hace rollback entre intentos."""
    max_retries = settings.LEDGER_MAX_RETRIES if max_retries is None else max_retries
    backoff = settings.LEDGER_RETRY_BACKOFF_SECONDS if backoff is None else backoff
    timeout = settings.LEDGER_LOCK_TIMEOUT_SECONDS if timeout is None else timeout

    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        try:
            return unit()
        except Exception as exc:
            if not is_lock_contention(exc):
                raise
            db.rollback()
            attempt += 1
            remaining = deadline - time.monotonic()
            if attempt > max_retries or remaining <= 0:
                logger.warning(f"{operation}: contention persisted after {attempt} attempts")
                raise ConflictError(
                    f"Modificación concurrente en {operation}; vuelva a intentar"
                ) from exc
            delay = min(backoff * (2 ** (attempt - 1)), max(remaining, 0))
            logger.info(f"{operation}: contention detected, retry {attempt}/{max_retries} in {delay:.3f}s")
            time.sleep(delay)

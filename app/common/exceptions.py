"""
Error taxonomy for the ledger engine.

Every failure surfaced to a caller carries a stable ``kind``, a readable
message and, for validation failures, a field/issue list. The classes extend
FastAPI's ``HTTPException`` so services can keep raising them directly and
routers pass them through untouched.
"""
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class LedgerError(HTTPException):
    """Base class for errors the ledger exposes to callers."""

    kind = "ledger_error"
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(status_code=self.status_code, detail=self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class ValidationError(LedgerError):
    """Entrada malformada o fuera de rango. Nunca se reintenta."""

    kind = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, field: Optional[str] = None, errors: Optional[List[Dict[str, Any]]] = None):
        if field and not errors:
            errors = [{"field": field, "issue": message}]
        super().__init__(message, errors)


class InvalidStateError(LedgerError):
    """Operación no válida para el estado actual de la entidad."""

    kind = "invalid_state"
    status_code = status.HTTP_409_CONFLICT


class ForbiddenError(LedgerError):
    kind = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(LedgerError):
    """Modificación concurrente detectada; seguro reintentar tras releer."""

    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT
    retryable = True


class NotFoundError(LedgerError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND

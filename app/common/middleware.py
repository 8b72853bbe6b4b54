"""
Middleware for handling multi-tenancy
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from uuid import UUID
import logging

logger = logging.getLogger(__name__)

BUSINESS_HEADER = "X-Business-ID"
USER_HEADER = "X-User-ID"


def _header_error(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"kind": "validation_error", "message": message},
    )


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Middleware that extracts business_id and user_id from the X-Business-ID
    and X-User-ID headers (set by the upstream auth gateway) and stores them
    on request.state for use in endpoint handlers
    """

    # Paths that don't require tenant context
    EXEMPT_PREFIXES = [
        "/docs",
        "/redoc",
        "/openapi.json",
        "/health",
    ]
    EXEMPT_EXACT = ["/"]

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.EXEMPT_EXACT or any(path.startswith(prefix) for prefix in self.EXEMPT_PREFIXES):
            return await call_next(request)

        # Skip for OPTIONS requests (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        business_header = request.headers.get(BUSINESS_HEADER)
        user_header = request.headers.get(USER_HEADER)
        if not business_header:
            return _header_error(f"Missing {BUSINESS_HEADER} header")
        if not user_header:
            return _header_error(f"Missing {USER_HEADER} header")

        try:
            business_id = UUID(business_header)
            user_id = UUID(user_header)
        except ValueError:
            return _header_error(f"Invalid {BUSINESS_HEADER} or {USER_HEADER} format. Must be a valid UUID")

        request.state.business_id = business_id
        request.state.user_id = user_id
        logger.debug(f"Request to {path} with business_id: {business_id} user_id: {user_id}")

        response = await call_next(request)

        # Add tenant ID to response headers for debugging
        response.headers["X-Tenant-ID"] = str(business_id)

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers for production
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # Add security headers
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response

from dataclasses import dataclass
from typing import Annotated
from fastapi import Depends, Request
from sqlalchemy.orm import Session
from uuid import UUID

from app.common.exceptions import ValidationError
from app.database.database import get_db
from app.modules.permissions.constants import Resource, Action
from app.modules.permissions.service import PermissionService


@dataclass(frozen=True)
class RequestContext:
    business_id: UUID
    user_id: UUID


def get_request_context(request: Request) -> RequestContext:
    """Extract business_id and user_id from request state set by TenantMiddleware"""
    business_id = getattr(request.state, "business_id", None)
    user_id = getattr(request.state, "user_id", None)
    if business_id is None or user_id is None:
        raise ValidationError("Tenant context not found. Ensure X-Business-ID and X-User-ID headers are provided.")
    return RequestContext(business_id=business_id, user_id=user_id)


def require_permission(resource: Resource, action: Action):
    """Dependency factory for read endpoints; mutations are checked inside the services"""

    def checker(
        context: RequestContext = Depends(get_request_context),
        db: Session = Depends(get_db)
    ) -> RequestContext:
        PermissionService(db).require(context.user_id, context.business_id, resource, action)
        return context

    return checker


BusinessContext = Annotated[RequestContext, Depends(get_request_context)]

"""
Capacidad única de autorización.

El ledger no revisa roles ni banderas por su cuenta: toda operación que muta
estado pregunta ``has_permission`` a este servicio y, si la respuesta es
negativa, falla con ``ForbiddenError`` antes de tocar nada.
"""

import logging
from typing import Optional, Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from app.common.exceptions import ForbiddenError
from app.modules.business.models import Business, BusinessStaff, StaffRole
from app.modules.permissions.constants import Resource, Action, ROLE_PERMISSIONS
from app.modules.permissions.models import PermissionOverride

logger = logging.getLogger(__name__)


class PermissionChecker(Protocol):
    def has_permission(self, actor_id: UUID, business_id: UUID, resource: Resource, action: Action) -> bool:
        ...


class PermissionService:
    """Implementación autoritativa: dueño > override por usuario > rol"""

    def __init__(self, db: Session):
        self.db = db

    def _staff(self, actor_id: UUID, business_id: UUID) -> Optional[BusinessStaff]:
        return self.db.query(BusinessStaff).filter(
            BusinessStaff.business_id == business_id,
            BusinessStaff.user_id == actor_id,
            BusinessStaff.is_active == True
        ).first()

    def has_permission(self, actor_id: UUID, business_id: UUID, resource: Resource, action: Action) -> bool:
        business = self.db.get(Business, business_id)
        if business is None or not business.is_active:
            return False
        if business.owner_id == actor_id:
            return True

        staff = self._staff(actor_id, business_id)
        if staff is None:
            return False
        if staff.role == StaffRole.OWNER:
            return True

        override = self.db.query(PermissionOverride).filter(
            PermissionOverride.business_id == business_id,
            PermissionOverride.user_id == actor_id,
            PermissionOverride.resource == resource,
            PermissionOverride.action == action
        ).first()
        if override is not None:
            return override.granted

        allowed = ROLE_PERMISSIONS.get(staff.role, {}).get(resource, frozenset())
        return action in allowed or Action.MANAGE in allowed

    def require(self, actor_id: UUID, business_id: UUID, resource: Resource, action: Action) -> None:
        if not self.has_permission(actor_id, business_id, resource, action):
            logger.warning(
                f"Permission denied: user={actor_id} business={business_id} "
                f"{resource.value}:{action.value}"
            )
            raise ForbiddenError(f"No tiene permiso para {action.value} sobre {resource.value}")

    def grant(self, business_id: UUID, user_id: UUID, resource: Resource, action: Action, granted: bool = True) -> PermissionOverride:
        override = self.db.query(PermissionOverride).filter(
            PermissionOverride.business_id == business_id,
            PermissionOverride.user_id == user_id,
            PermissionOverride.resource == resource,
            PermissionOverride.action == action
        ).first()
        if override is None:
            override = PermissionOverride(
                business_id=business_id,
                user_id=user_id,
                resource=resource,
                action=action
            )
            self.db.add(override)
        override.granted = granted
        self.db.commit()
        return override

from app.database.database import Base
from sqlalchemy import Column, Boolean, Enum, UniqueConstraint, Uuid
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
from app.modules.permissions.constants import Resource, Action


class PermissionOverride(Base, TenantMixin, TimestampMixin):
    """
    Concesión o denegación explícita de (recurso, acción) para un usuario.

    Tiene prioridad sobre la matriz del rol; no aplica al dueño del negocio.
    """
    __tablename__ = "permission_overrides"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    resource = Column(Enum(Resource), nullable=False)
    action = Column(Enum(Action), nullable=False)
    granted = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("business_id", "user_id", "resource", "action", name="uq_permission_override"),
    )

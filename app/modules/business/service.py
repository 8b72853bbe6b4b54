"""
Servicio del tenant: lectura del negocio, personal y configuración del
flujo de aprobación de facturas.
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.common.exceptions import NotFoundError, ValidationError
from app.common.money import quantize
from app.modules.business.models import Business, BusinessStaff, StaffRole
from app.modules.business.schemas import ApprovalWorkflowConfig
from app.modules.history.service import HistoryRecorder
from app.modules.permissions.constants import Resource, Action
from app.modules.permissions.service import PermissionService

logger = logging.getLogger(__name__)


class BusinessService:
    """Servicio para el negocio (tenant) y su configuración"""

    def __init__(self, db: Session, permissions: Optional[PermissionService] = None):
        self.db = db
        self.permissions = permissions or PermissionService(db)

    def create_business(self, name: str, owner_id: UUID, **options) -> Business:
        business = Business(name=name, owner_id=owner_id, **options)
        self.db.add(business)
        self.db.flush()
        self.db.add(BusinessStaff(business_id=business.id, user_id=owner_id, role=StaffRole.OWNER))
        self.db.commit()
        self.db.refresh(business)
        logger.info(f"Business {business.id} created for owner {owner_id}")
        return business

    def add_staff(self, business_id: UUID, user_id: UUID, role: StaffRole) -> BusinessStaff:
        self.get_business(business_id)
        staff = BusinessStaff(business_id=business_id, user_id=user_id, role=role)
        self.db.add(staff)
        self.db.commit()
        self.db.refresh(staff)
        return staff

    def get_business(self, business_id: UUID) -> Business:
        business = self.db.query(Business).filter(
            Business.id == business_id,
            Business.is_active == True
        ).first()
        if not business:
            raise NotFoundError("Negocio no encontrado")
        return business

    def requires_approval(self, business: Business, total_amount: Decimal) -> bool:
        """
        Decide si una factura necesita aprobación según la política del negocio.

        Sin umbral configurado toda factura la requiere; con umbral, solo las
        de total igual o superior.
        """
        if not business.approval_enabled:
            return False
        if business.approval_threshold_amount is None:
            return True
        return quantize(total_amount) >= quantize(business.approval_threshold_amount)

    def configure_approval_workflow(
        self,
        business_id: UUID,
        actor_id: UUID,
        config: ApprovalWorkflowConfig
    ) -> Business:
        """Configurar el flujo de aprobación del negocio"""
        self.permissions.require(actor_id, business_id, Resource.SETTINGS, Action.UPDATE)
        business = self.get_business(business_id)

        if config.threshold_amount is not None and config.threshold_amount < 0:
            raise ValidationError("El umbral no puede ser negativo", field="threshold_amount")

        old_values = {
            "approval_enabled": business.approval_enabled,
            "approval_threshold_amount": str(business.approval_threshold_amount)
            if business.approval_threshold_amount is not None else None,
            "auto_approve_below_threshold": business.auto_approve_below_threshold,
        }

        business.approval_enabled = config.enabled
        business.approval_threshold_amount = (
            quantize(config.threshold_amount) if config.threshold_amount is not None else None
        )
        business.auto_approve_below_threshold = config.auto_approve_below_threshold

        HistoryRecorder(self.db).record(
            business_id=business_id,
            entity_type="BUSINESS",
            entity_id=business_id,
            action="CONFIGURE_APPROVAL_WORKFLOW",
            actor_id=actor_id,
            old_value=old_values,
            new_value=config.model_dump(mode="json"),
        )

        self.db.commit()
        self.db.refresh(business)
        logger.info(
            f"Approval workflow configured for business {business_id}: "
            f"enabled={config.enabled} threshold={config.threshold_amount}"
        )
        return business

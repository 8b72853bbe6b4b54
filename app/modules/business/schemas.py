from pydantic import BaseModel, ConfigDict, Field
from decimal import Decimal
from typing import Optional
from uuid import UUID


class ApprovalWorkflowConfig(BaseModel):
    enabled: bool = Field(..., description="Activa el flujo de aprobación")
    threshold_amount: Optional[Decimal] = Field(None, ge=0, description="Total mínimo que requiere aprobación")
    auto_approve_below_threshold: bool = Field(False, description="Aprobar automáticamente bajo el umbral")


class ApprovalWorkflowOut(BaseModel):
    business_id: UUID
    approval_enabled: bool
    approval_threshold_amount: Optional[Decimal]
    auto_approve_below_threshold: bool

    model_config = ConfigDict(from_attributes=True)

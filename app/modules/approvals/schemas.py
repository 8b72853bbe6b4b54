from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from uuid import UUID
from datetime import datetime
from enum import Enum


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class SubmitForApprovalRequest(BaseModel):
    requires_approval: Optional[bool] = Field(
        None, description="Forzar aprobación; si se omite decide la política del negocio"
    )
    notes: Optional[str] = None


class ApprovalDecisionRequest(BaseModel):
    action: ApprovalAction
    notes: Optional[str] = Field(None, max_length=1000, description="Comentario o motivo de rechazo")


class BulkApproveRequest(BaseModel):
    bill_ids: List[UUID] = Field(..., min_length=1, max_length=100)
    notes: Optional[str] = None


class ApprovalOutcome(BaseModel):
    bill_id: UUID
    success: bool
    approval_status: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None


class BulkApproveResult(BaseModel):
    approved: int
    failed: int
    results: List[ApprovalOutcome]


class ApprovalHistoryOut(BaseModel):
    id: UUID
    bill_id: UUID
    action: str
    performed_by: Optional[UUID]
    notes: Optional[str]
    old_status: Optional[str]
    new_status: Optional[str]
    old_approval_status: Optional[str]
    new_approval_status: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

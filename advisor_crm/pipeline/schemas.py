from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


OpportunityStatus = Literal["active", "lost", "won"]
OpportunityTemperature = Literal["cold", "warm", "hot"]
SlaStatus = Literal["ok", "warning", "overdue"]


class FunnelCreate(BaseModel):
    name: str = Field(min_length=1)
    order_position: int | None = Field(default=None, ge=1)
    is_active: bool = True
    auto_create_next: bool = False


class FunnelUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None
    auto_create_next: bool | None = None


class FunnelOrderRequest(BaseModel):
    funnel_ids: list[UUID] = Field(min_length=1)


class FunnelStageCreate(BaseModel):
    name: str = Field(min_length=1)
    order_position: int | None = Field(default=None, ge=0)
    sla_hours: int | None = Field(default=None, ge=1)
    color: str = "slate"


class FunnelStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    sla_hours: int | None = Field(default=None, ge=1)
    color: str | None = Field(default=None, min_length=1)


class FunnelStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    funnel_id: UUID
    name: str
    order_position: int
    sla_hours: int | None
    color: str
    created_at: datetime
    updated_at: datetime


class FunnelRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    order_position: int
    is_active: bool
    auto_create_next: bool
    created_at: datetime
    updated_at: datetime
    stages: list[FunnelStageRead] = Field(default_factory=list)


class StageOrderRequest(BaseModel):
    stage_ids: list[UUID] = Field(min_length=1)


class GateRuleRead(BaseModel):
    funnel_id: str
    threshold_position: int
    field: str


class LostReasonCreate(BaseModel):
    name: str = Field(min_length=1)
    is_active: bool = True


class LostReasonUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class LostReasonRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    is_active: bool
    created_at: datetime


class OpportunityCreate(BaseModel):
    contact_id: UUID
    current_funnel_id: UUID
    current_stage_id: UUID | None = None
    qualification: int | None = Field(default=None, ge=1, le=5)
    temperature: OpportunityTemperature | None = None
    notes: str | None = None
    proposal_value: float | None = Field(default=None, gt=0)


class OpportunityUpdate(BaseModel):
    row_version: int = Field(ge=1)
    qualification: int | None = Field(default=None, ge=1, le=5)
    temperature: OpportunityTemperature | None = None
    notes: str | None = None
    proposal_value: float | None = Field(default=None, gt=0)


class OpportunityMoveStageRequest(BaseModel):
    to_stage_id: UUID
    row_version: int = Field(ge=1)
    proposal_value: float | None = Field(default=None, gt=0)
    notes: str | None = None


class OpportunityMarkLostRequest(BaseModel):
    row_version: int = Field(ge=1)
    lost_reason_id: UUID
    notes: str | None = None


class OpportunityMarkWonRequest(BaseModel):
    row_version: int = Field(ge=1)
    notes: str | None = None


class OpportunityReactivateRequest(BaseModel):
    row_version: int = Field(ge=1)
    to_stage_id: UUID | None = None
    proposal_value: float | None = Field(default=None, gt=0)
    notes: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    current_funnel_id: UUID
    current_stage_id: UUID
    stage_entered_at: datetime
    status: OpportunityStatus
    lost_at: datetime | None
    lost_from_stage_id: UUID | None
    lost_reason_id: UUID | None
    converted_at: datetime | None
    qualification: int | None
    temperature: OpportunityTemperature | None
    notes: str | None
    proposal_value: float | None
    created_by: str
    created_at: datetime
    updated_at: datetime
    row_version: int
    proposal_value_required: bool = False
    sla_status: SlaStatus | None = None


class OpportunityMarkWonResponse(BaseModel):
    opportunity: OpportunityRead
    next_opportunity: OpportunityRead | None = None


class ProposalRequirementRead(BaseModel):
    opportunity_id: UUID
    funnel_id: UUID
    stage_id: UUID
    field: str
    required: bool
    threshold_position: int | None
    has_value: bool


class OpportunityHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    opportunity_id: UUID
    action: str
    from_stage_id: UUID | None
    to_stage_id: UUID | None
    changed_by: str
    notes: str | None
    created_at: datetime

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from advisor_crm.context import get_correlation_id
from advisor_crm.core.auth import AuthUser, get_current_user as get_auth_user
from advisor_crm.core.database import get_db
from advisor_crm.pipeline.schemas import (
    FunnelCreate,
    FunnelOrderRequest,
    FunnelRead,
    FunnelStageCreate,
    FunnelStageRead,
    FunnelStageUpdate,
    FunnelUpdate,
    GateRuleRead,
    LostReasonCreate,
    LostReasonRead,
    LostReasonUpdate,
    OpportunityCreate,
    OpportunityHistoryRead,
    OpportunityMarkLostRequest,
    OpportunityMarkWonRequest,
    OpportunityMarkWonResponse,
    OpportunityMoveStageRequest,
    OpportunityReactivateRequest,
    OpportunityRead,
    OpportunityStatus,
    OpportunityUpdate,
    ProposalRequirementRead,
    StageOrderRequest,
)
from advisor_crm.pipeline.service import ActorUser, FunnelService, LostReasonService, OpportunityService

funnels_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.funnels"])
lost_reasons_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.lost_reasons"])
policies_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.policies"])
opportunities_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.opportunities"])
funnel_service = FunnelService()
lost_reason_service = LostReasonService()
opportunity_service = OpportunityService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def require_any_permission(user: ActorUser, permissions: list[str]) -> None:
    if not any(permission in user.permissions for permission in permissions):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {' or '.join(permissions)}")


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@funnels_router.post("/funnels", response_model=FunnelRead, status_code=status.HTTP_201_CREATED)
def create_funnel(
    request: Request,
    dto: FunnelCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "pipeline.funnels.manage")
        return funnel_service.create_funnel(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_funnel_create_failed")


@funnels_router.get("/funnels", response_model=list[FunnelRead])
def list_funnels(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FunnelRead] | JSONResponse:
    try:
        require_any_permission(user, ["pipeline.funnels.read", "pipeline.opportunities.read"])
        if include_inactive:
            require_permission(user, "pipeline.funnels.manage")
        return funnel_service.list_funnels(db, include_inactive=include_inactive)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_funnel_list_failed")


@funnels_router.get("/funnels/{funnel_id}", response_model=FunnelRead)
def get_funnel(
    request: Request,
    funnel_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_any_permission(user, ["pipeline.funnels.read", "pipeline.opportunities.read"])
        return funnel_service.get_funnel(db, funnel_id)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_funnel_get_failed")


@funnels_router.patch("/funnels/{funnel_id}", response_model=FunnelRead)
def update_funnel(
    request: Request,
    funnel_id: uuid.UUID,
    dto: FunnelUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "pipeline.funnels.manage")
        return funnel_service.update_funnel(db, user, funnel_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_funnel_update_failed")


@funnels_router.put("/funnels/order", response_model=list[FunnelRead])
def reorder_funnels(
    request: Request,
    dto: FunnelOrderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FunnelRead] | JSONResponse:
    try:
        require_permission(user, "pipeline.funnels.manage")
        return funnel_service.reorder_funnels(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_funnel_reorder_failed")


@funnels_router.post(
    "/funnels/{funnel_id}/stages",
    response_model=FunnelStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_funnel_stage(
    request: Request,
    funnel_id: uuid.UUID,
    dto: FunnelStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelStageRead | JSONResponse:
    try:
        require_permission(user, "pipeline.funnels.manage")
        return funnel_service.add_stage(db, user, funnel_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_funnel_stage_create_failed")


@funnels_router.get("/funnels/{funnel_id}/stages", response_model=list[FunnelStageRead])
def list_funnel_stages(
    request: Request,
    funnel_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FunnelStageRead] | JSONResponse:
    try:
        require_any_permission(user, ["pipeline.funnels.read", "pipeline.opportunities.read"])
        return funnel_service.list_stages(db, funnel_id)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_funnel_stage_list_failed")


@funnels_router.put("/funnels/{funnel_id}/stages/order", response_model=list[FunnelStageRead])
def reorder_funnel_stages(
    request: Request,
    funnel_id: uuid.UUID,
    dto: StageOrderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FunnelStageRead] | JSONResponse:
    try:
        require_permission(user, "pipeline.funnels.manage")
        return funnel_service.reorder_stages(db, user, funnel_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_funnel_stage_reorder_failed")


@funnels_router.patch("/funnels/{funnel_id}/stages/{stage_id}", response_model=FunnelStageRead)
def update_funnel_stage(
    request: Request,
    funnel_id: uuid.UUID,
    stage_id: uuid.UUID,
    dto: FunnelStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelStageRead | JSONResponse:
    try:
        require_permission(user, "pipeline.funnels.manage")
        return funnel_service.update_stage(db, user, funnel_id, stage_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_funnel_stage_update_failed")


@funnels_router.delete("/funnels/{funnel_id}/stages/{stage_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_funnel_stage(
    request: Request,
    funnel_id: uuid.UUID,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "pipeline.funnels.manage")
        funnel_service.delete_stage(db, user, funnel_id, stage_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_funnel_stage_delete_failed")


@policies_router.get("/policies/proposal-value", response_model=list[GateRuleRead])
def list_proposal_value_rules(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> list[GateRuleRead] | JSONResponse:
    try:
        require_any_permission(user, ["pipeline.funnels.read", "pipeline.opportunities.read"])
        return funnel_service.list_gate_rules(opportunity_service.policy)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_policy_list_failed")


@lost_reasons_router.post("/lost-reasons", response_model=LostReasonRead, status_code=status.HTTP_201_CREATED)
def create_lost_reason(
    request: Request,
    dto: LostReasonCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LostReasonRead | JSONResponse:
    try:
        require_permission(user, "pipeline.funnels.manage")
        return lost_reason_service.create_lost_reason(db, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_lost_reason_create_failed")


@lost_reasons_router.patch("/lost-reasons/{reason_id}", response_model=LostReasonRead)
def update_lost_reason(
    request: Request,
    reason_id: uuid.UUID,
    dto: LostReasonUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LostReasonRead | JSONResponse:
    try:
        require_permission(user, "pipeline.funnels.manage")
        return lost_reason_service.update_lost_reason(db, reason_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_lost_reason_update_failed")


@lost_reasons_router.get("/lost-reasons", response_model=list[LostReasonRead])
def list_lost_reasons(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LostReasonRead] | JSONResponse:
    try:
        require_any_permission(user, ["pipeline.funnels.read", "pipeline.opportunities.read"])
        return lost_reason_service.list_lost_reasons(db, include_inactive=include_inactive)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_lost_reason_list_failed")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    funnel_id: uuid.UUID | None = Query(default=None),
    stage_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    opportunity_status: OpportunityStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "pipeline.opportunities.read")
        return opportunity_service.list_opportunities(
            db,
            filters={
                "funnel_id": funnel_id,
                "stage_id": stage_id,
                "contact_id": contact_id,
                "status": opportunity_status,
            },
        )
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_opportunity_list_failed")


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "pipeline.opportunities.write")
        return opportunity_service.create_opportunity(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_opportunity_create_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "pipeline.opportunities.read")
        return opportunity_service.get_opportunity(db, opportunity_id)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_opportunity_get_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def patch_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "pipeline.opportunities.write")
        return opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_opportunity_update_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/move-stage", response_model=OpportunityRead)
def move_opportunity_stage(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityMoveStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "pipeline.opportunities.write")
        return opportunity_service.move_stage(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_opportunity_move_stage_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/mark-lost", response_model=OpportunityRead)
def mark_opportunity_lost(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityMarkLostRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "pipeline.opportunities.write")
        return opportunity_service.mark_lost(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_opportunity_mark_lost_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/mark-won", response_model=OpportunityMarkWonResponse)
def mark_opportunity_won(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityMarkWonRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityMarkWonResponse | JSONResponse:
    try:
        require_permission(user, "pipeline.opportunities.write")
        return opportunity_service.mark_won(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_opportunity_mark_won_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/reactivate", response_model=OpportunityRead)
def reactivate_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityReactivateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "pipeline.opportunities.write")
        return opportunity_service.reactivate(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_opportunity_reactivate_failed")


@opportunities_router.get(
    "/opportunities/{opportunity_id}/proposal-requirement",
    response_model=ProposalRequirementRead,
)
def get_proposal_requirement(
    request: Request,
    opportunity_id: uuid.UUID,
    to_stage_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProposalRequirementRead | JSONResponse:
    try:
        require_permission(user, "pipeline.opportunities.read")
        return opportunity_service.get_proposal_requirement(db, opportunity_id, to_stage_id)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_opportunity_proposal_requirement_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/history", response_model=list[OpportunityHistoryRead])
def list_opportunity_history(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityHistoryRead] | JSONResponse:
    try:
        require_permission(user, "pipeline.opportunities.read")
        return opportunity_service.list_history(db, opportunity_id)
    except HTTPException as exc:
        return _failed(request, exc, "pipeline_opportunity_history_failed")

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, NoReturn

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from advisor_crm import events
from advisor_crm.core.config import get_settings
from advisor_crm.metrics import observe_gate_block, observe_transition
from advisor_crm.pipeline.models import Funnel, FunnelStage, LostReason, Opportunity, OpportunityHistory
from advisor_crm.pipeline.policy import StagePolicyEvaluator
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
    OpportunityUpdate,
    ProposalRequirementRead,
    StageOrderRequest,
)


logger = logging.getLogger("advisor_crm.pipeline")
tracer = trace.get_tracer("advisor_crm.pipeline")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # sqlite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_decimal(value: float | Decimal | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _has_value(value: float | Decimal | None) -> bool:
    return value is not None and Decimal(str(value)) > Decimal("0")


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


class FunnelService:
    entity_type = "pipeline.funnel"

    def create_funnel(self, session: Session, actor_user: ActorUser, dto: FunnelCreate) -> FunnelRead:
        position = dto.order_position
        if position is None:
            current_max = session.scalar(select(func.max(Funnel.order_position)))
            position = (current_max or 0) + 1

        funnel = Funnel(
            name=dto.name.strip(),
            order_position=position,
            is_active=dto.is_active,
            auto_create_next=dto.auto_create_next,
        )
        session.add(funnel)
        session.flush()

        events.publish(
            events.build_envelope(
                "pipeline.funnel.created",
                actor_user.user_id,
                {"funnel_id": str(funnel.id), "order_position": funnel.order_position},
            )
        )
        session.commit()
        return self._to_funnel_read(funnel, [])

    def list_funnels(self, session: Session, include_inactive: bool = False) -> list[FunnelRead]:
        stmt = select(Funnel).options(selectinload(Funnel.stages))
        if not include_inactive:
            stmt = stmt.where(Funnel.is_active.is_(True))
        funnels = session.scalars(stmt.order_by(Funnel.order_position, Funnel.created_at)).all()
        return [self._to_funnel_read(funnel, self._sorted_stages(funnel.stages)) for funnel in funnels]

    def get_funnel(self, session: Session, funnel_id: uuid.UUID) -> FunnelRead:
        funnel = self._load_funnel(session, funnel_id)
        return self._to_funnel_read(funnel, self._sorted_stages(funnel.stages))

    def update_funnel(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: uuid.UUID,
        dto: FunnelUpdate,
    ) -> FunnelRead:
        funnel = self._load_funnel(session, funnel_id)
        changes = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        if not changes:
            return self._to_funnel_read(funnel, self._sorted_stages(funnel.stages))

        for key, value in changes.items():
            setattr(funnel, key, value)
        funnel.updated_at = utcnow()
        session.flush()

        events.publish(
            events.build_envelope(
                "pipeline.funnel.updated",
                actor_user.user_id,
                {"funnel_id": str(funnel.id), "changed_fields": sorted(changes)},
            )
        )
        session.commit()
        return self.get_funnel(session, funnel_id)

    def reorder_funnels(self, session: Session, actor_user: ActorUser, dto: FunnelOrderRequest) -> list[FunnelRead]:
        funnels_by_id = {funnel.id: funnel for funnel in session.scalars(select(Funnel)).all()}
        if len(dto.funnel_ids) != len(set(dto.funnel_ids)) or set(dto.funnel_ids) != set(funnels_by_id):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="funnel_ids must list every funnel exactly once",
            )

        for position, funnel_id in enumerate(dto.funnel_ids, start=1):
            funnels_by_id[funnel_id].order_position = position
        session.flush()

        events.publish(
            events.build_envelope(
                "pipeline.funnels.reordered",
                actor_user.user_id,
                {"funnel_ids": [str(item) for item in dto.funnel_ids]},
            )
        )
        session.commit()
        return self.list_funnels(session, include_inactive=True)

    def add_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: uuid.UUID,
        dto: FunnelStageCreate,
    ) -> FunnelStageRead:
        funnel = self._load_funnel(session, funnel_id)
        existing = list(funnel.stages)
        name = dto.name.strip()

        position = dto.order_position
        if position is None:
            position = max((stage.order_position for stage in existing), default=0) + 1
        if any(stage.order_position == position for stage in existing):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage order_position already used in funnel")
        if any(stage.name == name for stage in existing):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage name already used in funnel")

        stage = FunnelStage(
            funnel_id=funnel.id,
            name=name,
            order_position=position,
            sla_hours=dto.sla_hours,
            color=dto.color,
        )
        session.add(stage)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage conflicts with an existing stage")

        events.publish(
            events.build_envelope(
                "pipeline.funnel.stage_added",
                actor_user.user_id,
                {"funnel_id": str(funnel.id), "stage_id": str(stage.id), "order_position": stage.order_position},
            )
        )
        session.commit()
        return FunnelStageRead.model_validate(stage)

    def list_stages(self, session: Session, funnel_id: uuid.UUID) -> list[FunnelStageRead]:
        funnel = self._load_funnel(session, funnel_id)
        return [FunnelStageRead.model_validate(stage) for stage in self._sorted_stages(funnel.stages)]

    def reorder_stages(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: uuid.UUID,
        dto: StageOrderRequest,
    ) -> list[FunnelStageRead]:
        funnel = self._load_funnel(session, funnel_id)
        stages_by_id = {stage.id: stage for stage in funnel.stages}
        if len(dto.stage_ids) != len(set(dto.stage_ids)) or set(dto.stage_ids) != set(stages_by_id):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="stage_ids must list every stage of the funnel exactly once",
            )

        # park positions out of range first so the unique (funnel_id, order_position) index never collides
        for offset, stage in enumerate(stages_by_id.values(), start=1):
            stage.order_position = -offset
        session.flush()
        for position, stage_id in enumerate(dto.stage_ids, start=1):
            stages_by_id[stage_id].order_position = position
        session.flush()

        events.publish(
            events.build_envelope(
                "pipeline.funnel.stages_reordered",
                actor_user.user_id,
                {"funnel_id": str(funnel.id), "stage_ids": [str(item) for item in dto.stage_ids]},
            )
        )
        session.commit()
        return self.list_stages(session, funnel_id)

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: uuid.UUID,
        stage_id: uuid.UUID,
        dto: FunnelStageUpdate,
    ) -> FunnelStageRead:
        funnel = self._load_funnel(session, funnel_id)
        stage = self._find_funnel_stage(funnel, stage_id)
        # sla_hours may be cleared with an explicit null; name and color may not
        changes = {
            key: value
            for key, value in dto.model_dump(exclude_unset=True).items()
            if value is not None or key == "sla_hours"
        }
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            if any(other.id != stage.id and other.name == changes["name"] for other in funnel.stages):
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage name already used in funnel")
        if not changes:
            return FunnelStageRead.model_validate(stage)

        for key, value in changes.items():
            setattr(stage, key, value)
        stage.updated_at = utcnow()
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage conflicts with an existing stage")

        events.publish(
            events.build_envelope(
                "pipeline.funnel.stage_updated",
                actor_user.user_id,
                {"funnel_id": str(funnel.id), "stage_id": str(stage.id), "changed_fields": sorted(changes)},
            )
        )
        session.commit()
        return FunnelStageRead.model_validate(stage)

    def count_active_opportunities(self, session: Session, stage_id: uuid.UUID) -> int:
        return session.scalar(
            select(func.count())
            .select_from(Opportunity)
            .where(and_(Opportunity.current_stage_id == stage_id, Opportunity.status == "active"))
        ) or 0

    def delete_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        funnel_id: uuid.UUID,
        stage_id: uuid.UUID,
    ) -> None:
        funnel = self._load_funnel(session, funnel_id)
        stage = self._find_funnel_stage(funnel, stage_id)

        active = self.count_active_opportunities(session, stage.id)
        if active > 0:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": "stage has active opportunities", "active_opportunities": active},
            )

        session.delete(stage)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="stage is still referenced by closed opportunities",
            )

        events.publish(
            events.build_envelope(
                "pipeline.funnel.stage_deleted",
                actor_user.user_id,
                {"funnel_id": str(funnel.id), "stage_id": str(stage_id)},
            )
        )
        session.commit()

    def get_next_funnel_first_stage(self, session: Session, funnel: Funnel) -> tuple[Funnel, FunnelStage] | None:
        if not funnel.auto_create_next or not funnel.is_active:
            return None
        next_funnel = session.scalar(
            select(Funnel)
            .where(Funnel.order_position == funnel.order_position + 1)
            .where(Funnel.is_active.is_(True))
            .order_by(Funnel.created_at)
            .limit(1)
        )
        if next_funnel is None:
            return None
        first_stage = session.scalar(
            select(FunnelStage)
            .where(FunnelStage.funnel_id == next_funnel.id)
            .order_by(FunnelStage.order_position)
            .limit(1)
        )
        if first_stage is None:
            return None
        return next_funnel, first_stage

    def list_gate_rules(self, policy: StagePolicyEvaluator | None = None) -> list[GateRuleRead]:
        resolved = policy or StagePolicyEvaluator.from_settings()
        return [
            GateRuleRead(funnel_id=rule.funnel_id, threshold_position=rule.threshold_position, field=rule.field)
            for rule in resolved.rules()
        ]

    def _load_funnel(self, session: Session, funnel_id: uuid.UUID) -> Funnel:
        funnel = session.scalar(select(Funnel).where(Funnel.id == funnel_id).options(selectinload(Funnel.stages)))
        if funnel is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="funnel not found")
        return funnel

    def _find_funnel_stage(self, funnel: Funnel, stage_id: uuid.UUID) -> FunnelStage:
        for stage in funnel.stages:
            if stage.id == stage_id:
                return stage
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")

    def _sorted_stages(self, stages: list[FunnelStage]) -> list[FunnelStage]:
        return sorted(stages, key=lambda item: (item.order_position, str(item.id)))

    def _to_funnel_read(self, funnel: Funnel, stages: list[FunnelStage]) -> FunnelRead:
        return FunnelRead.model_validate(
            {
                "id": funnel.id,
                "name": funnel.name,
                "order_position": funnel.order_position,
                "is_active": funnel.is_active,
                "auto_create_next": funnel.auto_create_next,
                "created_at": funnel.created_at,
                "updated_at": funnel.updated_at,
                "stages": [FunnelStageRead.model_validate(stage) for stage in stages],
            }
        )


class LostReasonService:
    def create_lost_reason(self, session: Session, dto: LostReasonCreate) -> LostReasonRead:
        name = dto.name.strip()
        if session.scalar(select(LostReason).where(LostReason.name == name)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="lost reason already exists")
        reason = LostReason(name=name, is_active=dto.is_active)
        session.add(reason)
        session.commit()
        return LostReasonRead.model_validate(reason)

    def update_lost_reason(self, session: Session, reason_id: uuid.UUID, dto: LostReasonUpdate) -> LostReasonRead:
        reason = session.get(LostReason, reason_id)
        if reason is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lost reason not found")

        changes = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            duplicate = session.scalar(
                select(LostReason).where(and_(LostReason.name == changes["name"], LostReason.id != reason.id))
            )
            if duplicate is not None:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="lost reason already exists")

        for key, value in changes.items():
            setattr(reason, key, value)
        session.commit()
        return LostReasonRead.model_validate(reason)

    def list_lost_reasons(self, session: Session, include_inactive: bool = False) -> list[LostReasonRead]:
        stmt = select(LostReason)
        if not include_inactive:
            stmt = stmt.where(LostReason.is_active.is_(True))
        return [LostReasonRead.model_validate(item) for item in session.scalars(stmt.order_by(LostReason.name)).all()]


class OpportunityService:
    entity_type = "pipeline.opportunity"

    def __init__(self, policy: StagePolicyEvaluator | None = None) -> None:
        self._policy = policy
        self.funnel_service = FunnelService()

    @property
    def policy(self) -> StagePolicyEvaluator:
        if self._policy is not None:
            return self._policy
        return StagePolicyEvaluator.from_settings()

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        funnel = session.get(Funnel, dto.current_funnel_id)
        if funnel is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="funnel not found")

        stages = self._funnel_stages(session, funnel.id)
        if not stages:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="funnel has no stages")
        if dto.current_stage_id is None:
            stage = stages[0]
        else:
            stage = self._find_stage(stages, dto.current_stage_id)

        policy = self.policy
        if policy.requires_field_at_stage(stage.id, funnel.id, stages) and not _has_value(dto.proposal_value):
            self._reject_missing_field(
                "create",
                policy,
                funnel_id=funnel.id,
                stage_id=stage.id,
                detail=f"{policy.field} is required at this stage",
            )

        opportunity = Opportunity(
            contact_id=dto.contact_id,
            current_funnel_id=funnel.id,
            current_stage_id=stage.id,
            stage_entered_at=utcnow(),
            status="active",
            qualification=dto.qualification,
            temperature=dto.temperature,
            notes=dto.notes,
            proposal_value=_to_decimal(dto.proposal_value),
            created_by=actor_user.user_id,
        )
        session.add(opportunity)
        session.flush()

        self._record_history(session, actor_user, opportunity.id, "created", to_stage_id=stage.id, notes="opportunity created")
        self._publish(actor_user, "pipeline.opportunity.created", opportunity, {"stage_id": str(stage.id)})
        observe_transition("created")
        session.commit()
        return self._to_read_model(session, opportunity.id)

    def list_opportunities(self, session: Session, filters: dict[str, Any]) -> list[OpportunityRead]:
        stmt = select(Opportunity)
        if filters.get("funnel_id"):
            stmt = stmt.where(Opportunity.current_funnel_id == filters["funnel_id"])
        if filters.get("status"):
            stmt = stmt.where(Opportunity.status == filters["status"])
        if filters.get("stage_id"):
            stmt = stmt.where(Opportunity.current_stage_id == filters["stage_id"])
        if filters.get("contact_id"):
            stmt = stmt.where(Opportunity.contact_id == filters["contact_id"])

        opportunities = session.scalars(stmt.order_by(Opportunity.stage_entered_at.desc())).all()
        stage_cache: dict[uuid.UUID, list[FunnelStage]] = {}
        items: list[OpportunityRead] = []
        for opportunity in opportunities:
            if opportunity.current_funnel_id not in stage_cache:
                stage_cache[opportunity.current_funnel_id] = self._funnel_stages(session, opportunity.current_funnel_id)
            items.append(self._to_read(opportunity, stage_cache[opportunity.current_funnel_id]))
        return items

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        return self._to_read_model(session, opportunity_id)

    def update_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        opportunity = self._get_opportunity(session, opportunity_id)
        payload = dto.model_dump(exclude_unset=True)
        payload.pop("row_version", None)
        if not payload:
            return self._to_read_model(session, opportunity.id)

        value_changed = False
        previous_value = opportunity.proposal_value
        if "proposal_value" in payload:
            if payload["proposal_value"] is None:
                policy = self.policy
                stages = self._funnel_stages(session, opportunity.current_funnel_id)
                if policy.is_currently_gated(opportunity.current_stage_id, opportunity.current_funnel_id, stages):
                    self._reject_missing_field(
                        "update",
                        policy,
                        funnel_id=opportunity.current_funnel_id,
                        stage_id=opportunity.current_stage_id,
                        opportunity_id=opportunity.id,
                        detail=f"{policy.field} cannot be cleared while the opportunity is in a gated stage",
                    )
            payload["proposal_value"] = _to_decimal(payload["proposal_value"])
            value_changed = payload["proposal_value"] != previous_value

        payload["updated_at"] = utcnow()
        updated = self._versioned_update(session, opportunity.id, dto.row_version, payload)
        if value_changed:
            self._record_history(
                session,
                actor_user,
                updated.id,
                "proposal_value_changed",
                notes=f"{previous_value} -> {updated.proposal_value}",
            )
        self._publish(actor_user, "pipeline.opportunity.updated", updated, {"row_version": updated.row_version})
        session.commit()
        return self._to_read_model(session, opportunity.id)

    def move_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityMoveStageRequest,
    ) -> OpportunityRead:
        with tracer.start_as_current_span("pipeline.opportunity.move_stage") as span:
            opportunity = self._get_opportunity(session, opportunity_id)
            span.set_attribute("opportunity_id", str(opportunity.id))
            span.set_attribute("funnel_id", str(opportunity.current_funnel_id))
            span.set_attribute("to_stage_id", str(dto.to_stage_id))
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)
            if opportunity.status != "active":
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="only active opportunities can change stage",
                )

            stages = self._funnel_stages(session, opportunity.current_funnel_id)
            target = self._find_stage(stages, dto.to_stage_id)
            if target.id == opportunity.current_stage_id:
                return self._to_read(opportunity, stages)

            policy = self.policy
            effective_value = dto.proposal_value if dto.proposal_value is not None else opportunity.proposal_value
            gated = policy.applies_on_transition_to(target.id, opportunity.current_funnel_id, stages)
            span.set_attribute("gated", gated)
            if gated and not _has_value(effective_value):
                self._reject_missing_field(
                    "move_stage",
                    policy,
                    funnel_id=opportunity.current_funnel_id,
                    stage_id=target.id,
                    opportunity_id=opportunity.id,
                    detail=f"{policy.field} is required to move into this stage",
                )

            previous_value = opportunity.proposal_value
            from_stage_id = opportunity.current_stage_id
            values: dict[str, Any] = {
                "current_stage_id": target.id,
                "stage_entered_at": utcnow(),
                "updated_at": utcnow(),
            }
            if dto.proposal_value is not None:
                values["proposal_value"] = _to_decimal(dto.proposal_value)
            updated = self._versioned_update(session, opportunity.id, dto.row_version, values)

            self._record_history(
                session,
                actor_user,
                updated.id,
                "stage_change",
                from_stage_id=from_stage_id,
                to_stage_id=target.id,
                notes=dto.notes,
            )
            if "proposal_value" in values and values["proposal_value"] != previous_value:
                self._record_history(
                    session,
                    actor_user,
                    updated.id,
                    "proposal_value_changed",
                    notes=f"{previous_value} -> {updated.proposal_value}",
                )
            self._publish(
                actor_user,
                "pipeline.opportunity.stage_changed",
                updated,
                {"from_stage_id": str(from_stage_id), "to_stage_id": str(target.id)},
            )
            logger.info(
                "opportunity.stage_changed",
                extra={
                    "opportunity_id": str(updated.id),
                    "funnel_id": str(updated.current_funnel_id),
                    "from_stage_id": str(from_stage_id),
                    "to_stage_id": str(target.id),
                },
            )
            observe_transition("stage_change")
            session.commit()
            return self._to_read_model(session, opportunity.id)

    def mark_lost(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityMarkLostRequest,
    ) -> OpportunityRead:
        opportunity = self._get_opportunity(session, opportunity_id)
        if opportunity.status != "active":
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="only active opportunities can be marked lost",
            )
        reason = session.get(LostReason, dto.lost_reason_id)
        if reason is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lost reason not found")
        if not reason.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="lost reason is inactive")

        from_stage_id = opportunity.current_stage_id
        now = utcnow()
        updated = self._versioned_update(
            session,
            opportunity.id,
            dto.row_version,
            {
                "status": "lost",
                "lost_at": now,
                "lost_from_stage_id": from_stage_id,
                "lost_reason_id": reason.id,
                "updated_at": now,
            },
        )
        self._record_history(session, actor_user, updated.id, "lost", from_stage_id=from_stage_id, notes=dto.notes)
        self._publish(actor_user, "pipeline.opportunity.lost", updated, {"lost_reason_id": str(reason.id)})
        observe_transition("lost")
        session.commit()
        return self._to_read_model(session, opportunity.id)

    def mark_won(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityMarkWonRequest,
    ) -> OpportunityMarkWonResponse:
        opportunity = self._get_opportunity(session, opportunity_id)
        if opportunity.status != "active":
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="only active opportunities can be marked won",
            )

        funnel = session.get(Funnel, opportunity.current_funnel_id)
        if funnel is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="funnel not found")
        follow_on = self.funnel_service.get_next_funnel_first_stage(session, funnel)

        inherited_value: Decimal | None = None
        if follow_on is not None:
            next_funnel, first_stage = follow_on
            policy = self.policy
            next_stages = self._funnel_stages(session, next_funnel.id)
            if policy.requires_field_at_stage(first_stage.id, next_funnel.id, next_stages):
                if not _has_value(opportunity.proposal_value):
                    self._reject_missing_field(
                        "mark_won",
                        policy,
                        funnel_id=next_funnel.id,
                        stage_id=first_stage.id,
                        opportunity_id=opportunity.id,
                        detail=f"{policy.field} is required by the first stage of the next funnel",
                    )
                inherited_value = opportunity.proposal_value

        from_stage_id = opportunity.current_stage_id
        now = utcnow()
        updated = self._versioned_update(
            session,
            opportunity.id,
            dto.row_version,
            {"status": "won", "converted_at": now, "updated_at": now},
        )
        self._record_history(
            session,
            actor_user,
            updated.id,
            "won",
            from_stage_id=from_stage_id,
            notes=dto.notes or "opportunity won",
        )
        self._publish(actor_user, "pipeline.opportunity.won", updated, {"from_stage_id": str(from_stage_id)})
        observe_transition("won")

        next_opportunity_id: uuid.UUID | None = None
        if follow_on is not None:
            next_funnel, first_stage = follow_on
            next_opportunity = Opportunity(
                contact_id=updated.contact_id,
                current_funnel_id=next_funnel.id,
                current_stage_id=first_stage.id,
                stage_entered_at=now,
                status="active",
                proposal_value=inherited_value,
                created_by=actor_user.user_id,
            )
            session.add(next_opportunity)
            session.flush()
            self._record_history(
                session,
                actor_user,
                next_opportunity.id,
                "created",
                to_stage_id=first_stage.id,
                notes="opportunity created after conversion",
            )
            self._publish(
                actor_user,
                "pipeline.opportunity.created",
                next_opportunity,
                {"stage_id": str(first_stage.id), "source_opportunity_id": str(updated.id)},
            )
            next_opportunity_id = next_opportunity.id

        session.commit()
        return OpportunityMarkWonResponse(
            opportunity=self._to_read_model(session, opportunity.id),
            next_opportunity=self._to_read_model(session, next_opportunity_id) if next_opportunity_id else None,
        )

    def reactivate(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityReactivateRequest,
    ) -> OpportunityRead:
        opportunity = self._get_opportunity(session, opportunity_id)
        if opportunity.status != "lost":
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="only lost opportunities can be reactivated",
            )

        stages = self._funnel_stages(session, opportunity.current_funnel_id)
        if dto.to_stage_id is not None:
            target = self._find_stage(stages, dto.to_stage_id)
        else:
            fallback = [stage for stage in stages if stage.id == opportunity.lost_from_stage_id] or stages
            if not fallback:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="funnel has no stages")
            target = fallback[0]

        policy = self.policy
        effective_value = dto.proposal_value if dto.proposal_value is not None else opportunity.proposal_value
        if policy.applies_on_transition_to(target.id, opportunity.current_funnel_id, stages) and not _has_value(
            effective_value
        ):
            self._reject_missing_field(
                "reactivate",
                policy,
                funnel_id=opportunity.current_funnel_id,
                stage_id=target.id,
                opportunity_id=opportunity.id,
                detail=f"{policy.field} is required to reactivate into this stage",
            )

        now = utcnow()
        values: dict[str, Any] = {
            "status": "active",
            "current_stage_id": target.id,
            "stage_entered_at": now,
            "lost_at": None,
            "lost_from_stage_id": None,
            "lost_reason_id": None,
            "updated_at": now,
        }
        if dto.proposal_value is not None:
            values["proposal_value"] = _to_decimal(dto.proposal_value)
        updated = self._versioned_update(session, opportunity.id, dto.row_version, values)

        self._record_history(
            session,
            actor_user,
            updated.id,
            "reactivated",
            to_stage_id=target.id,
            notes=dto.notes or "opportunity reactivated",
        )
        self._publish(actor_user, "pipeline.opportunity.reactivated", updated, {"to_stage_id": str(target.id)})
        observe_transition("reactivated")
        session.commit()
        return self._to_read_model(session, opportunity.id)

    def get_proposal_requirement(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        to_stage_id: uuid.UUID | None = None,
    ) -> ProposalRequirementRead:
        opportunity = self._get_opportunity(session, opportunity_id)
        stages = self._funnel_stages(session, opportunity.current_funnel_id)
        policy = self.policy

        if to_stage_id is None:
            stage_id = opportunity.current_stage_id
            required = policy.requires_field_at_stage(stage_id, opportunity.current_funnel_id, stages)
        else:
            stage_id = to_stage_id
            required = policy.applies_on_transition_to(stage_id, opportunity.current_funnel_id, stages)

        return ProposalRequirementRead(
            opportunity_id=opportunity.id,
            funnel_id=opportunity.current_funnel_id,
            stage_id=stage_id,
            field=policy.field,
            required=required,
            threshold_position=policy.threshold_for(opportunity.current_funnel_id),
            has_value=_has_value(opportunity.proposal_value),
        )

    def list_history(self, session: Session, opportunity_id: uuid.UUID) -> list[OpportunityHistoryRead]:
        opportunity = self._get_opportunity(session, opportunity_id)
        rows = session.scalars(
            select(OpportunityHistory)
            .where(OpportunityHistory.opportunity_id == opportunity.id)
            .order_by(OpportunityHistory.created_at)
        ).all()
        return [OpportunityHistoryRead.model_validate(row) for row in rows]

    def _get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> Opportunity:
        opportunity = session.scalar(select(Opportunity).where(Opportunity.id == opportunity_id))
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return opportunity

    def _funnel_stages(self, session: Session, funnel_id: uuid.UUID) -> list[FunnelStage]:
        return list(
            session.scalars(
                select(FunnelStage).where(FunnelStage.funnel_id == funnel_id).order_by(FunnelStage.order_position)
            ).all()
        )

    def _find_stage(self, stages: list[FunnelStage], stage_id: uuid.UUID) -> FunnelStage:
        for stage in stages:
            if stage.id == stage_id:
                return stage
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="stage must belong to the opportunity funnel",
        )

    def _versioned_update(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        row_version: int,
        values: dict[str, Any],
    ) -> Opportunity:
        values["row_version"] = Opportunity.row_version + 1
        result = session.execute(
            update(Opportunity)
            .where(and_(Opportunity.id == opportunity_id, Opportunity.row_version == row_version))
            .values(**values)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        updated = session.scalar(select(Opportunity).where(Opportunity.id == opportunity_id))
        if updated is None:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return updated

    def _reject_missing_field(
        self,
        operation: str,
        policy: StagePolicyEvaluator,
        *,
        funnel_id: uuid.UUID,
        stage_id: uuid.UUID,
        detail: str,
        opportunity_id: uuid.UUID | None = None,
    ) -> NoReturn:
        observe_gate_block(operation, policy.field)
        logger.info(
            "opportunity.gate_blocked",
            extra={
                "opportunity_id": str(opportunity_id) if opportunity_id else None,
                "funnel_id": str(funnel_id),
                "to_stage_id": str(stage_id),
                "gated_field": policy.field,
            },
        )
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)

    def _record_history(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        action: str,
        *,
        from_stage_id: uuid.UUID | None = None,
        to_stage_id: uuid.UUID | None = None,
        notes: str | None = None,
    ) -> None:
        session.add(
            OpportunityHistory(
                opportunity_id=opportunity_id,
                action=action,
                from_stage_id=from_stage_id,
                to_stage_id=to_stage_id,
                changed_by=actor_user.user_id,
                notes=notes,
                created_at=utcnow(),
            )
        )

    def _publish(
        self,
        actor_user: ActorUser,
        event_type: str,
        opportunity: Opportunity,
        extra: dict[str, Any],
    ) -> None:
        envelope = events.build_envelope(
            event_type,
            actor_user.user_id,
            {
                "opportunity_id": str(opportunity.id),
                "funnel_id": str(opportunity.current_funnel_id),
                **extra,
            },
        )
        envelope["correlation_id"] = actor_user.correlation_id
        events.publish(envelope)

    def _to_read_model(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = self._get_opportunity(session, opportunity_id)
        return self._to_read(opportunity, self._funnel_stages(session, opportunity.current_funnel_id))

    def _to_read(self, opportunity: Opportunity, stages: list[FunnelStage]) -> OpportunityRead:
        required = self.policy.requires_field_at_stage(
            opportunity.current_stage_id,
            opportunity.current_funnel_id,
            stages,
        )
        current_stage = next((stage for stage in stages if stage.id == opportunity.current_stage_id), None)
        return OpportunityRead.model_validate(opportunity).model_copy(
            update={
                "proposal_value_required": required,
                "sla_status": self._sla_status(current_stage, opportunity.stage_entered_at),
            }
        )

    def _sla_status(self, stage: FunnelStage | None, stage_entered_at: datetime) -> str | None:
        if stage is None or not stage.sla_hours:
            return None
        hours_in_stage = int((utcnow() - _as_aware(stage_entered_at)).total_seconds() // 3600)
        if hours_in_stage > stage.sla_hours:
            return "overdue"
        if hours_in_stage > stage.sla_hours * get_settings().sla_warning_ratio:
            return "warning"
        return "ok"

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.crm.automation.actions import AutomationActionExecutor, describe_action, normalize_action
from app.crm.automation.conditions import AutomationConditions, evaluate_conditions
from app.crm.automation.defaults import build_default_rules
from app.crm.automation.errors import ActionError
from app.crm.automation.queue import EXECUTE_JOB, AutomationQueue
from app.crm.automation.runner import AutomationExecutionRunner, run_jobs_inline
from app.crm.automation.snapshot import DealSnapshot, as_aware, snapshot_from_deal, whole_days_since
from app.crm.automation.triggers import DEAL_EVENT_TRIGGERS, STAGE_TRIGGERS, AutomationContext
from app.crm.models import (
    CRMActivity,
    CRMAutomationLog,
    CRMAutomationRule,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMDealContact,
    CRMDealStageTransition,
    CRMPipeline,
    CRMPipelineStage,
    CRMTag,
    CRMTask,
    CRMUser,
)
from app.crm.schemas import (
    ActivityRead,
    AutomationDryRunResponse,
    AutomationLogRead,
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    AutomationRunResponse,
    CompanyCreate,
    CompanyRead,
    ContactCreate,
    ContactRead,
    DealBulkMoveStageResponse,
    DealBulkUpdateOwnerResponse,
    DealContactLinkRequest,
    DealContactRead,
    DealCreate,
    DealHistoryRead,
    DealRead,
    DealStageTransitionRead,
    DealUpdate,
    PipelineCreate,
    PipelineMetricsRead,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageMetrics,
    PipelineStageRead,
    PipelineStageUpdate,
    PipelineUpdate,
    TagCreate,
    TagRead,
    TaskRead,
    UserCreate,
    UserRead,
)
from app.notifications.client import StubEmailClient


logger = logging.getLogger("app.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    workspace_ids: list[uuid.UUID]
    current_workspace_id: uuid.UUID | None
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def _resolve_workspace(actor_user: ActorUser, requested: uuid.UUID | None) -> uuid.UUID:
    workspace_id = requested or actor_user.current_workspace_id
    if workspace_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="workspace_id is required")
    if actor_user.workspace_ids and workspace_id not in actor_user.workspace_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Workspace not allowed")
    return workspace_id


def _can_access(actor_user: ActorUser, workspace_id: uuid.UUID) -> bool:
    if actor_user.workspace_ids:
        return workspace_id in actor_user.workspace_ids
    if actor_user.current_workspace_id is not None:
        return workspace_id == actor_user.current_workspace_id
    return True


def _visible_workspaces(actor_user: ActorUser) -> list[uuid.UUID]:
    if actor_user.workspace_ids:
        return list(actor_user.workspace_ids)
    if actor_user.current_workspace_id is not None:
        return [actor_user.current_workspace_id]
    return []


def _get_pipeline(session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> CRMPipeline:
    pipeline = session.scalar(
        select(CRMPipeline).where(and_(CRMPipeline.id == pipeline_id, CRMPipeline.deleted_at.is_(None)))
    )
    if pipeline is None or not _can_access(actor_user, pipeline.workspace_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pipeline not found")
    return pipeline


def _get_deal(session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> CRMDeal:
    deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.deleted_at.is_(None))))
    if deal is None or not _can_access(actor_user, deal.workspace_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deal not found")
    return deal


def _to_stage_read(stage: CRMPipelineStage) -> PipelineStageRead:
    return PipelineStageRead.model_validate(stage)


def _to_pipeline_read(pipeline: CRMPipeline) -> PipelineRead:
    stages = sorted(
        (stage for stage in pipeline.stages if stage.deleted_at is None),
        key=lambda stage: stage.position,
    )
    return PipelineRead(
        id=pipeline.id,
        workspace_id=pipeline.workspace_id,
        name=pipeline.name,
        description=pipeline.description,
        is_default=pipeline.is_default,
        created_at=pipeline.created_at,
        updated_at=pipeline.updated_at,
        row_version=pipeline.row_version,
        stages=[_to_stage_read(stage) for stage in stages],
    )


def _to_deal_read(deal: CRMDeal) -> DealRead:
    return DealRead(
        id=deal.id,
        workspace_id=deal.workspace_id,
        pipeline_id=deal.pipeline_id,
        stage_id=deal.stage_id,
        title=deal.title,
        value=deal.value,
        currency=deal.currency,
        probability=deal.probability,
        status=deal.status,
        owner_id=deal.owner_id,
        company_id=deal.company_id,
        expected_close_date=deal.expected_close_date,
        stage_entered_at=deal.stage_entered_at,
        days_in_stage=deal.days_in_stage,
        total_days_open=deal.total_days_open,
        won_reason=deal.won_reason,
        lost_reason=deal.lost_reason,
        closed_at=deal.closed_at,
        created_at=deal.created_at,
        updated_at=deal.updated_at,
        deleted_at=deal.deleted_at,
        row_version=deal.row_version,
        contacts=[DealContactRead.model_validate(link) for link in deal.contact_links],
        tags=sorted(link.tag.name for link in deal.tag_links),
    )


def _to_rule_read(rule: CRMAutomationRule) -> AutomationRuleRead:
    return AutomationRuleRead(
        id=rule.id,
        pipeline_id=rule.pipeline_id,
        name=rule.name,
        description=rule.description,
        trigger=rule.trigger,
        trigger_stage_id=rule.trigger_stage_id,
        conditions=dict(rule.conditions_json or {}),
        actions=list(rule.actions_json or []),
        is_active=rule.is_active,
        delay_minutes=rule.delay_minutes,
        last_triggered_at=rule.last_triggered_at,
        trigger_count=rule.trigger_count,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def _to_log_read(log: CRMAutomationLog) -> AutomationLogRead:
    return AutomationLogRead(
        id=log.id,
        automation_id=log.automation_id,
        deal_id=log.deal_id,
        trigger=log.trigger,
        status=log.status,
        actions=list(log.actions_json or []),
        error=log.error,
        correlation_id=log.correlation_id,
        triggered_at=log.triggered_at,
        executed_at=log.executed_at,
        completed_at=log.completed_at,
    )


def _serialize_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _money(value: Any) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"))


def _publish_deal_event(
    event_type: str,
    actor_user: ActorUser,
    snapshot: DealSnapshot,
    *,
    previous_value: Any = None,
    new_value: Any = None,
) -> None:
    events.publish(
        {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "occurred_at": utcnow().isoformat(),
            "actor_user_id": actor_user.user_id,
            "workspace_id": str(snapshot.workspace_id),
            "version": 1,
            "correlation_id": actor_user.correlation_id,
            "payload": {
                "deal_id": str(snapshot.id),
                "trigger": DEAL_EVENT_TRIGGERS[event_type],
                "previous_value": _serialize_value(previous_value),
                "new_value": _serialize_value(new_value),
                "user_id": actor_user.user_id,
                "deal": snapshot.model_dump(mode="json"),
            },
        }
    )


def _add_deal_activity(
    session: Session,
    deal: CRMDeal,
    activity_type: str,
    title: str,
    description: str | None = None,
) -> None:
    session.add(
        CRMActivity(
            workspace_id=deal.workspace_id,
            deal_id=deal.id,
            activity_type=activity_type,
            title=title,
            description=description,
            user_id=deal.owner_id,
        )
    )


class PipelineService:
    entity_type = "crm.pipeline"

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        workspace_id = _resolve_workspace(actor_user, dto.workspace_id)
        positions = [stage.position for stage in dto.stages]
        names = [stage.name for stage in dto.stages]
        if len(set(positions)) != len(positions) or len(set(names)) != len(names):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Stage names and positions must be unique")

        pipeline = CRMPipeline(
            workspace_id=workspace_id,
            name=dto.name,
            description=dto.description,
            is_default=dto.is_default,
        )
        session.add(pipeline)
        session.flush()
        for stage_dto in dto.stages:
            session.add(
                CRMPipelineStage(
                    pipeline_id=pipeline.id,
                    name=stage_dto.name,
                    position=stage_dto.position,
                    default_probability=stage_dto.default_probability,
                    is_active=stage_dto.is_active,
                )
            )

        default_rule_count = 0
        if dto.with_default_automations:
            rules = build_default_rules(pipeline.id)
            session.add_all(rules)
            default_rule_count = len(rules)

        session.flush()
        session.refresh(pipeline)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="create",
            before=None,
            after={
                "name": pipeline.name,
                "stage_count": len(dto.stages),
                "default_automation_count": default_rule_count,
            },
            correlation_id=actor_user.correlation_id,
            workspace_id=str(workspace_id),
        )
        session.commit()
        session.refresh(pipeline)
        return _to_pipeline_read(pipeline)

    def get_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> PipelineRead:
        return _to_pipeline_read(_get_pipeline(session, actor_user, pipeline_id))

    def list_stages(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> list[PipelineStageRead]:
        return self.get_pipeline(session, actor_user, pipeline_id).stages

    def add_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        pipeline = _get_pipeline(session, actor_user, pipeline_id)
        stage = CRMPipelineStage(
            pipeline_id=pipeline.id,
            name=dto.name,
            position=dto.position,
            default_probability=dto.default_probability,
            is_active=dto.is_active,
        )
        session.add(stage)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Stage name or position already exists in pipeline",
            ) from exc

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.pipeline_stage",
            entity_id=str(stage.id),
            action="create",
            before=None,
            after={"pipeline_id": str(pipeline.id), "name": stage.name, "position": stage.position},
            correlation_id=actor_user.correlation_id,
            workspace_id=str(pipeline.workspace_id),
        )
        session.commit()
        session.refresh(stage)
        return _to_stage_read(stage)


    def update_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineUpdate,
    ) -> PipelineRead:
        pipeline = _get_pipeline(session, actor_user, pipeline_id)
        if dto.row_version is not None and dto.row_version != pipeline.row_version:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        changes = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        before = {"name": pipeline.name, "description": pipeline.description, "is_default": pipeline.is_default}
        for required in ("name", "is_default"):
            if changes.get(required) is None:
                changes.pop(required, None)
        changed = {key: value for key, value in changes.items() if getattr(pipeline, key) != value}
        if not changed:
            return _to_pipeline_read(pipeline)

        for field_name, value in changed.items():
            setattr(pipeline, field_name, value)
        pipeline.row_version = pipeline.row_version + 1
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="update",
            before=before,
            after={key: changed[key] for key in sorted(changed)},
            correlation_id=actor_user.correlation_id,
            workspace_id=str(pipeline.workspace_id),
        )
        session.commit()
        session.refresh(pipeline)
        return _to_pipeline_read(pipeline)

    def delete_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> None:
        """Soft-delete the pipeline and switch off its automation rules."""
        pipeline = _get_pipeline(session, actor_user, pipeline_id)
        rules = session.scalars(
            select(CRMAutomationRule).where(
                and_(
                    CRMAutomationRule.pipeline_id == pipeline.id,
                    CRMAutomationRule.is_active.is_(True),
                    CRMAutomationRule.deleted_at.is_(None),
                )
            )
        ).all()
        for rule in rules:
            rule.is_active = False
        pipeline.deleted_at = utcnow()
        pipeline.row_version = pipeline.row_version + 1
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="delete",
            before={"name": pipeline.name},
            after={"deactivated_rule_ids": [str(rule.id) for rule in rules]},
            correlation_id=actor_user.correlation_id,
            workspace_id=str(pipeline.workspace_id),
        )
        session.commit()

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID,
        dto: PipelineStageUpdate,
    ) -> PipelineStageRead:
        pipeline = _get_pipeline(session, actor_user, pipeline_id)
        stage = self._get_stage(session, pipeline, stage_id)
        before = {"name": stage.name, "default_probability": stage.default_probability, "is_active": stage.is_active}
        changes = dto.model_dump(exclude_unset=True)
        for required in ("name", "is_active"):
            if changes.get(required) is None:
                changes.pop(required, None)
        for field_name, value in changes.items():
            setattr(stage, field_name, value)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Stage name already exists in pipeline",
            ) from exc

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.pipeline_stage",
            entity_id=str(stage.id),
            action="update",
            before=before,
            after={key: changes[key] for key in sorted(changes)},
            correlation_id=actor_user.correlation_id,
            workspace_id=str(pipeline.workspace_id),
        )
        session.commit()
        session.refresh(stage)
        return _to_stage_read(stage)

    def delete_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID,
    ) -> None:
        """Remove an empty stage and close the gap in positions.

        Rules triggered by entering or leaving the stage lose their trigger
        stage and are switched off; they stay inactive until a new stage is set.
        """
        pipeline = _get_pipeline(session, actor_user, pipeline_id)
        stage = self._get_stage(session, pipeline, stage_id)
        deal_count = session.scalar(select(func.count()).select_from(CRMDeal).where(CRMDeal.stage_id == stage.id))
        if deal_count:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Cannot delete stage with deals. Move or delete deals first.",
            )

        rules = session.scalars(
            select(CRMAutomationRule).where(
                and_(CRMAutomationRule.trigger_stage_id == stage.id, CRMAutomationRule.deleted_at.is_(None))
            )
        ).all()
        for rule in rules:
            rule.trigger_stage_id = None
            rule.is_active = False
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type="crm.automation_rule",
                entity_id=str(rule.id),
                action="deactivate",
                before={"trigger_stage_id": str(stage.id)},
                after={"is_active": False, "reason": "trigger_stage_deleted"},
                correlation_id=actor_user.correlation_id,
                workspace_id=str(pipeline.workspace_id),
            )

        removed_name = stage.name
        removed_position = stage.position
        session.delete(stage)
        session.flush()
        later_stages = session.scalars(
            select(CRMPipelineStage)
            .where(and_(CRMPipelineStage.pipeline_id == pipeline.id, CRMPipelineStage.position > removed_position))
            .order_by(CRMPipelineStage.position.asc())
        ).all()
        # Shift one at a time so (pipeline_id, position) stays unique.
        for later in later_stages:
            later.position = later.position - 1
            session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.pipeline_stage",
            entity_id=str(stage_id),
            action="delete",
            before={"name": removed_name, "position": removed_position},
            after={"deactivated_rule_ids": [str(rule.id) for rule in rules]},
            correlation_id=actor_user.correlation_id,
            workspace_id=str(pipeline.workspace_id),
        )
        session.commit()

    def reorder_stages(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        stage_ids: list[uuid.UUID],
    ) -> list[PipelineStageRead]:
        pipeline = _get_pipeline(session, actor_user, pipeline_id)
        stages = {
            stage.id: stage
            for stage in session.scalars(
                select(CRMPipelineStage).where(
                    and_(CRMPipelineStage.pipeline_id == pipeline.id, CRMPipelineStage.deleted_at.is_(None))
                )
            ).all()
        }
        if len(stage_ids) != len(set(stage_ids)) or set(stage_ids) != set(stages):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Stage order must list every stage of the pipeline once",
            )

        before = {str(stage.id): stage.position for stage in stages.values()}
        # Park on negative positions first so no two stages collide mid-update.
        for index, stage_id in enumerate(stage_ids):
            stages[stage_id].position = -(index + 1)
        session.flush()
        for index, stage_id in enumerate(stage_ids):
            stages[stage_id].position = index
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="reorder_stages",
            before=before,
            after={str(stage_id): index for index, stage_id in enumerate(stage_ids)},
            correlation_id=actor_user.correlation_id,
            workspace_id=str(pipeline.workspace_id),
        )
        session.commit()
        return self.list_stages(session, actor_user, pipeline.id)

    def get_pipeline_metrics(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        *,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
    ) -> PipelineMetricsRead:
        """Deal counts by status plus open-deal totals per stage."""
        pipeline = _get_pipeline(session, actor_user, pipeline_id)
        filters = [CRMDeal.pipeline_id == pipeline.id, CRMDeal.deleted_at.is_(None)]
        if created_from is not None:
            filters.append(CRMDeal.created_at >= created_from)
        if created_to is not None:
            filters.append(CRMDeal.created_at <= created_to)

        by_status = {
            deal_status: count
            for deal_status, count in session.execute(
                select(CRMDeal.status, func.count()).where(*filters).group_by(CRMDeal.status)
            ).all()
        }
        total = sum(by_status.values())
        won = by_status.get("WON", 0)
        avg_won = session.scalar(select(func.avg(CRMDeal.value)).where(*filters, CRMDeal.status == "WON"))
        open_by_stage = {
            stage_id: (count, value)
            for stage_id, count, value in session.execute(
                select(CRMDeal.stage_id, func.count(), func.sum(CRMDeal.value))
                .where(*filters, CRMDeal.status == "OPEN")
                .group_by(CRMDeal.stage_id)
            ).all()
        }

        stages = sorted(
            (stage for stage in pipeline.stages if stage.deleted_at is None),
            key=lambda stage: stage.position,
        )
        return PipelineMetricsRead(
            pipeline_id=pipeline.id,
            total=total,
            won=won,
            lost=by_status.get("LOST", 0),
            open=by_status.get("OPEN", 0),
            conversion_rate=round(won / total * 100, 2) if total else 0.0,
            avg_deal_size=_money(avg_won),
            stages=[
                PipelineStageMetrics(
                    id=stage.id,
                    name=stage.name,
                    count=open_by_stage.get(stage.id, (0, None))[0],
                    value=_money(open_by_stage.get(stage.id, (0, None))[1]),
                    probability=stage.default_probability,
                )
                for stage in stages
            ],
        )

    def _get_stage(self, session: Session, pipeline: CRMPipeline, stage_id: uuid.UUID) -> CRMPipelineStage:
        stage = session.get(CRMPipelineStage, stage_id)
        if stage is None or stage.pipeline_id != pipeline.id or stage.deleted_at is not None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stage not found in pipeline")
        return stage


class DirectoryService:
    """Companies, contacts, users and tags that deals and automations refer to."""

    def create_company(self, session: Session, actor_user: ActorUser, dto: CompanyCreate) -> CompanyRead:
        company = CRMCompany(workspace_id=_resolve_workspace(actor_user, None), name=dto.name, domain=dto.domain)
        session.add(company)
        session.commit()
        session.refresh(company)
        return CompanyRead.model_validate(company)

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        workspace_id = _resolve_workspace(actor_user, None)
        if dto.company_id is not None:
            company = session.get(CRMCompany, dto.company_id)
            if company is None or company.workspace_id != workspace_id or company.deleted_at is not None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Company not found")
        contact = CRMContact(
            workspace_id=workspace_id,
            company_id=dto.company_id,
            first_name=dto.first_name,
            last_name=dto.last_name,
            email=dto.email,
            phone=dto.phone,
        )
        session.add(contact)
        session.commit()
        session.refresh(contact)
        return ContactRead.model_validate(contact)

    def create_user(self, session: Session, actor_user: ActorUser, dto: UserCreate) -> UserRead:
        user = CRMUser(
            workspace_id=_resolve_workspace(actor_user, None),
            first_name=dto.first_name,
            last_name=dto.last_name,
            email=dto.email,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return UserRead.model_validate(user)

    def create_tag(self, session: Session, actor_user: ActorUser, dto: TagCreate) -> TagRead:
        tag = CRMTag(workspace_id=_resolve_workspace(actor_user, None), name=dto.name, color=dto.color)
        session.add(tag)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f'Tag "{dto.name}" already exists') from exc
        session.refresh(tag)
        return TagRead.model_validate(tag)

    def list_tags(self, session: Session, actor_user: ActorUser) -> list[TagRead]:
        workspace_id = _resolve_workspace(actor_user, None)
        tags = session.scalars(
            select(CRMTag).where(CRMTag.workspace_id == workspace_id).order_by(CRMTag.name.asc())
        ).all()
        return [TagRead.model_validate(tag) for tag in tags]


class DealService:
    """Deal lifecycle. Every mutation commits first, then publishes its ``crm.deal.*`` events."""

    entity_type = "crm.deal"

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        pipeline = _get_pipeline(session, actor_user, dto.pipeline_id)
        stage = self._resolve_stage(session, pipeline, dto.stage_id)
        self._validate_references(session, pipeline.workspace_id, owner_id=dto.owner_id, company_id=dto.company_id)

        contact_ids = list(dict.fromkeys(dto.contact_ids))
        for contact_id in contact_ids:
            self._require_contact(session, pipeline.workspace_id, contact_id)

        probability = dto.probability
        if probability is None:
            probability = stage.default_probability or 0

        now = utcnow()
        deal = CRMDeal(
            workspace_id=pipeline.workspace_id,
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            title=dto.title,
            value=dto.value,
            currency=dto.currency,
            probability=probability,
            status="OPEN",
            owner_id=dto.owner_id,
            company_id=dto.company_id,
            expected_close_date=dto.expected_close_date,
            stage_entered_at=now,
            created_by_id=actor_user.user_id,
        )
        session.add(deal)
        session.flush()
        for index, contact_id in enumerate(contact_ids):
            session.add(CRMDealContact(deal_id=deal.id, contact_id=contact_id, is_primary=index == 0))

        _add_deal_activity(
            session,
            deal,
            "DEAL_CREATED",
            f"Deal created: {deal.title}",
            f"Deal created in {stage.name} stage",
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="create",
            before=None,
            after={"title": deal.title, "pipeline_id": str(pipeline.id), "stage_id": str(stage.id)},
            correlation_id=actor_user.correlation_id,
            workspace_id=str(deal.workspace_id),
        )
        session.commit()
        session.refresh(deal)

        _publish_deal_event("crm.deal.created", actor_user, snapshot_from_deal(deal))
        return self._read(session, deal.id)

    def list_deals(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        pipeline_id: uuid.UUID | None = None,
        stage_id: uuid.UUID | None = None,
        status_filter: str | None = None,
        owner_id: uuid.UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DealRead]:
        stmt: Select[tuple[CRMDeal]] = select(CRMDeal).where(CRMDeal.deleted_at.is_(None))
        workspaces = _visible_workspaces(actor_user)
        if workspaces:
            stmt = stmt.where(CRMDeal.workspace_id.in_(workspaces))
        if pipeline_id is not None:
            stmt = stmt.where(CRMDeal.pipeline_id == pipeline_id)
        if stage_id is not None:
            stmt = stmt.where(CRMDeal.stage_id == stage_id)
        if status_filter:
            stmt = stmt.where(CRMDeal.status == status_filter.upper())
        if owner_id is not None:
            stmt = stmt.where(CRMDeal.owner_id == owner_id)

        deals = session.scalars(
            stmt.order_by(CRMDeal.created_at.desc(), CRMDeal.id.asc()).offset(offset).limit(limit)
        ).all()
        return [_to_deal_read(deal) for deal in deals]

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        deal = _get_deal(session, actor_user, deal_id)
        self._refresh_durations(session, deal)
        return _to_deal_read(deal)

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        deal = _get_deal(session, actor_user, deal_id)
        if dto.row_version is not None and dto.row_version != deal.row_version:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        changes = dto.model_dump(exclude_unset=True)
        changes.pop("row_version", None)
        self._validate_references(
            session,
            deal.workspace_id,
            owner_id=changes.get("owner_id"),
            company_id=changes.get("company_id"),
        )

        previous_status = deal.status
        previous_value = deal.value
        previous_owner_id = deal.owner_id

        new_status = changes.pop("status", None)
        status_changed = new_status is not None and new_status != previous_status
        if status_changed:
            if new_status == "WON" and not changes.get("won_reason"):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Won reason is required")
            if new_status == "LOST" and not changes.get("lost_reason"):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Lost reason is required")
            deal.status = new_status
            deal.closed_at = utcnow() if new_status in {"WON", "LOST"} else None

        changed_fields: list[str] = ["status"] if status_changed else []
        for field_name, value in changes.items():
            if getattr(deal, field_name) != value:
                setattr(deal, field_name, value)
                changed_fields.append(field_name)

        if not changed_fields:
            return _to_deal_read(deal)

        deal.row_version = deal.row_version + 1
        if status_changed:
            _add_deal_activity(
                session,
                deal,
                "DEAL_UPDATED",
                f"Deal status changed to {new_status}",
                changes.get("won_reason") or changes.get("lost_reason"),
            )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="update",
            before={"status": previous_status, "value": str(previous_value)},
            after={"fields": sorted(changed_fields), "status": deal.status},
            correlation_id=actor_user.correlation_id,
            workspace_id=str(deal.workspace_id),
        )
        session.commit()
        session.refresh(deal)

        snapshot = snapshot_from_deal(deal)
        status_events = {"WON": "crm.deal.won", "LOST": "crm.deal.lost", "STALLED": "crm.deal.stalled"}
        if status_changed and new_status in status_events:
            _publish_deal_event(
                status_events[new_status],
                actor_user,
                snapshot,
                previous_value=previous_status,
                new_value=new_status,
            )
        if "value" in changed_fields:
            _publish_deal_event(
                "crm.deal.value_changed",
                actor_user,
                snapshot,
                previous_value=previous_value,
                new_value=deal.value,
            )
        if "owner_id" in changed_fields and deal.owner_id is not None:
            _publish_deal_event(
                "crm.deal.owner_changed",
                actor_user,
                snapshot,
                previous_value=previous_owner_id,
                new_value=deal.owner_id,
            )
        _publish_deal_event("crm.deal.updated", actor_user, snapshot, new_value=sorted(changed_fields))
        return self._read(session, deal.id)

    def move_to_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        stage_id: uuid.UUID,
        *,
        reason: str | None = None,
    ) -> DealRead:
        deal = _get_deal(session, actor_user, deal_id)
        stage = session.get(CRMPipelineStage, stage_id)
        if stage is None or stage.pipeline_id != deal.pipeline_id or stage.deleted_at is not None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stage not found in deal pipeline")
        if deal.stage_id == stage.id:
            return _to_deal_read(deal)

        before_move = snapshot_from_deal(deal)
        previous_stage_id = deal.stage_id
        now = utcnow()
        minutes_in_stage = max(0, int((now - as_aware(deal.stage_entered_at)).total_seconds() // 60))

        session.add(
            CRMDealStageTransition(
                deal_id=deal.id,
                from_stage_id=previous_stage_id,
                to_stage_id=stage.id,
                user_id=actor_user.user_id,
                time_in_stage_minutes=minutes_in_stage,
            )
        )
        deal.stage = stage
        deal.stage_id = stage.id
        deal.stage_entered_at = now
        deal.days_in_stage = 0
        if stage.default_probability is not None:
            deal.probability = stage.default_probability
        deal.row_version = deal.row_version + 1
        _add_deal_activity(session, deal, "STAGE_CHANGED", f"Deal moved to {stage.name}", reason)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="move_stage",
            before={"stage_id": str(previous_stage_id)},
            after={"stage_id": str(stage.id), "time_in_stage_minutes": minutes_in_stage},
            correlation_id=actor_user.correlation_id,
            workspace_id=str(deal.workspace_id),
        )
        session.commit()
        session.refresh(deal)

        _publish_deal_event(
            "crm.deal.stage_exited",
            actor_user,
            before_move,
            previous_value=previous_stage_id,
            new_value=stage.id,
        )
        _publish_deal_event(
            "crm.deal.stage_entered",
            actor_user,
            snapshot_from_deal(deal),
            previous_value=previous_stage_id,
            new_value=stage.id,
        )
        return self._read(session, deal.id)

    def bulk_move_to_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_ids: list[uuid.UUID],
        stage_id: uuid.UUID,
    ) -> DealBulkMoveStageResponse:
        response = DealBulkMoveStageResponse()
        # One move per deal so each gets its own transition row and events.
        for deal_id in deal_ids:
            try:
                self.move_to_stage(session, actor_user, deal_id, stage_id)
            except HTTPException as exc:
                session.rollback()
                response.failed.append({"deal_id": str(deal_id), "error": exc.detail})
                continue
            response.moved.append(deal_id)
        return response

    def bulk_update_owner(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_ids: list[uuid.UUID],
        owner_id: uuid.UUID,
    ) -> DealBulkUpdateOwnerResponse:
        response = DealBulkUpdateOwnerResponse()
        # Per-deal updates so each reassignment publishes its own owner_changed event.
        for deal_id in deal_ids:
            try:
                previous_owner_id = _get_deal(session, actor_user, deal_id).owner_id
                if previous_owner_id != owner_id:
                    self.update_deal(session, actor_user, deal_id, DealUpdate(owner_id=owner_id))
            except HTTPException as exc:
                session.rollback()
                response.failed.append({"deal_id": str(deal_id), "error": exc.detail})
                continue

            if previous_owner_id != owner_id:
                deal = _get_deal(session, actor_user, deal_id)
                owner = session.get(CRMUser, owner_id)
                _add_deal_activity(
                    session,
                    deal,
                    "OWNER_CHANGED",
                    f"Deal assigned to {owner.first_name} {owner.last_name}".strip() if owner else "Deal reassigned",
                )
                session.commit()
            response.updated.append(deal_id)
        return response

    def soft_delete_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> None:
        deal = _get_deal(session, actor_user, deal_id)
        deal.deleted_at = utcnow()
        deal.row_version = deal.row_version + 1
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="delete",
            before={"title": deal.title},
            after=None,
            correlation_id=actor_user.correlation_id,
            workspace_id=str(deal.workspace_id),
        )
        session.commit()

    def get_deal_history(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealHistoryRead:
        deal = _get_deal(session, actor_user, deal_id)
        transitions = session.scalars(
            select(CRMDealStageTransition)
            .where(CRMDealStageTransition.deal_id == deal.id)
            .order_by(CRMDealStageTransition.created_at.desc())
        ).all()
        return DealHistoryRead(
            deal_id=deal.id,
            transitions=[DealStageTransitionRead.model_validate(item) for item in transitions],
            activities=self.list_activities(session, actor_user, deal.id),
        )

    def add_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealContactLinkRequest,
    ) -> DealRead:
        deal = _get_deal(session, actor_user, deal_id)
        self._require_contact(session, deal.workspace_id, dto.contact_id)
        existing = next((link for link in deal.contact_links if link.contact_id == dto.contact_id), None)
        if existing is not None:
            return _to_deal_read(deal)

        is_primary = dto.is_primary if dto.is_primary is not None else not deal.contact_links
        if is_primary:
            for link in deal.contact_links:
                link.is_primary = False
        deal.contact_links.append(
            CRMDealContact(deal_id=deal.id, contact_id=dto.contact_id, role=dto.role, is_primary=is_primary)
        )
        session.commit()
        return self._read(session, deal.id)

    def remove_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> DealRead:
        deal = _get_deal(session, actor_user, deal_id)
        link = next((item for item in deal.contact_links if item.contact_id == contact_id), None)
        if link is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact is not linked to deal")

        deal.contact_links.remove(link)
        if link.is_primary and deal.contact_links:
            deal.contact_links[0].is_primary = True
        session.commit()
        return self._read(session, deal.id)

    def list_tasks(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[TaskRead]:
        deal = _get_deal(session, actor_user, deal_id)
        tasks = session.scalars(
            select(CRMTask).where(CRMTask.deal_id == deal.id).order_by(CRMTask.created_at.asc(), CRMTask.id.asc())
        ).all()
        return [TaskRead.model_validate(task) for task in tasks]

    def list_activities(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[ActivityRead]:
        deal = _get_deal(session, actor_user, deal_id)
        activities = session.scalars(
            select(CRMActivity)
            .where(CRMActivity.deal_id == deal.id)
            .order_by(CRMActivity.created_at.desc(), CRMActivity.id.asc())
        ).all()
        return [ActivityRead.model_validate(activity) for activity in activities]

    def _read(self, session: Session, deal_id: uuid.UUID) -> DealRead:
        # Automations triggered by the events above may have changed the deal.
        deal = session.get(CRMDeal, deal_id, populate_existing=True)
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deal not found")
        return _to_deal_read(deal)

    def _refresh_durations(self, session: Session, deal: CRMDeal) -> None:
        days_in_stage = whole_days_since(deal.stage_entered_at)
        total_days_open = whole_days_since(deal.created_at)
        if days_in_stage == deal.days_in_stage and total_days_open == deal.total_days_open:
            return
        deal.days_in_stage = days_in_stage
        deal.total_days_open = total_days_open
        session.commit()
        session.refresh(deal)

    def _resolve_stage(
        self,
        session: Session,
        pipeline: CRMPipeline,
        stage_id: uuid.UUID | None,
    ) -> CRMPipelineStage:
        stmt = select(CRMPipelineStage).where(
            and_(CRMPipelineStage.pipeline_id == pipeline.id, CRMPipelineStage.deleted_at.is_(None))
        )
        if stage_id is not None:
            stage = session.scalar(stmt.where(CRMPipelineStage.id == stage_id))
        else:
            stage = session.scalar(
                stmt.where(CRMPipelineStage.is_active.is_(True)).order_by(CRMPipelineStage.position.asc()).limit(1)
            )
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stage not found in pipeline")
        return stage

    def _validate_references(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        *,
        owner_id: uuid.UUID | None,
        company_id: uuid.UUID | None,
    ) -> None:
        if owner_id is not None:
            owner = session.get(CRMUser, owner_id)
            if owner is None or owner.workspace_id != workspace_id:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Owner not found")
        if company_id is not None:
            company = session.get(CRMCompany, company_id)
            if company is None or company.workspace_id != workspace_id or company.deleted_at is not None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Company not found")

    def _require_contact(self, session: Session, workspace_id: uuid.UUID, contact_id: uuid.UUID) -> CRMContact:
        contact = session.get(CRMContact, contact_id)
        if contact is None or contact.workspace_id != workspace_id or contact.deleted_at is not None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        return contact


class AutomationRuleService:
    entity_type = "crm.automation_rule"

    def __init__(self) -> None:
        # Dry runs never deliver mail, so a stub client is enough here.
        self.preview_executor = AutomationActionExecutor(StubEmailClient())

    def list_rules(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> list[AutomationRuleRead]:
        pipeline = _get_pipeline(session, actor_user, pipeline_id)
        rules = session.scalars(
            select(CRMAutomationRule)
            .where(and_(CRMAutomationRule.pipeline_id == pipeline.id, CRMAutomationRule.deleted_at.is_(None)))
            .order_by(CRMAutomationRule.created_at.asc(), CRMAutomationRule.id.asc())
        ).all()
        return [_to_rule_read(rule) for rule in rules]

    def get_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> AutomationRuleRead:
        return _to_rule_read(self._get_rule(session, actor_user, rule_id))

    def create_rule(self, session: Session, actor_user: ActorUser, dto: AutomationRuleCreate) -> AutomationRuleRead:
        pipeline = _get_pipeline(session, actor_user, dto.pipeline_id)
        trigger_stage_id = dto.trigger_stage_id if dto.trigger in STAGE_TRIGGERS else None
        self._validate_trigger_stage(session, pipeline.id, trigger_stage_id)

        rule = CRMAutomationRule(
            pipeline_id=pipeline.id,
            name=dto.name,
            description=dto.description,
            trigger=dto.trigger,
            trigger_stage_id=trigger_stage_id,
            conditions_json=(dto.conditions or AutomationConditions()).to_storage(),
            actions_json=list(dto.actions),
            is_active=dto.is_active,
            delay_minutes=dto.delay_minutes,
        )
        session.add(rule)
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="create",
            before=None,
            after=_to_rule_read(rule).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            workspace_id=str(pipeline.workspace_id),
        )
        session.commit()
        session.refresh(rule)
        return _to_rule_read(rule)

    def update_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        dto: AutomationRuleUpdate,
    ) -> AutomationRuleRead:
        rule = self._get_rule(session, actor_user, rule_id)
        before = _to_rule_read(rule).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)
        changes.pop("action_config", None)

        trigger = changes.get("trigger") or rule.trigger
        trigger_stage_id = changes["trigger_stage_id"] if "trigger_stage_id" in changes else rule.trigger_stage_id
        if trigger in STAGE_TRIGGERS:
            if trigger_stage_id is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="trigger_stage_id is required for STAGE_ENTER and STAGE_EXIT triggers",
                )
            self._validate_trigger_stage(session, rule.pipeline_id, trigger_stage_id)
        else:
            trigger_stage_id = None

        if "conditions" in changes:
            rule.conditions_json = (dto.conditions or AutomationConditions()).to_storage()
        if "actions" in changes and dto.actions is not None:
            rule.actions_json = list(dto.actions)
        for field_name in ("name", "trigger", "is_active", "delay_minutes"):
            if changes.get(field_name) is not None:
                setattr(rule, field_name, changes[field_name])
        if "description" in changes:
            rule.description = changes["description"]
        rule.trigger_stage_id = trigger_stage_id

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="update",
            before=before,
            after=_to_rule_read(rule).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            workspace_id=str(rule.pipeline.workspace_id),
        )
        session.commit()
        session.refresh(rule)
        return _to_rule_read(rule)

    def delete_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> None:
        rule = self._get_rule(session, actor_user, rule_id)
        rule.deleted_at = utcnow()
        rule.is_active = False
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="delete",
            before={"name": rule.name},
            after=None,
            correlation_id=actor_user.correlation_id,
            workspace_id=str(rule.pipeline.workspace_id),
        )
        session.commit()

    def create_default_automations(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
    ) -> list[AutomationRuleRead]:
        pipeline = _get_pipeline(session, actor_user, pipeline_id)
        rules = build_default_rules(pipeline.id)
        session.add_all(rules)
        session.flush()
        for rule in rules:
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(rule.id),
                action="create_default",
                before=None,
                after={"name": rule.name, "trigger": rule.trigger},
                correlation_id=actor_user.correlation_id,
                workspace_id=str(pipeline.workspace_id),
            )
        session.commit()
        return [_to_rule_read(rule) for rule in rules]

    def dry_run(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        deal_id: uuid.UUID,
    ) -> AutomationDryRunResponse:
        rule = self._get_rule(session, actor_user, rule_id)
        deal = self._get_rule_deal(session, actor_user, rule, deal_id)
        matched = evaluate_conditions(rule.conditions_json, snapshot_from_deal(deal))

        planned: list[dict[str, Any]] = []
        for raw_action in list(rule.actions_json or []):
            entry: dict[str, Any] = {"action": describe_action(raw_action)}
            try:
                action = normalize_action(raw_action)
                entry["preview"] = self.preview_executor.execute(
                    session, action, deal, automation_id=rule.id, dry_run=True
                )
            except ActionError as exc:
                entry["error"] = str(exc)
            planned.append(entry)
        return AutomationDryRunResponse(matched=matched, planned_actions=planned)

    def run_now(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        deal_id: uuid.UUID,
        *,
        queue: AutomationQueue,
        runner: AutomationExecutionRunner | None = None,
    ) -> AutomationRunResponse:
        rule = self._get_rule(session, actor_user, rule_id)
        if not rule.is_active:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Automation is inactive")
        deal = self._get_rule_deal(session, actor_user, rule, deal_id)

        context = AutomationContext(
            deal=snapshot_from_deal(deal),
            trigger=rule.trigger,
            user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        job = queue.enqueue(
            EXECUTE_JOB,
            {
                "automation_id": str(rule.id),
                "deal_id": str(deal.id),
                "context": context.model_dump(mode="json"),
            },
            0,
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="automation.run_requested",
            before=None,
            after={"job_id": job.job_id, "deal_id": str(deal.id)},
            correlation_id=actor_user.correlation_id,
            workspace_id=str(deal.workspace_id),
        )
        session.commit()
        logger.info(
            "automation.run_requested",
            extra={"automation_id": str(rule.id), "deal_id": str(deal.id), "job_id": job.job_id},
        )

        log_read: AutomationLogRead | None = None
        if runner is not None and get_settings().auto_run_automation_jobs:
            logs = run_jobs_inline(session, runner, queue, [job])
            if logs:
                log_read = _to_log_read(logs[0])
        return AutomationRunResponse(
            job_id=job.job_id,
            automation_id=rule.id,
            deal_id=deal.id,
            delay_ms=job.delay_ms,
            log=log_read,
        )

    def list_logs_for_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        *,
        limit: int = 50,
    ) -> list[AutomationLogRead]:
        rule = self._get_rule(session, actor_user, rule_id)
        logs = session.scalars(
            select(CRMAutomationLog)
            .where(CRMAutomationLog.automation_id == rule.id)
            .order_by(CRMAutomationLog.triggered_at.desc(), CRMAutomationLog.id.asc())
            .limit(limit)
        ).all()
        return [_to_log_read(log) for log in logs]

    def list_logs_for_deal(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        *,
        limit: int = 50,
    ) -> list[AutomationLogRead]:
        deal = session.get(CRMDeal, deal_id)
        if deal is None or not _can_access(actor_user, deal.workspace_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deal not found")
        logs = session.scalars(
            select(CRMAutomationLog)
            .where(CRMAutomationLog.deal_id == deal.id)
            .order_by(CRMAutomationLog.triggered_at.desc(), CRMAutomationLog.id.asc())
            .limit(limit)
        ).all()
        return [_to_log_read(log) for log in logs]

    def get_log(self, session: Session, actor_user: ActorUser, log_id: uuid.UUID) -> AutomationLogRead:
        log = session.get(CRMAutomationLog, log_id)
        if log is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Automation log not found")
        rule = session.get(CRMAutomationRule, log.automation_id)
        if rule is None or not _can_access(actor_user, rule.pipeline.workspace_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Automation log not found")
        return _to_log_read(log)

    def _get_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> CRMAutomationRule:
        rule = session.scalar(
            select(CRMAutomationRule).where(
                and_(CRMAutomationRule.id == rule_id, CRMAutomationRule.deleted_at.is_(None))
            )
        )
        if rule is None or not _can_access(actor_user, rule.pipeline.workspace_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Automation not found")
        return rule

    def _get_rule_deal(
        self,
        session: Session,
        actor_user: ActorUser,
        rule: CRMAutomationRule,
        deal_id: uuid.UUID,
    ) -> CRMDeal:
        deal = _get_deal(session, actor_user, deal_id)
        if deal.pipeline_id != rule.pipeline_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Deal does not belong to the automation's pipeline",
            )
        return deal

    def _validate_trigger_stage(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        trigger_stage_id: uuid.UUID | None,
    ) -> None:
        if trigger_stage_id is None:
            return
        stage = session.get(CRMPipelineStage, trigger_stage_id)
        if stage is None or stage.pipeline_id != pipeline_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Trigger stage does not belong to pipeline",
            )

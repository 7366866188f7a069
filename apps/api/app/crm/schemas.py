from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from app.crm.automation.actions import action_to_storage, normalize_actions
from app.crm.automation.conditions import AutomationConditions
from app.crm.automation.errors import ActionError
from app.crm.automation.triggers import STAGE_TRIGGERS, AutomationTrigger


DealStatus = Literal["OPEN", "WON", "LOST", "STALLED"]
AutomationLogStatus = Literal["PENDING", "SUCCESS", "FAILED", "SKIPPED"]


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(ge=0)
    default_probability: int | None = Field(default=None, ge=0, le=100)
    is_active: bool = True


class PipelineStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    default_probability: int | None = Field(default=None, ge=0, le=100)
    is_active: bool | None = None


class PipelineStageReorderRequest(BaseModel):
    stage_ids: list[UUID] = Field(min_length=1)


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    position: int
    default_probability: int | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    workspace_id: UUID | None = None
    is_default: bool = False
    stages: list[PipelineStageCreate] = Field(default_factory=list)
    with_default_automations: bool = False


class PipelineUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    is_default: bool | None = None


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    description: str | None
    is_default: bool
    created_at: datetime
    updated_at: datetime
    row_version: int
    stages: list[PipelineStageRead] = Field(default_factory=list)


class PipelineStageMetrics(BaseModel):
    id: UUID
    name: str
    count: int
    value: Decimal
    probability: int | None


class PipelineMetricsRead(BaseModel):
    pipeline_id: UUID
    total: int
    won: int
    lost: int
    open: int
    conversion_rate: float
    avg_deal_size: Decimal
    stages: list[PipelineStageMetrics] = Field(default_factory=list)


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    domain: str | None = None


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    domain: str | None
    created_at: datetime


class ContactCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company_id: UUID | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    company_id: UUID | None
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    created_at: datetime


class UserCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    first_name: str
    last_name: str
    email: str | None


class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    color: str | None = Field(default=None, max_length=16)


class TagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    color: str | None


class DealCreate(BaseModel):
    pipeline_id: UUID
    stage_id: UUID | None = None
    title: str = Field(min_length=1)
    value: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=16)
    probability: int | None = Field(default=None, ge=0, le=100)
    owner_id: UUID | None = None
    company_id: UUID | None = None
    expected_close_date: datetime | None = None
    contact_ids: list[UUID] = Field(default_factory=list)


class DealUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    title: str | None = Field(default=None, min_length=1)
    value: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=16)
    probability: int | None = Field(default=None, ge=0, le=100)
    status: DealStatus | None = None
    owner_id: UUID | None = None
    company_id: UUID | None = None
    expected_close_date: datetime | None = None
    won_reason: str | None = None
    lost_reason: str | None = None


class DealMoveStageRequest(BaseModel):
    stage_id: UUID
    reason: str | None = None


class DealBulkMoveStageRequest(BaseModel):
    deal_ids: list[UUID] = Field(min_length=1)
    stage_id: UUID


class DealBulkMoveStageResponse(BaseModel):
    moved: list[UUID] = Field(default_factory=list)
    failed: list[dict[str, Any]] = Field(default_factory=list)


class DealBulkUpdateOwnerRequest(BaseModel):
    deal_ids: list[UUID] = Field(min_length=1)
    owner_id: UUID


class DealBulkUpdateOwnerResponse(BaseModel):
    updated: list[UUID] = Field(default_factory=list)
    failed: list[dict[str, Any]] = Field(default_factory=list)


class DealContactLinkRequest(BaseModel):
    contact_id: UUID
    role: str | None = None
    is_primary: bool | None = None


class DealContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    contact_id: UUID
    role: str | None
    is_primary: bool


class DealRead(BaseModel):
    id: UUID
    workspace_id: UUID
    pipeline_id: UUID
    stage_id: UUID
    title: str
    value: Decimal
    currency: str
    probability: int
    status: DealStatus
    owner_id: UUID | None
    company_id: UUID | None
    expected_close_date: datetime | None
    stage_entered_at: datetime
    days_in_stage: int
    total_days_open: int
    won_reason: str | None
    lost_reason: str | None
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int
    contacts: list[DealContactRead] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class DealStageTransitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    from_stage_id: UUID | None
    to_stage_id: UUID
    user_id: str | None
    time_in_stage_minutes: int | None
    created_at: datetime


class DealHistoryRead(BaseModel):
    deal_id: UUID
    transitions: list[DealStageTransitionRead] = Field(default_factory=list)
    activities: list[ActivityRead] = Field(default_factory=list)


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID | None
    title: str
    description: str | None
    status: str
    priority: str
    due_at: datetime | None
    assigned_to_id: UUID | None
    automation_id: UUID | None
    created_at: datetime


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID | None
    activity_type: str
    title: str
    description: str | None
    user_id: UUID | None
    automation_id: UUID | None
    created_at: datetime


def _normalize_rule_actions(actions: list[Any] | None, action_config: dict[str, Any] | None) -> list[dict[str, Any]]:
    try:
        normalized = normalize_actions(actions, action_config, allow_unknown=False)
    except ActionError as exc:
        raise ValueError(str(exc)) from exc
    return [action_to_storage(action) for action in normalized]


class AutomationRuleCreate(BaseModel):
    pipeline_id: UUID
    name: str = Field(min_length=1)
    description: str | None = None
    trigger: AutomationTrigger
    trigger_stage_id: UUID | None = None
    conditions: AutomationConditions | None = None
    actions: list[Any] = Field(min_length=1)
    action_config: dict[str, Any] | None = None
    is_active: bool = True
    delay_minutes: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def validate_rule_structure(self) -> "AutomationRuleCreate":
        if self.trigger in STAGE_TRIGGERS and self.trigger_stage_id is None:
            raise ValueError("trigger_stage_id is required for STAGE_ENTER and STAGE_EXIT triggers")
        self.actions = _normalize_rule_actions(self.actions, self.action_config)
        self.action_config = None
        return self


class AutomationRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger: AutomationTrigger | None = None
    trigger_stage_id: UUID | None = None
    conditions: AutomationConditions | None = None
    actions: list[Any] | None = Field(default=None, min_length=1)
    action_config: dict[str, Any] | None = None
    is_active: bool | None = None
    delay_minutes: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_rule_structure(self) -> "AutomationRuleUpdate":
        if self.actions is not None:
            self.actions = _normalize_rule_actions(self.actions, self.action_config)
        self.action_config = None
        return self


class AutomationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    description: str | None
    trigger: AutomationTrigger
    trigger_stage_id: UUID | None
    conditions: dict[str, Any] = Field(default_factory=dict)
    actions: list[dict[str, Any]] = Field(default_factory=list)
    is_active: bool
    delay_minutes: int
    last_triggered_at: datetime | None
    trigger_count: int
    created_at: datetime
    updated_at: datetime


class AutomationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    deal_id: UUID
    trigger: str
    status: AutomationLogStatus
    actions: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None
    correlation_id: str | None
    triggered_at: datetime
    executed_at: datetime | None
    completed_at: datetime | None


class AutomationDryRunRequest(BaseModel):
    deal_id: UUID


class AutomationDryRunResponse(BaseModel):
    matched: bool
    planned_actions: list[dict[str, Any]] = Field(default_factory=list)


class AutomationRunRequest(BaseModel):
    deal_id: UUID


class AutomationRunResponse(BaseModel):
    job_id: str
    automation_id: UUID
    deal_id: UUID
    delay_ms: int
    log: AutomationLogRead | None = None


DealHistoryRead.model_rebuild()

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app.crm.automation.errors import (
    CompanyNotFoundError,
    InvalidActionConfigError,
    NoContactError,
    NoEmailError,
    OwnerNotFoundError,
    TagNotFoundError,
    UnknownActionError,
)
from app.crm.automation.snapshot import DealSnapshot, snapshot_from_deal
from app.crm.automation.templates import render_template
from app.crm.models import (
    CRMActivity,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMDealContact,
    CRMDealTag,
    CRMTag,
    CRMTask,
    CRMUser,
)
from app.notifications.client import EmailClient


ACTION_TYPES = (
    "SEND_EMAIL",
    "CREATE_TASK",
    "UPDATE_FIELD",
    "ADD_TAG",
    "REMOVE_TAG",
    "ASSIGN_OWNER",
    "CREATE_ACTIVITY",
    "UPDATE_PROBABILITY",
)

# Keys of the pre-list single config blob stored next to bare action names.
LEGACY_CONFIG_KEYS = {
    "SEND_EMAIL": "email",
    "CREATE_TASK": "task",
    "UPDATE_FIELD": "field",
    "ADD_TAG": "tag",
    "REMOVE_TAG": "tag",
    "ASSIGN_OWNER": "owner",
    "CREATE_ACTIVITY": "activity",
    "UPDATE_PROBABILITY": "probability",
}

TaskPriority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _ActionModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class SendEmailAction(_ActionModel):
    type: Literal["SEND_EMAIL"]
    subject: str = ""
    body: str = ""


class CreateTaskAction(_ActionModel):
    type: Literal["CREATE_TASK"]
    title: str = Field(min_length=1)
    description: str | None = None
    priority: TaskPriority = "MEDIUM"
    due_days: int | None = Field(default=None, ge=0, validation_alias=AliasChoices("due_days", "dueDays"))
    assign_to_owner: bool = Field(default=False, validation_alias=AliasChoices("assign_to_owner", "assignToOwner"))
    assignee_id: uuid.UUID | None = Field(default=None, validation_alias=AliasChoices("assignee_id", "assigneeId"))


class UpdateFieldAction(_ActionModel):
    type: Literal["UPDATE_FIELD"]
    updates: dict[str, Any] = Field(min_length=1)


class AddTagAction(_ActionModel):
    type: Literal["ADD_TAG"]
    tag_name: str = Field(min_length=1, validation_alias=AliasChoices("tag_name", "tagName"))


class RemoveTagAction(_ActionModel):
    type: Literal["REMOVE_TAG"]
    tag_name: str = Field(min_length=1, validation_alias=AliasChoices("tag_name", "tagName"))


class AssignOwnerAction(_ActionModel):
    type: Literal["ASSIGN_OWNER"]
    owner_id: uuid.UUID = Field(validation_alias=AliasChoices("owner_id", "ownerId"))


class CreateActivityAction(_ActionModel):
    type: Literal["CREATE_ACTIVITY"]
    activity_type: str = Field(default="NOTE_ADDED", validation_alias=AliasChoices("activity_type", "activityType"))
    title: str = Field(min_length=1)
    description: str | None = None


class SetProbability(BaseModel):
    mode: Literal["set"]
    probability: int = Field(ge=0, le=100)


class IncreaseProbability(BaseModel):
    mode: Literal["increase"]
    amount: int = Field(ge=0)


class DecreaseProbability(BaseModel):
    mode: Literal["decrease"]
    amount: int = Field(ge=0)


ProbabilityChange = Annotated[
    Union[SetProbability, IncreaseProbability, DecreaseProbability],
    Field(discriminator="mode"),
]

_PROBABILITY_SHORTHANDS = (
    ("set", "probability", ("setProbability", "set_probability")),
    ("increase", "amount", ("increaseProbability", "increase_probability")),
    ("decrease", "amount", ("decreaseProbability", "decrease_probability")),
)


class UpdateProbabilityAction(_ActionModel):
    type: Literal["UPDATE_PROBABILITY"]
    change: ProbabilityChange

    @model_validator(mode="before")
    @classmethod
    def expand_shorthand(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "change" in data:
            return data

        found: list[dict[str, Any]] = []
        for mode, field_name, keys in _PROBABILITY_SHORTHANDS:
            for key in keys:
                if data.get(key) is not None:
                    found.append({"mode": mode, field_name: data[key]})
                    break
        if len(found) != 1:
            raise ValueError("exactly one of setProbability, increaseProbability or decreaseProbability is required")
        return {**data, "change": found[0]}

    def apply(self, current: int | None) -> int:
        base = current or 0
        change = self.change
        if isinstance(change, SetProbability):
            return change.probability
        if isinstance(change, IncreaseProbability):
            return min(100, base + change.amount)
        return max(0, base - change.amount)


class UnknownAutomationAction(_ActionModel):
    model_config = ConfigDict(extra="allow")

    type: str


KnownAutomationAction = Annotated[
    Union[
        SendEmailAction,
        CreateTaskAction,
        UpdateFieldAction,
        AddTagAction,
        RemoveTagAction,
        AssignOwnerAction,
        CreateActivityAction,
        UpdateProbabilityAction,
    ],
    Field(discriminator="type"),
]
AutomationAction = Union[KnownAutomationAction, UnknownAutomationAction]

_known_action_adapter: TypeAdapter[Any] = TypeAdapter(KnownAutomationAction)


def _flatten_action(raw: Any, action_config: dict[str, Any] | None) -> dict[str, Any]:
    if isinstance(raw, str):
        action_type = raw.strip().upper()
        legacy = action_config or {}
        nested = legacy.get(LEGACY_CONFIG_KEYS.get(action_type, ""))
        config = nested if isinstance(nested, dict) else legacy
        return _merge_config(action_type, config)

    if isinstance(raw, dict):
        action_type = str(raw.get("type") or "").strip().upper()
        if not action_type:
            raise InvalidActionConfigError("UNKNOWN", "action type is required")
        config = raw.get("config")
        if isinstance(config, dict):
            return _merge_config(action_type, config)
        return {**raw, "type": action_type}

    raise InvalidActionConfigError("UNKNOWN", "action must be a type name or an object")


def _merge_config(action_type: str, config: dict[str, Any]) -> dict[str, Any]:
    merged = dict(config)
    # Inside a config blob, "type" names the activity kind rather than the action.
    if action_type == "CREATE_ACTIVITY" and "type" in merged and "activity_type" not in merged:
        merged["activity_type"] = merged["type"]
    merged["type"] = action_type
    return merged


def normalize_action(raw: Any, action_config: dict[str, Any] | None = None) -> AutomationAction:
    """Turn any stored action shape into one tagged action model.

    Accepts a bare type name (paired with the rule level ``action_config``),
    a ``{"type", "config"}`` object, or a flat ``{"type", ...fields}`` object.
    Unrecognized types come back as ``UnknownAutomationAction`` so the executor
    can report them per action.
    """
    flat = _flatten_action(raw, action_config)
    if flat["type"] not in ACTION_TYPES:
        return UnknownAutomationAction.model_validate(flat)
    try:
        return _known_action_adapter.validate_python(flat)
    except ValidationError as exc:
        reasons = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'][1:]) or 'config'}: {error['msg']}" for error in exc.errors()
        )
        raise InvalidActionConfigError(flat["type"], reasons) from exc


def normalize_actions(
    raw_actions: list[Any] | None,
    action_config: dict[str, Any] | None = None,
    *,
    allow_unknown: bool = True,
) -> list[AutomationAction]:
    actions: list[AutomationAction] = []
    for raw in raw_actions or []:
        action = normalize_action(raw, action_config)
        if isinstance(action, UnknownAutomationAction) and not allow_unknown:
            raise UnknownActionError(action.type)
        actions.append(action)
    return actions


def action_to_storage(action: AutomationAction) -> dict[str, Any]:
    return action.model_dump(mode="json", exclude_none=True)


def describe_action(raw: Any, action_config: dict[str, Any] | None = None) -> Any:
    try:
        return action_to_storage(normalize_action(raw, action_config))
    except InvalidActionConfigError:
        return raw


class AutomationActionExecutor:
    updatable_deal_fields = {
        "title",
        "value",
        "currency",
        "probability",
        "expected_close_date",
        "owner_id",
        "company_id",
    }

    def __init__(self, email_client: EmailClient) -> None:
        self.email_client = email_client

    def execute(
        self,
        session: Session,
        action: AutomationAction,
        deal: CRMDeal,
        *,
        automation_id: uuid.UUID | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        if isinstance(action, UnknownAutomationAction):
            raise UnknownActionError(action.type)

        snapshot = snapshot_from_deal(deal)
        if isinstance(action, SendEmailAction):
            return self._send_email(session, action, deal, snapshot, dry_run=dry_run)
        if isinstance(action, CreateTaskAction):
            return self._create_task(session, action, deal, snapshot, automation_id=automation_id, dry_run=dry_run)
        if isinstance(action, UpdateFieldAction):
            return self._update_field(session, action, deal, snapshot, dry_run=dry_run)
        if isinstance(action, AddTagAction):
            return self._add_tag(session, action, deal, dry_run=dry_run)
        if isinstance(action, RemoveTagAction):
            return self._remove_tag(session, action, deal, dry_run=dry_run)
        if isinstance(action, AssignOwnerAction):
            return self._assign_owner(session, action, deal, dry_run=dry_run)
        if isinstance(action, CreateActivityAction):
            return self._create_activity(session, action, deal, snapshot, automation_id=automation_id, dry_run=dry_run)
        if isinstance(action, UpdateProbabilityAction):
            return self._update_probability(session, action, deal, dry_run=dry_run)
        raise UnknownActionError(str(getattr(action, "type", action)))

    def _send_email(
        self,
        session: Session,
        action: SendEmailAction,
        deal: CRMDeal,
        snapshot: DealSnapshot,
        *,
        dry_run: bool,
    ) -> dict[str, Any]:
        links = session.scalars(
            select(CRMDealContact)
            .where(CRMDealContact.deal_id == deal.id)
            .order_by(CRMDealContact.created_at.asc(), CRMDealContact.id.asc())
        ).all()
        if not links:
            raise NoContactError()

        primary = next((link for link in links if link.is_primary), links[0])
        contact = session.get(CRMContact, primary.contact_id)
        email = contact.email if contact is not None else None
        if not email:
            raise NoEmailError()

        subject = render_template(action.subject, snapshot)
        body = render_template(action.body, snapshot)
        if dry_run:
            return {"would_send": {"to": email, "subject": subject, "html": body}}

        self.email_client.send_email(to=email, subject=subject, html=body)
        return {"sent": True, "to": email}

    def _create_task(
        self,
        session: Session,
        action: CreateTaskAction,
        deal: CRMDeal,
        snapshot: DealSnapshot,
        *,
        automation_id: uuid.UUID | None,
        dry_run: bool,
    ) -> dict[str, Any]:
        due_at = _utcnow() + timedelta(days=action.due_days) if action.due_days else None
        assignee_id = deal.owner_id if action.assign_to_owner else action.assignee_id
        title = render_template(action.title, snapshot)
        description = render_template(action.description, snapshot) if action.description else None

        if dry_run:
            return {
                "would_create": {
                    "title": title,
                    "description": description,
                    "priority": action.priority,
                    "due_at": due_at.isoformat() if due_at else None,
                    "assigned_to_id": str(assignee_id) if assignee_id else None,
                }
            }

        task = CRMTask(
            workspace_id=deal.workspace_id,
            deal_id=deal.id,
            title=title,
            description=description,
            status="TODO",
            priority=action.priority,
            due_at=due_at,
            assigned_to_id=assignee_id,
            automation_id=automation_id,
        )
        session.add(task)
        session.flush()
        return {"task_id": str(task.id)}

    def _update_field(
        self,
        session: Session,
        action: UpdateFieldAction,
        deal: CRMDeal,
        snapshot: DealSnapshot,
        *,
        dry_run: bool,
    ) -> dict[str, Any]:
        disallowed = sorted(set(action.updates) - self.updatable_deal_fields)
        if disallowed:
            raise InvalidActionConfigError("UPDATE_FIELD", f"field not allowed: {', '.join(disallowed)}")

        updates: dict[str, Any] = {}
        for field_name, value in action.updates.items():
            if isinstance(value, str):
                value = render_template(value, snapshot)
            updates[field_name] = self._coerce_deal_value(field_name, value)
        if updates.get("owner_id") is not None:
            self._require_owner(session, deal.workspace_id, updates["owner_id"], action_type="UPDATE_FIELD")
        if updates.get("company_id") is not None:
            self._require_company(session, deal.workspace_id, updates["company_id"])

        if dry_run:
            return {"would_update": {key: _serialize(value) for key, value in updates.items()}}

        for field_name, value in updates.items():
            setattr(deal, field_name, value)
        self._touch(deal)
        session.add(deal)
        session.flush()
        session.expire(deal, ["owner", "company"])
        return {"updated": True, "fields": list(updates)}

    def _add_tag(self, session: Session, action: AddTagAction, deal: CRMDeal, *, dry_run: bool) -> dict[str, Any]:
        tag = self._find_tag(session, deal.workspace_id, action.tag_name)
        if tag is None:
            raise TagNotFoundError(action.tag_name)
        if dry_run:
            return {"would_add_tag": str(tag.id)}

        existing = session.scalar(
            select(CRMDealTag).where(and_(CRMDealTag.deal_id == deal.id, CRMDealTag.tag_id == tag.id))
        )
        if existing is None:
            session.add(CRMDealTag(deal_id=deal.id, tag_id=tag.id))
            session.flush()
        return {"tag_added": True, "tag_id": str(tag.id)}

    def _remove_tag(self, session: Session, action: RemoveTagAction, deal: CRMDeal, *, dry_run: bool) -> dict[str, Any]:
        tag = self._find_tag(session, deal.workspace_id, action.tag_name)
        if tag is None:
            return {"tag_removed": False, "reason": "Tag not found"}
        if dry_run:
            return {"would_remove_tag": str(tag.id)}

        links = session.scalars(
            select(CRMDealTag).where(and_(CRMDealTag.deal_id == deal.id, CRMDealTag.tag_id == tag.id))
        ).all()
        for link in links:
            session.delete(link)
        session.flush()
        return {"tag_removed": True, "tag_id": str(tag.id)}

    def _assign_owner(self, session: Session, action: AssignOwnerAction, deal: CRMDeal, *, dry_run: bool) -> dict[str, Any]:
        self._require_owner(session, deal.workspace_id, action.owner_id)
        if dry_run:
            return {"would_assign": str(action.owner_id), "previous_owner_id": _serialize(deal.owner_id)}

        deal.owner_id = action.owner_id
        self._touch(deal)
        session.add(deal)
        session.flush()
        session.expire(deal, ["owner"])
        return {"assigned": True, "owner_id": str(action.owner_id)}

    def _create_activity(
        self,
        session: Session,
        action: CreateActivityAction,
        deal: CRMDeal,
        snapshot: DealSnapshot,
        *,
        automation_id: uuid.UUID | None,
        dry_run: bool,
    ) -> dict[str, Any]:
        title = render_template(action.title, snapshot)
        description = render_template(action.description, snapshot) if action.description else None
        if dry_run:
            return {"would_create": {"activity_type": action.activity_type, "title": title, "description": description}}

        activity = CRMActivity(
            workspace_id=deal.workspace_id,
            deal_id=deal.id,
            activity_type=action.activity_type,
            title=title,
            description=description,
            user_id=deal.owner_id,
            automation_id=automation_id,
        )
        session.add(activity)
        session.flush()
        return {"activity_id": str(activity.id)}

    def _update_probability(
        self,
        session: Session,
        action: UpdateProbabilityAction,
        deal: CRMDeal,
        *,
        dry_run: bool,
    ) -> dict[str, Any]:
        old_probability = deal.probability
        new_probability = action.apply(old_probability)
        if dry_run:
            return {"old_probability": old_probability, "new_probability": new_probability}

        deal.probability = new_probability
        self._touch(deal)
        session.add(deal)
        session.flush()
        return {"old_probability": old_probability, "new_probability": new_probability}

    def _find_tag(self, session: Session, workspace_id: uuid.UUID, name: str) -> CRMTag | None:
        return session.scalar(select(CRMTag).where(and_(CRMTag.workspace_id == workspace_id, CRMTag.name == name)))

    def _require_owner(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        owner_id: uuid.UUID,
        *,
        action_type: str = "ASSIGN_OWNER",
    ) -> CRMUser:
        owner = session.get(CRMUser, owner_id)
        if owner is None or owner.workspace_id != workspace_id:
            raise OwnerNotFoundError(owner_id, action_type=action_type)
        return owner

    def _require_company(self, session: Session, workspace_id: uuid.UUID, company_id: uuid.UUID) -> CRMCompany:
        company = session.get(CRMCompany, company_id)
        if company is None or company.workspace_id != workspace_id or company.deleted_at is not None:
            raise CompanyNotFoundError(company_id)
        return company

    def _touch(self, deal: CRMDeal) -> None:
        deal.updated_at = _utcnow()
        deal.row_version = int(deal.row_version or 0) + 1

    def _coerce_deal_value(self, field_name: str, value: Any) -> Any:
        if value is None:
            if field_name in {"title", "value", "currency", "probability"}:
                raise InvalidActionConfigError("UPDATE_FIELD", f"{field_name} cannot be null")
            return None
        try:
            if field_name in {"owner_id", "company_id"}:
                return uuid.UUID(str(value))
            if field_name == "value":
                return Decimal(str(value))
            if field_name == "probability":
                return max(0, min(100, int(value)))
            if field_name == "expected_close_date":
                if isinstance(value, datetime):
                    return value
                return datetime.fromisoformat(str(value))
        except (ValueError, TypeError, InvalidOperation) as exc:
            raise InvalidActionConfigError("UPDATE_FIELD", f"invalid value for {field_name}") from exc
        return str(value)


def _serialize(value: Any) -> Any:
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value

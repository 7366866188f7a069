from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.crm.models import CRMDeal


SECONDS_PER_DAY = 60 * 60 * 24


class OwnerSnapshot(BaseModel):
    id: UUID
    first_name: str
    last_name: str
    email: str | None = None


class CompanySnapshot(BaseModel):
    id: UUID
    name: str


class StageSnapshot(BaseModel):
    id: UUID
    name: str


class DealSnapshot(BaseModel):
    """Point-in-time view of a deal as seen by conditions and templates."""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    workspace_id: UUID
    pipeline_id: UUID
    stage_id: UUID
    title: str = ""
    value: Any = None
    currency: str | None = None
    probability: int | None = None
    status: str = "OPEN"
    owner_id: UUID | None = None
    company_id: UUID | None = None
    days_in_stage: int | None = None
    total_days_open: int | None = None
    owner: OwnerSnapshot | None = None
    company: CompanySnapshot | None = None
    stage: StageSnapshot | None = None
    contact_ids: list[UUID] = Field(default_factory=list)


def as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def whole_days_since(started_at: datetime | None, now: datetime | None = None) -> int:
    if started_at is None:
        return 0
    reference = now or datetime.now(timezone.utc)
    elapsed = (as_aware(reference) - as_aware(started_at)).total_seconds()
    return max(0, int(elapsed // SECONDS_PER_DAY))


def snapshot_from_deal(deal: CRMDeal, *, now: datetime | None = None) -> DealSnapshot:
    value = deal.value
    if isinstance(value, Decimal):
        value = str(value)

    return DealSnapshot(
        id=deal.id,
        workspace_id=deal.workspace_id,
        pipeline_id=deal.pipeline_id,
        stage_id=deal.stage_id,
        title=deal.title,
        value=value,
        currency=deal.currency,
        probability=deal.probability,
        status=deal.status,
        owner_id=deal.owner_id,
        company_id=deal.company_id,
        days_in_stage=whole_days_since(deal.stage_entered_at, now),
        total_days_open=whole_days_since(deal.created_at, now),
        owner=(
            OwnerSnapshot(
                id=deal.owner.id,
                first_name=deal.owner.first_name,
                last_name=deal.owner.last_name,
                email=deal.owner.email,
            )
            if deal.owner is not None
            else None
        ),
        company=CompanySnapshot(id=deal.company.id, name=deal.company.name) if deal.company is not None else None,
        stage=StageSnapshot(id=deal.stage.id, name=deal.stage.name) if deal.stage is not None else None,
        contact_ids=[link.contact_id for link in deal.contact_links],
    )

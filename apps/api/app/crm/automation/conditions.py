from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.crm.automation.snapshot import DealSnapshot


class AutomationConditions(BaseModel):
    """Rule condition set. Every predicate that is set must hold; unset ones are skipped."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    min_value: float | None = Field(default=None, validation_alias=AliasChoices("minValue", "min_value"))
    max_value: float | None = Field(default=None, validation_alias=AliasChoices("maxValue", "max_value"))
    min_probability: int | None = Field(
        default=None,
        validation_alias=AliasChoices("minProbability", "min_probability"),
    )
    min_days_in_stage: int | None = Field(
        default=None,
        validation_alias=AliasChoices("minDaysInStage", "min_days_in_stage"),
    )
    owner_ids: list[UUID] | None = Field(default=None, validation_alias=AliasChoices("ownerIds", "owner_ids"))
    has_company: bool | None = Field(default=None, validation_alias=AliasChoices("hasCompany", "has_company"))

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)

    def to_storage(self) -> dict[str, Any]:
        payload = {
            "minValue": self.min_value,
            "maxValue": self.max_value,
            "minProbability": self.min_probability,
            "minDaysInStage": self.min_days_in_stage,
            "ownerIds": [str(item) for item in self.owner_ids] if self.owner_ids is not None else None,
            "hasCompany": self.has_company,
        }
        return {key: value for key, value in payload.items() if value is not None}


def parse_conditions(raw: AutomationConditions | dict[str, Any] | None) -> AutomationConditions:
    if isinstance(raw, AutomationConditions):
        return raw
    if not raw:
        return AutomationConditions()
    return AutomationConditions.model_validate(raw)


def deal_value_as_float(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def evaluate_conditions(conditions: AutomationConditions | dict[str, Any] | None, deal: DealSnapshot) -> bool:
    parsed = parse_conditions(conditions)
    if parsed.is_empty():
        return True

    deal_value = deal_value_as_float(deal.value)
    if parsed.min_value is not None and deal_value < parsed.min_value:
        return False
    if parsed.max_value is not None and deal_value > parsed.max_value:
        return False

    if parsed.min_probability is not None and (deal.probability or 0) < parsed.min_probability:
        return False

    if parsed.min_days_in_stage is not None and (deal.days_in_stage or 0) < parsed.min_days_in_stage:
        return False

    if parsed.owner_ids is not None and deal.owner_id not in set(parsed.owner_ids):
        return False

    if parsed.has_company is not None and parsed.has_company != (deal.company_id is not None):
        return False

    return True

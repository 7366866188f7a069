from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from app.crm.automation.snapshot import DealSnapshot


AutomationTrigger = Literal[
    "DEAL_CREATED",
    "DEAL_WON",
    "DEAL_LOST",
    "DEAL_STALLED",
    "STAGE_ENTER",
    "STAGE_EXIT",
    "VALUE_CHANGED",
    "OWNER_CHANGED",
    "DEAL_UPDATED",
]

STAGE_TRIGGERS = {"STAGE_ENTER", "STAGE_EXIT"}

# Deal lifecycle event type -> automation trigger.
DEAL_EVENT_TRIGGERS: dict[str, str] = {
    "crm.deal.created": "DEAL_CREATED",
    "crm.deal.won": "DEAL_WON",
    "crm.deal.lost": "DEAL_LOST",
    "crm.deal.stalled": "DEAL_STALLED",
    "crm.deal.stage_entered": "STAGE_ENTER",
    "crm.deal.stage_exited": "STAGE_EXIT",
    "crm.deal.value_changed": "VALUE_CHANGED",
    "crm.deal.owner_changed": "OWNER_CHANGED",
    "crm.deal.updated": "DEAL_UPDATED",
}
TRIGGER_EVENT_TYPES = {trigger: event_type for event_type, trigger in DEAL_EVENT_TRIGGERS.items()}


class AutomationContext(BaseModel):
    """What a dispatch carries from the deal event to the queued execution."""

    model_config = ConfigDict(extra="ignore")

    deal: DealSnapshot
    trigger: AutomationTrigger
    previous_value: Any = None
    new_value: Any = None
    user_id: str | None = None
    event_id: str | None = None
    correlation_id: str | None = None

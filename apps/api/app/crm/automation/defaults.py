from __future__ import annotations

import uuid
from typing import Any

from app.crm.automation.actions import action_to_storage, normalize_actions
from app.crm.automation.conditions import parse_conditions
from app.crm.models import CRMAutomationRule


# Starter rules for a new pipeline. They are created inactive.
DEFAULT_AUTOMATIONS: list[dict[str, Any]] = [
    {
        "name": "Welcome Email on Deal Creation",
        "description": "Send welcome email when new deal is created",
        "trigger": "DEAL_CREATED",
        "actions": ["SEND_EMAIL"],
        "action_config": {
            "email": {
                "subject": "Welcome to our sales process",
                "body": "Hi! We're excited to work with you on {{deal.title}}...",
            },
        },
    },
    {
        "name": "Stalled Deal Alert",
        "description": "Create task when deal is stalled for 30 days",
        "trigger": "DEAL_STALLED",
        "conditions": {"minDaysInStage": 30},
        "actions": ["CREATE_TASK"],
        "action_config": {
            "task": {
                "title": "Follow up on stalled deal: {{deal.title}}",
                "priority": "HIGH",
                "dueDays": 1,
                "assignToOwner": True,
            },
        },
    },
    {
        "name": "Won Deal Celebration",
        "description": "Update probability and create activity when deal is won",
        "trigger": "DEAL_WON",
        "actions": ["UPDATE_PROBABILITY", "CREATE_ACTIVITY"],
        "action_config": {
            "probability": {"setProbability": 100},
            "activity": {
                "type": "DEAL_UPDATED",
                "title": "Deal won! \U0001F389",
                "description": "{{deal.title}} has been successfully closed for {{deal.value}}",
            },
        },
    },
]


def build_default_rules(pipeline_id: uuid.UUID) -> list[CRMAutomationRule]:
    rules: list[CRMAutomationRule] = []
    for template in DEFAULT_AUTOMATIONS:
        actions = normalize_actions(template["actions"], template.get("action_config"), allow_unknown=False)
        rules.append(
            CRMAutomationRule(
                pipeline_id=pipeline_id,
                name=template["name"],
                description=template["description"],
                trigger=template["trigger"],
                trigger_stage_id=None,
                conditions_json=parse_conditions(template.get("conditions")).to_storage(),
                actions_json=[action_to_storage(action) for action in actions],
                is_active=False,
                delay_minutes=0,
            )
        )
    return rules

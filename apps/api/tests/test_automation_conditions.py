from __future__ import annotations

import uuid

import pytest

from app.crm.automation.conditions import AutomationConditions, evaluate_conditions, parse_conditions
from app.crm.automation.snapshot import DealSnapshot


def _snapshot(**overrides: object) -> DealSnapshot:
    values: dict[str, object] = {
        "id": uuid.uuid4(),
        "workspace_id": uuid.uuid4(),
        "pipeline_id": uuid.uuid4(),
        "stage_id": uuid.uuid4(),
        "title": "Test Deal",
        "value": "1000.00",
        "probability": 40,
        "days_in_stage": 3,
    }
    values.update(overrides)
    return DealSnapshot.model_validate(values)


def test_empty_conditions_always_match() -> None:
    assert evaluate_conditions(None, _snapshot()) is True
    assert evaluate_conditions({}, _snapshot()) is True
    assert evaluate_conditions(AutomationConditions(), _snapshot(value=None)) is True


def test_min_value_is_inclusive() -> None:
    assert evaluate_conditions({"minValue": 1000}, _snapshot(value="1000.00")) is True
    assert evaluate_conditions({"minValue": 1000.01}, _snapshot(value="1000.00")) is False


def test_value_range_filters_deals() -> None:
    deal = _snapshot(value="1000.00")
    assert evaluate_conditions({"minValue": 2000}, deal) is False
    assert evaluate_conditions({"minValue": 500, "maxValue": 2000}, deal) is True
    assert evaluate_conditions({"maxValue": 999}, deal) is False


def test_zero_bounds_are_honoured() -> None:
    assert evaluate_conditions({"maxValue": 0}, _snapshot(value="10")) is False
    assert evaluate_conditions({"maxValue": 0}, _snapshot(value="0")) is True
    assert evaluate_conditions({"minProbability": 0}, _snapshot(probability=0)) is True


def test_missing_deal_value_counts_as_zero() -> None:
    assert evaluate_conditions({"minValue": 1}, _snapshot(value=None)) is False
    assert evaluate_conditions({"maxValue": 5}, _snapshot(value="not-a-number")) is True


def test_probability_and_days_in_stage() -> None:
    deal = _snapshot(probability=40, days_in_stage=3)
    assert evaluate_conditions({"minProbability": 40}, deal) is True
    assert evaluate_conditions({"minProbability": 41}, deal) is False
    assert evaluate_conditions({"minDaysInStage": 3}, deal) is True
    assert evaluate_conditions({"minDaysInStage": 30}, deal) is False


def test_owner_ids_require_membership() -> None:
    owner_id = uuid.uuid4()
    assert evaluate_conditions({"ownerIds": [str(owner_id)]}, _snapshot(owner_id=owner_id)) is True
    assert evaluate_conditions({"ownerIds": [str(uuid.uuid4())]}, _snapshot(owner_id=owner_id)) is False
    assert evaluate_conditions({"ownerIds": [str(owner_id)]}, _snapshot(owner_id=None)) is False
    # An empty list is still a constraint nobody satisfies.
    assert evaluate_conditions({"ownerIds": []}, _snapshot(owner_id=owner_id)) is False


@pytest.mark.parametrize(
    ("has_company", "company_id", "expected"),
    [
        (True, uuid.uuid4(), True),
        (True, None, False),
        (False, None, True),
        (False, uuid.uuid4(), False),
    ],
)
def test_has_company(has_company: bool, company_id: uuid.UUID | None, expected: bool) -> None:
    assert evaluate_conditions({"hasCompany": has_company}, _snapshot(company_id=company_id)) is expected


def test_all_conditions_must_hold() -> None:
    deal = _snapshot(value="5000", probability=10)
    assert evaluate_conditions({"minValue": 1000, "minProbability": 50}, deal) is False
    assert evaluate_conditions({"minValue": 1000, "minProbability": 10}, deal) is True


def test_conditions_accept_snake_case_and_store_camel_case() -> None:
    owner_id = uuid.uuid4()
    parsed = parse_conditions({"min_value": 100, "owner_ids": [str(owner_id)], "unknown": "ignored"})
    assert parsed.min_value == 100
    assert parsed.to_storage() == {"minValue": 100, "ownerIds": [str(owner_id)]}
    assert AutomationConditions().to_storage() == {}

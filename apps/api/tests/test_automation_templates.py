from __future__ import annotations

import uuid

import pytest

from app.crm.automation.snapshot import CompanySnapshot, DealSnapshot, OwnerSnapshot, StageSnapshot
from app.crm.automation.templates import SUPPORTED_PLACEHOLDERS, render_template


def _snapshot(**overrides: object) -> DealSnapshot:
    values: dict[str, object] = {
        "id": uuid.uuid4(),
        "workspace_id": uuid.uuid4(),
        "pipeline_id": uuid.uuid4(),
        "stage_id": uuid.uuid4(),
        "title": "Test Deal",
        "value": "1000.00",
        "days_in_stage": 4,
    }
    values.update(overrides)
    return DealSnapshot.model_validate(values)


def test_renders_all_supported_tokens() -> None:
    deal = _snapshot(
        owner=OwnerSnapshot(id=uuid.uuid4(), first_name="Ada", last_name="Lovelace"),
        company=CompanySnapshot(id=uuid.uuid4(), name="Acme"),
        stage=StageSnapshot(id=uuid.uuid4(), name="Qualified"),
    )
    rendered = render_template(
        "{{deal.title}}|{{deal.value}}|{{deal.owner}}|{{deal.company}}|{{deal.stage}}|{{deal.daysInStage}}",
        deal,
    )
    assert rendered == "Test Deal|1000|Ada Lovelace|Acme|Qualified|4"
    assert len(SUPPORTED_PLACEHOLDERS) == 6


@pytest.mark.parametrize(
    ("stored", "expected"),
    [("1000.00", "1000"), ("1500.50", "1500.5"), ("0.00", "0"), ("12.34", "12.34")],
)
def test_value_drops_trailing_zeros(stored: str, expected: str) -> None:
    assert render_template("{{deal.value}}", _snapshot(value=stored)) == expected


def test_missing_value_renders_empty() -> None:
    assert render_template("[{{deal.value}}]", _snapshot(value=None)) == "[]"


def test_missing_relations_render_empty() -> None:
    assert render_template("{{deal.title}} - {{deal.stage}}", _snapshot()) == "Test Deal - "
    assert render_template("Owner: {{deal.owner}}", _snapshot()) == "Owner: "


def test_unknown_tokens_are_removed() -> None:
    assert render_template("Hello {{contact.name}}!", _snapshot()) == "Hello !"
    assert render_template("{{deal.unknown}}{{deal.title}}", _snapshot()) == "Test Deal"


def test_whitespace_inside_braces_is_tolerated() -> None:
    assert render_template("{{ deal.title }}", _snapshot()) == "Test Deal"


def test_days_in_stage_defaults_to_zero() -> None:
    assert render_template("{{deal.daysInStage}}", _snapshot(days_in_stage=None)) == "0"


def test_empty_template_and_plain_text() -> None:
    assert render_template(None, _snapshot()) == ""
    assert render_template("", _snapshot()) == ""
    assert render_template("no tokens here", _snapshot()) == "no tokens here"

from __future__ import annotations

import re
from collections.abc import Callable
from decimal import Decimal, InvalidOperation

from app.crm.automation.snapshot import DealSnapshot


_PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")


def _owner_name(deal: DealSnapshot) -> str:
    if deal.owner is None:
        return ""
    return f"{deal.owner.first_name} {deal.owner.last_name}".strip()


def _value(deal: DealSnapshot) -> str:
    if deal.value is None:
        return ""
    try:
        amount = Decimal(str(deal.value))
    except InvalidOperation:
        return str(deal.value)
    if not amount.is_finite():
        return str(deal.value)
    # Numeric(18, 2) storage pads whole amounts; render 1000.00 as 1000.
    return format(amount.normalize(), "f")


_RESOLVERS: dict[str, Callable[[DealSnapshot], str]] = {
    "deal.title": lambda deal: deal.title or "",
    "deal.value": _value,
    "deal.owner": _owner_name,
    "deal.company": lambda deal: deal.company.name if deal.company is not None else "",
    "deal.stage": lambda deal: deal.stage.name if deal.stage is not None else "",
    "deal.daysInStage": lambda deal: str(deal.days_in_stage) if deal.days_in_stage is not None else "0",
}

SUPPORTED_PLACEHOLDERS = tuple(f"{{{{{token}}}}}" for token in _RESOLVERS)


def render_template(template: str | None, deal: DealSnapshot) -> str:
    """Substitute the fixed ``{{deal.*}}`` tokens. Anything else renders as an empty string."""
    if not template:
        return ""

    def _replace(match: re.Match[str]) -> str:
        resolver = _RESOLVERS.get(match.group(1))
        if resolver is None:
            return ""
        return resolver(deal)

    return _PLACEHOLDER_RE.sub(_replace, template)

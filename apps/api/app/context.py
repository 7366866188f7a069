from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
automation_id_var: ContextVar[str | None] = ContextVar("automation_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_automation_id(value: str | None) -> Token[str | None]:
    return automation_id_var.set(value)


def reset_automation_id(token: Token[str | None]) -> None:
    automation_id_var.reset(token)


def get_automation_id() -> str | None:
    return automation_id_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "automation_id": get_automation_id()}

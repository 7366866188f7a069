from __future__ import annotations


class ActionError(Exception):
    """Base error for a single automation action that could not be applied."""

    def __init__(self, message: str, *, action_type: str | None = None) -> None:
        self.action_type = action_type
        super().__init__(message)


class NoContactError(ActionError):
    def __init__(self) -> None:
        super().__init__("No contacts found for deal", action_type="SEND_EMAIL")


class NoEmailError(ActionError):
    def __init__(self) -> None:
        super().__init__("Contact does not have an email address", action_type="SEND_EMAIL")


class TagNotFoundError(ActionError):
    def __init__(self, tag_name: str) -> None:
        self.tag_name = tag_name
        super().__init__(f'Tag "{tag_name}" not found', action_type="ADD_TAG")


class UnknownActionError(ActionError):
    """Raised for an action type the executor has no handler for."""

    def __init__(self, action_type: str) -> None:
        super().__init__(f"Unknown action: {action_type}", action_type=action_type)


class InvalidActionConfigError(ActionError):
    def __init__(self, action_type: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid config for {action_type}: {reason}", action_type=action_type)


class OwnerNotFoundError(ActionError):
    def __init__(self, owner_id: object, *, action_type: str = "ASSIGN_OWNER") -> None:
        self.owner_id = owner_id
        super().__init__(f"Owner {owner_id} not found", action_type=action_type)


class CompanyNotFoundError(ActionError):
    def __init__(self, company_id: object) -> None:
        self.company_id = company_id
        super().__init__(f"Company {company_id} not found", action_type="UPDATE_FIELD")

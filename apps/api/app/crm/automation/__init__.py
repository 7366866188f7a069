from app.crm.automation.actions import AutomationActionExecutor, normalize_action, normalize_actions
from app.crm.automation.conditions import AutomationConditions, evaluate_conditions
from app.crm.automation.dispatcher import AutomationDispatcher
from app.crm.automation.errors import (
    ActionError,
    InvalidActionConfigError,
    NoContactError,
    NoEmailError,
    TagNotFoundError,
    UnknownActionError,
)
from app.crm.automation.queue import (
    AutomationQueue,
    CeleryAutomationQueue,
    InMemoryAutomationQueue,
    QueuedJob,
    build_automation_queue,
)
from app.crm.automation.runner import AutomationExecutionRunner, run_jobs_inline
from app.crm.automation.snapshot import DealSnapshot, snapshot_from_deal
from app.crm.automation.templates import render_template
from app.crm.automation.triggers import AutomationContext

__all__ = [
    "ActionError",
    "AutomationActionExecutor",
    "AutomationConditions",
    "AutomationContext",
    "AutomationDispatcher",
    "AutomationExecutionRunner",
    "AutomationQueue",
    "CeleryAutomationQueue",
    "DealSnapshot",
    "InMemoryAutomationQueue",
    "InvalidActionConfigError",
    "NoContactError",
    "NoEmailError",
    "QueuedJob",
    "TagNotFoundError",
    "UnknownActionError",
    "build_automation_queue",
    "evaluate_conditions",
    "normalize_action",
    "normalize_actions",
    "render_template",
    "run_jobs_inline",
    "snapshot_from_deal",
]

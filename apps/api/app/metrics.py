from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_jobs_total = Counter(
    "crm_jobs_total",
    "Total CRM jobs by status",
    ["job_type", "status"],
)

crm_job_duration_seconds = Histogram(
    "crm_job_duration_seconds",
    "CRM job duration in seconds",
    ["job_type"],
)

crm_automation_enqueued_total = Counter(
    "crm_automation_enqueued_total",
    "Automation executions pushed to the delayed queue",
    ["trigger"],
)

crm_automation_actions_total = Counter(
    "crm_automation_actions_total",
    "Automation actions executed by outcome",
    ["action_type", "outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            template = getattr(route, attribute, None)
            if isinstance(template, str) and template:
                return _PATH_PARAM_RE.sub("{id}", template)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_job(job_type: str, status: str, duration: float) -> None:
    crm_jobs_total.labels(job_type=job_type, status=status).inc()
    crm_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_automation_enqueued(trigger: str) -> None:
    crm_automation_enqueued_total.labels(trigger=trigger).inc()


def observe_automation_action(action_type: str, succeeded: bool) -> None:
    outcome = "success" if succeeded else "failure"
    crm_automation_actions_total.labels(action_type=action_type, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app import audit
from app.context import get_correlation_id, reset_automation_id, reset_correlation_id, set_automation_id, set_correlation_id
from app.core.config import get_settings
from app.crm.automation.actions import AutomationActionExecutor, describe_action, normalize_action
from app.crm.automation.conditions import evaluate_conditions
from app.crm.automation.queue import AutomationQueue, InMemoryAutomationQueue, QueuedJob
from app.crm.automation.snapshot import snapshot_from_deal
from app.crm.automation.triggers import AutomationContext
from app.crm.models import CRMAutomationLog, CRMAutomationRule, CRMDeal
from app.metrics import observe_automation_action, observe_job


logger = logging.getLogger("app.crm.jobs")
tracer = trace.get_tracer("app.crm.jobs")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _action_type_of(raw: Any) -> str:
    if isinstance(raw, str):
        return raw.strip().upper() or "UNKNOWN"
    if isinstance(raw, dict):
        return str(raw.get("type") or "UNKNOWN").upper()
    return "UNKNOWN"


class AutomationExecutionRunner:
    job_type = "AUTOMATION_EXECUTION"

    def __init__(self, executor: AutomationActionExecutor, *, recheck_conditions: bool | None = None) -> None:
        self.executor = executor
        self._recheck_conditions = recheck_conditions

    @property
    def recheck_conditions(self) -> bool:
        if self._recheck_conditions is not None:
            return self._recheck_conditions
        return get_settings().automation_recheck_conditions

    def run_job(self, session: Session, job: QueuedJob) -> CRMAutomationLog | None:
        payload = job.payload
        return self.execute_automation(
            session,
            uuid.UUID(str(payload["automation_id"])),
            uuid.UUID(str(payload["deal_id"])),
            payload.get("context") or {},
        )

    def execute_automation(
        self,
        session: Session,
        automation_id: uuid.UUID,
        deal_id: uuid.UUID,
        context: AutomationContext | dict[str, Any],
    ) -> CRMAutomationLog | None:
        """Run one queued rule firing against the current state of the deal.

        Returns ``None`` without logging when the rule is gone or inactive.
        Otherwise the returned log ends ``SUCCESS``, ``FAILED`` (some action
        failed) or ``SKIPPED`` (deal deleted, or its conditions no longer hold).
        Errors outside the individual actions mark the log ``FAILED`` and are
        re-raised so the queue can retry the job.
        """
        resolved_context = (
            context if isinstance(context, AutomationContext) else AutomationContext.model_validate(context)
        )
        rule = session.scalar(
            select(CRMAutomationRule).where(
                and_(CRMAutomationRule.id == automation_id, CRMAutomationRule.deleted_at.is_(None))
            )
        )
        if rule is None or not rule.is_active:
            logger.info(
                "automation.not_runnable",
                extra={"automation_id": str(automation_id), "deal_id": str(deal_id), "status": "IGNORED"},
            )
            return None

        correlation_id = resolved_context.correlation_id or get_correlation_id()
        correlation_token = set_correlation_id(correlation_id)
        automation_token = set_automation_id(str(automation_id))

        log = CRMAutomationLog(
            automation_id=automation_id,
            deal_id=deal_id,
            trigger=resolved_context.trigger,
            status="PENDING",
            actions_json=[],
            correlation_id=correlation_id,
        )
        session.add(log)
        session.commit()
        log_id = log.id

        started = time.perf_counter()
        final_status = "FAILED"
        try:
            with tracer.start_as_current_span("crm.automation.run") as span:
                span.set_attribute("job_id", str(log_id))
                span.set_attribute("job_type", self.job_type)
                span.set_attribute("automation_id", str(automation_id))
                span.set_attribute("deal_id", str(deal_id))
                span.set_attribute("trigger", resolved_context.trigger)
                if correlation_id:
                    span.set_attribute("correlation_id", correlation_id)

                logger.info(
                    "job.started",
                    extra={
                        "job_id": str(log_id),
                        "job_type": self.job_type,
                        "automation_id": str(automation_id),
                        "deal_id": str(deal_id),
                        "trigger": resolved_context.trigger,
                    },
                )
                try:
                    log = self._run(session, rule, log, deal_id)
                    final_status = log.status
                    span.set_attribute("status", final_status)
                    return log
                except Exception as exc:
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    session.rollback()
                    failed_log = session.get(CRMAutomationLog, log_id)
                    if failed_log is None:
                        raise
                    failed_log.status = "FAILED"
                    failed_log.error = str(exc)[:2000]
                    failed_log.completed_at = utcnow()
                    session.add(failed_log)
                    session.commit()
                    logger.error(
                        "automation.execution_failed",
                        exc_info=True,
                        extra={
                            "job_id": str(log_id),
                            "automation_id": str(automation_id),
                            "deal_id": str(deal_id),
                            "error": str(exc),
                        },
                    )
                    raise
        finally:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_job(job_type=self.job_type, status=final_status, duration=duration_ms / 1000)
            logger.info(
                "job.finished",
                extra={
                    "job_id": str(log_id),
                    "job_type": self.job_type,
                    "status": final_status,
                    "duration_ms": duration_ms,
                    "automation_id": str(automation_id),
                    "deal_id": str(deal_id),
                },
            )
            reset_automation_id(automation_token)
            reset_correlation_id(correlation_token)

    def _run(
        self,
        session: Session,
        rule: CRMAutomationRule,
        log: CRMAutomationLog,
        deal_id: uuid.UUID,
    ) -> CRMAutomationLog:
        deal = session.scalar(select(CRMDeal).where(CRMDeal.id == deal_id))
        skip_reason: str | None = None
        if deal is None or deal.deleted_at is not None:
            skip_reason = "Deal not found"
        elif self.recheck_conditions and not evaluate_conditions(rule.conditions_json, snapshot_from_deal(deal)):
            skip_reason = "Conditions no longer match"

        if skip_reason is not None or deal is None:
            log.status = "SKIPPED"
            log.error = skip_reason
            log.completed_at = utcnow()
            session.add(log)
            session.commit()
            return log

        log.executed_at = utcnow()
        results: list[dict[str, Any]] = []
        has_error = False
        for raw_action in list(rule.actions_json or []):
            action_type = _action_type_of(raw_action)
            descriptor = describe_action(raw_action)
            try:
                action = normalize_action(raw_action)
                # A failed action only rolls back its own savepoint.
                with session.begin_nested():
                    result = self.executor.execute(session, action, deal, automation_id=rule.id)
            except Exception as exc:
                has_error = True
                results.append({"action": descriptor, "success": False, "error": str(exc)})
                observe_automation_action(action_type, succeeded=False)
                logger.warning(
                    "automation.action_failed",
                    extra={
                        "automation_id": str(rule.id),
                        "deal_id": str(deal_id),
                        "action_type": action_type,
                        "error": str(exc),
                    },
                )
                continue
            results.append({"action": descriptor, "success": True, "result": result})
            observe_automation_action(action_type, succeeded=True)

        rule.last_triggered_at = utcnow()
        rule.trigger_count = int(rule.trigger_count or 0) + 1
        session.add(rule)

        log.status = "FAILED" if has_error else "SUCCESS"
        log.actions_json = results
        log.completed_at = utcnow()
        session.add(log)

        audit.record(
            actor_user_id="system",
            entity_type="crm.automation_rule",
            entity_id=str(rule.id),
            action="automation.executed",
            before=None,
            after={
                "log_id": str(log.id),
                "deal_id": str(deal_id),
                "status": log.status,
                "action_count": len(results),
                "failed_action_count": sum(1 for item in results if not item["success"]),
            },
            workspace_id=str(deal.workspace_id),
        )
        session.commit()
        return log


def run_jobs_inline(
    session: Session,
    runner: AutomationExecutionRunner,
    queue: AutomationQueue,
    jobs: list[QueuedJob],
) -> list[CRMAutomationLog]:
    """Execute freshly enqueued, undelayed jobs in-process.

    Only the in-memory queue supports this. Delayed jobs stay queued for
    ``run_due_jobs``.
    """
    if not isinstance(queue, InMemoryAutomationQueue):
        return []
    logs: list[CRMAutomationLog] = []
    for job in jobs:
        if job.delay_ms > 0 or not queue.take(job):
            continue
        log = runner.run_job(session, job)
        if log is not None:
            logs.append(log)
    return logs


def run_due_jobs(
    session: Session,
    runner: AutomationExecutionRunner,
    queue: AutomationQueue,
    now: datetime | None = None,
) -> list[CRMAutomationLog]:
    """Execute in-memory jobs whose delay has elapsed by ``now``."""
    if not isinstance(queue, InMemoryAutomationQueue):
        return []
    logs: list[CRMAutomationLog] = []
    for job in queue.pop_due(now):
        try:
            log = runner.run_job(session, job)
        except Exception as exc:
            logger.error(
                "automation.job_failed",
                extra={"job_id": job.job_id, "status": "FAILED", "error": str(exc)},
            )
            continue
        if log is not None:
            logs.append(log)
    return logs


class InMemoryJobWorker:
    """Background thread that runs due jobs from an in-memory queue."""

    def __init__(
        self,
        session_scope: Callable[[], AbstractContextManager[Session]],
        runner: AutomationExecutionRunner,
        queue: InMemoryAutomationQueue,
        interval_seconds: float,
    ) -> None:
        self.session_scope = session_scope
        self.runner = runner
        self.queue = queue
        self.interval_seconds = interval_seconds
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def run_once(self, now: datetime | None = None) -> list[CRMAutomationLog]:
        cutoff = now or utcnow()
        if not any(job.scheduled_for <= cutoff for job in list(self.queue.jobs)):
            return []
        with self.session_scope() as session:
            return run_due_jobs(session, self.runner, self.queue, cutoff)

    def start(self) -> None:
        def poll_loop() -> None:
            while not self._stop_event.wait(self.interval_seconds):
                try:
                    self.run_once()
                except Exception as exc:
                    logger.error("automation.worker_failed", extra={"error": str(exc)})

        self._stop_event.clear()
        self._thread = threading.Thread(target=poll_loop, name="automation-worker", daemon=True)
        self._thread.start()
        logger.info("automation.worker_started", extra={"duration_ms": self.interval_seconds * 1000})

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

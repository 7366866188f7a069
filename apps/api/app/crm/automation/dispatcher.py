from __future__ import annotations

import hashlib
import json
import logging
import uuid
from typing import Any

from pydantic import ValidationError
from sqlalchemy import Select, and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.crm.automation.conditions import evaluate_conditions
from app.crm.automation.queue import EXECUTE_JOB, AutomationQueue, QueuedJob
from app.crm.automation.triggers import DEAL_EVENT_TRIGGERS, AutomationContext
from app.crm.models import CRMAutomationRule, CRMIdempotencyKey
from app.metrics import observe_automation_enqueued


logger = logging.getLogger("app.crm.automation")

MS_PER_MINUTE = 60 * 1000


def _as_uuid(value: Any) -> uuid.UUID | None:
    if value in (None, ""):
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class AutomationDispatcher:
    dedupe_endpoint = "crm.automation.dispatch"

    def __init__(self, queue: AutomationQueue) -> None:
        self.queue = queue

    def find_candidate_rules(self, session: Session, context: AutomationContext) -> list[CRMAutomationRule]:
        stmt: Select[tuple[CRMAutomationRule]] = select(CRMAutomationRule).where(
            and_(
                CRMAutomationRule.pipeline_id == context.deal.pipeline_id,
                CRMAutomationRule.trigger == context.trigger,
                CRMAutomationRule.is_active.is_(True),
                CRMAutomationRule.deleted_at.is_(None),
            )
        )
        if context.trigger == "STAGE_ENTER":
            stmt = stmt.where(CRMAutomationRule.trigger_stage_id == _as_uuid(context.new_value))
        elif context.trigger == "STAGE_EXIT":
            stmt = stmt.where(CRMAutomationRule.trigger_stage_id == _as_uuid(context.previous_value))
        return list(session.scalars(stmt.order_by(CRMAutomationRule.created_at.asc(), CRMAutomationRule.id.asc())).all())

    def trigger_automations(self, session: Session, context: AutomationContext) -> list[QueuedJob]:
        matched: list[CRMAutomationRule] = []
        for rule in self.find_candidate_rules(session, context):
            try:
                if evaluate_conditions(rule.conditions_json, context.deal):
                    matched.append(rule)
            except (ValidationError, ValueError, TypeError) as exc:
                logger.warning(
                    "automation.rule_invalid",
                    extra={"automation_id": str(rule.id), "trigger": context.trigger, "error": str(exc)},
                )

        claimed = [
            (rule.id, int(rule.delay_minutes or 0) * MS_PER_MINUTE)
            for rule in matched
            if self._claim(session, context, rule)
        ]
        # Claims must be durable before any job leaves the process.
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            logger.warning(
                "automation.claim_conflict",
                extra={"deal_id": str(context.deal.id), "trigger": context.trigger, "error": str(exc)},
            )
            return []

        queued: list[QueuedJob] = []
        for rule_id, delay_ms in claimed:
            job = self.queue.enqueue(
                EXECUTE_JOB,
                {
                    "automation_id": str(rule_id),
                    "deal_id": str(context.deal.id),
                    "context": context.model_dump(mode="json"),
                },
                delay_ms,
            )
            queued.append(job)
            observe_automation_enqueued(context.trigger)
            logger.info(
                "automation.enqueued",
                extra={
                    "automation_id": str(rule_id),
                    "deal_id": str(context.deal.id),
                    "trigger": context.trigger,
                    "job_id": job.job_id,
                    "delay_ms": delay_ms,
                },
            )
            audit.record(
                actor_user_id=context.user_id or "system",
                entity_type="crm.automation_rule",
                entity_id=str(rule_id),
                action="automation.queued",
                before=None,
                after={
                    "job_id": job.job_id,
                    "deal_id": str(context.deal.id),
                    "trigger": context.trigger,
                    "event_id": context.event_id,
                    "delay_ms": delay_ms,
                },
                correlation_id=context.correlation_id,
                workspace_id=str(context.deal.workspace_id),
            )
        return queued

    def handle_event(self, session: Session, envelope: dict[str, Any]) -> list[QueuedJob]:
        """Entry point for deal lifecycle events published on the event bus."""
        event_type = str(envelope.get("event_type") or "")
        trigger = DEAL_EVENT_TRIGGERS.get(event_type)
        if trigger is None:
            return []

        meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
        if meta.get("origin_automation_id"):
            logger.info(
                "automation.event_ignored",
                extra={"trigger": trigger, "automation_id": str(meta["origin_automation_id"])},
            )
            return []

        payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
        try:
            context = AutomationContext.model_validate(
                {
                    "deal": payload.get("deal"),
                    "trigger": trigger,
                    "previous_value": payload.get("previous_value"),
                    "new_value": payload.get("new_value"),
                    "user_id": payload.get("user_id") or envelope.get("actor_user_id"),
                    "event_id": envelope.get("event_id"),
                    "correlation_id": envelope.get("correlation_id"),
                }
            )
        except ValidationError as exc:
            logger.warning("automation.event_invalid", extra={"trigger": trigger, "error": str(exc)})
            return []

        return self.trigger_automations(session, context)

    def _find_claim(self, session: Session, dedupe_key: str) -> CRMIdempotencyKey | None:
        return session.scalar(
            select(CRMIdempotencyKey).where(
                and_(
                    CRMIdempotencyKey.endpoint == self.dedupe_endpoint,
                    CRMIdempotencyKey.key == dedupe_key,
                )
            )
        )

    def _claim(self, session: Session, context: AutomationContext, rule: CRMAutomationRule) -> bool:
        if not context.event_id:
            return True

        dedupe_key = f"{context.event_id}:{rule.id}"
        if self._find_claim(session, dedupe_key) is not None:
            return False

        request_hash = hashlib.sha256(
            f"{context.trigger}:{context.deal.id}:{dedupe_key}".encode("utf-8")
        ).hexdigest()
        try:
            with session.begin_nested():
                session.add(
                    CRMIdempotencyKey(
                        endpoint=self.dedupe_endpoint,
                        key=dedupe_key,
                        request_hash=request_hash,
                        response_json=json.dumps(
                            {"status": "queued", "event_id": context.event_id, "rule_id": str(rule.id)}
                        ),
                    )
                )
        except IntegrityError:
            logger.info(
                "automation.already_claimed",
                extra={"automation_id": str(rule.id), "deal_id": str(context.deal.id), "trigger": context.trigger},
            )
            return False
        return True

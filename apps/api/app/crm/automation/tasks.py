from __future__ import annotations

import logging
import uuid
from typing import Any

from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.crm.automation.actions import AutomationActionExecutor
from app.crm.automation.runner import AutomationExecutionRunner
from app.notifications.client import build_email_client


logger = logging.getLogger("app.crm.jobs")

automation_runner = AutomationExecutionRunner(AutomationActionExecutor(build_email_client()))


@celery_app.task(name="app.tasks.execute_automation", bind=True)
def execute_automation_task(self, payload: dict[str, Any]) -> dict[str, Any]:  # type: ignore[no-untyped-def]
    settings = get_settings()
    session = SessionLocal()
    try:
        log = automation_runner.execute_automation(
            session,
            uuid.UUID(str(payload["automation_id"])),
            uuid.UUID(str(payload["deal_id"])),
            payload.get("context") or {},
        )
    except Exception as exc:
        logger.warning(
            "automation.retry_scheduled",
            extra={
                "job_id": self.request.id,
                "automation_id": str(payload.get("automation_id")),
                "error": str(exc),
            },
        )
        raise self.retry(
            exc=exc,
            countdown=settings.automation_retry_backoff_seconds,
            max_retries=settings.automation_max_retries,
        )
    finally:
        session.close()

    if log is None:
        return {"status": "IGNORED", "log_id": None}
    return {"status": log.status, "log_id": str(log.id)}

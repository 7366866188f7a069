from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from celery import Celery

from app.core.celery_app import celery_app as default_celery_app
from app.core.config import Settings, get_settings


logger = logging.getLogger("app.crm.automation.queue")

EXECUTE_JOB = "execute"
JOB_TASK_NAMES = {EXECUTE_JOB: "app.tasks.execute_automation"}
# Only these environments fall back to the in-process queue under "auto".
IN_MEMORY_ENVS = frozenset({"local", "test", "testing"})


@dataclass
class QueuedJob:
    job_name: str
    payload: dict[str, Any]
    delay_ms: int
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def scheduled_for(self) -> datetime:
        return self.enqueued_at + timedelta(milliseconds=self.delay_ms)


class AutomationQueue(Protocol):
    def enqueue(self, job_name: str, payload: dict[str, Any], delay_ms: int) -> QueuedJob: ...


class InMemoryAutomationQueue:
    """Keeps jobs in a list for local and test runs.

    Nothing external consumes it: jobs are taken by the inline runner or by
    the in-process worker polling ``pop_due``. Once ``max_jobs`` are pending
    the oldest job is dropped.
    """

    def __init__(self, max_jobs: int = 10000) -> None:
        self.jobs: list[QueuedJob] = []
        self.max_jobs = max_jobs
        self._lock = threading.Lock()

    def enqueue(self, job_name: str, payload: dict[str, Any], delay_ms: int) -> QueuedJob:
        job = QueuedJob(job_name=job_name, payload=payload, delay_ms=max(0, int(delay_ms)))
        with self._lock:
            self.jobs.append(job)
            overflow = self.jobs[: max(0, len(self.jobs) - self.max_jobs)]
            del self.jobs[: len(overflow)]
        for dropped in overflow:
            logger.warning(
                "automation.queue_overflow",
                extra={"job_id": dropped.job_id, "status": "DROPPED", "delay_ms": dropped.delay_ms},
            )
        return job

    def take(self, job: QueuedJob) -> bool:
        """Remove ``job`` if it is still pending. Only one caller wins."""
        with self._lock:
            for index, item in enumerate(self.jobs):
                if item.job_id == job.job_id:
                    del self.jobs[index]
                    return True
        return False

    def pop_due(self, now: datetime | None = None) -> list[QueuedJob]:
        cutoff = now or datetime.now(timezone.utc)
        with self._lock:
            due = [job for job in self.jobs if job.scheduled_for <= cutoff]
            self.jobs = [job for job in self.jobs if job.scheduled_for > cutoff]
        return due

    def drain(self) -> list[QueuedJob]:
        with self._lock:
            drained = list(self.jobs)
            self.jobs.clear()
        return drained

    def clear(self) -> None:
        with self._lock:
            self.jobs.clear()


class CeleryAutomationQueue:
    def __init__(self, celery_app: Celery | None = None) -> None:
        self.celery_app = celery_app or default_celery_app

    def enqueue(self, job_name: str, payload: dict[str, Any], delay_ms: int) -> QueuedJob:
        task_name = JOB_TASK_NAMES.get(job_name)
        if task_name is None:
            raise ValueError(f"unsupported automation job: {job_name}")

        job = QueuedJob(job_name=job_name, payload=payload, delay_ms=max(0, int(delay_ms)))
        self.celery_app.send_task(
            task_name,
            kwargs={"payload": payload},
            countdown=job.delay_ms / 1000,
            task_id=job.job_id,
        )
        return job


def build_automation_queue(settings: Settings | None = None) -> AutomationQueue:
    resolved = settings or get_settings()
    backend_choice = resolved.automation_queue_backend.lower()
    if backend_choice == "auto":
        backend_choice = "inmemory" if resolved.app_env.lower() in IN_MEMORY_ENVS else "celery"

    logger.info("automation.queue_backend", extra={"status": backend_choice})
    if backend_choice == "celery":
        return CeleryAutomationQueue()
    return InMemoryAutomationQueue(max_jobs=resolved.automation_inmemory_max_jobs)

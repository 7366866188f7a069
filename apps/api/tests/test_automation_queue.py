from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.database import Base
from app.crm.automation import tasks
from app.crm.automation.actions import AutomationActionExecutor
from app.crm.automation.queue import (
    EXECUTE_JOB,
    CeleryAutomationQueue,
    InMemoryAutomationQueue,
    build_automation_queue,
)
from app.crm.automation.runner import AutomationExecutionRunner
from app.crm.automation.snapshot import snapshot_from_deal
from app.crm.models import CRMAutomationLog, CRMAutomationRule, CRMDeal, CRMPipeline, CRMPipelineStage
from app.notifications.client import StubEmailClient


class _RecordingCeleryApp:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def send_task(self, name: str, **kwargs: Any) -> None:
        self.sent.append({"name": name, **kwargs})


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _seed_rule(session: Session) -> tuple[CRMAutomationRule, CRMDeal]:
    pipeline = CRMPipeline(workspace_id=uuid.uuid4(), name="Sales")
    session.add(pipeline)
    session.flush()
    stage = CRMPipelineStage(pipeline_id=pipeline.id, name="Lead", position=0)
    session.add(stage)
    session.flush()
    deal = CRMDeal(
        workspace_id=pipeline.workspace_id,
        pipeline_id=pipeline.id,
        stage_id=stage.id,
        title="Queued Deal",
        value=Decimal("250"),
    )
    rule = CRMAutomationRule(
        pipeline_id=pipeline.id,
        name="Queued rule",
        trigger="DEAL_CREATED",
        conditions_json={},
        actions_json=[{"type": "CREATE_ACTIVITY", "title": "Queued for {{deal.title}}"}],
    )
    session.add_all([deal, rule])
    session.commit()
    return rule, deal


def test_celery_queue_sends_task_with_countdown() -> None:
    app = _RecordingCeleryApp()
    queue = CeleryAutomationQueue(app)  # type: ignore[arg-type]

    job = queue.enqueue(EXECUTE_JOB, {"automation_id": "a", "deal_id": "d"}, 300000)

    assert app.sent == [
        {
            "name": "app.tasks.execute_automation",
            "kwargs": {"payload": {"automation_id": "a", "deal_id": "d"}},
            "countdown": 300.0,
            "task_id": job.job_id,
        }
    ]
    assert job.delay_ms == 300000
    assert job.scheduled_for > job.enqueued_at


def test_celery_queue_rejects_unknown_jobs() -> None:
    queue = CeleryAutomationQueue(_RecordingCeleryApp())  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="unsupported automation job"):
        queue.enqueue("cleanup", {}, 0)


def test_in_memory_queue_clamps_negative_delay() -> None:
    queue = InMemoryAutomationQueue()
    job = queue.enqueue(EXECUTE_JOB, {}, -10)
    assert job.delay_ms == 0
    assert queue.drain() == [job]
    assert queue.jobs == []


def test_in_memory_queue_pops_only_due_jobs() -> None:
    queue = InMemoryAutomationQueue()
    immediate = queue.enqueue(EXECUTE_JOB, {"n": 1}, 0)
    delayed = queue.enqueue(EXECUTE_JOB, {"n": 2}, 60000)

    assert queue.pop_due(immediate.enqueued_at) == [immediate]
    assert queue.pop_due(delayed.enqueued_at + timedelta(seconds=59)) == []
    assert queue.pop_due(delayed.enqueued_at + timedelta(seconds=60)) == [delayed]
    assert queue.jobs == []


def test_in_memory_queue_take_succeeds_once() -> None:
    queue = InMemoryAutomationQueue()
    job = queue.enqueue(EXECUTE_JOB, {}, 0)
    assert queue.take(job) is True
    assert queue.take(job) is False


def test_in_memory_queue_drops_oldest_beyond_capacity() -> None:
    queue = InMemoryAutomationQueue(max_jobs=2)
    first = queue.enqueue(EXECUTE_JOB, {"n": 1}, 0)
    second = queue.enqueue(EXECUTE_JOB, {"n": 2}, 0)
    third = queue.enqueue(EXECUTE_JOB, {"n": 3}, 0)

    assert [job.job_id for job in queue.jobs] == [second.job_id, third.job_id]
    assert first not in queue.jobs


@pytest.mark.parametrize(
    ("backend", "app_env", "expected"),
    [
        ("auto", "local", InMemoryAutomationQueue),
        ("auto", "test", InMemoryAutomationQueue),
        ("auto", "staging", CeleryAutomationQueue),
        ("auto", "production", CeleryAutomationQueue),
        ("celery", "local", CeleryAutomationQueue),
        ("inmemory", "production", InMemoryAutomationQueue),
    ],
)
def test_build_automation_queue_selects_backend(backend: str, app_env: str, expected: type) -> None:
    queue = build_automation_queue(Settings(automation_queue_backend=backend, app_env=app_env))
    assert isinstance(queue, expected)


def test_celery_task_executes_automation(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    rule, deal = _seed_rule(db_session)
    monkeypatch.setattr(tasks, "SessionLocal", lambda: db_session)
    monkeypatch.setattr(
        tasks,
        "automation_runner",
        AutomationExecutionRunner(AutomationActionExecutor(StubEmailClient()), recheck_conditions=True),
    )
    payload = {
        "automation_id": str(rule.id),
        "deal_id": str(deal.id),
        "context": {
            "deal": snapshot_from_deal(deal).model_dump(mode="json"),
            "trigger": "DEAL_CREATED",
            "correlation_id": "celery-corr-1",
        },
    }

    result = tasks.execute_automation_task.run(payload)

    assert result["status"] == "SUCCESS"
    log = db_session.scalar(select(CRMAutomationLog).where(CRMAutomationLog.id == uuid.UUID(result["log_id"])))
    assert log is not None
    assert log.correlation_id == "celery-corr-1"


def test_celery_task_ignores_inactive_rule(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    rule, deal = _seed_rule(db_session)
    rule.is_active = False
    db_session.commit()
    monkeypatch.setattr(tasks, "SessionLocal", lambda: db_session)

    context = {"deal": snapshot_from_deal(deal).model_dump(mode="json"), "trigger": "DEAL_CREATED"}
    result = tasks.execute_automation_task.run(
        {"automation_id": str(rule.id), "deal_id": str(deal.id), "context": context}
    )
    assert result == {"status": "IGNORED", "log_id": None}


def test_celery_task_surfaces_errors_for_retry(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    class _FailingRunner:
        def execute_automation(self, *args: Any, **kwargs: Any) -> None:
            raise RuntimeError("smtp down")

    monkeypatch.setattr(tasks, "SessionLocal", lambda: db_session)
    monkeypatch.setattr(tasks, "automation_runner", _FailingRunner())

    with pytest.raises(RuntimeError, match="smtp down"):
        tasks.execute_automation_task.run({"automation_id": str(uuid.uuid4()), "deal_id": str(uuid.uuid4())})

from __future__ import annotations

import uuid
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.core.database import Base
from app.crm.automation.actions import AutomationActionExecutor
from app.crm.automation.queue import EXECUTE_JOB, InMemoryAutomationQueue
from app.crm.automation.runner import AutomationExecutionRunner, InMemoryJobWorker, run_due_jobs, run_jobs_inline
from app.crm.automation.snapshot import snapshot_from_deal
from app.crm.models import (
    CRMAutomationLog,
    CRMAutomationRule,
    CRMDeal,
    CRMPipeline,
    CRMPipelineStage,
    CRMTag,
    CRMTask,
)
from app.notifications.client import StubEmailClient


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


@pytest.fixture(autouse=True)
def clear_audit() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    yield
    audit.audit_entries.clear()


@pytest.fixture()
def runner() -> AutomationExecutionRunner:
    return AutomationExecutionRunner(AutomationActionExecutor(StubEmailClient()), recheck_conditions=True)


@pytest.fixture()
def deal(db_session: Session) -> CRMDeal:
    pipeline = CRMPipeline(workspace_id=uuid.uuid4(), name="Sales")
    db_session.add(pipeline)
    db_session.flush()
    stage = CRMPipelineStage(pipeline_id=pipeline.id, name="Lead", position=0)
    db_session.add(stage)
    db_session.flush()
    record = CRMDeal(
        workspace_id=pipeline.workspace_id,
        pipeline_id=pipeline.id,
        stage_id=stage.id,
        title="Test Deal",
        value=Decimal("1000"),
        probability=20,
    )
    db_session.add(record)
    db_session.commit()
    return record


def _add_rule(session: Session, deal: CRMDeal, actions: list[Any], **overrides: Any) -> CRMAutomationRule:
    values: dict[str, Any] = {
        "pipeline_id": deal.pipeline_id,
        "name": "Rule",
        "trigger": "DEAL_UPDATED",
        "conditions_json": {},
        "actions_json": actions,
        "is_active": True,
    }
    values.update(overrides)
    rule = CRMAutomationRule(**values)
    session.add(rule)
    session.commit()
    return rule


def _context(deal: CRMDeal, correlation_id: str | None = "runner-corr-1") -> dict[str, Any]:
    return {
        "deal": snapshot_from_deal(deal).model_dump(mode="json"),
        "trigger": "DEAL_UPDATED",
        "correlation_id": correlation_id,
    }


def test_failed_action_does_not_stop_later_actions(
    db_session: Session,
    runner: AutomationExecutionRunner,
    deal: CRMDeal,
) -> None:
    rule = _add_rule(
        db_session,
        deal,
        [
            {"type": "ADD_TAG", "tag_name": "vip"},
            {"type": "CREATE_TASK", "title": "Call {{deal.title}}"},
        ],
    )

    log = runner.execute_automation(db_session, rule.id, deal.id, _context(deal))

    assert log is not None
    assert log.status == "FAILED"
    assert log.correlation_id == "runner-corr-1"
    assert log.executed_at is not None
    assert log.completed_at is not None
    results = log.actions_json
    assert [item["action"]["type"] for item in results] == ["ADD_TAG", "CREATE_TASK"]
    assert results[0]["success"] is False
    assert results[0]["error"] == 'Tag "vip" not found'
    assert results[1]["success"] is True

    tasks = db_session.scalars(select(CRMTask).where(CRMTask.deal_id == deal.id)).all()
    assert [task.title for task in tasks] == ["Call Test Deal"]
    assert tasks[0].automation_id == rule.id

    db_session.refresh(rule)
    assert rule.trigger_count == 1
    assert rule.last_triggered_at is not None


def test_successful_run_is_logged_and_audited(
    db_session: Session,
    runner: AutomationExecutionRunner,
    deal: CRMDeal,
) -> None:
    db_session.add(CRMTag(workspace_id=deal.workspace_id, name="vip"))
    db_session.commit()
    rule = _add_rule(
        db_session,
        deal,
        [{"type": "ADD_TAG", "tagName": "vip"}, {"type": "UPDATE_PROBABILITY", "increaseProbability": 30}],
    )

    log = runner.execute_automation(db_session, rule.id, deal.id, _context(deal))

    assert log is not None
    assert log.status == "SUCCESS"
    assert log.error is None
    assert log.actions_json[1]["result"] == {"old_probability": 20, "new_probability": 50}
    db_session.refresh(deal)
    assert deal.probability == 50

    executed = audit.entries_for("crm.automation_rule", str(rule.id), "automation.executed")
    assert executed
    assert executed[-1]["after"]["status"] == "SUCCESS"
    assert executed[-1]["correlation_id"] == "runner-corr-1"
    assert executed[-1]["automation_id"] == str(rule.id)


def test_deleted_deal_is_skipped(
    db_session: Session,
    runner: AutomationExecutionRunner,
    deal: CRMDeal,
) -> None:
    rule = _add_rule(db_session, deal, [{"type": "CREATE_TASK", "title": "Follow up"}])
    context = _context(deal)
    deal.deleted_at = deal.created_at
    db_session.commit()

    log = runner.execute_automation(db_session, rule.id, deal.id, context)

    assert log is not None
    assert log.status == "SKIPPED"
    assert log.error == "Deal not found"
    assert log.actions_json == []
    db_session.refresh(rule)
    assert rule.trigger_count == 0


def test_missing_deal_is_skipped(db_session: Session, runner: AutomationExecutionRunner, deal: CRMDeal) -> None:
    rule = _add_rule(db_session, deal, [{"type": "CREATE_TASK", "title": "Follow up"}])
    log = runner.execute_automation(db_session, rule.id, uuid.uuid4(), _context(deal))
    assert log is not None
    assert log.status == "SKIPPED"
    assert log.error == "Deal not found"


def test_conditions_are_rechecked_before_running(
    db_session: Session,
    deal: CRMDeal,
) -> None:
    rule = _add_rule(
        db_session,
        deal,
        [{"type": "CREATE_TASK", "title": "Big deal"}],
        conditions_json={"minValue": 500},
    )
    context = _context(deal)
    deal.value = Decimal("100")
    db_session.commit()

    rechecking = AutomationExecutionRunner(AutomationActionExecutor(StubEmailClient()), recheck_conditions=True)
    skipped = rechecking.execute_automation(db_session, rule.id, deal.id, context)
    assert skipped is not None
    assert skipped.status == "SKIPPED"
    assert skipped.error == "Conditions no longer match"

    trusting = AutomationExecutionRunner(AutomationActionExecutor(StubEmailClient()), recheck_conditions=False)
    ran = trusting.execute_automation(db_session, rule.id, deal.id, context)
    assert ran is not None
    assert ran.status == "SUCCESS"


def test_inactive_or_deleted_rule_is_ignored(
    db_session: Session,
    runner: AutomationExecutionRunner,
    deal: CRMDeal,
) -> None:
    inactive = _add_rule(db_session, deal, [{"type": "CREATE_TASK", "title": "Nope"}], is_active=False)
    assert runner.execute_automation(db_session, inactive.id, deal.id, _context(deal)) is None
    assert runner.execute_automation(db_session, uuid.uuid4(), deal.id, _context(deal)) is None
    assert db_session.scalars(select(CRMAutomationLog)).all() == []


def test_unknown_stored_action_fails_only_that_action(
    db_session: Session,
    runner: AutomationExecutionRunner,
    deal: CRMDeal,
) -> None:
    rule = _add_rule(
        db_session,
        deal,
        [{"type": "SEND_SMS", "to": "+100"}, {"type": "CREATE_ACTIVITY", "title": "Logged"}],
    )
    log = runner.execute_automation(db_session, rule.id, deal.id, _context(deal))

    assert log is not None
    assert log.status == "FAILED"
    assert log.actions_json[0]["error"] == "Unknown action: SEND_SMS"
    assert log.actions_json[1]["success"] is True


class _ExplodingRunner(AutomationExecutionRunner):
    def _run(self, session, rule, log, deal_id):  # type: ignore[no-untyped-def]
        raise RuntimeError("database went away")


def test_unexpected_error_marks_log_failed_and_reraises(db_session: Session, deal: CRMDeal) -> None:
    rule = _add_rule(db_session, deal, [{"type": "CREATE_TASK", "title": "Follow up"}])
    runner = _ExplodingRunner(AutomationActionExecutor(StubEmailClient()), recheck_conditions=True)

    with pytest.raises(RuntimeError, match="database went away"):
        runner.execute_automation(db_session, rule.id, deal.id, _context(deal))

    log = db_session.scalar(select(CRMAutomationLog).where(CRMAutomationLog.automation_id == rule.id))
    assert log is not None
    assert log.status == "FAILED"
    assert log.error == "database went away"


def test_run_jobs_inline_runs_undelayed_jobs_only(
    db_session: Session,
    runner: AutomationExecutionRunner,
    deal: CRMDeal,
) -> None:
    rule = _add_rule(db_session, deal, [{"type": "CREATE_TASK", "title": "Follow up"}])
    queue = InMemoryAutomationQueue()
    payload = {"automation_id": str(rule.id), "deal_id": str(deal.id), "context": _context(deal)}
    immediate = queue.enqueue(EXECUTE_JOB, payload, 0)
    delayed = queue.enqueue(EXECUTE_JOB, payload, 60000)

    logs = run_jobs_inline(db_session, runner, queue, [immediate, delayed])

    assert [log.status for log in logs] == ["SUCCESS"]
    assert [job.job_id for job in queue.jobs] == [delayed.job_id]


def test_run_jobs_inline_ignores_external_queues(
    db_session: Session,
    runner: AutomationExecutionRunner,
    deal: CRMDeal,
) -> None:
    class _ExternalQueue:
        def enqueue(self, job_name: str, payload: dict[str, Any], delay_ms: int) -> Any:
            return InMemoryAutomationQueue().enqueue(job_name, payload, delay_ms)

    rule = _add_rule(db_session, deal, [{"type": "CREATE_TASK", "title": "Follow up"}])
    queue = _ExternalQueue()
    job = queue.enqueue(EXECUTE_JOB, {"automation_id": str(rule.id), "deal_id": str(deal.id)}, 0)

    assert run_jobs_inline(db_session, runner, queue, [job]) == []
    assert db_session.scalars(select(CRMAutomationLog)).all() == []


@pytest.fixture()
def fk_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        # pysqlite needs explicit BEGIN for savepoints to nest correctly.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")

    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def fk_deal(fk_session: Session) -> CRMDeal:
    pipeline = CRMPipeline(workspace_id=uuid.uuid4(), name="Sales")
    fk_session.add(pipeline)
    fk_session.flush()
    stage = CRMPipelineStage(pipeline_id=pipeline.id, name="Lead", position=0)
    fk_session.add(stage)
    fk_session.flush()
    record = CRMDeal(
        workspace_id=pipeline.workspace_id,
        pipeline_id=pipeline.id,
        stage_id=stage.id,
        title="Test Deal",
        value=Decimal("1000"),
        probability=20,
    )
    fk_session.add(record)
    fk_session.commit()
    return record


MIXED_ACTIONS = [
    {"type": "CREATE_TASK", "title": "Call {{deal.title}}"},
    {"type": "ASSIGN_OWNER", "ownerId": "00000000-0000-4000-8000-000000000001"},
    {"type": "UPDATE_PROBABILITY", "increaseProbability": 10},
]


def _assert_owner_failure_isolated(session: Session, rule: CRMAutomationRule, deal_id: uuid.UUID, log: Any) -> None:
    assert log is not None
    assert log.status == "FAILED"
    assert [item["success"] for item in log.actions_json] == [True, False, True]

    session.expire_all()
    tasks = session.scalars(select(CRMTask).where(CRMTask.deal_id == deal_id)).all()
    assert [task.title for task in tasks] == ["Call Test Deal"]
    stored = session.get(CRMDeal, deal_id)
    assert stored is not None
    assert stored.owner_id is None
    assert stored.probability == 30
    persisted_log = session.get(CRMAutomationLog, log.id)
    assert persisted_log is not None
    assert persisted_log.status == "FAILED"
    assert len(persisted_log.actions_json) == 3
    assert session.get(CRMAutomationRule, rule.id).trigger_count == 1


def test_unknown_owner_fails_only_that_action(
    fk_session: Session,
    runner: AutomationExecutionRunner,
    fk_deal: CRMDeal,
) -> None:
    deal_id = fk_deal.id
    rule = _add_rule(fk_session, fk_deal, MIXED_ACTIONS)

    log = runner.execute_automation(fk_session, rule.id, deal_id, _context(fk_deal))

    _assert_owner_failure_isolated(fk_session, rule, deal_id, log)
    assert log.actions_json[1]["error"] == "Owner 00000000-0000-4000-8000-000000000001 not found"


class _UncheckedOwnerExecutor(AutomationActionExecutor):
    def _require_owner(self, session, workspace_id, owner_id, *, action_type="ASSIGN_OWNER"):  # type: ignore[no-untyped-def]
        return None


def test_database_error_in_action_rolls_back_only_that_action(
    fk_session: Session,
    fk_deal: CRMDeal,
) -> None:
    deal_id = fk_deal.id
    rule = _add_rule(fk_session, fk_deal, MIXED_ACTIONS)
    runner = AutomationExecutionRunner(_UncheckedOwnerExecutor(StubEmailClient()), recheck_conditions=True)

    log = runner.execute_automation(fk_session, rule.id, deal_id, _context(fk_deal))

    _assert_owner_failure_isolated(fk_session, rule, deal_id, log)
    assert "FOREIGN KEY constraint failed" in log.actions_json[1]["error"]


def test_delayed_in_memory_job_runs_once_due(
    db_session: Session,
    runner: AutomationExecutionRunner,
    deal: CRMDeal,
) -> None:
    rule = _add_rule(db_session, deal, [{"type": "CREATE_TASK", "title": "Check in"}], delay_minutes=5)
    queue = InMemoryAutomationQueue()
    payload = {"automation_id": str(rule.id), "deal_id": str(deal.id), "context": _context(deal)}
    delayed = queue.enqueue(EXECUTE_JOB, payload, 300000)

    assert run_jobs_inline(db_session, runner, queue, [delayed]) == []
    assert run_due_jobs(db_session, runner, queue, delayed.enqueued_at + timedelta(minutes=4)) == []
    assert queue.jobs == [delayed]

    logs = run_due_jobs(db_session, runner, queue, delayed.scheduled_for)

    assert [log.status for log in logs] == ["SUCCESS"]
    assert queue.jobs == []
    tasks = db_session.scalars(select(CRMTask).where(CRMTask.deal_id == deal.id)).all()
    assert [task.title for task in tasks] == ["Check in"]


def test_worker_runs_due_jobs_through_session_scope(
    db_session: Session,
    runner: AutomationExecutionRunner,
    deal: CRMDeal,
) -> None:
    rule = _add_rule(db_session, deal, [{"type": "CREATE_ACTIVITY", "title": "Waited"}])
    queue = InMemoryAutomationQueue()
    payload = {"automation_id": str(rule.id), "deal_id": str(deal.id), "context": _context(deal)}
    job = queue.enqueue(EXECUTE_JOB, payload, 60000)
    scopes: list[Session] = []

    @contextmanager
    def session_scope() -> Iterator[Session]:
        scopes.append(db_session)
        yield db_session

    worker = InMemoryJobWorker(session_scope, runner, queue, interval_seconds=30)

    assert worker.run_once(job.enqueued_at) == []
    assert scopes == []

    logs = worker.run_once(job.scheduled_for + timedelta(seconds=1))
    assert [log.status for log in logs] == ["SUCCESS"]
    assert len(scopes) == 1
    assert queue.jobs == []

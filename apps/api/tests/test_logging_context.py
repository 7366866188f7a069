from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMAutomationLog
from app.crm.service import ActorUser
from app.middleware.rate_limit import reset_rate_limiter
from app.main import app, automation_queue


ALL_PERMISSIONS = {
    "crm.pipelines.manage",
    "crm.deals.create",
    "crm.deals.read",
    "crm.deals.update",
    "crm.automations.manage",
}


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("AUTO_RUN_AUTOMATION_JOBS", "true")
    monkeypatch.setenv("AUTOMATION_WORKER_POLL_SECONDS", "0")
    get_settings.cache_clear()
    reset_rate_limiter()
    automation_queue.clear()  # type: ignore[attr-defined]
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    automation_queue.clear()  # type: ignore[attr-defined]


@pytest.fixture()
def workspace_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def client(db_session: Session, workspace_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            workspace_ids=[workspace_id],
            current_workspace_id=workspace_id,
            permissions=set(ALL_PERMISSIONS),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/crm/deals/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/deals/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_job_context_and_correlation_id(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    pipeline = client.post("/api/crm/pipelines", json={"name": "Default", "stages": [{"name": "Lead", "position": 0}]})
    assert pipeline.status_code == 201
    rule = client.post(
        "/api/crm/automations",
        json={
            "pipeline_id": pipeline.json()["id"],
            "name": "Task for new deals",
            "trigger": "DEAL_CREATED",
            "actions": [{"type": "CREATE_TASK", "title": "Intro call for {{deal.title}}"}],
        },
    )
    assert rule.status_code == 201

    deal = client.post(
        "/api/crm/deals",
        json={"pipeline_id": pipeline.json()["id"], "title": "Logged Deal"},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert deal.status_code == 201

    log = db_session.scalar(select(CRMAutomationLog).where(CRMAutomationLog.deal_id == uuid.UUID(deal.json()["id"])))
    assert log is not None

    job_records = [record for record in caplog.records if record.name == "app.crm.jobs"]
    assert job_records
    assert {record.getMessage() for record in job_records} >= {"job.started", "job.finished"}
    assert all(
        getattr(record, "job_id", None) == str(log.id)
        and getattr(record, "job_type", None) == "AUTOMATION_EXECUTION"
        and getattr(record, "automation_id", None) == rule.json()["id"]
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in job_records
        if record.getMessage() in {"job.started", "job.finished"}
    )

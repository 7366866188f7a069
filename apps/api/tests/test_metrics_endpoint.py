from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app, automation_queue
from app.middleware.rate_limit import reset_rate_limiter


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
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

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            workspace_ids=[workspace_id],
            current_workspace_id=workspace_id,
            permissions={
                "crm.pipelines.manage",
                "crm.deals.create",
                "crm.deals.read",
                "crm.deals.update",
                "crm.automations.manage",
            },
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_job_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    pipeline = client.post(
        "/api/crm/pipelines",
        json={
            "name": "Metrics Pipeline",
            "stages": [{"name": "Lead", "position": 0}, {"name": "Proposal", "position": 1}],
        },
    )
    assert pipeline.status_code == 201
    proposal_id = next(stage["id"] for stage in pipeline.json()["stages"] if stage["name"] == "Proposal")

    rule = client.post(
        "/api/crm/automations",
        json={
            "pipeline_id": pipeline.json()["id"],
            "name": "Proposal follow-up",
            "trigger": "STAGE_ENTER",
            "trigger_stage_id": proposal_id,
            "actions": [{"type": "CREATE_TASK", "title": "Send proposal for {{deal.title}}"}],
        },
    )
    assert rule.status_code == 201

    deal = client.post("/api/crm/deals", json={"pipeline_id": pipeline.json()["id"], "title": "Metrics Deal"})
    assert deal.status_code == 201

    moved = client.post(f"/api/crm/deals/{deal.json()['id']}/move-stage", json={"stage_id": proposal_id})
    assert moved.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_jobs_total" in body
    assert "crm_job_duration_seconds" in body
    assert "crm_automation_actions_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/deals/{id}/move-stage"' in body
    assert 'job_type="AUTOMATION_EXECUTION"' in body
    assert 'action_type="CREATE_TASK"' in body


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics").status_code == 404

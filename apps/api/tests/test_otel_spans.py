from __future__ import annotations

import os
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMAutomationLog
from app.crm.service import ActorUser
from app.main import app, automation_queue
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("pipeline-api")
    exporter.clear()
    return exporter


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


def _create_pipeline(client: TestClient) -> dict:
    response = client.post(
        "/api/crm/pipelines",
        json={"name": "Default", "is_default": True, "stages": [{"name": "Lead", "position": 0}]},
    )
    assert response.status_code == 201
    return response.json()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/api/crm/pipelines", json={"name": "Traced"}, headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_automation_span_contains_job_id_and_correlation(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    pipeline = _create_pipeline(client)
    rule = client.post(
        "/api/crm/automations",
        json={
            "pipeline_id": pipeline["id"],
            "name": "Note new deals",
            "trigger": "DEAL_CREATED",
            "actions": [{"type": "CREATE_ACTIVITY", "title": "New deal {{deal.title}}"}],
        },
    )
    assert rule.status_code == 201

    deal = client.post(
        "/api/crm/deals",
        json={"pipeline_id": pipeline["id"], "title": "Traced Deal", "value": 300},
        headers={"X-Correlation-Id": "otel-job-corr-1"},
    )
    assert deal.status_code == 201

    log = db_session.scalar(select(CRMAutomationLog).where(CRMAutomationLog.deal_id == uuid.UUID(deal.json()["id"])))
    assert log is not None

    spans = span_exporter.get_finished_spans()
    automation_spans = [span for span in spans if span.name == "crm.automation.run"]
    assert automation_spans
    assert any(
        span.attributes.get("job_id") == str(log.id)
        and span.attributes.get("job_type") == "AUTOMATION_EXECUTION"
        and span.attributes.get("automation_id") == rule.json()["id"]
        and span.attributes.get("trigger") == "DEAL_CREATED"
        and span.attributes.get("status") == "SUCCESS"
        and span.attributes.get("correlation_id") == "otel-job-corr-1"
        for span in automation_spans
    )

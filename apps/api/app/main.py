from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import SessionLocal, get_db
from app.core.events import InternalEvent, event_bus
from app.crm.automation.actions import AutomationActionExecutor
from app.crm.automation.dispatcher import AutomationDispatcher
from app.crm.automation.queue import InMemoryAutomationQueue, build_automation_queue
from app.crm.automation.runner import AutomationExecutionRunner, InMemoryJobWorker, run_jobs_inline
from app.crm.automation.triggers import DEAL_EVENT_TRIGGERS
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.notifications.client import build_email_client
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")

automation_queue = build_automation_queue()
automation_runner = AutomationExecutionRunner(AutomationActionExecutor(build_email_client()))
automation_dispatcher = AutomationDispatcher(automation_queue)


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _automation_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_deal_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    try:
        with _automation_session_scope() as session:
            queued = automation_dispatcher.handle_event(session, envelope)
            if queued and get_settings().auto_run_automation_jobs:
                run_jobs_inline(session, automation_runner, automation_queue, queued)
    except Exception as exc:
        logger.exception("automation_dispatch_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


def _start_in_memory_worker() -> InMemoryJobWorker | None:
    if not isinstance(automation_queue, InMemoryAutomationQueue):
        return None
    current = get_settings()
    if not current.auto_run_automation_jobs:
        logger.warning("automation.inmemory_queue_unconsumed", extra={"status": "NO_CONSUMER"})
        return None
    if current.automation_worker_poll_seconds <= 0:
        return None
    worker = InMemoryJobWorker(
        _automation_session_scope,
        automation_runner,
        automation_queue,
        current.automation_worker_poll_seconds,
    )
    worker.start()
    return worker


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in DEAL_EVENT_TRIGGERS:
        event_bus.subscribe(event_name, _on_deal_event)
    event_bus.publish("system.started", {"service": "api"})
    worker = _start_in_memory_worker()
    try:
        yield
    finally:
        if worker is not None:
            worker.stop()
        for event_name in DEAL_EVENT_TRIGGERS:
            event_bus.unsubscribe(event_name, _on_deal_event)
        event_bus.unsubscribe("system.started", _on_system_started)


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.state.automation_queue = automation_queue
app.state.automation_runner = automation_runner
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("pipeline-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())

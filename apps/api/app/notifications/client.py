from __future__ import annotations

import smtplib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Protocol

from opentelemetry import trace

from app.context import get_correlation_id
from app.core.config import Settings, get_settings


tracer = trace.get_tracer("app.notifications.client")


class EmailDeliveryError(Exception):
    """Raised when the outbound transport refuses or fails to deliver a message."""


class EmailClient(Protocol):
    def send_email(self, to: str, subject: str, html: str) -> None: ...


@dataclass(frozen=True)
class SentEmail:
    to: str
    subject: str
    html: str
    sent_at: datetime


@dataclass
class StubEmailClient:
    outbox: list[SentEmail] = field(default_factory=list)

    def send_email(self, to: str, subject: str, html: str) -> None:
        with tracer.start_as_current_span("email.send") as span:
            span.set_attribute("transport", "stub")
            span.set_attribute("correlation_id", get_correlation_id() or "")
            self.outbox.append(SentEmail(to=to, subject=subject, html=html, sent_at=datetime.now(timezone.utc)))

    def clear(self) -> None:
        self.outbox.clear()


class SmtpEmailClient:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def send_email(self, to: str, subject: str, html: str) -> None:
        settings = self.settings
        if not settings.smtp_host or not settings.smtp_sender_email:
            raise EmailDeliveryError("SMTP not configured")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = settings.smtp_sender_email
        message["To"] = to
        message.set_content(html, subtype="html")

        with tracer.start_as_current_span("email.send") as span:
            span.set_attribute("transport", "smtp")
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                if settings.smtp_use_ssl:
                    with smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=20) as server:
                        if settings.smtp_username:
                            server.login(settings.smtp_username, settings.smtp_password or "")
                        server.send_message(message)
                else:
                    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=20) as server:
                        if settings.smtp_use_starttls:
                            server.starttls()
                        if settings.smtp_username:
                            server.login(settings.smtp_username, settings.smtp_password or "")
                        server.send_message(message)
            except (smtplib.SMTPException, OSError) as exc:
                raise EmailDeliveryError(str(exc)) from exc


def build_email_client(settings: Settings | None = None) -> EmailClient:
    resolved = settings or get_settings()
    if resolved.smtp_host and resolved.smtp_sender_email:
        return SmtpEmailClient(resolved)
    return StubEmailClient()

from app.notifications.client import (
    EmailClient,
    EmailDeliveryError,
    SentEmail,
    SmtpEmailClient,
    StubEmailClient,
    build_email_client,
)

__all__ = [
    "EmailClient",
    "EmailDeliveryError",
    "SentEmail",
    "SmtpEmailClient",
    "StubEmailClient",
    "build_email_client",
]

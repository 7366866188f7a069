from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import decode_bearer_token
from app.core.config import get_settings


WINDOW_SECONDS = 60


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    """Per-key token buckets refilled continuously over a fixed window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, ...], _Bucket] = {}

    def take(self, key: tuple[str, ...], capacity: int, window_seconds: int = WINDOW_SECONDS) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_per_second = capacity / float(window_seconds)
        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * refill_per_second)
            bucket.refilled_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True, 0
            return False, max(1, math.ceil((1.0 - bucket.tokens) / refill_per_second))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Limits POST/PATCH/DELETE under /api/crm per user, workspace and resource."""

    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in self.mutating_methods
            or not request.url.path.startswith("/api/crm")
        ):
            return await call_next(request)

        key = (
            _resolve_user_id(request),
            request.headers.get("x-workspace-id", "-"),
            _resolve_resource(request.url.path),
        )
        allowed, retry_after = _limiter.take(key, settings.rate_limit_crm_mutations_per_minute)
        if allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or str(uuid.uuid4())
        )
        return JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": {"retry_after_seconds": retry_after},
                "correlation_id": correlation_id,
            },
            headers={"Retry-After": str(retry_after), "x-correlation-id": correlation_id},
        )


def _resolve_resource(path: str) -> str:
    # /api/crm/<resource>/...
    parts = [part for part in path.split("/") if part]
    return parts[2] if len(parts) > 2 else "crm"


def _resolve_user_id(request: Request) -> str:
    claims = decode_bearer_token(request)
    if not claims or claims.get("sub") is None:
        return "anonymous"
    return str(claims["sub"])


def reset_rate_limiter() -> None:
    _limiter.clear()

"""Per-user write budget for the CRM API.

Each (subject, route group) pair owns a token bucket that refills continuously
over a one minute window. Buckets that have been idle for a whole window are
back at full capacity, so they are dropped and recreated on the next write.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from pipeline_crm.core.config import get_settings
from pipeline_crm.crm.api import error_response

logger = logging.getLogger("crm.rate_limit")

WINDOW_SECONDS = 60
CRM_WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass
class WriteBucket:
    tokens: float
    last_refill: float


class WriteBudget:
    def __init__(self, window_seconds: int = WINDOW_SECONDS) -> None:
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], WriteBucket] = {}
        self._last_sweep = time.monotonic()

    def spend(self, subject: str, route_group: str, capacity: int) -> tuple[bool, int]:
        """Take one write from the bucket; returns ``(allowed, retry_after_seconds)``."""
        if capacity <= 0:
            return False, self.window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(self.window_seconds)
        key = (subject, route_group)

        with self._lock:
            self._evict_idle(now)
            bucket = self._buckets.setdefault(key, WriteBucket(tokens=float(capacity), last_refill=now))
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(capacity), bucket.tokens + elapsed * refill_rate)
            bucket.last_refill = now

            if bucket.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - bucket.tokens) / refill_rate))
            bucket.tokens -= 1.0
            return True, 0

    def tracked(self) -> int:
        with self._lock:
            return len(self._buckets)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._last_sweep = time.monotonic()

    def _evict_idle(self, now: float) -> None:
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in [key for key, bucket in self._buckets.items() if now - bucket.last_refill >= self.window_seconds]:
            del self._buckets[key]


write_budget = WriteBudget()


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or not path.startswith("/api/crm")
            or request.method.upper() not in CRM_WRITE_METHODS
        ):
            return await call_next(request)

        subject = _request_subject(request)
        route_group = _route_group(path)
        allowed, retry_after = write_budget.spend(
            subject,
            route_group,
            settings.rate_limit_crm_mutations_per_minute,
        )
        if allowed:
            return await call_next(request)

        logger.warning(
            "rate_limit.exceeded",
            extra={"user_id": subject, "route_group": route_group, "retry_after": retry_after},
        )
        response = error_response(
            request,
            status_code=429,
            code="crm_rate_limited",
            message="too many CRM writes, retry later",
            details={"route_group": route_group, "retry_after": retry_after},
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def _route_group(path: str) -> str:
    # /api/crm/<group>/...
    parts = [part for part in path.split("/") if part]
    return parts[2] if len(parts) > 2 else "crm"


def _request_subject(request: Request) -> str:
    context = getattr(request.state, "context", None)
    user_id = getattr(context, "user_id", None)
    if user_id:
        return user_id
    host = request.client.host if request.client else "unknown"
    return f"anonymous:{host}"


def reset_rate_limiter() -> None:
    write_budget.clear()

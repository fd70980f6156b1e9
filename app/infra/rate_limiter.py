# app/infra/rate_limiter.py
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Optional

from fastapi import HTTPException, Request, status

from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Sliding-window limiter held in process memory.

    Each replica keeps its own window, so N replicas allow up to
    N x max_requests per key.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def _trim(self, hits: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Record a hit for ``key`` if it is under the limit.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = self._clock()
        with self._lock:
            hits = self._hits[key]
            self._trim(hits, now)
            if len(hits) >= self.max_requests:
                retry_after = int(hits[0] + self.window_seconds - now) + 1
                masked = key[:4] + "***" if len(key) > 4 else "***"
                logger.warning(
                    "Rate limit exceeded for key=%s", masked,
                    extra={"key_masked": masked, "limit": self.max_requests, "retry_after": retry_after},
                )
                return False, retry_after
            hits.append(now)
            return True, None

    def cleanup(self) -> int:
        """Drop keys with no hits inside the window. Returns the number removed."""
        now = self._clock()
        with self._lock:
            for hits in self._hits.values():
                self._trim(hits, now)
            idle = [key for key, hits in self._hits.items() if not hits]
            for key in idle:
                del self._hits[key]
        return len(idle)


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitDependency:
    """FastAPI dependency limiting requests per client IP."""

    def __init__(self, limiter: InMemoryRateLimiter, scope: str = "http"):
        self.limiter = limiter
        self.scope = scope

    async def __call__(self, request: Request) -> None:
        allowed, retry_after = self.limiter.is_allowed(f"{self.scope}:{client_ip(request)}")
        if not allowed:
            inc_counter("rate_limited", scope=self.scope)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(retry_after)} if retry_after else None,
            )

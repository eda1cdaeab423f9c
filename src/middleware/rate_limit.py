"""In-memory sliding-window rate limiter.

One bucket per client IP. Suitable for the single-instance deployment this
service targets; the OAuth callback and health probe are never limited.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings

EXEMPT_PATHS = frozenset({"/health", "/oauth/callback"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding window rate limiter."""

    def __init__(
        self,
        app: Any,
        settings: Settings | None = None,
        clock: Any = time.monotonic,
    ) -> None:
        super().__init__(app)
        s = settings or get_settings()
        self._limit = s.rate_limit_per_minute
        self._window_seconds = 60.0
        self._clock = clock
        # ip -> request timestamps inside the current window
        self._hits: dict[str, list[float]] = defaultdict(list)

    @staticmethod
    def client_ip(request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _prune(self, ip: str, now: float) -> list[float]:
        cutoff = now - self._window_seconds
        hits = [t for t in self._hits[ip] if t > cutoff]
        if hits:
            self._hits[ip] = hits
        else:
            self._hits.pop(ip, None)
        return hits

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in EXEMPT_PATHS or self._limit <= 0:
            return await call_next(request)

        ip = self.client_ip(request)
        now = self._clock()
        hits = self._prune(ip, now)

        if len(hits) >= self._limit:
            retry_after = int(self._window_seconds - (now - hits[0]))
            return Response(
                content='{"detail":"Rate limit exceeded"}',
                status_code=429,
                media_type="application/json",
                headers={"Retry-After": str(max(retry_after, 1))},
            )

        hits.append(now)
        self._hits[ip] = hits

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self._limit)
        response.headers["X-RateLimit-Remaining"] = str(max(self._limit - len(hits), 0))
        return response

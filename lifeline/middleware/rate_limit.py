"""Sliding-window rate limiter for the public tracking surface.

Tracking links are unauthenticated apart from their bearer token, so the
endpoint serving them is the one place a guesser would hammer.  Only
paths under the configured prefixes are limited; the authenticated SOS
API and health checks pass straight through.  State is per process.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Iterable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_WINDOW_SECONDS = 60.0
_CLEANUP_EVERY = 1000  # requests


class TrackingRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding window over the last 60 seconds.

    Parameters
    ----------
    app:
        The ASGI application.
    max_requests_per_minute:
        Requests allowed per client IP per window.
    trusted_proxy_count:
        Reverse proxies in front of the service.  The client address is
        read from ``X-Forwarded-For`` at index ``-(trusted_proxy_count + 1)``;
        0 uses the direct connection address.
    limited_prefixes:
        Path prefixes subject to the limit.
    """

    def __init__(
        self,
        app: object,
        max_requests_per_minute: int = 30,
        trusted_proxy_count: int = 0,
        limited_prefixes: Iterable[str] = ("/session/",),
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._max_rpm = max_requests_per_minute
        self._trusted_proxy_count = trusted_proxy_count
        self._prefixes = tuple(limited_prefixes)
        self._hits: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()
        self._seen = 0

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not request.url.path.startswith(self._prefixes):
            return await call_next(request)

        client_ip = self._client_ip(request)
        now = time.monotonic()

        async with self._lock:
            self._seen += 1
            if self._seen >= _CLEANUP_EVERY:
                self._seen = 0
                self._evict_idle(now)

            window = self._hits.setdefault(client_ip, deque())
            while window and window[0] < now - _WINDOW_SECONDS:
                window.popleft()

            if len(window) >= self._max_rpm:
                retry_after = max(1, int(_WINDOW_SECONDS - (now - window[0])) + 1)
                logger.warning(
                    "rate_limit.exceeded",
                    client_ip=client_ip,
                    path_prefix=request.url.path.split("/", 2)[1],
                    requests_in_window=len(window),
                )
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Too many requests.", "retry_after_seconds": retry_after},
                    headers={"Retry-After": str(retry_after), "X-RateLimit-Limit": str(self._max_rpm)},
                )

            window.append(now)
            remaining = self._max_rpm - len(window)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self._max_rpm)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    def _client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            ips = [ip.strip() for ip in forwarded_for.split(",")]
            if self._trusted_proxy_count == 0:
                return ips[0]
            index = -(self._trusted_proxy_count + 1)
            return ips[index] if -index <= len(ips) else ips[0]
        if request.client:
            return request.client.host
        return "unknown"

    def _evict_idle(self, now: float) -> None:
        idle = [ip for ip, window in self._hits.items() if not window or window[-1] < now - _WINDOW_SECONDS]
        for ip in idle:
            del self._hits[ip]
        if idle:
            logger.debug("rate_limit.cleanup", removed_ips=len(idle))

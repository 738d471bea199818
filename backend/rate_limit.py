"""
Per-client rate limiting for the authentication endpoints.

A sliding window of request timestamps is kept per (client address, path);
once a client reaches the limit inside the window it receives 429 until the
oldest request falls out of the window. State is per process.
"""

import logging
import math
import os
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Iterable, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 10
DEFAULT_WINDOW_SECONDS = 15 * 60

RATE_LIMITED_PATHS = ("/api/auth/register", "/api/auth/login")


def _env_positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not an integer; using {default}")
        return default
    if value < 1:
        logger.warning(f"{name}={value} must be positive; using {default}")
        return default
    return value


class SlidingWindowLimiter:
    """Counts hits per key inside a moving time window."""

    def __init__(self, max_requests: int, window_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)

    def hit(self, key: Tuple[str, str]) -> Optional[int]:
        """
        Record a request for ``key``.

        Returns:
            None if the request is allowed, otherwise the seconds until
            the client may retry
        """
        now = self.clock()
        hits = self._hits[key]
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()

        if len(hits) >= self.max_requests:
            return max(1, math.ceil(hits[0] + self.window_seconds - now))

        hits.append(now)
        return None

    def reset(self) -> None:
        self._hits.clear()


auth_limiter = SlidingWindowLimiter(
    max_requests=_env_positive_int("AUTH_RATE_LIMIT", DEFAULT_MAX_REQUESTS),
    window_seconds=_env_positive_int("AUTH_RATE_WINDOW_SECONDS", DEFAULT_WINDOW_SECONDS),
)


class RateLimitingMiddleware:
    """ASGI middleware applying ``limiter`` to POST requests on ``paths``."""

    def __init__(self, app, limiter: SlidingWindowLimiter = auth_limiter,
                 paths: Iterable[str] = RATE_LIMITED_PATHS):
        self.app = app
        self.limiter = limiter
        self.paths = frozenset(paths)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope["method"] != "POST" or scope["path"] not in self.paths:
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        client_ip = request.client.host if request.client else "unknown"

        retry_after = self.limiter.hit((client_ip, scope["path"]))
        if retry_after is not None:
            logger.warning(f"Rate limit exceeded for {client_ip} on {scope['path']}")
            response = JSONResponse(
                status_code=429,
                content={"error": "Too many requests, please try again later"},
                headers={"Retry-After": str(retry_after)},
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)

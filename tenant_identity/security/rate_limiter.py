"""Sliding window attempt limiting for account creation, invitations and authentication checks."""

from __future__ import annotations

import logging
import time
from collections import deque
from threading import Lock
from typing import Deque, DefaultDict, Protocol

from ..config import Settings

logger = logging.getLogger(__name__)


class AttemptLimiter(Protocol):
    def allow(self, key: str) -> bool: ...


def limiter_key(action: str, *scope: str | None) -> str:
    """Build a limiter key such as ``create:org-1`` or ``auth:org-1:acct-9``.

    ``None`` parts (system context) are rendered as ``*``.
    """
    return ":".join([action, *(part or "*" for part in scope)])


class SlidingWindowRateLimiter:
    """Thread-safe in-process sliding window limiter."""

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._attempts: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Return ``True`` and record the attempt when ``key`` is under its limit."""
        now = time.monotonic()
        with self._lock:
            attempts = self._attempts[key]
            while attempts and now - attempts[0] > self._window:
                attempts.popleft()
            if len(attempts) >= self._max_requests:
                return False
            attempts.append(now)
            return True


def build_rate_limiter(settings: Settings) -> AttemptLimiter:
    """Instantiate the configured limiter backend, preferring Redis when reachable."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        import redis
        from redis.exceptions import RedisError

        from .redis_rate_limiter import RedisAttemptLimiter

        client = redis.from_url(settings.redis_url)
        try:
            client.ping()
        except RedisError as exc:
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)
        else:
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisAttemptLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )

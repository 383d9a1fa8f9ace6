"""Attempt limiter shared by every API replica through Redis."""

from __future__ import annotations

import time
import uuid

from redis import Redis


class RedisAttemptLimiter:
    """Sliding window kept in one sorted set of attempt timestamps per key.

    Each attempt is recorded optimistically inside a MULTI/EXEC block; an
    attempt that lands over the limit is removed again, so refused attempts
    never extend the window.
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "identity:attempts",
    ) -> None:
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix

    def allow(self, key: str) -> bool:
        attempts_key = f"{self._key_prefix}:{key}"
        now_ms = int(time.time() * 1000)
        attempt = f"{now_ms}:{uuid.uuid4().hex}"

        with self._client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(attempts_key, "-inf", now_ms - self._window_ms)
            pipe.zadd(attempts_key, {attempt: now_ms})
            pipe.zcard(attempts_key)
            pipe.pexpire(attempts_key, self._window_ms)
            _, _, recorded, _ = pipe.execute()

        if recorded > self._max_requests:
            self._client.zrem(attempts_key, attempt)
            return False
        return True

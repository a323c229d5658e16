"""Rate limiting for Gemini calls at two levels.

DistributedRateLimiter — per-credential fixed window shared across every
process instance through Redis (INCR + EXPIRE). Fails open: with no store, or
on any store error, a reservation is always allowed and throttling falls back
to the in-process pacer.

RequestPacer — in-process requests-per-minute sliding window used by the
scheduler before each call. Thread-safe via asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from kurikulum_ai.core.metrics import RATE_LIMIT_REJECTIONS
from kurikulum_ai.gateway.shared_store import tokens_key
from kurikulum_ai.gateway.types import Credential

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class DistributedRateLimiter:
    """Per-credential token window backed by an optional shared counter store.

    Usage:
        limiter = DistributedRateLimiter(redis, capacity=15, window_seconds=60)
        if await limiter.reserve(credential):
            ...  # call the remote service with this credential

    The counter is incremented before the capacity check and is not rolled
    back on rejection; a rejected reservation still occupies its slot until the
    window key expires.
    """

    def __init__(self, store: Redis | None = None, capacity: int = 15, window_seconds: int = 60):
        self.store = store
        self.capacity = capacity
        self.window_seconds = window_seconds

    @property
    def enabled(self) -> bool:
        return self.store is not None

    async def reserve(self, credential: Credential) -> bool:
        """Reserve one call for the credential in the current window."""
        if self.store is None:
            return True

        key = tokens_key(credential.key_id)
        try:
            count = await self.store.incr(key)
            if count == 1:
                await self.store.expire(key, self.window_seconds)
        except (RedisError, OSError) as e:
            logger.warning(
                "Token reservation for %s failed, allowing request: %s",
                credential.key_id,
                e,
                extra={"key_id": credential.key_id},
            )
            return True

        if count > self.capacity:
            RATE_LIMIT_REJECTIONS.inc()
            logger.debug(
                "Key %s over window capacity (%d/%d)",
                credential.key_id,
                count,
                self.capacity,
                extra={"key_id": credential.key_id},
            )
            return False
        return True

    async def remaining(self, credential: Credential) -> int | None:
        """Reservations left in the current window; None when there is no store."""
        if self.store is None:
            return None
        try:
            raw = await self.store.get(tokens_key(credential.key_id))
        except (RedisError, OSError) as e:
            logger.warning(
                "Reading token window for %s failed: %s",
                credential.key_id,
                e,
                extra={"key_id": credential.key_id},
            )
            return None
        current = int(raw) if raw else 0
        return max(0, self.capacity - current)


class RequestPacer:
    """Sliding-window requests-per-minute counter for a single process.

    Usage:
        pacer = RequestPacer(max_requests=15)
        await pacer.acquire()  # blocks until a slot is free, then records it
    """

    def __init__(self, max_requests: int = 15, window_seconds: float = 60.0):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._entries: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._entries and self._entries[0] <= cutoff:
            self._entries.popleft()

    def wait_time(self, now: float | None = None) -> float:
        """Seconds until the next request is allowed; 0 if it can go now."""
        now = time.monotonic() if now is None else now
        self._prune(now)
        if len(self._entries) < self.max_requests:
            return 0.0
        oldest = self._entries[0]
        return max((oldest + self.window_seconds) - now, 0.01)

    def record(self, now: float | None = None) -> None:
        self._entries.append(time.monotonic() if now is None else now)

    async def acquire(self) -> None:
        """Block until a slot is available and record the request."""
        while True:
            async with self._lock:
                wait = self.wait_time()
                if wait <= 0:
                    self.record()
                    return
            logger.info("Request pacing: waiting %.1fs for a free slot", wait)
            await asyncio.sleep(wait)

    def remaining(self) -> int:
        """Requests still available in the current window."""
        self._prune(time.monotonic())
        return max(0, self.max_requests - len(self._entries))

    def get_stats(self) -> dict:
        return {
            "remaining_requests": self.remaining(),
            "max_requests_per_minute": self.max_requests,
        }

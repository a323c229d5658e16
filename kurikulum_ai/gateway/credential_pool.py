"""Credential Pool — rotation and temporary bans for Gemini API keys.

Selection starts at a random offset on every call so concurrent instances
spread load across keys. A key is skipped when it has a live local ban, a
shared ban flag in Redis, or (when a limiter is passed) no token left in its
window. Bans never shorten an existing ban.
"""

from __future__ import annotations

import logging
import random
import time
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from kurikulum_ai.core.metrics import CREDENTIAL_BANS
from kurikulum_ai.gateway.shared_store import banned_key
from kurikulum_ai.gateway.types import Credential

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from kurikulum_ai.core.config import Settings
    from kurikulum_ai.gateway.rate_limiter import DistributedRateLimiter

logger = logging.getLogger(__name__)

DEFAULT_BAN_MS = 2 * 60 * 1000


class CredentialPool:
    """Fixed set of credentials with local and shared ban state.

    Usage:
        pool = CredentialPool.from_settings(settings, store=redis)
        credential = await pool.next(limiter)
        ...
        await pool.ban(credential)  # after a quota-class failure
    """

    def __init__(
        self,
        secrets: list[str],
        store: Redis | None = None,
        ban_ms: int = DEFAULT_BAN_MS,
        rng: random.Random | None = None,
    ):
        seen: set[str] = set()
        self._credentials: list[Credential] = []
        for secret in secrets:
            if secret and secret not in seen:
                seen.add(secret)
                self._credentials.append(Credential(secret=secret))
        self.store = store
        self.ban_ms = ban_ms
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings, store: Redis | None = None) -> CredentialPool:
        pool = cls(settings.gemini_keys, store=store, ban_ms=settings.gemini_key_ban_ms)
        logger.info("Credential pool loaded with %d key(s)", len(pool))
        return pool

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    async def _is_banned_shared(self, credential: Credential) -> bool:
        if self.store is None:
            return False
        try:
            return bool(await self.store.exists(banned_key(credential.key_id)))
        except (RedisError, OSError) as e:
            logger.warning(
                "Shared ban lookup for %s failed: %s",
                credential.key_id,
                e,
                extra={"key_id": credential.key_id},
            )
            return False

    async def next(self, limiter: DistributedRateLimiter | None = None) -> Credential | None:
        """Return an available credential, or None when every key is banned or throttled."""
        count = len(self._credentials)
        if count == 0:
            return None

        now = time.monotonic()
        start = self._rng.randrange(count)
        for offset in range(count):
            credential = self._credentials[(start + offset) % count]
            if credential.is_banned_locally(now):
                continue
            if await self._is_banned_shared(credential):
                continue
            if limiter is not None and not await limiter.reserve(credential):
                continue
            return credential
        return None

    async def ban(self, credential: Credential) -> None:
        """Mark a credential unavailable for ban_ms, locally and (if configured) for all instances."""
        until = time.monotonic() + self.ban_ms / 1000
        if until > credential.banned_until:
            credential.banned_until = until
        CREDENTIAL_BANS.inc()
        logger.warning(
            "Key %s banned for %dms after quota error",
            credential.key_id,
            self.ban_ms,
            extra={"key_id": credential.key_id},
        )

        if self.store is None:
            return
        key = banned_key(credential.key_id)
        try:
            ttl = await self.store.pttl(key)
            if ttl < self.ban_ms:
                await self.store.set(key, "1", px=self.ban_ms)
        except (RedisError, OSError) as e:
            logger.warning(
                "Shared ban for %s failed: %s",
                credential.key_id,
                e,
                extra={"key_id": credential.key_id},
            )

    async def status(self, limiter: DistributedRateLimiter | None = None) -> dict:
        """Per-key availability snapshot (never exposes secrets)."""
        now = time.monotonic()
        items: list[dict] = []
        for credential in self._credentials:
            banned = credential.is_banned_locally(now)
            banned_ttl: int | None = credential.ban_remaining_ms(now) if banned else None
            if self.store is not None:
                try:
                    shared_ttl = await self.store.pttl(banned_key(credential.key_id))
                except (RedisError, OSError) as e:
                    logger.warning(
                        "Shared ban TTL for %s failed: %s",
                        credential.key_id,
                        e,
                        extra={"key_id": credential.key_id},
                    )
                    shared_ttl = -2
                if shared_ttl > 0:
                    banned = True
                    banned_ttl = max(banned_ttl or 0, shared_ttl)
            remaining = await limiter.remaining(credential) if limiter is not None else None
            items.append(
                {
                    "id": credential.key_id,
                    "masked": credential.masked,
                    "banned": banned,
                    "banned_ttl_ms": banned_ttl,
                    "remaining": remaining,
                }
            )
        return {"redis_enabled": self.store is not None, "keys": items}

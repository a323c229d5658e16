"""Optional Redis connection shared by every process instance.

Holds two kinds of keys, both self-expiring:
  - gemini:banned:{key_id}  ban flag, PX = ban duration
  - gemini:tokens:{key_id}  per-window reservation counter, EX = window

When REDIS_URL is empty or the server does not answer a PING at startup the
store is simply absent (None) and every caller falls back to local state.
"""

from __future__ import annotations

import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

BANNED_PREFIX = "gemini:banned:"
TOKENS_PREFIX = "gemini:tokens:"


def banned_key(key_id: str) -> str:
    return f"{BANNED_PREFIX}{key_id}"


def tokens_key(key_id: str) -> str:
    return f"{TOKENS_PREFIX}{key_id}"


async def connect_shared_store(redis_url: str, timeout: float = 2.0) -> Redis | None:
    """Connect and ping; returns None when disabled or unreachable."""
    if not redis_url:
        logger.info("REDIS_URL not set, credential bans and token windows are process-local")
        return None

    client = Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning("Redis unavailable at startup (%s), continuing with local state only", e)
        await client.aclose()
        return None

    logger.info("Redis shared store connected")
    return client


async def close_shared_store(client: Redis | None) -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except (RedisError, OSError) as e:
        logger.warning("Error closing Redis connection: %s", e)

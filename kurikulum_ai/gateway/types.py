"""Core types and DTOs for the generation gateway layer."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class FailureKind(str, Enum):
    """Classified cause of a failed generation attempt."""

    QUOTA = "quota"
    FORMAT = "format"
    DOMAIN_RULE = "domain_rule"
    STRUCTURAL = "structural"
    LENGTH = "length"
    UNKNOWN = "unknown"


class RetryStrategy(str, Enum):
    """Escalating prompt strategies, visited in declaration order."""

    NORMAL = "normal"
    FOCUS_CONSTRAINT = "focus_constraint"  # vocabulary-tier (KKO) reminder
    STRICT_FORMAT = "strict_format"  # exact JSON shape reminder


class Tier(str, Enum):
    """Curriculum phase selecting vocabulary and complexity rules."""

    FASE_A = "FASE_A"  # grades 1-2
    FASE_B = "FASE_B"  # grades 3-4
    FASE_C = "FASE_C"  # grades 5-6


DEFAULT_TIER = Tier.FASE_B

# Tried in order when the caller does not pin a model
DEFAULT_MODEL_CHAIN: tuple[str, ...] = (
    "gemini-2.0-flash",
    "gemini-2.5-flash",
    "gemini-1.5-flash",
    "gemini-1.5-flash-latest",
    "gemini-1.5-pro",
    "gemini-1.5-pro-latest",
)


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >= (1 << 31) else value


def key_fingerprint(secret: str) -> str:
    """Short, stable identity for a key, safe to log and to use in Redis key names.

    Same rolling hash as the Node deployment so both can share one Redis.
    """
    h = 0
    for ch in secret:
        h = _to_int32(_to_int32(h) << 5) - h + ord(ch)
    return f"k{abs(h)}"


def mask_secret(secret: str) -> str:
    if not secret or len(secret) < 8:
        return "****"
    return "****" + secret[-6:]


@dataclass(eq=False)
class Credential:
    """An API key plus its local ban state.

    Loaded once at startup; the secret is never logged or repr'd.
    """

    secret: str = field(repr=False)
    key_id: str = ""
    banned_until: float = 0.0  # time.monotonic() deadline, 0 = not banned

    def __post_init__(self) -> None:
        if not self.key_id:
            self.key_id = key_fingerprint(self.secret)

    @property
    def masked(self) -> str:
        return mask_secret(self.secret)

    def is_banned_locally(self, now: float | None = None) -> bool:
        now = time.monotonic() if now is None else now
        return self.banned_until > now

    def ban_remaining_ms(self, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        return max(0, int((self.banned_until - now) * 1000))


# ---------------------------------------------------------------------------
# Scheduler / retry DTOs
# ---------------------------------------------------------------------------


@dataclass
class RequestEnvelope:
    """One pending call held by the scheduler until the worker resolves it."""

    payload: Callable[[], Awaitable[Any]]
    operation: str = ""
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    future: asyncio.Future | None = None


@dataclass(frozen=True)
class RetryAttempt:
    """Context handed to each attempt of the retry orchestrator."""

    strategy: RetryStrategy
    attempt_index: int = 0
    prior_failure: FailureKind | None = None


# ---------------------------------------------------------------------------
# Remote call DTOs
# ---------------------------------------------------------------------------


@dataclass
class GenerationRequest:
    """A single prompt to send to the remote generation service."""

    prompt: str
    model: str = DEFAULT_MODEL_CHAIN[0]
    temperature: float | None = None
    max_output_tokens: int = 8192
    top_p: float | None = None
    top_k: int | None = None
    json_mode: bool = False  # responseMimeType: application/json


@dataclass
class GenerationResponse:
    """Text returned by the remote service plus usage metadata."""

    text: str = ""
    model_version: str = ""
    key_id: str = ""
    finish_reason: str = ""
    latency_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

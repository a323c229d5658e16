"""Context-aware Retry Orchestrator.

Escalates through a fixed strategy sequence, each used at most once:

    NORMAL -> FOCUS_CONSTRAINT -> STRICT_FORMAT

Only output-quality failures (malformed output, domain-rule violations)
consume retry budget. Quota errors belong to credential rotation and unknown
remote errors are assumed non-recoverable, so both propagate on first
occurrence. The next attempt's prompt gets a corrective block chosen by the
*target* strategy; the failure classification is kept for diagnostics.

Backoff between escalations: base * 2^(attempt-1).
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from kurikulum_ai.gateway.errors import (
    DomainRuleViolationError,
    GenerationError,
    MalformedOutputError,
    RetryExhaustedError,
)
from kurikulum_ai.gateway.types import FailureKind, RetryAttempt, RetryStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

STRATEGY_SEQUENCE: tuple[RetryStrategy, ...] = (
    RetryStrategy.NORMAL,
    RetryStrategy.FOCUS_CONSTRAINT,
    RetryStrategy.STRICT_FORMAT,
)

# Checked in order; first match wins
_KEYWORD_RULES: tuple[tuple[FailureKind, tuple[str, ...]], ...] = (
    (FailureKind.DOMAIN_RULE, ("kko", "forbidden", "kata kerja")),
    (FailureKind.FORMAT, ("format", "json", "parse", "valid")),
    (FailureKind.STRUCTURAL, ("semester", "distribusi", "balance")),
    (FailureKind.LENGTH, ("length", "karakter", "panjang", "kata")),
)

DEFAULT_FORMAT_EXAMPLE = """{
  "semester1": [
    {
      "chapter": "Bab 1",
      "tp_count": 3,
      "tp_1": "TP pertama",
      "keranjang_1": "A",
      "cakupan_materi_1": "Materi 1",
      ...
    }
  ],
  "semester2": [...]
}"""

_FOCUS_CONSTRAINT_BLOCK = """
RETRY ATTEMPT {attempt} - FOKUS PADA KKO (PENTING!)

Reminder KRITIS untuk retry ini:
- Hanya gunakan KKO yang DIPERBOLEHKAN untuk fase ini
- JANGAN gunakan KKO tingkat tinggi (menganalisis, mengevaluasi, merancang jika tidak cocok)
- Jika ragu tentang KKO, gunakan KKO paling sederhana yang masih sesuai
- Setiap TP HARUS memiliki KKO yang jelas dan sesuai fase
- DOUBLE-CHECK setiap KKO sebelum output
"""

_STRICT_FORMAT_BLOCK = """
RETRY ATTEMPT {attempt} - KETAT PADA FORMAT (CRITICAL!)

Output HARUS:
1. Valid JSON (bukan JavaScript atau text)
2. Semua field wajib ada sesuai contoh di bawah
3. Gunakan quote "" untuk semua string values
4. HANYA output JSON, tidak ada penjelasan atau teks lainnya
5. Format HARUS parseable oleh JSON parser standar

Contoh format yang BENAR:
{example}
"""


def classify_failure(error: BaseException | None) -> FailureKind:
    """Map an error to a FailureKind.

    Typed gateway errors carry their kind; anything else falls back to
    keyword matching on the message.
    """
    if error is None:
        return FailureKind.UNKNOWN
    if isinstance(error, GenerationError) and error.kind != FailureKind.UNKNOWN:
        return error.kind

    message = str(error).lower()
    for kind, keywords in _KEYWORD_RULES:
        if any(keyword in message for keyword in keywords):
            return kind
    return FailureKind.UNKNOWN


def prompt_modification(strategy: RetryStrategy, attempt_index: int, format_example: str | None = None) -> str:
    """Corrective instruction block appended to the prompt for a given strategy."""
    if strategy == RetryStrategy.FOCUS_CONSTRAINT:
        return _FOCUS_CONSTRAINT_BLOCK.format(attempt=attempt_index + 1)
    if strategy == RetryStrategy.STRICT_FORMAT:
        return _STRICT_FORMAT_BLOCK.format(
            attempt=attempt_index + 1,
            example=format_example or DEFAULT_FORMAT_EXAMPLE,
        )
    return ""


def calculate_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0, jitter: bool = False) -> float:
    """Delay before escalation ``attempt`` (1-based).

    Formula: min(base * 2^(attempt-1) [+ random(0, base * 0.5)], max_delay)
    """
    if attempt <= 0:
        return 0.0
    delay = base_delay * (2 ** (attempt - 1))
    if jitter:
        delay += random.uniform(0, base_delay * 0.5)
    return min(delay, max_delay)


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, (MalformedOutputError, DomainRuleViolationError))


class RetryOrchestrator:
    """Runs an attempt factory through the strategy sequence.

    Usage:
        orchestrator = RetryOrchestrator(max_retries=2, backoff_base=1.5)
        result = await orchestrator.run(lambda attempt: call(prompt + prompt_modification(...)))
    """

    def __init__(
        self,
        max_retries: int = 2,
        backoff_base: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        label: str = "generation",
    ):
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_delay = max_delay
        self._sleep = sleep
        self.label = label

    @property
    def max_attempts(self) -> int:
        return max(1, min(self.max_retries + 1, len(STRATEGY_SEQUENCE)))

    async def run(self, fn: Callable[[RetryAttempt], Awaitable[T]]) -> T:
        last_error: BaseException | None = None
        last_kind: FailureKind | None = None
        attempts = self.max_attempts

        for index in range(attempts):
            strategy = STRATEGY_SEQUENCE[index]
            if index > 0:
                delay = calculate_backoff(index, self.backoff_base, self.max_delay)
                logger.info(
                    "[%s] Attempt %d/%d with strategy %s (reason: %s), waiting %.1fs",
                    self.label,
                    index + 1,
                    attempts,
                    strategy.value,
                    last_kind.value if last_kind else "unknown",
                    delay,
                )
                await self._sleep(delay)

            attempt = RetryAttempt(strategy=strategy, attempt_index=index, prior_failure=last_kind)
            try:
                return await fn(attempt)
            except Exception as e:
                if not is_retryable(e):
                    raise
                last_error = e
                last_kind = classify_failure(e)
                if index + 1 < attempts:
                    logger.warning(
                        "[%s] %s strategy failed (%s): %s",
                        self.label,
                        strategy.value,
                        last_kind.value,
                        e,
                    )

        kind = last_kind or FailureKind.UNKNOWN
        logger.error("[%s] Final failure after all retry strategies: %s", self.label, last_error)
        raise RetryExhaustedError(attempts, kind, str(last_error)) from last_error

"""Quota Monitor — advisory failure/success tracking with self-healing.

The "exhausted" flag is stored as an expiry deadline and evaluated lazily on
read, so it clears itself after the cool-down without a background timer.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from kurikulum_ai.gateway.errors import is_quota_error

logger = logging.getLogger(__name__)


class QuotaMonitor:
    """Tracks consecutive errors and a temporary quota-exhausted state."""

    def __init__(self, cooldown_seconds: float = 120.0):
        self.cooldown_seconds = cooldown_seconds
        self._error_count = 0
        self._last_error_at: datetime | None = None
        self._exhausted_until = 0.0  # time.monotonic() deadline

    def record_success(self) -> None:
        if self._exhausted_until:
            logger.info("Quota monitor cleared by a successful call")
        self._error_count = 0
        self._exhausted_until = 0.0

    def record_error(self, error: BaseException) -> None:
        self._error_count += 1
        self._last_error_at = datetime.now(timezone.utc)

        if is_quota_error(error):
            self._exhausted_until = time.monotonic() + self.cooldown_seconds
            logger.warning(
                "Quota exhausted (errors=%d), auto-reset in %.0fs",
                self._error_count,
                self.cooldown_seconds,
            )

    @property
    def is_exhausted(self) -> bool:
        if not self._exhausted_until:
            return False
        if time.monotonic() >= self._exhausted_until:
            logger.info("Quota monitor auto-reset after %.0fs cool-down", self.cooldown_seconds)
            self._exhausted_until = 0.0
            self._error_count = 0
            return False
        return True

    @property
    def error_count(self) -> int:
        # Reading the flag first applies a pending auto-reset
        _ = self.is_exhausted
        return self._error_count

    @property
    def last_error_at(self) -> datetime | None:
        return self._last_error_at

    def reset(self) -> None:
        self._error_count = 0
        self._last_error_at = None
        self._exhausted_until = 0.0
        logger.info("Quota monitor reset")

    def get_stats(self) -> dict:
        return {
            "is_quota_exhausted": self.is_exhausted,
            "error_count": self.error_count,
            "last_error": self._last_error_at.isoformat() if self._last_error_at else None,
        }

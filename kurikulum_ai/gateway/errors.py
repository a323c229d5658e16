"""Typed error taxonomy for the generation gateway.

Every error raised at the remote-call boundary carries a ``FailureKind`` so
callers classify failures structurally instead of by message text.
"""

from __future__ import annotations

from kurikulum_ai.gateway.types import FailureKind

_QUOTA_MARKERS = ("quota", "rate limit", "resource_exhausted")

QUOTA_REMEDIATION = (
    "Semua model Gemini mencapai quota limit. "
    "Tunggu 1-2 menit agar rate limit reset, atau tambahkan API key baru dari project Google yang BERBEDA, "
    "atau kurangi jumlah item yang diminta untuk menghemat quota."
)
GENERIC_REMEDIATION = (
    "Generate gagal. Kurangi ukuran permintaan dan coba lagi, atau hubungi administrator."
)


class GenerationError(Exception):
    """Base class for all gateway failures."""

    kind: FailureKind = FailureKind.UNKNOWN

    def __init__(self, message: str, status_code: int = 0, error_code: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code


class QuotaExceededError(GenerationError):
    """The credential's call budget is exhausted (HTTP 429 / RESOURCE_EXHAUSTED)."""

    kind = FailureKind.QUOTA

    def __init__(self, message: str, status_code: int = 429, error_code: str = "RESOURCE_EXHAUSTED", key_id: str = ""):
        super().__init__(message, status_code=status_code, error_code=error_code)
        self.key_id = key_id


class MalformedOutputError(GenerationError):
    """Model output could not be parsed or has the wrong top-level shape."""

    kind = FailureKind.FORMAT


class DomainRuleViolationError(GenerationError):
    """Model output breaks a vocabulary-tier or other semantic rule."""

    kind = FailureKind.DOMAIN_RULE


class InvalidStructureError(DomainRuleViolationError):
    """Output parsed but its chapter/semester structure is unusable."""

    kind = FailureKind.STRUCTURAL


class RemoteServiceError(GenerationError):
    """Any other remote failure: timeout, 5xx, safety block, empty candidate."""

    kind = FailureKind.UNKNOWN


class NoCredentialsError(GenerationError):
    """No API keys were configured."""


class SchedulerClosedError(GenerationError):
    """The request scheduler was stopped before the call ran."""


class ProvidersExhaustedError(GenerationError):
    """Every (model, credential) pair was tried without success."""

    def __init__(self, last_message: str, quota_exhausted: bool, models_tried: list[str] | None = None):
        remediation = QUOTA_REMEDIATION if quota_exhausted else GENERIC_REMEDIATION
        detail = f" Error terakhir: {last_message}" if last_message else ""
        super().__init__(f"{remediation}{detail}", error_code="PROVIDERS_EXHAUSTED")
        self.last_message = last_message
        self.quota_exhausted = quota_exhausted
        self.remediation = remediation
        self.models_tried = list(models_tried or [])
        self.kind = FailureKind.QUOTA if quota_exhausted else FailureKind.UNKNOWN


class RetryExhaustedError(GenerationError):
    """The final retry strategy also failed."""

    def __init__(self, attempts: int, failure_kind: FailureKind, last_message: str):
        super().__init__(f"Failed after {attempts} retry attempts ({failure_kind.value}): {last_message}")
        self.attempts = attempts
        self.failure_kind = failure_kind
        self.kind = failure_kind


def is_quota_error(exc: BaseException) -> bool:
    """True for typed quota errors, or foreign errors whose message names a quota condition."""
    if isinstance(exc, GenerationError):
        return exc.kind == FailureKind.QUOTA
    message = str(exc).lower()
    return any(marker in message for marker in _QUOTA_MARKERS)

"""Model Fallback Chain with credential rotation.

Outer loop over model identifiers, inner loop over credentials (at most one
pass over the pool per model):

  - quota-class failure -> ban the credential, try the next one for the same model
  - credentials exhausted for the model -> advance to the next model
  - any other failure -> propagate immediately (rotating keys cannot fix it)

When every (model, credential) pair is spent, raise ProvidersExhaustedError
with remediation text that distinguishes quota exhaustion from other causes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence, TypeVar

from kurikulum_ai.gateway.errors import NoCredentialsError, ProvidersExhaustedError, is_quota_error
from kurikulum_ai.gateway.types import DEFAULT_MODEL_CHAIN, Credential

if TYPE_CHECKING:
    from kurikulum_ai.gateway.credential_pool import CredentialPool
    from kurikulum_ai.gateway.quota_monitor import QuotaMonitor
    from kurikulum_ai.gateway.rate_limiter import DistributedRateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")


def resolve_models(explicit_model: str | None = None, chain: Sequence[str] = DEFAULT_MODEL_CHAIN) -> tuple[str, ...]:
    """An explicit model bypasses the chain entirely."""
    if explicit_model:
        return (explicit_model.removeprefix("models/"),)
    return tuple(chain)


class FallbackChain:
    """Runs a call across models and credentials until one succeeds."""

    def __init__(
        self,
        pool: CredentialPool,
        limiter: DistributedRateLimiter | None = None,
        quota_monitor: QuotaMonitor | None = None,
        key_switch_delay: float = 0.0,
        model_switch_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pool = pool
        self.limiter = limiter
        self.quota_monitor = quota_monitor
        self.key_switch_delay = key_switch_delay
        self.model_switch_delay = model_switch_delay
        self._sleep = sleep

    async def run(
        self,
        call: Callable[[str, Credential], Awaitable[T]],
        models: Sequence[str] = DEFAULT_MODEL_CHAIN,
    ) -> T:
        if len(self.pool) == 0:
            raise NoCredentialsError("No Gemini API keys configured. Set GEMINI_API_KEYS or GEMINI_API_KEY.")

        last_error: BaseException | None = None
        models = list(models)

        for index, model in enumerate(models):
            for _ in range(len(self.pool)):
                credential = await self.pool.next(self.limiter)
                if credential is None:
                    logger.info("No available key for model %s, moving on", model)
                    break

                logger.info(
                    "Trying model %d/%d: %s with key %s",
                    index + 1,
                    len(models),
                    model,
                    credential.key_id,
                    extra={"key_id": credential.key_id},
                )
                try:
                    result = await call(model, credential)
                except Exception as e:
                    if self.quota_monitor is not None:
                        self.quota_monitor.record_error(e)
                    if not is_quota_error(e):
                        raise
                    last_error = e
                    await self.pool.ban(credential)
                    if self.key_switch_delay:
                        await self._sleep(self.key_switch_delay)
                    continue

                if self.quota_monitor is not None:
                    self.quota_monitor.record_success()
                return result

            if index < len(models) - 1 and self.model_switch_delay:
                logger.info("Waiting %.1fs before trying next model", self.model_switch_delay)
                await self._sleep(self.model_switch_delay)

        # No credential was ever usable counts as quota exhaustion too
        quota_exhausted = last_error is None or is_quota_error(last_error)
        last_message = str(last_error) if last_error is not None else "no available API key"
        logger.error(
            "All models exhausted (%d tried, quota=%s): %s",
            len(models),
            quota_exhausted,
            last_message,
        )
        raise ProvidersExhaustedError(last_message, quota_exhausted=quota_exhausted, models_tried=models)

"""Tests for the generation gateway layer.

Covers:
  - Credential types and fingerprints
  - Credential Pool (local and shared bans)
  - Distributed Rate Limiter and Request Pacer
  - Request Scheduler
  - Quota Monitor
  - Retry Orchestrator
  - Model Fallback Chain
  - Gemini adapter (mocked HTTP)
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from kurikulum_ai.gateway.credential_pool import CredentialPool
from kurikulum_ai.gateway.errors import (
    InvalidStructureError,
    MalformedOutputError,
    NoCredentialsError,
    ProvidersExhaustedError,
    QuotaExceededError,
    RemoteServiceError,
    RetryExhaustedError,
    SchedulerClosedError,
    is_quota_error,
)
from kurikulum_ai.gateway.fallback import FallbackChain, resolve_models
from kurikulum_ai.gateway.gemini_client import GeminiClient
from kurikulum_ai.gateway.quota_monitor import QuotaMonitor
from kurikulum_ai.gateway.rate_limiter import DistributedRateLimiter, RequestPacer
from kurikulum_ai.gateway.retry import (
    DEFAULT_FORMAT_EXAMPLE,
    RetryOrchestrator,
    calculate_backoff,
    classify_failure,
    prompt_modification,
)
from kurikulum_ai.gateway.scheduler import RequestScheduler
from kurikulum_ai.gateway.shared_store import banned_key, connect_shared_store, tokens_key
from kurikulum_ai.gateway.types import (
    DEFAULT_MODEL_CHAIN,
    Credential,
    FailureKind,
    GenerationRequest,
    RetryStrategy,
    key_fingerprint,
    mask_secret,
)
from tests.conftest import FakeRedis, quota_error


# ==========================================================================
# Test: Credential types
# ==========================================================================


class TestCredentialTypes:
    def test_fingerprint_is_stable(self):
        assert key_fingerprint("ab") == "k3105"
        assert key_fingerprint("ab") == key_fingerprint("ab")
        assert key_fingerprint("ab") != key_fingerprint("ba")

    def test_fingerprint_of_long_key_is_positive(self):
        fp = key_fingerprint("AIzaSy" + "x" * 33)
        assert fp.startswith("k")
        assert fp[1:].isdigit()

    def test_mask_secret(self):
        assert mask_secret("abcdefghij") == "****efghij"
        assert mask_secret("short") == "****"
        assert mask_secret("") == "****"

    def test_credential_repr_hides_secret(self):
        cred = Credential(secret="super-secret-value")
        assert "super-secret-value" not in repr(cred)
        assert cred.key_id == key_fingerprint("super-secret-value")

    def test_ban_remaining(self):
        cred = Credential(secret="abcdefgh", banned_until=100.0)
        assert cred.is_banned_locally(now=99.0)
        assert not cred.is_banned_locally(now=100.0)
        assert cred.ban_remaining_ms(now=99.5) == 500
        assert cred.ban_remaining_ms(now=200.0) == 0


# ==========================================================================
# Test: Credential Pool
# ==========================================================================


class TestCredentialPool:
    def test_deduplicates_and_skips_empty(self):
        pool = CredentialPool(["aaaaaaaa", "", "bbbbbbbb", "aaaaaaaa"])
        assert len(pool) == 2

    @pytest.mark.asyncio
    async def test_next_on_empty_pool(self):
        assert await CredentialPool([]).next() is None

    @pytest.mark.asyncio
    async def test_first_banned_returns_only_second(self, pool):
        first, second = pool.credentials
        await pool.ban(first)
        for _ in range(20):
            assert await pool.next() is second

    @pytest.mark.asyncio
    async def test_all_banned_returns_none(self, pool):
        for cred in pool.credentials:
            await pool.ban(cred)
        assert await pool.next() is None

    @pytest.mark.asyncio
    async def test_random_start_spreads_selection(self):
        pool = CredentialPool(["aaaaaaaa", "bbbbbbbb", "cccccccc"], rng=random.Random(1))
        seen = {(await pool.next()).key_id for _ in range(50)}
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_ban_expires(self, pool):
        pool.ban_ms = 10
        first, _ = pool.credentials
        await pool.ban(first)
        assert first.is_banned_locally()
        await asyncio.sleep(0.02)
        assert not first.is_banned_locally()

    @pytest.mark.asyncio
    async def test_ban_never_shortens_local(self, pool):
        first, _ = pool.credentials
        far = time.monotonic() + 3600
        first.banned_until = far
        await pool.ban(first)
        assert first.banned_until == far

    @pytest.mark.asyncio
    async def test_ban_log_carries_key_id(self, pool, caplog):
        first, _ = pool.credentials
        with caplog.at_level(logging.WARNING, logger="kurikulum_ai.gateway.credential_pool"):
            await pool.ban(first)

        records = [r for r in caplog.records if "banned" in r.getMessage()]
        assert len(records) == 1
        assert records[0].key_id == first.key_id

    @pytest.mark.asyncio
    async def test_shared_ban_visible_to_other_instance(self, fake_redis):
        secrets = ["key-one-1234567890", "key-two-1234567890"]
        pool_a = CredentialPool(secrets, store=fake_redis)
        pool_b = CredentialPool(secrets, store=fake_redis)

        await pool_a.ban(pool_a.credentials[0])

        assert await fake_redis.exists(banned_key(pool_a.credentials[0].key_id))
        # pool_b has no local ban but honors the shared flag
        for _ in range(10):
            cred = await pool_b.next()
            assert cred.key_id == pool_b.credentials[1].key_id

    @pytest.mark.asyncio
    async def test_shared_ban_never_shortened(self, fake_redis):
        pool = CredentialPool(["key-one-1234567890"], store=fake_redis, ban_ms=1000)
        cred = pool.credentials[0]
        await fake_redis.set(banned_key(cred.key_id), "1", px=600_000)

        await pool.ban(cred)

        assert await fake_redis.pttl(banned_key(cred.key_id)) > 500_000

    @pytest.mark.asyncio
    async def test_store_failure_does_not_block_selection(self, fake_redis):
        pool = CredentialPool(["key-one-1234567890"], store=fake_redis)
        fake_redis.fail = True
        assert await pool.next() is pool.credentials[0]
        # Ban still applies locally
        await pool.ban(pool.credentials[0])
        assert await pool.next() is None

    @pytest.mark.asyncio
    async def test_status_masks_secrets(self, pool):
        first, _ = pool.credentials
        await pool.ban(first)
        status = await pool.status()

        assert status["redis_enabled"] is False
        assert len(status["keys"]) == 2
        banned = [k for k in status["keys"] if k["banned"]]
        assert len(banned) == 1
        assert banned[0]["id"] == first.key_id
        assert banned[0]["masked"] == "****567890"
        assert 0 < banned[0]["banned_ttl_ms"] <= pool.ban_ms
        assert all(k["remaining"] is None for k in status["keys"])

    @pytest.mark.asyncio
    async def test_status_reports_shared_ttl_and_remaining(self, fake_redis):
        pool = CredentialPool(["key-one-1234567890"], store=fake_redis)
        limiter = DistributedRateLimiter(fake_redis, capacity=15)
        cred = pool.credentials[0]
        await fake_redis.set(banned_key(cred.key_id), "1", px=50_000)
        await limiter.reserve(cred)

        status = await pool.status(limiter)

        entry = status["keys"][0]
        assert status["redis_enabled"] is True
        assert entry["banned"] is True
        assert entry["banned_ttl_ms"] > 40_000
        assert entry["remaining"] == 14


# ==========================================================================
# Test: Distributed Rate Limiter
# ==========================================================================


class TestDistributedRateLimiter:
    @pytest.fixture
    def cred(self):
        return Credential(secret="key-one-1234567890")

    @pytest.mark.asyncio
    async def test_no_store_always_allows(self, cred):
        limiter = DistributedRateLimiter(None, capacity=1)
        assert not limiter.enabled
        for _ in range(5):
            assert await limiter.reserve(cred) is True
        assert await limiter.remaining(cred) is None

    @pytest.mark.asyncio
    async def test_capacity_enforced(self, fake_redis, cred):
        limiter = DistributedRateLimiter(fake_redis, capacity=2, window_seconds=60)
        assert await limiter.reserve(cred) is True
        assert await limiter.reserve(cred) is True
        assert await limiter.reserve(cred) is False
        assert await limiter.remaining(cred) == 0

    @pytest.mark.asyncio
    async def test_window_key_gets_expiry(self, fake_redis, cred):
        limiter = DistributedRateLimiter(fake_redis, capacity=5, window_seconds=60)
        await limiter.reserve(cred)
        ttl = await fake_redis.pttl(tokens_key(cred.key_id))
        assert 0 < ttl <= 60_000

    @pytest.mark.asyncio
    async def test_rejected_reservation_still_counts(self, fake_redis, cred):
        limiter = DistributedRateLimiter(fake_redis, capacity=1)
        await limiter.reserve(cred)
        await limiter.reserve(cred)
        assert await fake_redis.get(tokens_key(cred.key_id)) == "2"

    @pytest.mark.asyncio
    async def test_unreachable_store_fails_open(self, fake_redis, cred):
        limiter = DistributedRateLimiter(fake_redis, capacity=1)
        fake_redis.fail = True
        for _ in range(5):
            assert await limiter.reserve(cred) is True
        assert await limiter.remaining(cred) is None

    @pytest.mark.asyncio
    async def test_pool_skips_throttled_keys(self, fake_redis):
        pool = CredentialPool(["key-one-1234567890", "key-two-1234567890"], store=fake_redis)
        limiter = DistributedRateLimiter(fake_redis, capacity=1)

        first = await pool.next(limiter)
        second = await pool.next(limiter)
        assert first is not None and second is not None
        assert first is not second
        assert await pool.next(limiter) is None


# ==========================================================================
# Test: Shared store connection
# ==========================================================================


class TestSharedStore:
    @pytest.mark.asyncio
    async def test_empty_url_disables_store(self):
        assert await connect_shared_store("") is None

    @pytest.mark.asyncio
    async def test_unreachable_server_returns_none(self):
        assert await connect_shared_store("redis://127.0.0.1:1/0", timeout=0.2) is None


# ==========================================================================
# Test: Request Pacer
# ==========================================================================


class TestRequestPacer:
    def test_wait_time_under_limit(self):
        pacer = RequestPacer(max_requests=2, window_seconds=60)
        assert pacer.wait_time(now=0.0) == 0.0

    def test_wait_time_at_limit(self):
        pacer = RequestPacer(max_requests=2, window_seconds=60)
        pacer.record(now=0.0)
        pacer.record(now=1.0)
        assert pacer.wait_time(now=30.0) == pytest.approx(30.0)

    def test_old_entries_slide_out(self):
        pacer = RequestPacer(max_requests=2, window_seconds=60)
        pacer.record(now=0.0)
        pacer.record(now=1.0)
        assert pacer.wait_time(now=60.0) == 0.0

    @pytest.mark.asyncio
    async def test_acquire_records_request(self):
        pacer = RequestPacer(max_requests=3)
        await pacer.acquire()
        assert pacer.remaining() == 2

    def test_get_stats(self):
        stats = RequestPacer(max_requests=15).get_stats()
        assert stats == {"remaining_requests": 15, "max_requests_per_minute": 15}


# ==========================================================================
# Test: Request Scheduler
# ==========================================================================


class TestRequestScheduler:
    @pytest.fixture
    async def scheduler(self):
        sched = RequestScheduler(RequestPacer(max_requests=100), inter_call_delay=0)
        await sched.start()
        yield sched
        await sched.stop()

    @pytest.mark.asyncio
    async def test_enqueue_returns_result(self, scheduler):
        async def work():
            return 42

        assert await scheduler.enqueue(work) == 42

    @pytest.mark.asyncio
    async def test_exception_propagates_to_caller(self, scheduler):
        async def work():
            raise MalformedOutputError("bad json")

        with pytest.raises(MalformedOutputError):
            await scheduler.enqueue(work)

        # Worker survives a failed call
        async def ok():
            return "ok"

        assert await scheduler.enqueue(ok) == "ok"

    @pytest.mark.asyncio
    async def test_calls_run_one_at_a_time_in_order(self, scheduler):
        active = 0
        max_active = 0
        order: list[int] = []

        def make(i):
            async def work():
                nonlocal active, max_active
                active += 1
                max_active = max(max_active, active)
                await asyncio.sleep(0.01)
                order.append(i)
                active -= 1
                return i

            return work

        results = await asyncio.gather(*(scheduler.enqueue(make(i)) for i in range(4)))

        assert results == [0, 1, 2, 3]
        assert order == [0, 1, 2, 3]
        assert max_active == 1

    @pytest.mark.asyncio
    async def test_queue_size_counts_in_flight(self, scheduler):
        release = asyncio.Event()

        async def blocked():
            await release.wait()
            return "done"

        task = asyncio.create_task(scheduler.enqueue(blocked))
        await asyncio.sleep(0.01)
        assert scheduler.queue_size == 1
        release.set()
        assert await task == "done"
        assert scheduler.queue_size == 0

    @pytest.mark.asyncio
    async def test_stop_fails_pending_requests(self):
        sched = RequestScheduler(RequestPacer(max_requests=100), inter_call_delay=0)
        await sched.start()
        never = asyncio.Event()

        async def blocked():
            await never.wait()

        running = asyncio.create_task(sched.enqueue(blocked))
        waiting = asyncio.create_task(sched.enqueue(blocked))
        await asyncio.sleep(0.01)

        await sched.stop()

        with pytest.raises(SchedulerClosedError):
            await running
        with pytest.raises(SchedulerClosedError):
            await waiting

    @pytest.mark.asyncio
    async def test_stop_fails_request_waiting_on_pacer(self):
        pacer = RequestPacer(max_requests=1)
        pacer.record()
        sched = RequestScheduler(pacer, inter_call_delay=0)
        work = AsyncMock(return_value="never")

        task = asyncio.create_task(sched.enqueue(work))
        await asyncio.sleep(0.05)
        assert sched.queue_size == 1

        await sched.stop()

        with pytest.raises(SchedulerClosedError):
            await asyncio.wait_for(task, 1.0)
        work.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enqueue_after_stop_rejected(self):
        sched = RequestScheduler(RequestPacer(max_requests=100), inter_call_delay=0)
        await sched.start()
        await sched.stop()

        async def work():
            return 1

        with pytest.raises(SchedulerClosedError):
            await sched.enqueue(work)

    @pytest.mark.asyncio
    async def test_enqueue_starts_worker_lazily(self):
        sched = RequestScheduler(RequestPacer(max_requests=100), inter_call_delay=0)

        async def work():
            return "lazy"

        assert not sched.running
        assert await sched.enqueue(work) == "lazy"
        assert sched.running
        await sched.stop()


# ==========================================================================
# Test: Quota Monitor
# ==========================================================================


class TestQuotaMonitor:
    def test_quota_error_marks_exhausted(self):
        monitor = QuotaMonitor(cooldown_seconds=120)
        monitor.record_error(quota_error())
        assert monitor.is_exhausted
        assert monitor.error_count == 1
        assert monitor.last_error_at is not None

    def test_other_error_only_counts(self):
        monitor = QuotaMonitor()
        monitor.record_error(RemoteServiceError("Gemini error 500"))
        assert not monitor.is_exhausted
        assert monitor.error_count == 1

    def test_foreign_quota_message_marks_exhausted(self):
        monitor = QuotaMonitor()
        monitor.record_error(RuntimeError("429 RESOURCE_EXHAUSTED"))
        assert monitor.is_exhausted

    def test_success_clears_state(self):
        monitor = QuotaMonitor()
        monitor.record_error(quota_error())
        monitor.record_success()
        assert not monitor.is_exhausted
        assert monitor.error_count == 0

    def test_auto_reset_after_cooldown(self):
        monitor = QuotaMonitor(cooldown_seconds=120)
        with patch("kurikulum_ai.gateway.quota_monitor.time.monotonic", return_value=1000.0):
            monitor.record_error(quota_error())
        with patch("kurikulum_ai.gateway.quota_monitor.time.monotonic", return_value=1119.0):
            assert monitor.is_exhausted
        with patch("kurikulum_ai.gateway.quota_monitor.time.monotonic", return_value=1120.0):
            assert not monitor.is_exhausted
            assert monitor.error_count == 0

    def test_reset(self):
        monitor = QuotaMonitor()
        monitor.record_error(quota_error())
        monitor.reset()
        stats = monitor.get_stats()
        assert stats == {"is_quota_exhausted": False, "error_count": 0, "last_error": None}


# ==========================================================================
# Test: Error taxonomy
# ==========================================================================


class TestErrors:
    def test_is_quota_error_typed(self):
        assert is_quota_error(QuotaExceededError("limit"))
        assert not is_quota_error(RemoteServiceError("quota"))  # typed kind wins over text
        assert not is_quota_error(MalformedOutputError("bad"))

    def test_is_quota_error_foreign(self):
        assert is_quota_error(RuntimeError("You exceeded your current quota"))
        assert is_quota_error(RuntimeError("Rate limit reached"))
        assert not is_quota_error(RuntimeError("connection reset"))

    def test_providers_exhausted_remediation(self):
        quota = ProvidersExhaustedError("429", quota_exhausted=True)
        other = ProvidersExhaustedError("500", quota_exhausted=False)
        assert "quota limit" in str(quota)
        assert quota.kind == FailureKind.QUOTA
        assert "quota limit" not in str(other)
        assert other.kind == FailureKind.UNKNOWN
        assert "Error terakhir: 500" in str(other)


# ==========================================================================
# Test: Retry Orchestrator
# ==========================================================================


class TestRetryHelpers:
    def test_classify_typed_errors(self):
        assert classify_failure(MalformedOutputError("x")) == FailureKind.FORMAT
        assert classify_failure(InvalidStructureError("x")) == FailureKind.STRUCTURAL
        assert classify_failure(QuotaExceededError("x")) == FailureKind.QUOTA

    def test_classify_by_message(self):
        assert classify_failure(Exception("KKO terlalu tinggi")) == FailureKind.DOMAIN_RULE
        assert classify_failure(Exception("Invalid JSON format")) == FailureKind.FORMAT
        assert classify_failure(Exception("semester imbalance")) == FailureKind.STRUCTURAL
        assert classify_failure(Exception("length exceeded")) == FailureKind.LENGTH
        assert classify_failure(Exception("boom")) == FailureKind.UNKNOWN
        assert classify_failure(None) == FailureKind.UNKNOWN

    def test_prompt_modification(self):
        assert prompt_modification(RetryStrategy.NORMAL, 0) == ""
        focus = prompt_modification(RetryStrategy.FOCUS_CONSTRAINT, 1)
        assert "RETRY ATTEMPT 2" in focus
        assert "KKO" in focus
        strict = prompt_modification(RetryStrategy.STRICT_FORMAT, 2)
        assert "RETRY ATTEMPT 3" in strict
        assert DEFAULT_FORMAT_EXAMPLE in strict
        custom = prompt_modification(RetryStrategy.STRICT_FORMAT, 2, format_example='{"multipleChoice": []}')
        assert '{"multipleChoice": []}' in custom

    def test_backoff(self):
        assert calculate_backoff(0, 1.5) == 0.0
        assert calculate_backoff(1, 1.5) == 1.5
        assert calculate_backoff(2, 1.5) == 3.0
        assert calculate_backoff(10, 1.0, max_delay=30.0) == 30.0

    def test_backoff_jitter_bounded(self):
        for _ in range(20):
            delay = calculate_backoff(1, 1.0, jitter=True)
            assert 1.0 <= delay <= 1.5


class TestRetryOrchestrator:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        sleep = AsyncMock()
        seen: list[RetryStrategy] = []

        async def fn(attempt):
            seen.append(attempt.strategy)
            return "ok"

        assert await RetryOrchestrator(sleep=sleep).run(fn) == "ok"
        assert seen == [RetryStrategy.NORMAL]
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_escalates_through_strategies(self):
        sleep = AsyncMock()
        seen = []

        async def fn(attempt):
            seen.append(attempt)
            if attempt.attempt_index < 2:
                raise MalformedOutputError("Failed to parse JSON response")
            return "ok"

        result = await RetryOrchestrator(backoff_base=1.5, sleep=sleep).run(fn)

        assert result == "ok"
        assert [a.strategy for a in seen] == [
            RetryStrategy.NORMAL,
            RetryStrategy.FOCUS_CONSTRAINT,
            RetryStrategy.STRICT_FORMAT,
        ]
        assert seen[0].prior_failure is None
        assert seen[1].prior_failure == FailureKind.FORMAT
        assert [c.args[0] for c in sleep.await_args_list] == [1.5, 3.0]

    @pytest.mark.asyncio
    async def test_never_repeats_a_strategy(self):
        seen = []

        async def fn(attempt):
            seen.append(attempt.strategy)
            raise InvalidStructureError("EMPTY_SEMESTER_1")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await RetryOrchestrator(max_retries=10, sleep=AsyncMock()).run(fn)

        assert len(seen) == 3
        assert len(set(seen)) == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.kind == FailureKind.STRUCTURAL

    @pytest.mark.asyncio
    async def test_quota_error_propagates_immediately(self):
        calls = 0

        async def fn(attempt):
            nonlocal calls
            calls += 1
            raise quota_error()

        with pytest.raises(QuotaExceededError):
            await RetryOrchestrator(sleep=AsyncMock()).run(fn)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_unknown_error_propagates_immediately(self):
        calls = 0

        async def fn(attempt):
            nonlocal calls
            calls += 1
            raise RemoteServiceError("Gemini error 500")

        with pytest.raises(RemoteServiceError):
            await RetryOrchestrator(sleep=AsyncMock()).run(fn)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_zero_retries_single_attempt(self):
        calls = 0

        async def fn(attempt):
            nonlocal calls
            calls += 1
            raise MalformedOutputError("bad")

        with pytest.raises(RetryExhaustedError):
            await RetryOrchestrator(max_retries=0, sleep=AsyncMock()).run(fn)
        assert calls == 1


# ==========================================================================
# Test: Model Fallback Chain
# ==========================================================================


class TestFallbackChain:
    def test_resolve_models(self):
        assert resolve_models(None) == DEFAULT_MODEL_CHAIN
        assert resolve_models("models/gemini-1.5-pro") == ("gemini-1.5-pro",)
        assert resolve_models("gemini-2.5-flash") == ("gemini-2.5-flash",)

    @pytest.mark.asyncio
    async def test_success_first_pair(self, pool):
        call = AsyncMock(return_value="ok")
        chain = FallbackChain(pool, sleep=AsyncMock())

        assert await chain.run(call) == "ok"
        model, cred = call.await_args.args
        assert model == DEFAULT_MODEL_CHAIN[0]
        assert cred in pool.credentials

    @pytest.mark.asyncio
    async def test_quota_error_rotates_credential(self, pool):
        used = []

        async def call(model, cred):
            used.append((model, cred))
            if len(used) == 1:
                raise quota_error()
            return "ok"

        monitor = QuotaMonitor()
        chain = FallbackChain(pool, quota_monitor=monitor, sleep=AsyncMock())

        assert await chain.run(call) == "ok"
        assert len(used) == 2
        assert used[0][0] == used[1][0]  # same model
        assert used[0][1] is not used[1][1]
        assert used[0][1].is_banned_locally()
        assert not monitor.is_exhausted  # cleared by the success

    @pytest.mark.asyncio
    async def test_all_credentials_banned_exhausts_models(self, pool):
        for cred in pool.credentials:
            await pool.ban(cred)
        call = AsyncMock(return_value="ok")
        sleep = AsyncMock()
        chain = FallbackChain(pool, model_switch_delay=2.0, sleep=sleep)

        with pytest.raises(ProvidersExhaustedError) as exc_info:
            await chain.run(call)

        call.assert_not_awaited()
        assert exc_info.value.quota_exhausted is True
        assert exc_info.value.models_tried == list(DEFAULT_MODEL_CHAIN)
        assert sleep.await_count == len(DEFAULT_MODEL_CHAIN) - 1

    @pytest.mark.asyncio
    async def test_every_pair_quota_limited(self, pool):
        call = AsyncMock(side_effect=quota_error())
        sleep = AsyncMock()
        monitor = QuotaMonitor()
        chain = FallbackChain(pool, quota_monitor=monitor, key_switch_delay=0.5, sleep=sleep)

        with pytest.raises(ProvidersExhaustedError) as exc_info:
            await chain.run(call, models=["gemini-a", "gemini-b"])

        # Both keys banned on the first model, nothing left for the second
        assert call.await_count == 2
        assert exc_info.value.quota_exhausted is True
        assert "Resource has been exhausted" in exc_info.value.last_message
        assert monitor.is_exhausted
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_non_quota_error_propagates(self, pool):
        call = AsyncMock(side_effect=RemoteServiceError("Gemini error 500"))
        monitor = QuotaMonitor()
        chain = FallbackChain(pool, quota_monitor=monitor, sleep=AsyncMock())

        with pytest.raises(RemoteServiceError):
            await chain.run(call)

        assert call.await_count == 1
        assert not any(c.is_banned_locally() for c in pool.credentials)
        assert monitor.error_count == 1

    @pytest.mark.asyncio
    async def test_empty_pool_raises_no_credentials(self):
        chain = FallbackChain(CredentialPool([]), sleep=AsyncMock())
        with pytest.raises(NoCredentialsError):
            await chain.run(AsyncMock())


# ==========================================================================
# Test: Gemini adapter (mocked HTTP)
# ==========================================================================


def _make_httpx_response(status_code: int, json_data: dict | None = None, text: str = "") -> httpx.Response:
    """Create a proper httpx.Response with request set."""
    request = httpx.Request("POST", "https://generativelanguage.googleapis.com")
    if json_data is not None:
        return httpx.Response(status_code, json=json_data, request=request)
    return httpx.Response(status_code, text=text, request=request)


def _mock_gemini_response(text="Hello world", finish_reason="STOP"):
    return _make_httpx_response(
        200,
        json_data={
            "candidates": [
                {
                    "content": {"parts": [{"text": text}]},
                    "finishReason": finish_reason,
                }
            ],
            "usageMetadata": {
                "promptTokenCount": 10,
                "candidatesTokenCount": 20,
                "totalTokenCount": 30,
            },
            "modelVersion": "gemini-2.0-flash-001",
        },
    )


def _patched_client(response=None, side_effect=None):
    patcher = patch("kurikulum_ai.gateway.gemini_client.httpx.AsyncClient")
    mock_client_cls = patcher.start()
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_cls.return_value = mock_client
    return patcher, mock_client


class TestGeminiClient:
    @pytest.fixture
    def cred(self):
        return Credential(secret="key-one-1234567890")

    def test_payload_for_json_mode(self):
        req = GenerationRequest(prompt="Hai", temperature=0.2, top_p=0.8, top_k=40, json_mode=True)
        payload = GeminiClient().build_payload(req)
        config = payload["generationConfig"]
        assert payload["contents"][0]["parts"][0]["text"] == "Hai"
        assert config == {
            "maxOutputTokens": 8192,
            "temperature": 0.2,
            "topP": 0.8,
            "topK": 40,
            "responseMimeType": "application/json",
        }
        assert len(payload["safetySettings"]) == 5

    def test_payload_omits_unset_sampling(self):
        payload = GeminiClient().build_payload(GenerationRequest(prompt="Hai", temperature=0.7))
        assert payload["generationConfig"] == {"maxOutputTokens": 8192, "temperature": 0.7}

    @pytest.mark.asyncio
    async def test_success(self, cred):
        patcher, mock_client = _patched_client(_mock_gemini_response('{"ok": true}'))
        try:
            resp = await GeminiClient().generate(GenerationRequest(prompt="Hai", model="models/gemini-2.0-flash"), cred)
        finally:
            patcher.stop()

        assert resp.text == '{"ok": true}'
        assert resp.total_tokens == 30
        assert resp.finish_reason == "STOP"
        assert resp.model_version == "gemini-2.0-flash-001"
        assert resp.key_id == cred.key_id
        url = mock_client.post.await_args.args[0]
        assert url.endswith("/models/gemini-2.0-flash:generateContent")
        assert mock_client.post.await_args.kwargs["params"] == {"key": "key-one-1234567890"}

    @pytest.mark.asyncio
    async def test_429_is_quota_error(self, cred):
        patcher, _ = _patched_client(
            _make_httpx_response(429, json_data={"error": {"status": "RESOURCE_EXHAUSTED", "message": "Quota exceeded"}})
        )
        try:
            with pytest.raises(QuotaExceededError) as exc_info:
                await GeminiClient().generate(GenerationRequest(prompt="Hai"), cred)
        finally:
            patcher.stop()

        assert exc_info.value.key_id == cred.key_id
        assert exc_info.value.error_code == "RESOURCE_EXHAUSTED"

    @pytest.mark.asyncio
    async def test_quota_message_on_other_status(self, cred):
        patcher, _ = _patched_client(
            _make_httpx_response(403, json_data={"error": {"message": "You exceeded your current quota"}})
        )
        try:
            with pytest.raises(QuotaExceededError):
                await GeminiClient().generate(GenerationRequest(prompt="Hai"), cred)
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_server_error(self, cred):
        patcher, _ = _patched_client(_make_httpx_response(500, text="internal"))
        try:
            with pytest.raises(RemoteServiceError) as exc_info:
                await GeminiClient().generate(GenerationRequest(prompt="Hai"), cred)
        finally:
            patcher.stop()

        assert exc_info.value.status_code == 500
        assert not is_quota_error(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout(self, cred):
        patcher, _ = _patched_client(side_effect=httpx.TimeoutException("timeout"))
        try:
            with pytest.raises(RemoteServiceError) as exc_info:
                await GeminiClient(timeout=5.0).generate(GenerationRequest(prompt="Hai"), cred)
        finally:
            patcher.stop()

        assert exc_info.value.error_code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_safety_block(self, cred):
        patcher, _ = _patched_client(
            _make_httpx_response(200, json_data={"candidates": [{"finishReason": "SAFETY"}]})
        )
        try:
            with pytest.raises(RemoteServiceError) as exc_info:
                await GeminiClient().generate(GenerationRequest(prompt="Hai"), cred)
        finally:
            patcher.stop()

        assert exc_info.value.error_code == "SAFETY"

    @pytest.mark.asyncio
    async def test_prompt_blocked(self, cred):
        patcher, _ = _patched_client(
            _make_httpx_response(200, json_data={"promptFeedback": {"blockReason": "OTHER"}})
        )
        try:
            with pytest.raises(RemoteServiceError) as exc_info:
                await GeminiClient().generate(GenerationRequest(prompt="Hai"), cred)
        finally:
            patcher.stop()

        assert exc_info.value.error_code == "BLOCKED_OTHER"

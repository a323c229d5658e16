import json
import random
import time
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from kurikulum_ai.core.config import settings

# Override settings for tests
settings.gemini_api_keys = "test-key-aaaaaaaa,test-key-bbbbbbbb"
settings.redis_url = ""
settings.app_env = "development"

from kurikulum_ai.core.rate_limit import limiter  # noqa: E402
from kurikulum_ai.gateway.credential_pool import CredentialPool  # noqa: E402
from kurikulum_ai.gateway.errors import QuotaExceededError  # noqa: E402
from kurikulum_ai.gateway.quota_monitor import QuotaMonitor  # noqa: E402
from kurikulum_ai.gateway.rate_limiter import DistributedRateLimiter, RequestPacer  # noqa: E402
from kurikulum_ai.gateway.scheduler import RequestScheduler  # noqa: E402
from kurikulum_ai.gateway.types import GenerationResponse  # noqa: E402
from kurikulum_ai.generation.service import GenerationOrchestrator  # noqa: E402
from kurikulum_ai.main import app  # noqa: E402

# HTTP rate limits are exercised separately; keep them out of endpoint tests
limiter.enabled = False

VALID_TP = "Peserta didik mampu menjelaskan siklus air melalui pengamatan gambar dengan benar"


def make_chapter(name: str = "Bab 1", count: int = 2, tp: str = VALID_TP) -> dict:
    chapter: dict = {"chapter": name, "tp_count": count}
    for n in range(1, count + 1):
        chapter[f"tp_{n}"] = tp
        chapter[f"keranjang_{n}"] = "A"
        chapter[f"cakupan_materi_{n}"] = f"Materi {n}"
    return chapter


def learning_objectives_json(semester1: int = 1, semester2: int = 1) -> str:
    return json.dumps(
        {
            "semester1": [make_chapter(f"Bab {i + 1}") for i in range(semester1)],
            "semester2": [make_chapter(f"Bab {i + 1 + semester1}") for i in range(semester2)],
        }
    )


def questions_json(mc: int = 2, sa: int = 1) -> str:
    return json.dumps(
        {
            "multipleChoice": [
                {
                    "questionNumber": i + 1,
                    "question": "Berapa hasil 2 + 3?",
                    "options": {"A": "4", "B": "5", "C": "6", "D": "7"},
                    "correctAnswer": "B",
                    "weight": 1,
                }
                for i in range(mc)
            ],
            "shortAnswer": [
                {"questionNumber": i + 1, "question": "Sebutkan dua jenis hewan!", "answer": "Kucing, ayam", "weight": 2}
                for i in range(sa)
            ],
        }
    )


# ==========================================================================
# In-memory Redis
# ==========================================================================


class FakeRedis:
    """Subset of redis.asyncio.Redis used by the gateway, with real expiry."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def _purge(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and time.monotonic() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)

    async def ping(self) -> bool:
        self._check()
        return True

    async def incr(self, key: str) -> int:
        self._check()
        self._purge(key)
        value = int(self._data.get(key, "0")) + 1
        self._data[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if key not in self._data:
            return False
        self._expires[key] = time.monotonic() + seconds
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        self._purge(key)
        return self._data.get(key)

    async def set(self, key: str, value: str, px: int | None = None) -> bool:
        self._check()
        self._data[key] = str(value)
        if px is not None:
            self._expires[key] = time.monotonic() + px / 1000
        else:
            self._expires.pop(key, None)
        return True

    async def exists(self, key: str) -> int:
        self._check()
        self._purge(key)
        return 1 if key in self._data else 0

    async def pttl(self, key: str) -> int:
        self._check()
        self._purge(key)
        if key not in self._data:
            return -2
        deadline = self._expires.get(key)
        if deadline is None:
            return -1
        return int((deadline - time.monotonic()) * 1000)

    async def aclose(self) -> None:
        pass


# ==========================================================================
# Scripted Gemini client
# ==========================================================================


class ScriptedGeminiClient:
    """Returns queued outcomes in order; an Exception instance is raised instead of returned."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[tuple] = []

    async def generate(self, request, credential):
        self.calls.append((request, credential))
        if not self.outcomes:
            raise AssertionError("ScriptedGeminiClient ran out of outcomes")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return GenerationResponse(text=outcome, model_version=request.model, key_id=credential.key_id)


def quota_error(message: str = "Resource has been exhausted (e.g. check quota).") -> QuotaExceededError:
    return QuotaExceededError(message)


# ==========================================================================
# Fixtures
# ==========================================================================


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def pool() -> CredentialPool:
    return CredentialPool(["key-one-1234567890", "key-two-1234567890"], rng=random.Random(0))


def build_orchestrator(client, pool: CredentialPool, store=None) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        pool,
        client=client,
        limiter=DistributedRateLimiter(store),
        scheduler=RequestScheduler(RequestPacer(max_requests=100), inter_call_delay=0),
        monitor=QuotaMonitor(cooldown_seconds=120),
        store=store,
        sleep=AsyncMock(),
    )


@pytest.fixture
async def orchestrator_factory(pool) -> AsyncGenerator:
    """Builds orchestrators around scripted clients and stops them afterwards."""
    created: list[GenerationOrchestrator] = []

    def factory(*outcomes, pool_override: CredentialPool | None = None, store=None):
        target_pool = pool if pool_override is None else pool_override
        orchestrator = build_orchestrator(ScriptedGeminiClient(*outcomes), target_pool, store=store)
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        await orchestrator.close()


@pytest.fixture
async def api_orchestrator(pool) -> AsyncGenerator[GenerationOrchestrator, None]:
    """Orchestrator installed on the app; tests script its client."""
    orchestrator = build_orchestrator(ScriptedGeminiClient(), pool)
    app.state.orchestrator = orchestrator
    yield orchestrator
    app.state.orchestrator = None
    await orchestrator.close()


@pytest.fixture
async def client(api_orchestrator) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

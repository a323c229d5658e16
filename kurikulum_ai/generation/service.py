"""Generation Facade — the two public operations of the service.

Each call runs as one saga inside a single scheduler slot:

    scheduler.enqueue
      -> FallbackChain      (models x credentials, bans on quota errors)
        -> RetryOrchestrator (NORMAL -> FOCUS_CONSTRAINT -> STRICT_FORMAT)
          -> GeminiClient.generate
          -> parse + structural validation
    -> normalize_output     (learning objectives only)

Usage:
    orchestrator = await GenerationOrchestrator.from_settings(settings)
    result = await orchestrator.generate_learning_objectives(text, "Kelas 3", "IPAS", cp)
    await orchestrator.close()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from redis.asyncio import Redis

from kurikulum_ai.core.config import Settings
from kurikulum_ai.core.metrics import GENERATION_CALLS
from kurikulum_ai.gateway.credential_pool import CredentialPool
from kurikulum_ai.gateway.fallback import FallbackChain, resolve_models
from kurikulum_ai.gateway.gemini_client import GeminiClient
from kurikulum_ai.gateway.normalizer import normalize_output
from kurikulum_ai.gateway.quota_monitor import QuotaMonitor
from kurikulum_ai.gateway.rate_limiter import DistributedRateLimiter, RequestPacer
from kurikulum_ai.gateway.retry import RetryOrchestrator, prompt_modification
from kurikulum_ai.gateway.scheduler import RequestScheduler
from kurikulum_ai.gateway.shared_store import close_shared_store, connect_shared_store
from kurikulum_ai.gateway.types import Credential, GenerationRequest, RetryAttempt, Tier
from kurikulum_ai.generation.parsing import (
    check_question_language,
    parse_json_response,
    parse_questions,
    validate_learning_objectives,
)
from kurikulum_ai.generation.prompts import (
    DISTRACTOR_GUIDES,
    QUESTIONS_FORMAT_EXAMPLE,
    SEMESTER_SELECTIONS,
    STRICT_LEVELS,
    build_learning_objectives_prompt,
    build_questions_prompt,
)
from kurikulum_ai.generation.tiers import resolve_tier, tier_from_objectives

logger = logging.getLogger(__name__)

T = TypeVar("T")

REPORT_CARD_MAX_LENGTH = 100
QUOTA_WARNING_THRESHOLD = 5


# ---------------------------------------------------------------------------
# Options and results
# ---------------------------------------------------------------------------


@dataclass
class LearningObjectiveOptions:
    model: str | None = None  # pins a single model, bypassing the fallback chain
    max_length_100: bool = False  # report-card format, objectives <= 100 chars
    semester_selection: str = "both"
    focus_topics: str = ""

    def __post_init__(self) -> None:
        if self.semester_selection not in SEMESTER_SELECTIONS:
            raise ValueError(f"semester_selection must be one of {', '.join(SEMESTER_SELECTIONS)}")


@dataclass
class QuestionSection:
    count: int = 0
    weight: float = 1


@dataclass
class QuestionConfig:
    multiple_choice: QuestionSection = field(default_factory=lambda: QuestionSection(count=10, weight=1))
    short_answer: QuestionSection = field(default_factory=lambda: QuestionSection(count=5, weight=2))
    difficulty: str = "sedang"
    options_count: int = 4
    distractor_quality: str = "medium"
    include_image: bool = False
    model: str | None = None

    def __post_init__(self) -> None:
        if self.difficulty not in STRICT_LEVELS:
            raise ValueError(f"difficulty must be one of {', '.join(STRICT_LEVELS)}")
        if self.options_count not in (3, 4, 5):
            raise ValueError("options_count must be 3, 4 or 5")
        if self.distractor_quality not in DISTRACTOR_GUIDES:
            raise ValueError(f"distractor_quality must be one of {', '.join(DISTRACTOR_GUIDES)}")


@dataclass
class LearningObjectivesResult:
    objectives: dict[str, list[dict[str, Any]]]
    warnings: list[str]
    corrections: list[str]
    quality_score: int
    suggestions: list[str]
    tier: Tier

    def to_dict(self) -> dict:
        return {
            "objectives": self.objectives,
            "warnings": self.warnings,
            "corrections": self.corrections,
            "quality_score": self.quality_score,
            "suggestions": self.suggestions,
            "tier": self.tier.value,
        }


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class GenerationOrchestrator:
    """Owns the gateway components for one process.

    Built once in the application lifespan; there are no module-level
    instances.
    """

    def __init__(
        self,
        pool: CredentialPool,
        client: GeminiClient | None = None,
        limiter: DistributedRateLimiter | None = None,
        scheduler: RequestScheduler | None = None,
        monitor: QuotaMonitor | None = None,
        store: Redis | None = None,
        objectives_backoff_base: float = 1.5,
        questions_backoff_base: float = 1.0,
        question_key_switch_delay: float = 0.5,
        question_model_switch_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pool = pool
        self.client = client or GeminiClient()
        self.limiter = limiter or DistributedRateLimiter(store)
        self.scheduler = scheduler or RequestScheduler()
        self.monitor = monitor or QuotaMonitor()
        self.store = store
        self.objectives_backoff_base = objectives_backoff_base
        self.questions_backoff_base = questions_backoff_base
        self.question_key_switch_delay = question_key_switch_delay
        self.question_model_switch_delay = question_model_switch_delay
        self._sleep = sleep

    @classmethod
    async def from_settings(cls, settings: Settings) -> GenerationOrchestrator:
        store = await connect_shared_store(settings.redis_url)
        pool = CredentialPool.from_settings(settings, store=store)
        limiter = DistributedRateLimiter(
            store,
            capacity=settings.gemini_key_rpm,
            window_seconds=settings.gemini_key_window_seconds,
        )
        scheduler = RequestScheduler(
            RequestPacer(max_requests=settings.max_requests_per_minute),
            inter_call_delay=settings.inter_call_delay_ms / 1000,
        )
        return cls(
            pool,
            client=GeminiClient(timeout=settings.gemini_timeout_seconds),
            limiter=limiter,
            scheduler=scheduler,
            monitor=QuotaMonitor(cooldown_seconds=settings.quota_cooldown_seconds),
            store=store,
        )

    async def start(self) -> None:
        await self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        await close_shared_store(self.store)
        self.store = None

    async def _run(self, operation: str, saga: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await self.scheduler.enqueue(saga, operation=operation)
        except Exception:
            GENERATION_CALLS.labels(operation=operation, status="error").inc()
            raise
        GENERATION_CALLS.labels(operation=operation, status="success").inc()
        return result

    # --- Learning objectives ---

    async def generate_learning_objectives(
        self,
        source_text: str,
        grade: str,
        subject: str,
        reference_standard: str,
        options: LearningObjectiveOptions | None = None,
    ) -> LearningObjectivesResult:
        """Generate, validate and normalize learning objectives (TP) for one grade.

        Raises:
            NoCredentialsError: no API keys configured
            ProvidersExhaustedError: every model/credential pair hit its quota
            RetryExhaustedError: output stayed malformed after all strategies
            RemoteServiceError: any other remote failure
        """
        options = options or LearningObjectiveOptions()
        tier = resolve_tier(grade)
        prompt = build_learning_objectives_prompt(
            source_text,
            grade,
            subject,
            reference_standard,
            tier,
            max_length_100=options.max_length_100,
            semester_selection=options.semester_selection,
            focus_topics=options.focus_topics,
        )
        models = resolve_models(options.model)
        chain = FallbackChain(self.pool, self.limiter, self.monitor, sleep=self._sleep)

        async def call(model: str, credential: Credential) -> dict:
            retry = RetryOrchestrator(
                backoff_base=self.objectives_backoff_base,
                sleep=self._sleep,
                label="learning_objectives",
            )

            async def attempt(ctx: RetryAttempt) -> dict:
                request = GenerationRequest(
                    prompt=prompt + prompt_modification(ctx.strategy, ctx.attempt_index),
                    model=model,
                    temperature=0.7,
                    max_output_tokens=8192,
                )
                response = await self.client.generate(request, credential)
                parsed = parse_json_response(response.text)
                return validate_learning_objectives(parsed, options.semester_selection)

            return await retry.run(attempt)

        async def saga() -> dict:
            return await chain.run(call, models)

        structured = await self._run("learning_objectives", saga)

        max_length = REPORT_CARD_MAX_LENGTH if options.max_length_100 else None
        normalized = normalize_output(structured, tier, max_length=max_length)
        logger.info(
            "Learning objectives ready: tier=%s score=%d warnings=%d corrections=%d",
            tier.value,
            normalized.quality_score,
            len(normalized.warnings),
            len(normalized.corrections),
        )
        return LearningObjectivesResult(
            objectives=normalized.normalized,
            warnings=normalized.warnings,
            corrections=normalized.corrections,
            quality_score=normalized.quality_score,
            suggestions=normalized.suggestions,
            tier=tier,
        )

    # --- Exam questions ---

    async def generate_exam_questions(
        self,
        objectives: Sequence[str],
        config: QuestionConfig | None = None,
    ) -> dict[str, list[dict]]:
        """Generate multiple-choice and short-answer questions for the given objectives."""
        objectives = [tp for tp in objectives if tp and tp.strip()]
        if not objectives:
            raise ValueError("At least one learning objective is required")

        config = config or QuestionConfig()
        tier = tier_from_objectives(objectives)
        prompt = build_questions_prompt(objectives, config, tier)
        models = resolve_models(config.model)
        chain = FallbackChain(
            self.pool,
            self.limiter,
            self.monitor,
            key_switch_delay=self.question_key_switch_delay,
            model_switch_delay=self.question_model_switch_delay,
            sleep=self._sleep,
        )

        async def call(model: str, credential: Credential) -> dict[str, list[dict]]:
            retry = RetryOrchestrator(
                backoff_base=self.questions_backoff_base,
                sleep=self._sleep,
                label="exam_questions",
            )

            async def attempt(ctx: RetryAttempt) -> dict[str, list[dict]]:
                modification = prompt_modification(
                    ctx.strategy, ctx.attempt_index, format_example=QUESTIONS_FORMAT_EXAMPLE
                )
                request = GenerationRequest(
                    prompt=prompt + modification,
                    model=model,
                    temperature=0.2,
                    top_p=0.8,
                    top_k=40,
                    max_output_tokens=8192,
                    json_mode=True,
                )
                response = await self.client.generate(request, credential)
                questions = parse_questions(parse_json_response(response.text))
                check_question_language(questions, tier)
                return questions

            return await retry.run(attempt)

        async def saga() -> dict[str, list[dict]]:
            return await chain.run(call, models)

        questions = await self._run("exam_questions", saga)
        logger.info(
            "Exam questions ready: %d multiple choice, %d short answer",
            len(questions["multipleChoice"]),
            len(questions["shortAnswer"]),
        )
        return questions

    # --- Status ---

    def quota_status(self) -> dict:
        stats = self.monitor.get_stats()
        pacer = self.scheduler.pacer.get_stats()
        if stats["is_quota_exhausted"]:
            status = "exhausted"
        elif pacer["remaining_requests"] < QUOTA_WARNING_THRESHOLD:
            status = "warning"
        else:
            status = "healthy"
        return {
            **stats,
            **pacer,
            "queue_size": self.scheduler.queue_size,
            "status": status,
        }

    async def credential_status(self) -> dict:
        return await self.pool.status(self.limiter)

    def reset_quota_monitor(self) -> None:
        self.monitor.reset()

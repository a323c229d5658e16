"""API endpoints for AI generation.

Provides:
  - POST /generate/learning-objectives — learning objectives (TP) from source material
  - POST /generate/exam-questions — exam questions from learning objectives

Gateway failures are mapped to HTTP responses by the handlers in main.py.
"""

import logging

from fastapi import APIRouter, Depends, Request

from kurikulum_ai.core.config import settings
from kurikulum_ai.core.dependencies import get_orchestrator, require_quota_available
from kurikulum_ai.core.rate_limit import limiter
from kurikulum_ai.generation.service import (
    GenerationOrchestrator,
    LearningObjectiveOptions,
    QuestionConfig,
    QuestionSection,
)
from kurikulum_ai.schemas.generation import (
    ExamQuestionsRequest,
    ExamQuestionsResponse,
    LearningObjectivesRequest,
    LearningObjectivesResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/generate", tags=["generation"])


@router.post(
    "/learning-objectives",
    response_model=LearningObjectivesResponse,
    dependencies=[Depends(require_quota_available)],
)
@limiter.limit(settings.generate_rate_limit)
async def generate_learning_objectives(
    request: Request,
    body: LearningObjectivesRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Generate learning objectives split by semester, normalized to the ABCD format."""
    logger.info(
        "Learning objectives requested: grade=%s subject=%s selection=%s",
        body.grade,
        body.subject,
        body.semester_selection,
    )
    options = LearningObjectiveOptions(
        model=body.model,
        max_length_100=body.max_length_100,
        semester_selection=body.semester_selection,
        focus_topics=body.materi_pokok,
    )
    result = await orchestrator.generate_learning_objectives(
        body.text_content,
        body.grade,
        body.subject,
        body.cp_reference,
        options,
    )
    return LearningObjectivesResponse(
        data=result.objectives,
        warnings=result.warnings,
        corrections=result.corrections,
        quality_score=result.quality_score,
        suggestions=result.suggestions,
        tier=result.tier.value,
    )


@router.post(
    "/exam-questions",
    response_model=ExamQuestionsResponse,
    dependencies=[Depends(require_quota_available)],
)
@limiter.limit(settings.generate_rate_limit)
async def generate_exam_questions(
    request: Request,
    body: ExamQuestionsRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Generate multiple-choice and short-answer questions."""
    config = QuestionConfig(
        multiple_choice=QuestionSection(count=body.multiple_choice.count, weight=body.multiple_choice.weight),
        short_answer=QuestionSection(count=body.short_answer.count, weight=body.short_answer.weight),
        difficulty=body.difficulty,
        options_count=body.options_count,
        distractor_quality=body.distractor_quality,
        include_image=body.include_image,
        model=body.model,
    )
    questions = await orchestrator.generate_exam_questions(body.learning_goals, config)
    return ExamQuestionsResponse(data=questions)

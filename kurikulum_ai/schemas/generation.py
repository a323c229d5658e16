"""Pydantic schemas for the generation API."""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

_PRIMARY_GRADE = re.compile(r"\b[1-6]\b|fase\s*[abc]", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Learning objectives
# ---------------------------------------------------------------------------


class LearningObjectivesRequest(BaseModel):
    """Source material plus curriculum context for TP generation."""

    text_content: str = Field(min_length=100, description="Source material, at least 100 characters")
    grade: str = Field(min_length=1, max_length=50, description="Grade label, e.g. 'Kelas 3' or 'Fase B'")
    subject: str = Field("", max_length=100, description="Subject name (required for grades 1-6)")
    cp_reference: str = Field(
        min_length=50,
        max_length=2000,
        description="Capaian Pembelajaran reference standard, 50-2000 characters",
    )
    model: str | None = Field(None, max_length=100, description="Pin a single model, bypassing the fallback chain")
    max_length_100: bool = Field(False, description="Report-card format: each objective at most 100 characters")
    semester_selection: Literal["both", "semester1", "semester2"] = "both"
    materi_pokok: str = Field("", max_length=2000, description="Optional topics the objectives must cover")

    @model_validator(mode="after")
    def _subject_required_for_primary(self) -> LearningObjectivesRequest:
        if _PRIMARY_GRADE.search(self.grade) and not self.subject.strip():
            raise ValueError("subject is required for grades 1-6")
        return self


class LearningObjectivesResponse(BaseModel):
    success: bool = True
    data: dict[str, list[dict[str, Any]]]
    warnings: list[str] = Field(default_factory=list)
    corrections: list[str] = Field(default_factory=list)
    quality_score: int
    suggestions: list[str] = Field(default_factory=list)
    tier: str


# ---------------------------------------------------------------------------
# Exam questions
# ---------------------------------------------------------------------------


class QuestionSectionIn(BaseModel):
    count: int = Field(0, ge=0, le=50)
    weight: float = Field(1, ge=0, le=100)


class ExamQuestionsRequest(BaseModel):
    """Learning objectives plus question mix for exam generation."""

    learning_goals: list[str] = Field(min_length=1, max_length=50, description="Learning objectives to assess")
    multiple_choice: QuestionSectionIn = Field(default_factory=lambda: QuestionSectionIn(count=10, weight=1))
    short_answer: QuestionSectionIn = Field(default_factory=lambda: QuestionSectionIn(count=5, weight=2))
    difficulty: Literal["mudah", "sedang", "sulit"] = "sedang"
    options_count: Literal[3, 4, 5] = 4
    distractor_quality: Literal["low", "medium", "high"] = "medium"
    include_image: bool = False
    model: str | None = Field(None, max_length=100)

    @model_validator(mode="after")
    def _at_least_one_question(self) -> ExamQuestionsRequest:
        if self.multiple_choice.count + self.short_answer.count == 0:
            raise ValueError("at least one question must be requested")
        return self


class ExamQuestionsResponse(BaseModel):
    success: bool = True
    data: dict[str, list[dict[str, Any]]]


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class QuotaStatusResponse(BaseModel):
    is_quota_exhausted: bool
    error_count: int
    last_error: str | None = None
    remaining_requests: int
    max_requests_per_minute: int
    queue_size: int
    status: Literal["exhausted", "warning", "healthy"]


class CredentialStatus(BaseModel):
    id: str
    masked: str
    banned: bool
    banned_ttl_ms: int | None = None
    remaining: int | None = None


class CredentialStatusResponse(BaseModel):
    redis_enabled: bool
    keys: list[CredentialStatus]

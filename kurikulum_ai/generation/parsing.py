"""JSON extraction and structural validation of model output."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from kurikulum_ai.gateway.errors import InvalidStructureError, MalformedOutputError
from kurikulum_ai.gateway.normalizer import objective_count
from kurikulum_ai.gateway.types import Tier
from kurikulum_ai.generation.tiers import FASE_A_QUESTION_FORBIDDEN, question_language_guide

logger = logging.getLogger(__name__)

MIN_OBJECTIVE_LENGTH = 20
IMBALANCE_THRESHOLD = 0.5

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$")
_TP_KEY = re.compile(r"^tp_\d+$")


def parse_json_response(text: str) -> Any:
    """Parse model text as JSON, tolerating a surrounding markdown code fence."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", cleaned))
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedOutputError(f"Failed to parse JSON response: {e}") from e


# ---------------------------------------------------------------------------
# Learning objectives
# ---------------------------------------------------------------------------


def validate_semester_structure(semester: Any) -> list[str]:
    """Structural problems of one semester group; an empty list means valid."""
    if not isinstance(semester, list):
        return ["Semester is not an array"]

    errors: list[str] = []
    for idx, chapter in enumerate(semester):
        if not isinstance(chapter, dict):
            errors.append(f"Chapter {idx}: Not an object")
            continue

        name = chapter.get("chapter")
        if not isinstance(name, str) or not name.strip():
            errors.append(f"Chapter {idx}: Missing or invalid chapter name")

        tp_keys = sorted((k for k in chapter if _TP_KEY.match(str(k))), key=lambda k: int(k[3:]))
        if not tp_keys:
            errors.append(f"Chapter {idx} ({name}): No TPs found")
            continue

        for key in tp_keys:
            tp = chapter[key]
            if tp is None:
                continue
            if not isinstance(tp, str):
                errors.append(f"Chapter {idx} ({name}), {key}: Not a string")
            elif not tp.strip():
                errors.append(f"Chapter {idx} ({name}), {key}: Empty string")
            elif len(tp) < MIN_OBJECTIVE_LENGTH:
                errors.append(f"Chapter {idx} ({name}), {key}: Too short ({len(tp)} chars)")

    return errors


def count_objectives(semester: list[Any]) -> int:
    return sum(objective_count(chapter) for chapter in semester if isinstance(chapter, dict))


def validate_learning_objectives(parsed: Any, semester_selection: str = "both") -> dict[str, list[Any]]:
    """Check the semester groups the selection requires and drop the unselected one.

    Raises:
        MalformedOutputError: the top level is not an object
        InvalidStructureError: a required semester is empty or malformed
    """
    if not isinstance(parsed, dict):
        raise MalformedOutputError("Invalid format: expected a JSON object with semester1/semester2")

    semester1 = parsed.get("semester1") or []
    semester2 = parsed.get("semester2") or []
    errors1 = validate_semester_structure(semester1)
    errors2 = validate_semester_structure(semester2)

    if errors1 and semester1:
        logger.warning("Semester 1 structure issues: %s", errors1)
    if errors2 and semester2:
        logger.warning("Semester 2 structure issues: %s", errors2)

    require1 = semester_selection in ("both", "semester1")
    require2 = semester_selection in ("both", "semester2")

    if require1 and (errors1 or not semester1):
        raise InvalidStructureError(
            "EMPTY_SEMESTER_1: AI failed to generate valid learning objectives for Semester 1."
        )
    if require2 and (errors2 or not semester2):
        raise InvalidStructureError(
            "EMPTY_SEMESTER_2: AI failed to generate valid learning objectives for Semester 2."
        )

    # The unselected semester is dropped even when the model filled it
    if semester_selection == "semester1":
        semester2 = []
    elif semester_selection == "semester2":
        semester1 = []

    count1 = count_objectives(semester1)
    count2 = count_objectives(semester2)
    if semester_selection == "both" and count1 + count2 > 0:
        imbalance = abs(count1 - count2) / max(count1, count2)
        logger.info("Semester distribution: %d vs %d objectives", count1, count2)
        if imbalance > IMBALANCE_THRESHOLD:
            logger.warning(
                "Semester imbalance detected: %d vs %d (%.1f%% difference)",
                count1,
                count2,
                imbalance * 100,
            )
    else:
        logger.info("%s selected: %d objectives generated", semester_selection, count1 + count2)

    return {"semester1": semester1, "semester2": semester2}


# ---------------------------------------------------------------------------
# Exam questions
# ---------------------------------------------------------------------------


def parse_questions(parsed: Any) -> dict[str, list[dict]]:
    """Extract multipleChoice and shortAnswer arrays; a legacy "essay" array counts as shortAnswer."""
    if not isinstance(parsed, dict):
        raise MalformedOutputError("Invalid format: expected a JSON object with multipleChoice/shortAnswer")

    multiple_choice = parsed.get("multipleChoice")
    if not isinstance(multiple_choice, list):
        raise MalformedOutputError("Response tidak memiliki array multipleChoice yang valid")

    short_answer = parsed.get("shortAnswer")
    if short_answer is None:
        short_answer = parsed.get("essay")
    if not isinstance(short_answer, list):
        raise MalformedOutputError("Response tidak memiliki array shortAnswer yang valid")

    for label, items in (("multipleChoice", multiple_choice), ("shortAnswer", short_answer)):
        for idx, item in enumerate(items):
            if not isinstance(item, dict):
                raise MalformedOutputError(f"{label}[{idx}] is not an object")

    return {"multipleChoice": multiple_choice, "shortAnswer": short_answer}


def check_question_language(questions: dict[str, list[dict]], tier: Tier) -> list[str]:
    """Advisory wording check for FASE_A questions; returns the logged issues."""
    if tier != Tier.FASE_A:
        return []

    max_words = question_language_guide(tier).max_words
    issues: list[str] = []
    for label, items in (("PG", questions["multipleChoice"]), ("Isian", questions["shortAnswer"])):
        for item in items:
            if not isinstance(item, dict):
                continue
            text = str(item.get("question", ""))
            number = item.get("questionNumber", "?")
            words = len(text.split())
            if words > max_words:
                issues.append(f"{label} #{number} exceeds {max_words} words: {words} words")
            found = [w for w in FASE_A_QUESTION_FORBIDDEN if w in text.lower()]
            if found:
                issues.append(f"{label} #{number} contains forbidden words: {', '.join(found)}")

    for issue in issues:
        logger.warning("Question language check: %s", issue)
    return issues

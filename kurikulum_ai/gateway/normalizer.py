"""Output Normalizer — validates and repairs generated learning objectives.

Applies, to every leaf item (tp_N) of a StructuredOutput:
  1. Canonical subject prefix ("Peserta didik mampu ...")
  2. Capitalize first letter
  3. Strip trailing terminator
  4. Max-length check (warning only, never truncated)
  5. Vocabulary-tier (KKO) check (warning only)
  6. ABCD completeness check (warning only)
  7. keranjang_N must be A/B/C (auto-corrected to "A")
  8. cakupan_materi_N must be non-empty (auto-filled)

Every repair adds exactly one entry to ``corrections``; every tolerated defect
adds exactly one entry to ``warnings``. The input is deep-copied and never
mutated, and normalizing an already-normalized value produces no corrections.
Raises only for structurally invalid input.
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from kurikulum_ai.gateway.errors import InvalidStructureError
from kurikulum_ai.gateway.types import DEFAULT_TIER, Tier

logger = logging.getLogger(__name__)

SEMESTER_KEYS = ("semester1", "semester2")

KERANJANG_VALUES = ("A", "B", "C")
DEFAULT_KERANJANG = "A"
DEFAULT_CAKUPAN_MATERI = "Topik pembelajaran"
SUBJECT_PHRASE = "peserta didik"
AUDIENCE_PREFIX = "Peserta didik mampu "
AUDIENCE_PREFIX_SHORT = "Peserta didik "

BASE_SCORE = 100
WARNING_PENALTY = 5
CORRECTION_PENALTY = 3
HIGH_QUALITY_MAX_CORRECTIONS = 2

# Warning message markers, used to derive improvement hints
LENGTH_MARKER = "Exceeds"
KKO_MARKER = "KKO issue"
ABCD_MARKER = "Missing ABCD"

ABCD_CONDITION_KEYWORDS = (
    "melalui",
    "dengan menggunakan",
    "berdasarkan",
    "setelah",
    "menggunakan",
    "dari",
    "pada",
    "dalam konteks",
)

ABCD_DEGREE_KEYWORDS = (
    "dengan benar",
    "dengan tepat",
    "dengan akurat",
    "secara sistematis",
    "minimal",
    "maksimal",
    "tanpa bantuan",
    "sesuai",
    "runtut",
)

# Bloom-taxonomy operational verbs (KKO) per curriculum phase
KKO_RULES: dict[Tier, dict[str, tuple[str, ...]]] = {
    Tier.FASE_A: {
        "appropriate": (
            "menyebutkan",
            "menunjukkan",
            "menghitung",
            "menceritakan",
            "meniru",
            "mengelompokkan",
            "membandingkan",
        ),
        "inappropriate": (
            "menganalisis",
            "mengevaluasi",
            "mensintesis",
            "merancang sistem",
            "mengkritisi",
        ),
    },
    Tier.FASE_B: {
        "appropriate": (
            "menjelaskan",
            "menghitung",
            "membandingkan",
            "mengelompokkan",
            "menerapkan",
            "mempraktikkan",
            "mengidentifikasi",
        ),
        "inappropriate": (
            "mengevaluasi teori",
            "mensintesis",
            "mengkritisi",
            "merancang sistem kompleks",
        ),
    },
    Tier.FASE_C: {
        "appropriate": (
            "menganalisis",
            "membandingkan",
            "mengkategorikan",
            "menyimpulkan",
            "memecahkan",
            "mengidentifikasi",
            "menghubungkan",
        ),
        "inappropriate": (
            "mensintesis teori",
            "merancang sistem kompleks",
            "mengkritisi teori",
        ),
    },
}

_BEHAVIOR_PATTERN = re.compile(r"\b(?:mampu|dapat)\s+\w+", re.IGNORECASE)
_TRAILING_TERMINATORS = re.compile(r"[\s.]+$")
_TP_KEY = re.compile(r"^tp_(\d+)$")


@dataclass
class NormalizationResult:
    """Normalized copy of the output plus its change log."""

    normalized: dict[str, list[dict[str, Any]]]
    warnings: list[str] = field(default_factory=list)
    corrections: list[str] = field(default_factory=list)

    @property
    def quality_score(self) -> int:
        return calculate_quality_score(self)

    @property
    def suggestions(self) -> list[str]:
        return improvement_suggestions(self)


def coerce_tier(tier: Tier | str) -> Tier:
    try:
        return Tier(tier)
    except ValueError:
        raise ValueError(f"Invalid tier: {tier}. Must be FASE_A, FASE_B, or FASE_C") from None


def normalize_output(raw: Any, tier: Tier | str, max_length: int | None = None) -> NormalizationResult:
    """Validate and repair a generated StructuredOutput.

    Args:
        raw: Parsed model output ``{"semester1": [...], "semester2": [...]}``
        tier: Curriculum phase whose vocabulary rules apply
        max_length: Optional character limit per objective (warning only)

    Returns:
        NormalizationResult with a new normalized value
    """
    if not isinstance(raw, Mapping):
        raise InvalidStructureError("Invalid input: raw must be an object")
    tier = coerce_tier(tier)

    normalized: dict[str, list[dict[str, Any]]] = {}
    for key in SEMESTER_KEYS:
        group = raw.get(key) or []
        if not isinstance(group, list):
            raise InvalidStructureError(f"Invalid input: {key} must be a list")
        normalized[key] = copy.deepcopy(group)

    result = NormalizationResult(normalized=normalized)
    for sem_index, key in enumerate(SEMESTER_KEYS, start=1):
        for chapter_index, chapter in enumerate(normalized[key]):
            if not isinstance(chapter, dict):
                result.warnings.append(f"[Sem{sem_index}][Bab {chapter_index + 1}] Chapter is not an object")
                continue
            _process_chapter(chapter, sem_index, chapter_index, tier, max_length, result)

    if result.warnings or result.corrections:
        logger.debug(
            "Normalized output: %d warning(s), %d correction(s)",
            len(result.warnings),
            len(result.corrections),
        )
    return result


def objective_count(chapter: Mapping[str, Any]) -> int:
    """Declared tp_count, or the highest tp_N present when the count is missing."""
    declared = chapter.get("tp_count")
    if isinstance(declared, int) and not isinstance(declared, bool) and declared > 0:
        return declared
    numbers = [int(m.group(1)) for k in chapter if (m := _TP_KEY.match(str(k)))]
    return max(numbers, default=0)


def _process_chapter(
    chapter: dict[str, Any],
    sem: int,
    chapter_index: int,
    tier: Tier,
    max_length: int | None,
    result: NormalizationResult,
) -> None:
    name = chapter.get("chapter") or f"Bab {chapter_index + 1}"
    for number in range(1, objective_count(chapter) + 1):
        _process_objective(chapter, number, sem, name, tier, max_length, result)


def _process_objective(
    chapter: dict[str, Any],
    number: int,
    sem: int,
    chapter_name: str,
    tier: Tier,
    max_length: int | None,
    result: NormalizationResult,
) -> None:
    tp_key = f"tp_{number}"
    keranjang_key = f"keranjang_{number}"
    cakupan_key = f"cakupan_materi_{number}"
    where = f"[Sem{sem}][{chapter_name}]"

    original = chapter.get(tp_key)
    if not isinstance(original, str) or not original.strip():
        result.warnings.append(f"{where} Missing {tp_key}")
        return

    tp = original.strip()
    if tp != original:
        result.corrections.append(f"{where}[{tp_key}] Trimmed surrounding whitespace")

    if SUBJECT_PHRASE not in tp.lower():
        tp, message = fix_audience_prefix(tp)
        result.corrections.append(f"{where}[{tp_key}] {message}")

    if tp[0] != tp[0].upper():
        tp = tp[0].upper() + tp[1:]
        result.corrections.append(f"{where}[{tp_key}] Capitalized first letter")

    stripped = _TRAILING_TERMINATORS.sub("", tp)
    if stripped != tp and stripped:
        tp = stripped
        result.corrections.append(f"{where}[{tp_key}] Removed trailing terminator")

    if max_length and len(tp) > max_length:
        result.warnings.append(
            f'{where}[{tp_key}] {LENGTH_MARKER} {max_length} chars ({len(tp)}): "{tp[:max_length]}..."'
        )

    kko_ok, kko_message = validate_kko(tp, tier)
    if not kko_ok:
        result.warnings.append(f"{where}[{tp_key}] {KKO_MARKER}: {kko_message}")

    missing = check_abcd(tp)
    if missing:
        result.warnings.append(f"{where}[{tp_key}] {ABCD_MARKER}: {', '.join(missing)}")

    chapter[tp_key] = tp

    keranjang = chapter.get(keranjang_key)
    canonical = keranjang.strip().upper() if isinstance(keranjang, str) else ""
    if canonical not in KERANJANG_VALUES:
        chapter[keranjang_key] = DEFAULT_KERANJANG
        result.corrections.append(
            f"{where}[{keranjang_key}] Invalid value {keranjang!r}, defaulted to '{DEFAULT_KERANJANG}'"
        )
    elif canonical != keranjang:
        chapter[keranjang_key] = canonical
        result.corrections.append(f"{where}[{keranjang_key}] Normalized {keranjang!r} to '{canonical}'")

    cakupan = chapter.get(cakupan_key)
    if not isinstance(cakupan, str) or not cakupan.strip():
        chapter[cakupan_key] = DEFAULT_CAKUPAN_MATERI
        result.corrections.append(f"{where}[{cakupan_key}] Missing, added default")


def fix_audience_prefix(tp: str) -> tuple[str, str]:
    """Insert the canonical subject phrase; returns (fixed text, correction message)."""
    lower = tp.lower()
    if lower.startswith("dapat "):
        return AUDIENCE_PREFIX + tp[len("dapat ") :], 'Added "Peserta didik mampu"'
    if lower.startswith("mampu "):
        return AUDIENCE_PREFIX_SHORT + tp, 'Added "Peserta didik"'
    return AUDIENCE_PREFIX + tp, "Prepended ABCD Audience"


def validate_kko(tp: str, tier: Tier) -> tuple[bool, str]:
    """No deny-listed verb and at least one allow-listed verb for the tier."""
    lower = tp.lower()
    rules = KKO_RULES.get(tier, KKO_RULES[DEFAULT_TIER])

    for verb in rules["inappropriate"]:
        if verb in lower:
            return False, f'KKO "{verb}" terlalu tinggi untuk {tier.value}'

    if not any(verb in lower for verb in rules["appropriate"]):
        examples = ", ".join(rules["appropriate"][:3])
        return False, f"Tidak ditemukan KKO yang sesuai untuk {tier.value}. Gunakan: {examples}, dll"

    return True, ""


def check_abcd(tp: str) -> list[str]:
    """Names of the missing Audience/Behavior/Condition/Degree components."""
    lower = tp.lower()
    missing: list[str] = []
    if SUBJECT_PHRASE not in lower:
        missing.append("A (Audience)")
    if not _BEHAVIOR_PATTERN.search(tp):
        missing.append("B (Behavior/KKO)")
    if not any(keyword in lower for keyword in ABCD_CONDITION_KEYWORDS):
        missing.append("C (Condition)")
    if not any(keyword in lower for keyword in ABCD_DEGREE_KEYWORDS):
        missing.append("D (Degree)")
    return missing


def calculate_quality_score(result: NormalizationResult) -> int:
    """100 - 5 per warning - 3 per correction, floored at 0."""
    score = BASE_SCORE - WARNING_PENALTY * len(result.warnings) - CORRECTION_PENALTY * len(result.corrections)
    return max(0, score)


def improvement_suggestions(result: NormalizationResult) -> list[str]:
    suggestions: list[str] = []

    length_count = sum(1 for w in result.warnings if LENGTH_MARKER in w)
    if length_count:
        suggestions.append(
            f"{length_count} TP melebihi batas karakter. Pertimbangkan retry dengan emphasis pada brevity."
        )

    kko_count = sum(1 for w in result.warnings if KKO_MARKER in w)
    if kko_count:
        suggestions.append(f"{kko_count} TP menggunakan KKO tidak sesuai fase. Perlu retry dengan KKO focus.")

    abcd_count = sum(1 for w in result.warnings if ABCD_MARKER in w)
    if abcd_count:
        suggestions.append(f"{abcd_count} TP kurang komponen ABCD. Perlu retry dengan ABCD validation.")

    if not result.warnings and len(result.corrections) <= HIGH_QUALITY_MAX_CORRECTIONS:
        suggestions.append("Output berkualitas tinggi. Tidak perlu retry.")

    return suggestions

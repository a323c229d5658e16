"""Curriculum phase (tier) resolution and per-phase language rules.

Primary school grades map onto three Kurikulum Merdeka phases:
  - FASE_A: grades 1-2, concrete thinking (Bloom C1-C2)
  - FASE_B: grades 3-4, concrete to abstract (Bloom C2-C3)
  - FASE_C: grades 5-6, abstract and critical thinking (Bloom C3-C4)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from kurikulum_ai.gateway.types import DEFAULT_TIER, Tier


@dataclass(frozen=True)
class PhaseRules:
    """Prompt-side vocabulary and complexity rules for one phase."""

    bloom_level: str
    cognitive: str
    kko: tuple[str, ...]
    kko_example: str
    example_full: str
    example_rapor: str
    forbidden_words: tuple[str, ...]
    max_words: int
    guidance: str
    context_sensitive: dict[str, str | tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class QuestionLanguageGuide:
    """Wording limits for exam questions aimed at one phase."""

    max_words: int
    vocabulary: str
    sentence: str
    example: str
    avoid: str
    bad_example: str = ""


PHASE_RULES: dict[Tier, PhaseRules] = {
    Tier.FASE_A: PhaseRules(
        bloom_level="C1-C2 (Remember, Understand)",
        cognitive="Concrete thinking, perlu visualisasi dan pengalaman langsung",
        kko=(
            "menyebutkan",
            "menunjukkan",
            "menghitung",
            "menceritakan",
            "meniru",
            "mengelompokkan",
            "mencontohkan",
            "membandingkan",
        ),
        kko_example="menyebutkan, menunjukkan (bukan: menganalisis, mengevaluasi)",
        example_full=(
            "Peserta didik mampu menyebutkan jenis-jenis tumbuhan berdasarkan pengamatan "
            "di taman sekolah dengan benar"
        ),
        example_rapor="Dapat menyebutkan jenis tumbuhan",
        forbidden_words=(
            "regulasi",
            "esensial",
            "kondusif",
            "potensi",
            "konflik",
            "efisiensi",
            "edukasi",
            "kompetensi",
            "signifikan",
            "harmonisan",
            "akademik",
            "fundamental",
            "optimal",
            "relevan",
            "substansial",
            "eksplisit",
            "implisit",
            "implikasi",
            "sintesis",
            "elaborasi",
            "paradigma",
            "konseptual",
        ),
        max_words=15,
        guidance="Fokus pada pengamatan langsung, aktivitas konkret, dan pengalaman nyata. Hindari konsep abstrak.",
        context_sensitive={
            "membandingkan": ("dua bilangan", "besar kecil", "panjang pendek", "banyak sedikit"),
            "mengidentifikasi": "GANTI dengan: menunjukkan, menyebutkan",
            "menganalisis": "GANTI dengan: melihat perbedaan, membandingkan",
            "mendeskripsikan": "GANTI dengan: menceritakan",
        },
    ),
    Tier.FASE_B: PhaseRules(
        bloom_level="C2-C3 (Understand, Apply)",
        cognitive="Transisi dari konkret ke abstrak, boleh mulai dengan konsep sederhana",
        kko=(
            "menjelaskan",
            "menghitung",
            "membandingkan",
            "mengelompokkan",
            "menerapkan",
            "mempraktikkan",
            "mengidentifikasi",
            "mengklasifikasikan",
        ),
        kko_example="menjelaskan, menerapkan, mengidentifikasi",
        example_full=(
            "Peserta didik mampu menjelaskan proses fotosintesis berdasarkan pengamatan "
            "tumbuhan di lingkungan dengan benar"
        ),
        example_rapor="Dapat menjelaskan fotosintesis",
        forbidden_words=(
            "regulasi",
            "esensial",
            "kondusif",
            "signifikan",
            "paradigma",
            "sintesis",
            "elaborasi",
            "konseptual",
        ),
        max_words=18,
        guidance=(
            "Boleh mulai dengan konsep sederhana. Perlu praktik dan penerapan. "
            "Hubungkan dengan pengalaman siswa."
        ),
        context_sensitive={
            "menganalisis": ("pola sederhana", "data tabel", "gambar", "grafik sederhana"),
            "mengevaluasi": "GANTI dengan: memilih yang tepat, menentukan yang benar",
            "merancang": ("percobaan sederhana",),
        },
    ),
    Tier.FASE_C: PhaseRules(
        bloom_level="C3-C4 (Apply, Analyze)",
        cognitive="Berpikir abstrak, critical thinking mulai berkembang",
        kko=(
            "menganalisis",
            "membandingkan",
            "mengkategorikan",
            "menyimpulkan",
            "memecahkan",
            "mengidentifikasi",
            "menghubungkan",
            "menerapkan",
        ),
        kko_example="menganalisis, memecahkan masalah, menyimpulkan",
        example_full=(
            "Peserta didik mampu menganalisis hubungan sebab-akibat dalam teks narasi "
            "berdasarkan pemahaman struktur cerita melalui diskusi kelompok"
        ),
        example_rapor="Dapat menganalisis hubungan sebab-akibat",
        forbidden_words=("paradigma", "sintesis teori", "elaborasi teori", "epistemologi"),
        max_words=20,
        guidance="Fokus pada analisis, pemecahan masalah, dan critical thinking. Dorong siswa berpikir kritis.",
        context_sensitive={
            "mengevaluasi": ("solusi sederhana", "hasil percobaan"),
            "merancang": ("percobaan", "model sederhana"),
            "mensintesis": "GANTI dengan: menyimpulkan, menggabungkan informasi",
        },
    ),
}

QUESTION_LANGUAGE_GUIDES: dict[Tier, QuestionLanguageGuide] = {
    Tier.FASE_A: QuestionLanguageGuide(
        max_words=10,
        vocabulary="sangat sederhana, konkret, dan familiar (hewan, buah, warna, angka 1-20, kegiatan sehari-hari)",
        sentence="sangat pendek (5-10 kata), satu kalimat tunggal sederhana",
        example="Andi punya 3 apel. Budi memberi 2 apel lagi. Berapa apel Andi sekarang?",
        avoid=(
            "istilah abstrak (regulasi, esensial, kondusif, potensi, efisiensi), kalimat majemuk, "
            "angka >50, pecahan, kata-kata formal/akademis"
        ),
        bad_example=(
            "Mengapa kepatuhan regulasi di lingkungan sekolah esensial bagi terciptanya "
            "kondisi pembelajaran yang kondusif?"
        ),
    ),
    Tier.FASE_B: QuestionLanguageGuide(
        max_words=15,
        vocabulary="sederhana tapi bisa konseptual (pecahan sederhana, ratusan, konsep dasar sains)",
        sentence="pendek-menengah (10-15 kata), boleh kalimat majemuk sederhana dengan 1 konjungsi",
        example="Ibu membeli 1/2 kg gula dan 1/4 kg tepung. Berapa kg total belanjaan ibu?",
        avoid="istilah ilmiah rumit, perhitungan ribuan, teori kompleks",
    ),
    Tier.FASE_C: QuestionLanguageGuide(
        max_words=18,
        vocabulary="menengah, dengan istilah ilmiah dasar SD (fotosintesis, peredaran darah, pecahan desimal, geometri)",
        sentence="menengah (12-18 kata), dapat menggunakan klausa majemuk dengan konjungsi standar",
        example="Jelaskan proses fotosintesis dan sebutkan faktor yang mempengaruhi pertumbuhan tanaman!",
        avoid="jargon tingkat SMP/SMA, konsep abstrak kompleks, matematika lanjut",
    ),
}

# Words young readers do not understand; checked on generated FASE_A questions
FASE_A_QUESTION_FORBIDDEN = (
    "regulasi",
    "esensial",
    "kondusif",
    "potensi",
    "konflik",
    "efisiensi",
    "edukasi",
    "kompetensi",
    "signifikan",
    "harmonisan",
    "akademik",
    "menganalisis",
    "mengidentifikasi",
    "mengevaluasi",
    "fundamental",
    "optimal",
    "relevan",
    "substansial",
    "eksplisit",
    "implisit",
)


def resolve_tier(grade: str) -> Tier:
    """Tier from a grade label such as "Kelas 3" or "Fase B"."""
    lower = (grade or "").lower()
    if "1" in lower or "2" in lower or "fase a" in lower:
        return Tier.FASE_A
    if "3" in lower or "4" in lower or "fase b" in lower:
        return Tier.FASE_B
    return Tier.FASE_C


def tier_from_objectives(objectives: Iterable[str]) -> Tier:
    """Tier detected from the learning-objective text handed to question generation."""
    text = " ".join(objectives).lower()
    if "kelas 1" in text or "kelas 2" in text or "fase a" in text:
        return Tier.FASE_A
    if "kelas 3" in text or "kelas 4" in text or "fase b" in text:
        return Tier.FASE_B
    return Tier.FASE_C


def phase_rules(tier: Tier | str) -> PhaseRules:
    try:
        return PHASE_RULES[Tier(tier)]
    except ValueError:
        return PHASE_RULES[DEFAULT_TIER]


def question_language_guide(tier: Tier | str) -> QuestionLanguageGuide:
    try:
        return QUESTION_LANGUAGE_GUIDES[Tier(tier)]
    except ValueError:
        return QUESTION_LANGUAGE_GUIDES[DEFAULT_TIER]


_PHASE_GUIDE_TEMPLATE = """
TAKSONOMI BLOOM & PERKEMBANGAN KOGNITIF UNTUK {tier}:
Tingkat Kognitif: {bloom_level}
Pemahaman Perkembangan: {cognitive}

KATA KERJA OPERASIONAL (KKO) YANG TEPAT:
{kko_lines}

Contoh KKO yang Sesuai Fase Ini:
   {kko_example}

Contoh TP untuk {tier}:
   "{example_full}"

FORMAT RAPOR (Max 100 karakter):
   "{example_rapor}"

LARANGAN:
   - JANGAN gunakan: {forbidden}, dll
   - Maksimal {max_words} kata untuk fase ini

Panduan: {guidance}
"""


def phase_language_guide(tier: Tier | str) -> str:
    """Prompt block with only the selected phase's rules."""
    rules = phase_rules(tier)
    name = tier.value if isinstance(tier, Tier) else str(tier)
    return _PHASE_GUIDE_TEMPLATE.format(
        tier=name,
        bloom_level=rules.bloom_level,
        cognitive=rules.cognitive,
        kko_lines="\n".join(f"   {k}" for k in rules.kko),
        kko_example=rules.kko_example,
        example_full=rules.example_full,
        example_rapor=rules.example_rapor,
        forbidden=", ".join(rules.forbidden_words[:5]),
        max_words=rules.max_words,
        guidance=rules.guidance,
    )

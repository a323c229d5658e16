"""Prompt assembly for learning objectives (TP) and exam questions.

Source material is truncated before it is embedded so one request stays
within the input budget of the free-tier models.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Sequence

from kurikulum_ai.gateway.types import Tier
from kurikulum_ai.generation.tiers import (
    phase_language_guide,
    question_language_guide,
)

if TYPE_CHECKING:
    from kurikulum_ai.generation.service import QuestionConfig

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MAX_INPUT_TOKENS = 4000
TRUNCATION_MARKER = "\n\n[... teks dipotong untuk menghemat quota ...]"

SEMESTER_SELECTIONS = ("both", "semester1", "semester2")


# ═══════════════════════════════════════════════════════════════════════════
# Input budget
# ═══════════════════════════════════════════════════════════════════════════


def estimate_tokens(text: str) -> int:
    """Rough token count (1 token ~ 4 characters)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_max_tokens(text: str, max_tokens: int = MAX_INPUT_TOKENS) -> str:
    """Cut text to the token budget, preferring a sentence or line boundary."""
    estimated = estimate_tokens(text)
    if estimated <= max_tokens:
        return text

    max_chars = max_tokens * CHARS_PER_TOKEN
    truncated = text[:max_chars]
    boundary = max(truncated.rfind("."), truncated.rfind("\n"))
    if boundary > max_chars * 0.8:
        truncated = truncated[: boundary + 1]

    logger.info("Truncated source text from ~%d to ~%d tokens", estimated, estimate_tokens(truncated))
    return truncated + TRUNCATION_MARKER


# ═══════════════════════════════════════════════════════════════════════════
# Learning objectives (TP)
# ═══════════════════════════════════════════════════════════════════════════

_LENGTH_RAPOR = """
BATASAN PANJANG WAJIB (FORMAT RAPOR):
- Setiap TP HARUS maksimal 100 karakter (termasuk spasi)
- Format ini untuk keperluan RAPOR, bukan perencanaan pembelajaran harian

STRATEGI PEMOTONGAN BERTAHAP (PRIORITAS DARI ATAS KE BAWAH):
1. Hilangkan Audience (A): "Peserta didik mampu" -> "Dapat"
2. Hilangkan Condition (C): hapus detail metode/alat ("setelah mengamati video", "dengan menggunakan kalkulator")
3. Ringkas Degree (D): "dengan ketelitian minimal 80% akurat" -> "dengan akurat"
4. Ringkas Behavior (B) jika masih >100 karakter: fokus satu keterampilan inti, ringkas objek, hindari kata mubazir

JANGAN PERNAH HILANGKAN:
- Kata Kerja Operasional (KKO)
- Objek pembelajaran utama
- Standar minimal (D)

Contoh akhir (42 karakter): "Dapat menjelaskan tahap siklus air dengan tepat"
"""

_LENGTH_FULL = """
PANJANG TP (FORMAT LENGKAP ABCD):
- TIDAK ada batasan maksimal karakter
- Format ini untuk PERENCANAAN PEMBELAJARAN, bukan untuk rapor
- Fokus pada kelengkapan komponen ABCD, bukan pada panjang kalimat

GUNAKAN FORMAT LENGKAP:
"Peserta didik mampu [B: KKO] [objek] [C: kondisi/metode] [D: standar penguasaan]"

CONTOH FORMAT LENGKAP:
- "Peserta didik mampu membandingkan dua bilangan 1-20 menggunakan simbol > dan < dengan benar"
- "Peserta didik mampu menjelaskan proses fotosintesis berdasarkan pengamatan percobaan dengan runtut dan sistematis"
- "Peserta didik mampu menganalisis hubungan sebab-akibat antara gaya dan gerak benda melalui percobaan sederhana dengan tepat"
"""

_KERANJANG_METHOD = """3. Gunakan 3-KERANJANG METHODOLOGY{scope}:

   LANGKAH 1: INVENTARISASI TOPIK
   - Pindai semua topik materi, list hanya topik UTAMA
   - Kelompokkan topik serupa jadi 1 item (jangan fragmented)

   LANGKAH 2: KLASIFIKASI 3 KERANJANG
   - Keranjang A (Pengetahuan Inti): Konsep/tema utama bab [KKO Level C2-C3]
   - Keranjang B (Teknis & Struktural): Aturan, rumus, kaidah [KKO Level C1-C2]
   - Keranjang C (Aplikasi & Keterampilan): Penerapan, masalah nyata [KKO Level C3-C4]

   LANGKAH 3: PERUMUSAN TP (MAKSIMAL 4 TP PER BAB)
   - TP 1 dari Keranjang A (WAJIB)
   - TP 2 dari Keranjang B (WAJIB)
   - TP 3 dari Keranjang C
   - TP 4 dari Keranjang A/B/C (OPSIONAL jika ada aspek penting lainnya)

   TIDAK BOLEH buat TP untuk detail micro (contoh: "menyebutkan perasaan Kiki")
   HARUS fokus pada BIG PICTURE pembelajaran yang penting

4. Setiap TP harus GENERAL & IMPORTANT, bukan DETAIL & MINOR"""

_SEMESTER_RULES = {
    "semester1": """
ATURAN PENTING:
1. SEMUA TP HARUS MASUK KE SEMESTER 1 SAJA - JANGAN pisahkan ke Semester 2
2. BUAT TP SEBANYAK YANG DIPERLUKAN UNTUK COVER SEMUA TOPIK UTAMA
   - 1 TP per topik utama yang ESSENTIAL
   - Hindari TP detail/micro atau TP yang redundan
""",
    "semester2": """
ATURAN PENTING:
1. SEMUA TP HARUS MASUK KE SEMESTER 2 SAJA - JANGAN pisahkan ke Semester 1
2. BUAT TP SEBANYAK YANG DIPERLUKAN UNTUK COVER SEMUA TOPIK UTAMA
   - 1 TP per topik utama yang ESSENTIAL
   - Jika ada topik "Unsur Kebahasaan", "Tanda Baca", atau "Tata Bahasa" -> HARUS JADI TP PERTAMA
""",
    "both": """
ATURAN PENTING:
1. PISAHKAN TP ke SEMESTER 1 dan SEMESTER 2 secara SEIMBANG (50:50 jika memungkinkan)
   - Semester 1: Topik dasar/fondasi (Basic & Intermediate)
   - Semester 2: Topik lanjutan/aplikasi (Advanced & Integration)
2. BUAT TP SEBANYAK YANG DIPERLUKAN PER SEMESTER
   - 1 TP per topik utama yang ESSENTIAL
   - Jangan ada topik yang terlewat dari materi
""",
}

_CHAPTER_EXAMPLE = """    {
      "chapter": "Nama Bab/Elemen",
      "tp_count": 3,
      "tp_1": "Peserta didik mampu [GENERAL & IMPORTANT]",
      "keranjang_1": "A / B / C",
      "cakupan_materi_1": "Topik yang dicakup",
      "tp_2": "Peserta didik mampu...",
      "keranjang_2": "A / B / C",
      "cakupan_materi_2": "Topik yang dicakup",
      "tp_3": "Peserta didik mampu...",
      "keranjang_3": "A / B / C",
      "cakupan_materi_3": "Topik yang dicakup"
    }"""

_OUTPUT_FORMAT = """
OUTPUT FORMAT (JSON):
Berikan response HANYA dalam format JSON yang valid. Maksimal 4 TP per bab:
{{
  "semester1": [{semester1}],
  "semester2": [{semester2}]
}}

WAJIB PATUHI:
- Maksimal 4 TP per bab (jangan lebih)
- Setiap TP mewakili 1 keranjang (A/B/C)
- Hindari TP redundan atau detail micro{balance}"""

_ABCD_BLOCK = """
FORMAT ABCD UNTUK TUJUAN PEMBELAJARAN (WAJIB):
Gunakan kerangka ABCD (Robert F. Mager) untuk merumuskan TP yang jelas dan terukur:

A - AUDIENCE: "Peserta didik" atau "Peserta didik kelas [X]"
B - BEHAVIOR: Kata Kerja Operasional (KKO) yang dapat diamati dan diukur, sesuai tingkat kognitif {tier}
C - CONDITION: konteks, situasi, atau bantuan yang diberikan
    Contoh: "setelah mengamati gambar", "dengan menggunakan alat peraga", "melalui diskusi kelompok"
D - DEGREE: standar kinerja yang diharapkan
    Contoh: "dengan benar", "minimal 80% akurat", "sesuai prosedur", "tanpa bantuan"

CONTOH FORMAT LENGKAP ABCD:
   "Peserta didik mampu mengidentifikasi jenis-jenis tumbuhan berdasarkan pengamatan di lingkungan sekitar minimal 5 jenis dengan benar"
"""

_LEARNING_OBJECTIVES_PROMPT = """Kamu adalah seorang ahli kurikulum merdeka Indonesia yang berpengalaman dalam merancang Tujuan Pembelajaran (TP) berkualitas tinggi dengan mempertimbangkan perkembangan kognitif anak. Analisis teks materi pembelajaran berikut dan buatkan TP dengan ketentuan:
{semester_rules}{keranjang}
5. TP harus SPESIFIK, TERUKUR, dan sesuai dengan Capaian Pembelajaran (CP)
{length_constraint}{abcd}
6. Pastikan setiap TP memiliki minimal komponen A-B-C (Audience-Behavior-Condition)
7. Komponen D (Degree) WAJIB disertakan{degree_note}
{phase_guide}
8. {fit_line}

MATERI:
Kelas: {grade}
{subject_line}Referensi CP: {reference_standard}{focus_block}

TEKS MATERI:
{source_text}

INSTRUKSI KHUSUS PENGELOLAAN MATERI POKOK (WAJIB DIPATUHI):
1. Jika lebih dari 4 topik, WAJIB lakukan PENGGABUNGAN topik sejenis.
2. Gabungkan materi kecil yang bersifat teknis/aturan/unsur pendukung ke dalam 1 TP yang relevan.
3. JANGAN MEMBUANG materi pokok apa pun.
{output_format}

SELF-VALIDATION (WAJIB sebelum output):
- [A] "Peserta didik mampu..." ada?
- [B] KKO sesuai {tier}? ({kko_hint})
- [C] Kondisi/metode pembelajaran ada?
- [D] Standar keberhasilan ada?
- {length_check}
- Tidak ada kata terlarang untuk {tier}?
- Struktur JSON valid (chapter: string, tp_count: number, tp_N: string, keranjang_N: string)?

INGAT: Output HANYA JSON valid tanpa markdown, tanpa penjelasan.
"""


def _learning_objectives_output_format(semester_selection: str) -> str:
    if semester_selection == "semester1":
        return _OUTPUT_FORMAT.format(semester1="\n" + _CHAPTER_EXAMPLE + "\n  ", semester2="", balance="")
    if semester_selection == "semester2":
        return _OUTPUT_FORMAT.format(semester1="", semester2="\n" + _CHAPTER_EXAMPLE + "\n  ", balance="")
    return _OUTPUT_FORMAT.format(
        semester1="\n" + _CHAPTER_EXAMPLE + "\n  ",
        semester2="\n" + _CHAPTER_EXAMPLE + "\n  ",
        balance="\n- Balance 50:50 antara semester 1 dan 2 jika memungkinkan",
    )


def build_learning_objectives_prompt(
    source_text: str,
    grade: str,
    subject: str,
    reference_standard: str,
    tier: Tier,
    max_length_100: bool = False,
    semester_selection: str = "both",
    focus_topics: str = "",
) -> str:
    """Prompt asking for a StructuredOutput of learning objectives."""
    if semester_selection not in SEMESTER_SELECTIONS:
        raise ValueError(f"semester_selection must be one of {', '.join(SEMESTER_SELECTIONS)}")

    truncated = truncate_to_max_tokens(source_text)
    logger.info("Learning objectives input: ~%d tokens, tier %s", estimate_tokens(truncated), tier.value)

    kko_hints = {
        Tier.FASE_A: "menyebutkan, menunjukkan, menghitung",
        Tier.FASE_B: "menjelaskan, menerapkan, mengidentifikasi",
        Tier.FASE_C: "menganalisis, menyimpulkan, memecahkan",
    }
    focus_block = ""
    if focus_topics:
        focus_block = (
            f"\nFOKUS MATERI POKOK: {focus_topics}\n"
            "   (Prioritaskan SEMUA topik ini dalam pembuatan TP - jangan ada yang terlewat!)"
        )
    scope = " untuk MASING-MASING semester" if semester_selection == "both" else ""

    return _LEARNING_OBJECTIVES_PROMPT.format(
        semester_rules=_SEMESTER_RULES[semester_selection],
        keranjang=_KERANJANG_METHOD.format(scope=scope),
        length_constraint=_LENGTH_RAPOR if max_length_100 else _LENGTH_FULL,
        abcd=_ABCD_BLOCK.format(tier=tier.value),
        degree_note=" kecuali untuk format rapor 100 karakter" if max_length_100 else "",
        phase_guide=phase_language_guide(tier),
        fit_line=(
            f"Sesuaikan dengan karakteristik mata pelajaran {subject} dan jenjang kelas {grade}"
            if subject
            else f"Sesuaikan dengan jenjang kelas {grade}"
        ),
        grade=grade,
        subject_line=f"Mata Pelajaran: {subject}\n" if subject else "",
        reference_standard=reference_standard,
        focus_block=focus_block,
        source_text=truncated,
        output_format=_learning_objectives_output_format(semester_selection),
        tier=tier.value,
        kko_hint=kko_hints[tier],
        length_check="Maksimal 100 karakter?" if max_length_100 else "Maksimal 20 kata?",
    )


# ═══════════════════════════════════════════════════════════════════════════
# Exam questions
# ═══════════════════════════════════════════════════════════════════════════

STRICT_LEVELS = {
    "mudah": "MUDAH (C1-C2: Hafalan/Faktual)",
    "sedang": "SEDANG (C3: Aplikasi Prosedural - DILARANG MEMINTA ALASAN/ANALISIS)",
    "sulit": "SULIT (C4-C6: HOTS/Analisis & Evaluasi)",
}

DIFFICULTY_GUIDES = {
    "mudah": """MUDAH (Low Level - C1/C2):
   - Target Kognitif: Mengingat & Memahami Dasar
   - Karakteristik: Jawaban tersurat, faktual, hafalan, identifikasi visual langsung
   - Kata Kerja: Sebutkan, Tunjukkan, Apa nama, Siapa, Kapan
   - LARANGAN: Jangan gunakan soal cerita kompleks, jangan hitungan bertingkat
   - Contoh: "Apa nama hewan yang hidup di air dan bernapas dengan insang?\"""",
    "sedang": """SEDANG (Medium Level - C3):
   - Target Kognitif: Menerapkan/Aplikasi Prosedural
   - Fokus: "HOW" (Bagaimana cara/hasilnya), BUKAN "WHY" (Mengapa)
   - Kata Kerja: Hitunglah, Urutkan, Kelompokkan, Lengkapi, Tentukan hasil
   - LARANGAN KERAS: JANGAN meminta alasan, analisis, atau evaluasi
   - Soal harus punya 1 jawaban pasti melalui hitungan/prosedur, bukan opini
   - Contoh: "Ibu membeli 12 apel, lalu memberikan 5 kepada kakak. Berapa sisa apel ibu?\"""",
    "sulit": """SULIT (High Level/HOTS - C4/C5/C6):
   - Target Kognitif: Analisis, Evaluasi, Kreasi
   - Karakteristik: Problem solving, logika sebab-akibat, transfer konsep ke situasi baru
   - Kata Kerja: Analisislah, Simpulkan, Bandingkan, Mengapa, Apa akibatnya, Temukan kesalahan
   - Contoh: "Ani berlari 3 putaran dalam 6 menit, Budi 2 putaran dalam 5 menit. Siapa yang lebih cepat dan mengapa?\"""",
}

DISTRACTOR_GUIDES = {
    "low": "Pengecoh boleh cukup berbeda dari jawaban benar, fokus pada kesalahan umum yang jelas",
    "medium": "Pengecoh harus mirip dengan jawaban benar dalam struktur, gunakan kesalahan prosedural umum",
    "high": (
        "Pengecoh harus sangat plausible dan sulit dibedakan, gunakan common misconceptions, "
        "panjang semua opsi setara"
    ),
}

OPTION_LETTERS = ("A", "B", "C", "D", "E")

QUESTIONS_FORMAT_EXAMPLE = """{
  "multipleChoice": [
    {"questionNumber": 1, "question": "...", "options": {"A": "...", "B": "..."}, "correctAnswer": "A", "weight": 1, "relatedTP": "..."}
  ],
  "shortAnswer": [
    {"questionNumber": 1, "question": "...", "correctAnswer": "...", "acceptableAnswers": [], "weight": 2, "relatedTP": "..."}
  ]
}"""

_FASE_A_WARNING = """
PERHATIAN KHUSUS UNTUK FASE A (KELAS 1-2 SD - USIA 6-8 TAHUN):
Anak kelas 1-2 SD HANYA bisa memahami kata sehari-hari, benda konkret, kegiatan sederhana, dan angka kecil (1-20, maksimal 50).
JANGAN PERNAH gunakan: regulasi, esensial, kondusif, potensi, konflik, efisiensi, edukasi, kompetensi, signifikan,
menganalisis (gunakan: melihat, menghitung), mengidentifikasi (gunakan: menunjuk, menyebutkan), mengevaluasi (gunakan: memilih yang benar)

CONTOH SOAL YANG SALAH (JANGAN DITIRU!):
   "{bad_example}"
"""

_QUESTIONS_PROMPT = """Kamu adalah seorang ahli pembuatan soal untuk kurikulum merdeka Indonesia yang SANGAT MEMPERHATIKAN kesesuaian bahasa dengan tingkat perkembangan siswa. Buatkan soal berdasarkan Tujuan Pembelajaran (TP) berikut:

TUJUAN PEMBELAJARAN:
{objectives}

KONFIGURASI SOAL:
- Pilihan Ganda: {mc_count} soal (bobot: {mc_weight} per soal)
- Isian Singkat: {sa_count} soal (bobot: {sa_weight} per soal)
  PENTING: Isian adalah soal jawaban SINGKAT (1-5 kata), BUKAN essay/uraian panjang
- Tingkat Kesulitan: {strict_level}
- Jumlah Opsi Jawaban: {options_count} opsi ({letters})
- Kualitas Pengecoh: {distractor_upper} - {distractor_guide}{image_line}

PEDOMAN KETAT TINGKAT KESULITAN (WAJIB PATUH):
{difficulty_guide}

STRUKTUR PENGECOH (DISTRACTOR):
- Pengecoh harus masuk akal dan berasal dari kesalahan umum siswa (common misconception)
- Panjang kalimat opsi harus relatif setara
- Hindari petunjuk seperti "selalu", "tidak pernah", "semua"

PANDUAN BAHASA UNTUK TINGKAT {tier} (WAJIB DIIKUTI):
- Kosakata: {vocabulary}
- Struktur kalimat: {sentence}
- Panjang maksimal: {max_words} kata per soal
- Contoh soal yang BENAR untuk tingkat ini: "{example}"
- HINDARI: {avoid}
{fase_a_warning}
ATURAN PEMBUATAN SOAL:
1. Soal harus relevan dengan TP yang diberikan dan mengukur pencapaian kompetensi
2. Pilihan Ganda: WAJIB {options_count} opsi jawaban ({letters}), hanya 1 jawaban benar
3. Isian singkat: jawaban SPESIFIK, PASTI, dan TERUKUR (angka, nama, istilah), bukan penjelasan panjang
4. Semua soal harus sesuai tingkat kesulitan: {difficulty}
5. Gunakan Bahasa Indonesia yang baku, jelas, dan tidak ambigu
6. KUNCI JAWABAN harus ACAK - hindari pola berurutan (A-A-A atau A-B-C-D)
7. Hindari kata "kecuali", "tidak", "bukan" dalam stem soal
8. VALIDASI WAJIB SETIAP SOAL: Maksimal {max_words} kata, kosakata sesuai tingkat {tier}{image_rule}

OUTPUT FORMAT (JSON):
{{
  "multipleChoice": [
    {{
      "questionNumber": 1,
      "question": "Teks soal...",
      "options": {{
        {option_lines}
      }},
      "correctAnswer": "{first_letter}",
      "weight": {mc_weight},
      "relatedTP": "Tujuan Pembelajaran terkait",
      "wordCount": 8{image_field}
    }}
  ],
  "shortAnswer": [
    {{
      "questionNumber": 1,
      "question": "Teks soal isian (gunakan ... atau _____ untuk tempat isian)...",
      "correctAnswer": "Jawaban singkat (1-5 kata)",
      "acceptableAnswers": ["Variasi jawaban yang diterima (opsional)"],
      "weight": {sa_weight},
      "relatedTP": "Tujuan Pembelajaran terkait",
      "wordCount": 8{image_field}
    }}
  ]
}}

PENTING:
- Response harus JSON valid murni tanpa markdown code blocks, komentar, atau text lainnya
- Mulai langsung dengan {{ dan akhiri dengan }}
- WAJIB gunakan {options_count} opsi ({letters}) untuk setiap soal pilihan ganda
- Tambahkan field "wordCount" untuk setiap soal (hitung jumlah kata dalam question)
"""


def build_questions_prompt(objectives: Sequence[str], config: QuestionConfig, tier: Tier) -> str:
    """Prompt asking for multipleChoice and shortAnswer arrays."""
    guide = question_language_guide(tier)
    letters = OPTION_LETTERS[: config.options_count]
    image_field = ""
    if config.include_image:
        image_field = ',\n      "imageDescription": "Deskripsi gambar/ilustrasi yang mendukung soal (opsional)"'

    return _QUESTIONS_PROMPT.format(
        objectives="\n".join(f"{i}. {tp}" for i, tp in enumerate(objectives, start=1)),
        mc_count=config.multiple_choice.count,
        mc_weight=config.multiple_choice.weight,
        sa_count=config.short_answer.count,
        sa_weight=config.short_answer.weight,
        strict_level=STRICT_LEVELS[config.difficulty],
        options_count=config.options_count,
        letters=", ".join(letters),
        distractor_upper=config.distractor_quality.upper(),
        distractor_guide=DISTRACTOR_GUIDES[config.distractor_quality],
        image_line="\n- Sertakan deskripsi gambar/ilustrasi yang mendukung soal" if config.include_image else "",
        difficulty_guide=DIFFICULTY_GUIDES[config.difficulty],
        tier=tier.value,
        vocabulary=guide.vocabulary,
        sentence=guide.sentence,
        max_words=guide.max_words,
        example=guide.example,
        avoid=guide.avoid,
        fase_a_warning=_FASE_A_WARNING.format(bad_example=guide.bad_example) if tier == Tier.FASE_A else "",
        difficulty=config.difficulty,
        image_rule=(
            '\n9. Tambahkan field "imageDescription" berisi deskripsi gambar/diagram yang sesuai untuk soal'
            if config.include_image
            else ""
        ),
        option_lines=",\n        ".join(f'"{letter}": "Opsi {letter}"' for letter in letters),
        first_letter=letters[0],
        image_field=image_field,
    )

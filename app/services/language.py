"""Lightweight script and keyword based language detection."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LanguageProfile:
    name: str
    scripts: tuple[re.Pattern[str], ...] = ()
    function_words: frozenset[str] = frozenset()
    keywords: tuple[str, ...] = ()


def _ranges(*ranges: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(f"[{pattern}]") for pattern in ranges)


PROFILES: tuple[LanguageProfile, ...] = (
    LanguageProfile(
        "hindi",
        _ranges("ऀ-ॿ"),
        keywords=("hindi", "hindustani", "punjabi", "gujarati", "marathi", "bengali"),
    ),
    LanguageProfile(
        "arabic",
        _ranges("؀-ۿ", "ݐ-ݿ", "ࢠ-ࣿ"),
        keywords=("arabic", "urdu", "persian", "farsi"),
    ),
    LanguageProfile(
        "japanese",
        _ranges("぀-ゟ", "゠-ヿ"),
        keywords=("japanese", "nihongo"),
    ),
    LanguageProfile(
        "chinese",
        _ranges("一-鿿", "㐀-䶿"),
        keywords=("chinese", "mandarin", "cantonese"),
    ),
    LanguageProfile(
        "korean",
        _ranges("가-힯", "ᄀ-ᇿ", "㄰-㆏"),
        keywords=("korean", "hangul"),
    ),
    LanguageProfile(
        "russian",
        _ranges("Ѐ-ӿ"),
        keywords=("russian", "ukrainian", "belarusian", "bulgarian", "serbian"),
    ),
    LanguageProfile(
        "spanish",
        function_words=frozenset(
            "el los las una unos unas pero como cuando donde para con sin sobre entre".split()
        ),
        keywords=("spanish", "español", "castellano", "latino"),
    ),
    LanguageProfile(
        "french",
        function_words=frozenset(
            "le les une des et mais comme quand où pour avec sans sur sous".split()
        ),
        keywords=("french", "français", "francais"),
    ),
    LanguageProfile(
        "german",
        function_words=frozenset(
            "der die das ein eine und oder aber wenn nicht wie für mit ohne auf über".split()
        ),
        keywords=("german", "deutsch"),
    ),
    LanguageProfile(
        "portuguese",
        function_words=frozenset(
            "os um uma uns umas ou mas não quando onde com sem sobre".split()
        ),
        keywords=("portuguese", "português", "portugues"),
    ),
    LanguageProfile(
        "italian",
        function_words=frozenset(
            "il gli una ma non che come quando dove per con senza sotto tra".split()
        ),
        keywords=("italian", "italiano"),
    ),
)

ENGLISH_WORDS = frozenset(
    "the a an and or but in on at to for of with by is are was were be been "
    "have has had do does did will would could should may might can must".split()
)

LANGUAGE_ALIASES: dict[str, str] = {
    "en": "english",
    "hi": "hindi",
    "ur": "hindi",
    "bn": "hindi",
    "pa": "hindi",
    "gu": "hindi",
    "mr": "hindi",
    "ar": "arabic",
    "fa": "arabic",
    "he": "arabic",
    "zh": "chinese",
    "ja": "japanese",
    "ko": "korean",
    "ru": "russian",
    "uk": "russian",
    "be": "russian",
    "bg": "russian",
    "sr": "russian",
    "es": "spanish",
    "fr": "french",
    "de": "german",
    "pt": "portuguese",
    "it": "italian",
}
SUPPORTED_LANGUAGES = frozenset({"english", *(profile.name for profile in PROFILES)})

WORD_RE = re.compile(r"\w+", re.UNICODE)


def normalise_language(value: str | None) -> str | None:
    """Map a language filter or ``Accept-Language`` code to a stored name.

    ``None`` and ``"all"`` mean no filter.
    """

    if not value:
        return None
    cleaned = value.strip().lower()
    if not cleaned or cleaned == "all":
        return None
    if cleaned in SUPPORTED_LANGUAGES:
        return cleaned
    primary = cleaned.split(",")[0].split(";")[0].split("-")[0].strip()
    return LANGUAGE_ALIASES.get(primary, "english")


class LanguageDetector:
    """Guesses the dominant language of a title and description."""

    def detect(self, text: str | None) -> str | None:
        try:
            return self._detect(text or "")
        except Exception:  # pragma: no cover - a missing language never blocks ingestion
            logger.exception("Language detection failed")
            return None

    def _detect(self, text: str) -> str | None:
        lowered = text.strip().lower()
        if not lowered:
            return None
        words = set(WORD_RE.findall(lowered))

        best_name: str | None = None
        best_score = 0
        for profile in PROFILES:
            score = 10 * sum(1 for pattern in profile.scripts if pattern.search(lowered))
            score += 3 * len(words & profile.function_words)
            score += 5 * sum(1 for keyword in profile.keywords if keyword in lowered)
            if score > best_score:
                best_name, best_score = profile.name, score

        if best_score >= 10:
            return best_name
        english_hits = len(words & ENGLISH_WORDS)
        if english_hits and english_hits * 3 >= best_score:
            return "english"
        return best_name

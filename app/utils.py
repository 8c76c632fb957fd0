"""Utility helpers for the VirtualFeed service."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from functools import lru_cache


PUNCTUATION_RE = re.compile(r"[^\w\s]")
TAG_SPLIT_RE = re.compile(r"[^\w\s#]")
HASHTAG_RE = re.compile(r"#(\w+)")
BRACKET_RE = re.compile(r"\[([^\]]+)\]")
PAREN_RE = re.compile(r"\(([^)]+)\)")
QUOTE_RE = re.compile(r'"([^"]+)"')

TAG_STOP_WORDS = frozenset(
    {
        "the",
        "and",
        "but",
        "for",
        "with",
        "this",
        "that",
        "from",
        "what",
        "when",
        "where",
        "which",
    }
)
MAX_TAGS = 15


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, matching stored values."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalise_words(text: str, *, min_length: int = 4) -> list[str]:
    """Lowercase ``text``, turn punctuation into spaces and keep long words."""

    cleaned = PUNCTUATION_RE.sub(" ", (text or "").lower())
    return [word for word in cleaned.split() if len(word) >= min_length]


@lru_cache(maxsize=512)
def word_pattern(term: str) -> re.Pattern[str]:
    """Compile a case-insensitive whole-word pattern for ``term``."""

    return re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)


def contains_term(text: str, term: str) -> bool:
    return word_pattern(term).search(text) is not None


def decode_html_url(url: object) -> str:
    """Undo the ``&amp;`` escaping Reddit applies to media URLs."""

    if not isinstance(url, str):
        return ""
    return url.replace("&amp;", "&").strip()


def extract_tags(
    title: str,
    source: str,
    *,
    extra: tuple[str, ...] | list[str] = (),
) -> list[str]:
    """Derive a short, ordered tag list from a post title."""

    tags: list[str] = []

    def _add(tag: str) -> None:
        tag = tag.strip().lower()
        if tag and len(tag) < 50 and tag not in tags:
            tags.append(tag)

    _add(source)
    for tag in extra:
        _add(str(tag))
    for match in HASHTAG_RE.findall(title or ""):
        _add(match)
    for pattern in (QUOTE_RE, BRACKET_RE, PAREN_RE):
        for match in pattern.findall(title or ""):
            _add(match)

    words = TAG_SPLIT_RE.sub(" ", (title or "").lower()).split()
    for word in words:
        word = word.lstrip("#")
        if len(word) <= 3 or word in TAG_STOP_WORDS:
            continue
        if "ai" in word or any(char.isdigit() for char in word) or len(word) > 6:
            _add(word)

    return tags[:MAX_TAGS]

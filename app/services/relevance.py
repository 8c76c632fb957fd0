"""Topic relevance checks for harvested candidates."""

from __future__ import annotations

import logging
import re
from typing import Iterable

from ..models import CandidateItem
from ..sources import RelevanceMode
from ..utils import contains_term

logger = logging.getLogger(__name__)

PRIMARY_TERMS: tuple[str, ...] = (
    "ai",
    "artificial intelligence",
    "generated",
    "stable diffusion",
    "midjourney",
    "dall-e",
    "sora",
    "gpt",
    "chatgpt",
    "machine learning",
    "neural network",
    "deep learning",
    "algorithm",
    "automated",
    "synthetic",
)

SECONDARY_TERMS: tuple[str, ...] = (
    "video",
    "created",
    "made",
    "produced",
    "animation",
    "render",
    "generated",
    "using",
    "with",
    "by",
    "through",
)

LENIENT_TERMS: tuple[str, ...] = PRIMARY_TERMS + (
    "aigenerated",
    "ai-generated",
    "ai generated",
)

_ACTIONS = "generated|created|made|produced"
_TOOLS = "stable diffusion|midjourney|dall-e|sora"

GENERATION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bai\s+(generated|created|made|produced|video|animation|render|using|with|by|through)\b",
        rf"\b({_ACTIONS})\s+(by|with|using)\s+ai\b",
        rf"\b({_TOOLS})\s+({_ACTIONS}|video|animation|render)\b",
        rf"\b({_ACTIONS})\s+(by|with|using)\s+({_TOOLS})\b",
        rf"\b(machine learning|neural network|deep learning|algorithm)\s+({_ACTIONS})\b",
    )
)


def _has_excluded_term(text: str, exclude_terms: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(term and term.lower() in lowered for term in exclude_terms)


def _matches_any(text: str, terms: Iterable[str]) -> bool:
    return any(contains_term(text, term) for term in terms)


def is_relevant(
    candidate: CandidateItem,
    trusted: bool,
    *,
    exclude_terms: Iterable[str] = (),
    mode: RelevanceMode = "strict",
) -> bool:
    """Return whether ``candidate`` is on topic.

    Exclusion terms reject everything. Trusted sources are otherwise accepted
    outright. Strict mode needs a primary term, a secondary term and a
    generation pattern together; lenient mode is satisfied by any topic term.
    All term checks honour word boundaries so ``air`` never counts as ``ai``.
    """

    try:
        exclusion_text = f"{candidate.title} {candidate.body}"
        if _has_excluded_term(exclusion_text, exclude_terms):
            return False
        if trusted or mode == "trusted":
            return True

        text = candidate.text
        if mode == "lenient":
            return _matches_any(text, LENIENT_TERMS)

        if not _matches_any(text, PRIMARY_TERMS):
            return False
        if not _matches_any(text, SECONDARY_TERMS):
            return False
        return any(pattern.search(text) for pattern in GENERATION_PATTERNS)
    except Exception:  # pragma: no cover - rejection is the safe default
        logger.exception("Relevance check failed for %s", candidate.external_id)
        return False

"""Near-duplicate detection deciding how a candidate lands in the catalog."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Protocol

from ..config import Settings
from ..models import (
    CandidateItem,
    CatalogEntry,
    Decision,
    DuplicateMatch,
    Insert,
    MatchReason,
    Replace,
    Skip,
)
from ..utils import normalise_words, utcnow

logger = logging.getLogger(__name__)

REDDIT_MEDIA_ID_RE = re.compile(r"v\.redd\.it/([A-Za-z0-9]+)")
YOUTUBE_MEDIA_ID_RE = re.compile(
    r"(?:youtube\.com/(?:watch\?(?:.*&)?v=|shorts/|embed/)|youtu\.be/)([A-Za-z0-9_-]{6,})"
)


@dataclass(frozen=True)
class DedupSettings:
    """Empirically tuned weights and thresholds, kept configurable."""

    window_hours: float = 48.0
    title_similarity: float = 0.7
    title_weight: float = 0.4
    duration_tolerance: float = 5.0
    duration_weight: float = 0.3
    cross_source_author_weight: float = 0.4
    same_source_author_weight: float = 0.2
    media_id_weight: float = 0.5
    threshold: float = 0.7
    cross_source_threshold: float = 0.6

    @classmethod
    def from_settings(cls, settings: Settings) -> "DedupSettings":
        return cls(
            window_hours=settings.dedup_window_hours,
            title_similarity=settings.dedup_title_similarity,
            title_weight=settings.dedup_title_weight,
            duration_tolerance=settings.dedup_duration_tolerance_seconds,
            duration_weight=settings.dedup_duration_weight,
            cross_source_author_weight=settings.dedup_cross_source_author_weight,
            same_source_author_weight=settings.dedup_same_source_author_weight,
            media_id_weight=settings.dedup_media_id_weight,
            threshold=settings.dedup_threshold,
            cross_source_threshold=settings.dedup_cross_source_threshold,
        )


def title_similarity(first: str, second: str) -> float:
    """Return the share of meaningful words the two titles have in common."""

    words_first = normalise_words(first)
    words_second = normalise_words(second)
    if not words_first or not words_second:
        return 0.0
    lookup = set(words_second)
    matches = sum(1 for word in words_first if word in lookup)
    return matches / max(len(words_first), len(words_second))


def extract_media_id(url: str | None, platform: str) -> str | None:
    """Return the platform media identifier embedded in ``url``."""

    if not url:
        return None
    pattern = YOUTUBE_MEDIA_ID_RE if platform == "youtube" else REDDIT_MEDIA_ID_RE
    match = pattern.search(url)
    return match.group(1) if match else None


def _same_author(candidate: CandidateItem, entry: CatalogEntry) -> bool:
    if not candidate.author or not entry.author:
        return False
    return candidate.author.strip().lower() == entry.author.strip().lower()


def score_match(
    candidate: CandidateItem,
    entry: CatalogEntry,
    settings: DedupSettings | None = None,
) -> tuple[float, MatchReason]:
    """Return the additive similarity score and the reason it was reached."""

    config = settings or DedupSettings()
    if candidate.media_url and candidate.media_url == entry.video_url:
        return 1.0, "exact-url"

    cross_source = candidate.source != entry.source
    same_author = _same_author(candidate, entry)
    score = 0.0

    if title_similarity(candidate.title, entry.title) >= config.title_similarity:
        score += config.title_weight

    entry_duration = entry.duration
    if candidate.duration is not None and entry_duration is not None:
        if abs(candidate.duration - entry_duration) <= config.duration_tolerance:
            score += config.duration_weight

    if same_author:
        score += (
            config.cross_source_author_weight
            if cross_source
            else config.same_source_author_weight
        )

    if not cross_source:
        candidate_id = extract_media_id(candidate.media_url, candidate.platform)
        entry_id = extract_media_id(entry.video_url, entry.platform)
        if candidate_id and candidate_id == entry_id:
            score += config.media_id_weight

    reason: MatchReason = (
        "same-author-cross-source"
        if same_author and cross_source
        else "title-similarity-combo"
    )
    return round(score, 6), reason


def _threshold_for(
    candidate: CandidateItem, entry: CatalogEntry, config: DedupSettings
) -> float:
    if candidate.source != entry.source and _same_author(candidate, entry):
        return config.cross_source_threshold
    return config.threshold


def decide(
    candidate: CandidateItem,
    pool: Iterable[CatalogEntry],
    settings: DedupSettings | None = None,
    *,
    existing: CatalogEntry | None = None,
) -> Decision:
    """Pick Insert, Replace or Skip for ``candidate`` against ``pool``.

    ``existing`` is the entry already stored under the candidate's external id
    on the same platform; when present it short-circuits similarity scoring.
    """

    config = settings or DedupSettings()

    if existing is not None:
        match = DuplicateMatch(
            candidate.external_id, existing.id, 1.0, "same-external-id"
        )
        if candidate.score > existing.likes:
            return Replace(existing.id, match)
        return Skip(match)

    entries = list(pool)
    if candidate.media_url:
        exact = [entry for entry in entries if entry.video_url == candidate.media_url]
        if exact:
            entry = max(exact, key=lambda item: (item.created_at, item.id))
            match = DuplicateMatch(candidate.external_id, entry.id, 1.0, "exact-url")
            if candidate.score > entry.likes:
                return Replace(entry.id, match)
            return Skip(match)

    best: tuple[float, CatalogEntry, MatchReason] | None = None
    for entry in entries:
        score, reason = score_match(candidate, entry, config)
        if score < 1.0 and score < _threshold_for(candidate, entry, config):
            continue
        if best is None:
            best = (score, entry, reason)
            continue
        best_score, best_entry, _ = best
        if score > best_score or (
            score == best_score and entry.created_at > best_entry.created_at
        ):
            best = (score, entry, reason)

    if best is None:
        return Insert()

    score, entry, reason = best
    match = DuplicateMatch(candidate.external_id, entry.id, min(score, 1.0), reason)
    if candidate.score > entry.likes:
        return Replace(entry.id, match)
    return Skip(match)


class CatalogReader(Protocol):
    async def find_by_external_id(
        self, platform: str, external_id: str
    ) -> CatalogEntry | None: ...

    async def find_recent_by_source(
        self, source: str, since: datetime
    ) -> list[CatalogEntry]: ...

    async def find_recent_by_author_across_sources(
        self, author: str, exclude_source: str, since: datetime
    ) -> list[CatalogEntry]: ...

    async def find_by_exact_media_url(self, media_url: str) -> list[CatalogEntry]: ...


class DuplicateResolver:
    """Collects comparison pools from the catalog and applies :func:`decide`."""

    def __init__(self, store: CatalogReader, settings: DedupSettings | None = None):
        self._store = store
        self.settings = settings or DedupSettings()

    async def gather_pool(
        self, candidate: CandidateItem, *, now: datetime | None = None
    ) -> list[CatalogEntry]:
        since = (now or utcnow()) - timedelta(hours=self.settings.window_hours)
        pool: dict[int, CatalogEntry] = {}

        for entry in await self._store.find_recent_by_source(candidate.source, since):
            pool.setdefault(entry.id, entry)
        if candidate.author:
            for entry in await self._store.find_recent_by_author_across_sources(
                candidate.author, candidate.source, since
            ):
                pool.setdefault(entry.id, entry)
        if candidate.media_url:
            for entry in await self._store.find_by_exact_media_url(candidate.media_url):
                pool.setdefault(entry.id, entry)
        return list(pool.values())

    async def resolve(
        self, candidate: CandidateItem, *, now: datetime | None = None
    ) -> Decision:
        """Return the catalog decision for ``candidate``.

        Any failure while gathering or scoring resolves to :class:`Insert` so a
        single fault never stalls ingestion; duplicates may accumulate while
        such faults persist.
        """

        try:
            existing = await self._store.find_by_external_id(
                candidate.platform, candidate.external_id
            )
            if existing is not None:
                return decide(candidate, (), self.settings, existing=existing)
            pool = await self.gather_pool(candidate, now=now)
            return decide(candidate, pool, self.settings)
        except Exception:
            logger.exception(
                "Duplicate resolution failed for %s, inserting", candidate.external_id
            )
            return Insert()

"""Duplicate detection scoring and decisions."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from app.models import CandidateItem, CatalogEntry, Insert, Replace, Skip
from app.services.dedup import (
    DedupSettings,
    DuplicateResolver,
    decide,
    extract_media_id,
    score_match,
    title_similarity,
)

NOW = datetime(2024, 5, 1, 12, 0, 0)


def _entry(entry_id: int, **overrides) -> CatalogEntry:
    values = {
        "id": entry_id,
        "external_id": f"e{entry_id}",
        "title": "Unrelated clip",
        "video_url": f"https://v.redd.it/entry{entry_id}/DASH_720.mp4",
        "thumbnail_url": "https://example.com/t.jpg",
        "source": "aivideo",
        "platform": "reddit",
        "author": None,
        "likes": 10,
        "created_at": NOW - timedelta(hours=2),
    }
    values.update(overrides)
    return CatalogEntry(**values)


def _candidate(**overrides) -> CandidateItem:
    values = {
        "external_id": "c1",
        "title": "Something else entirely",
        "media_url": "https://v.redd.it/cand1/DASH_720.mp4",
        "source": "aivideo",
        "platform": "reddit",
        "score": 20,
        "created_at": NOW,
    }
    values.update(overrides)
    return CandidateItem(**values)


def test_title_similarity_uses_long_words_only() -> None:
    score = title_similarity(
        "AI Generated Sunset Timelapse", "AI-Generated Sunset Timelapse (Remastered)"
    )

    assert score == 0.75
    assert title_similarity("a b c", "a b c") == 0.0


def test_cross_source_same_author_repost_is_replaced_by_more_popular_copy() -> None:
    existing = _entry(
        1,
        title="AI Generated Sunset Timelapse",
        source="aiart",
        author="SkyMaker",
        likes=10,
    )
    candidate = _candidate(
        title="AI-Generated Sunset Timelapse (Remastered)",
        source="aivideo",
        author="skymaker",
        score=50,
    )

    score, reason = score_match(candidate, existing)
    decision = decide(candidate, [existing])

    assert score == 0.8
    assert reason == "same-author-cross-source"
    assert isinstance(decision, Replace)
    assert decision.existing_id == 1


def test_less_popular_duplicate_is_skipped() -> None:
    existing = _entry(1, title="AI Generated Sunset Timelapse", source="aiart", author="sky", likes=100)
    candidate = _candidate(title="AI Generated Sunset Timelapse", author="sky", score=5)

    decision = decide(candidate, [existing])

    assert isinstance(decision, Skip)
    assert decision.match is not None
    assert decision.match.entry_id == 1


def test_exact_media_url_is_always_a_duplicate() -> None:
    existing = _entry(4, video_url="https://v.redd.it/same/DASH_720.mp4", source="midjourney")
    candidate = _candidate(media_url="https://v.redd.it/same/DASH_720.mp4", score=1)

    score, reason = score_match(candidate, existing)

    assert (score, reason) == (1.0, "exact-url")
    assert isinstance(decide(candidate, [existing]), Skip)


def test_same_source_media_id_and_duration_combine() -> None:
    existing = _entry(
        2,
        video_url="https://v.redd.it/abc123/DASH_480.mp4",
        metadata={"duration": 14.0},
        likes=50,
    )
    candidate = _candidate(
        media_url="https://v.redd.it/abc123/DASH_1080.mp4",
        duration=12.0,
        score=60,
    )

    score, _ = score_match(candidate, existing)

    assert score == 0.8
    assert isinstance(decide(candidate, [existing]), Replace)


def test_weak_similarity_inserts() -> None:
    existing = _entry(3, title="AI Generated Sunset Timelapse")
    candidate = _candidate(title="AI Generated Sunset Timelapse", duration=None)

    assert score_match(candidate, existing)[0] == 0.4
    assert isinstance(decide(candidate, [existing]), Insert)


def test_ties_prefer_the_newest_entry() -> None:
    older = _entry(1, video_url="https://v.redd.it/same/DASH_720.mp4", created_at=NOW - timedelta(hours=5))
    newer = _entry(2, video_url="https://v.redd.it/same/DASH_720.mp4", created_at=NOW - timedelta(hours=1))
    candidate = _candidate(media_url="https://v.redd.it/same/DASH_720.mp4", score=999)

    decision = decide(candidate, [older, newer])

    assert isinstance(decision, Replace)
    assert decision.existing_id == 2


def test_exact_media_url_wins_over_higher_scoring_entry() -> None:
    shared_url = "https://v.redd.it/abc123/DASH_720.mp4"
    exact = _entry(
        1,
        title="AI Generated Sunset Timelapse",
        author="sky",
        video_url=shared_url,
        metadata={"duration": 12.0},
        likes=100,
    )
    lookalike = _entry(
        2,
        title="AI Generated Sunset Timelapse",
        author="sky",
        video_url="https://v.redd.it/abc123/DASH_480.mp4",
        metadata={"duration": 12.0},
        likes=5,
        created_at=NOW - timedelta(hours=1),
    )
    candidate = _candidate(
        title="AI Generated Sunset Timelapse",
        author="sky",
        media_url=shared_url,
        duration=12.0,
        score=50,
    )

    assert score_match(candidate, lookalike)[0] > 1.0
    decision = decide(candidate, [lookalike, exact])

    assert isinstance(decision, Skip)
    assert decision.match is not None
    assert decision.match.entry_id == 1
    assert decision.match.reason == "exact-url"


def test_extract_media_id_per_platform() -> None:
    assert extract_media_id("https://v.redd.it/xyz9/DASH_720.mp4", "reddit") == "xyz9"
    assert extract_media_id("https://youtube.com/shorts/abcdefghijk", "youtube") == "abcdefghijk"
    assert extract_media_id("https://example.com/video.mp4", "reddit") is None


class MemoryCatalog:
    """In-memory stand-in for the catalog store queries used by the resolver."""

    def __init__(self, entries: list[CatalogEntry]) -> None:
        self.entries = entries

    async def find_by_external_id(self, platform, external_id):
        for entry in self.entries:
            if entry.platform == platform and entry.external_id == external_id:
                return entry
        return None

    async def find_recent_by_source(self, source, since):
        return [e for e in self.entries if e.source == source and e.created_at >= since]

    async def find_recent_by_author_across_sources(self, author, exclude_source, since):
        return [
            e
            for e in self.entries
            if e.author
            and e.author.lower() == author.lower()
            and e.source != exclude_source
            and e.created_at >= since
        ]

    async def find_by_exact_media_url(self, media_url):
        return [e for e in self.entries if e.video_url == media_url]


class BrokenCatalog(MemoryCatalog):
    async def find_recent_by_source(self, source, since):
        raise RuntimeError("database is locked")


def test_resolver_gathers_cross_source_pool_within_window() -> None:
    stale = _entry(1, title="AI Generated Sunset Timelapse", source="aiart", author="sky", created_at=NOW - timedelta(hours=72))
    fresh = _entry(2, title="AI Generated Sunset Timelapse", source="aiart", author="sky", created_at=NOW - timedelta(hours=3))
    resolver = DuplicateResolver(MemoryCatalog([stale, fresh]), DedupSettings())
    candidate = _candidate(title="AI Generated Sunset Timelapse", author="Sky", score=50)

    pool = asyncio.run(resolver.gather_pool(candidate, now=NOW))
    decision = asyncio.run(resolver.resolve(candidate, now=NOW))

    assert [entry.id for entry in pool] == [2]
    assert isinstance(decision, Replace)
    assert decision.existing_id == 2


def test_resolver_short_circuits_on_known_external_id() -> None:
    known = _entry(7, external_id="c1", likes=100)
    resolver = DuplicateResolver(MemoryCatalog([known]))

    decision = asyncio.run(resolver.resolve(_candidate(score=5), now=NOW))

    assert isinstance(decision, Skip)
    assert decision.match is not None
    assert decision.match.reason == "same-external-id"


def test_resolver_fails_open_to_insert() -> None:
    resolver = DuplicateResolver(BrokenCatalog([]))

    decision = asyncio.run(resolver.resolve(_candidate(), now=NOW))

    assert isinstance(decision, Insert)

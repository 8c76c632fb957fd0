"""Built-in source definitions for the ingestion cycle."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


Platform = Literal["reddit", "youtube"]
RelevanceMode = Literal["trusted", "strict", "lenient"]


@dataclass(frozen=True)
class SourceDefinition:
    """Describes one external source scraped every cycle."""

    key: str
    name: str
    platform: Platform
    min_score: int = 10
    relevance: RelevanceMode = "strict"
    exclude_terms: tuple[str, ...] = ()
    search_terms: tuple[str, ...] = ()
    max_pages: int = 1

    @property
    def trusted(self) -> bool:
        return self.relevance == "trusted"


@dataclass(frozen=True)
class ListingStrategy:
    """One listing call made against a source during a cycle."""

    kind: Literal["search", "new", "hot", "top"]
    term: str | None = None
    limit: int = 25
    time_filter: str | None = None
    page: int = 0

    @property
    def label(self) -> str:
        if self.kind == "search":
            return f"search({self.term})"
        if self.time_filter:
            return f"{self.kind}({self.time_filter})"
        return self.kind


DEFAULT_SEARCH_TERMS: tuple[str, ...] = (
    "ai video",
    "generated video",
    "stable diffusion video",
    "midjourney video",
    "sora video",
)

YOUTUBE_SEARCH_TERMS: tuple[str, ...] = (
    "aivideo",
    "ai shorts",
    "stable diffusion video",
    "midjourney video",
    "ai generated animation",
    "artificial intelligence video",
)


def _subreddit(
    name: str,
    *,
    min_score: int = 10,
    relevance: RelevanceMode = "strict",
) -> SourceDefinition:
    return SourceDefinition(
        key=name.lower(),
        name=name,
        platform="reddit",
        min_score=min_score,
        relevance=relevance,
    )


BUILTIN_SOURCES: tuple[SourceDefinition, ...] = (
    _subreddit("StableDiffusion", relevance="trusted"),
    _subreddit("midjourney", relevance="trusted"),
    _subreddit("sdforall", relevance="trusted"),
    _subreddit("aivideo", relevance="trusted"),
    _subreddit("AIGeneratedContent", min_score=5, relevance="trusted"),
    _subreddit("aiArt", min_score=5, relevance="trusted"),
    _subreddit("chatGPT"),
    _subreddit("nextfuckinglevel"),
    _subreddit("damnthatsinteresting"),
    _subreddit("interestingasfuck"),
    _subreddit("singularity"),
    _subreddit("crazyfuckingvideos"),
    SourceDefinition(
        key="youtube",
        name="youtube",
        platform="youtube",
        min_score=0,
        relevance="lenient",
        search_terms=YOUTUBE_SEARCH_TERMS,
        max_pages=1,
    ),
)

BUILTIN_SOURCE_MAP: dict[str, SourceDefinition] = {
    source.key: source for source in BUILTIN_SOURCES
}


def normalise_source_key(value: object) -> str:
    """Return the lookup key for a source name as typed by an operator."""

    raw = value if isinstance(value, str) else str(value or "")
    slug = raw.strip().lower()
    if slug.startswith("r/"):
        slug = slug[2:]
    return slug

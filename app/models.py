"""Pydantic models describing candidates, catalog entries and feed payloads."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .utils import utcnow

Platform = Literal["reddit", "youtube"]


class CandidateItem(BaseModel):
    """A raw post observed from an external source."""

    external_id: str
    title: str
    body: str = ""
    flair: str | None = None
    author: str | None = None
    score: int = 0
    views: int = 0
    media_url: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    source: str
    platform: Platform = "reddit"
    duration: float | None = None
    nsfw: bool = False
    thumbnail_hint: str | None = None
    source_tags: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        """Title, body and flair joined for keyword checks."""

        return " ".join(part for part in (self.title, self.body, self.flair or "") if part)

    def media_metadata(self) -> dict[str, Any]:
        """Return the opaque metadata bag stored alongside a catalog entry."""

        metadata: dict[str, Any] = {**self.extra, "author": self.author}
        if self.duration is not None:
            metadata["duration"] = self.duration
        metadata["score"] = self.score
        return metadata


class CatalogEntry(BaseModel):
    """Read-only view of a persisted catalog row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    external_id: str
    title: str
    description: str | None = None
    video_url: str
    thumbnail_url: str
    source: str
    platform: str
    author: str | None = None
    tags: list[str] = Field(default_factory=list)
    views: int = 0
    likes: int = 0
    nsfw: bool = False
    blacklisted: bool = False
    language: str | None = None
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    created_at: datetime
    updated_at: datetime | None = None

    @property
    def duration(self) -> float | None:
        value = self.metadata.get("duration")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        seconds = self.metadata.get("durationSeconds")
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            return float(seconds)
        return None

    def hours_since_posted(self, now: datetime | None = None) -> float:
        reference = now or utcnow()
        return max((reference - self.created_at).total_seconds() / 3600.0, 0.0)

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON shape served to clients."""

        return {
            "id": self.id,
            "externalId": self.external_id,
            "title": self.title,
            "description": self.description,
            "videoUrl": self.video_url,
            "thumbnailUrl": self.thumbnail_url,
            "source": self.source,
            "platform": self.platform,
            "tags": list(self.tags),
            "views": self.views,
            "likes": self.likes,
            "nsfw": self.nsfw,
            "language": self.language,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


def trending_score(views: int, hours_since_posted: float) -> float:
    """Return ``log(views / max(hours, 1) + 1)`` rounded to two decimals."""

    hours = max(hours_since_posted, 1.0)
    return round(math.log(max(views, 0) / hours + 1), 2)


class FeedItem(BaseModel):
    """A catalog entry annotated with its popularity signal and provenance."""

    entry: CatalogEntry
    stage: str
    bucket: str
    window: str
    is_fallback: bool = False
    hours_since_posted: float = 0.0

    @property
    def score(self) -> float:
        return trending_score(self.entry.views, self.hours_since_posted)

    def to_payload(self) -> dict[str, Any]:
        hours = max(self.hours_since_posted, 1.0)
        payload = self.entry.to_payload()
        payload["trending"] = {
            "period": self.window,
            "score": self.score,
            "viewsPerHour": round(self.entry.views / hours, 2),
            "hoursSincePosted": round(self.hours_since_posted, 2),
            "isFallback": self.is_fallback,
        }
        payload["provenance"] = {
            "stage": self.stage,
            "bucket": self.bucket,
            "window": self.window,
        }
        return payload


MatchReason = Literal[
    "exact-url",
    "same-author-cross-source",
    "title-similarity-combo",
    "same-external-id",
]


@dataclass(frozen=True, slots=True)
class DuplicateMatch:
    candidate_id: str
    entry_id: int
    score: float
    reason: MatchReason


@dataclass(frozen=True, slots=True)
class Insert:
    match: DuplicateMatch | None = None


@dataclass(frozen=True, slots=True)
class Replace:
    existing_id: int
    match: DuplicateMatch | None = None


@dataclass(frozen=True, slots=True)
class Skip:
    match: DuplicateMatch | None = None


Decision = Insert | Replace | Skip

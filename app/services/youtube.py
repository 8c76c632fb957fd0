"""Client for the YouTube Data API v3."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

import httpx

from ..config import Settings
from ..models import CandidateItem
from ..sources import ListingStrategy, SourceDefinition
from ..utils import extract_tags
from .fetch import SourceError

logger = logging.getLogger(__name__)

SEARCH_COST = 100
VIDEOS_COST = 1
MAX_RESULTS = 50

ISO_DURATION_RE = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")
VIDEO_ID_RE = re.compile(
    r"(?:youtube\.com/watch\?(?:.*&)?v=|youtu\.be/|youtube\.com/shorts/)([A-Za-z0-9_-]{11})"
)

LOW_QUALITY_KEYWORDS: tuple[str, ...] = (
    "free fire",
    "pubg",
    "bgmi",
    "status video",
    "whatsapp status",
    "lyrics",
    "shayari",
    "fan edit",
    "template",
    "vs edit",
)


class QuotaExhaustedError(SourceError):
    """Raised before a call that would overspend the daily quota."""

    def __init__(self, label: str):
        super().__init__(403, f"YouTube quota exhausted before {label}")


def parse_iso_duration(value: str | None) -> float | None:
    """Convert an ISO 8601 ``PT#H#M#S`` duration to seconds."""

    if not value:
        return None
    match = ISO_DURATION_RE.fullmatch(value)
    if not match or not any(match.groups()):
        return None
    hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return float(hours * 3600 + minutes * 60 + seconds)


def extract_video_id(url: str) -> str | None:
    match = VIDEO_ID_RE.search(url or "")
    return match.group(1) if match else None


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _parse_published(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _best_thumbnail(snippet: dict[str, Any]) -> str | None:
    thumbnails = snippet.get("thumbnails") or {}
    for key in ("maxres", "high", "medium", "default"):
        url = (thumbnails.get(key) or {}).get("url")
        if isinstance(url, str) and url:
            return url
    return None


@dataclass(slots=True)
class QuotaTracker:
    """Tracks Data API units spent during the current UTC day."""

    limit: int = 10_000
    used: int = 0
    day: date = field(default_factory=lambda: datetime.now(timezone.utc).date())

    def _roll(self) -> None:
        today = datetime.now(timezone.utc).date()
        if today != self.day:
            self.day = today
            self.used = 0

    @property
    def remaining(self) -> int:
        self._roll()
        return max(self.limit - self.used, 0)

    def can_spend(self, cost: int) -> bool:
        return self.remaining >= cost

    def spend(self, cost: int) -> None:
        self._roll()
        self.used += cost


class YouTubeClient:
    """Searches short AI videos and resolves their details."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        quota: QuotaTracker | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self.quota = quota or QuotaTracker(limit=settings.youtube_quota_limit)
        self._page_tokens: dict[tuple[str, int], str] = {}

    @property
    def configured(self) -> bool:
        return bool(self._settings.youtube_api_key)

    async def _get(self, endpoint: str, params: dict[str, Any], cost: int, label: str) -> dict[str, Any]:
        if not self.configured:
            raise SourceError(401, "YouTube API key is not configured")
        if not self.quota.can_spend(cost):
            raise QuotaExhaustedError(label)

        url = f"{str(self._settings.youtube_api_url).rstrip('/')}/{endpoint}"
        self.quota.spend(cost)
        try:
            response = await self._client.get(
                url, params={**params, "key": self._settings.youtube_api_key}
            )
        except httpx.HTTPError as exc:
            raise SourceError.from_transport(exc, label) from exc
        if response.status_code >= 400:
            if response.status_code == 403:
                logger.error("YouTube API quota exceeded or API key invalid")
            raise SourceError.from_response(response, label)
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceError.malformed(label, "returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise SourceError.malformed(label, "returned an unexpected payload")
        return payload

    async def search(self, term: str, page_token: str | None = None) -> tuple[list[str], str | None]:
        """Return video ids for ``term`` and the token of the next page."""

        params: dict[str, Any] = {
            "part": "snippet",
            "q": term,
            "type": "video",
            "videoDuration": "short",
            "order": "date",
            "maxResults": MAX_RESULTS,
        }
        if page_token:
            params["pageToken"] = page_token
        payload = await self._get("search", params, SEARCH_COST, f"youtube search({term})")
        ids = [
            item["id"]["videoId"]
            for item in payload.get("items") or []
            if isinstance(item, dict)
            and isinstance(item.get("id"), dict)
            and item["id"].get("videoId")
        ]
        return ids, payload.get("nextPageToken")

    async def video_details(self, video_ids: list[str]) -> list[dict[str, Any]]:
        if not video_ids:
            return []
        payload = await self._get(
            "videos",
            {"part": "snippet,contentDetails,statistics", "id": ",".join(video_ids)},
            VIDEOS_COST,
            f"youtube videos({len(video_ids)})",
        )
        return [item for item in payload.get("items") or [] if isinstance(item, dict)]

    def is_low_quality(self, item: dict[str, Any]) -> bool:
        snippet = item.get("snippet") or {}
        statistics = item.get("statistics") or {}
        title = (snippet.get("title") or "").lower()
        if any(keyword in title for keyword in LOW_QUALITY_KEYWORDS):
            return True

        weak_engagement = (
            _to_int(statistics.get("viewCount")) < self._settings.youtube_min_view_count
            and _to_int(statistics.get("likeCount")) < self._settings.youtube_min_like_count
        )
        weak_content = (
            len((snippet.get("description") or "").strip())
            < self._settings.youtube_min_description_length
            and len(snippet.get("tags") or []) < 3
        )
        return weak_engagement and weak_content

    def parse_video(self, item: dict[str, Any], *, search_term: str | None = None) -> CandidateItem | None:
        """Return a candidate for ``item`` or ``None`` when it is filtered out."""

        video_id = item.get("id")
        if not isinstance(video_id, str) or not video_id:
            return None
        snippet = item.get("snippet") or {}
        statistics = item.get("statistics") or {}
        details = item.get("contentDetails") or {}

        duration = parse_iso_duration(details.get("duration"))
        if duration is None or duration >= self._settings.youtube_max_duration_seconds:
            logger.debug("Skipping YouTube video %s with duration %s", video_id, duration)
            return None
        if self.is_low_quality(item):
            logger.debug("Skipping low quality YouTube video %s", video_id)
            return None

        likes = _to_int(statistics.get("likeCount"))
        views = _to_int(statistics.get("viewCount"))
        title = snippet.get("title") or ""
        url = watch_url(video_id)
        video_tags = [str(tag).lower() for tag in snippet.get("tags") or []]
        extra: dict[str, Any] = {
            "youtubeId": video_id,
            "youtubeUrl": url,
            "publishedAt": snippet.get("publishedAt"),
            "channelTitle": snippet.get("channelTitle"),
            "viewCount": views,
            "commentCount": _to_int(statistics.get("commentCount")),
            "searchTerm": search_term or "user-submitted",
        }

        values: dict[str, Any] = {
            "external_id": video_id,
            "title": title,
            "body": snippet.get("description") or "",
            "author": snippet.get("channelTitle") or snippet.get("channelId"),
            "score": likes,
            "views": views,
            "media_url": url,
            "source": "youtube",
            "platform": "youtube",
            "duration": duration,
            "thumbnail_hint": _best_thumbnail(snippet),
            "source_tags": extract_tags(title, "youtube", extra=["youtube-shorts", *video_tags]),
            "extra": extra,
        }
        published = _parse_published(snippet.get("publishedAt"))
        if published is not None:
            values["created_at"] = published
        return CandidateItem(**values)

    async def fetch_listing(
        self, source: SourceDefinition, strategy: ListingStrategy
    ) -> list[CandidateItem]:
        """Run one paged search and resolve the results to candidates."""

        term = strategy.term or ""
        token = self._page_tokens.get((term, strategy.page - 1)) if strategy.page else None
        if strategy.page and token is None:
            return []
        ids, next_token = await self.search(term, token)
        if next_token:
            self._page_tokens[(term, strategy.page)] = next_token
        else:
            self._page_tokens.pop((term, strategy.page), None)

        candidates: list[CandidateItem] = []
        for item in await self.video_details(ids):
            candidate = self.parse_video(item, search_term=term)
            if candidate is not None:
                candidate.source = source.key
                candidates.append(candidate)
        return candidates

    async def fetch_item(self, external_id: str) -> CandidateItem:
        items = await self.video_details([external_id])
        if not items:
            raise SourceError(404, f"YouTube video {external_id} not found")
        candidate = self.parse_video(items[0])
        if candidate is None:
            raise SourceError(422, f"YouTube video {external_id} does not qualify")
        return candidate

    async def is_available(self, video_id: str) -> bool:
        """Return whether a catalogued video is still public and embeddable."""

        try:
            payload = await self._get(
                "videos",
                {"part": "status", "id": video_id},
                VIDEOS_COST,
                f"youtube status({video_id})",
            )
        except QuotaExhaustedError:
            raise
        except SourceError as exc:
            if exc.status in (403, 404):
                return False
            raise
        items = payload.get("items") or []
        if not items:
            return False
        status = (items[0] or {}).get("status") or {}
        return bool(
            status.get("embeddable") is True
            and status.get("privacyStatus") in ("public", "unlisted")
            and status.get("uploadStatus") in ("processed", "uploaded")
        )

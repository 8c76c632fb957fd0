"""Client for the Reddit OAuth API."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from ..config import Settings
from ..models import CandidateItem
from ..sources import ListingStrategy, SourceDefinition, normalise_source_key
from ..utils import decode_html_url, extract_tags
from .fetch import SourceError

logger = logging.getLogger(__name__)

DASH_VIDEO_RE = re.compile(r"/DASH_\d+\.mp4", re.IGNORECASE)
DIRECT_VIDEO_RE = re.compile(r"\.(mp4|webm)$", re.IGNORECASE)
VREDDIT_ID_RE = re.compile(r"v\.redd\.it/([^/?]+)", re.IGNORECASE)
POST_URL_RE = re.compile(r"reddit\.com/r/([^/]+)/comments/([^/]+)")

TOKEN_EXPIRY_MARGIN = 60


def is_playable_reddit_url(url: str | None) -> bool:
    return bool(url) and DASH_VIDEO_RE.search(url) is not None


def parse_post_url(url: str) -> tuple[str, str] | None:
    """Return ``(subreddit, post_id)`` for a Reddit comments permalink."""

    match = POST_URL_RE.search(url or "")
    if not match:
        return None
    return match.group(1), match.group(2)


def _reddit_video(post: dict[str, Any]) -> dict[str, Any] | None:
    for container in (post.get("media"), post.get("secure_media")):
        if isinstance(container, dict) and isinstance(container.get("reddit_video"), dict):
            return container["reddit_video"]
    crossposts = post.get("crosspost_parent_list") or []
    if crossposts and isinstance(crossposts[0], dict):
        return _reddit_video({k: v for k, v in crossposts[0].items() if k != "crosspost_parent_list"})
    return None


def _preview_thumbnail(post: dict[str, Any]) -> str | None:
    candidates = [post]
    crossposts = post.get("crosspost_parent_list") or []
    if crossposts and isinstance(crossposts[0], dict):
        candidates.append(crossposts[0])

    for candidate in candidates:
        images = (candidate.get("preview") or {}).get("images") or []
        if images:
            url = ((images[0] or {}).get("source") or {}).get("url")
            if isinstance(url, str) and url.startswith("http"):
                return decode_html_url(url)
    for candidate in candidates:
        thumb = candidate.get("thumbnail")
        if isinstance(thumb, str) and thumb.startswith("http"):
            return decode_html_url(thumb)
    return None


def _is_youtube_link(post: dict[str, Any]) -> bool:
    media = post.get("media") or {}
    url = post.get("url") or ""
    return (
        (isinstance(media, dict) and media.get("type") == "youtube.com")
        or "youtube.com" in url
        or "youtu.be" in url
    )


def parse_post(post: dict[str, Any], source: str | None = None) -> CandidateItem:
    """Turn a Reddit ``t3`` payload into a candidate.

    ``media_url`` stays empty when the post has no playable fallback MP4 or
    direct video link.
    """

    source_key = source or normalise_source_key(post.get("subreddit"))
    media_url = ""
    duration: float | None = None
    extra: dict[str, Any] = {
        "redditUrl": f"https://reddit.com{post.get('permalink', '')}",
        "redditScore": int(post.get("score") or 0),
        "upvotes": int(post.get("score") or 0),
    }

    video = _reddit_video(post)
    if video:
        fallback_url = decode_html_url(video.get("fallback_url"))
        dash_url = decode_html_url(video.get("dash_url"))
        hls_url = decode_html_url(video.get("hls_url"))
        extra["redditVideoSources"] = {
            "fallbackUrl": fallback_url or None,
            "dashUrl": dash_url or None,
            "hlsUrl": hls_url or None,
        }
        if is_playable_reddit_url(fallback_url):
            media_url = fallback_url
            audio_url = reddit_audio_url(fallback_url)
            if audio_url:
                extra["audioUrl"] = audio_url
        if isinstance(video.get("duration"), (int, float)):
            duration = float(video["duration"])
        for key in ("width", "height"):
            if isinstance(video.get(key), int):
                extra[key] = video[key]
    elif not _is_youtube_link(post) and DIRECT_VIDEO_RE.search(post.get("url") or ""):
        media_url = post["url"]

    author = post.get("author")
    if author in (None, "", "[deleted]"):
        author = None

    created_utc = post.get("created_utc")
    created_at = (
        datetime.fromtimestamp(float(created_utc), tz=timezone.utc).replace(tzinfo=None)
        if isinstance(created_utc, (int, float))
        else None
    )

    values: dict[str, Any] = {
        "external_id": str(post.get("id") or ""),
        "title": post.get("title") or "",
        "body": post.get("selftext") or "",
        "flair": post.get("link_flair_text"),
        "author": author,
        "score": int(post.get("score") or 0),
        "media_url": media_url,
        "source": source_key,
        "platform": "reddit",
        "duration": duration,
        "nsfw": bool(post.get("over_18")),
        "thumbnail_hint": _preview_thumbnail(post),
        "source_tags": extract_tags(post.get("title") or "", source_key),
        "extra": extra,
    }
    if created_at is not None:
        values["created_at"] = created_at
    return CandidateItem(**values)


def reddit_audio_url(video_url: str) -> str | None:
    """Return the DASH audio track URL sitting next to a v.redd.it video."""

    match = VREDDIT_ID_RE.search(video_url or "")
    if not match:
        return None
    query = video_url[video_url.index("?"):] if "?" in video_url else ""
    return f"https://v.redd.it/{match.group(1)}/DASH_AUDIO_128.mp4{query}"


class RedditClient:
    """Thin wrapper around the Reddit OAuth listing endpoints."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return self._settings.reddit_configured

    def _headers(self, token: str | None = None) -> dict[str, str]:
        headers = {"User-Agent": self._settings.reddit_user_agent}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        if not self.configured:
            raise SourceError(401, "Reddit credentials are not configured")

        try:
            response = await self._client.post(
                str(self._settings.reddit_token_url),
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self._settings.reddit_refresh_token,
                },
                auth=(
                    self._settings.reddit_client_id or "",
                    self._settings.reddit_client_secret or "",
                ),
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise SourceError.from_transport(exc, "Reddit token refresh") from exc
        if response.status_code >= 400:
            raise SourceError.from_response(response, "Reddit token refresh")

        payload = self._json(response, "Reddit token refresh")
        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise SourceError.malformed("Reddit token refresh", "returned no access token")
        expires_in = payload.get("expires_in")
        lifetime = float(expires_in) if isinstance(expires_in, (int, float)) else 3600.0
        self._access_token = token
        self._token_expires_at = time.monotonic() + max(lifetime - TOKEN_EXPIRY_MARGIN, 0.0)
        logger.info("Refreshed Reddit access token")
        return token

    @staticmethod
    def _json(response: httpx.Response, label: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceError.malformed(label, "returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise SourceError.malformed(label, "returned an unexpected payload")
        return payload

    async def _get(self, path: str, params: dict[str, Any], label: str) -> dict[str, Any]:
        token = await self._token()
        url = f"{str(self._settings.reddit_api_url).rstrip('/')}{path}"
        try:
            response = await self._client.get(
                url,
                params={**params, "raw_json": 1},
                headers=self._headers(token),
            )
        except httpx.HTTPError as exc:
            raise SourceError.from_transport(exc, label) from exc

        if response.status_code == 401:
            self._access_token = None
        if response.status_code >= 400:
            raise SourceError.from_response(response, label)
        return self._json(response, label)

    @staticmethod
    def _children(payload: dict[str, Any]) -> list[dict[str, Any]]:
        data = payload.get("data") or {}
        children = data.get("children") if isinstance(data, dict) else None
        if not isinstance(children, list):
            raise SourceError.malformed("Reddit listing", "payload has no children")
        posts: list[dict[str, Any]] = []
        for child in children:
            if isinstance(child, dict) and child.get("kind") == "t3":
                post = child.get("data")
                if isinstance(post, dict) and post.get("id"):
                    posts.append(post)
        return posts

    async def fetch_listing(
        self, source: SourceDefinition, strategy: ListingStrategy
    ) -> list[CandidateItem]:
        """Fetch one listing for a subreddit."""

        base = f"/r/{source.name}"
        params: dict[str, Any] = {"limit": strategy.limit}
        if strategy.kind == "search":
            path = f"{base}/search"
            params.update(
                {
                    "q": strategy.term or "",
                    "sort": "new",
                    "t": strategy.time_filter or "week",
                    "restrict_sr": 1,
                }
            )
        else:
            path = f"{base}/{strategy.kind}"
            if strategy.time_filter:
                params["t"] = strategy.time_filter

        payload = await self._get(path, params, f"r/{source.name} {strategy.label}")
        return [parse_post(post, source.key) for post in self._children(payload)]

    async def fetch_item(self, external_id: str) -> CandidateItem:
        """Fetch a single submission by id."""

        post_id = external_id.removeprefix("t3_")
        payload = await self._get(
            f"/by_id/t3_{post_id}", {}, f"submission {post_id}"
        )
        posts = self._children(payload)
        if not posts:
            raise SourceError(404, f"Reddit submission {post_id} not found")
        return parse_post(posts[0])

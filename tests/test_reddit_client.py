"""Tests for the Reddit API client and post parsing."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from app.config import Settings
from app.services.fetch import NonRetryableError, ResilientFetcher, RetryPolicy, SourceError
from app.services.reddit import RedditClient, parse_post, parse_post_url, reddit_audio_url
from app.sources import BUILTIN_SOURCE_MAP, ListingStrategy


def build_settings(**overrides: Any) -> Settings:
    base = {
        "REDDIT_CLIENT_ID": "client-id",
        "REDDIT_CLIENT_SECRET": "client-secret",
        "REDDIT_REFRESH_TOKEN": "refresh-token",
    }
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


def video_post(**overrides: Any) -> dict[str, Any]:
    post = {
        "id": "abc123",
        "title": "Dreamlike city made with AI",
        "selftext": "",
        "author": "SkyMaker",
        "subreddit": "aivideo",
        "score": 42,
        "over_18": False,
        "permalink": "/r/aivideo/comments/abc123/dreamlike_city/",
        "created_utc": 1714564800,
        "url": "https://v.redd.it/abc123",
        "media": {
            "reddit_video": {
                "fallback_url": "https://v.redd.it/abc123/DASH_720.mp4?source=fallback",
                "dash_url": "https://v.redd.it/abc123/DASHPlaylist.mpd?a=1&amp;v=1",
                "hls_url": "https://v.redd.it/abc123/HLSPlaylist.m3u8",
                "duration": 14,
                "width": 720,
                "height": 1280,
            }
        },
        "preview": {"images": [{"source": {"url": "https://preview.redd.it/x.jpg?w=1&amp;s=2"}}]},
    }
    post.update(overrides)
    return post


def listing(*posts: dict[str, Any]) -> dict[str, Any]:
    return {"data": {"children": [{"kind": "t3", "data": post} for post in posts]}}


def test_parse_post_extracts_playable_video() -> None:
    candidate = parse_post(video_post(), "aivideo")

    assert candidate.external_id == "abc123"
    assert candidate.media_url == "https://v.redd.it/abc123/DASH_720.mp4?source=fallback"
    assert candidate.duration == 14.0
    assert candidate.thumbnail_hint == "https://preview.redd.it/x.jpg?w=1&s=2"
    assert candidate.extra["audioUrl"] == "https://v.redd.it/abc123/DASH_AUDIO_128.mp4?source=fallback"
    assert candidate.extra["redditVideoSources"]["dashUrl"].endswith("a=1&v=1")
    assert candidate.created_at.year == 2024


def test_parse_post_without_video_has_no_media() -> None:
    post = video_post(media=None, url="https://i.redd.it/picture.png", author="[deleted]")

    candidate = parse_post(post)

    assert candidate.media_url == ""
    assert candidate.author is None
    assert candidate.source == "aivideo"


def test_parse_post_uses_crosspost_video() -> None:
    original = video_post()
    crosspost = video_post(id="xyz789", media=None, crosspost_parent_list=[original])

    candidate = parse_post(crosspost, "aiart")

    assert candidate.external_id == "xyz789"
    assert candidate.media_url.startswith("https://v.redd.it/abc123/DASH_720.mp4")


def test_url_helpers() -> None:
    assert parse_post_url("https://www.reddit.com/r/aivideo/comments/abc123/title/") == (
        "aivideo",
        "abc123",
    )
    assert parse_post_url("https://example.com/nothing") is None
    assert reddit_audio_url("https://example.com/video.mp4") is None


@pytest.mark.anyio("asyncio")
async def test_fetch_listing_uses_oauth_token_and_search_params() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/api/v1/access_token":
            return httpx.Response(200, json={"access_token": "token-1", "expires_in": 3600})
        return httpx.Response(200, json=listing(video_post()))

    source = BUILTIN_SOURCE_MAP["aivideo"]
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = RedditClient(build_settings(), http_client)
        search = await client.fetch_listing(
            source, ListingStrategy("search", term="ai video", limit=25, time_filter="week")
        )
        await client.fetch_listing(source, ListingStrategy("top", limit=15, time_filter="week"))

    token_requests = [r for r in requests if r.url.path == "/api/v1/access_token"]
    api_requests = [r for r in requests if r.url.host == "oauth.reddit.com"]
    assert len(token_requests) == 1
    assert api_requests[0].url.path == "/r/aivideo/search"
    assert api_requests[0].url.params["q"] == "ai video"
    assert api_requests[0].url.params["restrict_sr"] == "1"
    assert api_requests[0].url.params["raw_json"] == "1"
    assert api_requests[0].headers["Authorization"] == "Bearer token-1"
    assert api_requests[1].url.path == "/r/aivideo/top"
    assert api_requests[1].url.params["t"] == "week"
    assert [candidate.source for candidate in search] == ["aivideo"]


@pytest.mark.anyio("asyncio")
async def test_fetch_item_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/access_token":
            return httpx.Response(200, json={"access_token": "token-1"})
        return httpx.Response(200, json=listing())

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = RedditClient(build_settings(), http_client)
        with pytest.raises(SourceError) as excinfo:
            await client.fetch_item("t3_gone")

    assert excinfo.value.status == 404


@pytest.mark.anyio("asyncio")
async def test_http_errors_carry_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/access_token":
            return httpx.Response(200, json={"access_token": "token-1"})
        return httpx.Response(503, text="busy")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = RedditClient(build_settings(), http_client)
        with pytest.raises(SourceError) as excinfo:
            await client.fetch_listing(BUILTIN_SOURCE_MAP["aiart"], ListingStrategy("new", limit=30))

    assert excinfo.value.status == 503


@pytest.mark.anyio("asyncio")
async def test_missing_credentials_raise_unauthorised() -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as http_client:
        client = RedditClient(Settings(_env_file=None), http_client)
        assert not client.configured
        with pytest.raises(SourceError) as excinfo:
            await client.fetch_item("abc")

    assert excinfo.value.status == 401


@pytest.mark.anyio("asyncio")
async def test_malformed_listing_fails_without_retrying() -> None:
    listing_calls = 0
    waits: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal listing_calls
        if request.url.path == "/api/v1/access_token":
            return httpx.Response(200, json={"access_token": "token-1"})
        listing_calls += 1
        return httpx.Response(200, text="<html>not json</html>")

    async def record_sleep(seconds: float) -> None:
        waits.append(seconds)

    fetcher = ResilientFetcher(RetryPolicy(max_attempts=3), sleep=record_sleep)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = RedditClient(build_settings(), http_client)
        with pytest.raises(NonRetryableError) as excinfo:
            await fetcher.fetch(
                "aivideo listing",
                lambda: client.fetch_listing(BUILTIN_SOURCE_MAP["aivideo"], ListingStrategy("new", limit=30)),
            )

    assert excinfo.value.status == 422
    assert listing_calls == 1
    assert waits == []


@pytest.mark.anyio("asyncio")
async def test_listing_without_children_is_malformed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/access_token":
            return httpx.Response(200, json={"access_token": "token-1"})
        return httpx.Response(200, json={"data": {}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = RedditClient(build_settings(), http_client)
        with pytest.raises(SourceError) as excinfo:
            await client.fetch_listing(BUILTIN_SOURCE_MAP["aiart"], ListingStrategy("new", limit=30))

    assert excinfo.value.status == 422

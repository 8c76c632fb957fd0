"""Thumbnail resolution tests."""

from __future__ import annotations

import httpx
import pytest

from app.services.media import PLACEHOLDER_THUMBNAIL, MediaService


@pytest.mark.anyio("asyncio")
async def test_hint_then_derived_then_placeholder() -> None:
    media = MediaService()

    assert await media.ensure_thumbnail("https://v.redd.it/x/DASH_720.mp4", "https://img/x.jpg") == "https://img/x.jpg"
    assert (
        await media.ensure_thumbnail("https://www.youtube.com/watch?v=abcdefghijk")
        == "https://i.ytimg.com/vi/abcdefghijk/hqdefault.jpg"
    )
    assert await media.ensure_thumbnail("https://v.redd.it/x/DASH_720.mp4", "self") == PLACEHOLDER_THUMBNAIL


@pytest.mark.anyio("asyncio")
async def test_verified_lookup_skips_unreachable_images() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404 if request.url.host == "broken.example" else 200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        media = MediaService(http_client, verify=True)
        thumbnail = await media.ensure_thumbnail(
            "https://youtu.be/abcdefghijk", "https://broken.example/t.jpg"
        )

    assert thumbnail == "https://i.ytimg.com/vi/abcdefghijk/hqdefault.jpg"

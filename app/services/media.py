"""Thumbnail resolution for catalog entries."""

from __future__ import annotations

import logging

import httpx

from .youtube import extract_video_id

logger = logging.getLogger(__name__)

PLACEHOLDER_THUMBNAIL = (
    "https://via.placeholder.com/640x360?text=Video+Preview&bg=121212&fg=ffffff"
)


class MediaService:
    """Picks a thumbnail URL for a media URL, never failing the caller."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        placeholder: str = PLACEHOLDER_THUMBNAIL,
        verify: bool = False,
    ):
        self._client = http_client
        self.placeholder = placeholder
        self._verify = verify and http_client is not None

    async def ensure_thumbnail(self, media_url: str, hint: str | None = None) -> str:
        """Return ``hint`` when usable, a platform derived image, or the placeholder."""

        try:
            for candidate in (hint, self._derived(media_url)):
                if candidate and candidate.startswith(("http://", "https://")):
                    if not self._verify or await self._reachable(candidate):
                        return candidate
        except Exception:
            logger.exception("Thumbnail lookup failed for %s", media_url)
        return self.placeholder

    @staticmethod
    def _derived(media_url: str) -> str | None:
        video_id = extract_video_id(media_url)
        if video_id:
            return f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"
        return None

    async def _reachable(self, url: str) -> bool:
        assert self._client is not None
        try:
            response = await self._client.head(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            logger.info("Thumbnail %s unreachable: %s", url, exc)
            return False
        return response.status_code < 400

"""Command line entry points for VirtualFeed.

``python -m virtualfeed`` serves the API, ``python -m virtualfeed scrape``
runs a single scrape cycle followed by a media refresh and exits.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import httpx
import uvicorn

from app.config import settings
from app.database import Database
from app.services.catalog_store import CatalogStore
from app.services.media import MediaService
from app.services.reddit import RedditClient
from app.services.scraper import ScrapeService
from app.services.youtube import YouTubeClient


async def scrape_once() -> dict:
    """Run one cycle against the configured database and return its report."""

    database = Database(settings.database_url)
    await database.create_all()
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0)) as client:
            scraper = ScrapeService(
                settings,
                CatalogStore(database),
                {
                    "reddit": RedditClient(settings, client),
                    "youtube": YouTubeClient(settings, client),
                },
                media=MediaService(client),
            )
            report = await scraper.run_cycle()
            await scraper.refresh_media_sources()
    finally:
        await database.dispose()
    return report.to_dict() if report else {}


def main(argv: list[str] | None = None) -> None:
    """Start the uvicorn server or run a one-off scrape."""

    args = sys.argv[1:] if argv is None else argv
    if args and args[0] == "scrape":
        logging.basicConfig(level=logging.INFO)
        print(json.dumps(asyncio.run(scrape_once()), indent=2))
        return

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )

"""Entry point for the FastAPI-powered VirtualFeed service."""

from __future__ import annotations

import logging
import secrets
from contextlib import AsyncExitStack, asynccontextmanager, contextmanager
from typing import Any, Iterator, Literal

import httpx
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import settings
from .database import Database
from .services.catalog_store import CatalogStore
from .services.fetch import FetchError
from .services.feed import FeedComposer, FeedFilters, trending_stats
from .services.language import normalise_language
from .services.media import MediaService
from .services.reddit import RedditClient
from .services.scraper import ConfigurationError, ScrapeService
from .services.session_memory import SessionMemory, build_fingerprint
from .services.youtube import YouTubeClient
from .sources import normalise_source_key

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI

MAX_PAGE_SIZE = 60


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    reddit_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
    )
    youtube_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
    )
    media_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
    )
    database = Database(settings.database_url)
    await database.create_all()

    store = CatalogStore(database)
    scraper = ScrapeService(
        settings,
        store,
        {
            "reddit": RedditClient(settings, reddit_http),
            "youtube": YouTubeClient(settings, youtube_http),
        },
        media=MediaService(media_http),
    )

    fastapi_app.state.database = database
    fastapi_app.state.catalog_store = store
    fastapi_app.state.feed_composer = FeedComposer(store)
    fastapi_app.state.session_memory = SessionMemory(
        ttl_seconds=settings.feed_memory_ttl_hours * 3600,
        max_ids=settings.feed_memory_max_ids,
    )
    fastapi_app.state.scraper = scraper
    await scraper.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await scraper.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Deduplicated, session-diversified feed of AI generated short videos",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


class StatsUpdate(BaseModel):
    type: Literal["view", "like"]


class SubmissionRequest(BaseModel):
    url: str = Field(min_length=1)
    nsfw: bool = False


class NsfwUpdate(BaseModel):
    nsfw: bool = True


class BlacklistUpdate(BaseModel):
    blacklisted: bool = True
    reason: str | None = None


def _state(fastapi_app: FastAPI, name: str) -> Any:
    service = getattr(fastapi_app.state, name, None)
    if service is None:
        raise RuntimeError(f"{name} not initialised")
    return service


def get_catalog_store(fastapi_app: FastAPI) -> CatalogStore:
    return _state(fastapi_app, "catalog_store")


def get_feed_composer(fastapi_app: FastAPI) -> FeedComposer:
    return _state(fastapi_app, "feed_composer")


def get_session_memory(fastapi_app: FastAPI) -> SessionMemory:
    return _state(fastapi_app, "session_memory")


def get_scraper(fastapi_app: FastAPI) -> ScrapeService:
    return _state(fastapi_app, "scraper")


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Video not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


def _fingerprint(request: Request) -> str:
    return build_fingerprint(
        request.headers.get("x-forwarded-for"),
        request.client.host if request.client else None,
        request.headers.get("user-agent"),
        request.headers.get("accept-language"),
    )


def _require_secret(provided: str | None) -> None:
    expected = settings.moderation_secret
    if not expected:
        raise HTTPException(status_code=503, detail="Moderation is not configured")
    if not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=403, detail="Invalid action secret")


def _filters(
    *,
    source: str | None,
    platform: str | None,
    search: str | None,
    show_nsfw: bool,
    language: str | None,
    trending: str | None = None,
) -> FeedFilters:
    return FeedFilters(
        source=normalise_source_key(source) or None,
        platform=(platform or "").strip().lower() or None,
        search=(search or "").strip() or None,
        include_nsfw=show_nsfw,
        language=normalise_language(language),
        trending=trending,
    )


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/videos")
    async def list_videos(
        request: Request,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=12, ge=1, le=MAX_PAGE_SIZE),
        search: str | None = None,
        source: str | None = Query(default=None, alias="subreddit"),
        platform: str | None = None,
        show_nsfw: bool = Query(default=False, alias="showNsfw"),
        language: str | None = None,
        trending: str | None = None,
        stage: str | None = None,
    ) -> JSONResponse:
        composer = get_feed_composer(fastapi_app)
        memory = get_session_memory(fastapi_app)
        offset = (page - 1) * limit
        filters = _filters(
            source=source,
            platform=platform,
            search=search,
            show_nsfw=show_nsfw,
            language=language,
            trending=trending,
        )
        fingerprint = _fingerprint(request)
        exclude = memory.recent(fingerprint) if not trending else []
        with _http_errors():
            feed_page = await composer.compose(
                limit, offset, filters, exclude_ids=exclude, stage=stage
            )
        if not trending:
            memory.remember(fingerprint, feed_page.ids)
        return JSONResponse(feed_page.to_payload(limit, offset))

    @fastapi_app.get("/api/videos/trending")
    async def trending_videos(
        period: str = Query(default="24h"),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=12, ge=1, le=MAX_PAGE_SIZE),
        search: str | None = None,
        source: str | None = Query(default=None, alias="subreddit"),
        platform: str | None = None,
        show_nsfw: bool = Query(default=False, alias="showNsfw"),
        language: str | None = None,
    ) -> JSONResponse:
        composer = get_feed_composer(fastapi_app)
        offset = (page - 1) * limit
        filters = _filters(
            source=source,
            platform=platform,
            search=search,
            show_nsfw=show_nsfw,
            language=language,
            trending=period,
        )
        with _http_errors():
            feed_page = await composer.compose(limit, offset, filters)
        payload = feed_page.to_payload(limit, offset)
        payload["period"] = period
        return JSONResponse(payload)

    @fastapi_app.get("/api/videos/{video_id}/trending")
    async def video_trending(video_id: int) -> dict[str, Any]:
        store = get_catalog_store(fastapi_app)
        entry = await store.get(video_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Video not found")
        return {"videoId": video_id, "stats": trending_stats(entry)}

    @fastapi_app.post("/api/videos/{video_id}/stats")
    async def update_stats(video_id: int, update: StatsUpdate) -> dict[str, Any]:
        store = get_catalog_store(fastapi_app)
        with _http_errors():
            entry = await store.increment_stat(
                video_id, "views" if update.type == "view" else "likes"
            )
        return {"success": True, "video": entry.to_payload()}

    @fastapi_app.post("/api/videos/submit", status_code=201)
    async def submit_video(submission: SubmissionRequest) -> dict[str, Any]:
        scraper = get_scraper(fastapi_app)
        with _http_errors():
            entry = await scraper.submit_post(submission.url.strip(), submission.nsfw)
        return {"success": True, "video": entry.to_payload()}

    @fastapi_app.post("/api/scrape", status_code=202)
    async def trigger_scrape(
        x_action_secret: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _require_secret(x_action_secret)
        scraper = get_scraper(fastapi_app)
        with _http_errors():
            started = scraper.request_cycle()
        return {"started": started}

    @fastapi_app.get("/api/moderation/blacklist")
    async def list_blacklist(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=50, ge=1, le=200),
        x_action_secret: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _require_secret(x_action_secret)
        store = get_catalog_store(fastapi_app)
        entries, total = await store.list_blacklisted(limit, (page - 1) * limit)
        return {"videos": [entry.to_payload() for entry in entries], "total": total}

    @fastapi_app.post("/api/moderation/videos/{video_id}/blacklist")
    async def blacklist_video(
        video_id: int,
        update: BlacklistUpdate,
        x_action_secret: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _require_secret(x_action_secret)
        store = get_catalog_store(fastapi_app)
        with _http_errors():
            entry = await store.set_blacklisted(
                video_id, update.blacklisted, reason=update.reason
            )
        logger.info("Video %s blacklisted=%s", video_id, update.blacklisted)
        return {"success": True, "video": entry.to_payload()}

    @fastapi_app.post("/api/moderation/videos/{video_id}/nsfw")
    async def mark_nsfw(
        video_id: int,
        update: NsfwUpdate,
        x_action_secret: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _require_secret(x_action_secret)
        store = get_catalog_store(fastapi_app)
        with _http_errors():
            entry = await store.set_nsfw(video_id, update.nsfw)
        return {"success": True, "video": entry.to_payload()}

    @fastapi_app.delete("/api/moderation/videos/{video_id}")
    async def delete_video(
        video_id: int,
        x_action_secret: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _require_secret(x_action_secret)
        store = get_catalog_store(fastapi_app)
        with _http_errors():
            await store.delete(video_id)
        return {"success": True}


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )

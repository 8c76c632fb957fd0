"""Scheduled ingestion of external sources into the catalog."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Awaitable, Callable, Literal, Protocol

from sqlalchemy.exc import SQLAlchemyError

from ..config import Settings
from ..models import CandidateItem, CatalogEntry, Insert, Replace
from ..sources import (
    BUILTIN_SOURCE_MAP,
    ListingStrategy,
    SourceDefinition,
    normalise_source_key,
)
from ..utils import utcnow
from .catalog_store import CatalogStore
from .dedup import DedupSettings, DuplicateResolver
from .fetch import FetchError, NonRetryableError, ResilientFetcher, RetryPolicy
from .language import LanguageDetector
from .media import MediaService
from .reddit import is_playable_reddit_url, parse_post_url, reddit_audio_url
from .relevance import is_relevant
from .youtube import extract_video_id

logger = logging.getLogger(__name__)

REDDIT_NEW_LIMIT = 30
REDDIT_HOT_LIMIT = 15
REDDIT_TOP_LIMIT = 15
REDDIT_SEARCH_LIMIT = 25
YOUTUBE_PAGE_SIZE = 50
REFRESH_ATTEMPTS = 2

Outcome = Literal["inserted", "replaced", "skipped", "rejected", "failed"]


class ConfigurationError(RuntimeError):
    """Raised when a cycle cannot start because a client lacks credentials."""


class SourceClient(Protocol):
    @property
    def configured(self) -> bool: ...

    async def fetch_listing(
        self, source: SourceDefinition, strategy: ListingStrategy
    ) -> list[CandidateItem]: ...

    async def fetch_item(self, external_id: str) -> CandidateItem: ...


@dataclass(slots=True)
class SourceReport:
    source: str
    fetched: int = 0
    candidates: int = 0
    inserted: int = 0
    replaced: int = 0
    skipped: int = 0
    rejected: int = 0
    failed: int = 0
    listing_failures: int = 0
    error: str | None = None

    def record(self, outcome: Outcome) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "fetched": self.fetched,
            "candidates": self.candidates,
            "inserted": self.inserted,
            "replaced": self.replaced,
            "skipped": self.skipped,
            "rejected": self.rejected,
            "failed": self.failed,
            "listingFailures": self.listing_failures,
            "error": self.error,
        }


@dataclass(slots=True)
class CycleReport:
    started_at: datetime
    finished_at: datetime | None = None
    sources: list[SourceReport] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return sum(report.inserted for report in self.sources)

    @property
    def replaced(self) -> int:
        return sum(report.replaced for report in self.sources)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "inserted": self.inserted,
            "replaced": self.replaced,
            "sources": [report.to_dict() for report in self.sources],
        }


@dataclass(slots=True)
class RefreshReport:
    checked: int = 0
    refreshed: int = 0
    blacklisted: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(slots=True)
class ProcessResult:
    outcome: Outcome
    entry: CatalogEntry | None = None
    reason: str | None = None


class ScrapeService:
    """Drives fetch, relevance, duplicate resolution and persistence."""

    def __init__(
        self,
        settings: Settings,
        store: CatalogStore,
        clients: dict[str, SourceClient],
        *,
        resolver: DuplicateResolver | None = None,
        media: MediaService | None = None,
        language: LanguageDetector | None = None,
        fetcher: ResilientFetcher | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._settings = settings
        self._store = store
        self._clients = clients
        self._resolver = resolver or DuplicateResolver(
            store, DedupSettings.from_settings(settings)
        )
        self._media = media or MediaService()
        self._language = language or LanguageDetector()
        self._sleep = sleep
        self._fetcher = fetcher or ResilientFetcher(
            RetryPolicy.from_settings(settings), sleep=sleep
        )
        self._refresh_fetcher = self._fetcher.with_attempts(REFRESH_ATTEMPTS)
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._triggered: asyncio.Task[None] | None = None
        self.last_report: CycleReport | None = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def start(self) -> None:
        """Launch the periodic scrape loop when scraping is enabled."""

        if not self._settings.enable_scraping:
            logger.info("Scheduled scraping disabled")
            return
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        for task in (self._task, self._triggered):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._task = None
        self._triggered = None

    async def _loop(self) -> None:
        await asyncio.sleep(self._settings.scrape_initial_delay_seconds)
        while True:
            await self._run_scheduled()
            await asyncio.sleep(self._settings.scrape_interval_seconds)

    async def _run_scheduled(self) -> None:
        try:
            await self.run_cycle()
            await self.refresh_media_sources()
        except ConfigurationError as exc:
            logger.error("Scrape cycle halted: %s", exc)
        except Exception as exc:  # pragma: no cover - background safety net
            logger.exception("Scheduled scrape failed: %s", exc)

    def request_cycle(self) -> bool:
        """Start a cycle in the background unless one is already running."""

        self.validate_configuration()
        if self.running or (self._triggered is not None and not self._triggered.done()):
            return False
        self._triggered = asyncio.create_task(self._run_scheduled())
        return True

    def validate_configuration(self) -> None:
        for source in self._settings.source_definitions:
            client = self._clients.get(source.platform)
            if client is None or not client.configured:
                raise ConfigurationError(
                    f"{source.platform} credentials are missing for source {source.key}"
                )

    async def run_cycle(self) -> CycleReport | None:
        """Scrape every configured source once.

        Returns ``None`` without doing anything while another cycle runs.
        """

        if self._lock.locked():
            logger.info("Scrape cycle already running, skipping")
            return None

        async with self._lock:
            self.validate_configuration()
            report = CycleReport(started_at=utcnow())
            logger.info("Starting scrape cycle over %s sources", len(self._settings.source_definitions))
            for index, source in enumerate(self._settings.source_definitions):
                if index:
                    await self._sleep(self._settings.source_delay_seconds)
                try:
                    source_report = await self.scrape_source(source)
                except Exception as exc:
                    logger.exception("Scraping %s failed", source.key)
                    source_report = SourceReport(source.key, error=str(exc))
                report.sources.append(source_report)
                logger.info(
                    "Processed %s: %s inserted, %s replaced, %s skipped, %s rejected",
                    source.key,
                    source_report.inserted,
                    source_report.replaced,
                    source_report.skipped,
                    source_report.rejected,
                )
            report.finished_at = utcnow()
            self.last_report = report
            logger.info(
                "Scrape cycle finished: %s inserted, %s replaced",
                report.inserted,
                report.replaced,
            )
            return report

    def strategies_for(self, source: SourceDefinition) -> list[ListingStrategy]:
        if source.platform == "youtube":
            return [
                ListingStrategy("search", term=term, limit=YOUTUBE_PAGE_SIZE, page=page)
                for term in source.search_terms
                for page in range(max(source.max_pages, 1))
            ]

        terms = source.search_terms or self._settings.search_terms
        strategies = [
            ListingStrategy("search", term=term, limit=REDDIT_SEARCH_LIMIT, time_filter="week")
            for term in terms
        ]
        strategies.append(ListingStrategy("new", limit=REDDIT_NEW_LIMIT))
        strategies.append(ListingStrategy("hot", limit=REDDIT_HOT_LIMIT))
        strategies.append(ListingStrategy("top", limit=REDDIT_TOP_LIMIT, time_filter="week"))
        return strategies

    async def collect_candidates(
        self, source: SourceDefinition, report: SourceReport
    ) -> list[CandidateItem]:
        """Union every listing for ``source``, dropping ids already catalogued."""

        client = self._clients[source.platform]
        known = await self._store.known_external_ids(source.key, source.platform)
        collected: dict[str, CandidateItem] = {}

        for index, strategy in enumerate(self.strategies_for(source)):
            if index:
                await self._sleep(self._settings.listing_delay_seconds)
            label = f"{source.platform}:{source.key} {strategy.label}"
            try:
                items = await self._fetcher.fetch(
                    label, partial(client.fetch_listing, source, strategy)
                )
            except FetchError as exc:
                logger.warning("Listing %s failed: %s", label, exc)
                report.listing_failures += 1
                continue
            report.fetched += len(items)
            for item in items:
                if item.external_id in known or item.external_id in collected:
                    continue
                collected[item.external_id] = item
        return list(collected.values())

    async def scrape_source(self, source: SourceDefinition) -> SourceReport:
        report = SourceReport(source.key)
        candidates = await self.collect_candidates(source, report)
        report.candidates = len(candidates)
        for candidate in candidates:
            result = await self.process_candidate(source, candidate)
            report.record(result.outcome)
        return report

    async def process_candidate(
        self, source: SourceDefinition, candidate: CandidateItem
    ) -> ProcessResult:
        """Filter, resolve and persist one candidate, isolating its failures."""

        try:
            if candidate.score < source.min_score:
                return ProcessResult("rejected", reason=f"Score {candidate.score} below {source.min_score}")
            if not candidate.media_url:
                return ProcessResult("rejected", reason="No playable video found")
            if not is_relevant(
                candidate,
                source.trusted,
                exclude_terms=source.exclude_terms,
                mode=source.relevance,
            ):
                return ProcessResult(
                    "rejected",
                    reason="This video does not appear to be AI-generated content",
                )

            decision = await self._resolver.resolve(candidate)
            if isinstance(decision, Insert):
                entry = await self._insert(candidate)
                return ProcessResult("inserted", entry)
            if isinstance(decision, Replace):
                entry = await self._replace(decision.existing_id, candidate)
                if entry is None:
                    return ProcessResult("failed", reason="Matched entry disappeared")
                logger.info(
                    "Replaced entry %s with %s (%s)",
                    decision.existing_id,
                    candidate.external_id,
                    decision.match.reason if decision.match else "unknown",
                )
                return ProcessResult("replaced", entry)
            return ProcessResult(
                "skipped",
                reason="Video already exists in our collection",
            )
        except SQLAlchemyError as exc:
            logger.warning("Could not persist %s: %s", candidate.external_id, exc)
            return ProcessResult("failed", reason="Could not save video")
        except Exception:
            logger.exception("Processing %s from %s failed", candidate.external_id, source.key)
            return ProcessResult("failed", reason="Processing failed")

    async def _insert(self, candidate: CandidateItem) -> CatalogEntry:
        thumbnail = await self._media.ensure_thumbnail(
            candidate.media_url, candidate.thumbnail_hint
        )
        return await self._store.insert(
            {
                "external_id": candidate.external_id,
                "title": candidate.title,
                "description": candidate.body,
                "video_url": candidate.media_url,
                "thumbnail_url": thumbnail,
                "source": candidate.source,
                "platform": candidate.platform,
                "author": candidate.author,
                "tags": candidate.source_tags,
                "views": candidate.views,
                "likes": candidate.score,
                "nsfw": candidate.nsfw,
                "language": self._language.detect(f"{candidate.title} {candidate.body}"),
                "metadata_": candidate.media_metadata(),
                "created_at": candidate.created_at,
            }
        )

    async def _replace(
        self, entry_id: int, candidate: CandidateItem
    ) -> CatalogEntry | None:
        existing = await self._store.get(entry_id)
        if existing is None:
            return None

        thumbnail = existing.thumbnail_url
        if candidate.thumbnail_hint or thumbnail == self._media.placeholder:
            thumbnail = await self._media.ensure_thumbnail(
                candidate.media_url, candidate.thumbnail_hint
            )

        metadata = {**existing.metadata, **candidate.media_metadata()}
        if existing.external_id != candidate.external_id:
            previous = list(existing.metadata.get("previousIds") or [])
            previous.append(
                {
                    "externalId": existing.external_id,
                    "platform": existing.platform,
                    "source": existing.source,
                }
            )
            metadata["previousIds"] = previous

        return await self._store.update_fields(
            entry_id,
            {
                "external_id": candidate.external_id,
                "title": candidate.title,
                "description": candidate.body,
                "video_url": candidate.media_url,
                "thumbnail_url": thumbnail,
                "source": candidate.source,
                "platform": candidate.platform,
                "author": candidate.author or existing.author,
                "tags": candidate.source_tags or existing.tags,
                "views": max(existing.views, candidate.views),
                "likes": max(existing.likes, candidate.score),
                "nsfw": existing.nsfw or candidate.nsfw,
                "language": self._language.detect(f"{candidate.title} {candidate.body}")
                or existing.language,
                "metadata_": metadata,
            },
        )

    async def refresh_media_sources(self, limit: int | None = None) -> RefreshReport:
        """Re-check the least recently updated entries and retire dead media."""

        batch = limit or self._settings.media_refresh_limit
        window = timedelta(hours=self._settings.media_refresh_window_hours)
        report = RefreshReport()
        entries = await self._store.entries_for_media_refresh(batch)
        logger.info("Refreshing media sources for up to %s entries", len(entries))

        for entry in entries:
            report.checked += 1
            if self._recently_refreshed(entry, window):
                report.skipped += 1
                continue
            client = self._clients.get(entry.platform)
            if client is None or not client.configured:
                report.skipped += 1
                continue
            try:
                await self._refresh_entry(entry, client, report)
            finally:
                await self._sleep(self._settings.refresh_delay_seconds)

        logger.info(
            "Media refresh finished: %s refreshed, %s blacklisted",
            report.refreshed,
            report.blacklisted,
        )
        return report

    async def _refresh_entry(
        self, entry: CatalogEntry, client: SourceClient, report: RefreshReport
    ) -> None:
        try:
            if entry.platform == "youtube":
                outcome = await self._refresh_youtube(entry, client)
            else:
                outcome = await self._refresh_reddit(entry, client)
        except FetchError as exc:
            if exc.status in (403, 404):
                await self._store.set_blacklisted(entry.id, True, reason=f"http-{exc.status}")
                report.blacklisted += 1
            else:
                logger.warning("Media refresh for %s failed: %s", entry.external_id, exc)
                report.failed += 1
            return
        except Exception:
            logger.exception("Media refresh for %s failed", entry.external_id)
            report.failed += 1
            return
        if outcome == "blacklisted":
            report.blacklisted += 1
        else:
            report.refreshed += 1

    @staticmethod
    def _recently_refreshed(entry: CatalogEntry, window: timedelta) -> bool:
        value = entry.metadata.get("mediaRefreshedAt")
        if not isinstance(value, str):
            return False
        try:
            refreshed_at = datetime.fromisoformat(value)
        except ValueError:
            return False
        return utcnow() - refreshed_at < window

    async def _refresh_reddit(self, entry: CatalogEntry, client: SourceClient) -> str:
        candidate = await self._refresh_fetcher.fetch(
            f"refresh submission {entry.external_id}",
            partial(client.fetch_item, entry.external_id),
        )
        sources = candidate.extra.get("redditVideoSources")
        if not sources:
            await self._store.set_blacklisted(entry.id, True, reason="no-video")
            return "blacklisted"
        video_url = candidate.media_url or entry.video_url
        if not is_playable_reddit_url(video_url):
            await self._store.set_blacklisted(entry.id, True, reason="no-playable-mp4")
            return "blacklisted"

        metadata = {
            **entry.metadata,
            "redditUrl": candidate.extra.get("redditUrl"),
            "redditScore": candidate.score,
            "upvotes": candidate.score,
            "audioUrl": reddit_audio_url(video_url) or entry.metadata.get("audioUrl"),
            "redditVideoSources": sources,
            "mediaRefreshedAt": utcnow().isoformat(),
        }
        await self._store.update_fields(
            entry.id,
            {
                "video_url": video_url,
                "likes": max(entry.likes, candidate.score),
                "metadata_": metadata,
            },
        )
        return "refreshed"

    async def _refresh_youtube(self, entry: CatalogEntry, client: Any) -> str:
        video_id = entry.metadata.get("youtubeId") or extract_video_id(entry.video_url)
        if not video_id:
            await self._store.set_blacklisted(entry.id, True, reason="no-video")
            return "blacklisted"
        available = await self._refresh_fetcher.fetch(
            f"availability {video_id}", partial(client.is_available, video_id)
        )
        if not available:
            await self._store.set_blacklisted(entry.id, True, reason="unavailable")
            return "blacklisted"
        await self._store.update_fields(
            entry.id,
            {"metadata_": {**entry.metadata, "mediaRefreshedAt": utcnow().isoformat()}},
        )
        return "refreshed"

    async def submit_post(self, url: str, nsfw: bool = False) -> CatalogEntry:
        """Ingest a single Reddit or YouTube URL sent in by a visitor.

        Raises ``ValueError`` with a user facing message when the post is
        rejected, already catalogued or the URL is not understood.
        """

        youtube_id = extract_video_id(url)
        if youtube_id:
            platform, external_id = "youtube", youtube_id
        else:
            parsed = parse_post_url(url)
            if parsed is None:
                raise ValueError("Invalid Reddit or YouTube URL format")
            platform, external_id = "reddit", parsed[1]

        client = self._clients.get(platform)
        if client is None or not client.configured:
            raise ConfigurationError(f"{platform} credentials are missing")
        if await self._store.find_by_external_id(platform, external_id) is not None:
            raise ValueError("Video already exists in our collection")

        try:
            candidate = await self._fetcher.fetch(
                f"submission {external_id}", partial(client.fetch_item, external_id)
            )
        except NonRetryableError as exc:
            if exc.status is not None and 400 <= exc.status < 500:
                raise ValueError(f"Could not use submission: {exc.cause}") from exc
            raise
        if nsfw:
            candidate.nsfw = True

        builtin = BUILTIN_SOURCE_MAP.get(normalise_source_key(candidate.source))
        source = SourceDefinition(
            key=candidate.source,
            name=builtin.name if builtin else candidate.source,
            platform=candidate.platform,
            min_score=self._settings.youtube_min_like_count if platform == "youtube" else 1,
            relevance="lenient",
            exclude_terms=builtin.exclude_terms if builtin else (),
        )
        result = await self.process_candidate(source, candidate)
        if result.entry is None:
            raise ValueError(result.reason or "Submission was not accepted")
        logger.info("Accepted submission %s as entry %s", url, result.entry.id)
        return result.entry

"""Stratified, repeat-avoiding feed pages built from catalog queries."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from ..models import CatalogEntry, FeedItem, trending_score
from ..utils import utcnow
from .catalog_store import TIEBREAK_MODULUS, CatalogQuery, CatalogStore, SortKey

logger = logging.getLogger(__name__)

TRENDING_WINDOWS: dict[str, int] = {"24h": 24, "48h": 48, "1w": 168}


@dataclass(frozen=True)
class FeedBucket:
    """A weighted slice of the catalog limited to an age window."""

    name: str
    weight: float
    sort: SortKey
    max_age_hours: float | None = None
    min_age_hours: float | None = None

    @property
    def window(self) -> str:
        if self.max_age_hours is None and self.min_age_hours is None:
            return "all"
        if self.min_age_hours is not None:
            return f">{self.min_age_hours:g}h"
        return f"{self.max_age_hours:g}h"

    def bounds(self, now: datetime) -> tuple[datetime | None, datetime | None]:
        since = now - timedelta(hours=self.max_age_hours) if self.max_age_hours else None
        until = now - timedelta(hours=self.min_age_hours) if self.min_age_hours else None
        return since, until


@dataclass(frozen=True)
class FeedStage:
    name: str
    first_page: int
    last_page: int | None
    buckets: tuple[FeedBucket, ...]

    def covers(self, page: int) -> bool:
        return page >= self.first_page and (self.last_page is None or page <= self.last_page)


FEED_STAGES: tuple[FeedStage, ...] = (
    FeedStage(
        "recent_heavy",
        0,
        1,
        (
            FeedBucket("fresh", 0.6, "recent", max_age_hours=24),
            FeedBucket("this_week", 0.3, "popular", max_age_hours=168),
            FeedBucket("evergreen", 0.1, "likes"),
        ),
    ),
    FeedStage(
        "weekly_popular",
        2,
        4,
        (
            FeedBucket("this_week", 0.7, "popular", max_age_hours=168),
            FeedBucket("fresh", 0.2, "recent", max_age_hours=48),
            FeedBucket("evergreen", 0.1, "likes"),
        ),
    ),
    FeedStage(
        "long_tail",
        5,
        None,
        (
            FeedBucket("archive", 0.6, "likes", min_age_hours=168),
            FeedBucket("this_month", 0.3, "popular", max_age_hours=720),
            FeedBucket("fresh", 0.1, "recent", max_age_hours=24),
        ),
    ),
)
FEED_STAGE_MAP: dict[str, FeedStage] = {stage.name: stage for stage in FEED_STAGES}


@dataclass(frozen=True)
class FeedFilters:
    source: str | None = None
    platform: str | None = None
    search: str | None = None
    include_nsfw: bool = False
    language: str | None = None
    trending: str | None = None

    def to_query(self) -> CatalogQuery:
        return CatalogQuery(
            source=self.source,
            platform=self.platform,
            search=self.search,
            include_nsfw=self.include_nsfw,
            language=self.language,
        )


@dataclass(slots=True)
class FeedPage:
    items: list[FeedItem]
    total: int
    stage: str | None = None

    @property
    def ids(self) -> list[int]:
        return [item.entry.id for item in self.items]

    def to_payload(self, limit: int, offset: int) -> dict[str, Any]:
        return {
            "videos": [item.to_payload() for item in self.items],
            "total": self.total,
            "pages": math.ceil(self.total / limit) if limit else 0,
            "currentPage": offset // limit + 1 if limit else 1,
            "stage": self.stage,
        }


def allocate_slots(limit: int, weights: Sequence[float]) -> list[int]:
    """Split ``limit`` across buckets by weight using largest remainders.

    Every positive-weight bucket receives at least one slot whenever
    ``limit`` is at least the number of buckets.
    """

    count = len(weights)
    if limit <= 0 or count == 0:
        return [0] * count
    total_weight = sum(max(weight, 0.0) for weight in weights)
    if total_weight <= 0:
        return [0] * count

    shares = [max(weight, 0.0) / total_weight for weight in weights]
    allocation = [math.floor(limit * share + 1e-9) for share in shares]
    positive = [index for index, share in enumerate(shares) if share > 0]

    if limit >= count:
        for index in positive:
            if allocation[index] == 0:
                allocation[index] = 1

    largest_first = sorted(positive, key=lambda index: (-shares[index], index))
    shortfall = limit - sum(allocation)
    step = 0
    while shortfall > 0:
        allocation[largest_first[step % len(largest_first)]] += 1
        shortfall -= 1
        step += 1

    smallest_first = sorted(positive, key=lambda index: (shares[index], -index))
    overflow = sum(allocation) - limit
    while overflow > 0:
        trimmed = False
        for index in smallest_first:
            if overflow == 0:
                break
            if allocation[index] > 1:
                allocation[index] -= 1
                overflow -= 1
                trimmed = True
        if not trimmed:
            break
    return allocation


def day_seed(now: datetime) -> int:
    """Return a seed that changes once per day."""

    return now.date().toordinal() % TIEBREAK_MODULUS


def stage_for_page(page: int) -> FeedStage:
    for stage in FEED_STAGES:
        if stage.covers(page):
            return stage
    return FEED_STAGES[-1]


class FeedComposer:
    """Builds feed pages from the catalog."""

    def __init__(self, store: CatalogStore):
        self._store = store

    async def compose(
        self,
        limit: int,
        offset: int,
        filters: FeedFilters,
        *,
        exclude_ids: Iterable[int] = (),
        stage: str | None = None,
        now: datetime | None = None,
    ) -> FeedPage:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if offset < 0:
            raise ValueError("offset must not be negative")
        reference = now or utcnow()

        if filters.trending:
            return await self._compose_trending(limit, offset, filters, reference)

        page = offset // limit
        if stage is not None:
            if stage not in FEED_STAGE_MAP:
                raise ValueError(f"Unknown feed stage: {stage}")
            stage_definition = FEED_STAGE_MAP[stage]
        else:
            stage_definition = stage_for_page(page)
        page_in_stage = max(page - stage_definition.first_page, 0)
        return await self._compose_stage(
            stage_definition,
            limit,
            page_in_stage,
            filters,
            frozenset(exclude_ids),
            reference,
        )

    async def _compose_stage(
        self,
        stage: FeedStage,
        limit: int,
        page_in_stage: int,
        filters: FeedFilters,
        viewer_ids: frozenset[int],
        now: datetime,
    ) -> FeedPage:
        base = filters.to_query()
        seed = day_seed(now)
        allocations = allocate_slots(limit, [bucket.weight for bucket in stage.buckets])
        items: list[FeedItem] = []
        chosen: set[int] = set()

        for bucket, slots in zip(stage.buckets, allocations):
            if slots <= 0:
                continue
            since, until = bucket.bounds(now)
            query = base.within(since, until).excluding(chosen | viewer_ids)
            # Offset paging only applies when no viewer history is excluded.
            bucket_offset = 0 if viewer_ids else page_in_stage * slots
            rows, _ = await self._store.query_page(
                query,
                bucket.sort,
                slots,
                bucket_offset,
                tiebreak_seed=seed,
            )
            for entry in rows:
                chosen.add(entry.id)
                items.append(self._item(entry, stage.name, bucket.name, bucket.window, now))

        for excluded in (chosen | viewer_ids, chosen):
            missing = limit - len(items)
            if missing <= 0:
                break
            rows, _ = await self._store.query_page(
                base.excluding(excluded),
                "recent",
                missing,
                0,
                tiebreak_seed=seed,
            )
            for entry in rows:
                if entry.id in chosen:
                    continue
                chosen.add(entry.id)
                items.append(self._item(entry, stage.name, "backfill", "all", now))

        _, total = await self._store.query_page(base, "recent", 0, 0)
        logger.debug(
            "Composed %s items for stage %s (allocation %s)",
            len(items),
            stage.name,
            allocations,
        )
        return FeedPage(items=items[:limit], total=total, stage=stage.name)

    async def _compose_trending(
        self, limit: int, offset: int, filters: FeedFilters, now: datetime
    ) -> FeedPage:
        window = filters.trending or ""
        if window not in TRENDING_WINDOWS:
            raise ValueError(f"Unknown trending window: {window}")
        base = filters.to_query()
        query = base.within(now - timedelta(hours=TRENDING_WINDOWS[window]))
        rows, total = await self._store.query_page(query, "popular", limit, offset)
        fallback = False
        if total == 0:
            logger.info("No entries for trending window %s, falling back to recent", window)
            rows, total = await self._store.query_page(base, "recent", limit, offset)
            fallback = True

        items = [
            FeedItem(
                entry=entry,
                stage="trending",
                bucket="recent" if fallback else window,
                window=window,
                is_fallback=fallback,
                hours_since_posted=entry.hours_since_posted(now),
            )
            for entry in rows
        ]
        return FeedPage(items=items, total=total, stage=None)

    @staticmethod
    def _item(
        entry: CatalogEntry, stage: str, bucket: str, window: str, now: datetime
    ) -> FeedItem:
        return FeedItem(
            entry=entry,
            stage=stage,
            bucket=bucket,
            window=window,
            hours_since_posted=entry.hours_since_posted(now),
        )


def trending_stats(entry: CatalogEntry, now: datetime | None = None) -> dict[str, dict[str, Any]]:
    """Return per-window popularity figures for one entry."""

    reference = now or utcnow()
    age_hours = entry.hours_since_posted(reference)
    stats: dict[str, dict[str, Any]] = {}
    for label, hours in TRENDING_WINDOWS.items():
        if age_hours <= hours:
            effective = max(age_hours, 1.0)
            stats[label] = {
                "views": entry.views,
                "score": trending_score(entry.views, age_hours),
                "viewsPerHour": round(entry.views / effective, 2),
                "hoursSincePosted": round(effective, 2),
                "isTrending": True,
            }
        else:
            stats[label] = {
                "views": entry.views,
                "score": 0,
                "viewsPerHour": 0,
                "hoursSincePosted": round(age_hours, 2),
                "isTrending": False,
            }
    return stats

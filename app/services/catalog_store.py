"""Persistence helpers for catalog entries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Literal

from sqlalchemy import delete, func, or_, select
from sqlalchemy.sql import Select

from ..database import Database
from ..db_models import VideoRecord
from ..models import CatalogEntry
from ..utils import utcnow

logger = logging.getLogger(__name__)

SortKey = Literal["recent", "popular", "likes"]
StatKind = Literal["views", "likes"]

TIEBREAK_MULTIPLIER = 7919
TIEBREAK_MODULUS = 10007


@dataclass(frozen=True)
class CatalogQuery:
    """Filters accepted by :meth:`CatalogStore.query_page`."""

    source: str | None = None
    platform: str | None = None
    search: str | None = None
    include_nsfw: bool = False
    language: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    exclude_ids: frozenset[int] = frozenset()
    include_blacklisted: bool = False

    def excluding(self, ids: Iterable[int]) -> "CatalogQuery":
        return CatalogQuery(
            source=self.source,
            platform=self.platform,
            search=self.search,
            include_nsfw=self.include_nsfw,
            language=self.language,
            since=self.since,
            until=self.until,
            exclude_ids=self.exclude_ids | frozenset(ids),
            include_blacklisted=self.include_blacklisted,
        )

    def within(self, since: datetime | None, until: datetime | None = None) -> "CatalogQuery":
        return CatalogQuery(
            source=self.source,
            platform=self.platform,
            search=self.search,
            include_nsfw=self.include_nsfw,
            language=self.language,
            since=since,
            until=until,
            exclude_ids=self.exclude_ids,
            include_blacklisted=self.include_blacklisted,
        )


def _to_entry(record: VideoRecord) -> CatalogEntry:
    return CatalogEntry.model_validate(record)


class CatalogStore:
    """Read and write access to the ``videos`` table."""

    def __init__(self, database: Database):
        self._database = database

    async def get(self, entry_id: int) -> CatalogEntry | None:
        async with self._database.session() as session:
            record = await session.get(VideoRecord, entry_id)
            return _to_entry(record) if record else None

    async def find_by_external_id(
        self, platform: str, external_id: str
    ) -> CatalogEntry | None:
        async with self._database.session() as session:
            result = await session.execute(
                select(VideoRecord).where(
                    VideoRecord.platform == platform,
                    VideoRecord.external_id == external_id,
                )
            )
            record = result.scalars().first()
            return _to_entry(record) if record else None

    async def find_recent_by_source(
        self, source: str, since: datetime
    ) -> list[CatalogEntry]:
        return await self._select(
            select(VideoRecord)
            .where(VideoRecord.source == source, VideoRecord.created_at >= since)
            .order_by(VideoRecord.created_at.desc())
        )

    async def find_recent_by_author_across_sources(
        self, author: str, exclude_source: str, since: datetime
    ) -> list[CatalogEntry]:
        return await self._select(
            select(VideoRecord)
            .where(
                func.lower(VideoRecord.author) == author.strip().lower(),
                VideoRecord.source != exclude_source,
                VideoRecord.created_at >= since,
            )
            .order_by(VideoRecord.created_at.desc())
        )

    async def find_by_exact_media_url(self, media_url: str) -> list[CatalogEntry]:
        return await self._select(
            select(VideoRecord).where(VideoRecord.video_url == media_url)
        )

    async def known_external_ids(self, source: str, platform: str) -> set[str]:
        """Return external ids already catalogued for ``source``."""

        async with self._database.session() as session:
            result = await session.execute(
                select(VideoRecord.external_id).where(
                    VideoRecord.source == source,
                    VideoRecord.platform == platform,
                )
            )
            return set(result.scalars().all())

    async def insert(self, values: dict[str, Any]) -> CatalogEntry:
        async with self._database.session() as session:
            record = VideoRecord(**values)
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return _to_entry(record)

    async def update_fields(
        self, entry_id: int, values: dict[str, Any]
    ) -> CatalogEntry | None:
        async with self._database.session() as session:
            record = await session.get(VideoRecord, entry_id)
            if record is None:
                return None
            for key, value in values.items():
                setattr(record, key, value)
            record.updated_at = utcnow()
            await session.commit()
            await session.refresh(record)
            return _to_entry(record)

    async def query_page(
        self,
        query: CatalogQuery,
        sort: SortKey = "recent",
        limit: int = 12,
        offset: int = 0,
        *,
        tiebreak_seed: int | None = None,
    ) -> tuple[list[CatalogEntry], int]:
        """Return one filtered page and the total number of matching rows.

        With ``tiebreak_seed`` rows sharing the primary sort value are ordered by
        likes and then by a seeded permutation of their ids.
        """

        conditions = self._conditions(query)
        statement = select(VideoRecord).where(*conditions)
        statement = statement.order_by(*self._ordering(sort, tiebreak_seed))
        statement = statement.limit(max(limit, 0)).offset(max(offset, 0))
        count_statement = select(func.count()).select_from(VideoRecord).where(*conditions)

        async with self._database.session() as session:
            total = (await session.execute(count_statement)).scalar_one()
            if limit <= 0:
                return [], int(total)
            result = await session.execute(statement)
            return [_to_entry(record) for record in result.scalars().all()], int(total)

    async def entries_for_media_refresh(
        self,
        limit: int,
        *,
        platform: str | None = None,
    ) -> list[CatalogEntry]:
        statement = select(VideoRecord).where(VideoRecord.blacklisted.is_(False))
        if platform:
            statement = statement.where(VideoRecord.platform == platform)
        statement = statement.order_by(VideoRecord.updated_at.asc()).limit(limit)
        return await self._select(statement)

    async def set_nsfw(self, entry_id: int, nsfw: bool) -> CatalogEntry:
        return self._require(await self.update_fields(entry_id, {"nsfw": nsfw}), entry_id)

    async def set_blacklisted(
        self, entry_id: int, blacklisted: bool, *, reason: str | None = None
    ) -> CatalogEntry:
        async with self._database.session() as session:
            record = await session.get(VideoRecord, entry_id)
            if record is None:
                raise KeyError(entry_id)
            metadata = dict(record.metadata_ or {})
            if blacklisted:
                metadata["blacklistReason"] = reason or "manual"
                metadata["blacklistedAt"] = utcnow().isoformat()
            else:
                metadata.pop("blacklistReason", None)
                metadata.pop("blacklistedAt", None)
            record.blacklisted = blacklisted
            record.metadata_ = metadata
            record.updated_at = utcnow()
            await session.commit()
            await session.refresh(record)
            return _to_entry(record)

    async def delete(self, entry_id: int) -> None:
        async with self._database.session() as session:
            result = await session.execute(
                delete(VideoRecord).where(VideoRecord.id == entry_id)
            )
            await session.commit()
            if not result.rowcount:
                raise KeyError(entry_id)
        logger.info("Deleted catalog entry %s", entry_id)

    async def list_blacklisted(
        self, limit: int = 50, offset: int = 0
    ) -> tuple[list[CatalogEntry], int]:
        condition = VideoRecord.blacklisted.is_(True)
        async with self._database.session() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(VideoRecord).where(condition)
                )
            ).scalar_one()
            result = await session.execute(
                select(VideoRecord)
                .where(condition)
                .order_by(VideoRecord.updated_at.desc(), VideoRecord.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_to_entry(record) for record in result.scalars().all()], int(total)

    async def increment_stat(self, entry_id: int, kind: StatKind) -> CatalogEntry:
        """Add one view or like to an entry."""

        if kind not in ("views", "likes"):
            raise ValueError(f"Unknown stat: {kind}")
        async with self._database.session() as session:
            record = await session.get(VideoRecord, entry_id)
            if record is None:
                raise KeyError(entry_id)
            setattr(record, kind, (getattr(record, kind) or 0) + 1)
            await session.commit()
            await session.refresh(record)
            return _to_entry(record)

    async def _select(self, statement: Select) -> list[CatalogEntry]:
        async with self._database.session() as session:
            result = await session.execute(statement)
            return [_to_entry(record) for record in result.scalars().all()]

    @staticmethod
    def _require(entry: CatalogEntry | None, entry_id: int) -> CatalogEntry:
        if entry is None:
            raise KeyError(entry_id)
        return entry

    @staticmethod
    def _conditions(query: CatalogQuery) -> list[Any]:
        conditions: list[Any] = []
        if not query.include_blacklisted:
            conditions.append(VideoRecord.blacklisted.is_(False))
        if not query.include_nsfw:
            conditions.append(VideoRecord.nsfw.is_(False))
        if query.source:
            conditions.append(VideoRecord.source == query.source)
        if query.platform:
            conditions.append(VideoRecord.platform == query.platform)
        if query.language:
            conditions.append(VideoRecord.language == query.language)
        if query.search:
            escaped = (
                query.search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            )
            pattern = f"%{escaped}%"
            conditions.append(
                or_(
                    VideoRecord.title.ilike(pattern, escape="\\"),
                    VideoRecord.description.ilike(pattern, escape="\\"),
                )
            )
        if query.since is not None:
            conditions.append(VideoRecord.created_at >= query.since)
        if query.until is not None:
            conditions.append(VideoRecord.created_at < query.until)
        if query.exclude_ids:
            conditions.append(VideoRecord.id.not_in(sorted(query.exclude_ids)))
        return conditions

    @staticmethod
    def _ordering(sort: SortKey, tiebreak_seed: int | None) -> list[Any]:
        if sort == "popular":
            ordering: list[Any] = [VideoRecord.views.desc()]
        elif sort == "likes":
            ordering = [VideoRecord.likes.desc()]
        else:
            ordering = [VideoRecord.created_at.desc()]

        if tiebreak_seed is not None:
            if sort != "likes":
                ordering.append(VideoRecord.likes.desc())
            ordering.append(
                (VideoRecord.id * TIEBREAK_MULTIPLIER + tiebreak_seed) % TIEBREAK_MODULUS
            )
        elif sort != "recent":
            ordering.append(VideoRecord.created_at.desc())
        ordering.append(VideoRecord.id.desc())
        return ordering

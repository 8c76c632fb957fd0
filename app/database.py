"""Database utilities for the VirtualFeed service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by every table."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create tables and bring older catalogs up to the current schema."""

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Add columns introduced after the first catalog release."""

        inspector = inspect(sync_connection)
        if "videos" not in inspector.get_table_names():
            return

        existing_columns = {
            column["name"] for column in inspector.get_columns("videos")
        }

        def _ensure_column(name: str, ddl: str, init_sql: str | None = None) -> None:
            if name in existing_columns:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))
            existing_columns.add(name)

        _ensure_column(
            "language",
            "ALTER TABLE videos ADD COLUMN language VARCHAR(16)",
        )
        _ensure_column(
            "author",
            "ALTER TABLE videos ADD COLUMN author VARCHAR(120)",
            (
                "UPDATE videos SET author = json_extract(metadata, '$.author') "
                "WHERE author IS NULL"
            ),
        )
        _ensure_column(
            "blacklisted",
            "ALTER TABLE videos ADD COLUMN blacklisted BOOLEAN DEFAULT 0 NOT NULL",
        )
        _ensure_column(
            "platform",
            "ALTER TABLE videos ADD COLUMN platform VARCHAR(32) DEFAULT 'reddit'",
            "UPDATE videos SET platform = 'reddit' WHERE platform IS NULL",
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session

from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect, text

from app.database import Database


def _initialise_legacy_schema(database_path: str) -> None:
    """Create a legacy videos table predating language, author and moderation."""

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        with engine.begin() as connection:
            connection.execute(
                text(
                    """
                    CREATE TABLE videos (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        external_id VARCHAR(128),
                        title VARCHAR(500),
                        description TEXT,
                        video_url VARCHAR(1024),
                        thumbnail_url VARCHAR(1024),
                        source VARCHAR(120),
                        tags JSON,
                        views INTEGER,
                        likes INTEGER,
                        nsfw BOOLEAN,
                        metadata JSON,
                        created_at DATETIME,
                        updated_at DATETIME
                    )
                    """
                )
            )
            connection.execute(
                text(
                    """
                    INSERT INTO videos (
                        external_id, title, video_url, thumbnail_url, source,
                        tags, views, likes, nsfw, metadata, created_at, updated_at
                    ) VALUES (
                        'abc123', 'Old clip', 'https://v.redd.it/abc/DASH_720.mp4',
                        'https://example.com/t.jpg', 'aivideo', '[]', 3, 4, 0,
                        '{"author": "legacy_user"}', '2024-01-01 00:00:00',
                        '2024-01-01 00:00:00'
                    )
                    """
                )
            )
    finally:
        engine.dispose()


def test_create_all_adds_new_video_columns(tmp_path) -> None:
    """Schema migrations should add and backfill columns on older catalogs."""

    database_path = tmp_path / "legacy.db"
    _initialise_legacy_schema(str(database_path))

    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(inspector_engine)
        columns = {column["name"] for column in inspector.get_columns("videos")}
        with inspector_engine.connect() as connection:
            row = connection.execute(
                text("SELECT author, platform, blacklisted FROM videos")
            ).one()
    finally:
        inspector_engine.dispose()

    assert {"language", "author", "blacklisted", "platform"} <= columns
    assert row.author == "legacy_user"
    assert row.platform == "reddit"
    assert not row.blacklisted


def test_create_all_is_idempotent(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}")

    async def _run() -> None:
        await database.create_all()
        await database.create_all()
        await database.dispose()

    asyncio.run(_run())

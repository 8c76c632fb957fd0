"""Catalog persistence and paging queries."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from app.services.catalog_store import CatalogQuery, CatalogStore

NOW = datetime(2024, 5, 1, 12, 0, 0)


async def _add(store: CatalogStore, external_id: str, **overrides):
    values = {
        "external_id": external_id,
        "title": f"AI clip {external_id}",
        "description": "",
        "video_url": f"https://v.redd.it/{external_id}/DASH_720.mp4",
        "thumbnail_url": "https://example.com/t.jpg",
        "source": "aivideo",
        "platform": "reddit",
        "views": 0,
        "likes": 0,
        "metadata_": {},
        "created_at": NOW,
    }
    values.update(overrides)
    return await store.insert(values)


@pytest.mark.anyio("asyncio")
async def test_query_page_filters_hidden_entries(store: CatalogStore) -> None:
    visible = await _add(store, "a1")
    await _add(store, "a2", nsfw=True)
    hidden = await _add(store, "a3")
    await store.set_blacklisted(hidden.id, True, reason="manual")

    entries, total = await store.query_page(CatalogQuery())
    with_nsfw, nsfw_total = await store.query_page(CatalogQuery(include_nsfw=True))

    assert [entry.id for entry in entries] == [visible.id]
    assert total == 1
    assert nsfw_total == 2
    assert hidden.id not in {entry.id for entry in with_nsfw}


@pytest.mark.anyio("asyncio")
async def test_query_page_applies_search_source_language_and_window(store: CatalogStore) -> None:
    match = await _add(store, "b1", title="Neon dragon", language="english", created_at=NOW - timedelta(hours=3))
    await _add(store, "b2", title="Neon dragon", language="english", source="aiart")
    await _add(store, "b3", title="Neon dragon", language="spanish")
    await _add(store, "b4", title="Neon dragon", language="english", created_at=NOW - timedelta(days=3))

    query = CatalogQuery(source="aivideo", search="neon", language="english").within(
        NOW - timedelta(hours=24)
    )
    entries, total = await store.query_page(query)

    assert [entry.id for entry in entries] == [match.id]
    assert total == 1


@pytest.mark.anyio("asyncio")
async def test_excluding_and_zero_limit_count_only(store: CatalogStore) -> None:
    first = await _add(store, "c1")
    second = await _add(store, "c2")

    entries, total = await store.query_page(CatalogQuery().excluding([first.id]))
    none, count = await store.query_page(CatalogQuery(), limit=0)

    assert [entry.id for entry in entries] == [second.id]
    assert total == 1
    assert none == []
    assert count == 2


@pytest.mark.anyio("asyncio")
async def test_popular_sort_orders_by_views(store: CatalogStore) -> None:
    low = await _add(store, "d1", views=5)
    high = await _add(store, "d2", views=50)
    mid = await _add(store, "d3", views=20)

    entries, _ = await store.query_page(CatalogQuery(), "popular")
    liked, _ = await store.query_page(CatalogQuery(), "likes", tiebreak_seed=7)

    assert [entry.id for entry in entries] == [high.id, mid.id, low.id]
    assert len(liked) == 3


@pytest.mark.anyio("asyncio")
async def test_seeded_tiebreak_is_stable_per_seed(store: CatalogStore) -> None:
    for index in range(8):
        await _add(store, f"t{index}", likes=3)

    first, _ = await store.query_page(CatalogQuery(), "recent", 8, tiebreak_seed=11)
    again, _ = await store.query_page(CatalogQuery(), "recent", 8, tiebreak_seed=11)
    other, _ = await store.query_page(CatalogQuery(), "recent", 8, tiebreak_seed=12)

    ids = [entry.id for entry in first]
    assert ids == [entry.id for entry in again]
    assert ids == sorted(ids, key=lambda entry_id: (entry_id * 7919 + 11) % 10007)
    assert [entry.id for entry in other] == sorted(ids, key=lambda entry_id: (entry_id * 7919 + 12) % 10007)


@pytest.mark.anyio("asyncio")
async def test_duplicate_lookups(store: CatalogStore) -> None:
    original = await _add(store, "e1", author="SkyMaker", source="aiart", created_at=NOW - timedelta(hours=2))
    await _add(store, "e2", author="skymaker", source="aivideo")

    cross = await store.find_recent_by_author_across_sources("SKYMAKER", "aivideo", NOW - timedelta(hours=48))
    recent = await store.find_recent_by_source("aiart", NOW - timedelta(hours=48))
    exact = await store.find_by_exact_media_url(original.video_url)
    known = await store.known_external_ids("aivideo", "reddit")
    by_id = await store.find_by_external_id("reddit", "e1")

    assert [entry.id for entry in cross] == [original.id]
    assert [entry.id for entry in recent] == [original.id]
    assert [entry.id for entry in exact] == [original.id]
    assert known == {"e2"}
    assert by_id is not None and by_id.author == "SkyMaker"


@pytest.mark.anyio("asyncio")
async def test_counters_moderation_and_delete(store: CatalogStore) -> None:
    entry = await _add(store, "f1", views=1)

    viewed = await store.increment_stat(entry.id, "views")
    liked = await store.increment_stat(entry.id, "likes")
    flagged = await store.set_nsfw(entry.id, True)
    banned = await store.set_blacklisted(entry.id, True, reason="http-404")
    listed, total = await store.list_blacklisted()

    assert viewed.views == 2
    assert liked.likes == 1
    assert flagged.nsfw
    assert banned.blacklisted
    assert banned.metadata["blacklistReason"] == "http-404"
    assert [item.id for item in listed] == [entry.id]
    assert total == 1

    restored = await store.set_blacklisted(entry.id, False)
    assert not restored.blacklisted
    assert "blacklistReason" not in restored.metadata

    await store.delete(entry.id)
    assert await store.get(entry.id) is None
    with pytest.raises(KeyError):
        await store.delete(entry.id)
    with pytest.raises(KeyError):
        await store.increment_stat(entry.id, "views")
    with pytest.raises(ValueError):
        await store.increment_stat(entry.id, "shares")  # type: ignore[arg-type]


@pytest.mark.anyio("asyncio")
async def test_media_refresh_prefers_stale_entries(store: CatalogStore) -> None:
    stale = await _add(store, "g1", updated_at=NOW - timedelta(days=2))
    fresh = await _add(store, "g2", updated_at=NOW)
    banned = await _add(store, "g3", updated_at=NOW - timedelta(days=5))
    await store.set_blacklisted(banned.id, True)

    entries = await store.entries_for_media_refresh(10)

    assert [entry.id for entry in entries] == [stale.id, fresh.id]


@pytest.mark.anyio("asyncio")
async def test_set_nsfw_updates_flag_and_rejects_unknown_ids(store: CatalogStore) -> None:
    entry = await _add(store, "h1")

    flagged = await store.set_nsfw(entry.id, True)
    cleared = await store.set_nsfw(entry.id, False)

    assert flagged.nsfw
    assert not cleared.nsfw
    with pytest.raises(KeyError):
        await store.set_nsfw(entry.id + 100, True)


@pytest.mark.anyio("asyncio")
async def test_search_treats_wildcards_literally(store: CatalogStore) -> None:
    literal = await _add(store, "i1", title="Render at 100% speed")
    await _add(store, "i2", title="Render at 1000 speed")
    underscore = await _add(store, "i3", title="clip_one")
    await _add(store, "i4", title="clipXone")

    percent_hits, _ = await store.query_page(CatalogQuery(search="100%"))
    underscore_hits, _ = await store.query_page(CatalogQuery(search="p_o"))

    assert [entry.id for entry in percent_hits] == [literal.id]
    assert [entry.id for entry in underscore_hits] == [underscore.id]

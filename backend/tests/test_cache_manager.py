"""Tests for the versioned guide cache."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from trashsync.exceptions import CorruptDataError
from trashsync.models import TrashCache
from trashsync.services.cache_manager import (
    GzipCompression,
    NoCompression,
    TrashCacheManager,
    count_source_breakdown,
    is_stale,
)
from trashsync.utils import utcnow


class TestStaleness:
    """Staleness is a pure function of the timestamp."""

    def test_fresh_within_threshold(self) -> None:
        now = datetime(2024, 5, 1, 12, 0)
        assert not is_stale(now - timedelta(hours=11), 12, now)

    def test_exactly_at_threshold_is_fresh(self) -> None:
        now = datetime(2024, 5, 1, 12, 0)
        assert not is_stale(now - timedelta(hours=12), 12, now)

    def test_stale_past_threshold(self) -> None:
        now = datetime(2024, 5, 1, 12, 0)
        assert is_stale(now - timedelta(hours=12, seconds=1), 12, now)


class TestCompression:
    @pytest.mark.parametrize("strategy", [GzipCompression(), NoCompression()])
    def test_strategies_return_logical_value(self, strategy) -> None:
        payload = [{"trash_id": "abc", "name": "DV HDR10+", "trash_scores": {"default": 1500}}]
        assert strategy.decode(strategy.encode(payload)) == payload

    def test_gzip_output_is_not_plain_json(self) -> None:
        encoded = GzipCompression().encode({"name": "x"})
        assert not encoded.startswith("{")


class TestSourceBreakdown:
    def test_counts_tagged_items(self) -> None:
        data = [{"_repoSource": "official"}, {"_repoSource": "official"}, {"_repoSource": "custom"}]
        breakdown = count_source_breakdown(data)
        assert breakdown.official == 2
        assert breakdown.custom == 1

    def test_untagged_items_give_none(self) -> None:
        assert count_source_breakdown([{"name": "a"}]) is None
        assert count_source_breakdown({"name": "a"}) is None


class TestTrashCacheManager:
    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, cache_manager) -> None:
        assert await cache_manager.get("RADARR", "CUSTOM_FORMATS") is None

    @pytest.mark.asyncio
    async def test_set_increments_version_by_one(self, cache_manager) -> None:
        """Sequential writes bump the version by exactly one and the last value wins."""
        first = await cache_manager.set("RADARR", "CUSTOM_FORMATS", [{"trash_id": "a"}], "c1")
        second = await cache_manager.set("RADARR", "CUSTOM_FORMATS", [{"trash_id": "b"}], "c2")

        assert first == 1
        assert second == 2
        assert await cache_manager.get("RADARR", "CUSTOM_FORMATS") == [{"trash_id": "b"}]
        assert await cache_manager.get_commit_hash("RADARR", "CUSTOM_FORMATS") == "c2"

    @pytest.mark.asyncio
    async def test_concurrent_sets_have_no_version_gaps(self, cache_manager) -> None:
        versions = await asyncio.gather(
            *[cache_manager.set("SONARR", "CF_GROUPS", [i], f"c{i}") for i in range(5)]
        )
        assert sorted(versions) == [1, 2, 3, 4, 5]
        status = await cache_manager.get_status("SONARR", "CF_GROUPS")
        assert status.version == 5

    @pytest.mark.asyncio
    async def test_concurrent_sets_across_managers_are_ordered(self, session_factory) -> None:
        """Each request builds its own manager; versions must still be unique."""
        seed = TrashCacheManager(session_factory)
        assert await seed.set("RADARR", "CUSTOM_FORMATS", [0], "c0") == 1

        managers = [TrashCacheManager(session_factory) for _ in range(4)]
        versions = await asyncio.gather(
            *[m.set("RADARR", "CUSTOM_FORMATS", [i], f"c{i}") for i, m in enumerate(managers, 1)]
        )

        assert sorted(versions) == [2, 3, 4, 5]
        status = await seed.get_status("RADARR", "CUSTOM_FORMATS")
        assert status.version == 5

    @pytest.mark.asyncio
    async def test_concurrent_first_inserts_do_not_collide(self, session_factory) -> None:
        managers = [TrashCacheManager(session_factory) for _ in range(2)]
        versions = await asyncio.gather(
            *[m.set("SONARR", "NAMING", {"n": i}) for i, m in enumerate(managers)]
        )

        assert sorted(versions) == [1, 2]
        stats = await managers[0].get_stats()
        assert stats.total_entries == 1

    @pytest.mark.asyncio
    async def test_uncompressed_round_trip(self, session_factory) -> None:
        manager = TrashCacheManager(session_factory, compression_enabled=False)
        payload = [{"trash_id": "a", "specifications": [{"fields": {"value": "\\bDV\\b"}}]}]
        await manager.set("RADARR", "CUSTOM_FORMATS", payload)
        assert await manager.get("RADARR", "CUSTOM_FORMATS") == payload

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, cache_manager) -> None:
        await cache_manager.set("RADARR", "CUSTOM_FORMATS", [1])
        await cache_manager.set("SONARR", "CUSTOM_FORMATS", [2])
        assert await cache_manager.get("RADARR", "CUSTOM_FORMATS") == [1]
        assert await cache_manager.get("SONARR", "CUSTOM_FORMATS") == [2]

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_cleared_and_raises(self, cache_manager, session_factory) -> None:
        await cache_manager.set("RADARR", "NAMING", {"movie": "{Movie Title}"})
        async with session_factory() as session:
            await session.execute(update(TrashCache).values(data="not-base64-gzip!"))
            await session.commit()

        with pytest.raises(CorruptDataError):
            await cache_manager.get("RADARR", "NAMING")
        assert await cache_manager.get("RADARR", "NAMING") is None

    @pytest.mark.asyncio
    async def test_status_and_stats(self, cache_manager, session_factory) -> None:
        await cache_manager.set("RADARR", "CUSTOM_FORMATS", [{"_repoSource": "official"}, {"_repoSource": "custom"}])
        await cache_manager.set("RADARR", "CF_GROUPS", [{"trash_id": "g"}])
        async with session_factory() as session:
            await session.execute(
                update(TrashCache)
                .where(TrashCache.config_type == "CF_GROUPS")
                .values(updated_at=utcnow() - timedelta(hours=13))
            )
            await session.commit()

        statuses = await cache_manager.get_all_statuses("RADARR")
        by_type = {s.config_type: s for s in statuses}
        assert by_type["CUSTOM_FORMATS"].item_count == 2
        assert by_type["CUSTOM_FORMATS"].source_breakdown.official == 1
        assert not by_type["CUSTOM_FORMATS"].is_stale
        assert by_type["CF_GROUPS"].is_stale
        assert await cache_manager.is_fresh("RADARR", "CUSTOM_FORMATS")
        assert not await cache_manager.is_fresh("RADARR", "CF_GROUPS")

        stats = await cache_manager.get_stats()
        assert stats.total_entries == 2
        assert stats.stale_entries == 1
        assert stats.total_size_bytes > 0
        assert stats.oldest_entry < stats.newest_entry

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, cache_manager) -> None:
        await cache_manager.set("RADARR", "CUSTOM_FORMATS", [1])
        await cache_manager.set("RADARR", "CF_GROUPS", [1])
        await cache_manager.set("SONARR", "CUSTOM_FORMATS", [1])

        assert await cache_manager.delete("RADARR", "CF_GROUPS")
        assert not await cache_manager.delete("RADARR", "CF_GROUPS")
        assert await cache_manager.clear_service("RADARR") == 1
        assert await cache_manager.clear_all() == 1
        assert (await cache_manager.get_stats()).total_entries == 0

    @pytest.mark.asyncio
    async def test_cleanup_stale_removes_entries_past_twice_threshold(self, cache_manager, session_factory) -> None:
        await cache_manager.set("RADARR", "CUSTOM_FORMATS", [1])
        await cache_manager.set("RADARR", "QUALITY_SIZE", [1])
        async with session_factory() as session:
            await session.execute(
                update(TrashCache)
                .where(TrashCache.config_type == "QUALITY_SIZE")
                .values(updated_at=utcnow() - timedelta(hours=25))
            )
            await session.commit()

        assert await cache_manager.cleanup_stale() == 1
        assert await cache_manager.get("RADARR", "QUALITY_SIZE") is None
        assert await cache_manager.get("RADARR", "CUSTOM_FORMATS") == [1]

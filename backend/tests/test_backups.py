"""Tests for backup creation and scheduled retention."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import add_instance, remote_cf

from trashsync.exceptions import CorruptDataError, NotFoundError
from trashsync.models import TemplateDeploymentHistory, TrashBackup, TrashSyncHistory
from trashsync.services.backup_cleanup import BackupCleanupService
from trashsync.services.backup_manager import BackupManager
from trashsync.utils import utcnow


async def add_backup(session_factory, age_days: float = 0, expires_in_days=None, data=None) -> TrashBackup:
    now = utcnow()
    backup = TrashBackup(
        instance_id="instance-1",
        backup_data=data if data is not None else json.dumps({"customFormats": []}),
        created_at=now - timedelta(days=age_days),
        expires_at=now + timedelta(days=expires_in_days) if expires_in_days is not None else None,
    )
    async with session_factory() as session:
        session.add(backup)
        await session.commit()
    return backup


async def backup_ids(session_factory) -> set:
    async with session_factory() as session:
        return set((await session.execute(select(TrashBackup.id))).scalars().all())


class TestBackupManager:
    @pytest.mark.asyncio
    async def test_create_backup_payload_and_expiry(self, session_factory) -> None:
        instance = await add_instance(session_factory)
        manager = BackupManager(session_factory, retention_days=30)

        backup = await manager.create_backup(instance, [remote_cf(1, "DV")], [{"id": 4, "name": "HD"}], reason="test")

        assert backup.expires_at - backup.created_at == timedelta(days=30)
        payload = await manager.restore_payload(backup.id)
        assert payload["instanceId"] == instance.id
        assert payload["instanceType"] == "RADARR"
        assert payload["customFormats"][0]["name"] == "DV"
        assert payload["metadata"] == {"version": "1.0", "backupReason": "test"}

    @pytest.mark.asyncio
    async def test_zero_retention_never_expires(self, session_factory) -> None:
        instance = await add_instance(session_factory)
        backup = await BackupManager(session_factory, retention_days=0).create_backup(instance, [])
        assert backup.expires_at is None

    @pytest.mark.asyncio
    async def test_restore_errors(self, session_factory) -> None:
        manager = BackupManager(session_factory)
        corrupt = await add_backup(session_factory, data="{broken")
        with pytest.raises(CorruptDataError):
            await manager.restore_payload(corrupt.id)
        with pytest.raises(NotFoundError):
            await manager.restore_payload("missing")

    @pytest.mark.asyncio
    async def test_list_skips_corrupt_and_counts(self, session_factory) -> None:
        manager = BackupManager(session_factory)
        await add_backup(session_factory, age_days=2)
        await add_backup(session_factory, age_days=1, data=json.dumps({"customFormats": [{}, {}], "qualityProfiles": [{}]}))
        await add_backup(session_factory, data="not json")

        infos = await manager.list_backups("instance-1")

        assert [info.config_count for info in infos] == [3, 0]
        assert await manager.get_backup_count("instance-1") == 3

    @pytest.mark.asyncio
    async def test_retention_limit_keeps_newest(self, session_factory) -> None:
        manager = BackupManager(session_factory)
        backups = [await add_backup(session_factory, age_days=days) for days in range(5)]

        assert await manager.enforce_retention_limit("instance-1", max_backups=2) == 3
        assert await backup_ids(session_factory) == {backups[0].id, backups[1].id}
        assert await manager.delete_backup(backups[0].id)
        assert not await manager.delete_backup(backups[0].id)


class TestBackupCleanup:
    @pytest.mark.asyncio
    async def test_expired_backup_is_deleted(self, session_factory) -> None:
        expired = await add_backup(session_factory, expires_in_days=-1)
        live = await add_backup(session_factory, expires_in_days=10)

        stats = await BackupCleanupService(session_factory, orphan_grace_days=7).run_cleanup()

        assert stats.expired_count == 1
        assert stats.total_cleaned == 1
        assert await backup_ids(session_factory) == {live.id}
        assert expired.id not in await backup_ids(session_factory)

    @pytest.mark.asyncio
    async def test_orphans_respect_grace_period(self, session_factory) -> None:
        """A 1-day-old orphan survives; an 8-day-old orphan is removed."""
        young = await add_backup(session_factory, age_days=1)
        old = await add_backup(session_factory, age_days=8)

        stats = await BackupCleanupService(session_factory, orphan_grace_days=7).run_cleanup()

        assert stats.orphaned_count == 1
        remaining = await backup_ids(session_factory)
        assert young.id in remaining
        assert old.id not in remaining

    @pytest.mark.asyncio
    async def test_referenced_backups_are_kept(self, session_factory) -> None:
        by_deployment = await add_backup(session_factory, age_days=30)
        by_sync = await add_backup(session_factory, age_days=30)
        async with session_factory() as session:
            session.add(TemplateDeploymentHistory(template_id="t", instance_id="i", status="SUCCESS", backup_id=by_deployment.id))
            session.add(TrashSyncHistory(instance_id="i", backup_id=by_sync.id))
            await session.commit()

        stats = await BackupCleanupService(session_factory, orphan_grace_days=7).run_cleanup()

        assert stats.total_cleaned == 0
        assert await backup_ids(session_factory) == {by_deployment.id, by_sync.id}

    @pytest.mark.asyncio
    async def test_expired_referenced_backup_unlinks_history(self, session_factory) -> None:
        backup = await add_backup(session_factory, expires_in_days=-1)
        async with session_factory() as session:
            history = TemplateDeploymentHistory(template_id="t", instance_id="i", status="SUCCESS", backup_id=backup.id)
            session.add(history)
            await session.commit()

        await BackupCleanupService(session_factory).run_cleanup()

        async with session_factory() as session:
            stored = await session.get(TemplateDeploymentHistory, history.id)
        assert stored.backup_id is None

    @pytest.mark.asyncio
    async def test_overlapping_run_is_a_noop(self, session_factory) -> None:
        await add_backup(session_factory, expires_in_days=-1)
        service = BackupCleanupService(session_factory)
        service._is_running = True

        stats = await service.run_cleanup()

        assert stats.total_cleaned == 0
        assert len(await backup_ids(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_stats(self, session_factory) -> None:
        await add_backup(session_factory, age_days=9)
        await add_backup(session_factory, age_days=1, expires_in_days=-1)

        stats = await BackupCleanupService(session_factory, orphan_grace_days=7).get_stats()

        assert stats.total_backups == 2
        assert stats.expired_backups == 1
        assert stats.orphaned_backups == 1
        assert stats.oldest_backup < stats.newest_backup

    @pytest.mark.asyncio
    async def test_scheduler_runs_immediately_and_stops(self, session_factory) -> None:
        await add_backup(session_factory, expires_in_days=-1)
        service = BackupCleanupService(session_factory, interval_seconds=3600)

        service.start()
        assert service.is_scheduled
        for _ in range(200):
            if not await backup_ids(session_factory):
                break
            await asyncio.sleep(0.01)
        await service.stop()

        assert await backup_ids(session_factory) == set()
        assert not service.is_scheduled

    @pytest.mark.asyncio
    async def test_stop_survives_failing_inflight_run(self, session_factory) -> None:
        """A run that fails while shutdown waits for it is logged, not re-raised."""

        class FailingCleanup(BackupCleanupService):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                self.started = asyncio.Event()
                self.release = asyncio.Event()

            async def run_cleanup(self):
                self.started.set()
                await self.release.wait()
                raise RuntimeError("database is locked")

        service = FailingCleanup(session_factory, interval_seconds=3600)
        service.start()
        await service.started.wait()

        stopping = asyncio.create_task(service.stop())
        await asyncio.sleep(0)
        service.release.set()
        await stopping

        assert not service.is_scheduled

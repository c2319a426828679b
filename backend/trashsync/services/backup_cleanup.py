"""Scheduled pruning of expired and orphaned backups.

Each run deletes:

1. backups whose ``expires_at`` has passed,
2. backups older than the orphan grace period that no sync or deployment
   history row references.

The grace period keeps a fresh backup alive until the history row that owns
it has been written.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Callable, List, Optional

from sqlalchemy import select, delete, update, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from trashsync.config import settings
from trashsync.database import async_session
from trashsync.models import TrashBackup, TemplateDeploymentHistory, TrashSyncHistory
from trashsync.schemas import BackupStats, CleanupStats
from trashsync.utils import utcnow

logger = logging.getLogger(__name__)


class BackupCleanupService:
    """Runs the cleanup once on start, then every ``interval_seconds``."""

    def __init__(
        self,
        session_factory: async_sessionmaker = None,
        interval_seconds: float = None,
        orphan_grace_days: int = None,
        clock: Callable = utcnow,
    ):
        self._session_factory = session_factory or async_session
        self.interval_seconds = (
            settings.backup_cleanup_interval_seconds if interval_seconds is None else interval_seconds
        )
        self.orphan_grace_days = settings.orphan_grace_days if orphan_grace_days is None else orphan_grace_days
        self.clock = clock
        self._is_running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._current_run: Optional[asyncio.Task] = None

    @property
    def is_scheduled(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Start the background loop. The first run happens immediately."""
        if self.is_scheduled:
            logger.warning("Backup cleanup scheduler already running")
            return
        logger.info(f"Starting backup cleanup scheduler (every {self.interval_seconds}s)")
        self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop the loop; a cleanup run already in progress is allowed to finish."""
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        if self._current_run is not None and not self._current_run.done():
            try:
                await self._current_run
            except Exception as e:
                logger.error(f"Backup cleanup failed during shutdown: {e}")
        self._current_run = None
        logger.info("Backup cleanup scheduler stopped")

    async def _loop(self) -> None:
        while True:
            self._current_run = asyncio.ensure_future(self.run_cleanup())
            try:
                await asyncio.shield(self._current_run)
            except Exception as e:
                logger.error(f"Scheduled backup cleanup failed: {e}")
            await asyncio.sleep(self.interval_seconds)

    async def run_cleanup(self) -> CleanupStats:
        """Run one cleanup pass. Returns zeros if another pass is still running."""
        if self._is_running:
            logger.debug("Backup cleanup already running, skipping")
            return CleanupStats()

        self._is_running = True
        try:
            stats = CleanupStats()
            stats.expired_count = await self._cleanup_expired()
            stats.orphaned_count = await self._cleanup_orphaned()
            stats.total_cleaned = stats.expired_count + stats.orphaned_count
            if stats.total_cleaned:
                logger.info(
                    f"Backup cleanup removed {stats.total_cleaned} backups "
                    f"({stats.expired_count} expired, {stats.orphaned_count} orphaned)"
                )
            return stats
        finally:
            self._is_running = False

    def _expired_clause(self):
        return (TrashBackup.expires_at.is_not(None)) & (TrashBackup.expires_at <= self.clock())

    def _orphan_query(self):
        threshold = self.clock() - timedelta(days=self.orphan_grace_days)
        return select(TrashBackup.id).where(
            TrashBackup.created_at <= threshold,
            ~TrashBackup.sync_history.any(),
            ~TrashBackup.deployment_history.any(),
        )

    async def _delete_backups(self, session, backup_ids: List[str]) -> int:
        if not backup_ids:
            return 0
        # History rows keep their record but lose the link
        await session.execute(
            update(TemplateDeploymentHistory)
            .where(TemplateDeploymentHistory.backup_id.in_(backup_ids))
            .values(backup_id=None)
        )
        await session.execute(
            update(TrashSyncHistory)
            .where(TrashSyncHistory.backup_id.in_(backup_ids))
            .values(backup_id=None)
        )
        result = await session.execute(delete(TrashBackup).where(TrashBackup.id.in_(backup_ids)))
        return result.rowcount

    async def _cleanup_expired(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(TrashBackup.id).where(self._expired_clause()))
            count = await self._delete_backups(session, [row[0] for row in result.all()])
            await session.commit()
        if count:
            logger.debug(f"Deleted {count} expired backups")
        return count

    async def _cleanup_orphaned(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(self._orphan_query())
            count = await self._delete_backups(session, [row[0] for row in result.all()])
            await session.commit()
        if count:
            logger.debug(f"Deleted {count} orphaned backups")
        return count

    async def get_stats(self) -> BackupStats:
        async with self._session_factory() as session:
            total = (await session.execute(select(func.count(TrashBackup.id)))).scalar() or 0
            expired = (
                await session.execute(select(func.count(TrashBackup.id)).where(self._expired_clause()))
            ).scalar() or 0
            orphaned = len((await session.execute(self._orphan_query())).all())
            oldest, newest = (
                await session.execute(select(func.min(TrashBackup.created_at), func.max(TrashBackup.created_at)))
            ).one()

        return BackupStats(
            total_backups=total,
            expired_backups=expired,
            orphaned_backups=orphaned,
            oldest_backup=oldest,
            newest_backup=newest,
        )


cleanup_service = BackupCleanupService()


def get_cleanup_service() -> BackupCleanupService:
    """Get the process-wide cleanup service."""
    return cleanup_service

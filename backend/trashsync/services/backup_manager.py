"""Snapshots of remote instance state taken before deployments."""

import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from trashsync.config import settings
from trashsync.database import async_session
from trashsync.exceptions import CorruptDataError, NotFoundError
from trashsync.models import ServiceInstance, TrashBackup
from trashsync.schemas import BackupInfo
from trashsync.utils import utcnow

logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = "1.0"


class BackupManager:
    """Create, read and prune backups. Restoring is done by the deployment executor."""

    def __init__(self, session_factory: async_sessionmaker = None, retention_days: int = None):
        self._session_factory = session_factory or async_session
        self.retention_days = settings.backup_retention_days if retention_days is None else retention_days

    async def create_backup(
        self,
        instance: ServiceInstance,
        custom_formats: List[Dict[str, Any]],
        quality_profiles: Optional[List[Dict[str, Any]]] = None,
        reason: str = "deployment",
    ) -> TrashBackup:
        """Store a snapshot; it expires after the retention period (never when 0)."""
        now = utcnow()
        payload = {
            "timestamp": now.isoformat(),
            "instanceId": instance.id,
            "instanceName": instance.label,
            "instanceType": instance.service.upper(),
            "customFormats": custom_formats,
            "qualityProfiles": quality_profiles,
            "metadata": {"version": BACKUP_FORMAT_VERSION, "backupReason": reason},
        }
        backup = TrashBackup(
            instance_id=instance.id,
            backup_data=json.dumps(payload),
            created_at=now,
            expires_at=now + timedelta(days=self.retention_days) if self.retention_days > 0 else None,
        )
        async with self._session_factory() as session:
            session.add(backup)
            await session.commit()

        logger.info(
            f"Created backup {backup.id} of {len(custom_formats)} custom formats "
            f"for instance {instance.label} ({reason})"
        )
        return backup

    async def get_backup(self, backup_id: str) -> Optional[TrashBackup]:
        async with self._session_factory() as session:
            return await session.get(TrashBackup, backup_id)

    async def restore_payload(self, backup_id: str) -> Dict[str, Any]:
        """Decoded snapshot of a backup."""
        backup = await self.get_backup(backup_id)
        if backup is None:
            raise NotFoundError("Backup", backup_id)
        try:
            return json.loads(backup.backup_data)
        except ValueError as e:
            raise CorruptDataError(f"Backup {backup_id} contains invalid JSON data: {e}", backup_id) from e

    async def list_backups(self, instance_id: str, limit: int = 10, offset: int = 0) -> List[BackupInfo]:
        """Newest first. Backups that cannot be decoded are skipped."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(TrashBackup)
                .where(TrashBackup.instance_id == instance_id)
                .order_by(TrashBackup.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            backups = result.scalars().all()

        infos = []
        for backup in backups:
            try:
                data = json.loads(backup.backup_data)
            except ValueError as e:
                logger.warning(f"Skipping corrupt backup {backup.id}: {e}")
                continue
            infos.append(BackupInfo(
                id=backup.id,
                instance_id=backup.instance_id,
                created_at=backup.created_at,
                expires_at=backup.expires_at,
                data_size=len(backup.backup_data),
                config_count=len(data.get("customFormats") or []) + len(data.get("qualityProfiles") or []),
            ))
        return infos

    async def delete_backup(self, backup_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(TrashBackup).where(TrashBackup.id == backup_id))
            await session.commit()
        return result.rowcount > 0

    async def get_backup_count(self, instance_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(TrashBackup.id)).where(TrashBackup.instance_id == instance_id)
            )
            return result.scalar() or 0

    async def enforce_retention_limit(self, instance_id: str, max_backups: int = 10) -> int:
        """Keep only the newest ``max_backups`` for an instance."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(TrashBackup.id)
                .where(TrashBackup.instance_id == instance_id)
                .order_by(TrashBackup.created_at.desc())
                .offset(max_backups)
            )
            surplus = [row[0] for row in result.all()]
            if not surplus:
                return 0
            await session.execute(delete(TrashBackup).where(TrashBackup.id.in_(surplus)))
            await session.commit()

        logger.info(f"Removed {len(surplus)} backups over the limit of {max_backups} for {instance_id}")
        return len(surplus)


def get_backup_manager() -> BackupManager:
    return BackupManager()

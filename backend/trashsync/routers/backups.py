"""Backup listing and retention API endpoints."""

from fastapi import APIRouter, Depends
from trashsync.services.backup_manager import BackupManager, get_backup_manager
from trashsync.services.backup_cleanup import BackupCleanupService, get_cleanup_service

router = APIRouter()


@router.get("/stats")
async def get_backup_stats(cleanup: BackupCleanupService = Depends(get_cleanup_service)):
    stats = await cleanup.get_stats()
    return stats.model_dump(mode="json", by_alias=True)


@router.post("/cleanup")
async def run_backup_cleanup(cleanup: BackupCleanupService = Depends(get_cleanup_service)):
    """Run a cleanup pass now. Returns zeros if the scheduled pass is still running."""
    stats = await cleanup.run_cleanup()
    return stats.model_dump(mode="json", by_alias=True)


@router.get("/instance/{instance_id}")
async def list_instance_backups(
    instance_id: str,
    limit: int = 10,
    offset: int = 0,
    backups: BackupManager = Depends(get_backup_manager)
):
    items = await backups.list_backups(instance_id, limit=limit, offset=offset)
    total = await backups.get_backup_count(instance_id)
    return {"total": total, "backups": [b.model_dump(mode="json", by_alias=True) for b in items]}

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship
from trashsync.database import Base
from trashsync.utils import new_id, utcnow


class TemplateDeploymentHistory(Base):
    """One deployment of a template to an instance. Written only by DeploymentExecutor."""
    __tablename__ = "template_deployment_history"

    id = Column(String(36), primary_key=True, default=new_id)
    template_id = Column(String(36), nullable=False, index=True)
    instance_id = Column(String(36), nullable=False, index=True)
    # PENDING, BACKING_UP, APPLYING, then SUCCESS, PARTIAL_SUCCESS or FAILED
    status = Column(String(20), nullable=False, default="PENDING")
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    total_count = Column(Integer, default=0)
    created_count = Column(Integer, default=0)
    updated_count = Column(Integer, default=0)
    skipped_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    applied_configs = Column(JSON, default=list)  # [{trashId, name, action}]
    failed_configs = Column(JSON, default=list)  # [{trashId, name, error}]
    errors = Column(JSON, default=list)
    template_snapshot = Column(Text, nullable=True)
    backup_id = Column(String(36), ForeignKey("trash_backups.id", ondelete="SET NULL"), nullable=True)
    rolled_back = Column(Boolean, default=False, nullable=False)
    rolled_back_at = Column(DateTime, nullable=True)
    rollback_sync_id = Column(String(36), nullable=True)

    backup = relationship("TrashBackup", back_populates="deployment_history")


class TrashSyncHistory(Base):
    """Restore operations replayed from a backup."""
    __tablename__ = "trash_sync_history"

    id = Column(String(36), primary_key=True, default=new_id)
    instance_id = Column(String(36), nullable=False, index=True)
    template_id = Column(String(36), nullable=True)
    sync_type = Column(String(20), nullable=False, default="ROLLBACK")
    status = Column(String(20), nullable=False, default="IN_PROGRESS")
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    configs_applied = Column(Integer, default=0)
    configs_failed = Column(Integer, default=0)
    errors = Column(JSON, default=list)
    backup_id = Column(String(36), ForeignKey("trash_backups.id", ondelete="SET NULL"), nullable=True)

    backup = relationship("TrashBackup", back_populates="sync_history")

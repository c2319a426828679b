from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import relationship
from trashsync.database import Base
from trashsync.utils import new_id, utcnow


class TrashBackup(Base):
    """Snapshot of a remote instance taken before a deployment."""
    __tablename__ = "trash_backups"

    id = Column(String(36), primary_key=True, default=new_id)
    instance_id = Column(String(36), nullable=False, index=True)
    backup_data = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)  # None = never expires

    sync_history = relationship("TrashSyncHistory", back_populates="backup")
    deployment_history = relationship("TemplateDeploymentHistory", back_populates="backup")

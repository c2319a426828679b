from sqlalchemy import Column, String, Text, Boolean, DateTime
from sqlalchemy.sql import func
from trashsync.database import Base
from trashsync.utils import new_id


class TrashTemplate(Base):
    """Local, versioned copy of a custom format / quality profile configuration."""
    __tablename__ = "trash_templates"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(500), nullable=False)
    service_type = Column(String(20), nullable=False)  # RADARR, SONARR
    # JSON documents stored as text; parse failures surface as CorruptDataError
    config_data = Column(Text, nullable=False, default="{}")
    change_log = Column(Text, nullable=True)
    instance_overrides = Column(Text, nullable=True)
    commit_hash = Column(String(64), nullable=True)
    has_user_modifications = Column(Boolean, default=False, nullable=False)
    source_quality_profile_trash_id = Column(String(64), nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

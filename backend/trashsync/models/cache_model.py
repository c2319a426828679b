"""Persistent cache of upstream guide definitions."""

from sqlalchemy import Column, Integer, String, Text, DateTime, UniqueConstraint
from trashsync.database import Base


class TrashCache(Base):
    """One versioned payload per (service type, config type)."""
    __tablename__ = "trash_cache"
    __table_args__ = (
        UniqueConstraint("service_type", "config_type", name="uq_trash_cache_service_config"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_type = Column(String(20), nullable=False, index=True)
    config_type = Column(String(50), nullable=False)
    data = Column(Text, nullable=False)  # gzip+base64 or plain JSON, see TrashCacheManager
    version = Column(Integer, nullable=False, default=1)
    commit_hash = Column(String(64), nullable=True)
    item_count = Column(Integer, default=0)  # Quick access to count without decoding
    size_bytes = Column(Integer, default=0)
    updated_at = Column(DateTime, nullable=False)

"""Remote Radarr/Sonarr instances that templates are deployed to."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from trashsync.database import Base
from trashsync.utils import new_id


class ServiceInstance(Base):
    """Connection settings for one remote instance."""
    __tablename__ = "service_instances"

    id = Column(String(36), primary_key=True, default=new_id)
    label = Column(String(200), nullable=False)
    service = Column(String(20), nullable=False)  # radarr, sonarr
    base_url = Column(String(500), nullable=False)
    api_key = Column(String(500), nullable=False, default="")
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

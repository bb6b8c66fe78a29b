from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from enum import Enum
from .database import Base


class SiteStatus(str, Enum):
    """Lifecycle status of a site row. ``expired`` is derived from age, never stored."""
    PROVISIONING = "provisioning"
    READY = "ready"          # Parked in the pool
    ALLOCATED = "allocated"  # Handed to a requester
    EXPIRED = "expired"
    RECLAIMING = "reclaiming"


class SiteColumns:
    """Columns shared by the allocated and pooled partitions."""

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(32), unique=True, index=True, nullable=False)  # e.g. "k3x8n2"
    containerid = Column(String(128), nullable=True)  # Set once the container exists
    siteurl = Column(String(255), nullable=False)
    user = Column(String(64), nullable=False)  # WordPress admin username
    password = Column(String(128), nullable=False)  # WordPress admin password
    email = Column(String(255), nullable=True)
    owner = Column(String(255), nullable=True)  # Requested username, display only
    db_name = Column(String(64), unique=True, index=True, nullable=False)  # wp_<site_id>
    db_user = Column(String(64), nullable=False)
    db_pass = Column(String(128), nullable=False)
    status = Column(String(20), default=SiteStatus.PROVISIONING.value, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Site(SiteColumns, Base):
    __tablename__ = "sites"


class PoolSite(SiteColumns, Base):
    __tablename__ = "sitepool"

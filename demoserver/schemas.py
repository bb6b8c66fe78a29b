from pydantic import BaseModel, field_validator
from datetime import datetime
from typing import Optional, List, Dict, Any
import re

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]{1,64}$")


class SiteDescriptor(BaseModel):
    """A provisioned site as returned to callers."""
    site_id: str
    url: str
    admin_user: Optional[str] = None
    admin_pass: Optional[str] = None
    admin_email: Optional[str] = None
    owner: Optional[str] = None
    db_name: str
    db_user: Optional[str] = None
    db_pass: Optional[str] = None
    container_id: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    ready: bool = True
    login_url: Optional[str] = None
    warning: Optional[str] = None

    class Config:
        from_attributes = True


class CreateSiteRequest(BaseModel):
    username: Optional[str] = None

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        if v is None or v == "":
            return None
        if not _USERNAME_PATTERN.match(v):
            raise ValueError('Username may only contain letters, digits and _ . @ -')
        return v


class CreateSiteResponse(BaseModel):
    success: bool = True
    url: str
    siteurl: str
    username: Optional[str] = None
    admin_user: str
    admin_pass: str
    db: str
    db_name: str
    db_user: str
    db_pass: str
    ready: bool
    login_url: Optional[str] = None
    warning: Optional[str] = None

    @classmethod
    def from_descriptor(cls, site: SiteDescriptor) -> "CreateSiteResponse":
        return cls(
            url=site.url,
            siteurl=site.url,
            username=site.owner,
            admin_user=site.admin_user or "",
            admin_pass=site.admin_pass or "",
            db=site.db_name,
            db_name=site.db_name,
            db_user=site.db_user or "",
            db_pass=site.db_pass or "",
            ready=site.ready,
            login_url=site.login_url,
            warning=site.warning,
        )


class SiteListResponse(BaseModel):
    success: bool = True
    sites: List[SiteDescriptor]


class PoolStatus(BaseModel):
    available: int
    provisioning: int
    target: int
    minimum: int
    refilling: bool
    refill_task_id: Optional[str] = None
    abandoned: int = 0


class CleanupResponse(BaseModel):
    success: bool = True
    report: Dict[str, Any]

"""
Survey link documents.

The screening core reads these through the link repository; it never
writes them directly.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

# ============================================================================
# Enums
# ============================================================================


class LinkStatus(str, Enum):
    """Survey link lifecycle status."""

    UNUSED = "UNUSED"
    CLICKED = "CLICKED"
    COMPLETED = "COMPLETED"
    DISQUALIFIED = "DISQUALIFIED"
    QUOTA_FULL = "QUOTA_FULL"
    FLAGGED = "FLAGGED"


class LinkType(str, Enum):
    """Production links versus links handed out for QA."""

    LIVE = "LIVE"
    TEST = "TEST"


# Statuses that mean the respondent has already gone through the survey
USED_STATUSES = frozenset({LinkStatus.COMPLETED, LinkStatus.FLAGGED})


# ============================================================================
# Documents
# ============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SurveyLink(BaseModel):
    """A single respondent link."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    uid: str
    project_id: str
    status: LinkStatus = LinkStatus.UNUSED
    link_type: LinkType = LinkType.LIVE
    vendor_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    geo_data: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    clicked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ProjectPolicy(BaseModel):
    """
    Project-level access policy.

    ``allowed_countries`` is kept as stored: a list of ISO codes, a JSON
    encoded list, or a comma-separated string. The decision engine parses it.
    """

    project_id: str
    allowed_countries: Any = None
    settings: dict[str, Any] = Field(default_factory=dict)


class FlagRecord(BaseModel):
    """A persisted flag against a link."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    link_id: str
    reason: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

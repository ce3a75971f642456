"""
Screening API schemas.

Request bodies carry the client-collected parts of a RequestContext;
the IP address and user agent always come from the connection itself.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from models.screening import (
    ChallengeSubmission,
    DenialReason,
    DeviceSnapshot,
    GeoLocation,
    InteractionTrace,
    QuestionResponse,
    ThreatLevel,
    VPNDetection,
)
from models.survey_link import LinkStatus
from services.challenge_service import ChallengeType
from services.honeypot_service import HoneypotResult, InteractionAnalysis

# =============================================================================
# Links
# =============================================================================


class AccessRequest(BaseModel):
    """Client-side data submitted when a respondent opens a link."""

    form_fields: dict[str, Any] = Field(default_factory=dict)
    answers: list[QuestionResponse] = Field(default_factory=list)
    device: Optional[DeviceSnapshot] = None
    trace: Optional[InteractionTrace] = None
    challenge: Optional[ChallengeSubmission] = None
    captcha_token: Optional[str] = None
    honeypot_session_id: Optional[str] = None


class AccessResponse(BaseModel):
    allowed: bool
    reason: Optional[DenialReason] = None
    redirect: Optional[str] = None
    threat_level: ThreatLevel
    flags: list[str] = Field(default_factory=list)


class LinkStatusResponse(BaseModel):
    uid: str
    status: LinkStatus
    redirect: Optional[str] = None


class FlagRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)


class FlagResponse(BaseModel):
    flag_id: str
    status: LinkStatus


class StatusUpdateRequest(BaseModel):
    """Outcome reported by the survey platform."""

    status: LinkStatus

    @field_validator("status")
    @classmethod
    def validate_outcome(cls, v: LinkStatus) -> LinkStatus:
        if v not in (LinkStatus.COMPLETED, LinkStatus.DISQUALIFIED, LinkStatus.QUOTA_FULL):
            raise ValueError("status must be COMPLETED, DISQUALIFIED or QUOTA_FULL")
        return v


# =============================================================================
# IP check
# =============================================================================


class IPCheckResponse(BaseModel):
    ip: str
    geo_location: Optional[GeoLocation] = None
    vpn_detection: VPNDetection
    threat_level: ThreatLevel
    flags: list[str] = Field(default_factory=list)


# =============================================================================
# Verification
# =============================================================================


class ChallengeRequest(BaseModel):
    fingerprint: str = Field(..., min_length=1, max_length=256)
    type: Optional[ChallengeType] = None


class ChallengeVerifyResponse(BaseModel):
    passed: bool
    failure: Optional[str] = None


class HoneypotIssueRequest(BaseModel):
    count: Optional[int] = Field(default=None, ge=1, le=7)


class HoneypotValidateRequest(BaseModel):
    form_data: dict[str, Any] = Field(default_factory=dict)
    interactions: Optional[dict[str, list[dict[str, Any]]]] = None


class HoneypotValidateResponse(BaseModel):
    result: HoneypotResult
    interaction: Optional[InteractionAnalysis] = None

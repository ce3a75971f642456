"""
Domain models for the screening pipeline.

RequestContext is the immutable input of one evaluation. Each detector turns
it into a SignalResult; the aggregator folds those into a SecurityContext and
the decision engine turns that into an AccessDecision.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# Enums
# ============================================================================


class SignalKind(str, Enum):
    """Detector that produced a signal."""

    VPN = "VPN"
    GEO = "GEO"
    DOMAIN = "DOMAIN"
    HONEYPOT = "HONEYPOT"
    FLATLINE = "FLATLINE"
    AI_TEXT = "AI_TEXT"
    CHALLENGE = "CHALLENGE"
    FINGERPRINT = "FINGERPRINT"


class ThreatLevel(str, Enum):
    """Four-tier risk classification shared by detectors and the aggregate."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AccuracyTier(str, Enum):
    """Resolution of a geolocation answer."""

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class DenialReason(str, Enum):
    """Reason codes attached to an access decision."""

    LINK_NOT_FOUND = "LINK_NOT_FOUND"
    LINK_ALREADY_USED = "LINK_ALREADY_USED"
    GEO_RESTRICTED = "GEO_RESTRICTED"
    GEO_CONFIDENCE_TOO_LOW = "GEO_CONFIDENCE_TOO_LOW"
    GEO_RESTRICTION_CHECK_FAILED = "GEO_RESTRICTION_CHECK_FAILED"
    TOR_DETECTED = "TOR_DETECTED"
    VPN_DETECTED = "VPN_DETECTED"
    HIGH_RISK_PROXY_DETECTED = "HIGH_RISK_PROXY_DETECTED"
    CRITICAL_THREAT_LEVEL = "CRITICAL_THREAT_LEVEL"
    CAPTCHA_FAILED = "CAPTCHA_FAILED"


class QuestionType(str, Enum):
    """Survey question kinds understood by the response analyzers."""

    SCALE = "SCALE"
    RATING = "RATING"
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    TEXT = "TEXT"
    COUNTRY = "COUNTRY"


# ============================================================================
# Request Context
# ============================================================================


class QuestionResponse(BaseModel):
    """One answered survey question."""

    model_config = ConfigDict(frozen=True)

    question_id: str
    question_type: QuestionType
    answer: Any = None
    options: list[str] = Field(default_factory=list)
    scale_min: Optional[float] = None
    scale_max: Optional[float] = None
    time_spent_seconds: Optional[float] = Field(default=None, ge=0)


class DeviceSnapshot(BaseModel):
    """Static device attributes reported by the browser."""

    model_config = ConfigDict(frozen=True)

    user_agent: str = ""
    screen_width: int = 0
    screen_height: int = 0
    color_depth: int = 0
    timezone: Optional[str] = None
    language: Optional[str] = None
    hardware_concurrency: Optional[int] = None
    max_touch_points: int = 0
    webgl_renderer: Optional[str] = None
    audio_fingerprint: Optional[str] = None
    canvas_fingerprint: Optional[str] = None


class PointerSample(BaseModel):
    """Mouse position sample; ``t`` is milliseconds since page load."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    t: float


class InteractionTrace(BaseModel):
    """Behavioral events collected while the respondent was on the page."""

    model_config = ConfigDict(frozen=True)

    mouse_movements: list[PointerSample] = Field(default_factory=list)
    keystroke_times: list[float] = Field(default_factory=list)
    click_times: list[float] = Field(default_factory=list)
    scroll_events: int = Field(default=0, ge=0)
    focus_events: int = Field(default=0, ge=0)
    resize_events: int = Field(default=0, ge=0)
    idle_time_ms: float = Field(default=0, ge=0)
    total_time_ms: float = Field(default=0, ge=0)
    form_completion_ms: Optional[float] = Field(default=None, ge=0)


class ChallengeSubmission(BaseModel):
    """Client answer to an issued human-verification challenge."""

    model_config = ConfigDict(frozen=True)

    challenge_id: str
    answer: str = ""
    fingerprint: str = ""
    solve_time_ms: float = Field(default=0, ge=0)


class RequestContext(BaseModel):
    """Immutable snapshot of one inbound request."""

    model_config = ConfigDict(frozen=True)

    ip_address: str
    user_agent: str = ""
    link_uid: Optional[str] = None
    authenticated: bool = False
    form_fields: dict[str, Any] = Field(default_factory=dict)
    answers: tuple[QuestionResponse, ...] = ()
    device: Optional[DeviceSnapshot] = None
    trace: Optional[InteractionTrace] = None
    challenge: Optional[ChallengeSubmission] = None
    captcha_token: Optional[str] = None
    honeypot_session_id: Optional[str] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def emails(self) -> list[str]:
        """Email-looking values from the submitted form fields and text answers."""
        candidates = [v for v in self.form_fields.values() if isinstance(v, str)]
        candidates.extend(
            a.answer for a in self.answers if a.question_type == QuestionType.TEXT and isinstance(a.answer, str)
        )
        return [c.strip() for c in candidates if "@" in c and " " not in c.strip()]

    def text_answers(self, min_length: int = 0) -> list[str]:
        """Free-text answers longer than ``min_length`` characters."""
        return [
            a.answer
            for a in self.answers
            if a.question_type == QuestionType.TEXT and isinstance(a.answer, str) and len(a.answer) > min_length
        ]


# ============================================================================
# Signals
# ============================================================================


class SignalResult(BaseModel):
    """
    One detector's assessment of a request.

    ``verdict`` is a boolean for yes/no detectors and a tier name for
    detectors that grade risk. ``failed`` marks a neutral default substituted
    for a lookup that timed out or raised.
    """

    kind: SignalKind
    verdict: bool | str = False
    confidence: int = Field(default=0, ge=0, le=100)
    evidence: list[str] = Field(default_factory=list)
    detail: dict[str, Any] = Field(default_factory=dict)
    failed: bool = False


class GeoLocation(BaseModel):
    """Combined geolocation answer for an IP."""

    country: str = "Unknown"
    country_code: str = "XX"
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: str = "UTC"
    isp: str = "Unknown"
    confidence: int = Field(default=0, ge=0, le=100)
    accuracy: AccuracyTier = AccuracyTier.LOW
    sources: list[str] = Field(default_factory=list)


class VPNDetection(BaseModel):
    """VPN / proxy / Tor / hosting verdict for an IP."""

    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    is_hosting: bool = False
    is_relay: bool = False
    confidence: int = Field(default=0, ge=0, le=100)
    risk_level: ThreatLevel = ThreatLevel.LOW
    vpn_score: int = 0
    proxy_score: int = 0
    hosting_score: int = 0
    tor_score: int = 0
    methods: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class SecurityContext(BaseModel):
    """Aggregate of all signals for one evaluation."""

    authenticated: bool = False
    geo_location: Optional[GeoLocation] = None
    vpn_detection: VPNDetection = Field(default_factory=VPNDetection)
    captcha_score: Optional[float] = Field(default=None, ge=0, le=1)
    flags: list[str] = Field(default_factory=list)
    threat_level: ThreatLevel = ThreatLevel.LOW
    threat_score: int = 0
    signals: dict[SignalKind, int] = Field(default_factory=dict)

    def has_flag(self, flag: str) -> bool:
        return flag in self.flags

    def summary(self) -> dict[str, Any]:
        """Compact representation suitable for persisting with a flag record."""
        return {
            "threat_level": self.threat_level.value,
            "threat_score": self.threat_score,
            "flags": list(self.flags),
            "country_code": self.geo_location.country_code if self.geo_location else None,
            "geo_confidence": self.geo_location.confidence if self.geo_location else None,
            "vpn": self.vpn_detection.is_vpn,
            "proxy": self.vpn_detection.is_proxy,
            "tor": self.vpn_detection.is_tor,
            "captcha_score": self.captcha_score,
        }


class AccessDecision(BaseModel):
    """Allow/deny verdict for a survey link."""

    allowed: bool
    reason: Optional[DenialReason] = None
    link_uid: str
    link_id: Optional[str] = None
    security_context: SecurityContext
    decided_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

"""Domain models module."""

from models.screening import (
    AccessDecision,
    AccuracyTier,
    ChallengeSubmission,
    DenialReason,
    DeviceSnapshot,
    GeoLocation,
    InteractionTrace,
    PointerSample,
    QuestionResponse,
    QuestionType,
    RequestContext,
    SecurityContext,
    SignalKind,
    SignalResult,
    ThreatLevel,
    VPNDetection,
)
from models.survey_link import FlagRecord, LinkStatus, LinkType, ProjectPolicy, SurveyLink

__all__ = [
    "AccessDecision",
    "AccuracyTier",
    "ChallengeSubmission",
    "DenialReason",
    "DeviceSnapshot",
    "FlagRecord",
    "GeoLocation",
    "InteractionTrace",
    "LinkStatus",
    "LinkType",
    "PointerSample",
    "ProjectPolicy",
    "QuestionResponse",
    "QuestionType",
    "RequestContext",
    "SecurityContext",
    "SignalKind",
    "SignalResult",
    "SurveyLink",
    "ThreatLevel",
    "VPNDetection",
]

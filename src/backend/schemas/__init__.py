"""Schemas module initialization."""

from schemas.screening import (
    AccessRequest,
    AccessResponse,
    ChallengeRequest,
    ChallengeVerifyResponse,
    FlagRequest,
    FlagResponse,
    HoneypotIssueRequest,
    HoneypotValidateRequest,
    HoneypotValidateResponse,
    IPCheckResponse,
    LinkStatusResponse,
    StatusUpdateRequest,
)

__all__ = [
    "AccessRequest",
    "AccessResponse",
    "ChallengeRequest",
    "ChallengeVerifyResponse",
    "FlagRequest",
    "FlagResponse",
    "HoneypotIssueRequest",
    "HoneypotValidateRequest",
    "HoneypotValidateResponse",
    "IPCheckResponse",
    "LinkStatusResponse",
    "StatusUpdateRequest",
]

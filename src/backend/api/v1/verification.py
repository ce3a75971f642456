"""
Human-verification endpoints: challenges and honeypot sessions.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import PlainTextResponse

from api.deps import get_components
from models.screening import ChallengeSubmission
from schemas.screening import (
    ChallengeRequest,
    ChallengeVerifyResponse,
    HoneypotIssueRequest,
    HoneypotValidateRequest,
    HoneypotValidateResponse,
)
from services.challenge_service import IssuedChallenge
from services.fraud_detection import ScreeningComponents
from services.honeypot_service import HoneypotIssue

router = APIRouter()


# =============================================================================
# Challenges
# =============================================================================


@router.post("/challenges", response_model=IssuedChallenge, status_code=status.HTTP_201_CREATED)
async def issue_challenge(
    challenge_request: ChallengeRequest,
    components: Annotated[ScreeningComponents, Depends(get_components)],
) -> IssuedChallenge:
    """Issue a challenge bound to the client's fingerprint."""
    return await components.challenges.issue(challenge_request.fingerprint, challenge_request.type)


@router.post("/challenges/verify", response_model=ChallengeVerifyResponse)
async def verify_challenge(
    submission: ChallengeSubmission,
    components: Annotated[ScreeningComponents, Depends(get_components)],
) -> ChallengeVerifyResponse:
    """
    Check an answer.

    A challenge can be verified once; later attempts report UNKNOWN_CHALLENGE.
    """
    verification = await components.challenges.verify(submission)
    return ChallengeVerifyResponse(
        passed=verification.passed,
        failure=verification.failure.value if verification.failure else None,
    )


# =============================================================================
# Honeypots
# =============================================================================


@router.post("/honeypots", response_model=HoneypotIssue, status_code=status.HTTP_201_CREATED)
async def issue_honeypots(
    components: Annotated[ScreeningComponents, Depends(get_components)],
    issue_request: Annotated[Optional[HoneypotIssueRequest], Body()] = None,
) -> HoneypotIssue:
    """Start a honeypot session with a random set of decoy fields."""
    count = issue_request.count if issue_request else None
    return await components.honeypots.issue(count=count)


@router.get("/honeypots/{session_id}/css", response_class=PlainTextResponse)
async def honeypot_css(
    session_id: str,
    components: Annotated[ScreeningComponents, Depends(get_components)],
) -> PlainTextResponse:
    css = await components.honeypots.generate_css(session_id)
    if css is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Honeypot session not found",
        )
    return PlainTextResponse(css, media_type="text/css")


@router.post("/honeypots/{session_id}/validate", response_model=HoneypotValidateResponse)
async def validate_honeypots(
    session_id: str,
    validate_request: HoneypotValidateRequest,
    components: Annotated[ScreeningComponents, Depends(get_components)],
) -> HoneypotValidateResponse:
    """Validate a submission against its session. The session is consumed."""
    result = await components.honeypots.validate(session_id, validate_request.form_data)
    interaction = None
    if validate_request.interactions is not None:
        interaction = components.honeypots.analyze_interaction_patterns(validate_request.interactions)
    return HoneypotValidateResponse(result=result, interaction=interaction)

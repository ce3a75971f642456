"""
Survey link endpoints.

Respondents hit ``/access`` when they open a link; the survey platform
reports outcomes through ``/status`` and manual reviews through ``/flag``.
"""

from typing import Annotated, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from api.deps import build_request_context, get_decision_engine, get_link_repository
from core.logging import mask_ip
from models.screening import DenialReason
from models.survey_link import LinkStatus, SurveyLink
from repositories.provider import LinkRepositoryProtocol
from schemas.screening import (
    AccessRequest,
    AccessResponse,
    FlagRequest,
    FlagResponse,
    LinkStatusResponse,
    StatusUpdateRequest,
)
from services.access_decision import AccessDecisionEngine

logger = structlog.get_logger(__name__)

router = APIRouter()

# Ineligible pages shown for a final link status
STATUS_REDIRECTS: dict[LinkStatus, str] = {
    LinkStatus.COMPLETED: "/thank-you-completed",
    LinkStatus.DISQUALIFIED: "/sorry-disqualified",
    LinkStatus.QUOTA_FULL: "/sorry-quota-full",
    LinkStatus.FLAGGED: "/sorry-disqualified",
}

GEO_REDIRECT = "/geo-restricted"
INVALID_LINK_REDIRECT = "/invalid-link"
DEFAULT_DENIAL_REDIRECT = "/sorry-disqualified"

GEO_DENIALS = frozenset(
    {
        DenialReason.GEO_RESTRICTED,
        DenialReason.GEO_CONFIDENCE_TOO_LOW,
        DenialReason.GEO_RESTRICTION_CHECK_FAILED,
    }
)

# Denials caused by the link itself rather than by screening
LINK_DENIALS = frozenset({DenialReason.LINK_NOT_FOUND, DenialReason.LINK_ALREADY_USED})


def denial_redirect(reason: DenialReason, link: Optional[SurveyLink]) -> str:
    """Page a denied respondent is sent to."""
    if reason == DenialReason.LINK_NOT_FOUND:
        return INVALID_LINK_REDIRECT
    if reason == DenialReason.LINK_ALREADY_USED and link is not None:
        return STATUS_REDIRECTS.get(link.status, DEFAULT_DENIAL_REDIRECT)
    if reason in GEO_DENIALS:
        return GEO_REDIRECT
    return DEFAULT_DENIAL_REDIRECT


async def _get_link_or_404(repository: LinkRepositoryProtocol, uid: str) -> SurveyLink:
    link = await repository.get_link_by_uid(uid)
    if link is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Survey link not found",
        )
    return link


@router.post("/{uid}/access", response_model=AccessResponse)
async def request_access(
    uid: str,
    request: Request,
    engine: Annotated[AccessDecisionEngine, Depends(get_decision_engine)],
    repository: Annotated[LinkRepositoryProtocol, Depends(get_link_repository)],
    body: Annotated[Optional[AccessRequest], Body()] = None,
) -> AccessResponse:
    """
    Screen the respondent and decide whether they may enter the survey.

    On allow an unused link moves to CLICKED. A denial caused by screening
    (anything but an unknown or already used link) is persisted as a flag
    against the link; the link status is left alone.
    """
    context = build_request_context(request, uid, body)
    decision = await engine.decide(uid, context)
    security = decision.security_context

    if decision.allowed:
        link = await repository.get_link_by_uid(uid)
        if link is not None and link.status == LinkStatus.UNUSED:
            await repository.update_link_status(link.id, LinkStatus.CLICKED)
        return AccessResponse(
            allowed=True,
            threat_level=security.threat_level,
            flags=security.flags,
        )

    link = await repository.get_link_by_uid(uid) if decision.reason == DenialReason.LINK_ALREADY_USED else None
    if decision.reason not in LINK_DENIALS and decision.link_id:
        metadata = security.summary()
        metadata["ip_address"] = mask_ip(context.ip_address)
        metadata["user_agent"] = context.user_agent
        try:
            await repository.record_flag(decision.link_id, decision.reason.value, metadata)
        except Exception as e:
            logger.error("flag_record_failed", link_id=decision.link_id, reason=decision.reason.value, error=str(e))

    return AccessResponse(
        allowed=False,
        reason=decision.reason,
        redirect=denial_redirect(decision.reason, link),
        threat_level=security.threat_level,
        flags=security.flags,
    )


@router.get("/{uid}/status", response_model=LinkStatusResponse)
async def get_link_status(
    uid: str,
    repository: Annotated[LinkRepositoryProtocol, Depends(get_link_repository)],
) -> LinkStatusResponse:
    """Current status of a link and the page it should land on, if any."""
    link = await _get_link_or_404(repository, uid)
    return LinkStatusResponse(uid=uid, status=link.status, redirect=STATUS_REDIRECTS.get(link.status))


@router.post("/{uid}/flag", response_model=FlagResponse, status_code=status.HTTP_201_CREATED)
async def flag_link(
    uid: str,
    flag: FlagRequest,
    repository: Annotated[LinkRepositoryProtocol, Depends(get_link_repository)],
) -> FlagResponse:
    """Persist a manual flag and mark the link FLAGGED."""
    link = await _get_link_or_404(repository, uid)
    record = await repository.record_flag(link.id, flag.reason, flag.metadata)
    await repository.update_link_status(link.id, LinkStatus.FLAGGED)
    logger.info("link_flagged", link_id=link.id, reason=flag.reason)
    return FlagResponse(flag_id=record.id, status=LinkStatus.FLAGGED)


@router.post("/{uid}/status", response_model=LinkStatusResponse)
async def update_link_status(
    uid: str,
    update: StatusUpdateRequest,
    repository: Annotated[LinkRepositoryProtocol, Depends(get_link_repository)],
) -> LinkStatusResponse:
    """Record the survey outcome for a link."""
    link = await _get_link_or_404(repository, uid)
    await repository.update_link_status(link.id, update.status)
    logger.info("link_status_updated", link_id=link.id, old=link.status.value, new=update.status.value)
    return LinkStatusResponse(uid=uid, status=update.status, redirect=STATUS_REDIRECTS.get(update.status))

"""
Access decision engine.

Turns the aggregated SecurityContext plus the link and its project policy
into an allow/deny decision. Rules are evaluated in a fixed order and the
first matching rule decides, because the denial reason drives what the
respondent is shown.
"""

import asyncio
import json
import re
from typing import Any, Optional

import structlog

from core.config import settings
from core.exceptions import MalformedInputError
from core.logging import mask_ip
from models.screening import AccessDecision, DenialReason, RequestContext, SecurityContext, ThreatLevel
from models.survey_link import USED_STATUSES, ProjectPolicy, SurveyLink
from repositories.provider import LinkRepositoryProtocol
from services.fraud_detection import ScreeningService

logger = structlog.get_logger(__name__)

COUNTRY_CODE_RE = re.compile(r"^[A-Za-z]{2}$")


def parse_allowed_countries(raw: Any) -> list[str]:
    """
    Normalize a stored allowed-country list.

    Accepts a list of ISO codes, a JSON-encoded list, or a comma-separated
    string. An empty value means no restriction.

    Raises:
        MalformedInputError: The value cannot be read as a list of codes.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                raw = json.loads(text)
            except json.JSONDecodeError as e:
                raise MalformedInputError(f"allowed countries is not valid JSON: {e}") from e
        else:
            raw = [part for part in text.split(",") if part.strip()]
    if not isinstance(raw, (list, tuple, set, frozenset)):
        raise MalformedInputError(f"allowed countries has unsupported type {type(raw).__name__}")

    codes = []
    for item in raw:
        if not isinstance(item, str) or not COUNTRY_CODE_RE.match(item.strip()):
            raise MalformedInputError(f"invalid country code: {item!r}")
        codes.append(item.strip().upper())
    return codes


class AccessDecisionEngine:
    """Screen a request and decide whether it may open a survey link."""

    def __init__(
        self,
        repository: LinkRepositoryProtocol,
        screening: ScreeningService,
        geo_confidence_floor: Optional[int] = None,
        proxy_deny_confidence: Optional[int] = None,
        captcha_deny_score: Optional[float] = None,
    ):
        self.repository = repository
        self.screening = screening
        self.geo_confidence_floor = (
            geo_confidence_floor if geo_confidence_floor is not None else settings.GEO_CONFIDENCE_FLOOR
        )
        self.proxy_deny_confidence = (
            proxy_deny_confidence if proxy_deny_confidence is not None else settings.PROXY_DENY_CONFIDENCE
        )
        self.captcha_deny_score = captcha_deny_score if captcha_deny_score is not None else settings.CAPTCHA_DENY_SCORE

    def _geo_rule(self, policy: Optional[ProjectPolicy], security: SecurityContext) -> Optional[DenialReason]:
        try:
            allowed = parse_allowed_countries(policy.allowed_countries if policy else None)
        except MalformedInputError as e:
            logger.warning(
                "geo_restriction_unreadable",
                project_id=policy.project_id if policy else None,
                error=str(e),
            )
            return DenialReason.GEO_RESTRICTION_CHECK_FAILED
        if not allowed:
            return None

        geo = security.geo_location
        if geo is not None and geo.confidence >= self.geo_confidence_floor:
            if geo.country_code.upper() not in allowed:
                return DenialReason.GEO_RESTRICTED
            return None
        # Restriction active but the location is unknown or too uncertain to enforce
        return DenialReason.GEO_CONFIDENCE_TOO_LOW

    def apply_rules(
        self,
        link: Optional[SurveyLink],
        policy: Optional[ProjectPolicy],
        security: SecurityContext,
    ) -> Optional[DenialReason]:
        """First matching denial reason, or None to allow."""
        if link is None:
            return DenialReason.LINK_NOT_FOUND
        if link.status in USED_STATUSES:
            return DenialReason.LINK_ALREADY_USED

        geo_denial = self._geo_rule(policy, security)
        if geo_denial is not None:
            return geo_denial

        vpn = security.vpn_detection
        if vpn.is_tor:
            return DenialReason.TOR_DETECTED
        if vpn.is_vpn:
            return DenialReason.VPN_DETECTED
        if vpn.is_proxy and vpn.confidence > self.proxy_deny_confidence:
            return DenialReason.HIGH_RISK_PROXY_DETECTED
        if security.threat_level == ThreatLevel.CRITICAL:
            return DenialReason.CRITICAL_THREAT_LEVEL
        if security.captcha_score is not None and security.captcha_score < self.captcha_deny_score:
            return DenialReason.CAPTCHA_FAILED
        return None

    async def _load_link(self, link_uid: str, policy: Optional[ProjectPolicy]):
        link = await self.repository.get_link_by_uid(link_uid)
        if link is not None and policy is None:
            policy = await self.repository.get_project_policy(link.project_id)
        return link, policy

    async def decide(
        self,
        link_uid: str,
        context: RequestContext,
        policy: Optional[ProjectPolicy] = None,
    ) -> AccessDecision:
        """
        Screen ``context`` and decide access to the link.

        The link and policy are read while the signal providers run. Pass
        ``policy`` to skip the policy read.
        """
        (link, policy), security = await asyncio.gather(
            self._load_link(link_uid, policy),
            self.screening.screen(context),
        )

        reason = self.apply_rules(link, policy, security)
        decision = AccessDecision(
            allowed=reason is None,
            reason=reason,
            link_uid=link_uid,
            link_id=link.id if link else None,
            security_context=security,
        )
        logger.info(
            "access_decision",
            link_uid=link_uid,
            link_id=decision.link_id,
            allowed=decision.allowed,
            reason=reason.value if reason else None,
            threat_level=security.threat_level.value,
            threat_score=security.threat_score,
            flags=security.flags,
            ip=mask_ip(context.ip_address),
        )
        return decision

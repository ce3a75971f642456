"""
Email domain blacklist.

Flags disposable mailboxes, anonymizing mail services, known fraud domains
and machine-generated-looking domain names. Lists are owned by the checker
instance, so administration calls never leak across instances.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel, Field

from core.config import settings
from core.exceptions import ProviderUnavailableError
from models.screening import RequestContext, SignalKind, SignalResult
from services.result_cache import ResultCache
from services.signal_provider import BaseSignalProvider

logger = structlog.get_logger(__name__)


class DomainCategory(str, Enum):
    """Why a domain is blacklisted."""

    TEMPORARY_EMAIL = "temporary-email"
    VPN_SERVICE = "vpn-service"
    KNOWN_FRAUD = "known-fraud"
    SUSPICIOUS_PATTERN = "suspicious-pattern"


TEMP_EMAIL_DOMAINS = frozenset(
    {
        "10minutemail.com",
        "guerrillamail.com",
        "mailinator.com",
        "yopmail.com",
        "tempmail.org",
        "maildrop.cc",
        "throwaway.email",
        "temp-mail.org",
        "fakeinbox.com",
        "sharklasers.com",
        "grr.la",
        "guerrillamailblock.com",
        "pokemail.net",
        "spam4.me",
        "tempail.com",
        "tempmailaddress.com",
        "emailondeck.com",
        "mohmal.com",
        "mytrashmail.com",
        "armyspy.com",
        "cuvox.de",
        "dayrep.com",
        "fleckens.hu",
        "gustr.com",
        "jourrapide.com",
        "superrito.com",
        "teleworm.us",
        "rhyta.com",
        "einrot.com",
    }
)

VPN_EMAIL_DOMAINS = frozenset(
    {
        "protonmail.com",
        "tutanota.com",
        "guerrillamail.org",
        "secure-mail.biz",
        "anonymousemail.me",
        "hidemail.de",
        "mytemp.email",
        "tmpnator.live",
        "getnada.com",
        "temp-mail.io",
        "temporary-mail.net",
    }
)

KNOWN_FRAUD_DOMAINS = frozenset({"example-fraud.com", "fake-survey.net", "scam-emails.org"})


class DomainPattern(BaseModel):
    pattern: str
    reason: str
    confidence: int


SUSPICIOUS_PATTERNS = (
    DomainPattern(pattern=r"^[a-z]{1,3}\d+\.[a-z]{2,3}$", reason="Short domain with numbers pattern", confidence=70),
    DomainPattern(pattern=r"^\d+[a-z]+\.[a-z]{2,3}$", reason="Numbers followed by letters pattern", confidence=65),
    DomainPattern(pattern=r"^[a-z]+\d{3,}\.[a-z]{2,3}$", reason="Domain with many consecutive numbers", confidence=75),
    DomainPattern(pattern=r"^.{1,4}\.[a-z]{2}$", reason="Very short domain with 2-letter TLD", confidence=60),
)


class DomainCheckResult(BaseModel):
    """Verdict for one domain."""

    domain: str
    is_blacklisted: bool = False
    reason: Optional[str] = None
    category: Optional[DomainCategory] = None
    confidence: int = Field(default=0, ge=0, le=100)
    sources: list[str] = Field(default_factory=list)


class _Hit(BaseModel):
    category: DomainCategory
    reason: str
    confidence: int
    source: str


def extract_domain(email: str) -> str:
    """Everything after the last ``@``, lowercased. Bare domains pass through."""
    return email.rpartition("@")[2].strip().lower()


# =============================================================================
# Reputation checks
# =============================================================================


@runtime_checkable
class DomainReputationCheck(Protocol):
    """Pluggable reputation lookup. Returns human-readable indicators."""

    name: str

    async def evaluate(self, domain: str) -> list[str]: ...


class RegistrationAgeCheck:
    """Flag domains registered within the last ``min_age_days`` days, using RDAP."""

    name = "rdap_registration_age"

    def __init__(
        self,
        min_age_days: int = 30,
        url_template: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.min_age_days = min_age_days
        self.url_template = url_template or settings.RDAP_BASE_URL
        self._transport = transport

    async def evaluate(self, domain: str) -> list[str]:
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=settings.LOOKUP_HTTP_TIMEOUT_SECONDS,
                follow_redirects=True,
            ) as client:
                response = await client.get(self.url_template.format(domain=domain))
        except httpx.HTTPError as e:
            raise ProviderUnavailableError("rdap", str(e)) from e
        if response.status_code != 200:
            raise ProviderUnavailableError("rdap", f"status {response.status_code}")

        for event in response.json().get("events", []):
            if event.get("eventAction") != "registration":
                continue
            registered = datetime.fromisoformat(event["eventDate"].replace("Z", "+00:00"))
            age_days = (datetime.now(timezone.utc) - registered).days
            if age_days < self.min_age_days:
                return ["Domain registered very recently"]
        return []


# =============================================================================
# Checker
# =============================================================================


class DomainBlacklistChecker(BaseSignalProvider):
    """Check email domains against blocklists, patterns and reputation sources."""

    kind = SignalKind.DOMAIN

    REPUTATION_BASE_CONFIDENCE = 60
    REPUTATION_PER_INDICATOR = 15
    REPUTATION_MAX_CONFIDENCE = 90

    def __init__(
        self,
        cache: ResultCache,
        reputation_checks: Optional[list[DomainReputationCheck]] = None,
    ):
        self.cache = cache
        self.temp_email_domains = set(TEMP_EMAIL_DOMAINS)
        self.vpn_domains = set(VPN_EMAIL_DOMAINS)
        self.fraud_domains = set(KNOWN_FRAUD_DOMAINS)
        self.patterns = [(re.compile(p.pattern), p) for p in SUSPICIOUS_PATTERNS]
        if reputation_checks is None:
            reputation_checks = [RegistrationAgeCheck()] if settings.DOMAIN_RDAP_CHECK_ENABLED else []
        self.reputation_checks = reputation_checks

    async def check_domain(self, email: str) -> DomainCheckResult:
        """Check the domain of an email address (or a bare domain)."""
        domain = extract_domain(email)
        cached = await self.cache.get(SignalKind.DOMAIN, domain)
        if cached is not None:
            return cached

        result, complete = await self._perform_check(domain)
        # A failed reputation lookup is retried on the next check
        if complete:
            await self.cache.put(SignalKind.DOMAIN, domain, result)
        return result

    async def check_emails(self, emails: list[str]) -> dict[str, DomainCheckResult]:
        """Bulk check, keyed by the input address."""
        return {email: await self.check_domain(email) for email in emails}

    async def _perform_check(self, domain: str) -> tuple[DomainCheckResult, bool]:
        hits: list[_Hit] = []

        if domain in self.temp_email_domains:
            hits.append(
                _Hit(
                    category=DomainCategory.TEMPORARY_EMAIL,
                    reason="Known temporary email provider",
                    confidence=95,
                    source="temp-email-list",
                )
            )
        if domain in self.vpn_domains:
            hits.append(
                _Hit(
                    category=DomainCategory.VPN_SERVICE,
                    reason="Known VPN/proxy email service",
                    confidence=85,
                    source="vpn-domain-list",
                )
            )
        if domain in self.fraud_domains:
            hits.append(
                _Hit(
                    category=DomainCategory.KNOWN_FRAUD,
                    reason="Domain flagged for fraudulent activity",
                    confidence=100,
                    source="fraud-database",
                )
            )
        for regex, pattern in self.patterns:
            if regex.search(domain):
                hits.append(
                    _Hit(
                        category=DomainCategory.SUSPICIOUS_PATTERN,
                        reason=pattern.reason,
                        confidence=pattern.confidence,
                        source="pattern-analysis",
                    )
                )

        indicators, complete = await self._reputation_indicators(domain)
        if indicators:
            hits.append(
                _Hit(
                    category=DomainCategory.SUSPICIOUS_PATTERN,
                    reason=", ".join(indicators),
                    confidence=min(
                        self.REPUTATION_BASE_CONFIDENCE + self.REPUTATION_PER_INDICATOR * len(indicators),
                        self.REPUTATION_MAX_CONFIDENCE,
                    ),
                    source="reputation-check",
                )
            )

        if not hits:
            return DomainCheckResult(domain=domain, sources=["whitelist-check"]), complete

        # First hit wins ties
        primary = max(hits, key=lambda h: h.confidence)
        result = DomainCheckResult(
            domain=domain,
            is_blacklisted=True,
            reason=primary.reason,
            category=primary.category,
            confidence=primary.confidence,
            sources=[h.source for h in hits],
        )
        return result, complete

    async def _reputation_indicators(self, domain: str) -> tuple[list[str], bool]:
        """Indicators from every reputation check, and whether all of them answered."""
        indicators: list[str] = []
        complete = True
        for check in self.reputation_checks:
            try:
                indicators.extend(await check.evaluate(domain))
            except Exception as e:
                logger.warning("domain_reputation_check_failed", check=check.name, domain=domain, error=str(e))
                complete = False
        return indicators, complete

    # =========================================================================
    # Administration
    # =========================================================================

    async def add_to_blacklist(
        self,
        domain: str,
        reason: str,
        category: DomainCategory = DomainCategory.KNOWN_FRAUD,
    ) -> None:
        domain = domain.lower()
        if category == DomainCategory.TEMPORARY_EMAIL:
            self.temp_email_domains.add(domain)
        elif category == DomainCategory.VPN_SERVICE:
            self.vpn_domains.add(domain)
        else:
            self.fraud_domains.add(domain)
        await self.cache.delete(SignalKind.DOMAIN, domain)
        logger.info("domain_blacklisted", domain=domain, category=category.value, reason=reason)

    async def remove_from_blacklist(self, domain: str) -> bool:
        domain = domain.lower()
        removed = False
        for domains in (self.temp_email_domains, self.vpn_domains, self.fraud_domains):
            if domain in domains:
                domains.discard(domain)
                removed = True
        await self.cache.delete(SignalKind.DOMAIN, domain)
        if removed:
            logger.info("domain_unblacklisted", domain=domain)
        return removed

    def get_stats(self) -> dict[str, int]:
        return {
            "temp_email_domains": len(self.temp_email_domains),
            "vpn_domains": len(self.vpn_domains),
            "fraud_domains": len(self.fraud_domains),
            "suspicious_patterns": len(self.patterns),
            "reputation_checks": len(self.reputation_checks),
        }

    # =========================================================================
    # Signal
    # =========================================================================

    async def evaluate(self, context: RequestContext) -> SignalResult:
        emails = context.emails()
        if not emails:
            return self.skipped_result("no email address submitted")

        results = list((await self.check_emails(emails)).values())
        blacklisted = [r for r in results if r.is_blacklisted]
        if not blacklisted:
            return SignalResult(
                kind=self.kind,
                verdict=False,
                confidence=0,
                detail={"domains": [r.model_dump(mode="json") for r in results]},
            )

        worst = max(blacklisted, key=lambda r: r.confidence)
        evidence = ["BLACKLISTED_DOMAIN"]
        evidence.extend(
            f"DOMAIN_{r.category.value.upper().replace('-', '_')}" for r in blacklisted if r.category is not None
        )
        return SignalResult(
            kind=self.kind,
            verdict=True,
            confidence=worst.confidence,
            evidence=list(dict.fromkeys(evidence)),
            detail={"domains": [r.model_dump(mode="json") for r in results]},
        )

"""
Fraud screening orchestration.

Runs every signal provider concurrently for one request, each under its own
timeout, and folds the results into a SecurityContext. A provider that
times out or raises is replaced by its neutral result, so one unavailable
lookup never aborts the evaluation.

The component graph (cache, detectors, lookup clients) is built once per
process by ``build_components`` and owned by the application state; tests
build their own.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from core.config import settings
from core.exceptions import ConfigurationError
from core.logging import mask_ip
from models.screening import RequestContext, SecurityContext, SignalKind, SignalResult
from services.ai_text_detection import AIGenerationDetector
from services.challenge_service import ChallengeVerifier, SiteVerifyCaptchaVerifier
from services.device_fingerprint import DeviceFingerprinter
from services.domain_blacklist import DomainBlacklistChecker
from services.flatline_detection import FlatlineAnalyzer
from services.geo_detection import GeoLocationDetector, default_sources
from services.honeypot_service import HoneypotValidator
from services.ip_intelligence import AbuseIPDBClient, IPInfoClient, TorExitNodeList
from services.result_cache import InMemoryResultCache, ResultCache
from services.signal_aggregator import aggregate
from services.signal_provider import SignalProvider
from services.vpn_detection import VPNDetector, default_checks

logger = structlog.get_logger(__name__)


# =============================================================================
# Orchestrator
# =============================================================================


class ScreeningService:
    """Fan out a request to the signal providers and aggregate the results."""

    def __init__(self, providers: Iterable[SignalProvider], timeout: Optional[float] = None):
        self.providers = list(providers)
        self.timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS

    def provider(self, kind: SignalKind) -> Optional[SignalProvider]:
        return next((p for p in self.providers if p.kind == kind), None)

    async def _run(self, provider: SignalProvider, context: RequestContext) -> SignalResult:
        try:
            return await asyncio.wait_for(provider.evaluate(context), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("signal_provider_timeout", kind=provider.kind.value, ip=mask_ip(context.ip_address))
            return provider.neutral_result("timeout")
        except Exception as e:
            logger.warning(
                "signal_provider_failed",
                kind=provider.kind.value,
                ip=mask_ip(context.ip_address),
                error=str(e),
            )
            return provider.neutral_result(str(e))

    async def collect(
        self,
        context: RequestContext,
        kinds: Optional[set[SignalKind]] = None,
    ) -> list[SignalResult]:
        """Evaluate the providers (optionally only ``kinds``) concurrently."""
        selected = [p for p in self.providers if kinds is None or p.kind in kinds]
        return list(await asyncio.gather(*(self._run(p, context) for p in selected)))

    @staticmethod
    def captcha_score(results: Iterable[SignalResult]) -> Optional[float]:
        """Score of a challenge or captcha token, when the request carried one."""
        for result in results:
            if result.kind == SignalKind.CHALLENGE and not result.failed and "score" in result.detail:
                return float(result.detail["score"])
        return None

    async def screen(
        self,
        context: RequestContext,
        kinds: Optional[set[SignalKind]] = None,
    ) -> SecurityContext:
        """Run the providers and aggregate their results into a SecurityContext."""
        results = await self.collect(context, kinds)
        security = aggregate(results, context.authenticated, self.captcha_score(results))
        logger.debug(
            "screening_complete",
            ip=mask_ip(context.ip_address),
            threat_level=security.threat_level.value,
            threat_score=security.threat_score,
            flags=security.flags,
        )
        return security


# =============================================================================
# Component graph
# =============================================================================


@dataclass
class ScreeningComponents:
    """Every stateful piece of the screening core for one process."""

    cache: ResultCache
    tor_exit_nodes: TorExitNodeList
    vpn: VPNDetector
    geo: GeoLocationDetector
    domains: DomainBlacklistChecker
    honeypots: HoneypotValidator
    flatline: FlatlineAnalyzer
    ai_text: AIGenerationDetector
    challenges: ChallengeVerifier
    fingerprints: DeviceFingerprinter
    screening: ScreeningService = field(init=False)

    def __post_init__(self) -> None:
        self.screening = ScreeningService(
            [
                self.vpn,
                self.geo,
                self.domains,
                self.honeypots,
                self.flatline,
                self.ai_text,
                self.challenges,
                self.fingerprints,
            ]
        )


def build_components(cache: Optional[ResultCache] = None) -> ScreeningComponents:
    """
    Wire the default detectors and lookup clients from settings.

    Raises:
        ConfigurationError: A captcha siteverify URL is set without its secret.
    """
    if settings.CAPTCHA_VERIFY_URL and not settings.CAPTCHA_SECRET_KEY:
        raise ConfigurationError("CAPTCHA_SECRET_KEY must be set when CAPTCHA_VERIFY_URL is configured")
    cache = cache if cache is not None else InMemoryResultCache()
    tor_exit_nodes = TorExitNodeList()
    abuse_client = AbuseIPDBClient()
    ipinfo = IPInfoClient() if settings.IPINFO_TOKEN else None
    captcha_verifier = SiteVerifyCaptchaVerifier()

    return ScreeningComponents(
        cache=cache,
        tor_exit_nodes=tor_exit_nodes,
        vpn=VPNDetector(
            cache,
            checks=default_checks(tor_exit_nodes, abuse_client),
            ipinfo=ipinfo,
        ),
        geo=GeoLocationDetector(cache, sources=default_sources()),
        domains=DomainBlacklistChecker(cache),
        honeypots=HoneypotValidator(cache),
        flatline=FlatlineAnalyzer(),
        ai_text=AIGenerationDetector(),
        challenges=ChallengeVerifier(cache, token_verifier=captcha_verifier if captcha_verifier.is_configured else None),
        fingerprints=DeviceFingerprinter(cache),
    )

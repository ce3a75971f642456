"""
VPN, proxy, Tor and hosting detection.

The detector runs a battery of independent sub-checks against an IP. Each
sub-check answers ``suspicious / confidence`` and, when suspicious, adds a
fixed number of points to one or more of four scores (vpn, proxy, hosting,
tor). Verdicts are score thresholds.

Sub-checks are pluggable: anything with a ``name``, a ``contribution`` and an
async ``evaluate(ip, profile)`` can be passed to VPNDetector.
"""

import asyncio
import contextlib
import ipaddress
from typing import Any, Optional, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from core.config import settings
from core.exceptions import ProviderUnavailableError
from core.logging import mask_ip
from models.screening import RequestContext, SignalKind, SignalResult, ThreatLevel, VPNDetection
from services.ip_intelligence import (
    AbuseIPDBClient,
    IPInfoClient,
    IPProfile,
    TorExitNodeList,
    reverse_dns,
)
from services.result_cache import ResultCache
from services.signal_provider import BaseSignalProvider

logger = structlog.get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================


class VPNConfig:
    """VPN detection thresholds and reference lists."""

    VPN_THRESHOLD = 50
    PROXY_THRESHOLD = 40
    TOR_THRESHOLD = 80
    HOSTING_THRESHOLD = 60
    RELAY_THRESHOLD = 40

    HIGH_RISK_CONFIDENCE = 80
    MEDIUM_RISK_CONFIDENCE = 50

    VPN_PROVIDERS = (
        "nordvpn",
        "expressvpn",
        "surfshark",
        "cyberghost",
        "privateinternetaccess",
        "protonvpn",
        "windscribe",
        "tunnelbear",
        "ipvanish",
        "purevpn",
        "hidemyass",
        "vypr",
        "strongvpn",
        "mullvad",
        "opera vpn",
        "amazon aws",
        "google cloud",
        "microsoft azure",
        "digitalocean",
        "vultr",
        "linode",
        "ovh",
        "hetzner",
        "scaleway",
    )

    HOSTING_KEYWORDS = (
        "hosting",
        "server",
        "cloud",
        "datacenter",
        "data center",
        "virtual",
        "vps",
        "dedicated",
        "colocation",
        "colo",
        "amazon",
        "google",
        "microsoft",
        "digital ocean",
    )

    # PTR hostnames of anonymizer endpoints tend to carry these
    REVERSE_DNS_KEYWORDS = ("vpn", "proxy", "tor-exit", "torexit", "anon", "relay", "exit")

    SUSPICIOUS_RANGES = (
        "5.2.0.0/16",
        "31.31.0.0/16",
        "46.246.0.0/16",
        "185.159.0.0/16",
    )

    # Major cloud blocks (sample; production should load a provider feed)
    DATACENTER_RANGES = (
        # AWS
        "3.0.0.0/8",
        "52.0.0.0/8",
        # Google Cloud
        "35.0.0.0/8",
        # Azure
        "40.0.0.0/8",
        # DigitalOcean
        "104.131.0.0/16",
        "167.99.0.0/16",
        # Linode
        "45.33.0.0/16",
        # Vultr
        "45.32.0.0/16",
    )

    VPN_PORTS = (1194, 443, 80, 8080, 3128, 1080, 9050)
    # Ports that are unusual on a residential address
    PROXY_PORTS = (1194, 8080, 3128, 1080, 9050)
    PORT_PROBE_TIMEOUT_SECONDS = 0.5

    ABUSE_CONFIDENCE_THRESHOLD = settings.ABUSEIPDB_MIN_CONFIDENCE
    ABUSE_REPORT_THRESHOLD = 10


# =============================================================================
# Sub-check contract
# =============================================================================


class ScoreContribution(BaseModel):
    """Points a suspicious sub-check adds to each score."""

    vpn: int = 0
    proxy: int = 0
    hosting: int = 0
    tor: int = 0


class CheckOutcome(BaseModel):
    """Answer of one sub-check."""

    suspicious: bool = False
    confidence: int = Field(default=0, ge=0, le=100)
    detail: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class IPCheck(Protocol):
    """A pluggable VPN sub-check."""

    name: str
    contribution: ScoreContribution

    async def evaluate(self, ip: str, profile: Optional[IPProfile] = None) -> CheckOutcome: ...


def _matches(text: Optional[str], keywords: tuple[str, ...]) -> Optional[str]:
    if not text:
        return None
    lowered = text.lower()
    for keyword in keywords:
        if keyword in lowered:
            return keyword
    return None


def _networks(ranges: tuple[str, ...]) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    return [ipaddress.ip_network(r, strict=False) for r in ranges]


# =============================================================================
# Sub-checks
# =============================================================================


class KnownRangeCheck:
    """Membership in address ranges operated by VPN providers."""

    name = "ip_range_analysis"
    contribution = ScoreContribution(vpn=30)

    def __init__(self, ranges: tuple[str, ...] = VPNConfig.SUSPICIOUS_RANGES):
        self._ranges = _networks(ranges)

    async def evaluate(self, ip: str, profile: Optional[IPProfile] = None) -> CheckOutcome:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return CheckOutcome()
        for network in self._ranges:
            if address.version == network.version and address in network:
                return CheckOutcome(suspicious=True, confidence=80, detail={"ipRange": str(network)})
        return CheckOutcome()


class ReverseDNSCheck:
    """PTR hostname mentions a VPN brand or anonymizer keyword."""

    name = "reverse_dns"
    contribution = ScoreContribution(vpn=25)

    def __init__(self, resolve: bool = True):
        self.resolve = resolve

    async def evaluate(self, ip: str, profile: Optional[IPProfile] = None) -> CheckOutcome:
        hostname = profile.hostname if profile else None
        if hostname is None and self.resolve:
            hostname = await reverse_dns(ip)
        keyword = _matches(hostname, VPNConfig.VPN_PROVIDERS + VPNConfig.REVERSE_DNS_KEYWORDS)
        if keyword:
            return CheckOutcome(suspicious=True, confidence=70, detail={"reverseDns": hostname})
        return CheckOutcome(detail={"reverseDns": hostname} if hostname else {})


class ASNCheck:
    """Announcing organization is a VPN brand or flagged as VPN by the provider."""

    name = "asn_analysis"
    contribution = ScoreContribution(vpn=20, hosting=30)

    async def evaluate(self, ip: str, profile: Optional[IPProfile] = None) -> CheckOutcome:
        if profile is None:
            return CheckOutcome()
        keyword = _matches(profile.org, VPNConfig.VPN_PROVIDERS)
        if keyword or profile.privacy.vpn:
            return CheckOutcome(
                suspicious=True,
                confidence=75,
                detail={"asn": profile.asn, "organization": profile.org},
            )
        return CheckOutcome(detail={"asn": profile.asn, "organization": profile.org})


class HostingProviderCheck:
    """Address belongs to a hosting or cloud provider."""

    name = "hosting_detection"
    contribution = ScoreContribution(hosting=40)

    def __init__(self, ranges: tuple[str, ...] = VPNConfig.DATACENTER_RANGES):
        self._ranges = _networks(ranges)

    async def evaluate(self, ip: str, profile: Optional[IPProfile] = None) -> CheckOutcome:
        if profile is not None:
            keyword = _matches(profile.org, VPNConfig.HOSTING_KEYWORDS)
            if keyword or profile.privacy.hosting:
                return CheckOutcome(suspicious=True, confidence=80, detail={"hostingProvider": profile.org})
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return CheckOutcome()
        for network in self._ranges:
            if address.version == network.version and address in network:
                return CheckOutcome(suspicious=True, confidence=70, detail={"hostingProvider": str(network)})
        return CheckOutcome()


class TorExitCheck:
    """Address is a published Tor exit node."""

    name = "tor_detection"
    contribution = ScoreContribution(tor=100)

    def __init__(self, exit_nodes: TorExitNodeList):
        self.exit_nodes = exit_nodes

    async def evaluate(self, ip: str, profile: Optional[IPProfile] = None) -> CheckOutcome:
        if ip in self.exit_nodes or (profile is not None and profile.privacy.tor):
            return CheckOutcome(suspicious=True, confidence=100)
        return CheckOutcome()


class BlacklistCheck:
    """Address is on a local blocklist or has a bad AbuseIPDB record."""

    name = "blacklist_check"
    contribution = ScoreContribution(vpn=35, proxy=35)

    def __init__(self, abuse_client: Optional[AbuseIPDBClient] = None, blocked: Optional[set[str]] = None):
        self.abuse_client = abuse_client
        self.blocked = set(blocked or ())

    async def evaluate(self, ip: str, profile: Optional[IPProfile] = None) -> CheckOutcome:
        if ip in self.blocked:
            return CheckOutcome(suspicious=True, confidence=100, detail={"blacklist": "local"})
        if profile is not None and profile.privacy.proxy:
            return CheckOutcome(suspicious=True, confidence=80, detail={"blacklist": "provider_proxy_flag"})
        if self.abuse_client is None or not self.abuse_client.is_configured:
            return CheckOutcome()

        report = await self.abuse_client.check(ip)
        if report.is_whitelisted:
            return CheckOutcome()
        if (
            report.abuse_confidence_score >= VPNConfig.ABUSE_CONFIDENCE_THRESHOLD
            or report.total_reports > VPNConfig.ABUSE_REPORT_THRESHOLD
        ):
            return CheckOutcome(
                suspicious=True,
                confidence=min(max(report.abuse_confidence_score, 50), 100),
                detail={"blacklist": "abuseipdb", "abuseReports": report.total_reports},
            )
        return CheckOutcome()


class OpenPortCheck:
    """Proxy or tunnel ports accept connections on the client address."""

    name = "port_analysis"
    contribution = ScoreContribution(vpn=10, proxy=15)

    def __init__(self, ports: tuple[int, ...] = VPNConfig.PROXY_PORTS, timeout: float = VPNConfig.PORT_PROBE_TIMEOUT_SECONDS):
        self.ports = ports
        self.timeout = timeout

    async def _is_open(self, ip: str, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout=self.timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        # The port answered; a reset while closing does not change that
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True

    async def evaluate(self, ip: str, profile: Optional[IPProfile] = None) -> CheckOutcome:
        results = await asyncio.gather(*(self._is_open(ip, port) for port in self.ports))
        open_ports = [port for port, is_open in zip(self.ports, results) if is_open]
        if open_ports:
            return CheckOutcome(suspicious=True, confidence=60, detail={"openPorts": open_ports})
        return CheckOutcome()


def default_checks(
    exit_nodes: Optional[TorExitNodeList] = None,
    abuse_client: Optional[AbuseIPDBClient] = None,
) -> list[IPCheck]:
    """The production sub-check battery."""
    checks: list[IPCheck] = [
        KnownRangeCheck(),
        ReverseDNSCheck(),
        ASNCheck(),
        HostingProviderCheck(),
        TorExitCheck(exit_nodes if exit_nodes is not None else TorExitNodeList()),
        BlacklistCheck(abuse_client if abuse_client is not None else AbuseIPDBClient()),
    ]
    if settings.VPN_PORT_PROBE_ENABLED:
        checks.append(OpenPortCheck())
    return checks


# =============================================================================
# Detector
# =============================================================================


def classify(
    vpn_score: int,
    proxy_score: int,
    hosting_score: int,
    tor_score: int,
    config: type[VPNConfig] = VPNConfig,
) -> VPNDetection:
    """Turn raw scores into verdicts, confidence and a risk tier."""
    is_vpn = vpn_score >= config.VPN_THRESHOLD
    is_proxy = proxy_score >= config.PROXY_THRESHOLD
    is_tor = tor_score >= config.TOR_THRESHOLD
    is_hosting = hosting_score >= config.HOSTING_THRESHOLD
    is_relay = vpn_score + proxy_score >= config.RELAY_THRESHOLD
    confidence = max(0, min(100, vpn_score + proxy_score + hosting_score))

    if is_tor or (is_vpn and confidence > config.HIGH_RISK_CONFIDENCE):
        risk = ThreatLevel.HIGH
    elif (is_vpn or is_proxy) and confidence > config.MEDIUM_RISK_CONFIDENCE:
        risk = ThreatLevel.MEDIUM
    else:
        risk = ThreatLevel.LOW

    return VPNDetection(
        is_vpn=is_vpn,
        is_proxy=is_proxy,
        is_tor=is_tor,
        is_hosting=is_hosting,
        is_relay=is_relay,
        confidence=confidence,
        risk_level=risk,
        vpn_score=vpn_score,
        proxy_score=proxy_score,
        hosting_score=hosting_score,
        tor_score=tor_score,
    )


class VPNDetector(BaseSignalProvider):
    """Run the sub-check battery for an IP and cache the verdict."""

    kind = SignalKind.VPN

    def __init__(
        self,
        cache: ResultCache,
        checks: Optional[list[IPCheck]] = None,
        ipinfo: Optional[IPInfoClient] = None,
        config: type[VPNConfig] = VPNConfig,
    ):
        self.cache = cache
        self.checks = checks if checks is not None else default_checks()
        self.ipinfo = ipinfo
        self.config = config

    async def _profile(self, ip: str) -> Optional[IPProfile]:
        if self.ipinfo is None:
            return None
        try:
            return await self.ipinfo.lookup(ip)
        except ProviderUnavailableError as e:
            logger.warning("ipinfo_query_failed", ip=mask_ip(ip), error=str(e))
            return None

    async def _run_check(self, check: IPCheck, ip: str, profile: Optional[IPProfile]) -> Optional[CheckOutcome]:
        try:
            return await check.evaluate(ip, profile)
        except Exception as e:
            logger.warning("vpn_subcheck_failed", check=check.name, ip=mask_ip(ip), error=str(e))
            return None

    async def detect(self, ip: str) -> VPNDetection:
        """
        Score an IP.

        Returns the cached detection when one is younger than the VPN TTL.
        A failing sub-check contributes nothing.
        """
        cached = await self.cache.get(SignalKind.VPN, ip)
        if cached is not None:
            return cached

        profile = await self._profile(ip)
        outcomes = await asyncio.gather(*(self._run_check(check, ip, profile) for check in self.checks))

        vpn = proxy = hosting = tor = 0
        methods: list[str] = []
        details: dict[str, Any] = {}
        for check, outcome in zip(self.checks, outcomes):
            if outcome is None:
                continue
            details.update({k: v for k, v in outcome.detail.items() if v is not None})
            if not outcome.suspicious:
                continue
            methods.append(check.name)
            vpn += check.contribution.vpn
            proxy += check.contribution.proxy
            hosting += check.contribution.hosting
            tor += check.contribution.tor

        detection = classify(vpn, proxy, hosting, tor, self.config)
        detection.methods = methods
        detection.details = details

        await self.cache.put(SignalKind.VPN, ip, detection)
        logger.debug(
            "vpn_detection_complete",
            ip=mask_ip(ip),
            confidence=detection.confidence,
            risk=detection.risk_level.value,
            methods=methods,
        )
        return detection

    @staticmethod
    def flags_for(detection: VPNDetection) -> list[str]:
        flags = []
        if detection.is_vpn:
            flags.append("VPN_DETECTED")
        if detection.is_proxy:
            flags.append("PROXY_DETECTED")
        if detection.is_tor:
            flags.append("TOR_DETECTED")
        if detection.is_hosting:
            flags.append("HOSTING_DETECTED")
        if detection.confidence > VPNConfig.HIGH_RISK_CONFIDENCE:
            flags.append("HIGH_VPN_CONFIDENCE")
        return flags

    async def evaluate(self, context: RequestContext) -> SignalResult:
        detection = await self.detect(context.ip_address)
        return SignalResult(
            kind=self.kind,
            verdict=detection.risk_level.value,
            confidence=detection.confidence,
            evidence=self.flags_for(detection),
            detail=detection.model_dump(mode="json"),
        )

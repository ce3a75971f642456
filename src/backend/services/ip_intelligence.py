"""
IP intelligence lookups.

Thin async clients over external IP data sources. They raise
ProviderUnavailableError on any transport or response problem; callers
decide how to degrade.
"""

import asyncio
import ipaddress
import socket
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from core.config import settings
from core.exceptions import ProviderUnavailableError
from core.logging import mask_ip

logger = structlog.get_logger(__name__)


# =============================================================================
# Schemas
# =============================================================================


class PrivacyFlags(BaseModel):
    """Anonymizer flags reported by providers that have them."""

    vpn: bool = False
    proxy: bool = False
    tor: bool = False
    relay: bool = False
    hosting: bool = False


class IPProfile(BaseModel):
    """What we know about an IP from ipinfo-style metadata."""

    ip: str
    hostname: Optional[str] = None
    org: Optional[str] = None
    asn: Optional[str] = None
    country_code: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    privacy: PrivacyFlags = Field(default_factory=PrivacyFlags)


class AbuseReport(BaseModel):
    """AbuseIPDB check response (subset)."""

    abuse_confidence_score: int = 0
    total_reports: int = 0
    is_whitelisted: bool = False


def parse_location(loc: Optional[str]) -> tuple[Optional[float], Optional[float]]:
    """Parse an ipinfo ``"lat,lon"`` string."""
    if not loc or "," not in loc:
        return None, None
    lat, _, lon = loc.partition(",")
    try:
        return float(lat), float(lon)
    except ValueError:
        return None, None


def is_public_ip(ip: str) -> bool:
    """True for globally routable addresses."""
    try:
        return ipaddress.ip_address(ip).is_global
    except ValueError:
        return False


# =============================================================================
# ipinfo.io
# =============================================================================


class IPInfoClient:
    """Query ipinfo.io for IP metadata (organization, hostname, privacy flags)."""

    def __init__(
        self,
        token: Optional[str] = None,
        url_template: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token if token is not None else settings.IPINFO_TOKEN
        self.url_template = url_template or settings.GEO_IPINFO_URL
        self.timeout = timeout if timeout is not None else settings.LOOKUP_HTTP_TIMEOUT_SECONDS
        self._transport = transport

    async def fetch(self, ip: str) -> dict:
        """Raw ipinfo JSON for an IP."""
        params = {"token": self.token} if self.token else None
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.get(self.url_template.format(ip=ip), params=params)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError("ipinfo", str(e)) from e

        if response.status_code != 200:
            raise ProviderUnavailableError("ipinfo", f"status {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailableError("ipinfo", "invalid JSON") from e
        if not isinstance(data, dict) or data.get("bogon"):
            raise ProviderUnavailableError("ipinfo", "no data for address")
        return data

    async def lookup(self, ip: str) -> IPProfile:
        data = await self.fetch(ip)
        org = data.get("org")
        asn = None
        if org and org.startswith("AS"):
            asn, _, org = org.partition(" ")
        lat, lon = parse_location(data.get("loc"))
        privacy = data.get("privacy") or {}

        return IPProfile(
            ip=ip,
            hostname=data.get("hostname"),
            org=org or None,
            asn=asn,
            country_code=data.get("country"),
            region=data.get("region"),
            city=data.get("city"),
            latitude=lat,
            longitude=lon,
            timezone=data.get("timezone"),
            privacy=PrivacyFlags(
                vpn=bool(privacy.get("vpn", False)),
                proxy=bool(privacy.get("proxy", False)),
                tor=bool(privacy.get("tor", False)),
                relay=bool(privacy.get("relay", False)),
                hosting=bool(privacy.get("hosting", False)),
            ),
        )


# =============================================================================
# AbuseIPDB
# =============================================================================


class AbuseIPDBClient:
    """Query AbuseIPDB for abuse reports."""

    CHECK_URL = "https://api.abuseipdb.com/api/v2/check"

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.ABUSEIPDB_KEY
        self.timeout = timeout if timeout is not None else settings.LOOKUP_HTTP_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def check(self, ip: str) -> AbuseReport:
        if not self.api_key:
            raise ProviderUnavailableError("abuseipdb", "no API key configured")
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.get(
                    self.CHECK_URL,
                    params={"ipAddress": ip, "maxAgeInDays": 90},
                    headers={"Key": str(self.api_key), "Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError("abuseipdb", str(e)) from e

        if response.status_code != 200:
            raise ProviderUnavailableError("abuseipdb", f"status {response.status_code}")
        data = response.json().get("data", {})
        return AbuseReport(
            abuse_confidence_score=data.get("abuseConfidenceScore", 0),
            total_reports=data.get("totalReports", 0),
            is_whitelisted=bool(data.get("isWhitelisted", False)),
        )


# =============================================================================
# Tor exit nodes
# =============================================================================


class TorExitNodeList:
    """
    Set of known Tor exit addresses.

    Loaded from the Tor Project bulk exit list and refreshed on a schedule by
    the background scheduler. Membership checks are local.
    """

    def __init__(
        self,
        nodes: Optional[set[str]] = None,
        url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._nodes: frozenset[str] = frozenset(nodes or ())
        self.url = url or settings.TOR_EXIT_LIST_URL
        self._transport = transport

    def __contains__(self, ip: object) -> bool:
        return ip in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def replace(self, nodes: set[str]) -> None:
        self._nodes = frozenset(nodes)

    async def refresh(self) -> int:
        """Download the exit list. Keeps the previous set if the download fails."""
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=settings.LOOKUP_HTTP_TIMEOUT_SECONDS
            ) as client:
                response = await client.get(self.url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("tor_exit_list_refresh_failed", error=str(e), kept=len(self._nodes))
            return len(self._nodes)

        nodes = set()
        for line in response.text.splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                try:
                    nodes.add(str(ipaddress.ip_address(line)))
                except ValueError:
                    continue
        self.replace(nodes)
        logger.info("tor_exit_list_refreshed", count=len(nodes))
        return len(nodes)


async def reverse_dns(ip: str) -> Optional[str]:
    """Resolve the PTR hostname of an IP without blocking the event loop."""
    loop = asyncio.get_running_loop()
    try:
        hostname, _, _ = await loop.run_in_executor(None, socket.gethostbyaddr, ip)
    except (socket.herror, socket.gaierror, OSError) as e:
        logger.debug("reverse_dns_failed", ip=mask_ip(ip), error=str(e))
        return None
    return hostname

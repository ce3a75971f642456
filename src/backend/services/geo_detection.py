"""
Multi-source IP geolocation.

Several independent geolocation services are queried concurrently, each
with its own trust weight and timeout. Answers are merged into one
GeoLocation whose confidence reflects how much the sources agree.
"""

import asyncio
import math
from typing import Any, Optional, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel, Field

from core.config import settings
from core.exceptions import ProviderUnavailableError
from core.logging import mask_ip
from models.screening import AccuracyTier, GeoLocation, RequestContext, SignalKind, SignalResult
from services.ip_intelligence import IPInfoClient, parse_location
from services.result_cache import ResultCache
from services.signal_provider import BaseSignalProvider

logger = structlog.get_logger(__name__)


class GeoConfig:
    """Geolocation combination constants."""

    AGREEMENT_BOOST = 15
    MAX_CONFIDENCE = 95
    MIN_CONFIDENCE = 30
    NO_DATA_CONFIDENCE = 30

    LOW_CONFIDENCE_FLAG = 50

    HIGH_ACCURACY_AVG = 2.5
    MEDIUM_ACCURACY_AVG = 1.5


ACCURACY_SCORES = {AccuracyTier.HIGH: 3, AccuracyTier.MEDIUM: 2, AccuracyTier.LOW: 1}

COUNTRY_NAMES = {
    "US": "United States",
    "CA": "Canada",
    "GB": "United Kingdom",
    "DE": "Germany",
    "FR": "France",
    "JP": "Japan",
    "AU": "Australia",
    "BR": "Brazil",
    "IN": "India",
    "CN": "China",
    "RU": "Russia",
    "MX": "Mexico",
    "IT": "Italy",
    "ES": "Spain",
    "NL": "Netherlands",
    "SE": "Sweden",
    "NO": "Norway",
    "DK": "Denmark",
    "FI": "Finland",
    "CH": "Switzerland",
    "AT": "Austria",
    "BE": "Belgium",
    "PL": "Poland",
    "CZ": "Czech Republic",
    "HU": "Hungary",
    "PT": "Portugal",
    "GR": "Greece",
    "TR": "Turkey",
    "IL": "Israel",
    "SA": "Saudi Arabia",
    "AE": "United Arab Emirates",
    "EG": "Egypt",
    "ZA": "South Africa",
    "NG": "Nigeria",
    "KE": "Kenya",
    "MA": "Morocco",
    "TH": "Thailand",
    "VN": "Vietnam",
    "SG": "Singapore",
    "MY": "Malaysia",
    "ID": "Indonesia",
    "PH": "Philippines",
    "KR": "South Korea",
    "TW": "Taiwan",
    "HK": "Hong Kong",
    "NZ": "New Zealand",
}


def country_name(code: Optional[str]) -> str:
    if not code:
        return "Unknown"
    return COUNTRY_NAMES.get(code.upper(), code.upper())


def is_country_restricted(country_code: str, allowed_countries: list[str]) -> bool:
    """True when an allow-list is active and the country is not on it."""
    if not allowed_countries:
        return False
    return country_code.upper() not in allowed_countries


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# =============================================================================
# Sources
# =============================================================================


class GeoSourceResult(BaseModel):
    """One source's answer."""

    source: str
    country: Optional[str] = None
    country_code: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    isp: Optional[str] = None
    accuracy: AccuracyTier = AccuracyTier.LOW
    confidence: int = Field(default=0, ge=0, le=100)


@runtime_checkable
class GeoSource(Protocol):
    """A geolocation service."""

    name: str
    weight: int

    async def lookup(self, ip: str) -> Optional[GeoSourceResult]: ...


class HttpGeoSource:
    """Base for JSON-over-HTTP geolocation services."""

    name = "http"
    weight = 1
    accuracy = AccuracyTier.LOW
    confidence = 60

    def __init__(self, url_template: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url_template = url_template
        self._transport = transport

    async def _get_json(self, ip: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=settings.GEO_SOURCE_TIMEOUT_SECONDS
            ) as client:
                response = await client.get(self.url_template.format(ip=ip), params=params)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.name, str(e)) from e
        if response.status_code != 200:
            raise ProviderUnavailableError(self.name, f"status {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailableError(self.name, "invalid JSON") from e

    async def lookup(self, ip: str) -> Optional[GeoSourceResult]:
        raise NotImplementedError


class IpApiSource(HttpGeoSource):
    """ip-api.com (free tier, HTTP only)."""

    name = "ip-api"
    weight = 3
    accuracy = AccuracyTier.MEDIUM
    confidence = 75

    FIELDS = "status,message,country,countryCode,region,regionName,city,lat,lon,timezone,isp,org,as,proxy,hosting"

    def __init__(self, url_template: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(url_template or settings.GEO_IP_API_URL, transport)

    async def lookup(self, ip: str) -> Optional[GeoSourceResult]:
        data = await self._get_json(ip, params={"fields": self.FIELDS})
        if data.get("status") != "success":
            logger.debug("geo_source_no_data", source=self.name, message=data.get("message"))
            return None
        return GeoSourceResult(
            source=self.name,
            country=data.get("country"),
            country_code=data.get("countryCode"),
            region=data.get("regionName"),
            city=data.get("city"),
            latitude=data.get("lat"),
            longitude=data.get("lon"),
            timezone=data.get("timezone"),
            isp=data.get("isp"),
            accuracy=self.accuracy,
            confidence=self.confidence,
        )


class IpInfoGeoSource:
    """ipinfo.io, through the shared IPInfoClient."""

    name = "ipinfo"
    weight = 2
    accuracy = AccuracyTier.MEDIUM
    confidence = 70

    def __init__(self, client: Optional[IPInfoClient] = None):
        self.client = client or IPInfoClient()

    async def lookup(self, ip: str) -> Optional[GeoSourceResult]:
        data = await self.client.fetch(ip)
        if not data.get("country"):
            return None
        lat, lon = parse_location(data.get("loc"))
        return GeoSourceResult(
            source=self.name,
            country=country_name(data["country"]),
            country_code=data["country"],
            region=data.get("region"),
            city=data.get("city"),
            latitude=lat,
            longitude=lon,
            timezone=data.get("timezone"),
            isp=data.get("org"),
            accuracy=self.accuracy,
            confidence=self.confidence,
        )


class FreeGeoIpSource(HttpGeoSource):
    """freegeoip.app."""

    name = "freegeoip"
    weight = 1
    accuracy = AccuracyTier.LOW
    confidence = 60

    def __init__(self, url_template: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(url_template or settings.GEO_FREEGEOIP_URL, transport)

    async def lookup(self, ip: str) -> Optional[GeoSourceResult]:
        data = await self._get_json(ip)
        if not data.get("country_code"):
            return None
        return GeoSourceResult(
            source=self.name,
            country=data.get("country_name"),
            country_code=data.get("country_code"),
            region=data.get("region_name"),
            city=data.get("city"),
            latitude=data.get("latitude") or None,
            longitude=data.get("longitude") or None,
            timezone=data.get("time_zone"),
            accuracy=self.accuracy,
            confidence=self.confidence,
        )


def default_sources() -> list[GeoSource]:
    return [IpApiSource(), IpInfoGeoSource(), FreeGeoIpSource()]


# =============================================================================
# Combination
# =============================================================================


def combine_accuracy(results: list[GeoSourceResult]) -> AccuracyTier:
    if not results:
        return AccuracyTier.LOW
    avg = sum(ACCURACY_SCORES[r.accuracy] for r in results) / len(results)
    if avg >= GeoConfig.HIGH_ACCURACY_AVG:
        return AccuracyTier.HIGH
    if avg >= GeoConfig.MEDIUM_ACCURACY_AVG:
        return AccuracyTier.MEDIUM
    return AccuracyTier.LOW


def combine_confidence(results: list[GeoSourceResult], weights: dict[str, int]) -> int:
    """
    Weighted confidence across sources.

    When two or more sources agree on the country code the result is boosted
    (never above MAX_CONFIDENCE) and never lower than the plain average of
    the individual confidences. Otherwise it is floored at MIN_CONFIDENCE.
    """
    if not any(r.confidence > 0 for r in results):
        return GeoConfig.NO_DATA_CONFIDENCE

    total_weight = sum(weights.get(r.source, 1) for r in results)
    weighted = sum(weights.get(r.source, 1) * r.confidence for r in results) / total_weight

    codes = [r.country_code.upper() for r in results if r.country_code]
    agreeing = max((codes.count(code) for code in set(codes)), default=0)
    if agreeing >= 2:
        unweighted = sum(r.confidence for r in results) / len(results)
        base = _round_half_up(max(weighted, unweighted))
        return min(base + GeoConfig.AGREEMENT_BOOST, GeoConfig.MAX_CONFIDENCE)

    return max(_round_half_up(weighted), GeoConfig.MIN_CONFIDENCE)


def combine_results(results: list[GeoSourceResult], weights: dict[str, int]) -> GeoLocation:
    """Merge source answers, taking the most trusted one as primary and backfilling gaps."""
    with_country = [r for r in results if r.country_code]
    if not with_country:
        return GeoLocation()

    primary = max(with_country, key=lambda r: weights.get(r.source, 1) * r.confidence)
    combined = GeoLocation(
        country=primary.country or country_name(primary.country_code),
        country_code=(primary.country_code or "XX").upper(),
        region=primary.region,
        city=primary.city,
        latitude=primary.latitude,
        longitude=primary.longitude,
        timezone=primary.timezone or "UTC",
        isp=primary.isp or "Unknown",
        accuracy=combine_accuracy(results),
        confidence=combine_confidence(results, weights),
        sources=[r.source for r in results],
    )

    for result in results:
        if combined.latitude is None and result.latitude is not None:
            combined.latitude = result.latitude
            combined.longitude = result.longitude
        if combined.timezone == "UTC" and result.timezone:
            combined.timezone = result.timezone
        if combined.isp == "Unknown" and result.isp:
            combined.isp = result.isp

    return combined


# =============================================================================
# Detector
# =============================================================================


class GeoLocationDetector(BaseSignalProvider):
    """Resolve where an IP is, from several sources at once."""

    kind = SignalKind.GEO

    def __init__(
        self,
        cache: ResultCache,
        sources: Optional[list[GeoSource]] = None,
        timeout: Optional[float] = None,
    ):
        self.cache = cache
        self.sources = sources if sources is not None else default_sources()
        self.timeout = timeout if timeout is not None else settings.GEO_SOURCE_TIMEOUT_SECONDS
        self.weights = {source.name: source.weight for source in self.sources}

    async def _query(self, source: GeoSource, ip: str) -> Optional[GeoSourceResult]:
        try:
            return await asyncio.wait_for(source.lookup(ip), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("geo_source_timeout", source=source.name, ip=mask_ip(ip))
        except Exception as e:
            logger.warning("geo_source_failed", source=source.name, ip=mask_ip(ip), error=str(e))
        return None

    async def locate(self, ip: str) -> GeoLocation:
        """Combined location for an IP. Empty answers are not cached."""
        cached = await self.cache.get(SignalKind.GEO, ip)
        if cached is not None:
            return cached

        answers = await asyncio.gather(*(self._query(source, ip) for source in self.sources))
        results = [a for a in answers if a is not None]
        location = combine_results(results, self.weights)

        if location.sources:
            await self.cache.put(SignalKind.GEO, ip, location)
        logger.debug(
            "geo_detection_complete",
            ip=mask_ip(ip),
            country=location.country_code,
            confidence=location.confidence,
            sources=location.sources,
        )
        return location

    async def evaluate(self, context: RequestContext) -> SignalResult:
        location = await self.locate(context.ip_address)
        if not location.sources:
            return self.neutral_result("no geolocation source answered")

        evidence = []
        if location.confidence < GeoConfig.LOW_CONFIDENCE_FLAG:
            evidence.append("LOW_GEO_CONFIDENCE")
        if location.accuracy == AccuracyTier.LOW:
            evidence.append("LOW_GEO_ACCURACY")
        return SignalResult(
            kind=self.kind,
            verdict=location.country_code,
            confidence=location.confidence,
            evidence=evidence,
            detail=location.model_dump(mode="json"),
        )

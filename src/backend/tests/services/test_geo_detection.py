"""
Tests for multi-source geolocation.
"""

import asyncio
from typing import Optional

import httpx
import pytest

from models.screening import AccuracyTier, RequestContext
from services.geo_detection import (
    GeoLocationDetector,
    GeoSourceResult,
    IpApiSource,
    combine_confidence,
    combine_results,
    is_country_restricted,
)


class FakeSource:
    def __init__(
        self,
        name: str,
        weight: int,
        country_code: Optional[str],
        confidence: int,
        accuracy: AccuracyTier = AccuracyTier.MEDIUM,
        delay: float = 0,
        error: Optional[Exception] = None,
    ):
        self.name = name
        self.weight = weight
        self.country_code = country_code
        self.confidence = confidence
        self.accuracy = accuracy
        self.delay = delay
        self.error = error
        self.calls = 0

    async def lookup(self, ip: str) -> Optional[GeoSourceResult]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.country_code is None:
            return None
        return GeoSourceResult(
            source=self.name,
            country_code=self.country_code,
            timezone="America/New_York",
            accuracy=self.accuracy,
            confidence=self.confidence,
        )


def result(source: str, code: str, confidence: int) -> GeoSourceResult:
    return GeoSourceResult(source=source, country_code=code, confidence=confidence, accuracy=AccuracyTier.MEDIUM)


@pytest.mark.unit
class TestCombineConfidence:
    """Weighted confidence and the agreement boost."""

    def test_agreeing_sources_are_boosted(self):
        results = [result("ip-api", "US", 75), result("ipinfo", "US", 70)]
        # weighted (3*75 + 2*70) / 5 = 73, plus the agreement boost
        assert combine_confidence(results, {"ip-api": 3, "ipinfo": 2}) == 88

    def test_boost_never_exceeds_cap(self):
        results = [result("a", "US", 95), result("b", "US", 95)]
        assert combine_confidence(results, {"a": 1, "b": 1}) == 95

    def test_boost_base_is_at_least_unweighted_average(self):
        # weighted (5*40 + 1*90) / 6 = 48.3, unweighted 65
        results = [result("a", "US", 40), result("b", "US", 90)]
        assert combine_confidence(results, {"a": 5, "b": 1}) == 80

    def test_disagreeing_sources_use_weighted_average(self):
        results = [result("ip-api", "US", 75), result("freegeoip", "FR", 60)]
        # (3*75 + 1*60) / 4 = 71.25
        assert combine_confidence(results, {"ip-api": 3, "freegeoip": 1}) == 71

    def test_floor_when_sources_disagree(self):
        results = [result("a", "US", 10), result("b", "FR", 20)]
        assert combine_confidence(results, {"a": 1, "b": 1}) == 30

    def test_no_data(self):
        assert combine_confidence([], {}) == 30


@pytest.mark.unit
class TestCombineResults:
    def test_primary_is_most_trusted_source(self):
        results = [result("freegeoip", "FR", 60), result("ip-api", "US", 75)]
        location = combine_results(results, {"ip-api": 3, "freegeoip": 1})
        assert location.country_code == "US"
        assert location.country == "United States"
        assert location.sources == ["freegeoip", "ip-api"]

    def test_no_country_gives_unknown(self):
        location = combine_results([], {})
        assert location.country_code == "XX"
        assert location.sources == []

    def test_restriction_helper(self):
        assert is_country_restricted("fr", ["US", "CA"])
        assert not is_country_restricted("us", ["US", "CA"])
        assert not is_country_restricted("FR", [])


@pytest.mark.unit
class TestGeoLocationDetector:
    async def test_sources_queried_concurrently_and_cached(self, cache):
        sources = [FakeSource("ip-api", 3, "US", 75), FakeSource("ipinfo", 2, "US", 70)]
        detector = GeoLocationDetector(cache, sources=sources)

        first = await detector.locate("8.8.8.8")
        second = await detector.locate("8.8.8.8")

        assert first.country_code == "US"
        assert first.confidence == 88
        assert second == first
        assert all(s.calls == 1 for s in sources)

    async def test_failing_and_slow_sources_are_dropped(self, cache):
        sources = [
            FakeSource("ip-api", 3, "US", 75),
            FakeSource("ipinfo", 2, "US", 70, error=RuntimeError("down")),
            FakeSource("freegeoip", 1, "US", 60, delay=1),
        ]
        detector = GeoLocationDetector(cache, sources=sources, timeout=0.05)

        location = await detector.locate("8.8.8.8")

        assert location.sources == ["ip-api"]
        assert location.confidence == 75

    async def test_no_answer_is_a_failed_signal_and_not_cached(self, cache):
        source = FakeSource("ip-api", 3, None, 0)
        detector = GeoLocationDetector(cache, sources=[source])

        signal = await detector.evaluate(RequestContext(ip_address="8.8.8.8"))
        await detector.locate("8.8.8.8")

        assert signal.failed is True
        assert "GEO_DETECTION_FAILED" in signal.evidence
        assert source.calls == 2

    async def test_signal_carries_location(self, cache):
        detector = GeoLocationDetector(cache, sources=[FakeSource("freegeoip", 1, "DE", 40, AccuracyTier.LOW)])

        signal = await detector.evaluate(RequestContext(ip_address="8.8.8.8"))

        assert signal.verdict == "DE"
        assert signal.confidence == 40
        assert "LOW_GEO_CONFIDENCE" in signal.evidence
        assert "LOW_GEO_ACCURACY" in signal.evidence
        assert signal.detail["country_code"] == "DE"


@pytest.mark.unit
class TestIpApiSource:
    async def test_parses_success_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/json/8.8.8.8"
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "country": "United States",
                    "countryCode": "US",
                    "regionName": "California",
                    "city": "Mountain View",
                    "lat": 37.4,
                    "lon": -122.1,
                    "timezone": "America/Los_Angeles",
                    "isp": "Google LLC",
                },
            )

        source = IpApiSource("http://ip-api.test/json/{ip}", transport=httpx.MockTransport(handler))
        answer = await source.lookup("8.8.8.8")

        assert answer.country_code == "US"
        assert answer.city == "Mountain View"
        assert answer.confidence == 75

    async def test_fail_status_means_no_answer(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "fail"}))
        source = IpApiSource("http://ip-api.test/json/{ip}", transport=transport)
        assert await source.lookup("10.0.0.1") is None

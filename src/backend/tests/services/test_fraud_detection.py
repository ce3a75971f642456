"""
Tests for the screening orchestrator.

Covers:
- Concurrent fan-out to signal providers
- Timeout and failure isolation
- Provider selection by kind
- Captcha score extraction
- Default component wiring
"""

import pytest

from core.config import settings
from core.exceptions import ConfigurationError
from models.screening import RequestContext, SignalKind, SignalResult, ThreatLevel
from services.fraud_detection import ScreeningComponents, ScreeningService, build_components


@pytest.fixture
def context() -> RequestContext:
    return RequestContext(ip_address="8.8.8.8")


@pytest.mark.unit
class TestScreeningService:
    async def test_collects_every_provider(self, make_provider, context):
        providers = [make_provider(SignalKind.VPN), make_provider(SignalKind.GEO), make_provider(SignalKind.HONEYPOT)]

        results = await ScreeningService(providers, timeout=1).collect(context)

        assert [r.kind for r in results] == [SignalKind.VPN, SignalKind.GEO, SignalKind.HONEYPOT]
        assert all(p.calls == 1 for p in providers)

    async def test_kinds_filter(self, make_provider, context):
        vpn = make_provider(SignalKind.VPN)
        fingerprint = make_provider(SignalKind.FINGERPRINT)

        results = await ScreeningService([vpn, fingerprint], timeout=1).collect(context, {SignalKind.VPN})

        assert [r.kind for r in results] == [SignalKind.VPN]
        assert fingerprint.calls == 0

    async def test_timeout_yields_neutral_result(self, make_provider, context):
        slow = make_provider(SignalKind.VPN, delay=1)

        (result,) = await ScreeningService([slow], timeout=0.01).collect(context)

        assert result.failed
        assert result.evidence == ["VPN_DETECTION_FAILED"]
        assert result.detail == {"error": "timeout"}

    async def test_exception_yields_neutral_result(self, make_provider, context):
        broken = make_provider(SignalKind.CHALLENGE, error=RuntimeError("captcha api down"))

        (result,) = await ScreeningService([broken], timeout=1).collect(context)

        assert result.failed
        assert result.evidence == ["CAPTCHA_VERIFICATION_FAILED"]
        assert result.detail == {"error": "captcha api down"}

    async def test_one_failure_does_not_abort_others(self, make_provider, context):
        geo = SignalResult(kind=SignalKind.GEO, verdict="US", confidence=88, detail={"country_code": "US", "confidence": 88})
        providers = [make_provider(SignalKind.VPN, error=ValueError("boom")), make_provider(SignalKind.GEO, geo)]

        security = await ScreeningService(providers, timeout=1).screen(context)

        assert security.geo_location.country_code == "US"
        assert security.flags == ["VPN_DETECTION_FAILED"]
        assert security.threat_level == ThreatLevel.LOW

    async def test_screen_reads_captcha_score(self, make_provider, context):
        challenge = SignalResult(kind=SignalKind.CHALLENGE, detail={"score": 0.2, "source": "captcha_token"})

        security = await ScreeningService([make_provider(SignalKind.CHALLENGE, challenge)], timeout=1).screen(context)

        assert security.captcha_score == 0.2
        assert "LOW_CAPTCHA_SCORE" in security.flags

    def test_captcha_score(self):
        assert ScreeningService.captcha_score([SignalResult(kind=SignalKind.CHALLENGE, detail={"score": 1})]) == 1.0
        assert ScreeningService.captcha_score([SignalResult(kind=SignalKind.CHALLENGE, detail={"skipped": "x"})]) is None
        failed = SignalResult(kind=SignalKind.CHALLENGE, detail={"score": 0.0}, failed=True)
        assert ScreeningService.captcha_score([failed]) is None

    def test_provider_lookup(self, make_provider):
        geo = make_provider(SignalKind.GEO)
        service = ScreeningService([geo], timeout=1)
        assert service.provider(SignalKind.GEO) is geo
        assert service.provider(SignalKind.VPN) is None


@pytest.mark.unit
class TestBuildComponents:
    def test_wires_every_detector(self, cache):
        components = build_components(cache)

        assert isinstance(components, ScreeningComponents)
        assert components.cache is cache
        assert [p.kind for p in components.screening.providers] == [
            SignalKind.VPN,
            SignalKind.GEO,
            SignalKind.DOMAIN,
            SignalKind.HONEYPOT,
            SignalKind.FLATLINE,
            SignalKind.AI_TEXT,
            SignalKind.CHALLENGE,
            SignalKind.FINGERPRINT,
        ]

    def test_detectors_share_one_cache(self, cache):
        components = build_components(cache)
        assert components.honeypots.cache is cache
        assert components.challenges.cache is cache

    def test_separate_builds_are_isolated(self):
        assert build_components().cache is not build_components().cache

    def test_captcha_url_without_secret_fails_fast(self, monkeypatch):
        monkeypatch.setattr(settings, "CAPTCHA_VERIFY_URL", "https://captcha.test/siteverify")
        monkeypatch.setattr(settings, "CAPTCHA_SECRET_KEY", None)

        with pytest.raises(ConfigurationError):
            build_components()

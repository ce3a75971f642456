"""
Tests for the IP check and quality-control endpoints.
"""

import pytest
from httpx import AsyncClient

from models.screening import AccuracyTier, GeoLocation, SignalKind, SignalResult, VPNDetection
from services.fraud_detection import ScreeningService


@pytest.fixture
def stub_screening(app, make_provider):
    detection = VPNDetection(is_proxy=True, confidence=55, proxy_score=55)
    location = GeoLocation(country_code="DE", country="Germany", confidence=82, accuracy=AccuracyTier.HIGH)
    providers = [
        make_provider(
            SignalKind.VPN,
            SignalResult(kind=SignalKind.VPN, confidence=55, evidence=["PROXY_DETECTED"], detail=detection.model_dump()),
        ),
        make_provider(
            SignalKind.GEO,
            SignalResult(kind=SignalKind.GEO, verdict="DE", confidence=82, detail=location.model_dump()),
        ),
        make_provider(SignalKind.FINGERPRINT, error=AssertionError("not part of an IP check")),
    ]
    app.state.components.screening = ScreeningService(providers, timeout=1)
    return providers


@pytest.mark.unit
class TestIPCheck:
    async def test_reports_geo_and_network(self, client: AsyncClient, stub_screening):
        response = await client.get("/api/v1/ip-check", headers={"X-Real-IP": "203.0.113.9"})

        assert response.status_code == 200
        data = response.json()
        assert data["ip"] == "203.0.113.9"
        assert data["geo_location"]["country_code"] == "DE"
        assert data["vpn_detection"]["is_proxy"] is True
        assert data["flags"] == ["PROXY_DETECTED"]
        assert data["threat_level"] == "MEDIUM"

    async def test_only_network_detectors_run(self, client: AsyncClient, stub_screening):
        await client.get("/api/v1/ip-check")

        vpn, geo, fingerprint = stub_screening
        assert vpn.calls == 1
        assert geo.calls == 1
        assert fingerprint.calls == 0


@pytest.mark.unit
class TestQualityEndpoint:
    async def test_analyze(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/quality/analyze",
            json={
                "answers": [
                    {"question_id": f"q{i}", "question_type": "SCALE", "answer": 3, "scale_min": 1, "scale_max": 5}
                    for i in range(5)
                ],
                "form_fields": {"email": "bot@mailinator.com"},
            },
        )

        assert response.status_code == 200
        report = response.json()
        assert "BLACKLISTED_DOMAIN:temporary-email" in report["flags"]
        assert any(flag.startswith("FLATLINE:") for flag in report["flags"])
        assert report["should_exclude"] is True

    async def test_requires_answers(self, client: AsyncClient):
        response = await client.post("/api/v1/quality/analyze", json={})
        assert response.status_code == 422

"""
Tests for VPN / proxy / Tor detection.
"""

import asyncio
from typing import Optional

import pytest

from models.screening import RequestContext, ThreatLevel
from services.ip_intelligence import IPProfile, PrivacyFlags, TorExitNodeList
from services.vpn_detection import (
    ASNCheck,
    BlacklistCheck,
    CheckOutcome,
    HostingProviderCheck,
    KnownRangeCheck,
    OpenPortCheck,
    ReverseDNSCheck,
    ScoreContribution,
    TorExitCheck,
    VPNDetector,
    classify,
)


class CountingCheck:
    """Sub-check with a fixed answer that counts its invocations."""

    def __init__(self, name: str, contribution: ScoreContribution, suspicious: bool = True):
        self.name = name
        self.contribution = contribution
        self.suspicious = suspicious
        self.calls = 0

    async def evaluate(self, ip: str, profile: Optional[IPProfile] = None) -> CheckOutcome:
        self.calls += 1
        return CheckOutcome(suspicious=self.suspicious, confidence=80 if self.suspicious else 0)


class FailingCheck:
    name = "broken"
    contribution = ScoreContribution(vpn=100)

    async def evaluate(self, ip: str, profile: Optional[IPProfile] = None) -> CheckOutcome:
        raise RuntimeError("lookup exploded")


@pytest.mark.unit
class TestClassify:
    """Score thresholds and risk tiers."""

    def test_clean_ip(self):
        detection = classify(0, 0, 0, 0)
        assert not detection.is_vpn
        assert not detection.is_proxy
        assert detection.confidence == 0
        assert detection.risk_level == ThreatLevel.LOW

    def test_vpn_threshold(self):
        assert classify(49, 0, 0, 0).is_vpn is False
        assert classify(50, 0, 0, 0).is_vpn is True

    def test_tor_is_high_risk(self):
        detection = classify(0, 0, 0, 100)
        assert detection.is_tor
        assert detection.risk_level == ThreatLevel.HIGH
        # Tor points do not feed confidence
        assert detection.confidence == 0

    def test_vpn_with_high_confidence_is_high_risk(self):
        detection = classify(55, 35, 0, 0)
        assert detection.confidence == 90
        assert detection.risk_level == ThreatLevel.HIGH

    def test_proxy_with_medium_confidence(self):
        detection = classify(35, 45, 0, 0)
        assert detection.confidence == 80
        assert detection.is_proxy
        assert not detection.is_vpn
        assert detection.risk_level == ThreatLevel.MEDIUM

    def test_confidence_capped(self):
        assert classify(100, 100, 100, 0).confidence == 100


@pytest.mark.unit
class TestSubChecks:
    """Individual sub-checks."""

    async def test_known_range(self):
        check = KnownRangeCheck()
        assert (await check.evaluate("5.2.10.20")).suspicious
        assert not (await check.evaluate("8.8.8.8")).suspicious
        assert not (await check.evaluate("not-an-ip")).suspicious

    async def test_hosting_range(self):
        check = HostingProviderCheck()
        assert (await check.evaluate("52.10.1.1")).suspicious
        assert not (await check.evaluate("8.8.8.8")).suspicious

    async def test_hosting_from_profile_org(self):
        profile = IPProfile(ip="8.8.4.4", org="Example Cloud Hosting LLC")
        assert (await HostingProviderCheck().evaluate("8.8.4.4", profile)).suspicious

    async def test_reverse_dns_from_profile(self):
        check = ReverseDNSCheck(resolve=False)
        vpn_host = IPProfile(ip="8.8.4.4", hostname="node-12.nordvpn.com")
        home_host = IPProfile(ip="8.8.4.4", hostname="cpe-1-2-3-4.example-isp.net")
        assert (await check.evaluate("8.8.4.4", vpn_host)).suspicious
        assert not (await check.evaluate("8.8.4.4", home_host)).suspicious

    async def test_asn_privacy_flag(self):
        profile = IPProfile(ip="8.8.4.4", org="Residential ISP", privacy=PrivacyFlags(vpn=True))
        assert (await ASNCheck().evaluate("8.8.4.4", profile)).suspicious

    async def test_tor_exit_list(self):
        check = TorExitCheck(TorExitNodeList({"185.220.101.1"}))
        assert (await check.evaluate("185.220.101.1")).suspicious
        assert not (await check.evaluate("8.8.8.8")).suspicious

    async def test_local_blacklist(self):
        check = BlacklistCheck(blocked={"8.8.4.4"})
        assert (await check.evaluate("8.8.4.4")).suspicious
        assert not (await check.evaluate("8.8.8.8")).suspicious

    async def test_open_port_connection_is_closed(self, monkeypatch):
        writers = []

        class FakeWriter:
            def __init__(self):
                self.closed = False
                self.waited = False

            def close(self):
                self.closed = True

            async def wait_closed(self):
                self.waited = True

        async def fake_open_connection(host, port):
            if port != 1080:
                raise ConnectionRefusedError(port)
            writer = FakeWriter()
            writers.append(writer)
            return None, writer

        monkeypatch.setattr(asyncio, "open_connection", fake_open_connection)

        outcome = await OpenPortCheck(ports=(1080, 3128), timeout=1).evaluate("203.0.113.7")

        assert outcome.suspicious
        assert outcome.detail == {"openPorts": [1080]}
        assert [(w.closed, w.waited) for w in writers] == [(True, True)]


@pytest.mark.unit
class TestVPNDetector:
    """Detector orchestration and caching."""

    async def test_scores_accumulate_from_suspicious_checks(self, cache):
        checks = [
            CountingCheck("a", ScoreContribution(vpn=30)),
            CountingCheck("b", ScoreContribution(vpn=25)),
            CountingCheck("c", ScoreContribution(hosting=40), suspicious=False),
        ]
        detector = VPNDetector(cache, checks=checks)

        detection = await detector.detect("8.8.8.8")

        assert detection.vpn_score == 55
        assert detection.hosting_score == 0
        assert detection.is_vpn
        assert detection.methods == ["a", "b"]

    async def test_second_lookup_within_ttl_is_cached(self, cache):
        check = CountingCheck("a", ScoreContribution(vpn=30))
        detector = VPNDetector(cache, checks=[check])

        first = await detector.detect("8.8.8.8")
        second = await detector.detect("8.8.8.8")

        assert check.calls == 1
        assert first == second

    async def test_lookup_after_ttl_runs_again(self, cache, clock):
        check = CountingCheck("a", ScoreContribution(vpn=30))
        detector = VPNDetector(cache, checks=[check])

        await detector.detect("8.8.8.8")
        clock.advance(3601)
        await detector.detect("8.8.8.8")

        assert check.calls == 2

    async def test_failing_check_contributes_nothing(self, cache):
        detector = VPNDetector(cache, checks=[FailingCheck(), CountingCheck("a", ScoreContribution(proxy=15))])

        detection = await detector.detect("8.8.8.8")

        assert detection.vpn_score == 0
        assert detection.proxy_score == 15
        assert not detection.is_vpn

    async def test_tor_exit_node_signal(self, cache):
        detector = VPNDetector(cache, checks=[TorExitCheck(TorExitNodeList({"185.220.101.1"}))])

        result = await detector.evaluate(RequestContext(ip_address="185.220.101.1"))

        assert "TOR_DETECTED" in result.evidence
        assert result.verdict == ThreatLevel.HIGH.value
        assert result.detail["is_tor"] is True

    async def test_clean_ip_signal(self, cache):
        detector = VPNDetector(cache, checks=[KnownRangeCheck(), HostingProviderCheck()])

        result = await detector.evaluate(RequestContext(ip_address="8.8.8.8"))

        assert result.evidence == []
        assert result.confidence == 0
        assert result.failed is False

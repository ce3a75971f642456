"""
Tests for honeypot field issuance and validation.
"""

import pytest

from models.screening import RequestContext, SignalKind, ThreatLevel
from services.honeypot_service import HONEYPOT_FIELDS, HoneypotValidator
from services.result_cache import InMemoryResultCache

EMAIL_CONFIRM = HONEYPOT_FIELDS[0]
TERMS_CHECKBOX = HONEYPOT_FIELDS[3]
FORM_TIMESTAMP = HONEYPOT_FIELDS[5]


@pytest.fixture
def validator(cache, clock) -> HoneypotValidator:
    return HoneypotValidator(cache, pool=(EMAIL_CONFIRM, TERMS_CHECKBOX), clock=clock)


@pytest.mark.unit
class TestIssue:
    async def test_issue_picks_subset_of_pool(self, cache, clock):
        validator = HoneypotValidator(cache, clock=clock)
        issue = await validator.issue(count=3)
        assert len(issue.fields) == 3
        assert len({f.id for f in issue.fields}) == 3
        assert issue.session_id

    async def test_count_capped_at_pool_size(self, validator):
        issue = await validator.issue(count=7)
        assert len(issue.fields) == 2

    async def test_css_hides_issued_fields(self, validator):
        issue = await validator.issue(count=2)
        css = await validator.generate_css(issue.session_id)
        assert css == issue.css
        assert '[name="email_confirmation"]' in css
        assert "opacity: 0; visibility: hidden;" in css

    async def test_css_for_unknown_session(self, validator):
        assert await validator.generate_css("missing") is None


@pytest.mark.unit
class TestValidate:
    async def test_clean_submission(self, validator, clock):
        issue = await validator.issue(count=2)
        clock.advance(30)

        result = await validator.validate(issue.session_id, {"email_confirmation": "", "terms_extra": "false"})

        assert result.session_found
        assert not result.triggered
        assert result.suspicion_level == ThreatLevel.LOW
        assert result.flags == []

    async def test_filled_text_decoy(self, validator, clock):
        issue = await validator.issue(count=2)
        clock.advance(30)

        result = await validator.validate(issue.session_id, {"email_confirmation": "bot@example.com"})

        assert result.triggered
        assert result.triggered_fields == ["hp_email_confirm"]
        assert result.flags == ["BOT_FILLED_HONEYPOT", "EMAIL_CONFIRMATION_FILLED"]
        assert result.score == 25
        assert result.suspicion_level == ThreatLevel.MEDIUM

    async def test_checked_checkbox_and_text(self, validator, clock):
        issue = await validator.issue(count=2)
        clock.advance(30)

        result = await validator.validate(issue.session_id, {"email_confirmation": "x", "terms_extra": True})

        assert result.score == 55
        assert result.suspicion_level == ThreatLevel.HIGH

    async def test_hidden_field_must_keep_expected_value(self, cache, clock):
        validator = HoneypotValidator(cache, pool=(FORM_TIMESTAMP,), clock=clock)
        issue = await validator.issue(count=1)
        clock.advance(30)

        assert not (await validator.validate(issue.session_id, {"form_timestamp": ""})).triggered
        issue = await validator.issue(count=1)
        clock.advance(30)
        assert (await validator.validate(issue.session_id, {"form_timestamp": "1700000000"})).triggered

    async def test_fast_submission_penalties_stack(self, validator, clock):
        issue = await validator.issue(count=2)
        clock.advance(1)

        result = await validator.validate(issue.session_id, {})

        assert result.triggered
        assert "TOO_FAST_SUBMISSION" in result.flags
        assert "EXTREMELY_FAST_SUBMISSION" in result.flags
        assert result.score == 80
        assert result.suspicion_level == ThreatLevel.CRITICAL

    async def test_moderately_fast_submission(self, validator, clock):
        issue = await validator.issue(count=2)
        clock.advance(3)

        result = await validator.validate(issue.session_id, {})

        assert result.flags == ["TOO_FAST_SUBMISSION"]
        assert result.score == 30

    async def test_session_is_one_shot(self, validator, clock):
        issue = await validator.issue(count=2)
        clock.advance(30)
        await validator.validate(issue.session_id, {})

        replay = await validator.validate(issue.session_id, {})

        assert not replay.session_found
        assert replay.flags == ["NO_HONEYPOT_DATA"]

    async def test_session_survives_detector_cache_churn(self, clock):
        cache = InMemoryResultCache(ttls={}, max_entries=300, clock=clock)
        validator = HoneypotValidator(cache, pool=(EMAIL_CONFIRM, TERMS_CHECKBOX), clock=clock)
        issue = await validator.issue(count=2)
        for i in range(301):
            await cache.put(SignalKind.VPN, f"198.51.100.{i}", {"is_vpn": False})
        clock.advance(30)

        result = await validator.validate(issue.session_id, {"email_confirmation": "bot@example.com"})

        assert result.session_found
        assert result.triggered

    async def test_expired_session_swept(self, validator, clock):
        await validator.issue(count=2)
        clock.advance(1801)
        assert await validator.clean_expired_sessions() == 1
        assert (await validator.get_stats())["active_sessions"] == 0


@pytest.mark.unit
class TestInteractionPatterns:
    def test_regular_interaction_with_decoy(self, validator):
        analysis = validator.analyze_interaction_patterns(
            {
                "website_url": [
                    {"type": "focus", "timestamp": 1000},
                    {"type": "input", "timestamp": 1100},
                    {"type": "input", "timestamp": 1200},
                ]
            }
        )
        assert analysis.suspicious
        assert analysis.confidence == 65
        assert len(analysis.reasons) == 2

    def test_json_encoded_trace(self, validator):
        analysis = validator.analyze_interaction_patterns('{"website_url": []}')
        assert not analysis.suspicious

    def test_unparseable_trace(self, validator):
        analysis = validator.analyze_interaction_patterns("not json")
        assert analysis.suspicious
        assert analysis.reasons == ["Failed to parse interaction data"]
        assert analysis.confidence == 10


@pytest.mark.unit
class TestHoneypotSignal:
    async def test_signal_from_context(self, validator, clock):
        issue = await validator.issue(count=2)
        clock.advance(30)
        context = RequestContext(
            ip_address="8.8.8.8",
            honeypot_session_id=issue.session_id,
            form_fields={"terms_extra": "on"},
        )

        result = await validator.evaluate(context)

        assert result.verdict is True
        assert result.evidence[0] == "HONEYPOT_TRIGGERED"
        assert "BOT_CHECKED_HONEYPOT" in result.evidence
        assert result.confidence == 30

    async def test_no_session_is_skipped(self, validator):
        result = await validator.evaluate(RequestContext(ip_address="8.8.8.8"))
        assert result.verdict is False
        assert not result.failed

    async def test_stats(self, validator):
        await validator.issue(count=1)
        stats = await validator.get_stats()
        assert stats["total_fields"] == 2
        assert stats["active_sessions"] == 1
        assert stats["field_types"] == {"text": 1, "checkbox": 1}

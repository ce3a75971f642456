"""
Tests for post-submission response quality control.
"""

import pytest

from models.screening import QuestionResponse, QuestionType, ThreatLevel
from services.ai_text_detection import AIGenerationDetector
from services.domain_blacklist import DomainBlacklistChecker
from services.flatline_detection import FlatlineAnalyzer
from services.honeypot_service import HONEYPOT_FIELDS, HoneypotValidator
from services.quality_control import BehaviorSummary, QualityCheckInput, QualityControlService

HUMAN_TEXT = "I liked the snacks but the checkout line was slow, honestly kinda annoying lol"


def answers(*scale_values, text: str = HUMAN_TEXT) -> list[QuestionResponse]:
    items = [
        QuestionResponse(question_id=f"q{i}", question_type=QuestionType.SCALE, answer=v, scale_min=1, scale_max=5)
        for i, v in enumerate(scale_values, start=1)
    ]
    items.append(QuestionResponse(question_id="open", question_type=QuestionType.TEXT, answer=text))
    return items


@pytest.fixture
def honeypots(cache, clock) -> HoneypotValidator:
    return HoneypotValidator(cache, pool=(HONEYPOT_FIELDS[0],), clock=clock)


@pytest.fixture
def service(cache, honeypots) -> QualityControlService:
    return QualityControlService(
        domains=DomainBlacklistChecker(cache, reputation_checks=[]),
        honeypots=honeypots,
        flatline=FlatlineAnalyzer(),
        ai_text=AIGenerationDetector(),
    )


@pytest.mark.unit
class TestAnalyze:
    async def test_clean_response(self, service):
        report = await service.analyze(
            QualityCheckInput(
                answers=answers(2, 4, 3),
                form_fields={"email": "respondent@gmail.com"},
                time_spent_seconds=80,
            )
        )

        assert report.flags == []
        assert report.risk_score == 0
        assert report.risk_level == ThreatLevel.LOW
        assert not report.should_flag
        assert not report.should_exclude
        assert report.details["domain_check"]["blacklisted_count"] == 0
        assert report.details["speed_check"]["seconds_per_question"] == 20.0

    async def test_blacklisted_domain_is_critical(self, service):
        report = await service.analyze(
            QualityCheckInput(answers=answers(2, 4, 3), form_fields={"email": "bot@mailinator.com"})
        )

        assert report.flags == ["BLACKLISTED_DOMAIN:temporary-email"]
        assert report.risk_score == 30
        assert report.risk_level == ThreatLevel.CRITICAL
        assert report.should_flag
        assert report.should_exclude
        assert "Exclude this response from final analysis" in report.recommendations

    async def test_straight_lining(self, service):
        report = await service.analyze(QualityCheckInput(answers=answers(3, 3, 3, 3, 3)))

        assert report.flags == ["FLATLINE:HIGH:2_patterns"]
        assert report.risk_score == 64
        assert report.risk_level == ThreatLevel.HIGH
        assert report.should_exclude

    async def test_ai_generated_text(self, service):
        report = await service.analyze(
            QualityCheckInput(answers=answers(2, 4, 3, text="As an AI language model, I don't have personal opinions on this."))
        )

        assert report.flags == ["AI_GENERATED:CRITICAL:confidence_90"]
        assert report.risk_score == 72
        assert report.should_exclude

    async def test_honeypot_session(self, service, honeypots, clock):
        issue = await honeypots.issue(count=1)
        clock.advance(30)

        report = await service.analyze(
            QualityCheckInput(
                answers=answers(2, 4, 3),
                form_fields={"email_confirmation": "filled"},
                honeypot_session_id=issue.session_id,
            )
        )

        assert report.flags == ["BOT_FILLED_HONEYPOT", "EMAIL_CONFIRMATION_FILLED"]
        assert report.risk_score == 12.5
        assert report.details["honeypot_check"]["triggered"]
        assert not report.should_flag

    async def test_minimal_behavior(self, service):
        report = await service.analyze(QualityCheckInput(answers=answers(2, 4, 3), behavior=BehaviorSummary()))

        assert report.flags == ["MINIMAL_MOUSE_MOVEMENT", "MINIMAL_KEYBOARD_ACTIVITY"]
        assert report.risk_score == 35
        assert report.risk_level == ThreatLevel.MEDIUM
        assert report.should_flag
        assert not report.should_exclude

    async def test_extremely_fast(self, service):
        report = await service.analyze(QualityCheckInput(answers=answers(2, 4, 3), time_spent_seconds=4))

        assert report.flags == ["SPEED_ISSUE:EXTREMELY_FAST"]
        assert report.risk_level == ThreatLevel.CRITICAL
        assert report.should_exclude

    async def test_too_fast(self, service):
        report = await service.analyze(QualityCheckInput(answers=answers(2, 4, 3), time_spent_seconds=12))

        assert report.flags == ["SPEED_ISSUE:TOO_FAST"]
        assert report.risk_score == 30
        assert report.should_flag
        assert not report.should_exclude


@pytest.mark.unit
class TestScoringHelpers:
    def test_behavior_score_is_capped(self, service):
        behavior = BehaviorSummary(suspicious_patterns=["a", "b", "c"], activity_rate=0.01)

        score, flags = service.analyze_behavior(behavior)

        assert score == 50
        assert flags == [
            "MINIMAL_MOUSE_MOVEMENT",
            "MINIMAL_KEYBOARD_ACTIVITY",
            "SUSPICIOUS_BEHAVIOR_PATTERNS",
            "LOW_ACTIVITY_RATE",
        ]

    @pytest.mark.parametrize(
        "seconds,expected",
        [(1.5, (50, "EXTREMELY_FAST")), (4, (30, "TOO_FAST")), (30, (0, None)), (601, (10, "TOO_SLOW"))],
    )
    def test_speed(self, service, seconds, expected):
        assert service.analyze_speed(seconds) == expected

    def test_flag_count_raises_level(self, service):
        assert service.risk_level(0, ["a", "b", "c"]) == ThreatLevel.MEDIUM
        assert service.risk_level(0, ["a", "b", "c", "d", "e"]) == ThreatLevel.HIGH

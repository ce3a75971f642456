"""
Tests for AI-generated text detection.
"""

import pytest

from models.screening import QuestionResponse, QuestionType, RequestContext, ThreatLevel
from services.ai_text_detection import (
    AIGenerationDetector,
    analyze_text,
    find_repeated_phrases,
    grammar_quality,
)

SELF_IDENTIFIED = "As an AI language model, I don't have personal opinions on this."
HUMAN = "I liked the snacks but the checkout line was slow, honestly kinda annoying lol"
FORMAL = "Furthermore, the product is good. Moreover, it is cheap. Additionally, it is fast."


@pytest.fixture
def detector() -> AIGenerationDetector:
    return AIGenerationDetector()


@pytest.mark.unit
class TestTextStatistics:
    def test_analyze_text(self):
        analysis = analyze_text(FORMAL)
        assert analysis.word_count == 13
        assert analysis.sentence_count == 3
        assert round(analysis.formality_score, 1) == 23.1

    def test_grammar_quality_penalizes_mechanical_issues(self):
        assert grammar_quality("Clean sentence.") == 100
        assert grammar_quality("Double  space , and..") == 85

    def test_repeated_phrases_across_answers(self):
        phrases = find_repeated_phrases(["the delivery was really quick", "honestly the delivery was really late"])
        assert phrases == ["the delivery was", "the delivery was really", "delivery was really"]

    def test_repetition_inside_one_answer_is_ignored(self):
        assert find_repeated_phrases(["the delivery was ok and the delivery was ok"]) == []


@pytest.mark.unit
class TestAIGenerationDetector:
    def test_self_identification(self, detector):
        result = detector.analyze([SELF_IDENTIFIED])

        assert result.is_ai_generated
        assert result.confidence == 90
        assert result.risk_level == ThreatLevel.CRITICAL
        assert result.indicators[0].description == "Direct AI self-identification"

    def test_human_answer(self, detector):
        result = detector.analyze([HUMAN])

        assert not result.is_ai_generated
        assert result.confidence == 0
        assert result.risk_level == ThreatLevel.LOW

    def test_formal_transitions(self, detector):
        result = detector.analyze([FORMAL])

        descriptions = {i.description for i in result.indicators}
        assert "Overuse of formal transitional phrases" in descriptions
        assert "Unusually high formality for survey response" in descriptions
        assert "Unusually uniform sentence structure" in descriptions
        assert result.confidence == 95
        assert result.risk_level == ThreatLevel.CRITICAL

    def test_template_opener(self, detector):
        result = detector.analyze(["Thank you for asking, the store was fine overall."])
        assert any(i.description == "Uses common AI response template" for i in result.indicators)
        assert result.confidence == 25

    def test_cross_answer_repetition(self, detector):
        result = detector.analyze(["the delivery was really quick", "honestly the delivery was really late"])
        repeated = [i for i in result.indicators if i.description.startswith("Identical phrases")]
        assert len(repeated) == 1
        assert repeated[0].score == 30

    def test_batch_and_summary(self, detector):
        results = detector.batch_analyze({"r1": [SELF_IDENTIFIED], "r2": [HUMAN]})
        summary = detector.summarize(list(results.values()))

        assert summary["total_responses"] == 2
        assert summary["ai_generated"] == 1
        assert summary["average_confidence"] == 45.0
        assert summary["risk_breakdown"]["CRITICAL"] == 1


@pytest.mark.unit
class TestAITextSignal:
    async def test_signal_from_text_answers(self, detector):
        context = RequestContext(
            ip_address="8.8.8.8",
            answers=(QuestionResponse(question_id="t1", question_type=QuestionType.TEXT, answer=SELF_IDENTIFIED),),
        )

        result = await detector.evaluate(context)

        assert result.verdict == "CRITICAL"
        assert result.evidence == ["AI_GENERATED_TEXT", "AI_SELF_IDENTIFICATION"]

    async def test_short_answers_are_skipped(self, detector):
        context = RequestContext(
            ip_address="8.8.8.8",
            answers=(QuestionResponse(question_id="t1", question_type=QuestionType.TEXT, answer="fine"),),
        )

        result = await detector.evaluate(context)

        assert result.verdict is False
        assert "skipped" in result.detail

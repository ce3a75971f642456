"""
Tests for straight-lining detection.
"""

import pytest

from models.screening import QuestionResponse, QuestionType, RequestContext, ThreatLevel
from services.flatline_detection import FlatlineAnalyzer, PatternType


def scale(*answers, low=1, high=5) -> list[QuestionResponse]:
    return [
        QuestionResponse(
            question_id=f"q{i}",
            question_type=QuestionType.SCALE,
            answer=answer,
            scale_min=low,
            scale_max=high,
        )
        for i, answer in enumerate(answers, start=1)
    ]


def texts(*answers) -> list[QuestionResponse]:
    return [
        QuestionResponse(question_id=f"t{i}", question_type=QuestionType.TEXT, answer=answer)
        for i, answer in enumerate(answers, start=1)
    ]


@pytest.fixture
def analyzer() -> FlatlineAnalyzer:
    return FlatlineAnalyzer()


@pytest.mark.unit
class TestScalePatterns:
    def test_identical_answers(self, analyzer):
        result = analyzer.analyze(scale(3, 3, 3, 3, 3))

        types = [p.type for p in result.patterns]
        assert result.is_flatline
        assert PatternType.IDENTICAL in types
        # A constant run also satisfies the two-value alternation walker
        assert PatternType.ALTERNATING in types
        assert result.score == 64
        assert result.severity == ThreatLevel.HIGH

    def test_numeric_strings_compare_as_numbers(self, analyzer):
        result = analyzer.analyze(scale("3", 3, "3.0"))

        assert [p.type for p in result.patterns] == [PatternType.IDENTICAL]
        assert result.score == 30

    def test_ascending_sequence(self, analyzer):
        result = analyzer.analyze(scale(1, 2, 3, 4, 5))

        assert [p.type for p in result.patterns] == [PatternType.SEQUENCE]
        assert result.patterns[0].description == "Ascending sequence pattern detected (5/5 questions)"
        assert result.score == 30
        assert result.severity == ThreatLevel.MEDIUM

    def test_descending_sequence(self, analyzer):
        result = analyzer.analyze(scale(5, 4, 3, 2))
        assert result.patterns[0].type == PatternType.SEQUENCE
        assert result.patterns[0].description.startswith("Descending")

    def test_alternation(self, analyzer):
        result = analyzer.analyze(scale(1, 5, 1, 5))

        assert [p.type for p in result.patterns] == [PatternType.ALTERNATING]
        assert "between 1 and 5" in result.patterns[0].description
        assert result.score == 23
        assert result.severity == ThreatLevel.LOW

    def test_extreme_responses(self, analyzer):
        result = analyzer.analyze(scale(5, 4, 5, 5, 5))

        assert [p.type for p in result.patterns] == [PatternType.EXTREME]
        assert result.patterns[0].confidence == 80
        assert result.score == 28

    def test_engaged_respondent(self, analyzer):
        result = analyzer.analyze(scale(2, 4, 3, 5, 1))
        assert not result.is_flatline
        assert result.severity == ThreatLevel.LOW
        assert result.recommendations == []

    def test_too_few_answers(self, analyzer):
        assert not analyzer.analyze(scale(3, 3)).is_flatline


@pytest.mark.unit
class TestChoiceAndTextPatterns:
    def test_first_option_dominance(self, analyzer):
        responses = [
            QuestionResponse(
                question_id=f"c{i}",
                question_type=QuestionType.MULTIPLE_CHOICE,
                answer="Red",
                options=["Red", "Green", "Blue"],
            )
            for i in range(3)
        ]
        result = analyzer.analyze(responses)

        assert [p.type for p in result.patterns] == [PatternType.SIMILAR]
        assert result.patterns[0].description == "100% first option selection pattern"
        assert result.score == 20

    def test_identical_text(self, analyzer):
        result = analyzer.analyze(texts("Good", "good ", "GOOD"))
        assert result.patterns[0].type == PatternType.IDENTICAL
        assert result.patterns[0].confidence == 95
        assert result.score == 38

    def test_short_text(self, analyzer):
        result = analyzer.analyze(texts("ok", "no", "yes"))
        assert result.patterns[0].type == PatternType.SIMILAR
        assert result.score == 16


@pytest.mark.unit
class TestFlatlineSignal:
    async def test_signal(self, analyzer):
        context = RequestContext(ip_address="8.8.8.8", answers=tuple(scale(3, 3, 3, 3, 3)))

        result = await analyzer.evaluate(context)

        assert result.verdict == "HIGH"
        assert result.confidence == 64
        assert result.evidence == ["FLATLINE_DETECTED", "FLATLINE_IDENTICAL", "FLATLINE_ALTERNATING"]

    async def test_no_answers_is_skipped(self, analyzer):
        result = await analyzer.evaluate(RequestContext(ip_address="8.8.8.8"))
        assert result.verdict is False
        assert not result.failed

    def test_batch_and_summary(self, analyzer):
        results = analyzer.batch_analyze({"r1": scale(1, 2, 3, 4, 5), "r2": scale(2, 4, 3, 5, 1)})
        summary = analyzer.summarize(list(results.values()))

        assert summary["total_responses"] == 2
        assert summary["flatline_detected"] == 1
        assert summary["flatline_rate"] == 0.5
        assert summary["most_common_pattern"] == "sequence"

"""
Flatline (straight-lining) detection.

Looks for inattentive answer patterns across a respondent's survey answers:
identical values, +/-1 sequences, two-value alternation, clustering at the
ends of the scale, first/last option dominance in multiple choice, and
identical or degenerate free-text answers.
"""

from collections import Counter
from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from models.screening import QuestionResponse, QuestionType, RequestContext, SignalKind, SignalResult, ThreatLevel
from services.signal_provider import BaseSignalProvider

logger = structlog.get_logger(__name__)


class FlatlineConfig:
    """Flatline pattern thresholds."""

    MIN_IDENTICAL = 3
    MIN_MOSTLY_IDENTICAL = 5
    MOSTLY_IDENTICAL_RATIO = 0.9

    # Both the sequence and alternation walkers require a run of at least 4
    MIN_RUN = 4

    MIN_EXTREME = 3
    EXTREME_RATIO = 0.8

    MIN_CHOICE = 3
    CHOICE_DOMINANCE_RATIO = 0.8

    MIN_TEXT = 3
    SHORT_TEXT_LENGTH = 3
    SHORT_TEXT_RATIO = 0.8
    IDENTICAL_TEXT_CONFIDENCE = 95

    BASE_SCORES = {"identical": 40, "sequence": 30, "alternating": 25, "extreme": 35, "similar": 20}
    DEFAULT_BASE_SCORE = 15

    PER_EXTRA_PATTERN = 10
    CRITICAL_SCORE = 80
    HIGH_SCORE = 60
    MEDIUM_SCORE = 30


class PatternType(str, Enum):
    IDENTICAL = "identical"
    SIMILAR = "similar"
    SEQUENCE = "sequence"
    ALTERNATING = "alternating"
    EXTREME = "extreme"


class FlatlinePattern(BaseModel):
    type: PatternType
    questions: list[str]
    values: list[Any]
    confidence: float = Field(ge=0, le=100)
    description: str


class FlatlineResult(BaseModel):
    is_flatline: bool = False
    severity: ThreatLevel = ThreatLevel.LOW
    patterns: list[FlatlinePattern] = Field(default_factory=list)
    score: int = 0
    recommendations: list[str] = Field(default_factory=list)


def _normalize(value: Any) -> Any:
    """Numeric strings compare equal to the numbers they spell."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return value.strip()
    return value


def _as_number(value: Any) -> Optional[float]:
    normalized = _normalize(value)
    return normalized if isinstance(normalized, float) else None


def _run_length(values: list[float], step: int) -> int:
    """Length of the +step run starting at the first value."""
    count = 1
    for prev, cur in zip(values, values[1:]):
        if cur == prev + step:
            count += 1
        else:
            break
    return count


def _alternation_length(values: list[float]) -> int:
    """Length of the prefix that repeats the first two values."""
    first_two = values[:2]
    count = 2
    for i in range(2, len(values)):
        if values[i] == first_two[i % 2]:
            count += 1
        else:
            break
    return count


class FlatlineAnalyzer(BaseSignalProvider):
    """Detect straight-lining in a set of survey answers."""

    kind = SignalKind.FLATLINE

    def __init__(self, config: type[FlatlineConfig] = FlatlineConfig):
        self.config = config

    # =========================================================================
    # Pattern detectors
    # =========================================================================

    def _identical(self, questions: list[QuestionResponse]) -> Optional[FlatlinePattern]:
        c = self.config
        if len(questions) < c.MIN_IDENTICAL:
            return None
        values = [_normalize(q.answer) for q in questions]
        ids = [q.question_id for q in questions]
        raw = [q.answer for q in questions]

        if len(set(map(repr, values))) == 1:
            return FlatlinePattern(
                type=PatternType.IDENTICAL,
                questions=ids,
                values=raw,
                confidence=min(30 + len(questions) * 15, 100),
                description=f'Identical response "{raw[0]}" given to {len(questions)} scale questions',
            )

        most_common, count = Counter(map(repr, values)).most_common(1)[0]
        ratio = count / len(values)
        if ratio >= c.MOSTLY_IDENTICAL_RATIO and len(questions) >= c.MIN_MOSTLY_IDENTICAL:
            return FlatlinePattern(
                type=PatternType.IDENTICAL,
                questions=ids,
                values=raw,
                confidence=min(30 + count * 15, 100) * ratio,
                description=f"{round(ratio * 100)}% identical responses ({most_common}) across {len(questions)} questions",
            )
        return None

    def _sequence(self, questions: list[QuestionResponse]) -> Optional[FlatlinePattern]:
        c = self.config
        if len(questions) < c.MIN_RUN:
            return None
        numbered = [(q, n) for q in questions if (n := _as_number(q.answer)) is not None]
        if len(numbered) < c.MIN_RUN:
            return None
        values = [n for _, n in numbered]

        for step, label in ((1, "Ascending"), (-1, "Descending")):
            run = _run_length(values, step)
            if run >= c.MIN_RUN:
                ratio = run / len(values)
                return FlatlinePattern(
                    type=PatternType.SEQUENCE,
                    questions=[q.question_id for q, _ in numbered[:run]],
                    values=values[:run],
                    confidence=min(40 + ratio * 40 + run * 5, 100),
                    description=f"{label} sequence pattern detected ({run}/{len(values)} questions)",
                )
        return None

    def _alternating(self, questions: list[QuestionResponse]) -> Optional[FlatlinePattern]:
        c = self.config
        if len(questions) < c.MIN_RUN:
            return None
        numbered = [(q, n) for q in questions if (n := _as_number(q.answer)) is not None]
        if len(numbered) < c.MIN_RUN:
            return None
        values = [n for _, n in numbered]

        run = _alternation_length(values)
        if run < c.MIN_RUN:
            return None
        ratio = run / len(values)
        return FlatlinePattern(
            type=PatternType.ALTERNATING,
            questions=[q.question_id for q, _ in numbered[:run]],
            values=values[:run],
            confidence=min(35 + ratio * 35 + run * 5, 100),
            description=(
                f"Alternating pattern detected between {values[0]:g} and {values[1]:g} "
                f"({run}/{len(values)} questions)"
            ),
        )

    def _extreme(self, questions: list[QuestionResponse]) -> Optional[FlatlinePattern]:
        c = self.config
        bounded = [q for q in questions if q.scale_min is not None and q.scale_max is not None]
        if len(bounded) < c.MIN_EXTREME:
            return None

        answers = [_as_number(q.answer) for q in bounded]
        at_min = sum(1 for q, a in zip(bounded, answers) if a is not None and a == q.scale_min)
        at_max = sum(1 for q, a in zip(bounded, answers) if a is not None and a == q.scale_max)

        for count, label in ((at_min, "low responses (minimum"), (at_max, "high responses (maximum")):
            ratio = count / len(bounded)
            if ratio >= c.EXTREME_RATIO:
                return FlatlinePattern(
                    type=PatternType.EXTREME,
                    questions=[q.question_id for q in bounded],
                    values=[q.answer for q in bounded],
                    confidence=ratio * 100,
                    description=f"{round(ratio * 100)}% extreme {label} scale values)",
                )
        return None

    def _multiple_choice(self, questions: list[QuestionResponse]) -> Optional[FlatlinePattern]:
        c = self.config
        if len(questions) < c.MIN_CHOICE:
            return None

        def picks_first(q: QuestionResponse) -> bool:
            first = q.options[0] if q.options else None
            return q.answer == first or q.answer in ("A", "1", 1)

        def picks_last(q: QuestionResponse) -> bool:
            if not q.options:
                return False
            return q.answer == q.options[-1] or (isinstance(q.answer, str) and q.answer == chr(64 + len(q.options)))

        for predicate, label in ((picks_first, "first"), (picks_last, "last")):
            ratio = sum(1 for q in questions if predicate(q)) / len(questions)
            if ratio >= c.CHOICE_DOMINANCE_RATIO:
                return FlatlinePattern(
                    type=PatternType.SIMILAR,
                    questions=[q.question_id for q in questions],
                    values=[q.answer for q in questions],
                    confidence=ratio * 100,
                    description=f"{round(ratio * 100)}% {label} option selection pattern",
                )
        return None

    def _text(self, questions: list[QuestionResponse]) -> Optional[FlatlinePattern]:
        c = self.config
        if len(questions) < c.MIN_TEXT:
            return None
        answers = [str(q.answer or "").lower().strip() for q in questions]

        if len(set(answers)) == 1 and answers[0]:
            return FlatlinePattern(
                type=PatternType.IDENTICAL,
                questions=[q.question_id for q in questions],
                values=[q.answer for q in questions],
                confidence=c.IDENTICAL_TEXT_CONFIDENCE,
                description=f'Identical text response "{answers[0]}" given to all text questions',
            )

        non_empty = [a for a in answers if a]
        short = [a for a in non_empty if len(a) <= c.SHORT_TEXT_LENGTH]
        if not non_empty:
            return None
        ratio = len(short) / len(non_empty)
        if ratio >= c.SHORT_TEXT_RATIO and len(short) >= c.MIN_TEXT:
            return FlatlinePattern(
                type=PatternType.SIMILAR,
                questions=[q.question_id for q in questions],
                values=[q.answer for q in questions],
                confidence=ratio * 80,
                description=f"{round(ratio * 100)}% very short text responses (<={c.SHORT_TEXT_LENGTH} characters)",
            )
        return None

    # =========================================================================
    # Scoring
    # =========================================================================

    def pattern_score(self, pattern: FlatlinePattern) -> int:
        base = self.config.BASE_SCORES.get(pattern.type.value, self.config.DEFAULT_BASE_SCORE)
        return int(base * pattern.confidence / 100 + 0.5)

    def severity(self, score: int, pattern_count: int) -> ThreatLevel:
        c = self.config
        adjusted = score + (pattern_count - 1) * c.PER_EXTRA_PATTERN
        if adjusted >= c.CRITICAL_SCORE:
            return ThreatLevel.CRITICAL
        if adjusted >= c.HIGH_SCORE:
            return ThreatLevel.HIGH
        if adjusted >= c.MEDIUM_SCORE:
            return ThreatLevel.MEDIUM
        return ThreatLevel.LOW

    @staticmethod
    def recommendations(patterns: list[FlatlinePattern], severity: ThreatLevel) -> list[str]:
        types = {p.type for p in patterns}
        recs = []
        if PatternType.IDENTICAL in types:
            recs.append("Consider flagging for manual review due to identical responses")
            recs.append("Implement attention check questions to verify engagement")
        if PatternType.SEQUENCE in types:
            recs.append("Response shows sequential pattern - likely automated or disengaged")
            recs.append("Consider excluding from analysis or requesting re-participation")
        if PatternType.ALTERNATING in types:
            recs.append("Alternating pattern detected - suggests systematic non-engagement")
            recs.append("Review survey design for potential bias or confusion")
        if PatternType.EXTREME in types:
            recs.append("Extreme response bias detected - may indicate strong opinions or disengagement")
            recs.append("Consider validating with follow-up questions")
        if severity in (ThreatLevel.CRITICAL, ThreatLevel.HIGH):
            recs.append("Strong recommendation to exclude this response from final analysis")
            recs.append("Consider implementing stronger quality checks for future respondents")
        return recs

    def analyze(self, responses: list[QuestionResponse] | tuple[QuestionResponse, ...]) -> FlatlineResult:
        """Run every pattern detector over one respondent's answers."""
        scale = [r for r in responses if r.question_type in (QuestionType.SCALE, QuestionType.RATING)]
        choice = [r for r in responses if r.question_type == QuestionType.MULTIPLE_CHOICE]
        text = [r for r in responses if r.question_type == QuestionType.TEXT]

        candidates = [
            self._identical(scale),
            self._sequence(scale),
            self._alternating(scale),
            self._extreme(scale),
            self._multiple_choice(choice),
            self._text(text),
        ]
        patterns = [p for p in candidates if p is not None]
        score = sum(self.pattern_score(p) for p in patterns)
        severity = self.severity(score, len(patterns))

        return FlatlineResult(
            is_flatline=bool(patterns),
            severity=severity,
            patterns=patterns,
            score=score,
            recommendations=self.recommendations(patterns, severity),
        )

    def batch_analyze(self, response_sets: dict[str, list[QuestionResponse]]) -> dict[str, FlatlineResult]:
        return {respondent: self.analyze(responses) for respondent, responses in response_sets.items()}

    @staticmethod
    def summarize(results: list[FlatlineResult]) -> dict[str, Any]:
        severity_breakdown = {level.value: 0 for level in ThreatLevel}
        common_patterns: Counter[str] = Counter()
        flagged = [r for r in results if r.is_flatline]
        for result in flagged:
            severity_breakdown[result.severity.value] += 1
            common_patterns.update(p.type.value for p in result.patterns)

        return {
            "total_responses": len(results),
            "flatline_detected": len(flagged),
            "flatline_rate": round(len(flagged) / len(results), 3) if results else 0.0,
            "average_score": round(sum(r.score for r in flagged) / len(flagged), 1) if flagged else 0.0,
            "severity_breakdown": severity_breakdown,
            "common_patterns": dict(common_patterns),
            "most_common_pattern": common_patterns.most_common(1)[0][0] if common_patterns else None,
        }

    async def evaluate(self, context: RequestContext) -> SignalResult:
        if not context.answers:
            return self.skipped_result("no answers submitted")

        result = self.analyze(context.answers)
        evidence = []
        if result.is_flatline:
            evidence.append("FLATLINE_DETECTED")
            evidence.extend(f"FLATLINE_{p.type.value.upper()}" for p in result.patterns)
        return SignalResult(
            kind=self.kind,
            verdict=result.severity.value if result.is_flatline else False,
            confidence=min(result.score, 100),
            evidence=list(dict.fromkeys(evidence)),
            detail=result.model_dump(mode="json"),
        )

"""
AI-generated text detection for free-text survey answers.

Combines phrase-level markers (self-identification, formal transitions,
hedging, template openers) with simple text statistics per answer and
consistency checks across a respondent's answers.
"""

import math
import re
import statistics
from collections import Counter
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from models.screening import RequestContext, SignalKind, SignalResult, ThreatLevel
from services.signal_provider import BaseSignalProvider

logger = structlog.get_logger(__name__)


class AITextConfig:
    """AI text thresholds."""

    MIN_ANSWER_LENGTH = 20

    FORMALITY_RATIO = 5
    FORMALITY_MAX_SCORE = 30
    UNIFORM_COMPLEXITY = 2
    UNIFORM_SCORE = 20
    GRAMMAR_PERFECT = 95
    GRAMMAR_MIN_WORDS = 20
    GRAMMAR_SCORE = 15
    LOW_DIVERSITY = 0.5
    LOW_DIVERSITY_MIN_WORDS = 30
    LOW_DIVERSITY_SCORE = 25
    VERBOSE_WORDS = 150
    VERBOSE_SCORE = 15
    TEMPLATE_SCORE = 25

    CONSISTENT_FORMALITY_VARIANCE = 1
    CONSISTENT_FORMALITY_SCORE = 20
    SIMILAR_LENGTH_FACTOR = 0.1
    SIMILAR_LENGTH_SCORE = 15
    REPEATED_PHRASE_SCORE = 10
    MIN_PHRASE_CHARS = 10

    DIRECT_INDICATOR_SCORE = 50
    CRITICAL_CONFIDENCE = 85
    HIGH_CONFIDENCE = 70
    MEDIUM_CONFIDENCE = 50
    AI_GENERATED_CONFIDENCE = 60


class IndicatorType(str, Enum):
    LINGUISTIC = "linguistic"
    STRUCTURAL = "structural"
    SEMANTIC = "semantic"
    STATISTICAL = "statistical"
    BEHAVIORAL = "behavioral"


AI_PATTERNS = (
    (
        re.compile(
            r"\b(as an ai|i'm an ai|i am an artificial|as a language model|i don't have personal|i cannot have opinions)\b",
            re.IGNORECASE,
        ),
        90,
        "Direct AI self-identification",
        False,
    ),
    (
        re.compile(r"\b(furthermore|moreover|additionally|consequently|nevertheless|nonetheless)\b", re.IGNORECASE),
        15,
        "Overuse of formal transitional phrases",
        True,
    ),
    (
        re.compile(r"\b(it's important to note|it's worth noting|it should be noted)\b", re.IGNORECASE),
        20,
        "AI-typical hedging phrases",
        True,
    ),
    (
        re.compile(r"\b(various|numerous|multiple|several|diverse)\b", re.IGNORECASE),
        10,
        "Generic quantifier overuse",
        True,
    ),
    (
        re.compile(r"\b(comprehensive|holistic|multifaceted|nuanced)\b", re.IGNORECASE),
        15,
        "AI-preferred descriptive terms",
        True,
    ),
)

SUSPICIOUS_TEMPLATES = (
    "I appreciate your question",
    "Thank you for asking",
    "This is an interesting question",
    "There are several factors to consider",
    "It depends on various factors",
    "In my opinion, I believe that",
    "I would say that",
)

FORMAL_WORDS = frozenset({"therefore", "consequently", "furthermore", "moreover", "additionally", "nevertheless"})

GRAMMAR_ISSUES = (
    re.compile(r"\s{2,}"),
    re.compile(r"\.\s*\."),
    re.compile(r"\s+,"),
    re.compile(r"[a-z]\.[A-Z]"),
    re.compile(r"\s+$"),
)

WORD_RE = re.compile(r"\b\w+\b")
SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


# =============================================================================
# Schemas
# =============================================================================


class AIIndicator(BaseModel):
    type: IndicatorType
    description: str
    score: float
    evidence: dict[str, Any] = Field(default_factory=dict)


class TextAnalysis(BaseModel):
    word_count: int
    sentence_count: int
    avg_words_per_sentence: float
    complexity_score: float
    formality_score: float
    repetition_score: float
    vocabulary_diversity: float


class AITextResult(BaseModel):
    is_ai_generated: bool = False
    confidence: int = Field(default=0, ge=0, le=100)
    indicators: list[AIIndicator] = Field(default_factory=list)
    risk_level: ThreatLevel = ThreatLevel.LOW
    recommendations: list[str] = Field(default_factory=list)


# =============================================================================
# Text statistics
# =============================================================================


def analyze_text(text: str) -> TextAnalysis:
    words = WORD_RE.findall(text.lower())
    sentences = [s for s in SENTENCE_SPLIT_RE.split(text) if s.strip()]

    diversity = len(set(words)) / len(words) if words else 0.0
    avg_per_sentence = len(words) / len(sentences) if sentences else 0.0

    lengths = [len(WORD_RE.findall(s)) for s in sentences]
    complexity = math.sqrt(statistics.pvariance(lengths)) if lengths else 0.0

    formal = sum(1 for w in words if w in FORMAL_WORDS)
    formality = formal / len(words) * 100 if words else 0.0

    repeated = sum(1 for count in Counter(words).values() if count > 1)
    repetition = repeated / len(words) * 100 if words else 0.0

    return TextAnalysis(
        word_count=len(words),
        sentence_count=len(sentences),
        avg_words_per_sentence=avg_per_sentence,
        complexity_score=complexity,
        formality_score=formality,
        repetition_score=repetition,
        vocabulary_diversity=diversity,
    )


def grammar_quality(text: str) -> int:
    """100 minus 5 points per mechanical punctuation/spacing issue."""
    score = 100
    for issue in GRAMMAR_ISSUES:
        score -= len(issue.findall(text)) * 5
    return max(score, 0)


def find_repeated_phrases(texts: list[str], min_chars: int = AITextConfig.MIN_PHRASE_CHARS) -> list[str]:
    """3-5 word phrases that appear in more than one of the texts."""
    seen_in: dict[str, int] = {}
    repeated: list[str] = []
    for index, text in enumerate(texts):
        words = WORD_RE.findall(text.lower())
        for i in range(len(words) - 2):
            for length in range(3, min(5, len(words) - i) + 1):
                phrase = " ".join(words[i : i + length])
                if len(phrase) <= min_chars:
                    continue
                first = seen_in.setdefault(phrase, index)
                if first != index and phrase not in repeated:
                    repeated.append(phrase)
    return repeated


# =============================================================================
# Detector
# =============================================================================


class AIGenerationDetector(BaseSignalProvider):
    """Score free-text answers for signs of machine generation."""

    kind = SignalKind.AI_TEXT

    def __init__(self, config: type[AITextConfig] = AITextConfig):
        self.config = config

    def _response_indicators(self, text: str, analysis: TextAnalysis) -> list[AIIndicator]:
        c = self.config
        indicators: list[AIIndicator] = []

        for regex, score, description, scaled in AI_PATTERNS:
            matches = [m.group(0) for m in regex.finditer(text)]
            if not matches:
                continue
            count = len(matches) if scaled else 1
            indicators.append(
                AIIndicator(
                    type=IndicatorType.LINGUISTIC,
                    description=description,
                    score=score * count,
                    evidence={"matches": matches},
                )
            )

        lowered = text.lower()
        for template in SUSPICIOUS_TEMPLATES:
            if template.lower() in lowered:
                indicators.append(
                    AIIndicator(
                        type=IndicatorType.STRUCTURAL,
                        description="Uses common AI response template",
                        score=c.TEMPLATE_SCORE,
                        evidence={"template": template},
                    )
                )

        if analysis.formality_score > c.FORMALITY_RATIO:
            indicators.append(
                AIIndicator(
                    type=IndicatorType.LINGUISTIC,
                    description="Unusually high formality for survey response",
                    score=min(analysis.formality_score * 2, c.FORMALITY_MAX_SCORE),
                    evidence={"formality_score": analysis.formality_score},
                )
            )

        if analysis.complexity_score < c.UNIFORM_COMPLEXITY and analysis.sentence_count > 2:
            indicators.append(
                AIIndicator(
                    type=IndicatorType.STRUCTURAL,
                    description="Unusually uniform sentence structure",
                    score=c.UNIFORM_SCORE,
                    evidence={"complexity_score": analysis.complexity_score},
                )
            )

        grammar = grammar_quality(text)
        if grammar > c.GRAMMAR_PERFECT and analysis.word_count > c.GRAMMAR_MIN_WORDS:
            indicators.append(
                AIIndicator(
                    type=IndicatorType.LINGUISTIC,
                    description="Suspiciously perfect grammar and punctuation",
                    score=c.GRAMMAR_SCORE,
                    evidence={"grammar_score": grammar},
                )
            )

        if analysis.vocabulary_diversity < c.LOW_DIVERSITY and analysis.word_count > c.LOW_DIVERSITY_MIN_WORDS:
            indicators.append(
                AIIndicator(
                    type=IndicatorType.STATISTICAL,
                    description="Low vocabulary diversity suggests AI generation",
                    score=c.LOW_DIVERSITY_SCORE,
                    evidence={"vocabulary_diversity": analysis.vocabulary_diversity},
                )
            )

        if analysis.word_count > c.VERBOSE_WORDS:
            indicators.append(
                AIIndicator(
                    type=IndicatorType.BEHAVIORAL,
                    description="Unusually verbose response for survey context",
                    score=c.VERBOSE_SCORE,
                    evidence={"word_count": analysis.word_count},
                )
            )

        return indicators

    def _cross_indicators(self, texts: list[str], analyses: list[TextAnalysis]) -> list[AIIndicator]:
        c = self.config
        indicators: list[AIIndicator] = []
        if len(texts) < 2:
            return indicators

        formality = [a.formality_score for a in analyses]
        formality_variance = statistics.pvariance(formality)
        if formality_variance < c.CONSISTENT_FORMALITY_VARIANCE and len(formality) > 2:
            indicators.append(
                AIIndicator(
                    type=IndicatorType.STATISTICAL,
                    description="Suspiciously consistent formality across responses",
                    score=c.CONSISTENT_FORMALITY_SCORE,
                    evidence={"formality_variance": formality_variance, "scores": formality},
                )
            )

        word_counts = [a.word_count for a in analyses]
        length_variance = statistics.pvariance(word_counts)
        avg_length = statistics.fmean(word_counts)
        if length_variance < avg_length * c.SIMILAR_LENGTH_FACTOR and len(word_counts) > 2:
            indicators.append(
                AIIndicator(
                    type=IndicatorType.BEHAVIORAL,
                    description="Unusually similar response lengths",
                    score=c.SIMILAR_LENGTH_SCORE,
                    evidence={"length_variance": length_variance, "avg_length": avg_length},
                )
            )

        phrases = find_repeated_phrases(texts, c.MIN_PHRASE_CHARS)
        if phrases:
            indicators.append(
                AIIndicator(
                    type=IndicatorType.SEMANTIC,
                    description="Identical phrases repeated across multiple responses",
                    score=len(phrases) * c.REPEATED_PHRASE_SCORE,
                    evidence={"repeated_phrases": phrases},
                )
            )

        return indicators

    def risk_level(self, confidence: int, indicators: list[AIIndicator]) -> ThreatLevel:
        c = self.config
        if any(i.score >= c.DIRECT_INDICATOR_SCORE for i in indicators) or confidence >= c.CRITICAL_CONFIDENCE:
            return ThreatLevel.CRITICAL
        if confidence >= c.HIGH_CONFIDENCE:
            return ThreatLevel.HIGH
        if confidence >= c.MEDIUM_CONFIDENCE:
            return ThreatLevel.MEDIUM
        return ThreatLevel.LOW

    @staticmethod
    def recommendations(indicators: list[AIIndicator], risk: ThreatLevel) -> list[str]:
        types = {i.type for i in indicators}
        recs = []
        if risk in (ThreatLevel.CRITICAL, ThreatLevel.HIGH):
            recs.append("Strongly recommend excluding this response from analysis")
            recs.append("Consider implementing additional verification steps")
        if any(i.type == IndicatorType.LINGUISTIC and i.score > 30 for i in indicators):
            recs.append("Response shows clear linguistic markers of AI generation")
        if IndicatorType.BEHAVIORAL in types:
            recs.append("Response patterns inconsistent with typical human survey behavior")
        if IndicatorType.STRUCTURAL in types:
            recs.append("Response structure suggests automated generation")
        recs.append("Consider manual review for quality assurance")
        return recs

    def analyze(self, texts: list[str]) -> AITextResult:
        """Score a respondent's free-text answers as a set."""
        analyses = [analyze_text(t) for t in texts]
        indicators: list[AIIndicator] = []
        for text, analysis in zip(texts, analyses):
            indicators.extend(self._response_indicators(text, analysis))
        indicators.extend(self._cross_indicators(texts, analyses))

        confidence = int(min(sum(i.score for i in indicators), 100))
        risk = self.risk_level(confidence, indicators)
        return AITextResult(
            is_ai_generated=confidence >= self.config.AI_GENERATED_CONFIDENCE,
            confidence=confidence,
            indicators=indicators,
            risk_level=risk,
            recommendations=self.recommendations(indicators, risk),
        )

    def batch_analyze(self, response_sets: dict[str, list[str]]) -> dict[str, AITextResult]:
        return {respondent: self.analyze(texts) for respondent, texts in response_sets.items()}

    @staticmethod
    def summarize(results: list[AITextResult]) -> dict[str, Any]:
        risk_breakdown = {level.value: 0 for level in ThreatLevel}
        indicator_types: Counter[str] = Counter()
        for result in results:
            risk_breakdown[result.risk_level.value] += 1
            indicator_types.update(i.type.value for i in result.indicators)
        flagged = sum(1 for r in results if r.is_ai_generated)
        return {
            "total_responses": len(results),
            "ai_generated": flagged,
            "ai_generated_rate": round(flagged / len(results), 3) if results else 0.0,
            "average_confidence": round(statistics.fmean(r.confidence for r in results), 1) if results else 0.0,
            "risk_breakdown": risk_breakdown,
            "indicator_types": dict(indicator_types),
        }

    async def evaluate(self, context: RequestContext) -> SignalResult:
        texts = context.text_answers(min_length=self.config.MIN_ANSWER_LENGTH)
        if not texts:
            return self.skipped_result("no free-text answers")

        result = self.analyze(texts)
        evidence = []
        if result.is_ai_generated:
            evidence.append("AI_GENERATED_TEXT")
        if any(i.description == "Direct AI self-identification" for i in result.indicators):
            evidence.append("AI_SELF_IDENTIFICATION")
        return SignalResult(
            kind=self.kind,
            verdict=result.risk_level.value,
            confidence=result.confidence,
            evidence=evidence,
            detail=result.model_dump(mode="json"),
        )

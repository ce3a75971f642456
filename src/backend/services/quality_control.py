"""
Response quality control.

Post-submission review of a completed survey response. Reuses the domain,
honeypot, flatline and AI-text detectors, adds behavior and speed checks,
and produces a QC score with a recommendation to flag or exclude the
response from analysis.
"""

from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from models.screening import QuestionResponse, QuestionType, ThreatLevel
from services.ai_text_detection import AIGenerationDetector
from services.domain_blacklist import DomainBlacklistChecker
from services.flatline_detection import FlatlineAnalyzer
from services.honeypot_service import HoneypotValidator

logger = structlog.get_logger(__name__)


class QualityControlConfig:
    """QC scoring constants."""

    BLACKLISTED_DOMAIN_SCORE = 30
    HONEYPOT_WEIGHT = 0.5
    AI_TEXT_WEIGHT = 0.8
    AI_TEXT_MIN_LENGTH = 20

    MINIMAL_MOUSE_MOVEMENTS = 10
    MINIMAL_MOUSE_SCORE = 20
    MINIMAL_KEYSTROKES = 5
    MINIMAL_KEYBOARD_SCORE = 15
    SUSPICIOUS_PATTERN_SCORE = 10
    LOW_ACTIVITY_RATE = 0.1
    LOW_ACTIVITY_SCORE = 25
    BEHAVIOR_MAX_SCORE = 50

    EXTREMELY_FAST_SECONDS = 2
    EXTREMELY_FAST_SCORE = 50
    TOO_FAST_SECONDS = 5
    TOO_FAST_SCORE = 30
    TOO_SLOW_SECONDS = 600
    TOO_SLOW_SCORE = 10

    CRITICAL_SCORE = 80
    HIGH_SCORE = 60
    HIGH_FLAG_COUNT = 5
    MEDIUM_SCORE = 30
    MEDIUM_FLAG_COUNT = 3
    CRITICAL_FLAG_MARKERS = ("AI_GENERATED:CRITICAL", "BLACKLISTED_DOMAIN", "EXTREMELY_FAST")

    FLAG_SCORE = 30
    FLAG_COUNT = 3
    EXCLUDE_SCORE = 60


class BehaviorSummary(BaseModel):
    """Client-side activity counters collected during the survey."""

    mouse_movements: int = Field(default=0, ge=0)
    keyboard_events: int = Field(default=0, ge=0)
    suspicious_patterns: list[str] = Field(default_factory=list)
    activity_rate: Optional[float] = Field(default=None, ge=0)


class QualityCheckInput(BaseModel):
    answers: list[QuestionResponse]
    form_fields: dict[str, Any] = Field(default_factory=dict)
    honeypot_session_id: Optional[str] = None
    time_spent_seconds: Optional[float] = Field(default=None, ge=0)
    behavior: Optional[BehaviorSummary] = None


class QualityReport(BaseModel):
    risk_score: float = 0
    risk_level: ThreatLevel = ThreatLevel.LOW
    flags: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    should_flag: bool = False
    should_exclude: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class QualityControlService:
    """Run all post-submission checks on a survey response."""

    def __init__(
        self,
        domains: DomainBlacklistChecker,
        honeypots: HoneypotValidator,
        flatline: FlatlineAnalyzer,
        ai_text: AIGenerationDetector,
        config: type[QualityControlConfig] = QualityControlConfig,
    ):
        self.domains = domains
        self.honeypots = honeypots
        self.flatline = flatline
        self.ai_text = ai_text
        self.config = config

    @staticmethod
    def _emails(submission: QualityCheckInput) -> list[str]:
        values = [v for v in submission.form_fields.values() if isinstance(v, str)]
        values.extend(a.answer for a in submission.answers if isinstance(a.answer, str))
        return [v.strip() for v in values if "@" in v and " " not in v.strip()]

    def analyze_behavior(self, behavior: BehaviorSummary) -> tuple[float, list[str]]:
        c = self.config
        flags: list[str] = []
        score = 0
        if behavior.mouse_movements < c.MINIMAL_MOUSE_MOVEMENTS:
            flags.append("MINIMAL_MOUSE_MOVEMENT")
            score += c.MINIMAL_MOUSE_SCORE
        if behavior.keyboard_events < c.MINIMAL_KEYSTROKES:
            flags.append("MINIMAL_KEYBOARD_ACTIVITY")
            score += c.MINIMAL_KEYBOARD_SCORE
        if behavior.suspicious_patterns:
            flags.append("SUSPICIOUS_BEHAVIOR_PATTERNS")
            score += len(behavior.suspicious_patterns) * c.SUSPICIOUS_PATTERN_SCORE
        if behavior.activity_rate is not None and behavior.activity_rate < c.LOW_ACTIVITY_RATE:
            flags.append("LOW_ACTIVITY_RATE")
            score += c.LOW_ACTIVITY_SCORE
        return min(score, c.BEHAVIOR_MAX_SCORE), flags

    def analyze_speed(self, seconds_per_question: float) -> tuple[float, Optional[str]]:
        c = self.config
        if seconds_per_question < c.EXTREMELY_FAST_SECONDS:
            return c.EXTREMELY_FAST_SCORE, "EXTREMELY_FAST"
        if seconds_per_question < c.TOO_FAST_SECONDS:
            return c.TOO_FAST_SCORE, "TOO_FAST"
        if seconds_per_question > c.TOO_SLOW_SECONDS:
            return c.TOO_SLOW_SCORE, "TOO_SLOW"
        return 0, None

    def risk_level(self, score: float, flags: list[str]) -> ThreatLevel:
        c = self.config
        if score >= c.CRITICAL_SCORE or any(marker in f for f in flags for marker in c.CRITICAL_FLAG_MARKERS):
            return ThreatLevel.CRITICAL
        if score >= c.HIGH_SCORE or len(flags) >= c.HIGH_FLAG_COUNT:
            return ThreatLevel.HIGH
        if score >= c.MEDIUM_SCORE or len(flags) >= c.MEDIUM_FLAG_COUNT:
            return ThreatLevel.MEDIUM
        return ThreatLevel.LOW

    async def analyze(self, submission: QualityCheckInput) -> QualityReport:
        c = self.config
        score: float = 0
        flags: list[str] = []
        recommendations: list[str] = []
        details: dict[str, Any] = {}

        # Domains
        emails = self._emails(submission)
        if emails:
            results = await self.domains.check_emails(emails)
            blacklisted = [r for r in results.values() if r.is_blacklisted]
            for result in blacklisted:
                category = result.category.value if result.category else "unknown"
                flags.append(f"BLACKLISTED_DOMAIN:{category}")
                score += c.BLACKLISTED_DOMAIN_SCORE
            if blacklisted:
                recommendations.append("Suspicious email domain detected - consider manual verification")
            details["domain_check"] = {
                "domains_checked": [r.domain for r in results.values()],
                "blacklisted_count": len(blacklisted),
            }

        # Honeypots
        if submission.honeypot_session_id:
            honeypot = await self.honeypots.validate(submission.honeypot_session_id, submission.form_fields)
            if honeypot.triggered:
                flags.extend(honeypot.flags)
                score += honeypot.confidence * c.HONEYPOT_WEIGHT
                recommendations.append("Response patterns suggest automated submission")
            details["honeypot_check"] = honeypot.model_dump(mode="json")

        # Flatlining
        flatline = self.flatline.analyze(submission.answers)
        if flatline.is_flatline:
            flags.append(f"FLATLINE:{flatline.severity.value}:{len(flatline.patterns)}_patterns")
            score += flatline.score
            recommendations.extend(flatline.recommendations)
        details["flatline_check"] = flatline.model_dump(mode="json")

        # AI text
        texts = [
            a.answer
            for a in submission.answers
            if a.question_type == QuestionType.TEXT
            and isinstance(a.answer, str)
            and len(a.answer) > c.AI_TEXT_MIN_LENGTH
        ]
        if texts:
            ai = self.ai_text.analyze(texts)
            if ai.is_ai_generated:
                flags.append(f"AI_GENERATED:{ai.risk_level.value}:confidence_{ai.confidence}")
                score += ai.confidence * c.AI_TEXT_WEIGHT
                recommendations.extend(ai.recommendations)
            details["ai_check"] = ai.model_dump(mode="json")

        # Behavior
        if submission.behavior is not None:
            behavior_score, behavior_flags = self.analyze_behavior(submission.behavior)
            flags.extend(behavior_flags)
            score += behavior_score
            if behavior_flags:
                recommendations.append("Suspicious behavioral patterns detected")
            details["behavior_check"] = {"score": behavior_score, "flags": behavior_flags}

        # Speed
        if submission.time_spent_seconds is not None and submission.answers:
            per_question = submission.time_spent_seconds / len(submission.answers)
            speed_score, reason = self.analyze_speed(per_question)
            if reason:
                flags.append(f"SPEED_ISSUE:{reason}")
                score += speed_score
            details["speed_check"] = {"seconds_per_question": round(per_question, 2), "reason": reason}

        level = self.risk_level(score, flags)
        should_flag = score >= c.FLAG_SCORE or len(flags) >= c.FLAG_COUNT
        should_exclude = score >= c.EXCLUDE_SCORE or level == ThreatLevel.CRITICAL
        if should_exclude:
            recommendations.append("Exclude this response from final analysis")
        elif should_flag:
            recommendations.append("Recommend manual review before including in analysis")

        report = QualityReport(
            risk_score=round(score, 1),
            risk_level=level,
            flags=flags,
            recommendations=list(dict.fromkeys(recommendations)),
            should_flag=should_flag,
            should_exclude=should_exclude,
            details=details,
        )
        logger.info(
            "quality_check_complete",
            risk_score=report.risk_score,
            risk_level=level.value,
            flag_count=len(flags),
            should_exclude=should_exclude,
        )
        return report

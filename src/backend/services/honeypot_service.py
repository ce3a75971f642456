"""
Honeypot form fields.

Decoy inputs hidden from humans with CSS. A random subset is issued per
session; at submission time any decoy that was filled, checked, selected or
modified marks the submission as automated. Session state is one-shot: it
is removed by the first validation and swept after a TTL if never used.
"""

import json
import secrets
import statistics
import time
from enum import Enum
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from core.security import generate_secure_token
from models.screening import RequestContext, SignalKind, SignalResult, ThreatLevel
from services.result_cache import HONEYPOT_SESSIONS, ResultCache
from services.signal_provider import BaseSignalProvider

logger = structlog.get_logger(__name__)


class HoneypotConfig:
    """Honeypot scoring constants."""

    DEFAULT_FIELD_COUNT = 3

    FIELD_WEIGHTS = {"text": 25, "checkbox": 30, "select": 20, "hidden": 40}
    DEFAULT_FIELD_WEIGHT = 15

    TOO_FAST_MS = 5000
    TOO_FAST_PENALTY = 30
    EXTREMELY_FAST_MS = 2000
    EXTREMELY_FAST_PENALTY = 50

    CRITICAL_SCORE = 80
    HIGH_SCORE = 50
    MEDIUM_SCORE = 25

    INTERACTION_PENALTY = 40
    REGULAR_TIMING_PENALTY = 25
    REGULAR_TIMING_VARIANCE = 100
    UNPARSEABLE_TRACE_PENALTY = 10


class FieldType(str, Enum):
    TEXT = "text"
    CHECKBOX = "checkbox"
    SELECT = "select"
    HIDDEN = "hidden"


class FieldStyling(str, Enum):
    INVISIBLE = "invisible"
    OFFSCREEN = "offscreen"
    TRANSPARENT = "transparent"
    HIDDEN = "hidden"


class HoneypotField(BaseModel):
    """A decoy input."""

    id: str
    field_name: str
    type: FieldType
    label: Optional[str] = None
    placeholder: Optional[str] = None
    options: list[str] = Field(default_factory=list)
    expected_answer: str | bool = ""
    trigger_flags: list[str]
    styling: FieldStyling

    def is_triggered(self, value: Any) -> bool:
        if self.type == FieldType.TEXT:
            return value is not None and str(value).strip() != ""
        if self.type == FieldType.CHECKBOX:
            if isinstance(value, str):
                return value.strip().lower() not in ("", "false", "0", "off")
            return bool(value)
        if self.type == FieldType.SELECT:
            return value is not None and value != ""
        if self.type == FieldType.HIDDEN:
            return value is not None and value != "" and value != self.expected_answer
        return False


HONEYPOT_FIELDS: tuple[HoneypotField, ...] = (
    HoneypotField(
        id="hp_email_confirm",
        field_name="email_confirmation",
        type=FieldType.TEXT,
        label="Confirm your email address",
        placeholder="Enter your email again",
        trigger_flags=["BOT_FILLED_HONEYPOT", "EMAIL_CONFIRMATION_FILLED"],
        styling=FieldStyling.INVISIBLE,
    ),
    HoneypotField(
        id="hp_website",
        field_name="website_url",
        type=FieldType.TEXT,
        label="Website URL (leave blank)",
        placeholder="http://",
        trigger_flags=["BOT_FILLED_WEBSITE", "SPAM_PATTERN"],
        styling=FieldStyling.OFFSCREEN,
    ),
    HoneypotField(
        id="hp_phone_verify",
        field_name="phone_verification",
        type=FieldType.TEXT,
        label="Phone verification",
        placeholder="Enter verification code",
        trigger_flags=["BOT_FILLED_PHONE", "FAKE_VERIFICATION"],
        styling=FieldStyling.TRANSPARENT,
    ),
    HoneypotField(
        id="hp_checkbox_invisible",
        field_name="terms_extra",
        type=FieldType.CHECKBOX,
        label="I agree to receive promotional emails",
        expected_answer=False,
        trigger_flags=["BOT_CHECKED_HONEYPOT", "AUTOMATED_INTERACTION"],
        styling=FieldStyling.INVISIBLE,
    ),
    HoneypotField(
        id="hp_select_hidden",
        field_name="preferred_contact",
        type=FieldType.SELECT,
        label="Preferred contact method",
        options=["Email", "Phone", "SMS", "Mail"],
        trigger_flags=["BOT_SELECTED_OPTION", "AUTOMATED_FORM_FILL"],
        styling=FieldStyling.HIDDEN,
    ),
    HoneypotField(
        id="hp_timestamp_check",
        field_name="form_timestamp",
        type=FieldType.HIDDEN,
        trigger_flags=["TIMING_ANOMALY", "TOO_FAST_SUBMISSION"],
        styling=FieldStyling.HIDDEN,
    ),
    HoneypotField(
        id="hp_math_question",
        field_name="security_check",
        type=FieldType.TEXT,
        label="What is 5 + 3? (Security check)",
        placeholder="Enter the answer",
        trigger_flags=["BOT_ANSWERED_MATH", "FAILED_HUMAN_TEST"],
        styling=FieldStyling.OFFSCREEN,
    ),
)

CSS_RULES = {
    FieldStyling.INVISIBLE: "opacity: 0; visibility: hidden;",
    FieldStyling.OFFSCREEN: "position: absolute; left: -9999px; top: -9999px;",
    FieldStyling.TRANSPARENT: "opacity: 0; position: absolute; z-index: -1;",
    FieldStyling.HIDDEN: "display: none;",
}


# =============================================================================
# Schemas
# =============================================================================


class HoneypotSession(BaseModel):
    """Server-side record of what was issued."""

    session_id: str
    fields: list[HoneypotField]
    issued_at: float


class HoneypotIssue(BaseModel):
    """What the form renderer needs."""

    session_id: str
    fields: list[HoneypotField]
    css: str


class HoneypotResult(BaseModel):
    """Outcome of validating a submission."""

    session_found: bool = True
    triggered: bool = False
    triggered_fields: list[str] = Field(default_factory=list)
    suspicion_level: ThreatLevel = ThreatLevel.LOW
    flags: list[str] = Field(default_factory=list)
    score: int = 0
    confidence: int = Field(default=0, ge=0, le=100)
    elapsed_ms: Optional[float] = None


class InteractionAnalysis(BaseModel):
    suspicious: bool = False
    reasons: list[str] = Field(default_factory=list)
    confidence: int = Field(default=0, ge=0, le=100)


def suspicion_level(score: int, config: type[HoneypotConfig] = HoneypotConfig) -> ThreatLevel:
    if score >= config.CRITICAL_SCORE:
        return ThreatLevel.CRITICAL
    if score >= config.HIGH_SCORE:
        return ThreatLevel.HIGH
    if score >= config.MEDIUM_SCORE:
        return ThreatLevel.MEDIUM
    return ThreatLevel.LOW


def generate_css(fields: list[HoneypotField]) -> str:
    rules = [f'[name="{f.field_name}"], #{f.field_name} {{ {CSS_RULES[f.styling]} }}' for f in fields]
    return "\n".join(rules)


# =============================================================================
# Service
# =============================================================================


class HoneypotValidator(BaseSignalProvider):
    """Issue decoy fields per session and validate submissions against them."""

    kind = SignalKind.HONEYPOT

    def __init__(
        self,
        cache: ResultCache,
        pool: tuple[HoneypotField, ...] = HONEYPOT_FIELDS,
        config: type[HoneypotConfig] = HoneypotConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.pool = pool
        self.config = config
        self._clock = clock
        self._random = secrets.SystemRandom()

    async def issue(self, session_id: Optional[str] = None, count: Optional[int] = None) -> HoneypotIssue:
        """Pick a random subset of decoys for a session and remember when they were issued."""
        session_id = session_id or generate_secure_token()
        count = count if count is not None else self.config.DEFAULT_FIELD_COUNT
        fields = self._random.sample(list(self.pool), min(count, len(self.pool)))

        session = HoneypotSession(session_id=session_id, fields=fields, issued_at=self._clock())
        await self.cache.put(HONEYPOT_SESSIONS, session_id, session)
        logger.debug("honeypot_issued", session_id=session_id[:8], fields=[f.id for f in fields])
        return HoneypotIssue(session_id=session_id, fields=fields, css=generate_css(fields))

    async def generate_css(self, session_id: str) -> Optional[str]:
        """CSS hiding the fields issued to a session, or None for an unknown session."""
        session = await self.cache.get(HONEYPOT_SESSIONS, session_id)
        if session is None:
            return None
        return generate_css(session.fields)

    async def validate(self, session_id: str, form_data: dict[str, Any]) -> HoneypotResult:
        """
        Check a submission against the decoys issued to its session.

        The session is consumed: a second validation of the same session
        finds nothing and reports NO_HONEYPOT_DATA.
        """
        session: Optional[HoneypotSession] = await self.cache.pop(HONEYPOT_SESSIONS, session_id)
        if session is None:
            return HoneypotResult(session_found=False, flags=["NO_HONEYPOT_DATA"])

        triggered: list[str] = []
        flags: list[str] = []
        score = 0
        for field in session.fields:
            if field.is_triggered(form_data.get(field.field_name)):
                triggered.append(field.id)
                flags.extend(field.trigger_flags)
                score += self.config.FIELD_WEIGHTS.get(field.type.value, self.config.DEFAULT_FIELD_WEIGHT)

        elapsed_ms = (self._clock() - session.issued_at) * 1000
        if elapsed_ms < self.config.TOO_FAST_MS:
            flags.append("TOO_FAST_SUBMISSION")
            score += self.config.TOO_FAST_PENALTY
        if elapsed_ms < self.config.EXTREMELY_FAST_MS:
            flags.append("EXTREMELY_FAST_SUBMISSION")
            score += self.config.EXTREMELY_FAST_PENALTY

        result = HoneypotResult(
            triggered=bool(triggered) or score > 0,
            triggered_fields=triggered,
            suspicion_level=suspicion_level(score, self.config),
            flags=list(dict.fromkeys(flags)),
            score=score,
            confidence=min(score, 100),
            elapsed_ms=round(elapsed_ms, 1),
        )
        if result.triggered:
            logger.info(
                "honeypot_triggered",
                session_id=session_id[:8],
                fields=triggered,
                level=result.suspicion_level.value,
            )
        return result

    def analyze_interaction_patterns(self, interaction_data: str | dict | None) -> InteractionAnalysis:
        """
        Score client-reported interactions with decoy fields.

        ``interaction_data`` maps field names to lists of ``{"type", "timestamp"}``
        events, either as a dict or as its JSON encoding.
        """
        reasons: list[str] = []
        score = 0
        try:
            if isinstance(interaction_data, dict):
                interactions = interaction_data
            else:
                interactions = json.loads(interaction_data or "{}")
            for field_name, events in interactions.items():
                if not events:
                    continue
                reasons.append(f"Interaction detected with honeypot field: {field_name}")
                score += self.config.INTERACTION_PENALTY
                timestamps = [float(e["timestamp"]) for e in events]
                if len(timestamps) > 1:
                    intervals = [b - a for a, b in zip(timestamps, timestamps[1:])]
                    if statistics.pvariance(intervals) < self.config.REGULAR_TIMING_VARIANCE:
                        reasons.append("Suspiciously regular interaction timing detected")
                        score += self.config.REGULAR_TIMING_PENALTY
        except (ValueError, TypeError, KeyError, AttributeError):
            reasons.append("Failed to parse interaction data")
            score += self.config.UNPARSEABLE_TRACE_PENALTY

        return InteractionAnalysis(suspicious=score > 0, reasons=reasons, confidence=min(score, 100))

    async def clean_expired_sessions(self) -> int:
        removed = await self.cache.sweep(HONEYPOT_SESSIONS)
        if removed:
            logger.info("honeypot_sessions_expired", removed=removed)
        return removed

    async def get_stats(self) -> dict[str, Any]:
        field_types: dict[str, int] = {}
        for field in self.pool:
            field_types[field.type.value] = field_types.get(field.type.value, 0) + 1
        return {
            "total_fields": len(self.pool),
            "active_sessions": len(await self.cache.keys(HONEYPOT_SESSIONS)),
            "field_types": field_types,
        }

    async def evaluate(self, context: RequestContext) -> SignalResult:
        if not context.honeypot_session_id:
            return self.skipped_result("no honeypot session")

        result = await self.validate(context.honeypot_session_id, context.form_fields)
        evidence = list(result.flags)
        if result.triggered:
            evidence.insert(0, "HONEYPOT_TRIGGERED")
        return SignalResult(
            kind=self.kind,
            verdict=result.triggered,
            confidence=result.confidence,
            evidence=evidence,
            detail=result.model_dump(mode="json"),
        )

"""
Human-verification challenges.

A challenge is issued with a random type (arithmetic, ordering or visual
selection), signed with an HMAC over its id, type, data, timestamp and the
client fingerprint, and remembered server-side until it is answered or
expires. Answers are accepted once: the stored challenge is removed by the
first verification attempt, successful or not.

Requests may instead carry a third-party captcha token, which a pluggable
CaptchaTokenVerifier turns into a score between 0 and 1.
"""

import json
import re
import secrets
import time
from enum import Enum
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel, Field

from core.config import settings
from core.exceptions import ProviderUnavailableError
from core.security import generate_secure_token, sign_fields, signatures_match
from models.screening import ChallengeSubmission, RequestContext, SignalKind, SignalResult
from services.result_cache import CHALLENGE_TOKENS, ResultCache
from services.signal_provider import BaseSignalProvider

logger = structlog.get_logger(__name__)


class ChallengeConfig:
    """Challenge verification constants."""

    MIN_SOLVE_TIME_MS = 500
    # Stored tokens outlive the max age so late answers report EXPIRED
    STORAGE_TTL_FACTOR = 2
    FINGERPRINT_PATTERN = r"^[A-Za-z0-9_-]{16,128}$"

    PASSED_SCORE = 1.0
    FAILED_SCORE = 0.0

    ARITHMETIC_MAX_OPERAND = 20
    VISUAL_GRID_SIZE = 9
    VISUAL_MIN_TARGETS = 2
    VISUAL_MAX_TARGETS = 4


class ChallengeType(str, Enum):
    ARITHMETIC = "arithmetic"
    ORDERING = "ordering"
    VISUAL_SELECTION = "visual_selection"


class VerificationFailure(str, Enum):
    """Why a challenge answer was rejected."""

    AUTOMATED = "AUTOMATED"
    EMPTY_ANSWER = "EMPTY_ANSWER"
    INVALID_FINGERPRINT = "INVALID_FINGERPRINT"
    UNKNOWN_CHALLENGE = "UNKNOWN_CHALLENGE"
    HASH_MISMATCH = "HASH_MISMATCH"
    EXPIRED = "EXPIRED"
    WRONG_ANSWER = "WRONG_ANSWER"


ORDERING_SETS = (
    ("Arrange these numbers from smallest to largest", ("5", "2", "9", "1", "7"), "12579"),
    ("Arrange these words in alphabetical order", ("dog", "cat", "bird", "fish", "ant"), "antbirddogcatfish"),
)

VISUAL_SHAPES = ("circle", "square", "triangle", "star")


# =============================================================================
# Schemas
# =============================================================================


class IssuedChallenge(BaseModel):
    """Challenge as sent to the client. Never carries the answer."""

    challenge_id: str
    type: ChallengeType
    prompt: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: int
    hash: str


class StoredChallenge(BaseModel):
    challenge: IssuedChallenge
    answer: str
    fingerprint: str


class ChallengeVerification(BaseModel):
    passed: bool
    score: float = Field(ge=0, le=1)
    failure: Optional[VerificationFailure] = None
    challenge_type: Optional[ChallengeType] = None
    solve_time_ms: Optional[float] = None


def _canonical(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def challenge_hash(challenge_id: str, kind: ChallengeType, data: dict[str, Any], timestamp: int, fingerprint: str) -> str:
    return sign_fields(challenge_id, kind.value, _canonical(data), timestamp, fingerprint)


def normalize_answer(answer: str) -> str:
    return re.sub(r"[\s,]+", "", answer).lower()


# =============================================================================
# External captcha tokens
# =============================================================================


@runtime_checkable
class CaptchaTokenVerifier(Protocol):
    """Turns a third-party captcha token into a score in [0, 1]."""

    async def verify(self, token: str, remote_ip: Optional[str] = None) -> float: ...


class SiteVerifyCaptchaVerifier:
    """hCaptcha / Turnstile / reCAPTCHA compatible ``siteverify`` client."""

    def __init__(
        self,
        url: Optional[str] = None,
        secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.CAPTCHA_VERIFY_URL
        self.secret = secret or settings.CAPTCHA_SECRET_KEY
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.secret)

    async def verify(self, token: str, remote_ip: Optional[str] = None) -> float:
        if not self.is_configured:
            raise ProviderUnavailableError("captcha", "siteverify not configured")

        form = {"secret": str(self.secret), "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=settings.LOOKUP_HTTP_TIMEOUT_SECONDS
            ) as client:
                response = await client.post(str(self.url), data=form)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError("captcha", str(e)) from e
        if response.status_code != 200:
            raise ProviderUnavailableError("captcha", f"status {response.status_code}")

        payload = response.json()
        if not payload.get("success"):
            logger.info("captcha_token_rejected", errors=payload.get("error-codes", []))
            return 0.0
        # Score-based providers report one; checkbox providers only report success
        return max(0.0, min(float(payload.get("score", 1.0)), 1.0))


# =============================================================================
# Verifier
# =============================================================================


class ChallengeVerifier(BaseSignalProvider):
    """Issue signed challenges and verify answers to them."""

    kind = SignalKind.CHALLENGE

    def __init__(
        self,
        cache: ResultCache,
        token_verifier: Optional[CaptchaTokenVerifier] = None,
        config: type[ChallengeConfig] = ChallengeConfig,
        max_age_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.token_verifier = token_verifier
        self.config = config
        self.max_age_seconds = max_age_seconds if max_age_seconds is not None else settings.CHALLENGE_MAX_AGE_SECONDS
        self._clock = clock
        self._random = secrets.SystemRandom()
        self._fingerprint_re = re.compile(config.FINGERPRINT_PATTERN)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def _arithmetic(self) -> tuple[str, dict[str, Any], str]:
        a = self._random.randint(1, self.config.ARITHMETIC_MAX_OPERAND)
        b = self._random.randint(1, self.config.ARITHMETIC_MAX_OPERAND)
        operator = self._random.choice(("+", "-", "*"))
        if operator == "-" and b > a:
            a, b = b, a
        answer = {"+": a + b, "-": a - b, "*": a * b}[operator]
        return f"What is {a} {operator} {b}?", {"a": a, "b": b, "operator": operator}, str(answer)

    def _ordering(self) -> tuple[str, dict[str, Any], str]:
        prompt, items, answer = self._random.choice(ORDERING_SETS)
        shuffled = list(items)
        self._random.shuffle(shuffled)
        return prompt, {"items": shuffled}, answer

    def _visual_selection(self) -> tuple[str, dict[str, Any], str]:
        c = self.config
        target = self._random.choice(VISUAL_SHAPES)
        others = [s for s in VISUAL_SHAPES if s != target]
        count = self._random.randint(c.VISUAL_MIN_TARGETS, c.VISUAL_MAX_TARGETS)
        positions = set(self._random.sample(range(c.VISUAL_GRID_SIZE), count))
        tiles = [target if i in positions else self._random.choice(others) for i in range(c.VISUAL_GRID_SIZE)]
        answer = ",".join(str(i) for i in sorted(positions))
        return f"Select every {target}", {"tiles": tiles, "target": target}, answer

    async def issue(self, fingerprint: str, challenge_type: Optional[ChallengeType] = None) -> IssuedChallenge:
        """Create, sign and remember a challenge bound to the client fingerprint."""
        kind = challenge_type or self._random.choice(list(ChallengeType))
        generator = {
            ChallengeType.ARITHMETIC: self._arithmetic,
            ChallengeType.ORDERING: self._ordering,
            ChallengeType.VISUAL_SELECTION: self._visual_selection,
        }[kind]
        prompt, data, answer = generator()

        challenge_id = generate_secure_token()
        timestamp = self._now_ms()
        challenge = IssuedChallenge(
            challenge_id=challenge_id,
            type=kind,
            prompt=prompt,
            data=data,
            timestamp=timestamp,
            hash=challenge_hash(challenge_id, kind, data, timestamp, fingerprint),
        )
        await self.cache.put(
            CHALLENGE_TOKENS,
            challenge_id,
            StoredChallenge(challenge=challenge, answer=answer, fingerprint=fingerprint),
            ttl_seconds=self.max_age_seconds * self.config.STORAGE_TTL_FACTOR,
        )
        logger.debug("challenge_issued", challenge_id=challenge_id[:8], type=kind.value)
        return challenge

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def _failed(
        self,
        failure: VerificationFailure,
        submission: ChallengeSubmission,
        kind: Optional[ChallengeType] = None,
    ) -> ChallengeVerification:
        logger.info(
            "challenge_failed",
            challenge_id=submission.challenge_id[:8],
            failure=failure.value,
            solve_time_ms=submission.solve_time_ms,
        )
        return ChallengeVerification(
            passed=False,
            score=self.config.FAILED_SCORE,
            failure=failure,
            challenge_type=kind,
            solve_time_ms=submission.solve_time_ms,
        )

    async def verify(self, submission: ChallengeSubmission) -> ChallengeVerification:
        """
        Check an answer. The stored challenge is consumed by this call.

        Checks run in order: solve time, answer present, fingerprint shape,
        signature, age, answer.
        """
        stored: Optional[StoredChallenge] = await self.cache.pop(CHALLENGE_TOKENS, submission.challenge_id)

        if submission.solve_time_ms < self.config.MIN_SOLVE_TIME_MS:
            return self._failed(VerificationFailure.AUTOMATED, submission)
        if not submission.answer.strip():
            return self._failed(VerificationFailure.EMPTY_ANSWER, submission)
        if not self._fingerprint_re.match(submission.fingerprint):
            return self._failed(VerificationFailure.INVALID_FINGERPRINT, submission)
        if stored is None:
            return self._failed(VerificationFailure.UNKNOWN_CHALLENGE, submission)

        challenge = stored.challenge
        expected = challenge_hash(
            challenge.challenge_id, challenge.type, challenge.data, challenge.timestamp, submission.fingerprint
        )
        if not signatures_match(expected, challenge.hash):
            return self._failed(VerificationFailure.HASH_MISMATCH, submission, challenge.type)
        if self._now_ms() - challenge.timestamp >= self.max_age_seconds * 1000:
            return self._failed(VerificationFailure.EXPIRED, submission, challenge.type)
        if normalize_answer(submission.answer) != normalize_answer(stored.answer):
            return self._failed(VerificationFailure.WRONG_ANSWER, submission, challenge.type)

        return ChallengeVerification(
            passed=True,
            score=self.config.PASSED_SCORE,
            challenge_type=challenge.type,
            solve_time_ms=submission.solve_time_ms,
        )

    async def clean_expired(self) -> int:
        removed = await self.cache.sweep(CHALLENGE_TOKENS)
        if removed:
            logger.info("challenges_expired", removed=removed)
        return removed

    # -------------------------------------------------------------------------
    # Signal
    # -------------------------------------------------------------------------

    async def evaluate(self, context: RequestContext) -> SignalResult:
        if context.challenge is not None:
            result = await self.verify(context.challenge)
            evidence = [] if result.passed else ["CHALLENGE_FAILED", f"CHALLENGE_{result.failure.value}"]
            return SignalResult(
                kind=self.kind,
                verdict=result.passed,
                confidence=round((1 - result.score) * 100),
                evidence=evidence,
                detail=result.model_dump(mode="json"),
            )

        if context.captcha_token and self.token_verifier is not None:
            score = await self.token_verifier.verify(context.captcha_token, context.ip_address)
            return SignalResult(
                kind=self.kind,
                verdict=score >= settings.CAPTCHA_DENY_SCORE,
                confidence=round((1 - score) * 100),
                detail={"score": score, "source": "captcha_token"},
            )

        return self.skipped_result("no challenge response")

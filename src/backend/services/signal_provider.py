"""
Common contract for screening detectors.

Every detector turns a RequestContext into a SignalResult and knows its own
neutral default, which the orchestrator substitutes when the detector times
out or raises.
"""

from typing import Protocol, runtime_checkable

from models.screening import RequestContext, SignalKind, SignalResult


def failure_flag(kind: SignalKind) -> str:
    """Evidence tag recorded when a detector could not produce a result."""
    if kind == SignalKind.CHALLENGE:
        return "CAPTCHA_VERIFICATION_FAILED"
    return f"{kind.value}_DETECTION_FAILED"


@runtime_checkable
class SignalProvider(Protocol):
    """Protocol implemented by every detector."""

    kind: SignalKind

    async def evaluate(self, context: RequestContext) -> SignalResult: ...

    def neutral_result(self, error: str | None = None) -> SignalResult: ...


class BaseSignalProvider:
    """Shared neutral-default behavior for detectors."""

    kind: SignalKind

    def neutral_result(self, error: str | None = None) -> SignalResult:
        """Low-risk default used when the detector is unavailable."""
        return SignalResult(
            kind=self.kind,
            verdict=False,
            confidence=0,
            evidence=[failure_flag(self.kind)],
            detail={"error": error} if error else {},
            failed=True,
        )

    def skipped_result(self, reason: str) -> SignalResult:
        """Result for a request that carries nothing for this detector to look at."""
        return SignalResult(kind=self.kind, verdict=False, confidence=0, detail={"skipped": reason})

"""
Signal aggregation.

Folds the per-detector SignalResults of one evaluation into a
SecurityContext: the union of all evidence tags, the VPN and geo verdicts,
the captcha score, and an additive threat score mapped to a threat level.
Pure and synchronous.
"""

from typing import Iterable, Optional

from pydantic import ValidationError

from models.screening import (
    AccuracyTier,
    GeoLocation,
    SecurityContext,
    SignalKind,
    SignalResult,
    ThreatLevel,
    VPNDetection,
)


class ThreatScoringConfig:
    """Additive threat score weights and tier cutoffs."""

    TOR = 40
    HIGH_CONFIDENCE_VPN = 25
    HIGH_CONFIDENCE_VPN_THRESHOLD = 70
    PROXY = 15
    HOSTING = 10

    GEO_VERY_LOW_CONFIDENCE = 30
    GEO_VERY_LOW_PENALTY = 15
    GEO_LOW_CONFIDENCE = 50
    GEO_LOW_PENALTY = 10
    GEO_LOW_ACCURACY_PENALTY = 5
    GEO_MISSING_PENALTY = 20

    CAPTCHA_VERY_LOW = 0.3
    CAPTCHA_VERY_LOW_PENALTY = 30
    CAPTCHA_LOW = 0.5
    CAPTCHA_LOW_PENALTY = 15

    CRITICAL_FLAGS = frozenset({"TOR_DETECTED", "HIGH_VPN_CONFIDENCE"})
    HIGH_FLAGS = frozenset(
        {"VPN_DETECTED", "LOW_CAPTCHA_SCORE", "HONEYPOT_TRIGGERED", "AI_GENERATED_TEXT", "CHALLENGE_FAILED"}
    )
    MEDIUM_FLAGS = frozenset(
        {
            "PROXY_DETECTED",
            "HOSTING_DETECTED",
            "LOW_GEO_CONFIDENCE",
            "BLACKLISTED_DOMAIN",
            "FLATLINE_DETECTED",
            "SUSPICIOUS_DEVICE",
        }
    )
    CRITICAL_FLAG_BONUS = 25
    HIGH_FLAG_BONUS = 15
    MEDIUM_FLAG_BONUS = 10

    CRITICAL_THRESHOLD = 60
    HIGH_THRESHOLD = 40
    MEDIUM_THRESHOLD = 20


def _by_kind(results: Iterable[SignalResult]) -> dict[SignalKind, SignalResult]:
    # Last result wins if a kind is reported twice
    return {result.kind: result for result in results}


def _vpn_detection(result: Optional[SignalResult]) -> VPNDetection:
    if result is None or result.failed or not result.detail:
        return VPNDetection()
    try:
        return VPNDetection.model_validate(result.detail)
    except ValidationError:
        return VPNDetection()


def _geo_location(result: Optional[SignalResult]) -> Optional[GeoLocation]:
    if result is None or result.failed or not result.detail:
        return None
    try:
        return GeoLocation.model_validate(result.detail)
    except ValidationError:
        return None


def captcha_flags(captcha_score: Optional[float], config: type[ThreatScoringConfig] = ThreatScoringConfig) -> list[str]:
    if captcha_score is None:
        return []
    if captcha_score < config.CAPTCHA_VERY_LOW:
        return ["LOW_CAPTCHA_SCORE"]
    if captcha_score < config.CAPTCHA_LOW:
        return ["MEDIUM_CAPTCHA_SCORE"]
    return []


def threat_score(
    vpn: VPNDetection,
    geo: Optional[GeoLocation],
    captcha_score: Optional[float],
    flags: set[str],
    config: type[ThreatScoringConfig] = ThreatScoringConfig,
) -> int:
    c = config
    score = 0

    # Network anonymity: only the strongest applies
    if vpn.is_tor:
        score += c.TOR
    elif vpn.is_vpn and vpn.confidence > c.HIGH_CONFIDENCE_VPN_THRESHOLD:
        score += c.HIGH_CONFIDENCE_VPN
    elif vpn.is_proxy:
        score += c.PROXY
    elif vpn.is_hosting:
        score += c.HOSTING

    if geo is None:
        score += c.GEO_MISSING_PENALTY
    else:
        if geo.confidence < c.GEO_VERY_LOW_CONFIDENCE:
            score += c.GEO_VERY_LOW_PENALTY
        elif geo.confidence < c.GEO_LOW_CONFIDENCE:
            score += c.GEO_LOW_PENALTY
        if geo.accuracy == AccuracyTier.LOW:
            score += c.GEO_LOW_ACCURACY_PENALTY

    if captcha_score is not None:
        if captcha_score < c.CAPTCHA_VERY_LOW:
            score += c.CAPTCHA_VERY_LOW_PENALTY
        elif captcha_score < c.CAPTCHA_LOW:
            score += c.CAPTCHA_LOW_PENALTY

    if flags & c.CRITICAL_FLAGS:
        score += c.CRITICAL_FLAG_BONUS
    if flags & c.HIGH_FLAGS:
        score += c.HIGH_FLAG_BONUS
    if flags & c.MEDIUM_FLAGS:
        score += c.MEDIUM_FLAG_BONUS

    return score


def threat_level(score: int, config: type[ThreatScoringConfig] = ThreatScoringConfig) -> ThreatLevel:
    if score >= config.CRITICAL_THRESHOLD:
        return ThreatLevel.CRITICAL
    if score >= config.HIGH_THRESHOLD:
        return ThreatLevel.HIGH
    if score >= config.MEDIUM_THRESHOLD:
        return ThreatLevel.MEDIUM
    return ThreatLevel.LOW


def aggregate(
    results: Iterable[SignalResult],
    authenticated: bool = False,
    captcha_score: Optional[float] = None,
    config: type[ThreatScoringConfig] = ThreatScoringConfig,
) -> SecurityContext:
    """
    Merge signal results into a SecurityContext.

    Args:
        results: One result per detector that ran. Failed detectors are
            expected to be present as neutral results carrying their
            ``*_DETECTION_FAILED`` tag.
        authenticated: Whether the caller is an authenticated user.
        captcha_score: Score in [0, 1] from a challenge or captcha token,
            or None when none was supplied.

    Returns:
        SecurityContext with flags in first-seen order.
    """
    results = list(results)
    by_kind = _by_kind(results)

    flags: list[str] = []
    for result in results:
        flags.extend(result.evidence)
    flags.extend(captcha_flags(captcha_score, config))
    flags = list(dict.fromkeys(flags))

    vpn = _vpn_detection(by_kind.get(SignalKind.VPN))
    geo = _geo_location(by_kind.get(SignalKind.GEO))
    score = threat_score(vpn, geo, captcha_score, set(flags), config)

    return SecurityContext(
        authenticated=authenticated,
        geo_location=geo,
        vpn_detection=vpn,
        captcha_score=captcha_score,
        flags=flags,
        threat_level=threat_level(score, config),
        threat_score=score,
        signals={result.kind: result.confidence for result in results},
    )

"""
Device fingerprinting and behavioral anomaly scoring.

The device id is a salted hash of stable browser attributes, so the same
browser maps to the same id without the raw attributes being stored. The
interaction trace is checked for the marks of scripted input: no or
perfectly straight mouse movement, machine-speed or metronomic typing, no
idle time, and missing scroll/focus activity.
"""

import asyncio
import math
import re
import statistics
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from core.security import hash_identifier
from models.screening import (
    DeviceSnapshot,
    InteractionTrace,
    RequestContext,
    SignalKind,
    SignalResult,
    ThreatLevel,
)
from services.result_cache import DEVICE_LINKS, ResultCache
from services.signal_provider import BaseSignalProvider

logger = structlog.get_logger(__name__)


class FingerprintConfig:
    """Anomaly weights and behavioral thresholds."""

    BOT_SCORE = 50
    CRITICAL_SCORE = 70
    HIGH_SCORE = 50
    MEDIUM_SCORE = 30

    MOUSE_WINDOW = 10
    MINIMAL_MOUSE_DELTA = 1
    LINEAR_MOUSE_DELTA = 2
    MAX_HUMAN_VELOCITY = 10.0  # px per ms
    NO_MOUSE_MIN_TIME_MS = 30000
    NO_MOUSE_MAX_MOVES = 5

    KEYSTROKE_WINDOW = 5
    RAPID_KEYSTROKE_MS = 50
    REGULAR_KEYSTROKE_STD_MS = 10
    REGULAR_KEYSTROKE_MIN_INTERVALS = 5

    REGULAR_CLICK_STD_MS = 50
    REGULAR_CLICK_MIN_INTERVALS = 3

    NO_IDLE_MIN_TIME_MS = 30000
    INTERACTION_WINDOW_MS = 10000
    FAST_FORM_MS = 2000
    MAX_ACTIVITY_RATE = 10  # events per second

    WEIGHTS = {
        "MISSING_USER_AGENT": 25,
        "HEADLESS_USER_AGENT": 25,
        "MISSING_FINGERPRINT": 15,
        "SINGLE_CPU_CORE": 10,
        "MOBILE_WITHOUT_TOUCH": 15,
        "SOFTWARE_RENDERER": 20,
        "HEADLESS_VIEWPORT": 15,
        "MISSING_AUDIO": 10,
        "NO_MOUSE_MOVEMENT": 15,
        "REGULAR_CLICK_INTERVALS": 20,
        "FAST_FORM_COMPLETION": 30,
        "NO_SCROLL_ACTIVITY": 10,
        "NO_FOCUS_EVENTS": 10,
        "HIGH_ACTIVITY_RATE": 15,
        "DEVICE_REUSED": 10,
    }
    # Tags raised by live behavior tracking
    BEHAVIOR_PATTERN_WEIGHT = 5


HEADLESS_UA_MARKERS = ("headlesschrome", "phantomjs", "puppeteer", "selenium", "webdriver", "playwright")
MOBILE_UA_RE = re.compile(r"mobi|android|iphone|ipad", re.IGNORECASE)
SOFTWARE_RENDERERS = ("swiftshader", "llvmpipe", "mesa")
HEADLESS_VIEWPORTS = {(1280, 720), (1920, 1080), (800, 600)}


class FingerprintAnalysis(BaseModel):
    """Device identity and anomaly verdict for one request."""

    device_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    behavior_patterns: list[str] = Field(default_factory=list)
    score: int = 0
    is_bot: bool = False
    risk_level: ThreatLevel = ThreatLevel.LOW
    linked_links: int = 0


def device_id(device: DeviceSnapshot, salt: Optional[str] = None) -> str:
    """Salted hash of the stable device attributes."""
    components = [
        device.user_agent,
        f"{device.screen_width}x{device.screen_height}",
        str(device.color_depth),
        device.language or "",
        device.timezone or "",
        str(device.hardware_concurrency or 0),
        str(device.max_touch_points),
    ]
    if device.webgl_renderer:
        components.append(device.webgl_renderer)
    return hash_identifier("|".join(components), salt)


def _pstdev(values: list[float]) -> float:
    return statistics.pstdev(values) if values else 0.0


def _intervals(times: list[float]) -> list[float]:
    return [b - a for a, b in zip(times, times[1:])]


def behavior_patterns(trace: InteractionTrace, config: type[FingerprintConfig] = FingerprintConfig) -> list[str]:
    """Tags raised while tracking mouse, keyboard and idle behavior."""
    c = config
    patterns: list[str] = []

    moves = trace.mouse_movements
    if len(moves) > c.MOUSE_WINDOW:
        recent = moves[-c.MOUSE_WINDOW :]
        dx = [b.x - a.x for a, b in zip(recent, recent[1:])]
        dy = [b.y - a.y for a, b in zip(recent, recent[1:])]
        if (
            statistics.fmean(abs(d) for d in dx) < c.MINIMAL_MOUSE_DELTA
            and statistics.fmean(abs(d) for d in dy) < c.MINIMAL_MOUSE_DELTA
        ):
            patterns.append("MINIMAL_MOUSE_MOVEMENT")
        if all(abs(d) < c.LINEAR_MOUSE_DELTA for d in dx) or all(abs(d) < c.LINEAR_MOUSE_DELTA for d in dy):
            patterns.append("LINEAR_MOUSE_MOVEMENT")

    for a, b in zip(moves, moves[1:]):
        elapsed = b.t - a.t
        distance = math.hypot(b.x - a.x, b.y - a.y)
        if (elapsed <= 0 and distance > 0) or (elapsed > 0 and distance / elapsed > c.MAX_HUMAN_VELOCITY):
            patterns.append("MOUSE_VELOCITY_OUTLIERS")
            break

    keys = trace.keystroke_times
    if len(keys) > c.KEYSTROKE_WINDOW:
        recent_intervals = _intervals(keys[-c.KEYSTROKE_WINDOW :])
        if statistics.fmean(recent_intervals) < c.RAPID_KEYSTROKE_MS:
            patterns.append("RAPID_KEYBOARD_INPUT")
    key_intervals = _intervals(keys)
    if len(key_intervals) >= c.REGULAR_KEYSTROKE_MIN_INTERVALS and _pstdev(key_intervals) < c.REGULAR_KEYSTROKE_STD_MS:
        patterns.append("REGULAR_KEYSTROKES")

    if trace.idle_time_ms == 0 and trace.total_time_ms > c.NO_IDLE_MIN_TIME_MS:
        patterns.append("NO_IDLE_TIME")

    return patterns


class DeviceFingerprinter(BaseSignalProvider):
    """Identify the device and score device and behavior anomalies."""

    kind = SignalKind.FINGERPRINT

    def __init__(self, cache: ResultCache, config: type[FingerprintConfig] = FingerprintConfig):
        self.cache = cache
        self.config = config
        self._links_lock = asyncio.Lock()

    def _device_tags(self, device: DeviceSnapshot, trace: Optional[InteractionTrace]) -> list[str]:
        tags = []
        if not device.hardware_concurrency or device.hardware_concurrency == 1:
            tags.append("SINGLE_CPU_CORE")
        if device.max_touch_points == 0 and MOBILE_UA_RE.search(device.user_agent or ""):
            tags.append("MOBILE_WITHOUT_TOUCH")
        renderer = (device.webgl_renderer or "").lower()
        if any(marker in renderer for marker in SOFTWARE_RENDERERS):
            tags.append("SOFTWARE_RENDERER")
        if (device.screen_width, device.screen_height) in HEADLESS_VIEWPORTS and trace is not None and not trace.mouse_movements:
            tags.append("HEADLESS_VIEWPORT")
        if not device.audio_fingerprint:
            tags.append("MISSING_AUDIO")
        return tags

    def _trace_tags(self, trace: InteractionTrace) -> list[str]:
        c = self.config
        tags = []
        if trace.total_time_ms > c.NO_MOUSE_MIN_TIME_MS and len(trace.mouse_movements) < c.NO_MOUSE_MAX_MOVES:
            tags.append("NO_MOUSE_MOVEMENT")

        clicks = _intervals(trace.click_times)
        if len(clicks) > c.REGULAR_CLICK_MIN_INTERVALS and _pstdev([abs(d) for d in clicks]) < c.REGULAR_CLICK_STD_MS:
            tags.append("REGULAR_CLICK_INTERVALS")

        if trace.form_completion_ms is not None and trace.form_completion_ms < c.FAST_FORM_MS:
            tags.append("FAST_FORM_COMPLETION")

        if trace.total_time_ms > c.INTERACTION_WINDOW_MS:
            if trace.scroll_events == 0:
                tags.append("NO_SCROLL_ACTIVITY")
            if trace.focus_events == 0:
                tags.append("NO_FOCUS_EVENTS")

        if trace.total_time_ms > 0:
            events = len(trace.mouse_movements) + len(trace.keystroke_times)
            if events / (trace.total_time_ms / 1000) > c.MAX_ACTIVITY_RATE:
                tags.append("HIGH_ACTIVITY_RATE")
        return tags

    async def _track_links(self, device: str, link_uid: Optional[str]) -> int:
        """Record that a device opened a link. Returns the number of distinct links seen."""
        async with self._links_lock:
            links: frozenset[str] = await self.cache.get(DEVICE_LINKS, device) or frozenset()
            if link_uid and link_uid not in links:
                links = links | {link_uid}
                await self.cache.put(DEVICE_LINKS, device, links)
        return len(links)

    def risk_level(self, score: int) -> ThreatLevel:
        c = self.config
        if score > c.CRITICAL_SCORE:
            return ThreatLevel.CRITICAL
        if score > c.HIGH_SCORE:
            return ThreatLevel.HIGH
        if score > c.MEDIUM_SCORE:
            return ThreatLevel.MEDIUM
        return ThreatLevel.LOW

    async def analyze(
        self,
        user_agent: str,
        device: Optional[DeviceSnapshot] = None,
        trace: Optional[InteractionTrace] = None,
        link_uid: Optional[str] = None,
    ) -> FingerprintAnalysis:
        c = self.config
        tags: list[str] = []
        ua = user_agent or (device.user_agent if device else "")

        if not ua:
            tags.append("MISSING_USER_AGENT")
        elif any(marker in ua.lower() for marker in HEADLESS_UA_MARKERS):
            tags.append("HEADLESS_USER_AGENT")

        identifier = None
        linked = 0
        if device is None:
            tags.append("MISSING_FINGERPRINT")
        else:
            identifier = device_id(device)
            tags.extend(self._device_tags(device, trace))
            linked = await self._track_links(identifier, link_uid)
            if linked > 1:
                tags.append("DEVICE_REUSED")

        patterns: list[str] = []
        if trace is not None:
            tags.extend(self._trace_tags(trace))
            patterns = behavior_patterns(trace, c)

        score = sum(c.WEIGHTS.get(tag, 0) for tag in tags) + len(patterns) * c.BEHAVIOR_PATTERN_WEIGHT
        analysis = FingerprintAnalysis(
            device_id=identifier,
            tags=tags + patterns,
            behavior_patterns=patterns,
            score=score,
            is_bot=score > c.BOT_SCORE,
            risk_level=self.risk_level(score),
            linked_links=linked,
        )
        if analysis.is_bot:
            logger.info(
                "suspicious_device",
                device_id=identifier[:12] if identifier else None,
                score=score,
                tags=analysis.tags,
            )
        return analysis

    async def evaluate(self, context: RequestContext) -> SignalResult:
        analysis = await self.analyze(context.user_agent, context.device, context.trace, context.link_uid)
        evidence = list(analysis.tags)
        if analysis.is_bot:
            evidence.insert(0, "SUSPICIOUS_DEVICE")
        detail: dict[str, Any] = analysis.model_dump(mode="json")
        return SignalResult(
            kind=self.kind,
            verdict=analysis.risk_level.value,
            confidence=min(analysis.score, 100),
            evidence=evidence,
            detail=detail,
        )

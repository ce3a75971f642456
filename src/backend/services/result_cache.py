"""
Time-bounded result cache shared by the detectors.

Entries are keyed by (namespace, key). The namespace is usually a
SignalKind value (one TTL per detector) but session stores such as
honeypot issuance and challenge tokens use their own namespaces on the same
cache. An entry older than its namespace TTL is never returned.

Detectors depend on the ResultCache protocol only, so tests can pass a
deterministic clock and production can swap in a shared store.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import structlog

from core.config import settings
from models.screening import SignalKind

logger = structlog.get_logger(__name__)


# Session namespaces (not detector kinds)
HONEYPOT_SESSIONS = "honeypot_session"
CHALLENGE_TOKENS = "challenge_token"
DEVICE_LINKS = "device_links"

# One-shot state that cannot be recomputed; never evicted for space
SESSION_NAMESPACES = frozenset({HONEYPOT_SESSIONS, CHALLENGE_TOKENS})


@dataclass
class CacheEntry:
    """Cached value with its insertion time and the TTL it was stored under."""

    value: Any
    stored_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl_seconds


@runtime_checkable
class ResultCache(Protocol):
    """Protocol for the detector result cache."""

    async def get(self, namespace: str, key: str) -> Any: ...
    async def put(self, namespace: str, key: str, value: Any, ttl_seconds: float | None = None) -> None: ...
    async def pop(self, namespace: str, key: str) -> Any: ...
    async def delete(self, namespace: str, key: str) -> bool: ...
    async def sweep(self, namespace: str | None = None) -> int: ...
    async def keys(self, namespace: str) -> list[str]: ...


def default_ttls() -> dict[str, float]:
    """Per-namespace TTLs from settings."""
    return {
        SignalKind.VPN.value: settings.VPN_CACHE_TTL_SECONDS,
        SignalKind.GEO.value: settings.GEO_CACHE_TTL_SECONDS,
        SignalKind.DOMAIN.value: settings.DOMAIN_CACHE_TTL_SECONDS,
        HONEYPOT_SESSIONS: settings.HONEYPOT_SESSION_TTL_MINUTES * 60,
        CHALLENGE_TOKENS: settings.CHALLENGE_MAX_AGE_SECONDS * 2,
        DEVICE_LINKS: settings.FINGERPRINT_CACHE_TTL_SECONDS,
    }


class InMemoryResultCache:
    """
    Process-local ResultCache.

    Reads and writes of a single entry happen under a lock, so concurrent
    coroutines and scheduler threads never observe a half-written entry.
    There are no cross-key transactions.

    When the number of entries exceeds ``max_entries`` a sweep removes
    expired entries; if the cache is still over the ceiling the oldest
    ``overflow_evict`` detector results are dropped as well. Live entries in
    SESSION_NAMESPACES are never evicted for space.
    """

    DEFAULT_TTL_SECONDS = 3600.0

    def __init__(
        self,
        ttls: Optional[dict[str, float]] = None,
        max_entries: Optional[int] = None,
        overflow_evict: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttls: dict[str, float] = {}
        for namespace, ttl in (ttls if ttls is not None else default_ttls()).items():
            self._ttls[str(getattr(namespace, "value", namespace))] = float(ttl)
        self._max_entries = max_entries if max_entries is not None else settings.CACHE_MAX_ENTRIES
        self._overflow_evict = overflow_evict
        self._clock = clock
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _ns(namespace: Any) -> str:
        return str(getattr(namespace, "value", namespace))

    def ttl_for(self, namespace: str) -> float:
        return self._ttls.get(self._ns(namespace), self.DEFAULT_TTL_SECONDS)

    async def get(self, namespace: str, key: str) -> Any:
        """Return the cached value, or None on a miss or an expired entry."""
        cache_key = (self._ns(namespace), key)
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[cache_key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    async def put(self, namespace: str, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        """Store a value, replacing any previous entry for the key."""
        ns = self._ns(namespace)
        ttl = float(ttl_seconds) if ttl_seconds is not None else self.ttl_for(ns)
        with self._lock:
            self._entries.pop((ns, key), None)
            self._entries[(ns, key)] = CacheEntry(value=value, stored_at=self._clock(), ttl_seconds=ttl)
            if len(self._entries) > self._max_entries:
                self._evict_locked()

    async def pop(self, namespace: str, key: str) -> Any:
        """Remove and return a live entry. Used for one-shot session state."""
        cache_key = (self._ns(namespace), key)
        with self._lock:
            entry = self._entries.pop(cache_key, None)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry.value

    async def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            return self._entries.pop((self._ns(namespace), key), None) is not None

    async def sweep(self, namespace: str | None = None) -> int:
        """Drop expired entries, optionally only in one namespace. Returns the number removed."""
        ns = self._ns(namespace) if namespace is not None else None
        with self._lock:
            removed = self._sweep_locked(ns)
        if removed:
            logger.debug("cache_swept", namespace=ns or "*", removed=removed)
        return removed

    async def keys(self, namespace: str) -> list[str]:
        """Live keys in a namespace."""
        ns = self._ns(namespace)
        now = self._clock()
        with self._lock:
            return [k for (n, k), e in self._entries.items() if n == ns and not e.is_expired(now)]

    def size(self, namespace: str | None = None) -> int:
        with self._lock:
            if namespace is None:
                return len(self._entries)
            ns = self._ns(namespace)
            return sum(1 for n, _ in self._entries if n == ns)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            per_namespace: dict[str, int] = {}
            for ns, _ in self._entries:
                per_namespace[ns] = per_namespace.get(ns, 0) + 1
            return {
                "entries": len(self._entries),
                "max_entries": self._max_entries,
                "hits": self.hits,
                "misses": self.misses,
                "namespaces": per_namespace,
            }

    def _sweep_locked(self, namespace: str | None) -> int:
        now = self._clock()
        expired = [
            k for k, e in self._entries.items() if (namespace is None or k[0] == namespace) and e.is_expired(now)
        ]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def _evict_locked(self) -> None:
        removed = self._sweep_locked(None)
        overflow = len(self._entries) - self._max_entries
        if overflow > 0:
            # Dict order is insertion order; put() re-inserts on overwrite
            evictable = [k for k in self._entries if k[0] not in SESSION_NAMESPACES]
            victims = evictable[: max(overflow, self._overflow_evict)]
            for k in victims:
                del self._entries[k]
            removed += len(victims)
        logger.debug("cache_ceiling_eviction", removed=removed, remaining=len(self._entries))

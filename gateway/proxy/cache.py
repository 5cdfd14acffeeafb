"""Two-tier freshness cache for upstream responses."""

import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

from gateway.vars import STALE_CACHE_TTL


class Freshness(enum.Enum):
    FRESH = "fresh"
    STALE_USABLE = "stale"
    EXPIRED = "expired"


@dataclass
class CacheEntry:
    key: str
    payload: Any
    stored_at: float

    def age(self, now: float) -> float:
        return now - self.stored_at

    def classify(self, now: float, ttl_fresh: float, ttl_stale: float) -> Freshness:
        age = self.age(now)
        if age < ttl_fresh:
            return Freshness.FRESH
        if age < ttl_stale:
            return Freshness.STALE_USABLE
        return Freshness.EXPIRED


@dataclass(frozen=True)
class CacheHit:
    payload: Any
    is_stale: bool
    age: float = 0.0


@dataclass
class CachedResponse:
    """Snapshot of an upstream response stored as a cache payload."""

    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""


def cache_key(method: str, path: str, query: str = "") -> str:
    """Fingerprint a request so that parameter order does not matter."""
    normalized = urlencode(sorted(parse_qsl(query, keep_blank_values=True)))
    return f"{method.upper()} {path}?{normalized}" if normalized else f"{method.upper()} {path}"


class ResponseCache:
    """
    Keyed store of (payload, timestamp) pairs.

    Writes overwrite unconditionally. Entries are never deleted explicitly;
    an entry past its stale window reads as a miss until the next write to
    the same key replaces it.
    """

    def __init__(
        self,
        default_ttl_stale: float = STALE_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl_stale = default_ttl_stale
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(
        self,
        key: str,
        ttl_fresh: float,
        allow_stale: bool = False,
        ttl_stale: Optional[float] = None,
    ) -> Optional[CacheHit]:
        """Return a hit for ``key`` or None on a miss. Never raises."""
        ttl_stale = self.default_ttl_stale if ttl_stale is None else ttl_stale
        with self._lock:
            entry = self._entries.get(key)
            now = self._clock()
        if entry is None:
            return None
        state = entry.classify(now, ttl_fresh, max(ttl_stale, ttl_fresh))
        if state is Freshness.EXPIRED:
            return None
        if state is Freshness.STALE_USABLE and not allow_stale:
            return None
        return CacheHit(
            payload=entry.payload,
            is_stale=state is Freshness.STALE_USABLE,
            age=entry.age(now),
        )

    def put(self, key: str, payload: Any) -> CacheEntry:
        entry = CacheEntry(key=key, payload=payload, stored_at=self._clock())
        with self._lock:
            self._entries[key] = entry
        return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

"""
In-memory preview cache.

Entries are keyed by a fingerprint of (file identity, processing options)
and expire after `ttl_seconds`. Invalidation is coarse: when the options
seen by on_options_changed() differ from the previous ones, every entry is
dropped. When the cache is full, the oldest quarter is pruned.
"""

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..core.constants import (
    DEFAULT_PREVIEW_CACHE_SIZE,
    DEFAULT_PREVIEW_CACHE_TTL,
    PREVIEW_CACHE_PRUNE_RATIO,
)


def _canonical(options: Optional[Dict[str, Any]]) -> str:
    # Sets (selected layers) have no JSON form and no stable order
    def default(value: Any) -> Any:
        if isinstance(value, (set, frozenset)):
            return sorted(value)
        return str(value)

    return json.dumps(options or {}, sort_keys=True, default=default, separators=(",", ":"))


def fingerprint(file_id: str, options: Optional[Dict[str, Any]] = None) -> str:
    """Stable key for (file identity, options): sha1 of canonical JSON."""
    payload = f"{file_id}|{_canonical(options)}"
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


@dataclass
class _Entry:
    value: Any
    created_at: float


class PreviewCache:
    """
    TTL-bounded preview cache with hit/miss counters.

    Args:
        ttl_seconds: Entry lifetime
        max_entries: Capacity before the oldest entries are pruned
        clock: Time source (injectable for tests)
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_PREVIEW_CACHE_TTL,
        max_entries: int = DEFAULT_PREVIEW_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._last_options: Optional[str] = None
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: _Entry) -> bool:
        return self._clock() - entry.created_at > self.ttl_seconds

    def get(self, file_id: str, options: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        key = fingerprint(file_id, options)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._expired(entry):
            with self._lock:
                self._entries.pop(key, None)
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def put(self, file_id: str, options: Optional[Dict[str, Any]], value: Any) -> None:
        key = fingerprint(file_id, options)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._prune()
            self._entries[key] = _Entry(value=value, created_at=self._clock())

    def _prune(self) -> None:
        count = max(1, int(len(self._entries) * PREVIEW_CACHE_PRUNE_RATIO))
        oldest = sorted(self._entries.items(), key=lambda item: item[1].created_at)[:count]
        for key, _ in oldest:
            del self._entries[key]

    def on_options_changed(self, options: Optional[Dict[str, Any]]) -> bool:
        """
        Record the current options; drop every entry if they changed.

        Returns:
            True if the cache was invalidated
        """
        canonical = _canonical(options)
        changed = self._last_options is not None and canonical != self._last_options
        self._last_options = canonical
        if changed:
            self.invalidate_all()
        return changed

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def clear_expired(self) -> int:
        """Remove expired entries; returns how many were removed."""
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._expired(entry)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        """Drop every entry and reset the counters."""
        with self._lock:
            self._entries.clear()
            self._last_options = None
            self.hits = 0
            self.misses = 0

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "maxEntries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": round(self.hit_rate(), 4),
            "ttlSeconds": self.ttl_seconds,
        }

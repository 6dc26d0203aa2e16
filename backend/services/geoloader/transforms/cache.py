"""
Cache of compiled pyproj transformers keyed by "{from}:{to}".

The whole cache is cleared once `lifetime_seconds` have passed since the
last clear (not per entry). Hit/miss counters reset with it. Writes take a
lock; reading an existing entry does not.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from pyproj import Transformer

from ..core.constants import TRANSFORM_CACHE_LIFETIME


@dataclass
class TransformationCacheEntry:
    transformer: Transformer
    last_used: float
    hits: int = 0


def cache_key(from_code: str, to_code: str) -> str:
    return f"{from_code}:{to_code}"


class TransformationCache:
    """
    Lifetime-bounded transformer cache.

    Args:
        lifetime_seconds: Age after which the whole cache is dropped
        clock: Monotonic time source (injectable for tests)

    Example:
        >>> cache = TransformationCache()
        >>> t = cache.get_or_create("EPSG:2056", "EPSG:4326", build)
        >>> cache.get_stats()["misses"]
        1
    """

    def __init__(
        self,
        lifetime_seconds: float = TRANSFORM_CACHE_LIFETIME,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock
        self._entries: Dict[str, TransformationCacheEntry] = {}
        self._lock = threading.Lock()
        self._last_clear = clock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _expire_if_due(self) -> None:
        if self._clock() - self._last_clear > self.lifetime_seconds:
            self.clear()

    def get(self, from_code: str, to_code: str) -> Optional[Transformer]:
        """Return a cached transformer (counting a hit) or None (counting a miss)."""
        self._expire_if_due()
        entry = self._entries.get(cache_key(from_code, to_code))
        if entry is None:
            self.misses += 1
            return None
        entry.last_used = self._clock()
        entry.hits += 1
        self.hits += 1
        return entry.transformer

    def put(self, from_code: str, to_code: str, transformer: Transformer) -> None:
        with self._lock:
            self._entries[cache_key(from_code, to_code)] = TransformationCacheEntry(
                transformer=transformer,
                last_used=self._clock(),
            )

    def get_or_create(
        self,
        from_code: str,
        to_code: str,
        factory: Callable[[], Transformer],
    ) -> Transformer:
        """Return the cached transformer, building and storing it on a miss."""
        transformer = self.get(from_code, to_code)
        if transformer is not None:
            return transformer
        with self._lock:
            key = cache_key(from_code, to_code)
            entry = self._entries.get(key)
            if entry is not None:
                return entry.transformer
            transformer = factory()
            self._entries[key] = TransformationCacheEntry(transformer=transformer, last_used=self._clock())
            return transformer

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
            self._last_clear = self._clock()

    def get_stats(self) -> Dict[str, Any]:
        entries = list(self._entries.values())
        return {
            "size": len(entries),
            "hits": self.hits,
            "misses": self.misses,
            "oldestEntry": min((e.last_used for e in entries), default=None),
            "newestEntry": max((e.last_used for e in entries), default=None),
        }

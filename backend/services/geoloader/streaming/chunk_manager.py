"""
Chunked feature store with a memory ceiling and layer visibility.

Features are ingested in batches of `chunk_size`. After each chunk is
finalized:
1. memory is checked against the ceiling (traced heap when available,
   otherwise feature count x per-feature cost); exceeding it raises
   MemoryLimitExceededError and latches the manager, so every later add
   raises again instead of accepting features
2. in streaming mode, chunks older than the TTL are evicted: their payload
   is released but the chunk keeps its slot, and get_chunk() on it raises
   LookupError instead of returning stale data
3. ingest() yields the chunk index back to the caller and the cancellation
   token is polled

A feature is visible when no visible-layer set is active, or when its
layer is in the set.
"""

import gc
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set

from ..core.constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CHUNK_TTL,
    DEFAULT_MAX_MEMORY_MB,
    PER_FEATURE_COST_BYTES,
)
from ..core.errors import MemoryLimitExceededError
from ..core.types import Feature, ProgressCallback
from ..utils.logging import log
from .cancellation import CancellationToken
from .memory_profiler import STATUS_EXCEEDED, MemoryMonitor, format_bytes


@dataclass
class StreamConfig:
    """Configuration for the chunk manager."""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    """Features per chunk (memory is checked once per chunk)"""

    max_memory_mb: float = DEFAULT_MAX_MEMORY_MB
    """Memory ceiling; exceeding it is fatal for the current load"""

    streaming: bool = False
    """Streaming mode: evict chunks older than chunk_ttl_seconds"""

    chunk_ttl_seconds: float = DEFAULT_CHUNK_TTL
    """Chunk lifetime in streaming mode"""

    per_feature_cost_bytes: int = PER_FEATURE_COST_BYTES
    """Estimated footprint of one feature when no heap reading is available"""

    gc_per_chunk: bool = False
    """Run garbage collection after evicting chunks"""

    debug: bool = False
    """Enable debug logging"""


@dataclass
class FeatureChunk:
    """A finalized batch of features."""
    index: int
    features: List[Feature] = field(default_factory=list)
    created_at: float = 0.0
    evicted: bool = False
    size: int = 0
    """Number of features the chunk held when finalized (kept after eviction)"""


def _log(message: str, debug: bool = False):
    """Internal logging function."""
    if debug:
        print(f"[STREAM] {message}")


class ChunkManager:
    """
    Bounded, filterable store for a feature stream.

    Args:
        config: StreamConfig (defaults when omitted)
        memory_monitor: MemoryMonitor (one built from config.max_memory_mb
            when omitted)
        clock: Monotonic time source (injectable for tests)

    Example:
        >>> manager = ChunkManager(StreamConfig(chunk_size=500))
        >>> for chunk_index in manager.ingest(parser.stream(data)):
        ...     pass  # caller regains control after every chunk
        >>> len(manager.get_visible_features())
        1200
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        memory_monitor: Optional[MemoryMonitor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or StreamConfig()
        if self.config.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.config.chunk_size}")
        self.monitor = memory_monitor or MemoryMonitor(self.config.max_memory_mb)
        self._clock = clock

        self._chunks: List[FeatureChunk] = []
        self._pending: List[Feature] = []
        self._feature_count = 0
        self._layer_counts: Dict[str, int] = {}
        self._visible_layers: Optional[Set[str]] = None
        self._latched: Optional[MemoryLimitExceededError] = None

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def feature_count(self) -> int:
        """Total features accepted (including evicted ones)."""
        return self._feature_count

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def layers(self) -> Dict[str, int]:
        """Feature count per layer, in first-seen order."""
        return dict(self._layer_counts)

    @property
    def resident_count(self) -> int:
        """Features currently held in memory."""
        return sum(len(c.features) for c in self._chunks) + len(self._pending)

    @property
    def latched(self) -> bool:
        return self._latched is not None

    # ========================================================================
    # Ingestion
    # ========================================================================

    def _raise_if_latched(self) -> None:
        if self._latched is not None:
            raise MemoryLimitExceededError(
                self._latched.used_mb, self._latched.limit_mb, self._feature_count
            )

    def add_feature(self, feature: Feature) -> Optional[int]:
        """
        Accept one feature.

        Returns:
            Index of the chunk finalized by this feature, or None

        Raises:
            MemoryLimitExceededError: If the ceiling is (or was) exceeded
        """
        self._raise_if_latched()
        self._pending.append(feature)
        self._feature_count += 1
        self._layer_counts[feature.layer] = self._layer_counts.get(feature.layer, 0) + 1
        if len(self._pending) >= self.config.chunk_size:
            return self._finalize_chunk()
        return None

    def finalize(self) -> Optional[int]:
        """Flush pending features into a last (partial) chunk."""
        self._raise_if_latched()
        if not self._pending:
            return None
        return self._finalize_chunk()

    def _finalize_chunk(self) -> int:
        chunk = FeatureChunk(
            index=len(self._chunks),
            features=self._pending,
            created_at=self._clock(),
            size=len(self._pending),
        )
        self._chunks.append(chunk)
        self._pending = []
        _log(f"Chunk {chunk.index}: {chunk.size} features (total {self._feature_count})", self.config.debug)

        if self.config.streaming:
            self.evict_expired()
        self._check_memory()
        return chunk.index

    def _check_memory(self) -> None:
        estimate = self.resident_count * self.config.per_feature_cost_bytes
        if self.monitor.check(estimate) == STATUS_EXCEEDED:
            used = self.monitor.last_usage_mb
            self._latched = MemoryLimitExceededError(used, self.monitor.limit_mb, self._feature_count)
            log(
                f"[STREAM] Memory limit exceeded: {format_bytes(used * 1024 * 1024)} "
                f"> {self.monitor.limit_mb}MB after {self._feature_count} features"
            )
            raise self._latched

    def ingest(
        self,
        features: Iterable[Feature],
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
        total: Optional[int] = None,
    ) -> Iterator[int]:
        """
        Ingest a feature stream, yielding each finalized chunk index.

        Control returns to the caller after every chunk; progress is reported
        as (processed, total) and the cancellation token is polled at the
        same points.

        Raises:
            MemoryLimitExceededError: If the ceiling is exceeded
            PipelineCancelledError: If the token is cancelled
        """
        for feature in features:
            index = self.add_feature(feature)
            if index is not None:
                if on_progress:
                    on_progress(self._feature_count, total)
                yield index
                if cancel is not None:
                    cancel.raise_if_cancelled(self._feature_count)

        index = self.finalize()
        if index is not None:
            if on_progress:
                on_progress(self._feature_count, total)
            yield index

    def add_features(
        self,
        features: Iterable[Feature],
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
        total: Optional[int] = None,
    ) -> int:
        """Ingest a whole stream; returns the total feature count."""
        for _ in self.ingest(features, on_progress, cancel, total):
            pass
        return self._feature_count

    # ========================================================================
    # Visibility and access
    # ========================================================================

    def set_visible_layers(self, layers: Optional[Iterable[str]]) -> None:
        """Set the visible-layer filter (None shows every layer)."""
        self._visible_layers = set(layers) if layers is not None else None

    def is_visible(self, feature: Feature) -> bool:
        return self._visible_layers is None or feature.layer in self._visible_layers

    def iter_features(self, visible_only: bool = True) -> Iterator[Feature]:
        """Iterate resident features in ingestion order."""
        for chunk in self._chunks:
            for feature in chunk.features:
                if not visible_only or self.is_visible(feature):
                    yield feature
        for feature in self._pending:
            if not visible_only or self.is_visible(feature):
                yield feature

    def get_visible_features(self) -> List[Feature]:
        return list(self.iter_features(visible_only=True))

    def get_chunk(self, index: int) -> FeatureChunk:
        """
        Return a finalized chunk.

        Raises:
            IndexError: If no chunk has that index
            LookupError: If the chunk has been evicted
        """
        if not 0 <= index < len(self._chunks):
            raise IndexError(f"No chunk {index} (have {len(self._chunks)})")
        chunk = self._chunks[index]
        if chunk.evicted:
            raise LookupError(f"Chunk {index} was evicted after {self.config.chunk_ttl_seconds}s")
        return chunk

    # ========================================================================
    # Eviction and housekeeping
    # ========================================================================

    def evict_expired(self) -> int:
        """
        Release chunks older than the TTL (streaming mode only).

        Returns:
            Number of chunks evicted by this call
        """
        if not self.config.streaming:
            return 0
        now = self._clock()
        evicted = 0
        for chunk in self._chunks:
            if not chunk.evicted and now - chunk.created_at > self.config.chunk_ttl_seconds:
                chunk.features = []
                chunk.evicted = True
                evicted += 1
        if evicted:
            _log(f"Evicted {evicted} expired chunk(s)", self.config.debug)
            if self.config.gc_per_chunk:
                gc.collect()
        return evicted

    def get_stats(self) -> Dict:
        return {
            "featureCount": self._feature_count,
            "residentFeatures": self.resident_count,
            "chunkCount": len(self._chunks),
            "evictedChunks": sum(1 for c in self._chunks if c.evicted),
            "pendingFeatures": len(self._pending),
            "streaming": self.config.streaming,
            "memoryUsageMb": round(self.monitor.last_usage_mb, 3),
            "memoryLimitMb": self.monitor.limit_mb,
            "layers": self.layers,
            "memoryLimitExceeded": self.latched,
        }

    def clear(self) -> None:
        """Drop every chunk and reset counters, the latch and the layer filter."""
        self._chunks = []
        self._pending = []
        self._feature_count = 0
        self._layer_counts = {}
        self._visible_layers = None
        self._latched = None
        self.monitor.reset()

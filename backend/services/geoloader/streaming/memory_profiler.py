"""
Memory measurement for the feature chunk manager.

Two layers:
1. MemoryProfiler / profile_memory: tracemalloc wrappers for measuring a
   block of work (used by the pipeline in debug mode)
2. MemoryMonitor: ceiling check used after every ingested batch. It reads
   the traced heap when tracemalloc is running and otherwise relies on the
   caller's estimate (feature count x fixed per-feature cost)
"""

import gc
import tracemalloc
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Tuple

from ..core.constants import MEMORY_WARNING_RATIO
from ..utils.logging import log

MB = 1024 * 1024

STATUS_OK = "ok"
STATUS_WARNING = "warning"
STATUS_EXCEEDED = "exceeded"


def format_bytes(bytes_value: float) -> str:
    """
    Format bytes as human-readable string.

    Args:
        bytes_value: Number of bytes

    Returns:
        Formatted string (e.g., "1.50 GB")
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_value < 1024.0:
            return f"{bytes_value:.2f} {unit}"
        bytes_value /= 1024.0
    return f"{bytes_value:.2f} PB"


class MemoryProfiler:
    """
    Memory profiler for tracking memory usage.

    Uses tracemalloc for accurate Python memory tracking. Only stops tracing
    it started itself, so it nests inside an already tracing process.
    """

    def __init__(self):
        self.is_tracing = False
        self._owns_trace = False
        self.snapshots: List[Dict] = []

    def start(self):
        """Start memory tracing."""
        if not self.is_tracing:
            if not tracemalloc.is_tracing():
                tracemalloc.start()
                self._owns_trace = True
            self.is_tracing = True
            self.snapshots = []

    def stop(self) -> Tuple[int, int]:
        """
        Stop memory tracing and return final statistics.

        Returns:
            Tuple of (current_bytes, peak_bytes)
        """
        if self.is_tracing:
            current, peak = tracemalloc.get_traced_memory()
            if self._owns_trace:
                tracemalloc.stop()
                self._owns_trace = False
            self.is_tracing = False
            return (current, peak)
        return (0, 0)

    def snapshot(self, label: str = ""):
        """Record current/peak usage under a label."""
        if self.is_tracing:
            current, peak = tracemalloc.get_traced_memory()
            self.snapshots.append({
                'label': label,
                'current': current,
                'peak': peak
            })

    def get_current_usage(self) -> Tuple[int, int]:
        """
        Get current memory usage.

        Returns:
            Tuple of (current_bytes, peak_bytes)
        """
        if self.is_tracing:
            return tracemalloc.get_traced_memory()
        return (0, 0)

    def log_snapshots(self):
        """Log all recorded snapshots."""
        if not self.snapshots:
            log("[MEMORY] No snapshots recorded")
            return
        for i, snap in enumerate(self.snapshots):
            label = snap['label'] or f"Snapshot {i + 1}"
            log(f"[MEMORY] {label}: current {format_bytes(snap['current'])}, peak {format_bytes(snap['peak'])}")


@contextmanager
def profile_memory(label: str = "Operation", verbose: bool = True):
    """
    Context manager for profiling memory usage of a code block.

    Args:
        label: Label for the profiled operation
        verbose: Log results when the block exits

    Yields:
        MemoryProfiler instance

    Example:
        ```python
        with profile_memory("Preview generation"):
            pipeline.load_preview(files, options)
        ```
    """
    profiler = MemoryProfiler()
    profiler.start()

    # Force garbage collection before measurement
    gc.collect()

    try:
        yield profiler
    finally:
        current, peak = profiler.stop()
        if verbose:
            log(f"[MEMORY] {label}: current {format_bytes(current)}, peak {format_bytes(peak)}")


class MemoryMonitor:
    """
    Checks memory usage against a ceiling.

    Args:
        limit_mb: Ceiling in megabytes
        warning_ratio: Fraction of the ceiling at which "warning" is reported
        use_heap: Prefer the traced heap over the caller's estimate

    Example:
        >>> monitor = MemoryMonitor(limit_mb=512)
        >>> monitor.check(estimated_bytes=100 * MB)
        'ok'
    """

    def __init__(self, limit_mb: float, warning_ratio: float = MEMORY_WARNING_RATIO, use_heap: bool = True):
        self.limit_mb = limit_mb
        self.warning_ratio = warning_ratio
        self.use_heap = use_heap
        self.last_usage_mb = 0.0
        self._warning_callbacks: List[Callable[[float, float], None]] = []
        self._warned = False

    @staticmethod
    def heap_available() -> bool:
        """True when a traced heap reading is available."""
        return tracemalloc.is_tracing()

    def current_usage_mb(self, estimated_bytes: Optional[int] = None) -> float:
        """
        Current usage in MB: traced heap when available, else the estimate.
        """
        if self.use_heap and self.heap_available():
            current, _ = tracemalloc.get_traced_memory()
            return current / MB
        return (estimated_bytes or 0) / MB

    def on_warning(self, callback: Callable[[float, float], None]) -> None:
        """Register callback(used_mb, limit_mb), fired once when usage crosses the warning ratio."""
        self._warning_callbacks.append(callback)

    def check(self, estimated_bytes: Optional[int] = None) -> str:
        """
        Classify current usage.

        Returns:
            "ok", "warning" (above warning_ratio of the limit) or "exceeded"
        """
        used = self.current_usage_mb(estimated_bytes)
        self.last_usage_mb = used
        if used > self.limit_mb:
            return STATUS_EXCEEDED
        if used > self.limit_mb * self.warning_ratio:
            if not self._warned:
                self._warned = True
                for callback in self._warning_callbacks:
                    callback(used, self.limit_mb)
            return STATUS_WARNING
        return STATUS_OK

    def reset(self) -> None:
        self._warned = False
        self.last_usage_mb = 0.0

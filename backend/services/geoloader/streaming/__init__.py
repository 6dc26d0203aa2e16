"""
Feature streaming with bounded memory.

Key Components:
- chunk_manager.py: Chunked feature store (memory ceiling, TTL eviction,
  layer visibility)
- memory_profiler.py: tracemalloc profiling and the ceiling monitor
- cancellation.py: Cooperative cancellation token polled between chunks
"""

from .cancellation import CancellationToken
from .chunk_manager import ChunkManager, FeatureChunk, StreamConfig
from .memory_profiler import MemoryMonitor, MemoryProfiler, format_bytes, profile_memory

__all__ = [
    "CancellationToken",
    "ChunkManager",
    "FeatureChunk",
    "StreamConfig",
    "MemoryMonitor",
    "MemoryProfiler",
    "format_bytes",
    "profile_memory",
]

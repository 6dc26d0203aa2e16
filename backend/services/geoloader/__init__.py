"""
Geospatial ingestion and coordinate transformation.

Reads shapefiles (with .dbf attributes and .prj pass-through), DXF drawings
(with block expansion), delimited point files and GeoJSON into a common
feature model, detects and converts coordinate systems, and produces
bounded, categorized previews.

Public API:
- GeoLoaderPipeline / PipelineOptions / PreviewResult: analysis and preview
- InputFile: named upload buffer
- create_default_registry / CoordinateTransformer: CRS services
- CancellationToken: cooperative cancellation of a load
"""

from .core.errors import (
    GeoLoaderError,
    InvalidHeaderError,
    MemoryLimitExceededError,
    PipelineCancelledError,
    UnknownCoordinateSystemError,
    UnsupportedFormatError,
)
from .parsers.base import InputFile
from .pipeline.orchestrator import GeoLoaderPipeline, PipelineOptions, PreviewResult
from .streaming import CancellationToken
from .transforms.registry import create_default_registry
from .transforms.transformers import CoordinateTransformer

__all__ = [
    "GeoLoaderPipeline",
    "PipelineOptions",
    "PreviewResult",
    "InputFile",
    "create_default_registry",
    "CoordinateTransformer",
    "CancellationToken",
    "GeoLoaderError",
    "InvalidHeaderError",
    "MemoryLimitExceededError",
    "PipelineCancelledError",
    "UnknownCoordinateSystemError",
    "UnsupportedFormatError",
]

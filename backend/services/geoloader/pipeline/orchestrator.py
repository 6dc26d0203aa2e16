"""
Geo-loader pipeline orchestrator.

Coordinates every stage of a load:

    raw bytes -> format parser -> CRS detection (sampled)
              -> batch reprojection -> chunk manager -> preview

Two entry points:
- analyze_files(): metadata-only analysis of the first records plus CRS
  detection (cheap; used to populate layer lists before a full load)
- load_preview(): full streaming read into a bounded, categorized preview

Fatal problems (bad container header, unknown CRS, memory ceiling,
cancellation) propagate as typed GeoLoaderError subclasses. Per-record
problems are aggregated in a WarningCollector attached to the result.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from ..core.constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MAX_MEMORY_MB,
    DEFAULT_MAX_PREVIEW_FEATURES,
    DEFAULT_STREAMING_THRESHOLD_BYTES,
    EPSG_WGS84,
)
from ..core.errors import UnsupportedFormatError
from ..core.types import AnalysisResult, Feature, ProgressCallback, WarningCollector
from ..parsers.base import FileGroup, FormatParser, InputFile, group_companions, select_parser
from ..parsers.delimited import DelimitedTextParser
from ..parsers.dxf import DxfParser
from ..parsers.geojson import GeoJSONParser
from ..parsers.shapefile import ShapefileParser
from ..preview.cache import PreviewCache
from ..preview.categorizer import PreviewCollection
from ..preview.generator import PreviewManager, PreviewOptions
from ..streaming import CancellationToken, ChunkManager, StreamConfig, profile_memory
from ..transforms.crs_detection import CRSDetectionResult, detect_coordinate_system
from ..transforms.registry import CoordinateSystemRegistry, create_default_registry, normalize_code
from ..transforms.transformers import CoordinateTransformer
from ..utils.logging import close_log_file, log, log_banner, open_run_log


def _log(message: str, debug: bool = False):
    """Internal logging function."""
    if debug:
        print(f"[PIPELINE] {message}")


# ============================================================================
# Options and Results
# ============================================================================

@dataclass
class PipelineOptions:
    """Options recognized by load_preview()."""

    target_coordinate_system: str = EPSG_WGS84
    """Code of the system preview coordinates are delivered in"""

    source_coordinate_system: Optional[str] = None
    """Source system override (skips detection when set)"""

    selected_layers: Optional[Set[str]] = None
    """Visible layers (None shows every layer, an empty set none)"""

    max_preview_features: int = DEFAULT_MAX_PREVIEW_FEATURES
    """Upper bound on features in the preview"""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    """Features per chunk (memory is checked once per chunk)"""

    max_memory_mb: float = DEFAULT_MAX_MEMORY_MB
    """Memory ceiling for the chunk manager"""

    smart_sampling: bool = True
    """Grid sampling (True) or sequential truncation (False)"""

    enable_caching: bool = True
    """Use the preview cache"""

    streaming_threshold_bytes: int = DEFAULT_STREAMING_THRESHOLD_BYTES
    """Inputs larger than this load in streaming mode (chunk TTL eviction)"""

    simplify_tolerance: float = 0.0
    """Preview simplification tolerance in target units (0 disables)"""

    log_dir: Optional[str] = None
    """Directory for per-run log files (None disables the run log)"""

    debug: bool = False
    """Enable debug logging and memory profiling"""

    def preview_options(self) -> PreviewOptions:
        return PreviewOptions(
            max_features=self.max_preview_features,
            visible_layers=self.selected_layers,
            target_coordinate_system=self.target_coordinate_system,
            smart_sampling=self.smart_sampling,
            enable_caching=self.enable_caching,
            simplify_tolerance=self.simplify_tolerance,
            debug=self.debug,
        )


@dataclass
class PreviewResult:
    """
    Outcome of load_preview().

    Attributes:
        preview: Categorized preview collection
        analysis: Analysis of the main file (layers, metadata, sample)
        detection: How the source coordinate system was chosen
        coordinate_system: Code of the system preview coordinates are in
        warnings: Recoverable problems seen during the full load
        from_cache: True when the preview came from the preview cache
        stats: Chunk manager statistics (empty for cached previews)
    """
    preview: PreviewCollection
    analysis: AnalysisResult
    detection: CRSDetectionResult
    coordinate_system: str
    warnings: WarningCollector = field(default_factory=WarningCollector)
    from_cache: bool = False
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "preview": self.preview.to_geojson(),
            "analysis": self.analysis.to_dict(),
            "detection": self.detection.to_dict(),
            "coordinateSystem": self.coordinate_system,
            "warnings": self.warnings.to_dict(),
            "fromCache": self.from_cache,
            "stats": dict(self.stats),
        }


def default_parsers(debug: bool = False) -> List[FormatParser]:
    """Parsers in selection order."""
    return [
        ShapefileParser(debug),
        DxfParser(debug),
        DelimitedTextParser(debug),
        GeoJSONParser(debug),
    ]


def file_identity(group: FileGroup) -> str:
    """Cache identity of an input: name, total size and a content digest."""
    digest = hashlib.sha1(group.main.data)
    for ext in sorted(group.companions):
        digest.update(ext.encode("ascii", errors="replace"))
        digest.update(group.companions[ext])
    return f"{group.name}:{group.total_size}:{digest.hexdigest()[:16]}"


def _batched_transform(
    features: Iterable[Feature],
    transformer: CoordinateTransformer,
    source: str,
    target: str,
    batch_size: int,
    warnings: WarningCollector,
) -> Iterator[Feature]:
    """Reproject a feature stream batch by batch, preserving order."""
    batch: List[Feature] = []
    for feature in features:
        batch.append(feature)
        if len(batch) >= batch_size:
            transformed, _ = transformer.transform_features(batch, source, target, warnings)
            yield from transformed
            batch = []
    if batch:
        transformed, _ = transformer.transform_features(batch, source, target, warnings)
        yield from transformed


# ============================================================================
# Pipeline
# ============================================================================

class GeoLoaderPipeline:
    """
    Entry point for analyzing and previewing geospatial uploads.

    The registry, transformer (with its transformation cache) and preview
    cache are meant to be shared process-wide; the pipeline keeps no other
    state between calls.

    Args:
        registry: Coordinate system registry (default registry when omitted)
        transformer: Coordinate transformer (built on the registry when omitted)
        preview_cache: Preview cache (a private one when omitted)
        parsers: Parsers in selection order (default_parsers() when omitted)

    Example:
        >>> pipeline = GeoLoaderPipeline()
        >>> files = [InputFile("roads.shp", shp), InputFile("roads.dbf", dbf)]
        >>> result = pipeline.load_preview(files, PipelineOptions(max_preview_features=2000))
        >>> len(result.preview.lines.features) <= 2000
        True
    """

    def __init__(
        self,
        registry: Optional[CoordinateSystemRegistry] = None,
        transformer: Optional[CoordinateTransformer] = None,
        preview_cache: Optional[PreviewCache] = None,
        parsers: Optional[Sequence[FormatParser]] = None,
    ):
        self.registry = registry or create_default_registry()
        self.transformer = transformer or CoordinateTransformer(self.registry)
        self.preview_cache = preview_cache or PreviewCache()
        self.parsers = list(parsers) if parsers is not None else default_parsers()

    # ========================================================================
    # Input selection
    # ========================================================================

    def _main_extensions(self) -> List[str]:
        return [ext for parser in self.parsers for ext in parser.extensions]

    def select_input(self, files: Sequence[InputFile]) -> Tuple[FileGroup, FormatParser]:
        """
        Pick the first main file and the parser that reads it.

        Raises:
            UnsupportedFormatError: If no uploaded file is readable
        """
        if not files:
            raise UnsupportedFormatError("(no files)", "no files uploaded")
        groups = group_companions(files, self._main_extensions())
        if not groups:
            names = ", ".join(f.name for f in files)
            raise UnsupportedFormatError(names, "no supported main file (companions need a main file)")
        group = groups[0]
        if len(groups) > 1:
            log(f"[PIPELINE] {len(groups)} main files uploaded; using {group.name}")
        return group, select_parser(self.parsers, group.name, group.main.mime_type)

    def _detect(
        self,
        analysis: AnalysisResult,
        source_override: Optional[str],
        debug: bool,
    ) -> CRSDetectionResult:
        if source_override:
            system = self.registry.get(source_override)
            return CRSDetectionResult(
                system=system.code,
                confidence=1.0,
                source="user",
                details="Source coordinate system given by the caller",
            )
        return detect_coordinate_system(
            analysis.preview_sample,
            self.registry,
            metadata=analysis.metadata,
            debug=debug,
        )

    # ========================================================================
    # Analysis
    # ========================================================================

    def analyze_files(self, files: Sequence[InputFile], debug: bool = False) -> AnalysisResult:
        """
        Analyze the main uploaded file without a full read.

        Returns:
            AnalysisResult with layers, bounds, preview sample and the
            detected source coordinate system

        Raises:
            UnsupportedFormatError: If no uploaded file is readable
            InvalidHeaderError: If the container header is invalid
        """
        group, parser = self.select_input(files)
        _log(f"Analyzing {group.name} with {parser.name} parser", debug)

        analysis = parser.analyze(group.main.data, group.companions)
        detection = self._detect(analysis, None, debug)
        analysis.detected_crs = detection.system
        analysis.crs_confidence = detection.confidence
        analysis.crs_source = detection.source

        log(
            f"[PIPELINE] Analysis of {group.name}: {len(analysis.layers)} layer(s), "
            f"CRS {detection.system} ({detection.source}, {detection.confidence:.2f}), "
            f"{analysis.warnings.total} warning(s)"
        )
        return analysis

    # ========================================================================
    # Full load
    # ========================================================================

    def load_preview(
        self,
        files: Sequence[InputFile],
        options: Optional[PipelineOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> PreviewResult:
        """
        Read the main uploaded file completely and build its preview.

        Args:
            files: Uploaded files (main file plus companions)
            options: PipelineOptions (defaults when omitted)
            on_progress: Callback(processed, total) invoked after every chunk
            cancel: Token polled between chunks

        Returns:
            PreviewResult

        Raises:
            UnsupportedFormatError: If no uploaded file is readable
            InvalidHeaderError: If the container header is invalid
            UnknownCoordinateSystemError: If a requested system is not registered
            MemoryLimitExceededError: If the chunk manager ceiling is exceeded
            PipelineCancelledError: If the token is cancelled
        """
        options = options or PipelineOptions()
        group, parser = self.select_input(files)
        target = self.registry.get(options.target_coordinate_system).code

        run_log = None
        if options.log_dir:
            run_log = open_run_log(
                options.log_dir,
                group.name,
                {
                    "Parser": parser.name,
                    "Target CRS": target,
                    "Max preview features": str(options.max_preview_features),
                    "Chunk size": str(options.chunk_size),
                    "Memory limit": f"{options.max_memory_mb} MB",
                },
            )

        try:
            if options.debug:
                with profile_memory(f"Preview load of {group.name}"):
                    return self._load(group, parser, target, options, on_progress, cancel)
            return self._load(group, parser, target, options, on_progress, cancel)
        finally:
            if run_log:
                close_log_file()

    def _load(
        self,
        group: FileGroup,
        parser: FormatParser,
        target: str,
        options: PipelineOptions,
        on_progress: Optional[ProgressCallback],
        cancel: Optional[CancellationToken],
    ) -> PreviewResult:
        log_banner(f"[PIPELINE] LOAD {group.name} ({parser.name}, {group.total_size:,} bytes)")

        analysis = parser.analyze(group.main.data, group.companions)
        detection = self._detect(analysis, options.source_coordinate_system, options.debug)
        source = normalize_code(detection.system)
        analysis.detected_crs = detection.system
        analysis.crs_confidence = detection.confidence
        analysis.crs_source = detection.source
        log(f"[CRS] Source {source} ({detection.source}, confidence {detection.confidence:.2f}) -> target {target}")

        preview_manager = PreviewManager(
            self.registry,
            self.transformer,
            self.preview_cache,
            options.preview_options(),
        )
        file_id = file_identity(group)

        cached = preview_manager.cached_preview(file_id, source)
        if cached is not None:
            log(f"[PIPELINE] Preview served from cache ({cached.feature_count} features)")
            return PreviewResult(
                preview=cached,
                analysis=analysis,
                detection=detection,
                coordinate_system=target,
                from_cache=True,
            )

        warnings = WarningCollector()
        streaming = group.total_size > options.streaming_threshold_bytes
        manager = ChunkManager(StreamConfig(
            chunk_size=options.chunk_size,
            max_memory_mb=options.max_memory_mb,
            streaming=streaming,
            debug=options.debug,
        ))
        manager.set_visible_layers(options.selected_layers)
        log(f"[STREAM] Mode: {'streaming' if streaming else 'buffered'}, chunk size {options.chunk_size}")

        features = _batched_transform(
            parser.stream(group.main.data, group.companions, warnings),
            self.transformer,
            source,
            target,
            options.chunk_size,
            warnings,
        )
        manager.add_features(features, on_progress, cancel, analysis.feature_count_estimate)
        stats = manager.get_stats()
        log(
            f"[STREAM] Loaded {manager.feature_count} features in {manager.chunk_count} chunk(s), "
            f"{stats['evictedChunks']} evicted"
        )

        preview = preview_manager.generate_preview(
            manager.iter_features(visible_only=False),
            file_id,
            source,
            warnings,
            is_visible=manager.is_visible,
        )
        # Totals cover every accepted feature, including evicted chunks
        preview.total_count = manager.feature_count

        log(
            f"[PIPELINE] Preview: {len(preview.points)} point, {len(preview.lines)} line, "
            f"{len(preview.polygons)} polygon feature(s); {warnings.total} warning(s)"
        )
        return PreviewResult(
            preview=preview,
            analysis=analysis,
            detection=detection,
            coordinate_system=target,
            warnings=warnings,
            from_cache=False,
            stats=stats,
        )

    # ========================================================================
    # Caches
    # ========================================================================

    def cache_stats(self) -> Dict[str, Any]:
        return {
            "transformation": self.transformer.cache.get_stats(),
            "preview": self.preview_cache.stats,
        }

    def clear_caches(self) -> None:
        self.transformer.cache.clear()
        self.preview_cache.clear()
        log("[PIPELINE] Transformation and preview caches cleared")

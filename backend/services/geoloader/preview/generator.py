"""
Preview generation.

generate_preview() turns a (possibly large) feature set into a cached,
categorized PreviewCollection:

1. Cache lookup by (file id, preview options)
2. Layer visibility filter (total and visible counts are recorded)
3. Sampling down to max_features (grid or sequential)
4. Reprojection of the sample into the target system
5. Optional line/polygon simplification (shapely, target units)
6. Bounds recomputed from the transformed sample, plus padded display bounds
7. Categorization into points / lines / polygons, then cache store
"""

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from shapely.geometry import mapping, shape

from ..core.constants import (
    BOUNDS_PADDING_RATIO,
    DEFAULT_MAX_PREVIEW_FEATURES,
    EPSG_WGS84,
    LINE_TYPES,
    POLYGON_TYPES,
)
from ..core.types import Feature, Geometry, WarningCollector, bounds_of_features, geometry_is_valid
from ..transforms.registry import CoordinateSystemRegistry, normalize_code
from ..transforms.transformers import CoordinateTransformer
from ..utils.logging import log
from .cache import PreviewCache
from .categorizer import PreviewCollection, categorize_features
from .sampler import sample_features


def _log(message: str, debug: bool = False):
    """Internal logging function."""
    if debug:
        print(f"[PREVIEW] {message}")


@dataclass
class PreviewOptions:
    """Options that shape a preview (and therefore its cache key)."""

    max_features: int = DEFAULT_MAX_PREVIEW_FEATURES
    """Upper bound on features in the preview"""

    visible_layers: Optional[Set[str]] = None
    """Layers to include (None includes every layer, an empty set none)"""

    target_coordinate_system: str = EPSG_WGS84
    """Code of the system preview coordinates are delivered in"""

    smart_sampling: bool = True
    """Grid sampling when True, sequential truncation otherwise"""

    enable_caching: bool = True
    """Look up and store previews in the preview cache"""

    simplify_tolerance: float = 0.0
    """Douglas-Peucker tolerance in target units (0 disables)"""

    debug: bool = False
    """Enable debug logging (not part of the cache key)"""

    def cache_key(self) -> Dict[str, Any]:
        key = asdict(self)
        key.pop("debug")
        return key


def simplify_geometry(geometry: Geometry, tolerance: float) -> Geometry:
    """
    Simplify a line or polygon geometry with shapely, keeping topology.

    Points and collections are returned unchanged, as is any geometry whose
    simplified form no longer satisfies the ring/line invariants.
    """
    if tolerance <= 0 or geometry.type not in LINE_TYPES + POLYGON_TYPES:
        return geometry
    simplified = shape(geometry.to_geojson()).simplify(tolerance, preserve_topology=True)
    if simplified.is_empty:
        return geometry
    result = Geometry.from_geojson(mapping(simplified))
    return result if geometry_is_valid(result) else geometry


class PreviewManager:
    """
    Builds previews for one set of options.

    Args:
        registry: Coordinate system registry (validates the target system)
        transformer: Coordinate transformer for the reprojection step
        cache: Preview cache (shared across managers); None disables caching
        options: PreviewOptions

    Example:
        >>> manager = PreviewManager(registry, transformer, PreviewCache(), PreviewOptions(max_features=500))
        >>> preview = manager.generate_preview(features, "roads.shp", "EPSG:2056")
        >>> preview.points.features, preview.display_bounds
    """

    def __init__(
        self,
        registry: CoordinateSystemRegistry,
        transformer: CoordinateTransformer,
        cache: Optional[PreviewCache] = None,
        options: Optional[PreviewOptions] = None,
    ):
        self.registry = registry
        self.transformer = transformer
        self.cache = cache
        self.options = options or PreviewOptions()
        if self.cache is not None:
            self.cache.on_options_changed(self.options.cache_key())

    def set_options(self, options: PreviewOptions) -> None:
        """Replace the options; any change invalidates the whole preview cache."""
        self.options = options
        if self.cache is not None:
            self.cache.on_options_changed(options.cache_key())

    def _is_visible(self, feature: Feature) -> bool:
        layers = self.options.visible_layers
        return layers is None or feature.layer in layers

    def _cache_options(self, source_crs: str) -> Dict[str, Any]:
        return dict(self.options.cache_key(), source_crs=normalize_code(source_crs))

    def cached_preview(self, file_id: str, source_crs: str) -> Optional[PreviewCollection]:
        """Return the cached preview for this input and options (counted as hit or miss)."""
        if not self.options.enable_caching or self.cache is None:
            return None
        cached = self.cache.get(file_id, self._cache_options(source_crs))
        if cached is None:
            return None
        _log(f"Cache hit for {file_id}", self.options.debug)
        return replace(cached, from_cache=True)

    def generate_preview(
        self,
        features: Iterable[Feature],
        file_id: str,
        source_crs: str,
        warnings: Optional[WarningCollector] = None,
        is_visible: Optional[Callable[[Feature], bool]] = None,
    ) -> PreviewCollection:
        """
        Generate (or fetch from cache) the preview of a feature set.

        Args:
            features: Every feature of the input, in order
            file_id: Identity of the input (name, size, ...) for the cache key
            source_crs: Code of the system the features are in
            warnings: Collector for transform and categorization warnings
            is_visible: Visibility predicate; defaults to options.visible_layers

        Returns:
            PreviewCollection in options.target_coordinate_system

        Raises:
            UnknownCoordinateSystemError: If either system is not registered
        """
        opts = self.options
        target = normalize_code(opts.target_coordinate_system)
        self.registry.get(source_crs)
        self.registry.get(target)
        warnings = warnings if warnings is not None else WarningCollector()

        cached = self.cached_preview(file_id, source_crs)
        if cached is not None:
            return cached

        visible_filter = is_visible or self._is_visible
        total = 0
        layers: Dict[str, None] = {}
        visible: List[Feature] = []
        for feature in features:
            total += 1
            layers.setdefault(feature.layer, None)
            if visible_filter(feature):
                visible.append(feature)

        sample = sample_features(
            visible,
            opts.max_features,
            smart=opts.smart_sampling,
            debug=opts.debug,
        )
        _log(f"{file_id}: {total} features, {len(visible)} visible, {len(sample)} sampled", opts.debug)

        transformed, _ = self.transformer.transform_features(sample, source_crs, target, warnings)
        if opts.simplify_tolerance > 0:
            transformed = [
                f.with_geometry(simplify_geometry(f.geometry, opts.simplify_tolerance))
                if f.geometry is not None else f
                for f in transformed
            ]

        preview = categorize_features(transformed, warnings, total_count=total, visible_count=len(visible))
        bounds = bounds_of_features(transformed)
        preview.bounds = bounds
        preview.display_bounds = bounds.padded(BOUNDS_PADDING_RATIO)
        preview.coordinate_system = target
        preview.layers = list(layers)

        if len(transformed) < len(sample):
            log(f"[PREVIEW] {len(sample) - len(transformed)} sampled feature(s) dropped during reprojection")

        if opts.enable_caching and self.cache is not None:
            self.cache.put(file_id, self._cache_options(source_crs), preview)
        return preview

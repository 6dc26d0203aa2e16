"""
Split preview features into point, line and polygon collections.

Multi-geometries go to the bucket of their single-part type. Members of a
GeometryCollection are categorized one by one as separate features that
share the parent's properties. A missing or invalid geometry is skipped
with a warning.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..core.constants import LINE_TYPES, POINT_TYPES, POLYGON_TYPES
from ..core.types import Bounds, Feature, WarningCollector, bounds_of, geometry_is_valid


@dataclass
class FeatureCollectionBucket:
    """Features of one geometry family plus their bounds."""
    features: List[Feature] = field(default_factory=list)
    bounds: Bounds = field(default_factory=Bounds)

    def add(self, feature: Feature) -> None:
        self.features.append(feature)
        bounds_of(feature.geometry, self.bounds)

    def __len__(self) -> int:
        return len(self.features)

    def to_geojson(self) -> Dict[str, Any]:
        return {
            "type": "FeatureCollection",
            "features": [f.to_geojson() for f in self.features],
            "bounds": self.bounds.to_dict(),
        }


@dataclass
class PreviewCollection:
    """
    Categorized preview handed to the renderer.

    Attributes:
        points: Point and MultiPoint features
        lines: LineString and MultiLineString features
        polygons: Polygon and MultiPolygon features
        total_count: Features seen before visibility filtering and sampling
        visible_count: Features that passed the layer filter
        bounds: Union of the three bucket bounds
        display_bounds: bounds padded for display
        coordinate_system: Code of the system the coordinates are in
        layers: Layers present in the input, in first-seen order
        from_cache: True when served from the preview cache
    """

    points: FeatureCollectionBucket = field(default_factory=FeatureCollectionBucket)
    lines: FeatureCollectionBucket = field(default_factory=FeatureCollectionBucket)
    polygons: FeatureCollectionBucket = field(default_factory=FeatureCollectionBucket)
    total_count: int = 0
    visible_count: int = 0
    bounds: Bounds = field(default_factory=Bounds)
    display_bounds: Bounds = field(default_factory=Bounds)
    coordinate_system: Optional[str] = None
    layers: List[str] = field(default_factory=list)
    from_cache: bool = False

    @property
    def feature_count(self) -> int:
        return len(self.points) + len(self.lines) + len(self.polygons)

    def to_geojson(self) -> Dict[str, Any]:
        return {
            "points": self.points.to_geojson(),
            "lines": self.lines.to_geojson(),
            "polygons": self.polygons.to_geojson(),
            "totalCount": self.total_count,
            "visibleCount": self.visible_count,
            "featureCount": self.feature_count,
            "bounds": self.bounds.to_dict(),
            "displayBounds": self.display_bounds.to_dict(),
            "coordinateSystem": self.coordinate_system,
            "layers": list(self.layers),
            "fromCache": self.from_cache,
        }


def _bucket_for(collection: PreviewCollection, geometry_type: str) -> Optional[FeatureCollectionBucket]:
    if geometry_type in POINT_TYPES:
        return collection.points
    if geometry_type in LINE_TYPES:
        return collection.lines
    if geometry_type in POLYGON_TYPES:
        return collection.polygons
    return None


def _add(collection: PreviewCollection, feature: Feature, warnings: WarningCollector) -> None:
    geometry = feature.geometry
    if geometry is not None and geometry.type == "GeometryCollection" and geometry.geometries:
        for member in geometry.geometries:
            _add(collection, feature.with_geometry(member), warnings)
        return

    if geometry is None or not geometry_is_valid(geometry):
        warnings.add(
            "PREVIEW_INVALID_GEOMETRY",
            f"Skipped feature {feature.id if feature.id is not None else '?'} on layer "
            f"'{feature.layer}': missing or invalid geometry",
            layer=feature.layer,
            featureId=feature.id,
        )
        return

    bucket = _bucket_for(collection, geometry.type)
    if bucket is None:
        warnings.add(
            "PREVIEW_INVALID_GEOMETRY",
            f"Skipped feature with unknown geometry type {geometry.type}",
            layer=feature.layer,
        )
        return
    bucket.add(feature)


def categorize_features(
    features: Iterable[Feature],
    warnings: Optional[WarningCollector] = None,
    total_count: Optional[int] = None,
    visible_count: Optional[int] = None,
) -> PreviewCollection:
    """
    Bucket features by geometry family.

    Args:
        features: Features to categorize
        warnings: Collector for skipped features (a private one if omitted)
        total_count: Reported total (defaults to the number categorized)
        visible_count: Reported visible count (defaults to total_count)

    Returns:
        PreviewCollection with per-bucket and overall bounds
    """
    warnings = warnings if warnings is not None else WarningCollector()
    collection = PreviewCollection()
    seen = 0
    for feature in features:
        seen += 1
        _add(collection, feature, warnings)

    collection.total_count = total_count if total_count is not None else seen
    collection.visible_count = visible_count if visible_count is not None else collection.total_count
    collection.bounds = (
        collection.points.bounds
        .union(collection.lines.bounds)
        .union(collection.polygons.bounds)
    )
    return collection

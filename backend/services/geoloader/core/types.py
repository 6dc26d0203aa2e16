"""
Type definitions for the geo-loader ingestion pipeline.

This module provides the core data structures shared by every stage: the
geometry model, features with their attribute mapping, bounding boxes,
coordinate system descriptors, warning collection and analysis results.

Geometries and features are immutable. Stages that change coordinates or
attributes build new instances (see Feature.with_geometry) instead of
mutating what a parser produced.
"""

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .constants import (
    DEFAULT_LAYER,
    GEOMETRY_TYPES,
    MAX_STORED_WARNINGS,
    MIN_LINE_POINTS,
    MIN_RING_POINTS,
)
from ..utils.logging import log


# Scalar attribute values carried by features
AttributeValue = Union[int, float, str, bool, None, date]

# (x, y) or (x, y, z)
Position = Tuple[float, ...]


# ============================================================================
# Geometry
# ============================================================================

def to_position(values: Sequence[Any]) -> Position:
    """Convert a coordinate sequence to a float tuple (2D or 3D)."""
    if len(values) < 2:
        raise ValueError(f"Position needs at least 2 values, got {len(values)}")
    if len(values) >= 3 and values[2] is not None:
        return (float(values[0]), float(values[1]), float(values[2]))
    return (float(values[0]), float(values[1]))


def is_finite_position(position: Sequence[float]) -> bool:
    """Return True if the position has at least x/y and every value is finite."""
    if len(position) < 2:
        return False
    try:
        return all(math.isfinite(v) for v in position)
    except TypeError:
        return False


def line_is_valid(positions: Sequence[Position]) -> bool:
    return len(positions) >= MIN_LINE_POINTS


def ring_is_closed(ring: Sequence[Position]) -> bool:
    return len(ring) >= 2 and tuple(ring[0][:2]) == tuple(ring[-1][:2])


def ring_is_valid(ring: Sequence[Position]) -> bool:
    """A ring is valid when closed and holding at least 4 points."""
    return len(ring) >= MIN_RING_POINTS and ring_is_closed(ring)


def close_ring(ring: Sequence[Position]) -> Tuple[Position, ...]:
    """Return the ring with its first point repeated at the end if needed."""
    ring = tuple(ring)
    if ring and not ring_is_closed(ring):
        return ring + (ring[0],)
    return ring


@dataclass(frozen=True)
class Geometry:
    """
    Immutable geometry value (GeoJSON geometry model).

    Attributes:
        type: One of GEOMETRY_TYPES
        coordinates: Nested tuples of positions
            - Point: Position
            - LineString / MultiPoint: Tuple[Position, ...]
            - Polygon / MultiLineString: Tuple[Tuple[Position, ...], ...]
            - MultiPolygon: three levels of nesting
        geometries: Member geometries (GeometryCollection only)
    """

    type: str
    coordinates: Any = ()
    geometries: Tuple["Geometry", ...] = ()

    def __post_init__(self):
        if self.type not in GEOMETRY_TYPES:
            raise ValueError(f"Unknown geometry type: {self.type}")

    # === Constructors ===

    @classmethod
    def point(cls, x: float, y: float, z: Optional[float] = None) -> "Geometry":
        return cls("Point", to_position((x, y, z)))

    @classmethod
    def line_string(cls, positions: Iterable[Sequence[float]]) -> "Geometry":
        return cls("LineString", tuple(to_position(p) for p in positions))

    @classmethod
    def polygon(cls, rings: Iterable[Iterable[Sequence[float]]]) -> "Geometry":
        return cls("Polygon", tuple(tuple(to_position(p) for p in ring) for ring in rings))

    @classmethod
    def multi_point(cls, positions: Iterable[Sequence[float]]) -> "Geometry":
        return cls("MultiPoint", tuple(to_position(p) for p in positions))

    @classmethod
    def multi_line_string(cls, lines: Iterable[Iterable[Sequence[float]]]) -> "Geometry":
        return cls("MultiLineString", tuple(tuple(to_position(p) for p in line) for line in lines))

    @classmethod
    def multi_polygon(cls, polygons: Iterable[Iterable[Iterable[Sequence[float]]]]) -> "Geometry":
        return cls(
            "MultiPolygon",
            tuple(tuple(tuple(to_position(p) for p in ring) for ring in poly) for poly in polygons),
        )

    @classmethod
    def collection(cls, geometries: Iterable["Geometry"]) -> "Geometry":
        return cls("GeometryCollection", (), tuple(geometries))

    # === GeoJSON ===

    def to_geojson(self) -> Dict[str, Any]:
        if self.type == "GeometryCollection":
            return {"type": self.type, "geometries": [g.to_geojson() for g in self.geometries]}
        return {"type": self.type, "coordinates": _to_lists(self.coordinates)}

    @classmethod
    def from_geojson(cls, data: Dict[str, Any]) -> "Geometry":
        """
        Build a geometry from a GeoJSON mapping.

        Raises:
            ValueError: If the type is unknown or the coordinate nesting is wrong
        """
        if not isinstance(data, dict):
            raise ValueError("Geometry must be a mapping")
        gtype = data.get("type")
        if gtype == "GeometryCollection":
            return cls.collection(cls.from_geojson(g) for g in data.get("geometries") or [])
        coords = data.get("coordinates")
        if coords is None:
            raise ValueError(f"{gtype} geometry has no coordinates")
        try:
            if gtype == "Point":
                return cls("Point", to_position(coords))
            if gtype == "LineString":
                return cls.line_string(coords)
            if gtype == "Polygon":
                return cls.polygon(coords)
            if gtype == "MultiPoint":
                return cls.multi_point(coords)
            if gtype == "MultiLineString":
                return cls.multi_line_string(coords)
            if gtype == "MultiPolygon":
                return cls.multi_polygon(coords)
        except TypeError as e:
            raise ValueError(f"Malformed {gtype} coordinates: {e}") from e
        raise ValueError(f"Unknown geometry type: {gtype}")


def _to_lists(value: Any) -> Any:
    if isinstance(value, tuple) and value and isinstance(value[0], (int, float)):
        return list(value)
    if isinstance(value, tuple):
        return [_to_lists(v) for v in value]
    return value


def iter_positions(geometry: Geometry) -> Iterator[Position]:
    """Yield every leaf position of a geometry, at any nesting level."""
    if geometry.type == "GeometryCollection":
        for member in geometry.geometries:
            yield from iter_positions(member)
    elif geometry.type == "Point":
        yield geometry.coordinates
    elif geometry.type in ("LineString", "MultiPoint"):
        yield from geometry.coordinates
    elif geometry.type in ("Polygon", "MultiLineString"):
        for part in geometry.coordinates:
            yield from part
    elif geometry.type == "MultiPolygon":
        for polygon in geometry.coordinates:
            for ring in polygon:
                yield from ring


def geometry_is_valid(geometry: Optional[Geometry]) -> bool:
    """
    Check the structural invariants of a geometry.

    Every position must be finite, every line part must hold at least 2
    points, every ring must be closed with at least 4 points, and multi
    geometries must not be empty.
    """
    if geometry is None:
        return False
    gtype = geometry.type
    coords = geometry.coordinates

    if gtype == "GeometryCollection":
        return bool(geometry.geometries) and all(geometry_is_valid(g) for g in geometry.geometries)
    if not all(is_finite_position(p) for p in iter_positions(geometry)):
        return False
    if gtype == "Point":
        return True
    if gtype == "MultiPoint":
        return len(coords) > 0
    if gtype == "LineString":
        return line_is_valid(coords)
    if gtype == "MultiLineString":
        return len(coords) > 0 and all(line_is_valid(line) for line in coords)
    if gtype == "Polygon":
        return len(coords) > 0 and all(ring_is_valid(ring) for ring in coords)
    if gtype == "MultiPolygon":
        return len(coords) > 0 and all(
            len(poly) > 0 and all(ring_is_valid(ring) for ring in poly) for poly in coords
        )
    return False


# ============================================================================
# Bounds
# ============================================================================

@dataclass
class Bounds:
    """
    Axis-aligned bounding box.

    An empty box has all-infinite extents (min = +inf, max = -inf) and
    signals that no finite coordinate has been seen.
    """

    min_x: float = math.inf
    min_y: float = math.inf
    max_x: float = -math.inf
    max_y: float = -math.inf

    @classmethod
    def empty(cls) -> "Bounds":
        return cls()

    @classmethod
    def from_tuple(cls, values: Sequence[float]) -> "Bounds":
        return cls(float(values[0]), float(values[1]), float(values[2]), float(values[3]))

    @property
    def is_valid(self) -> bool:
        return (
            all(math.isfinite(v) for v in (self.min_x, self.min_y, self.max_x, self.max_y))
            and self.min_x <= self.max_x
            and self.min_y <= self.max_y
        )

    @property
    def width(self) -> float:
        return self.max_x - self.min_x if self.is_valid else 0.0

    @property
    def height(self) -> float:
        return self.max_y - self.min_y if self.is_valid else 0.0

    def extend(self, x: float, y: float) -> None:
        """Grow the box to include (x, y). Non-finite values are ignored."""
        if not (math.isfinite(x) and math.isfinite(y)):
            return
        self.min_x = min(self.min_x, x)
        self.min_y = min(self.min_y, y)
        self.max_x = max(self.max_x, x)
        self.max_y = max(self.max_y, y)

    def union(self, other: "Bounds") -> "Bounds":
        result = Bounds(self.min_x, self.min_y, self.max_x, self.max_y)
        if other.is_valid:
            result.extend(other.min_x, other.min_y)
            result.extend(other.max_x, other.max_y)
        return result

    def contains(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y

    def corners(self) -> List[Tuple[float, float]]:
        """All four corners (not just min/max), counter-clockwise from min."""
        return [
            (self.min_x, self.min_y),
            (self.max_x, self.min_y),
            (self.max_x, self.max_y),
            (self.min_x, self.max_y),
        ]

    def padded(self, ratio: float) -> "Bounds":
        """Return a copy grown by ratio of its width/height on every side."""
        if not self.is_valid:
            return Bounds()
        dx = self.width * ratio
        dy = self.height * ratio
        return Bounds(self.min_x - dx, self.min_y - dy, self.max_x + dx, self.max_y + dy)

    def to_dict(self) -> Dict[str, Optional[float]]:
        if not self.is_valid:
            return {"minX": None, "minY": None, "maxX": None, "maxY": None}
        return {"minX": self.min_x, "minY": self.min_y, "maxX": self.max_x, "maxY": self.max_y}


def bounds_of(geometry: Optional[Geometry], bounds: Optional[Bounds] = None) -> Bounds:
    """Compute (or extend) the bounds of a geometry from its positions."""
    result = bounds if bounds is not None else Bounds()
    if geometry is None:
        return result
    for position in iter_positions(geometry):
        if len(position) >= 2:
            result.extend(position[0], position[1])
    return result


def bounds_of_features(features: Iterable["Feature"]) -> Bounds:
    result = Bounds()
    for feature in features:
        bounds_of(feature.geometry, result)
    return result


# ============================================================================
# Features
# ============================================================================

@dataclass(frozen=True)
class Feature:
    """
    Geometry plus attributes plus layer tag.

    Attributes:
        geometry: Geometry (None for records without shape, e.g. shapefile Null)
        properties: Attribute mapping (string key -> scalar value)
        layer: Layer identifier (DEFAULT_LAYER when the source has none)
        id: Optional source identifier (record number, entity handle, ...)
    """

    geometry: Optional[Geometry]
    properties: Dict[str, AttributeValue] = field(default_factory=dict)
    layer: str = DEFAULT_LAYER
    id: Optional[Union[int, str]] = None

    def __post_init__(self):
        # Own a private copy so callers cannot alias the mapping
        object.__setattr__(self, "properties", dict(self.properties or {}))
        if not self.layer:
            object.__setattr__(self, "layer", DEFAULT_LAYER)

    def with_geometry(self, geometry: Optional[Geometry], **extra: AttributeValue) -> "Feature":
        properties = dict(self.properties)
        properties.update(extra)
        return Feature(geometry, properties, self.layer, self.id)

    def with_properties(self, **extra: AttributeValue) -> "Feature":
        return self.with_geometry(self.geometry, **extra)

    @property
    def geometry_type(self) -> Optional[str]:
        return self.geometry.type if self.geometry is not None else None

    def to_geojson(self) -> Dict[str, Any]:
        properties = {k: _json_value(v) for k, v in self.properties.items()}
        properties.setdefault("layer", self.layer)
        data: Dict[str, Any] = {
            "type": "Feature",
            "geometry": self.geometry.to_geojson() if self.geometry is not None else None,
            "properties": properties,
        }
        if self.id is not None:
            data["id"] = self.id
        return data


def _json_value(value: AttributeValue) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def coerce_attribute(value: Any) -> AttributeValue:
    """Map an arbitrary value onto the closed attribute scalar set."""
    if value is None or isinstance(value, (bool, int, float, str, date)):
        return value
    return str(value)


# ============================================================================
# Coordinate Systems
# ============================================================================

@dataclass(frozen=True)
class CoordinateSystem:
    """
    Registered coordinate reference system.

    Attributes:
        code: Identifier (e.g., "EPSG:2056")
        proj4: PROJ definition string
        units: "m" or "degrees"
        is_geographic: True for longitude/latitude systems
        name: Human-readable name
        envelope: Valid coordinate envelope (minX, minY, maxX, maxY)
    """

    code: str
    proj4: str
    units: str
    is_geographic: bool
    name: str = ""
    envelope: Tuple[float, float, float, float] = (-math.inf, -math.inf, math.inf, math.inf)

    @property
    def envelope_bounds(self) -> Bounds:
        return Bounds.from_tuple(self.envelope)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "proj4": self.proj4,
            "units": self.units,
            "isGeographic": self.is_geographic,
            "envelope": list(self.envelope),
        }


# ============================================================================
# Warnings
# ============================================================================

@dataclass(frozen=True)
class ProcessingWarning:
    """Recoverable problem recorded while processing a unit (record, entity, coordinate)."""
    code: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": dict(self.context)}


class WarningCollector:
    """
    Aggregates recoverable warnings for an analysis or load.

    Every warning is counted, but only the first `max_stored` are kept
    verbatim so a file with millions of bad records stays bounded.
    """

    def __init__(self, max_stored: int = MAX_STORED_WARNINGS, echo: bool = True):
        self.max_stored = max_stored
        self.echo = echo
        self.total = 0
        self.warnings: List[ProcessingWarning] = []
        self.counts_by_code: Dict[str, int] = {}

    def add(self, code: str, message: str, **context: Any) -> None:
        self.total += 1
        self.counts_by_code[code] = self.counts_by_code.get(code, 0) + 1
        if len(self.warnings) < self.max_stored:
            self.warnings.append(ProcessingWarning(code, message, context))
        if self.echo:
            log(f"[WARNING] {message}")

    def extend(self, other: "WarningCollector") -> None:
        """Merge another collector's warnings and counts into this one."""
        self.total += other.total
        for code, count in other.counts_by_code.items():
            self.counts_by_code[code] = self.counts_by_code.get(code, 0) + count
        room = self.max_stored - len(self.warnings)
        if room > 0:
            self.warnings.extend(other.warnings[:room])

    def has_code(self, code: str) -> bool:
        return code in self.counts_by_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.total,
            "byCode": dict(self.counts_by_code),
            "items": [w.to_dict() for w in self.warnings],
        }


# ============================================================================
# Analysis
# ============================================================================

@dataclass
class LayerInfo:
    """Layer summary reported by analyze() (DXF layer table, or a single default layer)."""
    name: str
    feature_count: int = 0
    geometry_types: List[str] = field(default_factory=list)
    visible: bool = True
    locked: bool = False
    frozen: bool = False
    color: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "featureCount": self.feature_count,
            "geometryTypes": list(self.geometry_types),
            "visible": self.visible,
            "locked": self.locked,
            "frozen": self.frozen,
            "color": self.color,
        }


@dataclass
class AnalysisResult:
    """
    Metadata-only analysis of an input file.

    Attributes:
        format_name: Parser that produced the result ("shapefile", "dxf", ...)
        layers: Layers found in the analyzed prefix (or declared by the file)
        bounds: Bounds of the preview sample (or the file header when declared)
        preview_sample: First records, bounded by ANALYZE_RECORD_LIMIT
        feature_count_estimate: Record count when the format declares it
        detected_crs: Detected source CRS code (filled by the pipeline)
        crs_confidence: Detector confidence in [0, 1]
        crs_source: Detection strategy ("metadata", "range", "heuristic", "default")
        metadata: Format-specific extras (e.g., "prj" text, DXF header values)
        warnings: Recoverable problems seen while analyzing
    """
    format_name: str
    layers: List[LayerInfo] = field(default_factory=list)
    bounds: Bounds = field(default_factory=Bounds)
    preview_sample: List[Feature] = field(default_factory=list)
    feature_count_estimate: Optional[int] = None
    detected_crs: Optional[str] = None
    crs_confidence: float = 0.0
    crs_source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: WarningCollector = field(default_factory=WarningCollector)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format_name,
            "layers": [layer.to_dict() for layer in self.layers],
            "bounds": self.bounds.to_dict(),
            "featureCountEstimate": self.feature_count_estimate,
            "detectedCrs": self.detected_crs,
            "crsConfidence": self.crs_confidence,
            "crsSource": self.crs_source,
            "metadata": {k: v for k, v in self.metadata.items() if isinstance(v, (str, int, float, bool, list, dict, type(None)))},
            "previewSample": [f.to_geojson() for f in self.preview_sample],
            "warnings": self.warnings.to_dict(),
        }


def summarize_layers(features: Iterable[Feature]) -> List[LayerInfo]:
    """Build LayerInfo entries (count + geometry types) from features, in first-seen order."""
    layers: Dict[str, LayerInfo] = {}
    for feature in features:
        info = layers.get(feature.layer)
        if info is None:
            info = layers[feature.layer] = LayerInfo(name=feature.layer)
        info.feature_count += 1
        gtype = feature.geometry_type
        if gtype and gtype not in info.geometry_types:
            info.geometry_types.append(gtype)
    return list(layers.values())


# Type aliases for clarity
ProgressCallback = Callable[[int, Optional[int]], None]

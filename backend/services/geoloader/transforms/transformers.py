"""
Coordinate transformation engine using pyproj.

CoordinateTransformer reprojects points, geometries, features and bounding
boxes between registered coordinate systems. Compiled pyproj transformers
are shared through a TransformationCache.

Axis order: transformers are built with always_xy=True, so input and output
are always (x/easting/longitude, y/northing/latitude). No swap is applied
before or after the numeric transform.

Failure semantics:
- Unregistered CRS code: UnknownCoordinateSystemError (aborts the call)
- Non-finite input or output coordinate: dropped, reported as a warning
- Degenerate result (line < 2 points, ring < 4 points, empty multi part):
  that part, or the whole geometry, is dropped
"""

import math
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from pyproj import Transformer

from ..core.constants import (
    BOUNDS_DENSIFY_POINTS,
    MIN_LINE_POINTS,
    MIN_RING_POINTS,
    PROP_FROM_SYSTEM,
    PROP_TO_SYSTEM,
    PROP_TRANSFORMED,
    PROP_TRANSFORMED_COORDINATES,
)
from ..core.types import (
    Bounds,
    Feature,
    Geometry,
    Position,
    WarningCollector,
    close_ring,
    iter_positions,
)
from .cache import TransformationCache
from .registry import CoordinateSystemRegistry, normalize_code


def _log(message: str, debug: bool = False):
    """Internal logging function."""
    if debug:
        print(f"[TRANSFORM] {message}")


def _edge_points(bounds: Bounds, points_per_edge: int) -> List[Position]:
    """Corners plus evenly spaced points along every edge of a box."""
    steps = max(1, points_per_edge - 1)
    corners = bounds.corners()
    positions: List[Position] = []
    for (x1, y1), (x2, y2) in zip(corners, corners[1:] + corners[:1]):
        for i in range(steps):
            t = i / steps
            positions.append((x1 + (x2 - x1) * t, y1 + (y2 - y1) * t))
    return positions


class _DropCounter:
    """Counts coordinates dropped while transforming one geometry."""

    def __init__(self):
        self.dropped = 0


class CoordinateTransformer:
    """
    Reprojects geometry between coordinate systems of a registry.

    Args:
        registry: Coordinate system registry
        cache: Transformer cache (a private one is created when omitted)
        debug: Print cache activity

    Example:
        >>> transformer = CoordinateTransformer(create_default_registry())
        >>> lon, lat = transformer.transform_point(2600000, 1200000, "EPSG:2056", "EPSG:4326")
        >>> round(lon, 2), round(lat, 2)
        (7.44, 46.95)
    """

    def __init__(
        self,
        registry: CoordinateSystemRegistry,
        cache: Optional[TransformationCache] = None,
        debug: bool = False,
    ):
        self.registry = registry
        self.cache = cache if cache is not None else TransformationCache()
        self.debug = debug

    # ========================================================================
    # Transformer lookup
    # ========================================================================

    def _resolve(self, from_code: str, to_code: str) -> Tuple[str, str]:
        """Validate both codes; returns their registered forms."""
        return self.registry.get(from_code).code, self.registry.get(to_code).code

    def get_transformer(self, from_code: str, to_code: str) -> Transformer:
        """
        Return the compiled transformer for an ordered CRS pair.

        Raises:
            UnknownCoordinateSystemError: If either code is not registered
        """
        source, target = self._resolve(from_code, to_code)

        def build() -> Transformer:
            _log(f"Compiling transformer {source} -> {target}", self.debug)
            return Transformer.from_crs(
                self.registry.pyproj_crs(source),
                self.registry.pyproj_crs(target),
                always_xy=True,
            )

        return self.cache.get_or_create(source, target, build)

    @staticmethod
    def is_noop(from_code: str, to_code: str) -> bool:
        return normalize_code(from_code) == normalize_code(to_code)

    # ========================================================================
    # Points
    # ========================================================================

    def transform_point(
        self,
        x: float,
        y: float,
        from_code: str,
        to_code: str,
        z: Optional[float] = None,
        warnings: Optional[WarningCollector] = None,
    ) -> Optional[Position]:
        """
        Transform one coordinate.

        Returns:
            (x, y) or (x, y, z); the input unchanged when both codes are the
            same system; None when the input or the result is not finite

        Raises:
            UnknownCoordinateSystemError: If either code is not registered
        """
        source, target = self._resolve(from_code, to_code)
        position: Position = (x, y) if z is None else (x, y, z)
        if source == target:
            return position

        result = self._transform_positions([position], source, target)
        if not result:
            if warnings is not None:
                warnings.add(
                    "INVALID_COORDINATE",
                    f"Coordinate ({x}, {y}) could not be transformed from {source} to {target}",
                    x=x,
                    y=y,
                )
            return None
        return result[0]

    def _transform_positions(
        self,
        positions: Sequence[Position],
        source: str,
        target: str,
        counter: Optional[_DropCounter] = None,
    ) -> Tuple[Position, ...]:
        """Vectorized transform of a position sequence; non-finite results are dropped."""
        if not positions:
            return ()
        transformer = self.get_transformer(source, target)

        has_z = all(len(p) >= 3 for p in positions)
        xs = np.array([p[0] for p in positions], dtype=float)
        ys = np.array([p[1] for p in positions], dtype=float)
        if has_z:
            zs = np.array([p[2] for p in positions], dtype=float)
            out_x, out_y, out_z = transformer.transform(xs, ys, zs)
            valid = np.isfinite(out_x) & np.isfinite(out_y) & np.isfinite(out_z)
        else:
            out_x, out_y = transformer.transform(xs, ys)
            out_z = None
            valid = np.isfinite(out_x) & np.isfinite(out_y)

        out_x = np.atleast_1d(out_x)
        out_y = np.atleast_1d(out_y)
        valid = np.atleast_1d(valid)
        if counter is not None:
            counter.dropped += int(len(valid) - np.count_nonzero(valid))

        if out_z is None:
            return tuple(
                (float(px), float(py))
                for px, py, ok in zip(out_x, out_y, valid)
                if ok
            )
        out_z = np.atleast_1d(out_z)
        return tuple(
            (float(px), float(py), float(pz))
            for px, py, pz, ok in zip(out_x, out_y, out_z, valid)
            if ok
        )

    # ========================================================================
    # Geometry
    # ========================================================================

    def _transform_ring(self, ring: Sequence[Position], source: str, target: str, counter: _DropCounter):
        out = self._transform_positions(ring, source, target, counter)
        out = close_ring(out)
        return out if len(out) >= MIN_RING_POINTS else None

    def _transform_polygon(self, rings, source: str, target: str, counter: _DropCounter):
        out = []
        for index, ring in enumerate(rings):
            transformed = self._transform_ring(ring, source, target, counter)
            if transformed is None:
                if index == 0:
                    # Exterior lost: holes alone do not make a polygon
                    return None
                continue
            out.append(transformed)
        return tuple(out) if out else None

    def _transform(self, geometry: Geometry, source: str, target: str, counter: _DropCounter) -> Optional[Geometry]:
        gtype = geometry.type
        coords = geometry.coordinates

        if gtype == "GeometryCollection":
            members = [self._transform(g, source, target, counter) for g in geometry.geometries]
            members = [g for g in members if g is not None]
            return Geometry.collection(members) if members else None

        if gtype == "Point":
            out = self._transform_positions([coords], source, target, counter)
            return Geometry("Point", out[0]) if out else None

        if gtype == "MultiPoint":
            out = self._transform_positions(coords, source, target, counter)
            return Geometry("MultiPoint", out) if out else None

        if gtype == "LineString":
            out = self._transform_positions(coords, source, target, counter)
            return Geometry("LineString", out) if len(out) >= MIN_LINE_POINTS else None

        if gtype == "MultiLineString":
            lines = [self._transform_positions(line, source, target, counter) for line in coords]
            lines = [line for line in lines if len(line) >= MIN_LINE_POINTS]
            return Geometry("MultiLineString", tuple(lines)) if lines else None

        if gtype == "Polygon":
            rings = self._transform_polygon(coords, source, target, counter)
            return Geometry("Polygon", rings) if rings else None

        if gtype == "MultiPolygon":
            polygons = [self._transform_polygon(poly, source, target, counter) for poly in coords]
            polygons = [p for p in polygons if p]
            return Geometry("MultiPolygon", tuple(polygons)) if polygons else None

        return None

    def transform_geometry(
        self,
        geometry: Optional[Geometry],
        from_code: str,
        to_code: str,
        warnings: Optional[WarningCollector] = None,
    ) -> Optional[Geometry]:
        """
        Transform every coordinate of a geometry into a new geometry.

        Returns:
            The transformed geometry, the input itself when both codes are the
            same system, or None when nothing valid survives

        Raises:
            UnknownCoordinateSystemError: If either code is not registered
        """
        source, target = self._resolve(from_code, to_code)
        if geometry is None:
            return None
        if source == target:
            return geometry

        counter = _DropCounter()
        result = self._transform(geometry, source, target, counter)
        if counter.dropped and warnings is not None:
            warnings.add(
                "INVALID_COORDINATE",
                f"{counter.dropped} coordinate(s) of a {geometry.type} could not be transformed "
                f"from {source} to {target}",
                geometry_type=geometry.type,
                dropped=counter.dropped,
            )
        if result is None:
            _log(f"{geometry.type} dropped: degenerate after transform", self.debug)
        return result

    # ========================================================================
    # Features and bounds
    # ========================================================================

    def transform_feature(
        self,
        feature: Feature,
        from_code: str,
        to_code: str,
        warnings: Optional[WarningCollector] = None,
    ) -> Optional[Feature]:
        """
        Transform a feature, tagging it with provenance properties.

        A feature already tagged `_toSystem == to_code` is returned as is.
        Returns None when its geometry does not survive.
        """
        source, target = self._resolve(from_code, to_code)
        if feature.properties.get(PROP_TO_SYSTEM) == target:
            return feature
        if source == target:
            return feature

        geometry = self.transform_geometry(feature.geometry, source, target, warnings)
        if geometry is None:
            return None
        return feature.with_geometry(
            geometry,
            **{
                PROP_FROM_SYSTEM: source,
                PROP_TO_SYSTEM: target,
                PROP_TRANSFORMED: True,
                PROP_TRANSFORMED_COORDINATES: sum(1 for _ in iter_positions(geometry)),
            },
        )

    def transform_features(
        self,
        features: Iterable[Feature],
        from_code: str,
        to_code: str,
        warnings: Optional[WarningCollector] = None,
    ) -> Tuple[List[Feature], WarningCollector]:
        """
        Batch-transform features.

        Returns:
            Tuple of (surviving features in input order, warnings)
        """
        warnings = warnings if warnings is not None else WarningCollector()
        out: List[Feature] = []
        for feature in features:
            transformed = self.transform_feature(feature, from_code, to_code, warnings)
            if transformed is not None:
                out.append(transformed)
        return out, warnings

    def transform_bounds(
        self,
        bounds: Bounds,
        from_code: str,
        to_code: str,
        densify_pts: int = BOUNDS_DENSIFY_POINTS,
    ) -> Bounds:
        """
        Transform a bounding box through its corners and densified edges.

        Rotated or curved target grids can move any corner to the new
        extreme, and edges that are straight in the source may bulge in the
        target (parallels in a geographic target), so min/max is taken over
        every corner plus `densify_pts` points along each edge.
        """
        source, target = self._resolve(from_code, to_code)
        if not bounds.is_valid:
            return Bounds()
        if source == target:
            return Bounds(bounds.min_x, bounds.min_y, bounds.max_x, bounds.max_y)

        result = Bounds()
        for x, y in self._transform_positions(_edge_points(bounds, densify_pts), source, target):
            if math.isfinite(x) and math.isfinite(y):
                result.extend(x, y)
        return result

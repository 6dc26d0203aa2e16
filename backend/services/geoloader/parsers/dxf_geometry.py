"""
Affine matrices and curve approximation for DXF entities.

Block references are expanded with 4x4 homogeneous matrices:

    insert = T(position) · R(rotation) · S(scale)
    cell   = insert · T(col * colSpacing, row * rowSpacing, 0)
    world  = parent · cell · T(-blockBasePoint)

so nested blocks compose as parent · child. Curves (circle, arc, ellipse)
are sampled into polylines in block-local coordinates and the composed
matrix is applied to every sampled point, which keeps non-uniform scale
and mirroring exact.
"""

import math
from typing import Callable, List, Sequence, Tuple

import numpy as np

from ..core.constants import ARC_SEGMENTS, CIRCLE_SEGMENTS, ELLIPSE_SEGMENTS
from ..core.types import Geometry, Position


# ============================================================================
# Matrices
# ============================================================================

def identity() -> np.ndarray:
    return np.eye(4)


def translation(tx: float, ty: float, tz: float = 0.0) -> np.ndarray:
    m = np.eye(4)
    m[0, 3] = tx
    m[1, 3] = ty
    m[2, 3] = tz
    return m


def rotation_z(degrees: float) -> np.ndarray:
    """Counter-clockwise rotation about Z by `degrees`."""
    rad = math.radians(degrees)
    c, s = math.cos(rad), math.sin(rad)
    m = np.eye(4)
    m[0, 0] = c
    m[0, 1] = -s
    m[1, 0] = s
    m[1, 1] = c
    return m


def scaling(sx: float, sy: float, sz: float = 1.0) -> np.ndarray:
    return np.diag([sx, sy, sz, 1.0])


def combine(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Matrix product a · b (b is applied first)."""
    return a @ b


def insert_matrix(
    position: Tuple[float, float, float],
    rotation_deg: float,
    scale: Tuple[float, float, float],
) -> np.ndarray:
    """Block reference transform: translation · rotation · scale."""
    return combine(
        combine(translation(*position), rotation_z(rotation_deg)),
        scaling(*scale),
    )


def array_cell_matrix(
    base: np.ndarray,
    row: int,
    col: int,
    row_spacing: float,
    col_spacing: float,
) -> np.ndarray:
    """Transform of one cell of an arrayed block reference."""
    return combine(base, translation(col * col_spacing, row * row_spacing, 0.0))


def is_identity(matrix: np.ndarray) -> bool:
    return bool(np.allclose(matrix, np.eye(4)))


def apply_to_positions(matrix: np.ndarray, positions: Sequence[Position]) -> Tuple[Position, ...]:
    """
    Transform positions by a 4x4 matrix.

    2D positions are lifted with z = 0 and returned as 2D; 3D positions keep
    their transformed z.
    """
    if not positions:
        return ()
    has_z = len(positions[0]) >= 3
    pts = np.ones((len(positions), 4))
    for i, p in enumerate(positions):
        pts[i, 0] = p[0]
        pts[i, 1] = p[1]
        pts[i, 2] = p[2] if len(p) >= 3 else 0.0
    out = pts @ matrix.T
    if has_z:
        return tuple((float(x), float(y), float(z)) for x, y, z in out[:, :3])
    return tuple((float(x), float(y)) for x, y in out[:, :2])


def map_geometry(geometry: Geometry, fn: Callable[[Sequence[Position]], Tuple[Position, ...]]) -> Geometry:
    """Rebuild a geometry with every position sequence passed through fn."""
    gtype = geometry.type
    coords = geometry.coordinates
    if gtype == "GeometryCollection":
        return Geometry.collection(map_geometry(g, fn) for g in geometry.geometries)
    if gtype == "Point":
        return Geometry("Point", fn([coords])[0])
    if gtype in ("LineString", "MultiPoint"):
        return Geometry(gtype, fn(coords))
    if gtype in ("Polygon", "MultiLineString"):
        return Geometry(gtype, tuple(fn(part) for part in coords))
    return Geometry(gtype, tuple(tuple(fn(ring) for ring in poly) for poly in coords))


def transform_geometry(geometry: Geometry, matrix: np.ndarray) -> Geometry:
    if is_identity(matrix):
        return geometry
    return map_geometry(geometry, lambda positions: apply_to_positions(matrix, positions))


# ============================================================================
# Curve Approximation
# ============================================================================

def _with_z(points: List[Tuple[float, float]], z: float) -> List[Position]:
    if z:
        return [(x, y, z) for x, y in points]
    return list(points)


def circle_points(cx: float, cy: float, radius: float, z: float = 0.0, segments: int = CIRCLE_SEGMENTS) -> List[Position]:
    """Closed ring of `segments` segments (first point repeated at the end)."""
    pts = []
    for i in range(segments):
        t = 2.0 * math.pi * i / segments
        pts.append((cx + radius * math.cos(t), cy + radius * math.sin(t)))
    pts.append(pts[0])
    return _with_z(pts, z)


def arc_points(
    cx: float,
    cy: float,
    radius: float,
    start_deg: float,
    end_deg: float,
    z: float = 0.0,
    segments: int = ARC_SEGMENTS,
) -> List[Position]:
    """
    Counter-clockwise arc from start to end angle (degrees).

    An end angle at or before the start angle wraps by a full turn.
    """
    if end_deg <= start_deg:
        end_deg += 360.0
    start = math.radians(start_deg)
    sweep = math.radians(end_deg) - start
    pts = []
    for i in range(segments + 1):
        t = start + sweep * i / segments
        pts.append((cx + radius * math.cos(t), cy + radius * math.sin(t)))
    return _with_z(pts, z)


def ellipse_points(
    cx: float,
    cy: float,
    major_x: float,
    major_y: float,
    ratio: float,
    start_param: float = 0.0,
    end_param: float = 2.0 * math.pi,
    z: float = 0.0,
    segments: int = ELLIPSE_SEGMENTS,
) -> Tuple[List[Position], bool]:
    """
    Sample an ellipse (or elliptical arc) given by its major axis endpoint.

    Args:
        cx, cy: Center
        major_x, major_y: Major axis endpoint relative to the center
        ratio: Minor / major axis ratio
        start_param, end_param: Parameter range in radians

    Returns:
        Tuple of (points, is_closed). A full turn returns a closed ring.
    """
    if end_param <= start_param:
        end_param += 2.0 * math.pi
    sweep = end_param - start_param
    closed = math.isclose(sweep, 2.0 * math.pi, abs_tol=1e-9)

    # Minor axis: major rotated +90 degrees, scaled by ratio
    minor_x, minor_y = -major_y * ratio, major_x * ratio

    count = segments if closed else segments + 1
    pts = []
    for i in range(count):
        t = start_param + sweep * i / segments
        c, s = math.cos(t), math.sin(t)
        pts.append((cx + major_x * c + minor_x * s, cy + major_y * c + minor_y * s))
    if closed:
        pts.append(pts[0])
    return _with_z(pts, z), closed

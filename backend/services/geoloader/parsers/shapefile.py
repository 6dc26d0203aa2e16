"""
ESRI Shapefile reader (.shp with .dbf / .prj / .cpg companions).

Binary layout:
- 100-byte header: file code 9994 (int32 BE @0), file length in 16-bit
  words (int32 BE @24), version (int32 LE @28), shape type (int32 LE @32),
  bounding box xmin/ymin/xmax/ymax (float64 LE @36..68), z and m ranges
  (float64 LE @68..100)
- Records: record number and content length in words (int32 BE pair),
  then content starting with the record's shape type (int32 LE)

Polyline / Polygon content:
    @0  shape type     @4  bbox (4 x float64)
    @36 numParts       @40 numPoints
    @44 parts[numParts] (int32), then points[numPoints] (2 x float64)
    Z variants: z range (2 x float64) + z[numPoints] after the points

Ring winding decides polygon assembly: a clockwise ring starts a new
polygon, a counter-clockwise ring is a hole of the preceding polygon.

A bad file code or truncated header is fatal (InvalidHeaderError). A
malformed record is skipped with a warning and reading continues.
"""

import struct
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from ..core.constants import (
    ANALYZE_RECORD_LIMIT,
    SHP_FILE_CODE,
    SHP_HEADER_SIZE,
    SHP_MAX_PARTS_PER_RECORD,
    SHP_MAX_POINTS_PER_RECORD,
    SHP_MULTIPOINT,
    SHP_MULTIPOINTM,
    SHP_MULTIPOINTZ,
    SHP_NULL,
    SHP_POINT,
    SHP_POINTM,
    SHP_POINTZ,
    SHP_POLYGON,
    SHP_POLYGONM,
    SHP_POLYGONZ,
    SHP_POLYLINE,
    SHP_POLYLINEM,
    SHP_POLYLINEZ,
    SHP_RECORD_HEADER_SIZE,
    SHP_TYPE_NAMES,
    SHP_Z_TYPES,
)
from ..core.errors import InvalidHeaderError
from ..core.types import (
    AnalysisResult,
    Bounds,
    Feature,
    Geometry,
    LayerInfo,
    WarningCollector,
    close_ring,
)
from .base import FormatParser
from .dbf import read_dbf, resolve_encoding

POINT_TYPES = (SHP_POINT, SHP_POINTZ, SHP_POINTM)
POLYLINE_TYPES = (SHP_POLYLINE, SHP_POLYLINEZ, SHP_POLYLINEM)
POLYGON_TYPES = (SHP_POLYGON, SHP_POLYGONZ, SHP_POLYGONM)
MULTIPOINT_TYPES = (SHP_MULTIPOINT, SHP_MULTIPOINTZ, SHP_MULTIPOINTM)


class _RecordError(ValueError):
    """Malformed shape record (recoverable: the record is skipped)."""


@dataclass
class ShapefileHeader:
    file_length: int
    version: int
    shape_type: int
    bounds: Bounds
    z_range: Tuple[float, float]
    m_range: Tuple[float, float]

    @property
    def shape_type_name(self) -> str:
        return SHP_TYPE_NAMES.get(self.shape_type, f"Unknown({self.shape_type})")


def _log(message: str, debug: bool = False):
    """Internal logging function."""
    if debug:
        print(f"[SHP] {message}")


# ============================================================================
# Header
# ============================================================================

def read_header(data: bytes) -> ShapefileHeader:
    """
    Parse and validate the fixed 100-byte main file header.

    Raises:
        InvalidHeaderError: If the buffer is shorter than the header or the
            file code is not 9994
    """
    if len(data) < SHP_HEADER_SIZE:
        raise InvalidHeaderError("shapefile", f"file is {len(data)} bytes, header needs {SHP_HEADER_SIZE}")

    file_code = struct.unpack_from(">i", data, 0)[0]
    if file_code != SHP_FILE_CODE:
        raise InvalidHeaderError("shapefile", f"bad file code {file_code} (expected {SHP_FILE_CODE})")

    file_length_words = struct.unpack_from(">i", data, 24)[0]
    version, shape_type = struct.unpack_from("<ii", data, 28)
    xmin, ymin, xmax, ymax, zmin, zmax, mmin, mmax = struct.unpack_from("<8d", data, 36)

    return ShapefileHeader(
        file_length=file_length_words * 2,
        version=version,
        shape_type=shape_type,
        bounds=Bounds(xmin, ymin, xmax, ymax),
        z_range=(zmin, zmax),
        m_range=(mmin, mmax),
    )


# ============================================================================
# Geometry Helpers
# ============================================================================

def is_clockwise(ring: np.ndarray) -> bool:
    """
    Ring orientation from the signed shoelace sum.

    sum((x2 - x1) * (y2 + y1)) > 0 means clockwise in a y-up system.
    """
    x = ring[:, 0]
    y = ring[:, 1]
    return float(np.sum((x[1:] - x[:-1]) * (y[1:] + y[:-1]))) > 0.0


def _to_positions(xy: np.ndarray, z: Optional[np.ndarray]) -> Tuple[Tuple[float, ...], ...]:
    if z is None:
        return tuple((float(px), float(py)) for px, py in xy)
    return tuple((float(px), float(py), float(pz)) for (px, py), pz in zip(xy, z))


def _split_parts(parts: np.ndarray, num_points: int) -> List[Tuple[int, int]]:
    """Turn the parts index array into (start, end) slices."""
    bounds = [int(p) for p in parts] + [num_points]
    slices = []
    for start, end in zip(bounds[:-1], bounds[1:]):
        if start < 0 or start > end or end > num_points:
            raise _RecordError(f"invalid part index {start}..{end} for {num_points} points")
        slices.append((start, end))
    return slices


def assemble_polygons(rings: List[np.ndarray], z_rings: List[Optional[np.ndarray]]) -> Tuple[Optional[Geometry], int]:
    """
    Group rings into polygons by winding.

    Returns:
        Tuple of (geometry, orphan_holes): geometry is a Polygon for one
        exterior, MultiPolygon for several, None when no ring survives.
        orphan_holes counts counter-clockwise rings seen before any exterior
        (they are promoted to exteriors).
    """
    polygons: List[List[Tuple[Tuple[float, ...], ...]]] = []
    orphan_holes = 0

    for ring, z in zip(rings, z_rings):
        positions = close_ring(_to_positions(ring, z))
        if len(positions) < 4:
            # Degenerate ring: dropped
            continue
        if is_clockwise(ring) or not polygons:
            if not is_clockwise(ring):
                orphan_holes += 1
            polygons.append([positions])
        else:
            polygons[-1].append(positions)

    if not polygons:
        return None, orphan_holes
    if len(polygons) == 1:
        return Geometry("Polygon", tuple(polygons[0])), orphan_holes
    return Geometry("MultiPolygon", tuple(tuple(p) for p in polygons)), orphan_holes


# ============================================================================
# Record Parsing
# ============================================================================

def _read_point(content: bytes, shape_type: int) -> Geometry:
    if len(content) < 20:
        raise _RecordError(f"point record too short ({len(content)} bytes)")
    x, y = struct.unpack_from("<2d", content, 4)
    if shape_type == SHP_POINTZ and len(content) >= 28:
        z = struct.unpack_from("<d", content, 20)[0]
        return Geometry.point(x, y, z)
    return Geometry.point(x, y)


def _read_counts(content: bytes, count_offset: int, with_parts: bool) -> Tuple[int, int]:
    if with_parts:
        if len(content) < count_offset + 8:
            raise _RecordError(f"record too short for part/point counts ({len(content)} bytes)")
        num_parts, num_points = struct.unpack_from("<2i", content, count_offset)
        if not 0 <= num_parts <= SHP_MAX_PARTS_PER_RECORD:
            raise _RecordError(f"invalid part count {num_parts}")
    else:
        if len(content) < count_offset + 4:
            raise _RecordError(f"record too short for point count ({len(content)} bytes)")
        num_parts = 0
        num_points = struct.unpack_from("<i", content, count_offset)[0]
    if not 0 <= num_points <= SHP_MAX_POINTS_PER_RECORD:
        raise _RecordError(f"invalid point count {num_points}")
    return num_parts, num_points


def _read_points(content: bytes, offset: int, num_points: int, shape_type: int) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    end = offset + 16 * num_points
    if end > len(content):
        raise _RecordError(f"point array overruns record ({end} > {len(content)} bytes)")
    xy = np.frombuffer(content, dtype="<f8", count=2 * num_points, offset=offset).reshape(-1, 2)

    z = None
    if shape_type in SHP_Z_TYPES:
        z_offset = end + 16  # skip z range
        if z_offset + 8 * num_points <= len(content):
            z = np.frombuffer(content, dtype="<f8", count=num_points, offset=z_offset)
    return xy, z


def parse_record(content: bytes, debug: bool = False) -> Tuple[int, Optional[Geometry]]:
    """
    Decode one record's content into a geometry.

    Returns:
        Tuple of (shape_type, geometry). Null shapes return None geometry.

    Raises:
        _RecordError: If the record is malformed or of an unsupported type
    """
    if len(content) < 4:
        raise _RecordError("record content shorter than shape type")
    shape_type = struct.unpack_from("<i", content, 0)[0]

    if shape_type == SHP_NULL:
        return shape_type, None

    if shape_type in POINT_TYPES:
        return shape_type, _read_point(content, shape_type)

    if shape_type in MULTIPOINT_TYPES:
        _, num_points = _read_counts(content, 36, with_parts=False)
        xy, z = _read_points(content, 40, num_points, shape_type)
        if num_points == 0:
            raise _RecordError("multipoint without points")
        return shape_type, Geometry("MultiPoint", _to_positions(xy, z))

    if shape_type in POLYLINE_TYPES or shape_type in POLYGON_TYPES:
        num_parts, num_points = _read_counts(content, 36, with_parts=True)
        parts_end = 44 + 4 * num_parts
        if parts_end > len(content):
            raise _RecordError("parts array overruns record")
        parts = np.frombuffer(content, dtype="<i4", count=num_parts, offset=44)
        xy, z = _read_points(content, parts_end, num_points, shape_type)
        slices = _split_parts(parts, num_points)

        if shape_type in POLYLINE_TYPES:
            lines = [
                _to_positions(xy[s:e], z[s:e] if z is not None else None)
                for s, e in slices
                if e - s >= 2
            ]
            if not lines:
                raise _RecordError("polyline without a part of 2+ points")
            if len(lines) == 1:
                return shape_type, Geometry("LineString", lines[0])
            return shape_type, Geometry("MultiLineString", tuple(lines))

        rings = [xy[s:e] for s, e in slices]
        z_rings = [z[s:e] if z is not None else None for s, e in slices]
        geometry, orphan_holes = assemble_polygons(rings, z_rings)
        if geometry is None:
            raise _RecordError("polygon without a ring of 4+ points")
        if orphan_holes:
            _log(f"{orphan_holes} counter-clockwise ring(s) before any exterior promoted to exterior", debug)
        return shape_type, geometry

    raise _RecordError(f"unsupported shape type {shape_type}")


def iter_shape_records(
    data: bytes,
    header: ShapefileHeader,
    warnings: WarningCollector,
    debug: bool = False,
) -> Iterator[Tuple[int, Optional[Geometry]]]:
    """
    Yield (sequence_number, geometry) for each record in file order.

    Sequence numbers are 1-based and count every record, including skipped
    ones, so they line up with DBF rows. Malformed records are reported to
    `warnings` and skipped; a record header that overruns the buffer ends
    iteration.
    """
    end = len(data)
    if SHP_HEADER_SIZE < header.file_length < end:
        end = header.file_length

    offset = SHP_HEADER_SIZE
    seq = 0
    while offset + SHP_RECORD_HEADER_SIZE <= end:
        record_number, content_words = struct.unpack_from(">ii", data, offset)
        seq += 1
        content_length = content_words * 2
        start = offset + SHP_RECORD_HEADER_SIZE
        stop = start + content_length

        if content_length < 4 or stop > end:
            warnings.add(
                "SHP_TRUNCATED_RECORD",
                f"Shapefile record {record_number} truncated (length {content_length} at offset {offset})",
                record=record_number,
                offset=offset,
            )
            break

        try:
            _, geometry = parse_record(data[start:stop], debug)
        except _RecordError as e:
            warnings.add(
                "SHP_INVALID_RECORD",
                f"Skipping shapefile record {record_number}: {e}",
                record=record_number,
            )
            offset = stop
            continue

        offset = stop
        if geometry is None:
            _log(f"Record {record_number} is a null shape", debug)
            continue
        yield seq, geometry


# ============================================================================
# Parser
# ============================================================================

class ShapefileParser(FormatParser):
    """Reader for .shp files joined with .dbf attributes by record number."""

    name = "shapefile"
    extensions = ("shp",)
    mime_types = ("application/x-esri-shape", "application/x-shapefile")

    def _load_attributes(
        self,
        companions: Dict[str, bytes],
        warnings: WarningCollector,
    ) -> Dict[int, Dict]:
        dbf = companions.get("dbf")
        if dbf is None:
            warnings.add("MISSING_COMPANION", "No .dbf companion file; features will have no attributes", companion="dbf")
            return {}
        try:
            table = read_dbf(dbf, resolve_encoding(companions.get("cpg")))
        except InvalidHeaderError as e:
            warnings.add("DBF_INVALID", f"Ignoring unreadable .dbf companion: {e}", companion="dbf")
            return {}
        _log(f"DBF: {len(table.fields)} fields, {len(table.records)} records", self.debug)
        return table.records

    def stream(
        self,
        data: bytes,
        companions: Optional[Dict[str, bytes]] = None,
        warnings: Optional[WarningCollector] = None,
    ) -> Iterator[Feature]:
        companions = companions or {}
        warnings = warnings if warnings is not None else WarningCollector()

        header = read_header(data)
        _log(f"Header: type={header.shape_type_name}, length={header.file_length} bytes", self.debug)

        attributes = self._load_attributes(companions, warnings)

        for seq, geometry in iter_shape_records(data, header, warnings, self.debug):
            yield Feature(geometry, attributes.get(seq, {}), id=seq)

    def analyze(
        self,
        data: bytes,
        companions: Optional[Dict[str, bytes]] = None,
        record_limit: int = ANALYZE_RECORD_LIMIT,
    ) -> AnalysisResult:
        companions = companions or {}
        header = read_header(data)

        result = AnalysisResult(format_name=self.name)
        result.metadata["shapeType"] = header.shape_type_name
        result.metadata["version"] = header.version
        if header.bounds.is_valid:
            result.bounds = Bounds(header.bounds.min_x, header.bounds.min_y, header.bounds.max_x, header.bounds.max_y)

        prj = companions.get("prj")
        if prj:
            result.metadata["prj"] = prj.decode("utf-8", errors="replace").strip()
        else:
            result.warnings.add("MISSING_COMPANION", "No .prj companion file; coordinate system will be detected", companion="prj")

        dbf = companions.get("dbf")
        if dbf is not None:
            try:
                record_count = struct.unpack_from("<I", dbf, 4)[0] if len(dbf) >= 8 else None
            except struct.error:
                record_count = None
            result.feature_count_estimate = record_count

        self._collect_sample(result, self.stream(data, companions, result.warnings), record_limit)
        if not result.layers:
            result.layers = [LayerInfo(name="0")]
        return result

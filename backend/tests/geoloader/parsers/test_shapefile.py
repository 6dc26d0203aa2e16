"""
Unit tests for the Shapefile and DBF readers

Tests cover:
1. Header validation (file code, truncation)
2. Polygon assembly by ring winding (holes vs. multiple exteriors)
3. Point, PolyLine and Z records
4. DBF attribute join and value conversion
5. Recoverable record errors and missing companions
6. analyze(): header bounds, PRJ pass-through, record count
"""

import struct
from datetime import date
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent))

from services.geoloader.core.errors import InvalidHeaderError
from services.geoloader.core.types import WarningCollector
from services.geoloader.parsers.dbf import convert_value, read_dbf, resolve_encoding, DbfField
from services.geoloader.parsers.shapefile import ShapefileParser, is_clockwise, read_header

import numpy as np


# ============================================================================
# Test Fixtures
# ============================================================================

def shp_file(shape_type, contents, bbox=(0.0, 0.0, 10.0, 10.0)):
    """Build a .shp buffer from record contents (without record headers)."""
    body = b""
    for i, content in enumerate(contents, start=1):
        body += struct.pack(">ii", i, len(content) // 2) + content
    total_words = (100 + len(body)) // 2
    header = struct.pack(">i", 9994) + b"\x00" * 20 + struct.pack(">i", total_words)
    header += struct.pack("<ii", 1000, shape_type)
    header += struct.pack("<4d", *bbox) + struct.pack("<4d", 0.0, 0.0, 0.0, 0.0)
    assert len(header) == 100
    return header + body


def point_content(x, y):
    return struct.pack("<i2d", 1, x, y)


def parts_content(shape_type, parts, z=None):
    """PolyLine / Polygon content from a list of point lists."""
    points = [p for part in parts for p in part]
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    content = struct.pack("<i", shape_type)
    content += struct.pack("<4d", min(xs), min(ys), max(xs), max(ys))
    content += struct.pack("<2i", len(parts), len(points))
    index = 0
    for part in parts:
        content += struct.pack("<i", index)
        index += len(part)
    for x, y in points:
        content += struct.pack("<2d", x, y)
    if z is not None:
        content += struct.pack("<2d", min(z), max(z))
        content += struct.pack(f"<{len(z)}d", *z)
    return content


def dbf_file(fields, rows, deleted=()):
    """
    Build a dBase III buffer.

    fields: list of (name, type, length, decimals); rows: list of value strings
    """
    header_length = 32 + 32 * len(fields) + 1
    record_length = 1 + sum(f[2] for f in fields)
    header = struct.pack("<B3BIHH", 3, 124, 1, 1, len(rows), header_length, record_length) + b"\x00" * 20
    for name, ftype, length, decimals in fields:
        header += name.encode("ascii").ljust(11, b"\x00") + ftype.encode("ascii")
        header += b"\x00" * 4 + struct.pack("<BB", length, decimals) + b"\x00" * 14
    header += b"\x0d"
    body = b""
    for i, row in enumerate(rows):
        body += b"*" if i in deleted else b" "
        for (name, ftype, length, decimals), value in zip(fields, row):
            encoded = value.encode("latin-1")
            body += encoded.rjust(length) if ftype in ("N", "F") else encoded.ljust(length)
    return header + body + b"\x1a"


CW_SQUARE = [(0.0, 0.0), (0.0, 10.0), (10.0, 10.0), (10.0, 0.0), (0.0, 0.0)]
CCW_HOLE = [(2.0, 2.0), (8.0, 2.0), (8.0, 8.0), (2.0, 8.0), (2.0, 2.0)]
CW_SQUARE_FAR = [(20.0, 0.0), (20.0, 10.0), (30.0, 10.0), (30.0, 0.0), (20.0, 0.0)]


@pytest.fixture
def parser():
    return ShapefileParser()


# ============================================================================
# Header Tests
# ============================================================================

def test_header_valid():
    """Test header fields are decoded."""
    header = read_header(shp_file(5, [], bbox=(1.0, 2.0, 3.0, 4.0)))
    assert header.shape_type == 5
    assert header.shape_type_name == "Polygon"
    assert header.version == 1000
    assert (header.bounds.min_x, header.bounds.max_y) == (1.0, 4.0)


def test_header_bad_file_code():
    """Test a wrong file code is fatal."""
    data = bytearray(shp_file(1, []))
    data[0:4] = struct.pack(">i", 1234)
    with pytest.raises(InvalidHeaderError):
        read_header(bytes(data))


def test_header_truncated():
    """Test a buffer shorter than the header is fatal."""
    with pytest.raises(InvalidHeaderError):
        read_header(b"\x00\x00\x27\x0a" + b"\x00" * 40)


def test_stream_bad_file_code_raises(parser):
    """Test stream() propagates header failures."""
    data = bytearray(shp_file(1, [point_content(1, 2)]))
    data[0:4] = struct.pack(">i", 0)
    with pytest.raises(InvalidHeaderError):
        list(parser.stream(bytes(data), {}))


# ============================================================================
# Polygon Assembly Tests
# ============================================================================

def test_winding_detection():
    """Test clockwise/counter-clockwise classification."""
    assert is_clockwise(np.array(CW_SQUARE))
    assert not is_clockwise(np.array(CCW_HOLE))


def test_polygon_with_hole_is_single_polygon(parser):
    """Test CW exterior + CCW hole parse into one Polygon with 2 rings."""
    data = shp_file(5, [parts_content(5, [CW_SQUARE, CCW_HOLE])])
    features = list(parser.stream(data, {}))

    assert len(features) == 1
    geometry = features[0].geometry
    assert geometry.type == "Polygon"
    assert len(geometry.coordinates) == 2
    assert geometry.coordinates[0][0] == (0.0, 0.0)
    assert geometry.coordinates[1][0] == (2.0, 2.0)


def test_two_exteriors_make_multipolygon(parser):
    """Test two clockwise rings become a MultiPolygon."""
    data = shp_file(5, [parts_content(5, [CW_SQUARE, CCW_HOLE, CW_SQUARE_FAR])])
    geometry = list(parser.stream(data, {}))[0].geometry

    assert geometry.type == "MultiPolygon"
    assert len(geometry.coordinates) == 2
    assert len(geometry.coordinates[0]) == 2  # exterior + hole
    assert len(geometry.coordinates[1]) == 1


def test_unclosed_ring_is_closed(parser):
    """Test rings missing the closing point are closed."""
    data = shp_file(5, [parts_content(5, [CW_SQUARE[:-1]])])
    ring = list(parser.stream(data, {}))[0].geometry.coordinates[0]
    assert len(ring) == 5
    assert ring[0] == ring[-1]


# ============================================================================
# Other Record Types
# ============================================================================

def test_point_records(parser):
    """Test point records yield Point features with 1-based ids."""
    data = shp_file(1, [point_content(1.0, 2.0), point_content(3.0, 4.0)])
    features = list(parser.stream(data, {}))

    assert [f.geometry.coordinates for f in features] == [(1.0, 2.0), (3.0, 4.0)]
    assert [f.id for f in features] == [1, 2]


def test_polyline_multipart(parser):
    """Test a two-part PolyLine becomes a MultiLineString."""
    data = shp_file(3, [parts_content(3, [[(0, 0), (1, 1)], [(2, 2), (3, 3), (4, 4)]])])
    geometry = list(parser.stream(data, {}))[0].geometry
    assert geometry.type == "MultiLineString"
    assert len(geometry.coordinates[1]) == 3


def test_polyline_z_keeps_elevation(parser):
    """Test PolyLineZ positions carry z values."""
    data = shp_file(13, [parts_content(13, [[(0, 0), (1, 1)]], z=[5.0, 6.0])])
    geometry = list(parser.stream(data, {}))[0].geometry
    assert geometry.type == "LineString"
    assert geometry.coordinates == ((0.0, 0.0, 5.0), (1.0, 1.0, 6.0))


def test_null_shape_skipped(parser):
    """Test null records produce no feature but keep sequence numbering."""
    data = shp_file(1, [struct.pack("<i", 0), point_content(5.0, 6.0)])
    features = list(parser.stream(data, {}))
    assert len(features) == 1
    assert features[0].id == 2


def test_malformed_record_skipped_with_warning(parser):
    """Test a bad record is skipped and the next one still read."""
    bad = struct.pack("<i", 5) + struct.pack("<4d", 0, 0, 1, 1) + struct.pack("<2i", 1, 500)
    data = shp_file(5, [bad, parts_content(5, [CW_SQUARE])])
    warnings = WarningCollector(echo=False)
    features = list(parser.stream(data, {}, warnings))

    assert len(features) == 1
    assert features[0].id == 2
    assert warnings.has_code("SHP_INVALID_RECORD")


# ============================================================================
# DBF Tests
# ============================================================================

FIELDS = [("NAME", "C", 10, 0), ("COUNT", "N", 5, 0), ("AREA", "N", 8, 2), ("BUILT", "D", 8, 0), ("OK", "L", 1, 0)]


def test_dbf_values():
    """Test DBF records convert by field type."""
    table = read_dbf(dbf_file(FIELDS, [["Alpha", "42", "12.50", "20200131", "T"]]))
    record = table.records[1]
    assert record == {"NAME": "Alpha", "COUNT": 42, "AREA": 12.5, "BUILT": date(2020, 1, 31), "OK": True}


def test_dbf_deleted_records_skipped():
    """Test deleted rows are absent but later rows keep their sequence number."""
    table = read_dbf(dbf_file(FIELDS[:1], [["a"], ["b"], ["c"]], deleted={1}))
    assert sorted(table.records) == [1, 3]


def test_dbf_empty_numeric_is_none():
    """Test blank numeric fields become None."""
    assert convert_value(DbfField("N", "N", 5), b"     ") is None


def test_resolve_encoding():
    """Test .cpg declarations resolve to codec names."""
    assert resolve_encoding(None) == "latin-1"
    assert resolve_encoding(b"UTF-8") == "utf-8"
    assert resolve_encoding(b"1252") == "cp1252"
    assert resolve_encoding(b"nonsense-codec") == "latin-1"


def test_attributes_joined_by_record_number(parser):
    """Test shape records receive the DBF row with the same sequence number."""
    shp = shp_file(1, [point_content(1, 1), point_content(2, 2)])
    dbf = dbf_file(FIELDS[:2], [["first", "1"], ["second", "2"]])
    features = list(parser.stream(shp, {"dbf": dbf}))
    assert [f.properties["NAME"] for f in features] == ["first", "second"]
    assert features[1].properties["COUNT"] == 2


def test_missing_dbf_warns(parser):
    """Test a missing .dbf is a recoverable warning."""
    warnings = WarningCollector(echo=False)
    features = list(parser.stream(shp_file(1, [point_content(1, 1)]), {}, warnings))
    assert len(features) == 1
    assert features[0].properties == {}
    assert warnings.has_code("MISSING_COMPANION")


# ============================================================================
# Analyze Tests
# ============================================================================

def test_analyze_reports_header_and_prj(parser):
    """Test analyze() passes the PRJ text through and reads header bounds."""
    prj = b'PROJCS["CH1903+_LV95",AUTHORITY["EPSG","2056"]]'
    shp = shp_file(1, [point_content(2600000, 1200000)], bbox=(2600000, 1200000, 2600000, 1200000))
    dbf = dbf_file(FIELDS[:1], [["x"]])
    result = parser.analyze(shp, {"prj": prj, "dbf": dbf})

    assert result.format_name == "shapefile"
    assert "AUTHORITY" in result.metadata["prj"]
    assert result.metadata["shapeType"] == "Point"
    assert result.feature_count_estimate == 1
    assert result.bounds.min_x == 2600000
    assert len(result.preview_sample) == 1


def test_can_handle_is_case_insensitive(parser):
    """Test extension matching ignores case."""
    assert parser.can_handle("Parcels.SHP")
    assert not parser.can_handle("parcels.dbf")


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

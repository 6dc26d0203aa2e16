"""
Unit tests for the delimited text point loader

Tests cover:
1. Delimiter detection
2. X/Y/Z column detection (exact before substring)
3. Header-less numeric files
4. Attribute coercion and invalid rows
"""

from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent))

from services.geoloader.core.errors import UnsupportedFormatError
from services.geoloader.core.types import WarningCollector
from services.geoloader.parsers.delimited import (
    DelimitedTextParser,
    coerce_value,
    detect_columns,
    detect_delimiter,
)


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def parser():
    return DelimitedTextParser()


def load(parser, text):
    warnings = WarningCollector(echo=False)
    return list(parser.stream(text.encode("utf-8"), {}, warnings)), warnings


# ============================================================================
# Detection Tests
# ============================================================================

def test_detect_delimiter_semicolon():
    """Test semicolon wins when it splits the header into most columns."""
    lines = ["id;x;y", "1;2600000;1200000", "2;2600100;1200100"]
    assert detect_delimiter(lines) == ";"


def test_detect_delimiter_tab():
    """Test tab-separated headers are recognized."""
    assert detect_delimiter(["E\tN\tH", "1\t2\t3"]) == "\t"


def test_detect_columns_aliases():
    """Test easting/northing/height are mapped to x/y/z."""
    assert detect_columns(["ID", "Easting", "Northing", "Height"]) == {"x": 1, "y": 2, "z": 3}


def test_detect_columns_exact_before_substring():
    """Test an exact alias wins over an earlier column containing it."""
    columns = detect_columns(["lon_source", "lat", "lon"])
    assert columns["x"] == 2
    assert columns["y"] == 1


def test_detect_columns_missing_z():
    """Test z is None when no elevation column exists."""
    assert detect_columns(["lat", "lon", "name"])["z"] is None


def test_coerce_value():
    """Test attribute values become int, float, string or None."""
    assert coerce_value("42") == 42
    assert coerce_value("4.5") == 4.5
    assert coerce_value("Bern") == "Bern"
    assert coerce_value("  ") is None


# ============================================================================
# Stream Tests
# ============================================================================

def test_stream_points_with_attributes(parser):
    """Test each row becomes a Point with the remaining columns as attributes."""
    features, _ = load(parser, "name,x,y,z\nA,2600000,1200000,500\nB,2600010,1200020,510\n")

    assert len(features) == 2
    assert features[0].geometry.coordinates == (2600000.0, 1200000.0, 500.0)
    assert features[0].properties == {"name": "A"}
    assert [f.id for f in features] == [1, 2]


def test_numeric_first_row_is_data(parser):
    """Test a file without header uses the first three columns as x/y/z."""
    features, _ = load(parser, "7.44,46.95,540\n8.54,47.37,408\n")
    assert len(features) == 2
    assert features[0].geometry.coordinates == (7.44, 46.95, 540.0)


def test_invalid_coordinates_skipped(parser):
    """Test rows with non-numeric coordinates are skipped with a warning."""
    features, warnings = load(parser, "lat;lon\n46.9;7.4\nn/a;7.5\n\n47.0;7.6\n")

    assert [f.geometry.coordinates for f in features] == [(7.4, 46.9), (7.6, 47.0)]
    assert warnings.counts_by_code["CSV_INVALID_COORDINATE"] == 1


def test_no_coordinate_columns_raises(parser):
    """Test a header without X/Y columns cannot be loaded."""
    with pytest.raises(UnsupportedFormatError):
        load(parser, "name,value\na,1\n")


def test_empty_file_raises(parser):
    """Test an empty file is rejected."""
    with pytest.raises(UnsupportedFormatError):
        load(parser, "\n\n")


def test_extensions(parser):
    """Test csv/txt/tsv are handled."""
    assert parser.can_handle("points.csv")
    assert parser.can_handle("points.TSV")
    assert parser.can_handle("points.txt")
    assert not parser.can_handle("points.xlsx")


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

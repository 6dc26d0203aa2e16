"""
Unit tests for the GeoJSON reader and input grouping

Tests cover:
1. FeatureCollection, single Feature and bare geometry input
2. Legacy named CRS metadata
3. Invalid features skipped with warnings
4. Companion grouping and parser selection
"""

import json
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent))

from services.geoloader.core.errors import InvalidHeaderError, UnsupportedFormatError
from services.geoloader.core.types import WarningCollector
from services.geoloader.parsers.base import InputFile, group_companions, select_parser
from services.geoloader.parsers.delimited import DelimitedTextParser
from services.geoloader.parsers.geojson import GeoJSONParser
from services.geoloader.parsers.shapefile import ShapefileParser


# ============================================================================
# Test Fixtures
# ============================================================================

def encode(document):
    return json.dumps(document).encode("utf-8")


@pytest.fixture
def collection():
    return {
        "type": "FeatureCollection",
        "crs": {"type": "name", "properties": {"name": "urn:ogc:def:crs:EPSG::2056"}},
        "features": [
            {
                "type": "Feature",
                "id": "a",
                "geometry": {"type": "Point", "coordinates": [2600000, 1200000]},
                "properties": {"name": "Bern", "layer": "Cities", "tags": ["x", "y"]},
            },
            {
                "type": "Feature",
                "geometry": {"type": "LineString", "coordinates": [[0, 0], [1, 1]]},
                "properties": None,
            },
            {"type": "Feature", "geometry": None, "properties": {}},
            {"type": "Feature", "geometry": {"type": "Blob", "coordinates": []}},
        ],
    }


# ============================================================================
# GeoJSON Tests
# ============================================================================

def test_feature_collection(collection):
    """Test valid features are read and invalid ones reported."""
    warnings = WarningCollector(echo=False)
    features = list(GeoJSONParser().stream(encode(collection), {}, warnings))

    assert [f.geometry.type for f in features] == ["Point", "LineString"]
    assert features[0].layer == "Cities"
    assert features[0].id == "a"
    assert features[1].id == 2
    assert features[0].properties["tags"] == "['x', 'y']"
    assert warnings.counts_by_code["GEOJSON_INVALID_FEATURE"] == 2


def test_non_object_properties_ignored():
    """Test list-valued properties are reported and the stream continues."""
    document = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [1, 2]}, "properties": ["a", "b"]},
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [3, 4]}, "properties": {"k": "v"}},
        ],
    }
    warnings = WarningCollector(echo=False)
    features = list(GeoJSONParser().stream(encode(document), {}, warnings))

    assert len(features) == 2
    assert features[0].properties == {}
    assert features[1].properties == {"k": "v"}
    assert warnings.counts_by_code["GEOJSON_INVALID_FEATURE"] == 1


def test_single_feature_and_bare_geometry():
    """Test a lone Feature and a bare geometry are both accepted."""
    parser = GeoJSONParser()
    single = {"type": "Feature", "geometry": {"type": "Point", "coordinates": [1, 2]}, "properties": {"k": 1}}
    bare = {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]]}

    assert list(parser.stream(encode(single)))[0].properties == {"k": 1}
    assert list(parser.stream(encode(bare)))[0].geometry.type == "Polygon"


def test_analyze_reports_crs(collection):
    """Test analyze() exposes the named CRS and the feature count."""
    result = GeoJSONParser().analyze(encode(collection))
    assert result.metadata["crs"] == "urn:ogc:def:crs:EPSG::2056"
    assert result.feature_count_estimate == 4
    assert len(result.preview_sample) == 2


def test_invalid_json_raises():
    """Test unreadable JSON is a header error."""
    with pytest.raises(InvalidHeaderError):
        list(GeoJSONParser().stream(b"{not json"))
    with pytest.raises(InvalidHeaderError):
        list(GeoJSONParser().stream(b"[1, 2, 3]"))


# ============================================================================
# Input Grouping Tests
# ============================================================================

def test_group_companions_case_insensitive():
    """Test companions join the main file by base name, ignoring case."""
    files = [
        InputFile("Parcels.SHP", b"shp"),
        InputFile("parcels.dbf", b"dbf"),
        InputFile("PARCELS.prj", b"prj"),
        InputFile("other.dbf", b"orphan"),
    ]
    groups = group_companions(files, ["shp"])

    assert len(groups) == 1
    assert groups[0].name == "Parcels.SHP"
    assert groups[0].companions == {"dbf": b"dbf", "prj": b"prj"}
    assert groups[0].total_size == 9


def test_select_parser():
    """Test the first parser accepting the file is chosen."""
    parsers = [ShapefileParser(), DelimitedTextParser(), GeoJSONParser()]
    assert select_parser(parsers, "roads.geojson").name == "geojson"
    assert select_parser(parsers, "data.bin", "text/csv").name == "delimited"
    with pytest.raises(UnsupportedFormatError):
        select_parser(parsers, "model.step")


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

"""
Unit tests for the coordinate system registry and source CRS detection

Tests cover:
1. Registry lookup, code normalization and verification
2. Metadata detection (WKT AUTHORITY, EPSG codes, URNs, names)
3. Range detection with Swiss pattern boost
4. Heuristic and default fallbacks
"""

from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent))

from services.geoloader.core.errors import UnknownCoordinateSystemError
from services.geoloader.core.types import Bounds, Feature, Geometry
from services.geoloader.transforms.crs_detection import (
    code_from_text,
    detect_coordinate_system,
    detect_from_heuristics,
    has_swiss_pattern,
    range_confidence,
)
from services.geoloader.transforms.registry import (
    CoordinateSystemRegistry,
    create_default_registry,
    default_systems,
    normalize_code,
)


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture(scope="module")
def registry():
    return create_default_registry()


def points(*coords):
    return [Feature(Geometry.point(x, y)) for x, y in coords]


LV95_WKT = (
    'PROJCS["CH1903+_LV95",GEOGCS["GCS_CH1903+",DATUM["D_CH1903+",'
    'SPHEROID["Bessel_1841",6377397.155,299.1528128],AUTHORITY["EPSG","6150"]],'
    'PRIMEM["Greenwich",0.0],UNIT["Degree",0.0174532925199433]],'
    'PROJECTION["Hotine_Oblique_Mercator_Azimuth_Center"],AUTHORITY["EPSG","2056"]]'
)


# ============================================================================
# Registry Tests
# ============================================================================

def test_normalize_code():
    """Test code normalization to EPSG:n."""
    assert normalize_code("epsg:2056") == "EPSG:2056"
    assert normalize_code(" 21781 ") == "EPSG:21781"
    assert normalize_code("EPSG: 4326") == "EPSG:4326"
    assert normalize_code("urn:custom") == "urn:custom"


def test_registry_order_and_lookup(registry):
    """Test built-in systems are registered in detection order."""
    assert registry.codes() == ["EPSG:2056", "EPSG:21781", "EPSG:4326", "EPSG:3857"]
    assert registry.get("2056").name == "CH1903+ / LV95"
    assert registry.get("epsg:4326").is_geographic


def test_registry_unknown_code(registry):
    """Test unregistered codes raise UnknownCoordinateSystemError."""
    assert not registry.contains("EPSG:31467")
    with pytest.raises(UnknownCoordinateSystemError):
        registry.get("EPSG:31467")


def test_registry_duplicate_code_rejected():
    """Test a registry refuses two systems with the same code."""
    systems = default_systems()
    with pytest.raises(ValueError):
        CoordinateSystemRegistry(systems + systems[:1])


def test_registry_verify(registry):
    """Test the Swiss reference points land near (8.0, 47.4)."""
    assert registry.verify() is True


def test_system_to_dict(registry):
    """Test descriptor serialization."""
    data = registry.get("EPSG:21781").to_dict()
    assert data["code"] == "EPSG:21781"
    assert data["units"] == "m"
    assert data["isGeographic"] is False


# ============================================================================
# Metadata Detection Tests
# ============================================================================

def test_code_from_wkt_uses_last_authority():
    """Test the outermost (last) AUTHORITY names the CRS."""
    assert code_from_text(LV95_WKT) == "EPSG:2056"


def test_code_from_text_forms():
    """Test EPSG codes, URNs and well-known names are recognized."""
    assert code_from_text("EPSG:21781") == "EPSG:21781"
    assert code_from_text("urn:ogc:def:crs:EPSG::2056") == "EPSG:2056"
    assert code_from_text('GEOGCS["GCS_WGS_1984"]') == "EPSG:4326"
    assert code_from_text("urn:ogc:def:crs:OGC:1.3:CRS84") == "EPSG:4326"
    assert code_from_text('PROJCS["CH1903_LV03"]') == "EPSG:21781"
    assert code_from_text("something else") is None


def test_detect_from_prj(registry):
    """Test a recognizable PRJ wins with confidence 0.9."""
    result = detect_coordinate_system(points((7.4, 46.9)), registry, {"prj": LV95_WKT})
    assert result.system == "EPSG:2056"
    assert result.source == "metadata"
    assert result.confidence == pytest.approx(0.9)


def test_unregistered_metadata_falls_through(registry):
    """Test metadata naming an unregistered system is ignored."""
    result = detect_coordinate_system(points((7.4, 46.9)), registry, {"crs": "EPSG:31467"})
    assert result.source == "range"
    assert result.system == "EPSG:4326"


# ============================================================================
# Range Detection Tests
# ============================================================================

def test_single_lv95_point_detected_by_range(registry):
    """Test one LV95 point is detected as EPSG:2056 from its range."""
    result = detect_coordinate_system(points((2.6e6, 1.2e6)), registry)
    assert result.system == "EPSG:2056"
    assert result.source == "range"
    assert result.confidence >= 0.7
    assert result.confidence <= 1.0


def test_lv03_detected_by_range(registry):
    """Test LV03 coordinates are not mistaken for LV95."""
    result = detect_coordinate_system(points((600000, 200000), (610000, 210000)), registry)
    assert result.system == "EPSG:21781"


def test_wgs84_detected_by_range(registry):
    """Test lon/lat in Switzerland resolve to WGS84."""
    result = detect_coordinate_system(points((7.44, 46.95), (8.54, 47.37)), registry)
    assert result.system == "EPSG:4326"


def test_range_confidence_partial_overlap(registry):
    """Test a box half outside the LV95 envelope scores below the threshold."""
    lv95 = registry.get("EPSG:2056")
    inside = Bounds(2600000, 1200000, 2700000, 1250000)
    straddling = Bounds(2735000, 1200000, 2935000, 1250000)

    assert range_confidence(inside, lv95) == 1.0
    assert range_confidence(straddling, lv95) < 0.7


def test_swiss_pattern():
    """Test LV95 / LV03 numbering recognition."""
    assert has_swiss_pattern(Bounds(2600000, 1200000, 2601000, 1201000))
    assert has_swiss_pattern(Bounds(600000, 200000, 601000, 201000))
    assert not has_swiss_pattern(Bounds(7.0, 46.0, 8.0, 47.0))


# ============================================================================
# Heuristic / Default Tests
# ============================================================================

def test_heuristic_majority_lv95(registry):
    """Test the heuristic picks LV95 when most features follow its numbering."""
    features = points((2900000, 1350000), (2950000, 1380000), (10, 10))
    result = detect_from_heuristics(features, registry)
    assert result.system == "EPSG:2056"
    assert result.source == "heuristic"
    assert result.confidence == pytest.approx(2 / 3)


def test_heuristic_needs_majority(registry):
    """Test half or fewer matching features is not enough."""
    assert detect_from_heuristics(points((2900000, 1350000), (10, 10)), registry) is None


def test_default_when_nothing_matches(registry):
    """Test no geometry falls back to WGS84 at confidence 0.1."""
    result = detect_coordinate_system([Feature(None)], registry)
    assert result.system == "EPSG:4326"
    assert result.source == "default"
    assert result.confidence == pytest.approx(0.1)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

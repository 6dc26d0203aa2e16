"""
Unit tests for coordinate transformation and the transformer cache

Tests cover:
1. Point transforms against known LV95 / WGS84 positions
2. Identity transforms return the input unchanged
3. Degenerate geometry filtering (non-finite coordinates)
4. Feature provenance tagging and batch transforms
5. Bounds transformation through corners and densified edges
6. TransformationCache hits, misses and lifetime expiry
"""

import math
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent))

from services.geoloader.core.errors import UnknownCoordinateSystemError
from services.geoloader.core.types import Bounds, Feature, Geometry, WarningCollector
from services.geoloader.transforms.cache import TransformationCache
from services.geoloader.transforms.registry import create_default_registry
from services.geoloader.transforms.transformers import CoordinateTransformer


# ============================================================================
# Test Fixtures
# ============================================================================

class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(scope="module")
def registry():
    return create_default_registry()


@pytest.fixture
def transformer(registry):
    return CoordinateTransformer(registry)


NAN = float("nan")

SQUARE_LV95 = Geometry.polygon([[
    (2600000, 1200000), (2600100, 1200000), (2600100, 1200100), (2600000, 1200100), (2600000, 1200000),
]])


# ============================================================================
# Point Tests
# ============================================================================

def test_lv95_origin_to_wgs84(transformer):
    """Test the LV95 false origin lands on the Bern reference point."""
    lon, lat = transformer.transform_point(2600000, 1200000, "EPSG:2056", "EPSG:4326")
    assert lon == pytest.approx(7.4386, abs=1e-3)
    assert lat == pytest.approx(46.9511, abs=1e-3)


def test_round_trip_lv95(transformer):
    """Test LV95 -> WGS84 -> LV95 returns to within a few centimetres."""
    lon, lat = transformer.transform_point(2645021, 1249991, "EPSG:2056", "EPSG:4326")
    x, y = transformer.transform_point(lon, lat, "EPSG:4326", "EPSG:2056")
    assert x == pytest.approx(2645021, abs=0.05)
    assert y == pytest.approx(1249991, abs=0.05)


def test_z_is_carried(transformer):
    """Test a 3D point keeps three components."""
    result = transformer.transform_point(2600000, 1200000, "EPSG:2056", "EPSG:4326", z=500.0)
    assert len(result) == 3


def test_identity_point(transformer):
    """Test same-system transforms return the input coordinates."""
    assert transformer.transform_point(1.5, 2.5, "EPSG:4326", "epsg:4326") == (1.5, 2.5)


def test_unknown_system_raises(transformer):
    """Test an unregistered code aborts the call."""
    with pytest.raises(UnknownCoordinateSystemError):
        transformer.transform_point(0, 0, "EPSG:2056", "EPSG:99999")


def test_non_finite_point_returns_none(transformer):
    """Test a NaN coordinate yields None and a warning."""
    warnings = WarningCollector(echo=False)
    assert transformer.transform_point(NAN, 1200000, "EPSG:2056", "EPSG:4326", warnings=warnings) is None
    assert warnings.has_code("INVALID_COORDINATE")


# ============================================================================
# Geometry Tests
# ============================================================================

def test_identity_geometry_is_same_object(transformer):
    """Test an identity transform returns the very same geometry."""
    assert transformer.transform_geometry(SQUARE_LV95, "EPSG:2056", "EPSG:2056") is SQUARE_LV95


def test_polygon_transform_keeps_ring_closed(transformer):
    """Test transformed rings stay closed with the same vertex count."""
    result = transformer.transform_geometry(SQUARE_LV95, "EPSG:2056", "EPSG:4326")
    ring = result.coordinates[0]
    assert result.type == "Polygon"
    assert len(ring) == 5
    assert ring[0] == ring[-1]
    assert all(7.0 < lon < 8.0 and 46.0 < lat < 47.5 for lon, lat in ring)


def test_line_with_dropped_point_becomes_degenerate(transformer):
    """Test a 2-point line losing one point is dropped entirely."""
    warnings = WarningCollector(echo=False)
    line = Geometry.line_string([(2600000, 1200000), (NAN, NAN)])
    assert transformer.transform_geometry(line, "EPSG:2056", "EPSG:4326", warnings) is None
    assert warnings.counts_by_code["INVALID_COORDINATE"] == 1


def test_ring_below_four_points_drops_polygon(transformer):
    """Test a triangle losing a vertex no longer forms a ring."""
    triangle = Geometry.polygon([[
        (2600000, 1200000), (NAN, NAN), (2600100, 1200100), (2600000, 1200000),
    ]])
    assert transformer.transform_geometry(triangle, "EPSG:2056", "EPSG:4326") is None


def test_multiline_keeps_valid_parts(transformer):
    """Test degenerate parts are removed while valid parts survive."""
    multi = Geometry.multi_line_string([
        [(2600000, 1200000), (2600100, 1200100)],
        [(NAN, NAN), (2600200, 1200200)],
    ])
    result = transformer.transform_geometry(multi, "EPSG:2056", "EPSG:4326")
    assert result.type == "MultiLineString"
    assert len(result.coordinates) == 1


def test_collection_members_transformed(transformer):
    """Test GeometryCollection members are transformed individually."""
    collection = Geometry.collection([Geometry.point(2600000, 1200000), Geometry.point(NAN, NAN)])
    result = transformer.transform_geometry(collection, "EPSG:2056", "EPSG:4326")
    assert result.type == "GeometryCollection"
    assert len(result.geometries) == 1


# ============================================================================
# Feature Tests
# ============================================================================

def test_feature_provenance(transformer):
    """Test transformed features carry _fromSystem / _toSystem tags."""
    feature = Feature(Geometry.point(2600000, 1200000), {"name": "Bern"}, layer="Cities", id=7)
    result = transformer.transform_feature(feature, "EPSG:2056", "EPSG:4326")

    assert result.properties["name"] == "Bern"
    assert result.properties["_fromSystem"] == "EPSG:2056"
    assert result.properties["_toSystem"] == "EPSG:4326"
    assert result.properties["_transformed"] is True
    assert result.properties["_transformedCoordinates"] == 1
    assert result.layer == "Cities" and result.id == 7
    assert "_toSystem" not in feature.properties


def test_already_transformed_feature_untouched(transformer):
    """Test a feature already tagged for the target is passed through."""
    feature = Feature(Geometry.point(7.4, 46.9), {"_toSystem": "EPSG:4326"})
    assert transformer.transform_feature(feature, "EPSG:2056", "EPSG:4326") is feature


def test_transform_features_drops_failures(transformer):
    """Test the batch transform keeps order and drops dead features."""
    features = [
        Feature(Geometry.point(2600000, 1200000), id=1),
        Feature(Geometry.point(NAN, NAN), id=2),
        Feature(Geometry.point(2610000, 1210000), id=3),
    ]
    out, warnings = transformer.transform_features(features, "EPSG:2056", "EPSG:4326", WarningCollector(echo=False))
    assert [f.id for f in out] == [1, 3]
    assert warnings.total == 1


# ============================================================================
# Bounds Tests
# ============================================================================

def test_transform_bounds_contains_edge_points(transformer):
    """Test corners, edge midpoints and the center map inside the transformed box."""
    source = Bounds(2480000, 1070000, 2840000, 1300000)
    target = transformer.transform_bounds(source, "EPSG:2056", "EPSG:4326")
    midpoints = [(2660000, 1070000), (2840000, 1185000), (2660000, 1300000), (2480000, 1185000)]

    assert target.is_valid
    for x, y in source.corners() + midpoints + [(2660000, 1185000)]:
        lon, lat = transformer.transform_point(x, y, "EPSG:2056", "EPSG:4326")
        assert target.min_x <= lon <= target.max_x
        assert target.min_y <= lat <= target.max_y


def test_transform_bounds_edges_bulge_past_corners(transformer):
    """Test the top edge reaches further north than its corners in WGS84."""
    source = Bounds(2480000, 1070000, 2840000, 1300000)
    corners_only = transformer.transform_bounds(source, "EPSG:2056", "EPSG:4326", densify_pts=2)
    densified = transformer.transform_bounds(source, "EPSG:2056", "EPSG:4326")

    _, top_lat = transformer.transform_point(2660000, 1300000, "EPSG:2056", "EPSG:4326")
    assert top_lat > corners_only.max_y
    assert densified.max_y >= top_lat
    assert densified.min_x <= corners_only.min_x
    assert densified.max_x >= corners_only.max_x


def test_transform_bounds_invalid_and_identity(transformer):
    """Test empty bounds stay empty and identity copies the box."""
    assert not transformer.transform_bounds(Bounds(), "EPSG:2056", "EPSG:4326").is_valid
    box = Bounds(1, 2, 3, 4)
    copy = transformer.transform_bounds(box, "EPSG:4326", "EPSG:4326")
    assert copy == box and copy is not box


# ============================================================================
# Cache Tests
# ============================================================================

def test_transformer_compiled_once(registry):
    """Test the second lookup of a CRS pair is a cache hit."""
    cache = TransformationCache()
    transformer = CoordinateTransformer(registry, cache)

    first = transformer.get_transformer("EPSG:2056", "EPSG:4326")
    second = transformer.get_transformer("2056", "EPSG:4326")

    assert first is second
    assert cache.get_stats()["misses"] == 1
    assert cache.get_stats()["hits"] == 1
    assert len(cache) == 1


def test_cache_pairs_are_ordered(registry):
    """Test A->B and B->A are distinct entries."""
    cache = TransformationCache()
    transformer = CoordinateTransformer(registry, cache)
    transformer.get_transformer("EPSG:2056", "EPSG:4326")
    transformer.get_transformer("EPSG:4326", "EPSG:2056")
    assert len(cache) == 2


def test_cache_lifetime_clears_everything():
    """Test the whole cache and its counters reset after the lifetime."""
    clock = FakeClock()
    cache = TransformationCache(lifetime_seconds=300, clock=clock)
    calls = []

    def factory():
        calls.append(1)
        return object()

    cache.get_or_create("A", "B", factory)
    cache.get_or_create("A", "B", factory)
    assert len(calls) == 1

    clock.now = 301
    cache.get_or_create("A", "B", factory)
    assert len(calls) == 2
    assert cache.get_stats()["hits"] == 0
    assert cache.get_stats()["misses"] == 1


def test_cache_clear_resets_stats():
    """Test clear() empties entries and counters."""
    cache = TransformationCache(clock=FakeClock())
    cache.get("A", "B")
    cache.put("A", "B", object())
    cache.clear()
    stats = cache.get_stats()
    assert stats == {"size": 0, "hits": 0, "misses": 0, "oldestEntry": None, "newestEntry": None}


def test_infinite_bounds_helpers():
    """Test bounds helpers used by the transformer."""
    box = Bounds(0, 0, 10, 20)
    assert box.corners() == [(0, 0), (10, 0), (10, 20), (0, 20)]
    assert math.isclose(box.padded(0.1).min_x, -1.0)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

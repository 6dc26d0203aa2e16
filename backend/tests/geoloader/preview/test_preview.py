"""
Unit tests for the preview cache, categorizer and preview manager

Tests cover:
1. Cache fingerprints, hits/misses, TTL expiry and pruning
2. Option changes invalidating the cache
3. Categorization into points / lines / polygons (collections, invalid geometry)
4. Preview generation: reprojection, layer filter, sampling limit, bounds
5. Cached previews flagged as such
6. Optional shapely simplification
"""

from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent))

from services.geoloader.core.errors import UnknownCoordinateSystemError
from services.geoloader.core.types import Feature, Geometry, WarningCollector
from services.geoloader.preview.cache import PreviewCache, fingerprint
from services.geoloader.preview.categorizer import categorize_features
from services.geoloader.preview.generator import PreviewManager, PreviewOptions, simplify_geometry
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


def lv95_features():
    """Points on two layers plus a line and a polygon, in LV95."""
    return [
        Feature(Geometry.point(2600000, 1200000), {"name": "Bern"}, layer="Cities", id=1),
        Feature(Geometry.point(2683000, 1248000), {"name": "Zurich"}, layer="Cities", id=2),
        Feature(Geometry.line_string([(2600000, 1200000), (2683000, 1248000)]), layer="Roads", id=3),
        Feature(Geometry.polygon([[
            (2600000, 1200000), (2601000, 1200000), (2601000, 1201000), (2600000, 1200000),
        ]]), layer="Parcels", id=4),
    ]


# ============================================================================
# Cache Tests
# ============================================================================

def test_fingerprint_ignores_set_and_key_order():
    """Test equal options give equal keys regardless of ordering."""
    a = fingerprint("file", {"layers": {"b", "a"}, "max": 10})
    b = fingerprint("file", {"max": 10, "layers": {"a", "b"}})
    assert a == b
    assert a != fingerprint("other", {"max": 10, "layers": {"a", "b"}})


def test_cache_hit_and_miss():
    """Test get() counts misses before put() and hits after."""
    cache = PreviewCache(clock=FakeClock())
    assert cache.get("f", {"m": 1}) is None
    cache.put("f", {"m": 1}, "preview")

    assert cache.get("f", {"m": 1}) == "preview"
    assert cache.get("f", {"m": 2}) is None
    assert (cache.hits, cache.misses) == (1, 2)
    assert cache.stats["hitRate"] == pytest.approx(1 / 3, abs=1e-4)


def test_cache_ttl_expiry():
    """Test expired entries are misses and clear_expired() removes them."""
    clock = FakeClock()
    cache = PreviewCache(ttl_seconds=60, clock=clock)
    cache.put("a", None, 1)
    clock.now = 30
    cache.put("b", None, 2)

    clock.now = 61
    assert cache.get("a") is None
    assert cache.get("b") == 2
    clock.now = 100
    assert cache.clear_expired() == 1
    assert len(cache) == 0


def test_cache_prunes_oldest_quarter():
    """Test a full cache drops its oldest 25% before inserting."""
    clock = FakeClock()
    cache = PreviewCache(max_entries=8, clock=clock)
    for i in range(8):
        clock.now = i
        cache.put(f"file-{i}", None, i)

    clock.now = 100
    cache.put("file-new", None, "new")

    assert len(cache) == 7
    assert cache.get("file-0") is None
    assert cache.get("file-1") is None
    assert cache.get("file-2") == 2
    assert cache.get("file-new") == "new"


def test_options_change_invalidates_everything():
    """Test a change of options drops every entry; the same options keep them."""
    cache = PreviewCache(clock=FakeClock())
    assert cache.on_options_changed({"max": 10}) is False
    cache.put("f", {"max": 10}, "p")

    assert cache.on_options_changed({"max": 10}) is False
    assert len(cache) == 1
    assert cache.on_options_changed({"max": 20}) is True
    assert len(cache) == 0


def test_cache_clear_resets_counters():
    """Test clear() empties the cache and resets statistics."""
    cache = PreviewCache(clock=FakeClock())
    cache.get("x")
    cache.put("x", None, 1)
    cache.clear()
    assert cache.stats["size"] == 0
    assert cache.stats["misses"] == 0


# ============================================================================
# Categorizer Tests
# ============================================================================

def test_categorize_by_geometry_family():
    """Test multi geometries join their single-part bucket."""
    features = [
        Feature(Geometry.point(0, 0)),
        Feature(Geometry.multi_point([(1, 1), (2, 2)])),
        Feature(Geometry.line_string([(0, 0), (5, 5)])),
        Feature(Geometry.polygon([[(0, 0), (1, 0), (1, 1), (0, 0)]])),
        Feature(Geometry.multi_polygon([[[(10, 10), (11, 10), (11, 11), (10, 10)]]])),
    ]
    preview = categorize_features(features)

    assert (len(preview.points), len(preview.lines), len(preview.polygons)) == (2, 1, 2)
    assert preview.bounds.to_dict() == {"minX": 0, "minY": 0, "maxX": 11, "maxY": 11}
    assert preview.total_count == 5
    assert preview.visible_count == 5


def test_collection_members_split():
    """Test GeometryCollection members become separate categorized features."""
    collection = Geometry.collection([Geometry.point(0, 0), Geometry.line_string([(0, 0), (1, 1)])])
    preview = categorize_features([Feature(collection, {"k": "v"}, layer="L")])

    assert len(preview.points) == 1 and len(preview.lines) == 1
    assert preview.lines.features[0].properties == {"k": "v"}
    assert preview.points.features[0].layer == "L"


def test_invalid_geometry_skipped_with_warning():
    """Test missing or degenerate geometry is skipped and reported."""
    warnings = WarningCollector(echo=False)
    features = [
        Feature(None, id=1),
        Feature(Geometry("LineString", ((0.0, 0.0),)), id=2),
        Feature(Geometry.point(1, 1), id=3),
    ]
    preview = categorize_features(features, warnings)

    assert preview.feature_count == 1
    assert warnings.counts_by_code["PREVIEW_INVALID_GEOMETRY"] == 2


def test_preview_geojson_shape():
    """Test the serialized preview exposes the renderer's keys."""
    data = categorize_features([Feature(Geometry.point(1, 2), {"a": 1}, layer="L", id=9)]).to_geojson()

    assert data["points"]["type"] == "FeatureCollection"
    assert data["points"]["features"][0]["properties"] == {"a": 1, "layer": "L"}
    assert data["points"]["features"][0]["id"] == 9
    assert set(data) >= {"lines", "polygons", "totalCount", "visibleCount", "bounds", "displayBounds", "fromCache"}


# ============================================================================
# Preview Manager Tests
# ============================================================================

def test_generate_preview_reprojects(registry, transformer):
    """Test a preview is delivered in the target system with padded bounds."""
    manager = PreviewManager(registry, transformer, PreviewCache(), PreviewOptions())
    preview = manager.generate_preview(lv95_features(), "swiss.csv", "EPSG:2056")

    assert preview.coordinate_system == "EPSG:4326"
    assert (len(preview.points), len(preview.lines), len(preview.polygons)) == (2, 1, 1)
    lon, lat = preview.points.features[0].geometry.coordinates
    assert lon == pytest.approx(7.4386, abs=1e-3)
    assert lat == pytest.approx(46.9511, abs=1e-3)
    assert preview.display_bounds.min_x < preview.bounds.min_x
    assert preview.display_bounds.max_y > preview.bounds.max_y
    assert preview.layers == ["Cities", "Roads", "Parcels"]
    assert not preview.from_cache


def test_second_preview_served_from_cache(registry, transformer):
    """Test the same file and options hit the cache and are flagged."""
    cache = PreviewCache()
    manager = PreviewManager(registry, transformer, cache, PreviewOptions())
    manager.generate_preview(lv95_features(), "swiss.csv", "EPSG:2056")
    again = manager.generate_preview(lv95_features(), "swiss.csv", "EPSG:2056")

    assert again.from_cache
    assert cache.hits == 1


def test_changed_options_invalidate_cache(registry, transformer):
    """Test switching options drops previews built with the old ones."""
    cache = PreviewCache()
    manager = PreviewManager(registry, transformer, cache, PreviewOptions())
    manager.generate_preview(lv95_features(), "swiss.csv", "EPSG:2056")

    manager.set_options(PreviewOptions(max_features=2))
    assert len(cache) == 0
    preview = manager.generate_preview(lv95_features(), "swiss.csv", "EPSG:2056")
    assert not preview.from_cache
    assert preview.feature_count == 2


def test_debug_flag_not_part_of_cache_key():
    """Test toggling debug keeps the cache key."""
    assert PreviewOptions(debug=True).cache_key() == PreviewOptions().cache_key()


def test_layer_filter_counts(registry, transformer):
    """Test total counts every feature, visible only the selected layers."""
    options = PreviewOptions(visible_layers={"Cities"}, enable_caching=False)
    preview = PreviewManager(registry, transformer, None, options).generate_preview(
        lv95_features(), "swiss.csv", "EPSG:2056"
    )
    assert preview.total_count == 4
    assert preview.visible_count == 2
    assert preview.feature_count == 2


def test_empty_layer_set_shows_nothing(registry, transformer):
    """Test an empty visible-layer set yields an empty preview."""
    options = PreviewOptions(visible_layers=set(), enable_caching=False)
    preview = PreviewManager(registry, transformer, None, options).generate_preview(
        lv95_features(), "swiss.csv", "EPSG:2056"
    )
    assert preview.feature_count == 0
    assert not preview.bounds.is_valid


def test_unknown_target_system(registry, transformer):
    """Test an unregistered target system aborts preview generation."""
    manager = PreviewManager(registry, transformer, None, PreviewOptions(target_coordinate_system="EPSG:1"))
    with pytest.raises(UnknownCoordinateSystemError):
        manager.generate_preview(lv95_features(), "swiss.csv", "EPSG:2056")


# ============================================================================
# Simplification Tests
# ============================================================================

def test_simplify_removes_collinear_vertices():
    """Test simplification drops vertices within tolerance."""
    line = Geometry.line_string([(0, 0), (1, 0.001), (2, 0), (3, 0.001), (4, 0)])
    simplified = simplify_geometry(line, 0.01)
    assert simplified.type == "LineString"
    assert len(simplified.coordinates) == 2


def test_simplify_keeps_points_and_zero_tolerance():
    """Test points and a zero tolerance are returned unchanged."""
    point = Geometry.point(1, 2)
    assert simplify_geometry(point, 10) is point
    line = Geometry.line_string([(0, 0), (1, 0.001), (2, 0)])
    assert simplify_geometry(line, 0) is line


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

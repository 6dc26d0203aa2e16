"""
Unit tests for preview sampling

Tests cover:
1. Grid geometry (side, cell capacity)
2. Spatial balance of point sampling
3. Lines and polygons bypass the grid but count toward the limit
4. Sequential truncation
5. Edge cases: invalid bounds, non-finite anchors, points outside the area
"""

from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent))

from services.geoloader.core.types import Bounds, Feature, Geometry
from services.geoloader.preview.sampler import (
    GridSampler,
    SequentialSampler,
    sample_features,
)


# ============================================================================
# Test Fixtures
# ============================================================================

def point(x, y, fid=None):
    return Feature(Geometry.point(x, y), id=fid)


def line(i):
    return Feature(Geometry.line_string([(i, 0), (i, 1)]), id=f"line-{i}")


def grid_points(side, spacing=100.0):
    """One point at the center of every cell of a side x side grid."""
    return [
        point(col * spacing + spacing / 2, row * spacing + spacing / 2, fid=row * side + col)
        for row in range(side)
        for col in range(side)
    ]


# ============================================================================
# Grid Tests
# ============================================================================

def test_grid_dimensions():
    """Test side = ceil(sqrt(M)) and capacity = max(1, M // cells)."""
    sampler = GridSampler(100, Bounds(0, 0, 1000, 1000))
    assert (sampler.grid_size, sampler.cell_capacity) == (10, 1)

    sampler = GridSampler(5000, Bounds(0, 0, 1, 1))
    assert sampler.grid_size == 71
    assert sampler.cell_capacity == 1


def test_non_positive_limit_rejected():
    """Test max_features must be positive."""
    with pytest.raises(ValueError):
        GridSampler(0, Bounds(0, 0, 1, 1))


def test_clustered_points_limited_per_cell():
    """Test a dense cluster contributes only one cell's capacity."""
    cluster = [point(1.0 + i * 1e-6, 1.0, fid=f"c{i}") for i in range(500)]
    spread = grid_points(10)
    result = sample_features(cluster + spread, 100, Bounds(0, 0, 1000, 1000))

    assert len(result) <= 100
    assert sum(1 for f in result if str(f.id).startswith("c")) == 1
    # Every other cell still gets its point
    assert len(result) == 100


def test_evenly_spread_points_all_kept():
    """Test one point per cell fills the preview exactly."""
    result = sample_features(grid_points(10), 100)
    assert len(result) == 100


def test_lines_bypass_grid_but_count():
    """Test non-point features are accepted regardless of cell until M."""
    features = [line(i) for i in range(30)]
    assert len(sample_features(features, 50)) == 30
    assert len(sample_features(features, 10)) == 10


def test_mixed_result_bounded_and_lines_retained():
    """Test the result never exceeds M and lines survive clustered points."""
    features = [point(5, 5, fid=i) for i in range(200)] + [line(i) for i in range(20)]
    result = sample_features(features, 100, Bounds(0, 0, 100, 100))

    assert len(result) <= 100
    assert sum(1 for f in result if f.geometry_type == "LineString") == 20
    assert sum(1 for f in result if f.geometry_type == "Point") == 1


def test_points_outside_bounds_clamped():
    """Test out-of-area points land in edge cells."""
    sampler = GridSampler(100, Bounds(0, 0, 100, 100))
    assert sampler.cell_of(-50, 50) == (0, 5)
    assert sampler.cell_of(500, 500) == (9, 9)


def test_invalid_bounds_use_single_cell():
    """Test an empty sampling area puts every point into cell (0, 0)."""
    sampler = GridSampler(100, Bounds())
    assert sampler.cell_of(123, 456) == (0, 0)
    assert sampler.should_include(point(1, 1))
    assert not sampler.should_include(point(2, 2))


def test_non_finite_anchor_rejected():
    """Test a point without a finite coordinate is not sampled."""
    sampler = GridSampler(10, Bounds(0, 0, 10, 10))
    assert not sampler.should_include(point(float("nan"), 1))
    assert sampler.get_stats()["rejected"] == 1


def test_sampler_stats():
    """Test grid statistics."""
    sampler = GridSampler(4, Bounds(0, 0, 2, 2))
    for x, y in [(0.5, 0.5), (1.5, 1.5), (0.5, 0.6)]:
        sampler.should_include(point(x, y))
    stats = sampler.get_stats()
    assert stats == {"gridSize": 2, "cellCapacity": 1, "occupiedCells": 2, "accepted": 2, "rejected": 1}


# ============================================================================
# Sequential Tests
# ============================================================================

def test_non_smart_sampling_truncates():
    """Test sequential sampling keeps the first M features in order."""
    features = [point(5, 5, fid=i) for i in range(20)]
    assert [f.id for f in sample_features(features, 5, smart=False)] == [0, 1, 2, 3, 4]


def test_sequential_sampler():
    """Test the sequential sampler stops at its limit."""
    sampler = SequentialSampler(2)
    assert [sampler.should_include(point(0, 0)) for _ in range(3)] == [True, True, False]
    assert sampler.exhausted


def test_non_smart_sampling_consumes_stream():
    """Test sequential sampling accepts a generator and honors a zero limit."""
    stream = (point(i, i, fid=i) for i in range(10))
    assert [f.id for f in sample_features(stream, 3, smart=False)] == [0, 1, 2]
    assert sample_features([point(0, 0)], 0, smart=False) == []


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

"""
Preview sampling strategies.

Two strategies decide, feature by feature, whether a feature enters the
preview:

1. GridSampler ("smart sampling"): the sampling area is split into a
   side x side grid with side = ceil(sqrt(max_features)). Each cell accepts
   at most max(1, max_features // cell_count) point features. Line and
   polygon features are never rejected by the grid but count toward the
   total. Once max_features features are accepted, nothing else is.
2. SequentialSampler: accepts features in order until max_features.

Both are stateful: one sampler instance handles one preview pass.
"""

import math
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.constants import POINT_TYPES
from ..core.types import Bounds, Feature, bounds_of_features, iter_positions


def _log(message: str, debug: bool = False):
    """Internal logging function."""
    if debug:
        print(f"[PREVIEW] {message}")


def _anchor(feature: Feature) -> Optional[Tuple[float, float]]:
    """First position of a point-like feature, used to place it in the grid."""
    for position in iter_positions(feature.geometry):
        if len(position) >= 2 and math.isfinite(position[0]) and math.isfinite(position[1]):
            return position[0], position[1]
        return None
    return None


class SequentialSampler:
    """Accept features in arrival order until the limit is reached."""

    def __init__(self, max_features: int):
        self.max_features = max_features
        self.accepted = 0

    @property
    def exhausted(self) -> bool:
        return self.accepted >= self.max_features

    def should_include(self, feature: Feature) -> bool:
        if self.exhausted:
            return False
        self.accepted += 1
        return True


class GridSampler:
    """
    Spatially balanced sampler over a fixed grid.

    Args:
        max_features: Upper bound on accepted features (M)
        bounds: Sampling area; point features outside it are clamped to
            the nearest edge cell

    Example:
        >>> sampler = GridSampler(100, Bounds(0, 0, 1000, 1000))
        >>> sampler.grid_size, sampler.cell_capacity
        (10, 1)
    """

    def __init__(self, max_features: int, bounds: Bounds):
        if max_features <= 0:
            raise ValueError(f"max_features must be positive, got {max_features}")
        self.max_features = max_features
        self.bounds = bounds
        self.grid_size = math.ceil(math.sqrt(max_features))
        self.cell_count = self.grid_size * self.grid_size
        self.cell_capacity = max(1, max_features // self.cell_count)
        self.accepted = 0
        self.rejected = 0
        self._cells: Dict[Tuple[int, int], int] = {}

    @property
    def exhausted(self) -> bool:
        return self.accepted >= self.max_features

    def _axis_cell(self, value: float, lo: float, extent: float) -> int:
        if extent <= 0:
            return 0
        index = int((value - lo) / extent * self.grid_size)
        return min(max(index, 0), self.grid_size - 1)

    def cell_of(self, x: float, y: float) -> Tuple[int, int]:
        if not self.bounds.is_valid:
            return (0, 0)
        return (
            self._axis_cell(x, self.bounds.min_x, self.bounds.width),
            self._axis_cell(y, self.bounds.min_y, self.bounds.height),
        )

    def should_include(self, feature: Feature) -> bool:
        if self.exhausted:
            return False

        if feature.geometry_type in POINT_TYPES:
            anchor = _anchor(feature)
            if anchor is None:
                self.rejected += 1
                return False
            cell = self.cell_of(*anchor)
            count = self._cells.get(cell, 0)
            if count >= self.cell_capacity:
                self.rejected += 1
                return False
            self._cells[cell] = count + 1

        self.accepted += 1
        return True

    def get_stats(self) -> Dict[str, int]:
        return {
            "gridSize": self.grid_size,
            "cellCapacity": self.cell_capacity,
            "occupiedCells": len(self._cells),
            "accepted": self.accepted,
            "rejected": self.rejected,
        }


def sample_features(
    features: Iterable[Feature],
    max_features: int,
    bounds: Optional[Bounds] = None,
    smart: bool = True,
    debug: bool = False,
) -> List[Feature]:
    """
    Reduce a feature set to at most max_features.

    Args:
        features: Input features (materialized when bounds must be computed)
        max_features: Upper bound on the result size
        bounds: Grid area; computed from the features when omitted
        smart: Grid sampling when True, sequential truncation otherwise
        debug: Log sampler statistics

    Returns:
        Accepted features in input order
    """
    if not smart:
        sampler = SequentialSampler(max_features)
    else:
        if bounds is None:
            features = list(features)
            bounds = bounds_of_features(features)
        sampler = GridSampler(max_features, bounds)

    result: List[Feature] = []
    for feature in features:
        if sampler.exhausted:
            break
        if sampler.should_include(feature):
            result.append(feature)

    if smart:
        _log(f"Grid sampling: {sampler.get_stats()}", debug)
    else:
        _log(f"Sequential sampling: {sampler.accepted} accepted", debug)
    return result


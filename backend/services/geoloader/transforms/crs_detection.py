"""
Source coordinate system detection.

Strategies run in order of reliability; the first that produces a result
wins:

1. metadata   - EPSG code or well-known name in .prj text / embedded CRS
                (confidence 0.9, only for registered systems)
2. range      - how much of the data's bounding box lies inside each
                registered system's envelope (first system above 0.7)
3. heuristic  - share of features with a Swiss-pattern coordinate (> 0.5)
4. default    - EPSG:4326 at confidence 0.1
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.constants import (
    DEFAULT_DETECTION_CONFIDENCE,
    DETECTION_SAMPLE_SIZE,
    EPSG_LV03,
    EPSG_LV95,
    EPSG_WEB_MERCATOR,
    EPSG_WGS84,
    HEURISTIC_MATCH_RATIO,
    METADATA_CONFIDENCE,
    PATTERN_MATCH_BOOST,
    PATTERN_MISMATCH_PENALTY,
    RANGE_CONFIDENCE_THRESHOLD,
)
from ..core.types import Bounds, CoordinateSystem, Feature, bounds_of, iter_positions
from .registry import CoordinateSystemRegistry, normalize_code

# "EPSG:2056", "EPSG[2056" or the URN form "EPSG::2056"
_EPSG_PATTERN = re.compile(r"EPSG(?:::|[:\[])(\d+)", re.IGNORECASE)
# WKT: AUTHORITY["EPSG","2056"] (the last one names the whole CRS)
_AUTHORITY_PATTERN = re.compile(r'AUTHORITY\s*\[\s*"EPSG"\s*,\s*"(\d+)"\s*\]', re.IGNORECASE)

# Name patterns, most specific first
_NAME_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"CH1903\+|LV95", re.IGNORECASE), EPSG_LV95),
    (re.compile(r"CH1903|LV03", re.IGNORECASE), EPSG_LV03),
    (re.compile(r"Pseudo[-_ ]?Mercator|Web[-_ ]?Mercator", re.IGNORECASE), EPSG_WEB_MERCATOR),
    (re.compile(r"WGS[-_ ]?(?:19)?84|CRS84", re.IGNORECASE), EPSG_WGS84),
]

SWISS_SYSTEMS = (EPSG_LV95, EPSG_LV03)


def _log(message: str, debug: bool = False):
    """Internal logging function."""
    if debug:
        print(f"[CRS] {message}")


@dataclass
class CRSDetectionResult:
    """
    Outcome of coordinate system detection.

    Attributes:
        system: Detected CRS code (always registered, except the default)
        confidence: Score in [0, 1]
        source: "metadata", "range", "heuristic", "default", or "user"
            when the caller named the system
        details: Human-readable explanation
    """
    system: str
    confidence: float
    source: str
    details: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "system": self.system,
            "confidence": self.confidence,
            "source": self.source,
            "details": self.details,
        }


# ============================================================================
# Swiss Numeral Pattern
# ============================================================================

def is_lv95_position(x: float, y: float) -> bool:
    return 2_000_000 <= x <= 3_000_000 and 1_000_000 <= y <= 1_400_000


def is_lv03_position(x: float, y: float) -> bool:
    return 400_000 <= x <= 900_000 and 0 <= y <= 400_000


def has_swiss_pattern(bounds: Bounds) -> bool:
    """True if the box follows LV95 or LV03 numbering on both axes."""
    x_ok = (
        (bounds.min_x >= 2_000_000 and bounds.max_x <= 3_000_000)
        or (bounds.min_x >= 400_000 and bounds.max_x <= 900_000)
    )
    y_ok = (
        (bounds.min_y >= 1_000_000 and bounds.max_y <= 1_400_000)
        or (bounds.min_y >= 0 and bounds.max_y <= 400_000)
    )
    return x_ok and y_ok


# ============================================================================
# Strategies
# ============================================================================

def code_from_text(text: str) -> Optional[str]:
    """
    Extract a CRS code from projection text (WKT, PROJ, "EPSG:n", names).

    Example:
        >>> code_from_text('PROJCS["CH1903+_LV95",GEOGCS["GCS_CH1903+", ...]]')
        'EPSG:2056'
    """
    if not text:
        return None
    authorities = _AUTHORITY_PATTERN.findall(text)
    if authorities:
        return f"EPSG:{int(authorities[-1])}"
    match = _EPSG_PATTERN.search(text)
    if match:
        return f"EPSG:{int(match.group(1))}"
    for pattern, code in _NAME_PATTERNS:
        if pattern.search(text):
            return code
    return None


def detect_from_metadata(
    metadata: Optional[Dict[str, Any]],
    registry: CoordinateSystemRegistry,
) -> Optional[CRSDetectionResult]:
    if not metadata:
        return None
    for key, label in (("prj", "PRJ file"), ("crs", "CRS definition")):
        value = metadata.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        code = code_from_text(value)
        if code is None:
            code = normalize_code(value) if registry.contains(value) else None
        if code and registry.contains(code):
            return CRSDetectionResult(
                system=registry.get(code).code,
                confidence=METADATA_CONFIDENCE,
                source="metadata",
                details=f"Detected from {label}",
            )
    return None


def _axis_score(lo: float, hi: float, env_lo: float, env_hi: float) -> float:
    extent = hi - lo
    if extent == 0:
        return 1.0 if env_lo <= lo <= env_hi else 0.0
    overlap = min(hi, env_hi) - max(lo, env_lo)
    if overlap <= 0:
        return 0.0
    return overlap / extent


def range_confidence(bounds: Bounds, system: CoordinateSystem) -> float:
    """
    Score how well a bounding box fits a system's envelope.

    Per axis: overlap / extent (a zero-extent axis scores 1.0 when inside).
    The result is the smaller axis score; Swiss systems are boosted x1.2 when
    the box follows Swiss numbering and penalized x0.8 otherwise. Clamped to
    [0, 1].
    """
    env_min_x, env_min_y, env_max_x, env_max_y = system.envelope
    x_score = _axis_score(bounds.min_x, bounds.max_x, env_min_x, env_max_x)
    y_score = _axis_score(bounds.min_y, bounds.max_y, env_min_y, env_max_y)
    if x_score <= 0 or y_score <= 0:
        return 0.0
    confidence = min(x_score, y_score)
    if system.code in SWISS_SYSTEMS:
        confidence *= PATTERN_MATCH_BOOST if has_swiss_pattern(bounds) else PATTERN_MISMATCH_PENALTY
    return min(confidence, 1.0)


def detect_from_range(
    features: List[Feature],
    registry: CoordinateSystemRegistry,
    debug: bool = False,
) -> Optional[CRSDetectionResult]:
    bounds = Bounds()
    for feature in features:
        bounds_of(feature.geometry, bounds)
    if not bounds.is_valid:
        return None

    for system in registry.systems():
        confidence = range_confidence(bounds, system)
        _log(f"range {system.code}: {confidence:.3f}", debug)
        if confidence > RANGE_CONFIDENCE_THRESHOLD:
            return CRSDetectionResult(
                system=system.code,
                confidence=confidence,
                source="range",
                details=f"Coordinates match {system.code} bounds with {confidence * 100:.1f}% confidence",
            )
    return None


def detect_from_heuristics(
    features: List[Feature],
    registry: CoordinateSystemRegistry,
) -> Optional[CRSDetectionResult]:
    total = 0
    lv95 = 0
    lv03 = 0
    for feature in features:
        if feature.geometry is None:
            continue
        positions = list(iter_positions(feature.geometry))
        if not positions:
            continue
        total += 1
        if any(is_lv95_position(p[0], p[1]) for p in positions):
            lv95 += 1
        elif any(is_lv03_position(p[0], p[1]) for p in positions):
            lv03 += 1

    if total == 0:
        return None
    ratio = (lv95 + lv03) / total
    if ratio <= HEURISTIC_MATCH_RATIO:
        return None

    code = EPSG_LV95 if lv95 >= lv03 else EPSG_LV03
    if not registry.contains(code):
        return None
    return CRSDetectionResult(
        system=code,
        confidence=ratio,
        source="heuristic",
        details=f"{lv95 + lv03} of {total} features follow the Swiss coordinate pattern",
    )


# ============================================================================
# Entry Point
# ============================================================================

def detect_coordinate_system(
    features: Iterable[Feature],
    registry: CoordinateSystemRegistry,
    metadata: Optional[Dict[str, Any]] = None,
    sample_size: int = DETECTION_SAMPLE_SIZE,
    debug: bool = False,
) -> CRSDetectionResult:
    """
    Detect the source coordinate system of a feature sample.

    Args:
        features: Features in source coordinates (only the first
            `sample_size` with a geometry are examined)
        registry: Registry of candidate systems
        metadata: Optional {"prj": text, "crs": text}
        sample_size: Maximum number of features to inspect
        debug: Print per-strategy scores

    Returns:
        CRSDetectionResult; never raises for unrecognized input

    Example:
        >>> result = detect_coordinate_system([Feature(Geometry.point(2.6e6, 1.2e6))], registry)
        >>> result.system, result.source
        ('EPSG:2056', 'range')
    """
    result = detect_from_metadata(metadata, registry)
    if result is not None:
        _log(f"metadata -> {result.system}", debug)
        return result

    sample: List[Feature] = []
    for feature in features:
        if feature.geometry is None:
            continue
        sample.append(feature)
        if len(sample) >= sample_size:
            break

    result = detect_from_range(sample, registry, debug)
    if result is not None:
        return result

    result = detect_from_heuristics(sample, registry)
    if result is not None:
        _log(f"heuristic -> {result.system} ({result.confidence:.2f})", debug)
        return result

    return CRSDetectionResult(
        system=EPSG_WGS84,
        confidence=DEFAULT_DETECTION_CONFIDENCE,
        source="default",
        details="Defaulting to WGS84 as no other detection method succeeded",
    )

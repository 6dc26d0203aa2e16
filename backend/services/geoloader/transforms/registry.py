"""
Coordinate reference system registry.

The registry maps CRS codes ("EPSG:2056") to CoordinateSystem descriptors
holding a PROJ definition, units, and the coordinate envelope used by range
detection. It is built once, by create_default_registry() or by passing
systems explicitly, and is read-only afterwards; concurrent readers need no
locking.

Registration order matters for detection: range scoring walks systems in
registry order and the first confident match wins, so narrow projected
systems are listed before wide ones.
"""

import math
import re
from typing import Dict, Iterable, List, Optional

from pyproj import CRS, Transformer

from ..core.constants import (
    EPSG_LV03,
    EPSG_LV95,
    EPSG_WEB_MERCATOR,
    EPSG_WGS84,
    LV03_ENVELOPE,
    LV95_ENVELOPE,
    PROJ4_LV03,
    PROJ4_LV95,
    PROJ4_WEB_MERCATOR,
    PROJ4_WGS84,
    VERIFICATION_EXPECTED_LONLAT,
    VERIFICATION_POINTS,
    VERIFICATION_TOLERANCE_DEG,
    WEB_MERCATOR_ENVELOPE,
    WGS84_ENVELOPE,
)
from ..core.errors import UnknownCoordinateSystemError
from ..core.types import CoordinateSystem
from ..utils.logging import log

_CODE_PATTERN = re.compile(r"^\s*(?:epsg\s*:\s*)?(\d+)\s*$", re.IGNORECASE)


def _log(message: str, debug: bool = False):
    """Internal logging function."""
    if debug:
        print(f"[CRS] {message}")


def normalize_code(code: str) -> str:
    """
    Normalize a CRS identifier to "EPSG:<n>".

    Example:
        >>> normalize_code("epsg:2056")
        'EPSG:2056'
        >>> normalize_code("21781")
        'EPSG:21781'

    Non-EPSG identifiers are returned stripped but otherwise unchanged.
    """
    match = _CODE_PATTERN.match(code or "")
    if match:
        return f"EPSG:{int(match.group(1))}"
    return (code or "").strip()


def default_systems() -> List[CoordinateSystem]:
    """Built-in systems in detection order (Swiss projected systems first)."""
    return [
        CoordinateSystem(
            code=EPSG_LV95,
            proj4=PROJ4_LV95,
            units="m",
            is_geographic=False,
            name="CH1903+ / LV95",
            envelope=LV95_ENVELOPE,
        ),
        CoordinateSystem(
            code=EPSG_LV03,
            proj4=PROJ4_LV03,
            units="m",
            is_geographic=False,
            name="CH1903 / LV03",
            envelope=LV03_ENVELOPE,
        ),
        CoordinateSystem(
            code=EPSG_WGS84,
            proj4=PROJ4_WGS84,
            units="degrees",
            is_geographic=True,
            name="WGS 84",
            envelope=WGS84_ENVELOPE,
        ),
        CoordinateSystem(
            code=EPSG_WEB_MERCATOR,
            proj4=PROJ4_WEB_MERCATOR,
            units="m",
            is_geographic=False,
            name="WGS 84 / Pseudo-Mercator",
            envelope=WEB_MERCATOR_ENVELOPE,
        ),
    ]


class CoordinateSystemRegistry:
    """
    Read-only table of known coordinate systems.

    Args:
        systems: Systems to register, in detection order

    Example:
        >>> registry = create_default_registry()
        >>> registry.get("2056").name
        'CH1903+ / LV95'
    """

    def __init__(self, systems: Iterable[CoordinateSystem]):
        self._systems: Dict[str, CoordinateSystem] = {}
        for system in systems:
            code = normalize_code(system.code)
            if code in self._systems:
                raise ValueError(f"Duplicate coordinate system code: {code}")
            self._systems[code] = system
        self._crs: Dict[str, CRS] = {code: CRS.from_proj4(s.proj4) for code, s in self._systems.items()}

    def __len__(self) -> int:
        return len(self._systems)

    def __iter__(self):
        return iter(self._systems.values())

    def contains(self, code: Optional[str]) -> bool:
        return bool(code) and normalize_code(code) in self._systems

    def get(self, code: str) -> CoordinateSystem:
        """
        Look up a system by code.

        Raises:
            UnknownCoordinateSystemError: If the code is not registered
        """
        system = self._systems.get(normalize_code(code))
        if system is None:
            raise UnknownCoordinateSystemError(code)
        return system

    def codes(self) -> List[str]:
        return list(self._systems)

    def systems(self) -> List[CoordinateSystem]:
        return list(self._systems.values())

    def pyproj_crs(self, code: str) -> CRS:
        """Return the pyproj CRS compiled from the system's PROJ string."""
        self.get(code)
        return self._crs[normalize_code(code)]

    def verify(self, debug: bool = False) -> bool:
        """
        Check the Swiss definitions against known reference points.

        Transforms LV95 (2645021, 1249991) and LV03 (645021, 249991) to
        WGS84; both must land near (8.0, 47.4) within 0.5 degrees. Systems
        that are not registered are skipped.

        Returns:
            True if every checked point is within tolerance
        """
        if not self.contains(EPSG_WGS84):
            return False

        expected_lon, expected_lat = VERIFICATION_EXPECTED_LONLAT
        ok = True
        for code, x, y in VERIFICATION_POINTS:
            if not self.contains(code):
                continue
            transformer = Transformer.from_crs(
                self.pyproj_crs(code), self.pyproj_crs(EPSG_WGS84), always_xy=True
            )
            lon, lat = transformer.transform(x, y)
            within = (
                math.isfinite(lon)
                and math.isfinite(lat)
                and abs(lon - expected_lon) <= VERIFICATION_TOLERANCE_DEG
                and abs(lat - expected_lat) <= VERIFICATION_TOLERANCE_DEG
            )
            _log(f"verify {code}: ({x}, {y}) -> ({lon:.5f}, {lat:.5f}) {'OK' if within else 'FAIL'}", debug)
            if not within:
                log(f"[CRS] Verification failed for {code}: ({x}, {y}) -> ({lon}, {lat})")
                ok = False
        return ok


def create_default_registry() -> CoordinateSystemRegistry:
    """Build the registry of built-in systems (LV95, LV03, WGS84, Web Mercator)."""
    return CoordinateSystemRegistry(default_systems())

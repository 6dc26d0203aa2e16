"""
GeoJSON reader (.geojson / .json).

Accepts a FeatureCollection, a single Feature or a bare geometry. The legacy
`crs` member ({"type": "name", "properties": {"name": "EPSG:2056"}}) is
reported as metadata for coordinate system detection. A feature whose
geometry is missing or malformed is skipped with a warning.
"""

import json
from typing import Any, Dict, Iterator, List, Optional

from ..core.constants import ANALYZE_RECORD_LIMIT
from ..core.errors import InvalidHeaderError
from ..core.types import (
    AnalysisResult,
    Feature,
    Geometry,
    WarningCollector,
    coerce_attribute,
)
from .base import FormatParser


def _load(data: bytes) -> Dict[str, Any]:
    try:
        document = json.loads(data.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidHeaderError("GeoJSON", f"not valid JSON ({e})")
    if not isinstance(document, dict) or "type" not in document:
        raise InvalidHeaderError("GeoJSON", "top-level object has no 'type' member")
    return document


def _raw_features(document: Dict[str, Any]) -> List[Dict[str, Any]]:
    gtype = document.get("type")
    if gtype == "FeatureCollection":
        features = document.get("features")
        if not isinstance(features, list):
            raise InvalidHeaderError("GeoJSON", "FeatureCollection without a 'features' array")
        return features
    if gtype == "Feature":
        return [document]
    return [{"type": "Feature", "geometry": document, "properties": {}}]


def crs_name(document: Dict[str, Any]) -> Optional[str]:
    """Return the legacy named CRS (crs.properties.name), if any."""
    crs = document.get("crs")
    if isinstance(crs, dict):
        name = (crs.get("properties") or {}).get("name")
        if isinstance(name, str):
            return name
    return None


class GeoJSONParser(FormatParser):
    """Pass-through reader for GeoJSON documents."""

    name = "geojson"
    extensions = ("geojson", "json")
    mime_types = ("application/geo+json", "application/json")

    def stream(
        self,
        data: bytes,
        companions: Optional[Dict[str, bytes]] = None,
        warnings: Optional[WarningCollector] = None,
    ) -> Iterator[Feature]:
        warnings = warnings if warnings is not None else WarningCollector()
        document = _load(data)

        for index, raw in enumerate(_raw_features(document), start=1):
            if not isinstance(raw, dict):
                warnings.add("GEOJSON_INVALID_FEATURE", f"Skipping feature {index}: not an object", feature=index)
                continue
            geometry_data = raw.get("geometry")
            if geometry_data is None:
                warnings.add("GEOJSON_INVALID_FEATURE", f"Skipping feature {index}: no geometry", feature=index)
                continue
            try:
                geometry = Geometry.from_geojson(geometry_data)
            except ValueError as e:
                warnings.add("GEOJSON_INVALID_FEATURE", f"Skipping feature {index}: {e}", feature=index)
                continue

            raw_properties = raw.get("properties")
            if raw_properties is not None and not isinstance(raw_properties, dict):
                warnings.add(
                    "GEOJSON_INVALID_FEATURE",
                    f"Feature {index}: properties is {type(raw_properties).__name__}, not an object; ignoring them",
                    feature=index,
                )
                raw_properties = None
            properties = {
                str(k): coerce_attribute(v)
                for k, v in (raw_properties or {}).items()
            }
            layer = properties.get("layer")
            yield Feature(
                geometry,
                properties,
                layer=layer if isinstance(layer, str) else "",
                id=raw.get("id", index),
            )

    def analyze(
        self,
        data: bytes,
        companions: Optional[Dict[str, bytes]] = None,
        record_limit: int = ANALYZE_RECORD_LIMIT,
    ) -> AnalysisResult:
        document = _load(data)
        result = AnalysisResult(format_name=self.name)
        result.feature_count_estimate = len(_raw_features(document))
        name = crs_name(document)
        if name:
            result.metadata["crs"] = name
        self._collect_sample(result, self.stream(data, companions, result.warnings), record_limit)
        return result

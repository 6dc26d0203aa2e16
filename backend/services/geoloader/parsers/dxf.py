"""
DXF (ASCII) reader with layer table, block definitions and INSERT expansion.

A DXF file is a flat sequence of (group code, value) line pairs. Group code 0
starts a new object; sections are delimited by 0/SECTION ... 0/ENDSEC with
the section name under group code 2:

    HEADER    $VARIABLE entries (code 9) followed by their values
    TABLES    LAYER entries: name (2), color (62, negative = off),
              linetype (6), flags (70: bit 1 frozen, bit 4 locked)
    BLOCKS    BLOCK (name 2, base point 10/20/30) ... entities ... ENDBLK
    ENTITIES  Drawing entities; POLYLINE is followed by VERTEX objects
              closed by SEQEND

Supported entities: POINT, LINE, LWPOLYLINE, POLYLINE, CIRCLE, ARC, ELLIPSE
and INSERT. INSERT references a block and is expanded recursively with
T·R·S matrices (see dxf_geometry); arrayed INSERTs (70 columns, 71 rows,
44/45 spacing) produce one copy per cell.

Recoverable problems (unknown entity type, missing block, circular block
reference, malformed entity) are reported as warnings; only a file that is
not DXF at all raises InvalidHeaderError.
"""

import math
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import numpy as np

from ..core.constants import (
    ANALYZE_RECORD_LIMIT,
    DXF_DEFAULT_LAYER,
    DXF_LAYER_FROZEN,
    DXF_LAYER_LOCKED,
    DXF_POLYLINE_CLOSED,
    DXF_SUPPORTED_ENTITIES,
    MAX_BLOCK_DEPTH,
)
from ..core.errors import InvalidHeaderError
from ..core.types import (
    AnalysisResult,
    Bounds,
    Feature,
    Geometry,
    LayerInfo,
    WarningCollector,
    close_ring,
)
from .base import FormatParser
from .dxf_geometry import (
    arc_points,
    array_cell_matrix,
    circle_points,
    combine,
    ellipse_points,
    identity,
    insert_matrix,
    transform_geometry,
    translation,
)

GroupPair = Tuple[int, str]


class _EntityError(ValueError):
    """Malformed entity (recoverable: the entity is skipped)."""


def _log(message: str, debug: bool = False):
    """Internal logging function."""
    if debug:
        print(f"[DXF] {message}")


# ============================================================================
# Document Model
# ============================================================================

@dataclass
class DxfEntity:
    """One DXF object: its type, layer and raw group pairs."""
    type: str
    pairs: List[GroupPair] = field(default_factory=list)
    vertices: List["DxfEntity"] = field(default_factory=list)

    @property
    def layer(self) -> str:
        return self.get_str(8, DXF_DEFAULT_LAYER) or DXF_DEFAULT_LAYER

    @property
    def handle(self) -> Optional[str]:
        return self.get_str(5)

    def get_str(self, code: int, default: Optional[str] = None) -> Optional[str]:
        for c, v in self.pairs:
            if c == code:
                return v
        return default

    def get_float(self, code: int, default: Optional[float] = None) -> Optional[float]:
        value = self.get_str(code)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            raise _EntityError(f"group code {code} is not numeric: {value!r}")

    def get_int(self, code: int, default: int = 0) -> int:
        value = self.get_float(code)
        return default if value is None else int(value)

    def require_float(self, code: int) -> float:
        value = self.get_float(code)
        if value is None:
            raise _EntityError(f"{self.type} is missing group code {code}")
        return value

    def get_all(self, code: int) -> List[str]:
        return [v for c, v in self.pairs if c == code]


@dataclass
class DxfLayer:
    name: str
    color: Optional[int] = None
    line_type: Optional[str] = None
    flags: int = 0
    declared: bool = True

    @property
    def off(self) -> bool:
        return self.color is not None and self.color < 0

    @property
    def frozen(self) -> bool:
        return bool(self.flags & DXF_LAYER_FROZEN)

    @property
    def locked(self) -> bool:
        return bool(self.flags & DXF_LAYER_LOCKED)

    @property
    def visible(self) -> bool:
        return not (self.off or self.frozen)


@dataclass
class DxfBlock:
    name: str
    base_point: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    entities: List[DxfEntity] = field(default_factory=list)


@dataclass
class DxfDocument:
    header: Dict[str, Any] = field(default_factory=dict)
    layers: Dict[str, DxfLayer] = field(default_factory=dict)
    blocks: Dict[str, DxfBlock] = field(default_factory=dict)
    entities: List[DxfEntity] = field(default_factory=list)

    def ensure_layer(self, name: str) -> DxfLayer:
        """Return the layer, registering it as implicit when undeclared."""
        layer = self.layers.get(name)
        if layer is None:
            layer = self.layers[name] = DxfLayer(name=name, declared=False)
        return layer


# ============================================================================
# Tokenizer and Sections
# ============================================================================

def decode_text(data: bytes) -> str:
    """Decode DXF bytes: UTF-8 (AutoCAD 2007+), falling back to cp1252."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("cp1252", errors="replace")


def iter_group_pairs(text: str) -> Iterator[GroupPair]:
    """
    Yield (group_code, value) pairs from DXF text.

    Raises:
        InvalidHeaderError: If a group code line is not an integer
    """
    lines = text.splitlines()
    for i in range(0, len(lines) - 1, 2):
        code_text = lines[i].strip()
        try:
            code = int(code_text)
        except ValueError:
            raise InvalidHeaderError("DXF", f"non-numeric group code {code_text[:20]!r} at line {i + 1}")
        yield code, lines[i + 1].strip()


def _split_objects(pairs: List[GroupPair]) -> List[DxfEntity]:
    """Split a section body into objects, each starting at group code 0."""
    objects: List[DxfEntity] = []
    current: Optional[DxfEntity] = None
    for code, value in pairs:
        if code == 0:
            current = DxfEntity(type=value.upper())
            objects.append(current)
        elif current is not None:
            current.pairs.append((code, value))
    return objects


def _read_sections(pairs: List[GroupPair]) -> Dict[str, List[GroupPair]]:
    sections: Dict[str, List[GroupPair]] = {}
    i = 0
    n = len(pairs)
    while i < n:
        code, value = pairs[i]
        if code == 0 and value == "EOF":
            break
        if code == 0 and value == "SECTION" and i + 1 < n and pairs[i + 1][0] == 2:
            name = pairs[i + 1][1].upper()
            j = i + 2
            while j < n and pairs[j] != (0, "ENDSEC"):
                j += 1
            sections[name] = pairs[i + 2:j]
            i = j + 1
            continue
        i += 1
    return sections


def _parse_header(pairs: List[GroupPair]) -> Dict[str, Any]:
    """Collect $VARIABLES; single values become scalars, point values lists."""
    header: Dict[str, Any] = {}
    name: Optional[str] = None
    values: List[str] = []

    def flush():
        if name is not None:
            header[name] = values[0] if len(values) == 1 else list(values)

    for code, value in pairs:
        if code == 9:
            flush()
            name, values = value, []
        elif name is not None:
            values.append(value)
    flush()
    return header


def _parse_layers(pairs: List[GroupPair]) -> Dict[str, DxfLayer]:
    layers: Dict[str, DxfLayer] = {}
    for obj in _split_objects(pairs):
        if obj.type != "LAYER":
            continue
        name = obj.get_str(2)
        if not name:
            continue
        color = obj.get_str(62)
        try:
            color_value = int(color) if color is not None else None
            flags = int(obj.get_str(70, "0") or 0)
        except ValueError:
            color_value, flags = None, 0
        layers[name] = DxfLayer(
            name=name,
            color=color_value,
            line_type=obj.get_str(6),
            flags=flags,
        )
    return layers


def _assemble_entities(objects: List[DxfEntity]) -> List[DxfEntity]:
    """
    Attach VERTEX objects to their POLYLINE and drop SEQEND / ATTRIB.

    ATTRIB objects following an INSERT belong to the reference and carry no
    geometry of their own.
    """
    entities: List[DxfEntity] = []
    owner: Optional[DxfEntity] = None
    for obj in objects:
        if obj.type == "SEQEND":
            owner = None
            continue
        if obj.type == "VERTEX":
            if owner is not None and owner.type == "POLYLINE":
                owner.vertices.append(obj)
            continue
        if obj.type == "ATTRIB":
            continue
        entities.append(obj)
        owner = obj if obj.type in ("POLYLINE", "INSERT") else None
    return entities


def _parse_blocks(pairs: List[GroupPair]) -> Dict[str, DxfBlock]:
    blocks: Dict[str, DxfBlock] = {}
    current: Optional[DxfBlock] = None
    body: List[DxfEntity] = []

    for obj in _split_objects(pairs):
        if obj.type == "BLOCK":
            name = obj.get_str(2) or ""
            try:
                base = (
                    obj.get_float(10, 0.0),
                    obj.get_float(20, 0.0),
                    obj.get_float(30, 0.0),
                )
            except _EntityError:
                base = (0.0, 0.0, 0.0)
            current = DxfBlock(name=name, base_point=base)
            body = []
        elif obj.type == "ENDBLK":
            if current is not None and current.name:
                current.entities = _assemble_entities(body)
                blocks[current.name] = current
            current = None
        elif current is not None:
            body.append(obj)
    return blocks


def parse_document(data: bytes) -> DxfDocument:
    """
    Parse DXF bytes into header, layers, blocks and top-level entities.

    Layers referenced by entities but absent from the LAYER table are added
    as implicit layers; the default layer "0" is always present.

    Raises:
        InvalidHeaderError: If the content is not ASCII DXF
    """
    pairs = list(iter_group_pairs(decode_text(data)))
    sections = _read_sections(pairs)
    if not sections:
        raise InvalidHeaderError("DXF", "no SECTION found")

    doc = DxfDocument(
        header=_parse_header(sections.get("HEADER", [])),
        layers=_parse_layers(sections.get("TABLES", [])),
        blocks=_parse_blocks(sections.get("BLOCKS", [])),
        entities=_assemble_entities(_split_objects(sections.get("ENTITIES", []))),
    )

    doc.ensure_layer(DXF_DEFAULT_LAYER)
    for entity in doc.entities:
        doc.ensure_layer(entity.layer)
    for block in doc.blocks.values():
        for entity in block.entities:
            doc.ensure_layer(entity.layer)
    return doc


# ============================================================================
# Entity Geometry (block-local coordinates)
# ============================================================================

def _point3(entity: DxfEntity, x_code: int = 10) -> Tuple[float, float, float]:
    return (
        entity.require_float(x_code),
        entity.require_float(x_code + 10),
        entity.get_float(x_code + 20, 0.0),
    )


def _position(x: float, y: float, z: float) -> Tuple[float, ...]:
    return (x, y, z) if z else (x, y)


def _polyline_geometry(positions: List[Tuple[float, ...]], closed: bool) -> Geometry:
    if len(positions) < 2:
        raise _EntityError(f"polyline with {len(positions)} vertex")
    if closed and len(positions) >= 3:
        ring = close_ring(positions)
        if len(ring) >= 4:
            return Geometry("Polygon", (ring,))
    return Geometry("LineString", tuple(positions))


def _lwpolyline_positions(entity: DxfEntity) -> List[Tuple[float, ...]]:
    elevation = entity.get_float(38, 0.0)
    xs: List[float] = []
    ys: List[float] = []
    for code, value in entity.pairs:
        try:
            if code == 10:
                xs.append(float(value))
            elif code == 20:
                ys.append(float(value))
        except ValueError:
            raise _EntityError(f"LWPOLYLINE vertex is not numeric: {value!r}")
    if len(xs) != len(ys):
        raise _EntityError(f"LWPOLYLINE has {len(xs)} x and {len(ys)} y values")
    return [_position(x, y, elevation) for x, y in zip(xs, ys)]


def entity_geometry(entity: DxfEntity) -> Geometry:
    """
    Convert a supported (non-INSERT) entity to geometry.

    - POINT -> Point; LINE -> 2-point LineString
    - LWPOLYLINE / POLYLINE -> LineString, or Polygon when flagged closed
    - CIRCLE -> Polygon (64 segments); ARC -> LineString (32 segments)
    - ELLIPSE -> Polygon for a full turn, LineString for an elliptical arc

    Raises:
        _EntityError: If required group codes are missing or invalid
    """
    etype = entity.type

    if etype == "POINT":
        x, y, z = _point3(entity)
        return Geometry("Point", _position(x, y, z))

    if etype == "LINE":
        start = _position(*_point3(entity, 10))
        end = _position(*_point3(entity, 11))
        return Geometry("LineString", (start, end))

    if etype == "LWPOLYLINE":
        closed = bool(entity.get_int(70) & DXF_POLYLINE_CLOSED)
        return _polyline_geometry(_lwpolyline_positions(entity), closed)

    if etype == "POLYLINE":
        closed = bool(entity.get_int(70) & DXF_POLYLINE_CLOSED)
        positions = [_position(*_point3(v)) for v in entity.vertices]
        return _polyline_geometry(positions, closed)

    if etype == "CIRCLE":
        cx, cy, cz = _point3(entity)
        radius = entity.require_float(40)
        if not radius > 0:
            raise _EntityError(f"CIRCLE radius {radius} is not positive")
        return Geometry("Polygon", (tuple(circle_points(cx, cy, radius, cz)),))

    if etype == "ARC":
        cx, cy, cz = _point3(entity)
        radius = entity.require_float(40)
        if not radius > 0:
            raise _EntityError(f"ARC radius {radius} is not positive")
        start = entity.get_float(50, 0.0)
        end = entity.get_float(51, 360.0)
        return Geometry("LineString", tuple(arc_points(cx, cy, radius, start, end, cz)))

    if etype == "ELLIPSE":
        cx, cy, cz = _point3(entity)
        mx, my, _ = _point3(entity, 11)
        ratio = entity.require_float(40)
        if math.hypot(mx, my) == 0 or not ratio > 0:
            raise _EntityError("ELLIPSE with zero-length axis")
        start = entity.get_float(41, 0.0)
        end = entity.get_float(42, 2.0 * math.pi)
        points, closed = ellipse_points(cx, cy, mx, my, ratio, start, end, cz)
        if closed:
            return Geometry("Polygon", (tuple(points),))
        return Geometry("LineString", tuple(points))

    raise _EntityError(f"unsupported entity type {etype}")


# ============================================================================
# Block Expansion
# ============================================================================

class _Expander:
    """Walks entities, expanding INSERTs into transformed block content."""

    def __init__(self, doc: DxfDocument, warnings: WarningCollector, debug: bool = False):
        self.doc = doc
        self.warnings = warnings
        self.debug = debug
        self._unsupported_seen: Set[str] = set()

    def features(self) -> Iterator[Feature]:
        yield from self._walk(self.doc.entities, identity(), [], None, None)

    def _walk(
        self,
        entities: List[DxfEntity],
        matrix: np.ndarray,
        stack: List[str],
        inherited_layer: Optional[str],
        block_name: Optional[str],
    ) -> Iterator[Feature]:
        for entity in entities:
            # Entities on layer "0" inside a block take the INSERT's layer
            layer = entity.layer
            if inherited_layer and layer == DXF_DEFAULT_LAYER:
                layer = inherited_layer

            if entity.type == "INSERT":
                yield from self._expand_insert(entity, matrix, stack, layer)
                continue

            if entity.type not in DXF_SUPPORTED_ENTITIES:
                if entity.type not in self._unsupported_seen:
                    self._unsupported_seen.add(entity.type)
                    self.warnings.add(
                        "UNSUPPORTED_ENTITY",
                        f"Skipping unsupported DXF entity type {entity.type}",
                        entity_type=entity.type,
                    )
                continue

            try:
                geometry = entity_geometry(entity)
            except _EntityError as e:
                label = f"{entity.type} {entity.handle}" if entity.handle else entity.type
                self.warnings.add(
                    "DXF_INVALID_ENTITY",
                    f"Skipping {label} entity: {e}",
                    entity_type=entity.type,
                    handle=entity.handle,
                )
                continue

            properties: Dict[str, Any] = {"entityType": entity.type}
            if entity.handle:
                properties["handle"] = entity.handle
            color = entity.get_str(62)
            if color is not None and color.lstrip("-").isdigit():
                properties["color"] = int(color)
            if block_name:
                properties["blockName"] = block_name

            yield Feature(
                transform_geometry(geometry, matrix),
                properties,
                layer=layer,
                id=entity.handle,
            )

    def _expand_insert(
        self,
        insert: DxfEntity,
        parent: np.ndarray,
        stack: List[str],
        layer: str,
    ) -> Iterator[Feature]:
        name = insert.get_str(2) or ""
        block = self.doc.blocks.get(name)
        if block is None:
            self.warnings.add("BLOCK_NOT_FOUND", f"INSERT references undefined block '{name}'", block=name)
            return
        if name in stack:
            self.warnings.add(
                "CIRCULAR_BLOCK_REFERENCE",
                f"Circular block reference {' -> '.join(stack + [name])}; expansion stopped",
                block=name,
            )
            return
        if len(stack) >= MAX_BLOCK_DEPTH:
            self.warnings.add(
                "BLOCK_DEPTH_EXCEEDED",
                f"Block nesting deeper than {MAX_BLOCK_DEPTH} at '{name}'; expansion stopped",
                block=name,
            )
            return

        try:
            position = _point3(insert)
            scale = (
                insert.get_float(41, 1.0),
                insert.get_float(42, 1.0),
                insert.get_float(43, 1.0),
            )
            rotation = insert.get_float(50, 0.0)
            columns = max(1, insert.get_int(70, 1))
            rows = max(1, insert.get_int(71, 1))
            col_spacing = insert.get_float(44, 0.0)
            row_spacing = insert.get_float(45, 0.0)
        except _EntityError as e:
            self.warnings.add("DXF_INVALID_ENTITY", f"Skipping INSERT of '{name}': {e}", entity_type="INSERT", block=name)
            return

        base = insert_matrix(position, rotation, scale)
        to_origin = translation(-block.base_point[0], -block.base_point[1], -block.base_point[2])
        _log(f"INSERT {name}: {columns}x{rows} at {position}, rotation={rotation}, scale={scale}", self.debug)

        stack.append(name)
        try:
            for row in range(rows):
                for col in range(columns):
                    cell = array_cell_matrix(base, row, col, row_spacing, col_spacing)
                    world = combine(parent, combine(cell, to_origin))
                    yield from self._walk(block.entities, world, stack, layer, name)
        finally:
            stack.pop()


# ============================================================================
# Parser
# ============================================================================

def _header_bounds(header: Dict[str, Any]) -> Bounds:
    extmin = header.get("$EXTMIN")
    extmax = header.get("$EXTMAX")
    bounds = Bounds()
    if isinstance(extmin, list) and isinstance(extmax, list) and len(extmin) >= 2 and len(extmax) >= 2:
        try:
            bounds.extend(float(extmin[0]), float(extmin[1]))
            bounds.extend(float(extmax[0]), float(extmax[1]))
        except ValueError:
            return Bounds()
    return bounds


class DxfParser(FormatParser):
    """Reader for ASCII DXF drawings."""

    name = "dxf"
    extensions = ("dxf",)
    mime_types = ("image/vnd.dxf", "application/dxf", "application/x-dxf")

    def stream(
        self,
        data: bytes,
        companions: Optional[Dict[str, bytes]] = None,
        warnings: Optional[WarningCollector] = None,
    ) -> Iterator[Feature]:
        warnings = warnings if warnings is not None else WarningCollector()
        doc = parse_document(data)
        _log(
            f"Parsed {len(doc.entities)} entities, {len(doc.blocks)} blocks, {len(doc.layers)} layers",
            self.debug,
        )
        yield from _Expander(doc, warnings, self.debug).features()

    def analyze(
        self,
        data: bytes,
        companions: Optional[Dict[str, bytes]] = None,
        record_limit: int = ANALYZE_RECORD_LIMIT,
    ) -> AnalysisResult:
        result = AnalysisResult(format_name=self.name)
        doc = parse_document(data)

        entity_types: Dict[str, int] = {}
        per_layer: Dict[str, int] = {}
        for entity in doc.entities:
            entity_types[entity.type] = entity_types.get(entity.type, 0) + 1
            per_layer[entity.layer] = per_layer.get(entity.layer, 0) + 1

        result.metadata["entityTypes"] = entity_types
        result.metadata["blocks"] = sorted(doc.blocks)
        if "$ACADVER" in doc.header:
            result.metadata["version"] = doc.header["$ACADVER"]
        if "$INSUNITS" in doc.header:
            result.metadata["units"] = doc.header["$INSUNITS"]
        result.feature_count_estimate = len(doc.entities)
        result.bounds = _header_bounds(doc.header)

        sample_features = list(islice(_Expander(doc, result.warnings, self.debug).features(), record_limit))
        self._collect_sample(result, iter(sample_features), record_limit)

        geometry_types: Dict[str, List[str]] = {}
        for feature in sample_features:
            types = geometry_types.setdefault(feature.layer, [])
            if feature.geometry_type and feature.geometry_type not in types:
                types.append(feature.geometry_type)

        result.layers = [
            LayerInfo(
                name=layer.name,
                feature_count=per_layer.get(layer.name, 0),
                geometry_types=geometry_types.get(layer.name, []),
                visible=layer.visible,
                locked=layer.locked,
                frozen=layer.frozen,
                color=layer.color,
            )
            for layer in doc.layers.values()
        ]
        return result

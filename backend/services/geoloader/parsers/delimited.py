"""
Delimited text point loader (.csv / .txt / .tsv).

Each data row becomes a Point feature. Columns are classified from the
header line:
- delimiter: the candidate producing the most header columns; ties go to
  the candidate whose column count is most consistent over the first lines
- X / Y / Z: header names matched against alias lists, exact matches before
  substring matches, each column used at most once
- all other columns become attributes (int, float, else string; empty -> None)

A header made only of numbers is treated as data, with x / y / z assigned to
the first three columns.
"""

import csv
import io
import math
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ..core.constants import (
    CSV_DELIMITER_CANDIDATES,
    CSV_SAMPLE_LINES,
    CSV_X_ALIASES,
    CSV_Y_ALIASES,
    CSV_Z_ALIASES,
)
from ..core.errors import UnsupportedFormatError
from ..core.types import AttributeValue, Feature, Geometry, WarningCollector
from .base import FormatParser


def _log(message: str, debug: bool = False):
    """Internal logging function."""
    if debug:
        print(f"[CSV] {message}")


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _column_count(line: str, delimiter: str) -> int:
    row = next(csv.reader([line], delimiter=delimiter), [])
    return len(row)


def detect_delimiter(lines: Sequence[str]) -> str:
    """
    Pick the delimiter maximizing the header column count.

    Args:
        lines: First non-empty lines of the file (header first)

    Returns:
        The winning candidate (',' when nothing splits the header)
    """
    if not lines:
        return CSV_DELIMITER_CANDIDATES[0]

    best = CSV_DELIMITER_CANDIDATES[0]
    best_key: Tuple[int, int] = (0, 0)
    for candidate in CSV_DELIMITER_CANDIDATES:
        header_count = _column_count(lines[0], candidate)
        consistent = sum(1 for line in lines[1:] if _column_count(line, candidate) == header_count)
        key = (header_count, consistent)
        if key > best_key:
            best, best_key = candidate, key
    return best


def _match_column(headers: List[str], aliases: Sequence[str], used: set) -> Optional[int]:
    lowered = [h.strip().lower() for h in headers]
    for alias in aliases:
        for i, name in enumerate(lowered):
            if i not in used and name == alias:
                return i
    for alias in aliases:
        for i, name in enumerate(lowered):
            if i not in used and alias in name:
                return i
    return None


def detect_columns(headers: List[str]) -> Dict[str, Optional[int]]:
    """
    Map x / y / z to header column indices (None when absent).

    Example:
        >>> detect_columns(["ID", "Easting", "Northing", "Height"])
        {'x': 1, 'y': 2, 'z': 3}
    """
    used: set = set()
    mapping: Dict[str, Optional[int]] = {}
    for axis, aliases in (("x", CSV_X_ALIASES), ("y", CSV_Y_ALIASES), ("z", CSV_Z_ALIASES)):
        index = _match_column(headers, aliases, used)
        mapping[axis] = index
        if index is not None:
            used.add(index)
    return mapping


def coerce_value(text: str) -> AttributeValue:
    text = text.strip()
    if text == "":
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def _parse_coordinate(text: str) -> Optional[float]:
    try:
        value = float(text.strip())
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _is_numeric_row(row: Sequence[str]) -> bool:
    return bool(row) and all(_parse_coordinate(v) is not None for v in row if v.strip())


# ============================================================================
# Parser
# ============================================================================

class DelimitedTextParser(FormatParser):
    """Point loader for delimited text with coordinate columns."""

    name = "delimited"
    extensions = ("csv", "txt", "tsv")
    mime_types = ("text/csv", "text/tab-separated-values", "text/plain")

    def __init__(self, debug: bool = False, delimiter: Optional[str] = None):
        super().__init__(debug)
        self.delimiter = delimiter

    def _layout(self, text: str) -> Tuple[str, List[str], Dict[str, Optional[int]], bool]:
        sample = [line for line in text.splitlines()[:CSV_SAMPLE_LINES * 2] if line.strip()][:CSV_SAMPLE_LINES]
        if not sample:
            raise UnsupportedFormatError("delimited input", "file is empty")

        delimiter = self.delimiter or detect_delimiter(sample)
        first_row = next(csv.reader([sample[0]], delimiter=delimiter), [])

        if _is_numeric_row(first_row):
            headers = ["x", "y", "z"][:len(first_row)] + [f"col{i + 1}" for i in range(3, len(first_row))]
            has_header = False
        else:
            headers = [h.strip() for h in first_row]
            has_header = True

        columns = detect_columns(headers)
        if columns["x"] is None or columns["y"] is None:
            raise UnsupportedFormatError(
                "delimited input",
                f"no X/Y coordinate columns found in header {headers}",
            )
        _log(f"delimiter={delimiter!r}, columns={columns}, header={has_header}", self.debug)
        return delimiter, headers, columns, has_header

    def stream(
        self,
        data: bytes,
        companions: Optional[Dict[str, bytes]] = None,
        warnings: Optional[WarningCollector] = None,
    ) -> Iterator[Feature]:
        warnings = warnings if warnings is not None else WarningCollector()
        text = decode_text(data)
        delimiter, headers, columns, has_header = self._layout(text)

        x_col, y_col, z_col = columns["x"], columns["y"], columns["z"]
        coordinate_cols = {x_col, y_col, z_col}

        reader = csv.reader(io.StringIO(text), delimiter=delimiter)
        if has_header:
            next(reader, None)

        row_number = 0
        for row in reader:
            if not row or all(not v.strip() for v in row):
                continue
            row_number += 1

            x = _parse_coordinate(row[x_col]) if x_col < len(row) else None
            y = _parse_coordinate(row[y_col]) if y_col < len(row) else None
            if x is None or y is None:
                warnings.add(
                    "CSV_INVALID_COORDINATE",
                    f"Skipping row {row_number}: non-numeric coordinates",
                    row=row_number,
                )
                continue
            z = _parse_coordinate(row[z_col]) if z_col is not None and z_col < len(row) else None

            properties = {
                headers[i] if i < len(headers) else f"col{i + 1}": coerce_value(value)
                for i, value in enumerate(row)
                if i not in coordinate_cols
            }
            yield Feature(Geometry.point(x, y, z), properties, id=row_number)

"""
dBase III attribute table reader (shapefile .dbf companion).

Layout:
- Header: record count (int32 LE @4), header length (int16 LE @8),
  record length (int16 LE @10)
- Field descriptors from offset 32, 32 bytes each, terminated by 0x0D:
  name (11 bytes, NUL padded), type (@11), length (@16), decimal count (@17)
- Records start at header length; each begins with a deletion flag byte
  ('*' = deleted) followed by fixed-width field values

Records are keyed by 1-based sequence number so that the shapefile reader
can join them to shape records.
"""

import codecs
import struct
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterator, List, Optional, Tuple

from ..core.constants import (
    DBF_DEFAULT_ENCODING,
    DBF_DELETED_FLAG,
    DBF_FIELD_DESCRIPTOR_SIZE,
    DBF_HEADER_SIZE,
    DBF_HEADER_TERMINATOR,
)
from ..core.errors import InvalidHeaderError
from ..core.types import AttributeValue


@dataclass
class DbfField:
    name: str
    type: str
    length: int
    decimals: int = 0


@dataclass
class DbfTable:
    fields: List[DbfField] = field(default_factory=list)
    record_count: int = 0
    records: Dict[int, Dict[str, AttributeValue]] = field(default_factory=dict)


def resolve_encoding(cpg: Optional[bytes]) -> str:
    """
    Resolve the text encoding declared by a .cpg companion.

    Unknown or missing declarations fall back to latin-1, which decodes any
    byte sequence.
    """
    if not cpg:
        return DBF_DEFAULT_ENCODING
    declared = cpg.decode("ascii", errors="ignore").strip()
    if not declared:
        return DBF_DEFAULT_ENCODING
    if declared.isdigit():
        # ANSI code page number, e.g. "1252"
        declared = f"cp{declared}"
    try:
        return codecs.lookup(declared).name
    except LookupError:
        return DBF_DEFAULT_ENCODING


def read_dbf_header(data: bytes, encoding: str = DBF_DEFAULT_ENCODING) -> Tuple[int, int, int, List[DbfField]]:
    """
    Parse the DBF header and field descriptors.

    Returns:
        Tuple of (record_count, header_length, record_length, fields)

    Raises:
        InvalidHeaderError: If the header is truncated or inconsistent
    """
    if len(data) < DBF_HEADER_SIZE:
        raise InvalidHeaderError("DBF", f"file is {len(data)} bytes, header needs {DBF_HEADER_SIZE}")

    record_count = struct.unpack_from("<I", data, 4)[0]
    header_length, record_length = struct.unpack_from("<HH", data, 8)

    if header_length < DBF_HEADER_SIZE + 1 or header_length > len(data):
        raise InvalidHeaderError("DBF", f"header length {header_length} out of range")

    fields: List[DbfField] = []
    offset = DBF_HEADER_SIZE
    while offset + DBF_FIELD_DESCRIPTOR_SIZE <= header_length:
        if data[offset] == DBF_HEADER_TERMINATOR:
            break
        raw_name = data[offset:offset + 11].split(b"\x00", 1)[0]
        name = raw_name.decode(encoding, errors="replace").strip()
        field_type = chr(data[offset + 11]).upper()
        length = data[offset + 16]
        decimals = data[offset + 17]
        fields.append(DbfField(name=name, type=field_type, length=length, decimals=decimals))
        offset += DBF_FIELD_DESCRIPTOR_SIZE

    declared_width = 1 + sum(f.length for f in fields)
    if record_length < declared_width:
        raise InvalidHeaderError(
            "DBF", f"record length {record_length} shorter than fields ({declared_width})"
        )

    return record_count, header_length, record_length, fields


def convert_value(dbf_field: DbfField, raw: bytes, encoding: str = DBF_DEFAULT_ENCODING) -> AttributeValue:
    """
    Convert a raw fixed-width field value by its DBF type.

    - N / F: int when the field has no decimals and the text is integral,
      float otherwise; empty or unparsable -> None
    - L: True for T/t/Y/y, False for F/f/N/n, None otherwise
    - D: date from YYYYMMDD, None when empty or invalid
    - C and anything else: stripped string
    """
    field_type = dbf_field.type

    if field_type in ("N", "F"):
        text = raw.decode("ascii", errors="ignore").strip()
        if not text or set(text) == {"*"}:
            return None
        try:
            if dbf_field.decimals == 0 and "." not in text and "e" not in text.lower():
                return int(text)
            return float(text)
        except ValueError:
            return None

    if field_type == "L":
        text = raw.decode("ascii", errors="ignore").strip()
        if text in ("T", "t", "Y", "y"):
            return True
        if text in ("F", "f", "N", "n"):
            return False
        return None

    if field_type == "D":
        text = raw.decode("ascii", errors="ignore").strip()
        if len(text) != 8 or not text.isdigit():
            return None
        try:
            return date(int(text[0:4]), int(text[4:6]), int(text[6:8]))
        except ValueError:
            return None

    return raw.decode(encoding, errors="replace").rstrip("\x00 ").strip()


def iter_dbf_records(
    data: bytes,
    encoding: str = DBF_DEFAULT_ENCODING,
) -> Iterator[Tuple[int, Optional[Dict[str, AttributeValue]]]]:
    """
    Yield (sequence_number, attributes) for every record.

    Deleted records yield None attributes so sequence numbers stay aligned
    with shape records. Iteration stops at the declared record count or at
    the end of the buffer, whichever comes first.
    """
    record_count, header_length, record_length, fields = read_dbf_header(data, encoding)

    offset = header_length
    for seq in range(1, record_count + 1):
        if offset + record_length > len(data):
            break
        record = data[offset:offset + record_length]
        offset += record_length

        if record[0] == DBF_DELETED_FLAG:
            yield seq, None
            continue

        attrs: Dict[str, AttributeValue] = {}
        pos = 1
        for dbf_field in fields:
            raw = record[pos:pos + dbf_field.length]
            pos += dbf_field.length
            attrs[dbf_field.name] = convert_value(dbf_field, raw, encoding)
        yield seq, attrs


def read_dbf(data: bytes, encoding: Optional[str] = None) -> DbfTable:
    """
    Read a complete DBF table into memory.

    Args:
        data: Raw .dbf bytes
        encoding: Text encoding (default latin-1; see resolve_encoding)

    Returns:
        DbfTable with fields and non-deleted records keyed by sequence number

    Raises:
        InvalidHeaderError: If the header is truncated or inconsistent
    """
    encoding = encoding or DBF_DEFAULT_ENCODING
    record_count, _, _, fields = read_dbf_header(data, encoding)
    table = DbfTable(fields=fields, record_count=record_count)
    for seq, attrs in iter_dbf_records(data, encoding):
        if attrs is not None:
            table.records[seq] = attrs
    return table

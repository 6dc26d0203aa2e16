"""
Parser contract and input grouping shared by all format readers.

Every format reader implements three calls:
- can_handle(name, mime_hint): cheap check on file name / declared type
- analyze(data, companions): metadata-only pass over a small record prefix
- stream(data, companions): lazy, full read producing Feature objects

Companion files (.dbf, .prj, ...) travel next to the main file and are
grouped by base name with case-insensitive extension matching.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from ..core.constants import ANALYZE_RECORD_LIMIT
from ..core.errors import UnsupportedFormatError
from ..core.types import (
    AnalysisResult,
    Bounds,
    Feature,
    WarningCollector,
    bounds_of,
    summarize_layers,
)


# ============================================================================
# Input Files
# ============================================================================

@dataclass
class InputFile:
    """A named byte buffer (main file or companion)."""
    name: str
    data: bytes
    mime_type: Optional[str] = None

    @property
    def extension(self) -> str:
        return os.path.splitext(self.name)[1].lstrip(".").lower()

    @property
    def base_name(self) -> str:
        return os.path.splitext(os.path.basename(self.name))[0].lower()

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class FileGroup:
    """A main file plus its companions keyed by lower-case extension."""
    main: InputFile
    companions: Dict[str, bytes] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.main.name

    @property
    def total_size(self) -> int:
        return self.main.size + sum(len(v) for v in self.companions.values())


def group_companions(files: Sequence[InputFile], main_extensions: Iterable[str]) -> List[FileGroup]:
    """
    Group uploaded files into main files with their companions.

    A file is "main" when its extension is one a parser reads directly;
    every other file joins the main file sharing its base name. Companions
    with no matching main file are ignored.

    Args:
        files: Uploaded files
        main_extensions: Extensions (lower case, no dot) handled by parsers

    Returns:
        One FileGroup per main file, in upload order

    Example:
        >>> groups = group_companions(
        ...     [InputFile("Parcels.SHP", b"..."), InputFile("parcels.dbf", b"...")],
        ...     ["shp"],
        ... )
        >>> list(groups[0].companions)
        ['dbf']
    """
    main_exts = {ext.lower() for ext in main_extensions}
    groups: List[FileGroup] = []
    by_base: Dict[str, FileGroup] = {}

    for f in files:
        if f.extension in main_exts:
            group = FileGroup(main=f)
            groups.append(group)
            by_base.setdefault(f.base_name, group)

    for f in files:
        if f.extension in main_exts:
            continue
        group = by_base.get(f.base_name)
        if group is not None:
            group.companions[f.extension] = f.data

    return groups


# ============================================================================
# Parser Contract
# ============================================================================

class FormatParser:
    """
    Base class for format readers.

    Subclasses set `name`, `extensions`, `mime_types` and implement
    stream(). The default analyze() reads the first records of the stream
    and summarizes them; readers with a declarative header override it to
    report header metadata as well.
    """

    name = "base"
    extensions: tuple = ()
    mime_types: tuple = ()

    def __init__(self, debug: bool = False):
        self.debug = debug

    def can_handle(self, file_name: str, mime_hint: Optional[str] = None) -> bool:
        ext = os.path.splitext(file_name)[1].lstrip(".").lower()
        if ext in self.extensions:
            return True
        return bool(mime_hint) and mime_hint.lower() in self.mime_types

    def stream(
        self,
        data: bytes,
        companions: Optional[Dict[str, bytes]] = None,
        warnings: Optional[WarningCollector] = None,
    ) -> Iterator[Feature]:
        raise NotImplementedError

    def analyze(
        self,
        data: bytes,
        companions: Optional[Dict[str, bytes]] = None,
        record_limit: int = ANALYZE_RECORD_LIMIT,
    ) -> AnalysisResult:
        result = AnalysisResult(format_name=self.name)
        self._collect_sample(result, self.stream(data, companions, result.warnings), record_limit)
        return result

    def _collect_sample(self, result: AnalysisResult, features: Iterator[Feature], record_limit: int) -> None:
        sample: List[Feature] = []
        bounds = Bounds()
        for feature in features:
            sample.append(feature)
            bounds_of(feature.geometry, bounds)
            if len(sample) >= record_limit:
                break
        result.preview_sample = sample
        if not result.bounds.is_valid:
            result.bounds = bounds
        if not result.layers:
            result.layers = summarize_layers(sample)


def select_parser(
    parsers: Sequence[FormatParser],
    file_name: str,
    mime_hint: Optional[str] = None,
) -> FormatParser:
    """
    Return the first parser accepting the file.

    Raises:
        UnsupportedFormatError: If no parser handles it
    """
    for parser in parsers:
        if parser.can_handle(file_name, mime_hint):
            return parser
    raise UnsupportedFormatError(file_name)

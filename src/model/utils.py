"""
Shared utilities for source locations.

Spans are carried by every Program Model node for reporting only; they never
influence analysis results.
"""

import bisect
from dataclasses import dataclass
from typing import Dict, List, Tuple


@dataclass(frozen=True, order=True)
class SourceSpan:
    """Source range: file, byte offsets [start, end), line/column of start (1-indexed, 0 if unknown)."""

    file: str
    start: int
    end: int
    line: int = 0
    column: int = 0

    def overlaps(self, other: "SourceSpan") -> bool:
        """True if both spans are in the same file and share at least one byte (or are identical)."""
        if self.file != other.file:
            return False
        if (self.start, self.end) == (other.start, other.end):
            return True
        return self.start < other.end and other.start < self.end

    def to_dict(self) -> Dict[str, object]:
        return {"file": self.file, "start": self.start, "end": self.end, "line": self.line, "column": self.column}

    def __str__(self) -> str:
        if self.line:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}@{self.start}"


UNKNOWN_SPAN = SourceSpan("<unknown>", 0, 0)


class LineTable:
    """Byte offset -> (line, column) lookup for one source text. O(n) build, O(log n) per query."""

    def __init__(self, source_code: str):
        encoded = source_code.encode("utf-8")
        self._size = len(encoded)
        self._offsets = _build_line_offset_table(encoded)

    def line_col(self, offset: int) -> Tuple[int, int]:
        if offset < 0:
            return (1, 1)
        if offset >= self._size:
            offset = self._size - 1 if self._size else 0
        line = bisect.bisect_right(self._offsets, offset)
        col = offset - self._offsets[line - 1] + 1
        return (line, col)


def _build_line_offset_table(encoded: bytes) -> List[int]:
    """Build table of byte offsets where each line starts."""
    offsets = [0]  # Line 1 starts at byte 0
    for i, c in enumerate(encoded):
        if c == 0x0A:
            offsets.append(i + 1)
    return offsets


def parse_src(src: str) -> Tuple[int, int, int]:
    """Parse a solc-style `start:length:fileIndex` attribute. Raises ValueError on bad input."""
    parts = src.split(":")
    if len(parts) != 3:
        raise ValueError(f"expected 'start:length:file', got '{src}'")
    start, length, file_idx = (int(p) for p in parts)
    if start < 0 or length < 0:
        raise ValueError(f"negative offset in '{src}'")
    return start, length, file_idx

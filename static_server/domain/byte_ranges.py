"""Parsing of HTTP ``Range`` request headers into byte ranges."""

from dataclasses import dataclass
from typing import Optional

RANGE_UNIT = "bytes"


@dataclass(frozen=True)
class ByteRange:
    """An inclusive byte interval of a representation."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        """Render the ``Content-Range`` value for a resource of ``size`` bytes."""
        return f"{RANGE_UNIT} {self.start}-{self.end}/{size}"


class RangeNotSatisfiable(Exception):
    """Raised when a well-formed range set has no overlap with the resource."""

    def __init__(self, size: int) -> None:
        super().__init__(f"No satisfiable range for {size} bytes")
        self.size = size


def _parse_range_token(token: str, size: int) -> Optional[ByteRange]:
    """Parse one byte-range token; return None when it cannot be satisfied.

    Raises ValueError for syntactically invalid specs.
    """
    first, dash, last = token.partition("-")
    first, last = first.strip(), last.strip()
    if not dash or (first and not first.isdigit()) or (last and not last.isdigit()):
        raise ValueError(f"Invalid byte range: {token!r}")

    if not first:
        if not last:
            raise ValueError(f"Invalid byte range: {token!r}")
        suffix_length = int(last)
        if suffix_length == 0 or size == 0:
            return None
        return ByteRange(max(0, size - suffix_length), size - 1)

    start = int(first)
    if last and int(last) < start:
        raise ValueError(f"Invalid byte range: {token!r}")
    if start >= size:
        return None
    end = size - 1 if not last else min(int(last), size - 1)
    return ByteRange(start, end)


def _coalesce(ranges: list[ByteRange]) -> list[ByteRange]:
    """Merge overlapping or adjacent ranges, ordered by start offset."""
    merged: list[ByteRange] = []
    for current in sorted(ranges, key=lambda item: item.start):
        if merged and current.start <= merged[-1].end + 1:
            previous = merged.pop()
            current = ByteRange(previous.start, max(previous.end, current.end))
        merged.append(current)
    return merged


def parse_range_header(value: str, size: int) -> Optional[list[ByteRange]]:
    """Return the satisfiable ranges requested by ``value``.

    ``None`` means the header must be ignored (unknown unit or bad syntax)
    and the full representation served. RangeNotSatisfiable is raised when
    the header is valid but none of its ranges overlap the resource.
    """
    unit, separator, range_set = value.partition("=")
    if not separator or unit.strip().lower() != RANGE_UNIT:
        return None

    tokens = [token.strip() for token in range_set.split(",") if token.strip()]
    if not tokens:
        return None

    ranges = []
    try:
        for token in tokens:
            byte_range = _parse_range_token(token, size)
            if byte_range is not None:
                ranges.append(byte_range)
    except ValueError:
        return None

    if not ranges:
        raise RangeNotSatisfiable(size)
    return _coalesce(ranges)

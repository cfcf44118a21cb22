"""
Query Info Parsing

With QUERYINFO enabled the server records compilation and timing details
for a query. QueryInfo parses that text:

    Query:
    count(/None/*)

    Compiling:
    - rewrite fn:count(items) to xs:integer item: ... -> 3

    Optimized Query:
    3

    Parsing: 381.41 ms
    ...
    Hit(s): 1 Item
    Read Locking: d601a46
    Write Locking: (none)
"""

import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

_UNITS = {
    "ms": lambda value: timedelta(milliseconds=value),
    "s": lambda value: timedelta(seconds=value),
    "us": lambda value: timedelta(microseconds=value),
    "μs": lambda value: timedelta(microseconds=value),
}


def _line_after(raw: str, header: str) -> Optional[str]:
    # Headers only count at the start of a line ("Query:" vs "Optimized Query:")
    match = re.search(r"(?m)^" + re.escape(header), raw)
    if match is None:
        return None
    start = match.end()
    stop = raw.find("\n", start)
    return raw[start:] if stop == -1 else raw[start:stop]


def _duration(raw: str, header: str) -> Optional[timedelta]:
    text = _line_after(raw, header)
    if text is None:
        return None
    match = re.match(r"\s*([\d.]+)\s*([^\d\s.]+)", text)
    if not match or match.group(2) not in _UNITS:
        return None
    return _UNITS[match.group(2)](float(match.group(1)))


def _count(raw: str, header: str) -> Optional[int]:
    text = _line_after(raw, header)
    if text is None:
        return None
    match = re.match(r"\s*(\d+)", text)
    return int(match.group(1)) if match else None


def _locking(raw: str, header: str) -> Optional[str]:
    text = _line_after(raw, header)
    if text is None or text == "(none)":
        return None
    return text


@dataclass
class QueryInfo:
    """Structured view of the server's query info text"""

    raw: str
    query: Optional[str] = None
    optimized_query: Optional[str] = None
    compiling: List[str] = field(default_factory=list)
    parsing_time: Optional[timedelta] = None
    compiling_time: Optional[timedelta] = None
    evaluating_time: Optional[timedelta] = None
    printing_time: Optional[timedelta] = None
    total_time: Optional[timedelta] = None
    hits: Optional[int] = None
    updated: Optional[int] = None
    printed: Optional[int] = None
    read_locking: Optional[str] = None
    write_locking: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> "QueryInfo":
        """
        Parse query info text. Sections missing from ``raw`` stay None
        (or empty for ``compiling``), so partial info never raises.
        """
        compiling: List[str] = []
        match = re.search(r"(?m)^Compiling:\n- ", raw)
        if match is not None:
            start = match.end()
            stop = raw.find("\n\n", start)
            block = raw[start:] if stop == -1 else raw[start:stop]
            compiling = block.rstrip("\n").split("\n- ")

        return cls(
            raw=raw,
            query=_line_after(raw, "Query:\n"),
            optimized_query=_line_after(raw, "Optimized Query:\n"),
            compiling=compiling,
            parsing_time=_duration(raw, "Parsing: "),
            compiling_time=_duration(raw, "Compiling: "),
            evaluating_time=_duration(raw, "Evaluating: "),
            printing_time=_duration(raw, "Printing: "),
            total_time=_duration(raw, "Total Time: "),
            hits=_count(raw, "Hit(s): "),
            updated=_count(raw, "Updated: "),
            printed=_count(raw, "Printed: "),
            read_locking=_locking(raw, "Read Locking: "),
            write_locking=_locking(raw, "Write Locking: "),
        )

    def __str__(self) -> str:
        return self.raw

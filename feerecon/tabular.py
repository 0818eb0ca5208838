"""Tabular parser: raw delimited text -> ordered rows of string cells.

Handles quoted fields, an optional header row (auto-detected unless told
otherwise), free-text preamble lines that some banks put above the header,
and ragged trailing delimiters.  Rows whose cell count is inconsistent with
the header beyond ``trailing_cell_tolerance`` are skipped and recorded as
:class:`~feerecon.errors.MalformedInputError` entries; they never fail the
whole file.

Pure function, no side effects.
"""

from __future__ import annotations

import csv
import io
from collections import Counter
from dataclasses import dataclass, field

from .errors import MalformedInputError
from .values import is_blank, parse_amount, parse_date

SNIFF_DELIMITERS = ",;\t|"
SNIFF_SAMPLE_LINES = 20
# How far into the file a header row is searched for.
HEADER_SEARCH_ROWS = 10


@dataclass(frozen=True)
class TableRow:
    """One data row. ``line_number`` is 1-based in the source text."""

    line_number: int
    cells: tuple[str, ...]

    def cell(self, index: int) -> str:
        if 0 <= index < len(self.cells):
            return self.cells[index]
        return ""


@dataclass(frozen=True)
class ParsedTable:
    delimiter: str
    header: tuple[str, ...] | None
    rows: tuple[TableRow, ...]
    skipped: tuple[MalformedInputError, ...] = ()
    preamble: tuple[TableRow, ...] = field(default=(), repr=False)

    @property
    def width(self) -> int:
        if self.header is not None:
            return len(self.header)
        return max((len(r.cells) for r in self.rows), default=0)

    @property
    def total_rows(self) -> int:
        """Non-blank rows seen below the header, including skipped ones."""
        return len(self.rows) + len(self.skipped)

    def column_names(self) -> list[str]:
        """Header names, or ``column_1..N`` when the file has no header."""
        if self.header is not None:
            return [h or f"column_{i + 1}" for i, h in enumerate(self.header)]
        return [f"column_{i + 1}" for i in range(self.width)]


def sniff_delimiter(text: str) -> str:
    """Guess the delimiter from the first lines of *text* (default ``,``)."""
    sample = "\n".join(text.splitlines()[:SNIFF_SAMPLE_LINES])
    try:
        return csv.Sniffer().sniff(sample, delimiters=SNIFF_DELIMITERS).delimiter
    except csv.Error:
        pass
    counts = {d: sample.count(d) for d in SNIFF_DELIMITERS}
    best = max(counts, key=lambda d: counts[d])
    return best if counts[best] else ","


def _effective_width(cells: list[str]) -> int:
    """Cell count with trailing blank cells removed."""
    n = len(cells)
    while n and is_blank(cells[n - 1]):
        n -= 1
    return n


def looks_like_header(cells: list[str] | tuple[str, ...]) -> bool:
    """True if no cell is a number or date and at least one has letters."""
    filled = [c for c in cells if not is_blank(c)]
    if not filled:
        return False
    for c in filled:
        if parse_amount(c) is not None or parse_date(c) is not None:
            return False
    return any(any(ch.isalpha() for ch in c) for c in filled)


def _read_records(text: str, delimiter: str) -> list[tuple[int, list[str]]]:
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    records: list[tuple[int, list[str]]] = []
    start_line = 1
    try:
        for cells in reader:
            records.append((start_line, [c.strip() for c in cells]))
            start_line = reader.line_num + 1
    except csv.Error as e:
        raise MalformedInputError(f"unreadable delimited text: {e}", reader.line_num) from e
    return records


def parse_delimited(
    text: str,
    *,
    delimiter: str | None = None,
    has_header: bool | None = None,
    trailing_cell_tolerance: int = 1,
) -> ParsedTable:
    """Parse delimited *text* into a :class:`ParsedTable`.

    Args:
        text: Raw file contents.
        delimiter: Single-character delimiter, or None to sniff.
        has_header: True/False to force, None to auto-detect.
        trailing_cell_tolerance: How many cells a row may be short of (or
            carry as blank extras beyond) the header width and still be
            accepted.  Short rows are padded with empty cells.

    Raises:
        MalformedInputError: if the text is empty or has no data rows.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    if not text.strip():
        raise MalformedInputError("file is empty")

    if delimiter is None:
        delimiter = sniff_delimiter(text)

    records = [
        (line, cells) for line, cells in _read_records(text, delimiter)
        if _effective_width(cells)
    ]
    if not records:
        raise MalformedInputError("file contains no rows")

    modal_width = Counter(_effective_width(c) for _, c in records).most_common(1)[0][0]

    header_idx: int | None = None
    if has_header is True:
        header_idx = 0
    elif has_header is None:
        for i, (_, cells) in enumerate(records[:HEADER_SEARCH_ROWS]):
            if (
                _effective_width(cells) >= modal_width - trailing_cell_tolerance
                and looks_like_header(cells)
            ):
                header_idx = i
                break

    header: tuple[str, ...] | None = None
    preamble: list[TableRow] = []
    data = records
    if header_idx is not None:
        _, header_cells = records[header_idx]
        named = header_cells[: _effective_width(header_cells)]
        # Unnamed columns to the right of the header still carry data.
        header = tuple(named + [""] * max(0, modal_width - len(named)))
        preamble = [TableRow(line, tuple(c)) for line, c in records[:header_idx]]
        data = records[header_idx + 1:]

    if header is not None:
        width = len(header)
    else:
        # An empty trailing cell still holds a column, e.g. the credit side
        # of a debit row.
        raw_width = Counter(len(c) for _, c in data).most_common(1)[0][0]
        width = max(modal_width, raw_width)

    rows: list[TableRow] = []
    skipped: list[MalformedInputError] = []
    for line, cells in data:
        n = len(cells)
        if n > width:
            extras = cells[width:]
            if any(not is_blank(c) for c in extras):
                skipped.append(MalformedInputError(
                    f"row has {_effective_width(cells)} cells, expected {width}", line
                ))
                continue
            if n - width > trailing_cell_tolerance:
                skipped.append(MalformedInputError(
                    f"row has {n - width} trailing empty cells, "
                    f"tolerance is {trailing_cell_tolerance}", line
                ))
                continue
            cells = cells[:width]
        elif n < width:
            if width - n > trailing_cell_tolerance:
                skipped.append(MalformedInputError(
                    f"row has {n} cells, expected {width}", line
                ))
                continue
            cells = cells + [""] * (width - n)
        rows.append(TableRow(line, tuple(cells)))

    if not rows:
        raise MalformedInputError("file contains no well-formed data rows")

    return ParsedTable(
        delimiter=delimiter,
        header=header,
        rows=tuple(rows),
        skipped=tuple(skipped),
        preamble=tuple(preamble),
    )

"""Delimited-text reading for the flat-file importers.

Files come from spreadsheet exports on Brazilian Windows machines as often
as from UTF-8 tools, so decoding falls back to cp1252 and the delimiter is
sniffed from the header line.
"""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass, field

from sinapicalc.errors import ParseStructureError
from sinapicalc.parsing.numbers import normalize_label

_SEPARATOR_RE = re.compile(r"[\s\-]+")

LEGACY_ENCODING = "cp1252"


@dataclass
class FlatRow:
    """One data row with its 1-based data index and physical line number."""

    index: int
    line: int
    cells: list[str]

    def get(self, column: int | None) -> str:
        if column is None or column >= len(self.cells):
            return ""
        return self.cells[column].strip()

    @property
    def label(self) -> str:
        return f"Row {self.index} (line {self.line})"


@dataclass
class FlatTable:
    header: list[str]
    rows: list[FlatRow] = field(default_factory=list)


def decode_payload(payload: bytes) -> str:
    """Decode as UTF-8; fall back to cp1252 when replacement chars show up."""
    text = payload.decode("utf-8", errors="replace")
    if "\ufffd" in text:
        text = payload.decode(LEGACY_ENCODING, errors="replace")
    return text.lstrip("\ufeff")


def sniff_delimiter(text: str) -> str:
    """Semicolon if the header line has one (Brazilian exports), else comma."""
    first_line = text.split("\n", 1)[0]
    return ";" if ";" in first_line else ","


def header_key(value: str) -> str:
    """Normalized header cell: lowercase, no accents, separators as ``_``."""
    return _SEPARATOR_RE.sub("_", normalize_label(value)).strip("_")


def read_table(payload: bytes) -> FlatTable:
    """Decode and split a delimited file into a header and data rows.

    Blank lines are dropped and do not count as rows.

    Raises:
        ParseStructureError: If the file has no header or no data rows
    """
    text = decode_payload(payload)
    reader = csv.reader(io.StringIO(text), delimiter=sniff_delimiter(text))

    header: list[str] | None = None
    rows: list[FlatRow] = []
    for cells in reader:
        if not any(cell.strip() for cell in cells):
            continue
        if header is None:
            header = [cell.strip() for cell in cells]
            continue
        rows.append(FlatRow(index=len(rows) + 1, line=reader.line_num, cells=cells))

    if header is None or not rows:
        raise ParseStructureError("File is empty or has no data rows")

    return FlatTable(header=header, rows=rows)


def find_column(header: list[str], aliases: tuple[str, ...]) -> int | None:
    """Index of the first header cell matching any alias (aliases tried in order)."""
    keys = [header_key(cell) for cell in header]
    for alias in aliases:
        wanted = header_key(alias)
        if wanted in keys:
            return keys.index(wanted)
    return None


def resolve_columns(
    header: list[str],
    aliases: dict[str, tuple[str, ...]],
    required: tuple[str, ...],
) -> dict[str, int | None]:
    """Map logical column names to header indexes.

    Raises:
        ParseStructureError: If a required column is absent
    """
    columns = {name: find_column(header, names) for name, names in aliases.items()}
    missing = [name for name in required if columns.get(name) is None]
    if missing:
        raise ParseStructureError(
            f"Required columns not found: {', '.join(missing)} "
            f"(header: {', '.join(header)})"
        )
    return columns

"""Localized number parsing, code normalisation and category classification.

SINAPI sheets and Brazilian CSV exports write numbers the pt-BR way
("1.234,56"), but cells produced by spreadsheet tools often arrive already
typed as int/float, and hand-made files sometimes use a plain dot decimal.
"""

from __future__ import annotations

import re
import unicodedata
from decimal import Decimal, InvalidOperation
from typing import Any

from sinapicalc.pipeline.types import ResourceCategory

_NUMBER_JUNK_RE = re.compile(r"[^0-9.,\-]")
_HYPERLINK_CODE_RE = re.compile(r"(\d+)\"?\)?\s*$")
_FLOAT_CODE_RE = re.compile(r"^(\d+)\.0+$")

# Ordered; first match wins
_CATEGORY_MARKERS: list[tuple[tuple[str, ...], ResourceCategory]] = [
    (("MAO", "OBRA"), ResourceCategory.LABOR),
    (("EQUIP",), ResourceCategory.EQUIPMENT),
    (("SERVI",), ResourceCategory.SERVICE),
]


def strip_accents(text: str) -> str:
    return unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode()


def normalize_label(value: Any) -> str:
    """Lowercase, accent-free, trimmed text used for header matching."""
    if value is None:
        return ""
    return strip_accents(str(value)).lower().strip()


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_decimal(value: Any) -> Decimal:
    """Parse a pt-BR or plain number into a Decimal.

    Rules:
    - None, "" and "-" are zero
    - "1.234,56" -> 1234.56 (dot thousands, comma decimal)
    - "12,5" -> 12.5
    - "12.5" -> 12.5 (a single dot with no comma is a decimal point)
    - "1.234.567" -> 1234567 (several dots are thousands separators)

    A strict pt-BR reading would treat "1.234" as 1234. Here a lone dot is
    a decimal point instead, because hand-made CSV files write "12.5"; the
    workbook cells this matters for arrive already typed as numbers.

    Raises:
        ValueError: If the text is not a number
    """
    if value is None:
        return Decimal("0")
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # repr keeps the shortest round-tripping form (0.1 stays 0.1)
        return Decimal(repr(value))

    text = str(value).strip()
    if text in ("", "-"):
        return Decimal("0")

    cleaned = _NUMBER_JUNK_RE.sub("", text)
    if not cleaned or cleaned in ("-", ".", ","):
        raise ValueError(f"Not a number: {value!r}")

    has_comma = "," in cleaned
    dots = cleaned.count(".")
    if has_comma:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    elif dots > 1:
        cleaned = cleaned.replace(".", "")

    try:
        return Decimal(cleaned)
    except InvalidOperation as e:
        raise ValueError(f"Not a number: {value!r}") from e


def to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Lenient variant of :func:`parse_decimal`; unparseable input gives ``default``."""
    try:
        return parse_decimal(value)
    except ValueError:
        return default


def normalize_code(value: Any) -> str:
    """Canonical text form of a SINAPI code.

    Numeric cells come back as floats ("88316.0") and some sheets wrap the
    code in a HYPERLINK formula; both collapse to the bare digits.
    """
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))

    text = str(value).strip()
    if text.startswith("="):
        match = _HYPERLINK_CODE_RE.search(text)
        return match.group(1) if match else ""

    match = _FLOAT_CODE_RE.match(text)
    if match:
        return match.group(1)
    return text


def classify_category(text: Any) -> ResourceCategory:
    """Infer a resource category from a free-text classification.

    This is a substring heuristic, not an exact taxonomy: the text is
    uppercased and stripped of accents, then matched in order against
    labor (MAO / OBRA), equipment (EQUIP) and service (SERVI). Anything
    else, including empty text, is material.
    """
    normalized = strip_accents(cell_text(text)).upper()
    for markers, category in _CATEGORY_MARKERS:
        if any(marker in normalized for marker in markers):
            return category
    return ResourceCategory.MATERIAL

"""Readers for the three sheet shapes of the SINAPI reference workbook.

Each reader returns a :class:`ParsedSheet` holding normalized row records
in sheet order. Rows without the fields that identify them (blank lines,
section titles) are skipped silently; rows that identify themselves but
carry bad values are skipped and reported in ``ParsedSheet.errors``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any

from openpyxl import load_workbook
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from sinapicalc.errors import ParseStructureError
from sinapicalc.parsing.layouts import (
    COMPOSITION_LAYOUT,
    EXEMPT_PRICE_LAYOUT,
    RESOURCE_PRICE_LAYOUT,
    SheetLayout,
)
from sinapicalc.parsing.numbers import (
    cell_text,
    classify_category,
    normalize_code,
    normalize_label,
    to_decimal,
)
from sinapicalc.pipeline.types import (
    ChildRef,
    CompositionEntry,
    CompositionLine,
    ParsedSheet,
    PriceRow,
    RegionPrice,
    ResourceRow,
)

logger = logging.getLogger(__name__)


@contextmanager
def open_workbook(path: Path | str) -> Iterator[Workbook]:
    """Open a workbook for streaming reads and always release the file handle."""
    try:
        workbook = load_workbook(filename=str(path), read_only=True, data_only=True)
    except Exception as e:
        raise ParseStructureError(f"Cannot open workbook {Path(path).name}: {e}") from e
    try:
        yield workbook
    finally:
        workbook.close()


def get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    """Look a sheet up by name, tolerating case and accent differences.

    Raises:
        ParseStructureError: If no sheet matches
    """
    if sheet_name in workbook.sheetnames:
        return workbook[sheet_name]

    wanted = normalize_label(sheet_name)
    for name in workbook.sheetnames:
        if normalize_label(name) == wanted:
            return workbook[name]

    raise ParseStructureError(
        f"Sheet {sheet_name} not found (available: {', '.join(workbook.sheetnames)})"
    )


def _value(row: tuple, column: int) -> Any:
    index = column - 1
    return row[index] if index < len(row) else None


def _iter_rows(ws: Worksheet, layout: SheetLayout, min_row: int = 1):
    for row_number, row in enumerate(
        ws.iter_rows(min_row=min_row, max_col=layout.max_column, values_only=True),
        start=min_row,
    ):
        yield row_number, row


def find_header_row(ws: Worksheet, layout: SheetLayout) -> tuple[int, bool]:
    """Locate the header row of a sheet.

    Every row of the identifying column is scanned and the LAST row whose
    text contains all header markers wins. When no row matches, the
    layout's fallback row is used.

    Returns:
        Tuple of (header_row, detected)
    """
    markers = [normalize_label(marker) for marker in layout.header_markers]
    header_row = 0

    for row_number, row in _iter_rows(ws, layout):
        text = normalize_label(_value(row, layout.header_column))
        if text and all(marker in text for marker in markers):
            header_row = row_number

    if header_row:
        return header_row, True

    logger.warning(
        "No header row found in sheet %s, using fallback row %d",
        layout.sheet_name,
        layout.fallback_header_row,
    )
    return layout.fallback_header_row, False


def _read_prices(row: tuple, layout: SheetLayout) -> list[RegionPrice]:
    """Per-region prices of one row; zero or "-" means no price for that region."""
    prices = []
    for region, column in layout.price_columns():
        amount = to_decimal(_value(row, column))
        if amount > 0:
            prices.append(RegionPrice(region=region, amount=amount))
    return prices


def read_resource_sheet(
    workbook: Workbook, layout: SheetLayout = RESOURCE_PRICE_LAYOUT
) -> ParsedSheet:
    """Read resources and their per-region prices (one regime)."""
    ws = get_sheet(workbook, layout.sheet_name)
    header_row, detected = find_header_row(ws, layout)
    parsed = ParsedSheet(
        sheet_name=layout.sheet_name, header_row=header_row, header_detected=detected
    )

    for _, row in _iter_rows(ws, layout, min_row=header_row + 1):
        code = normalize_code(_value(row, layout.column("code")))
        description = cell_text(_value(row, layout.column("description")))
        if not code or not description:
            continue

        parsed.rows.append(
            ResourceRow(
                code=code,
                description=description,
                unit=cell_text(_value(row, layout.column("unit"))),
                category=classify_category(_value(row, layout.column("classification"))),
                prices=_read_prices(row, layout),
            )
        )

    logger.info(
        "Read %d resources from sheet %s (header row %d)",
        len(parsed.rows), layout.sheet_name, header_row,
    )
    return parsed


def read_price_sheet(
    workbook: Workbook, layout: SheetLayout = EXEMPT_PRICE_LAYOUT
) -> ParsedSheet:
    """Read a price-only sheet keyed by resource code."""
    ws = get_sheet(workbook, layout.sheet_name)
    header_row, detected = find_header_row(ws, layout)
    parsed = ParsedSheet(
        sheet_name=layout.sheet_name, header_row=header_row, header_detected=detected
    )

    for _, row in _iter_rows(ws, layout, min_row=header_row + 1):
        code = normalize_code(_value(row, layout.column("code")))
        if not code:
            continue
        prices = _read_prices(row, layout)
        if prices:
            parsed.rows.append(PriceRow(code=code, prices=prices))

    logger.info(
        "Read prices for %d resources from sheet %s (header row %d)",
        len(parsed.rows), layout.sheet_name, header_row,
    )
    return parsed


def read_composition_sheet(
    workbook: Workbook, layout: SheetLayout = COMPOSITION_LAYOUT
) -> ParsedSheet:
    """Read the composition breakdown as a flat list of :class:`CompositionLine`."""
    ws = get_sheet(workbook, layout.sheet_name)
    header_row, detected = find_header_row(ws, layout)
    parsed = ParsedSheet(
        sheet_name=layout.sheet_name, header_row=header_row, header_detected=detected
    )

    for row_number, row in _iter_rows(ws, layout, min_row=header_row + 1):
        composition_code = normalize_code(_value(row, layout.column("composition_code")))
        if not composition_code:
            continue

        item_type = cell_text(_value(row, layout.column("item_type"))).upper()
        item_code = normalize_code(_value(row, layout.column("item_code")))

        # Half-filled lines are neither a header nor a child
        if bool(item_type) != bool(item_code):
            continue

        coefficient = Decimal("0")
        if item_code:
            coefficient = to_decimal(_value(row, layout.column("coefficient")))
            if coefficient <= 0:
                parsed.errors.append(
                    f"{layout.sheet_name} row {row_number}: invalid coefficient "
                    f"for {item_code} in composition {composition_code}"
                )
                continue

        parsed.rows.append(
            CompositionLine(
                composition_code=composition_code,
                item_type=item_type,
                item_code=item_code,
                description=cell_text(_value(row, layout.column("description"))),
                unit=cell_text(_value(row, layout.column("unit"))),
                coefficient=coefficient,
                row_number=row_number,
            )
        )

    logger.info(
        "Read %d breakdown lines from sheet %s (header row %d)",
        len(parsed.rows), layout.sheet_name, header_row,
    )
    return parsed


def group_composition_lines(lines: list[CompositionLine]) -> list[CompositionEntry]:
    """Group breakdown lines into compositions, in first-seen order.

    A composition that only shows up through child lines is still created
    with an empty description/unit; a header line seen later fills them in.
    """
    entries: dict[str, CompositionEntry] = {}

    for line in lines:
        entry = entries.get(line.composition_code)
        if entry is None:
            entry = CompositionEntry(code=line.composition_code)
            entries[line.composition_code] = entry

        if line.is_header:
            if not entry.description:
                entry.description = line.description
            if not entry.unit:
                entry.unit = line.unit
            continue

        child = ChildRef(code=line.item_code, coefficient=line.coefficient)
        if line.is_sub_composition:
            entry.compositions.append(child)
        else:
            entry.resources.append(child)

    return list(entries.values())

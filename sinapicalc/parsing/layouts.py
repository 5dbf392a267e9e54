"""Declarative column tables for the SINAPI reference workbook.

The workbook is not self-describing: columns are addressed by position and
the header row moves between publications. Each sheet kind is described
once here so the readers in :mod:`sinapicalc.parsing.workbook` hold no
magic numbers. All indexes are 1-based, as openpyxl uses them.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Column order of the 27 per-region price cells
REGIONS: tuple[str, ...] = (
    "AC", "AL", "AM", "AP", "BA", "CE", "DF", "ES", "GO",
    "MA", "MG", "MS", "MT", "PA", "PB", "PE", "PI", "PR",
    "RJ", "RN", "RO", "RR", "RS", "SC", "SE", "SP", "TO",
)

# Row used when no header row can be detected (empirical)
FALLBACK_HEADER_ROW = 10


@dataclass(frozen=True)
class SheetLayout:
    """Positional description of one sheet kind."""

    sheet_name: str
    header_column: int
    header_markers: tuple[str, ...]
    columns: dict[str, int] = field(default_factory=dict)
    price_start_column: int | None = None
    regions: tuple[str, ...] = REGIONS
    fallback_header_row: int = FALLBACK_HEADER_ROW

    def column(self, name: str) -> int:
        return self.columns[name]

    def price_columns(self) -> list[tuple[str, int]]:
        """(region, column) pairs for the price array, empty if the sheet has none."""
        if self.price_start_column is None:
            return []
        return [
            (region, self.price_start_column + offset)
            for offset, region in enumerate(self.regions)
        ]

    @property
    def max_column(self) -> int:
        last = max(self.columns.values(), default=self.header_column)
        if self.price_start_column is not None:
            last = max(last, self.price_start_column + len(self.regions) - 1)
        return last


# Resources with standard-regime prices
RESOURCE_PRICE_LAYOUT = SheetLayout(
    sheet_name="ISD",
    header_column=2,
    header_markers=("Código", "Insumo"),
    columns={"classification": 1, "code": 2, "description": 3, "unit": 4},
    price_start_column=6,
)

# Tax-exempt prices, keyed by resource code only
EXEMPT_PRICE_LAYOUT = SheetLayout(
    sheet_name="ICD",
    header_column=2,
    header_markers=("Código", "Insumo"),
    columns={"code": 2},
    price_start_column=6,
)

# Composition breakdown (one header line + child lines per composition)
COMPOSITION_LAYOUT = SheetLayout(
    sheet_name="Analítico",
    header_column=2,
    header_markers=("Código", "Composi"),
    columns={
        "composition_code": 2,
        "item_type": 3,
        "item_code": 4,
        "description": 5,
        "unit": 6,
        "coefficient": 7,
    },
)

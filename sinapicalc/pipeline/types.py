"""Type definitions for parsing and ingestion operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

# Item-type values that mark a breakdown line as a sub-composition reference
SUB_COMPOSITION_TYPES = frozenset({"COMPOSICAO", "COMPOSIÇÃO"})


class ResourceCategory(str, Enum):
    """Kind of priced input, inferred heuristically from free text."""

    MATERIAL = "material"
    LABOR = "labor"
    EQUIPMENT = "equipment"
    SERVICE = "service"


class ImportStatus(str, Enum):
    """Status of an import operation."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"


class ImportKind(str, Enum):
    """Kind recorded on each audit row."""

    AUTOMATIC_COLLECTION = "automatic_collection"
    RESOURCES = "resources"
    COMPOSITIONS = "compositions"
    PRICES = "prices"


@dataclass
class RegionPrice:
    """One published price cell: region + amount."""

    region: str
    amount: Decimal


@dataclass
class ResourceRow:
    """Normalized resource record with its per-region prices for one regime.

    This is the canonical format all resource readers must produce.
    """

    code: str
    description: str
    unit: str
    category: ResourceCategory = ResourceCategory.MATERIAL
    prices: list[RegionPrice] = field(default_factory=list)


@dataclass
class PriceRow:
    """Per-region prices keyed by resource code only (price-only sheets)."""

    code: str
    prices: list[RegionPrice] = field(default_factory=list)


@dataclass
class ChildRef:
    """Reference from a composition to a resource or sub-composition."""

    code: str
    coefficient: Decimal


@dataclass
class CompositionLine:
    """One row of a breakdown sheet.

    ``item_type`` and ``item_code`` are empty on the composition's own header line.
    """

    composition_code: str
    item_type: str
    item_code: str
    description: str
    unit: str
    coefficient: Decimal
    row_number: int = 0

    @property
    def is_header(self) -> bool:
        return not self.item_type and not self.item_code

    @property
    def is_sub_composition(self) -> bool:
        return self.item_type in SUB_COMPOSITION_TYPES


@dataclass
class CompositionEntry:
    """A composition header plus its first-level children."""

    code: str
    description: str = ""
    unit: str = ""
    resources: list[ChildRef] = field(default_factory=list)
    compositions: list[ChildRef] = field(default_factory=list)

    @property
    def child_count(self) -> int:
        return len(self.resources) + len(self.compositions)


@dataclass
class ParsedSheet:
    """Rows read from one sheet plus where its header was found."""

    sheet_name: str
    header_row: int
    rows: list = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    header_detected: bool = True


@dataclass
class SheetStats:
    """Attempted vs. written counts for one ingestion step."""

    resources_total: int = 0
    resources_imported: int = 0
    prices_total: int = 0
    prices_imported: int = 0


@dataclass
class CompositionStats:
    """Counts for the two-phase composition build."""

    compositions_total: int = 0
    compositions_imported: int = 0
    items_total: int = 0
    items_imported: int = 0
    missing_children: int = 0


@dataclass
class ImportResult:
    """Result of one flat-file import."""

    total_records: int = 0
    imported_count: int = 0
    errors: list[str] = field(default_factory=list)
    status: ImportStatus = ImportStatus.SUCCESS

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def success(self) -> bool:
        """Check if import was successful."""
        return self.status in (ImportStatus.SUCCESS, ImportStatus.PARTIAL_SUCCESS)

    def finalize(self) -> ImportResult:
        if self.errors and self.imported_count:
            self.status = ImportStatus.PARTIAL_SUCCESS
        elif self.errors:
            self.status = ImportStatus.FAILED
        return self

    def to_dict(self, error_cap: int = 20) -> dict:
        return {
            "totalRecords": self.total_records,
            "importedCount": self.imported_count,
            "errorCount": self.error_count,
            "errors": self.errors[:error_cap],
        }

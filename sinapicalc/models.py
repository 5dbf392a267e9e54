"""sinapicalc Pydantic models shared by the engine, the web layer and the CLI.

Money and coefficients are Decimal end to end; only ``unit_cost`` and
``total_cost`` are rounded (2 places, half-up).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SkipReason(str, Enum):
    """Why a sub-composition reference was not expanded."""

    CYCLE = "cycle"  # already on the current path
    DUPLICATE = "duplicate"  # already expanded in another branch
    DEPTH_LIMIT = "depth_limit"
    MISSING = "missing"  # link points at a row that no longer exists


class PricingContext(BaseModel):
    """Region, month, regime and quantity a composition is priced for."""

    region: str = Field(..., description="Two-letter region (UF)")
    reference_month: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    tax_exempt: bool = False

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 2 or not v.isalpha():
            raise ValueError("region must be a two-letter code")
        return v


class CompositionRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    description: str
    unit: str


class CostLine(BaseModel):
    """One resource consumed by a composition."""

    kind: Literal["resource"] = "resource"
    resource_id: UUID
    code: str
    description: str
    unit: str
    category: str
    coefficient: Decimal
    unit_price: Decimal
    line_cost: Decimal  # unit_price x coefficient, unrounded
    has_price: bool


class CompositionNode(BaseModel):
    """A composition in a resolved tree.

    Nodes that were not expanded carry ``expanded=False`` and a
    ``skip_reason``; they contribute nothing to their parent's cost.
    """

    kind: Literal["composition"] = "composition"
    id: UUID
    code: str
    description: str = ""
    unit: str = ""
    coefficient: Decimal = Decimal("1")
    depth: int = 0
    expanded: bool = True
    skip_reason: SkipReason | None = None
    unit_cost: Decimal | None = None  # rounded; None when not expanded
    resources: list[CostLine] = Field(default_factory=list)
    children: list[CompositionNode] = Field(default_factory=list)


class SubCompositionLine(BaseModel):
    """A direct sub-composition of the resolved composition."""

    composition_id: UUID
    code: str
    description: str
    unit: str
    coefficient: Decimal
    unit_cost: Decimal  # child's unrounded unit cost
    line_cost: Decimal  # unit_cost x coefficient
    expanded: bool
    skip_reason: SkipReason | None = None


class CostResolution(BaseModel):
    """Resolved cost of one composition in one pricing context."""

    composition: CompositionRef
    context: PricingContext
    lines: list[CostLine] = Field(default_factory=list)
    sub_compositions: list[SubCompositionLine] = Field(default_factory=list)
    unit_cost: Decimal
    total_cost: Decimal
    missing_price_count: int = 0
    skipped_count: int = 0


class Counts(BaseModel):
    total: int = 0
    imported: int = 0


class CollectSummary(BaseModel):
    """Outcome of one collection run (remote or uploaded archive)."""

    reference_month: str
    file_name: str = ""
    resources: Counts = Field(default_factory=Counts)
    prices: Counts = Field(default_factory=Counts)
    compositions: Counts = Field(default_factory=Counts)
    breakdown_items: Counts = Field(default_factory=Counts)
    error_count: int = 0
    errors: list[str] = Field(default_factory=list)


class ImportLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: str
    file_name: str
    total_records: int
    imported_count: int
    error_count: int
    errors: list[str] | None = None
    imported_by: str
    created_at: datetime


class CatalogueStats(BaseModel):
    resources: int
    compositions: int
    prices: int
    months: list[str]


class ResourceLink(BaseModel):
    resource_id: UUID
    code: str
    description: str
    unit: str
    category: str
    coefficient: Decimal


class ChildLink(BaseModel):
    composition_id: UUID
    code: str
    description: str
    unit: str
    coefficient: Decimal


class CompositionDetail(BaseModel):
    """A composition with its direct (one-level) links."""

    composition: CompositionRef
    resources: list[ResourceLink] = Field(default_factory=list)
    children: list[ChildLink] = Field(default_factory=list)


class ResourceSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    description: str
    unit: str
    category: str


class PriceEntry(BaseModel):
    """One published price row; a None regime means no price for it."""

    model_config = ConfigDict(from_attributes=True)

    region: str
    reference_month: str
    price_standard: Decimal | None = None
    price_exempt: Decimal | None = None


class ResourceDetail(BaseModel):
    """A resource with its most recent prices (newest month first)."""

    resource: ResourceSummary
    prices: list[PriceEntry] = Field(default_factory=list)


class CompositionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    description: str
    unit: str


class ResourcePage(BaseModel):
    items: list[ResourceSummary] = Field(default_factory=list)
    page: int
    per_page: int
    total: int
    total_pages: int


class CompositionPage(BaseModel):
    items: list[CompositionSummary] = Field(default_factory=list)
    page: int
    per_page: int
    total: int
    total_pages: int

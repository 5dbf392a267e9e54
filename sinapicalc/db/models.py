"""SQLAlchemy async database models for the SINAPI reference graph.

Maps to PostgreSQL (production) and SQLite (development/tests).

Graph shape:
- Resources carry one price row per (region, reference month); the two tax
  regimes are independent nullable columns on that row.
- Compositions never store a price; their cost is derived from the two link
  tables (composition -> resource, composition -> composition).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ResourceModel(Base):
    """Priced input (insumo): material, labor, equipment or service."""

    __tablename__ = "sinapi_resources"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Natural key used by every upsert
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(16), nullable=False, default="material")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    prices: Mapped[list[PriceModel]] = relationship(back_populates="resource")

    __table_args__ = (
        CheckConstraint(
            "category IN ('material', 'labor', 'equipment', 'service')",
            name="check_resource_category_valid",
        ),
        Index("idx_resources_category", "category"),
    )


class PriceModel(Base):
    """Price of one resource in one region for one reference month.

    Exactly one row per (resource, region, month). NULL in a regime column
    means no price was published for that regime.
    """

    __tablename__ = "sinapi_prices"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    resource_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sinapi_resources.id", ondelete="CASCADE"),
        nullable=False,
    )
    region: Mapped[str] = mapped_column(String(2), nullable=False)
    reference_month: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM

    price_standard: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    price_exempt: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    resource: Mapped[ResourceModel] = relationship(back_populates="prices")

    __table_args__ = (
        UniqueConstraint(
            "resource_id", "region", "reference_month", name="uq_price_resource_region_month"
        ),
        CheckConstraint("price_standard IS NULL OR price_standard >= 0", name="check_price_standard"),
        CheckConstraint("price_exempt IS NULL OR price_exempt >= 0", name="check_price_exempt"),
        # Resolution lookups filter by region + month
        Index("idx_prices_region_month", "region", "reference_month"),
    )


class CompositionModel(Base):
    """Unit-priced recipe of work (composição)."""

    __tablename__ = "sinapi_compositions"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    unit: Mapped[str] = mapped_column(Text, nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class CompositionResourceModel(Base):
    """Quantity of a resource consumed per unit of the parent composition."""

    __tablename__ = "sinapi_composition_resources"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    composition_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sinapi_compositions.id", ondelete="CASCADE"),
        nullable=False,
    )
    resource_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sinapi_resources.id", ondelete="CASCADE"),
        nullable=False,
    )
    coefficient: Mapped[Decimal] = mapped_column(Numeric(20, 7), nullable=False)

    __table_args__ = (
        CheckConstraint("coefficient > 0", name="check_resource_link_coefficient_positive"),
        Index("idx_comp_resources_composition", "composition_id"),
    )


class CompositionChildModel(Base):
    """Sub-composition consumed per unit of the parent (self-referencing edge)."""

    __tablename__ = "sinapi_composition_children"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    composition_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sinapi_compositions.id", ondelete="CASCADE"),
        nullable=False,
    )
    child_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sinapi_compositions.id", ondelete="CASCADE"),
        nullable=False,
    )
    coefficient: Mapped[Decimal] = mapped_column(Numeric(20, 7), nullable=False)

    __table_args__ = (
        CheckConstraint("coefficient > 0", name="check_child_link_coefficient_positive"),
        Index("idx_comp_children_composition", "composition_id"),
    )


class ImportLogModel(Base):
    """Append-only audit record of one ingestion run.

    Enables:
    - Import history for operators
    - Error tracking (first N error strings kept, full count recorded)
    """

    __tablename__ = "sinapi_import_logs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    kind: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)

    # Statistics
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    imported_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[list | None] = mapped_column(JSON)

    imported_by: Mapped[str] = mapped_column(Text, nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "kind IN ('automatic_collection', 'resources', 'compositions', 'prices')",
            name="check_import_kind_valid",
        ),
        CheckConstraint("total_records >= 0", name="check_import_total_non_negative"),
        CheckConstraint("imported_count >= 0", name="check_import_imported_non_negative"),
        CheckConstraint("error_count >= 0", name="check_import_errors_non_negative"),
    )

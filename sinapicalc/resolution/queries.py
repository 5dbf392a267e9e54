"""Read-only catalogue queries for operators and the API."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sinapicalc.db.models import (
    CompositionChildModel,
    CompositionModel,
    CompositionResourceModel,
    PriceModel,
    ResourceModel,
)
from sinapicalc.errors import CompositionNotFound, ResourceNotFound
from sinapicalc.models import (
    CatalogueStats,
    ChildLink,
    CompositionDetail,
    CompositionPage,
    CompositionRef,
    CompositionSummary,
    PriceEntry,
    ResourceDetail,
    ResourceLink,
    ResourcePage,
    ResourceSummary,
)

# 27 regions x the two most recent months
RECENT_PRICE_ROWS = 54


async def list_reference_months(session: AsyncSession) -> list[str]:
    """Distinct months that have prices, newest first."""
    result = await session.execute(
        select(PriceModel.reference_month)
        .distinct()
        .order_by(PriceModel.reference_month.desc())
    )
    return list(result.scalars().all())


async def catalogue_stats(session: AsyncSession) -> CatalogueStats:
    resources = await session.scalar(select(func.count()).select_from(ResourceModel))
    compositions = await session.scalar(select(func.count()).select_from(CompositionModel))
    prices = await session.scalar(select(func.count()).select_from(PriceModel))
    return CatalogueStats(
        resources=resources or 0,
        compositions=compositions or 0,
        prices=prices or 0,
        months=await list_reference_months(session),
    )


async def get_composition_detail(session: AsyncSession, composition_id: UUID) -> CompositionDetail:
    """Composition header with its direct resource and sub-composition links.

    Raises:
        CompositionNotFound: If the composition does not exist
    """
    composition = await session.get(CompositionModel, composition_id)
    if composition is None:
        raise CompositionNotFound(f"Composition {composition_id} not found")

    resource_rows = await session.execute(
        select(ResourceModel, CompositionResourceModel.coefficient)
        .join(CompositionResourceModel, CompositionResourceModel.resource_id == ResourceModel.id)
        .where(CompositionResourceModel.composition_id == composition_id)
        .order_by(ResourceModel.category, ResourceModel.code)
    )
    child_rows = await session.execute(
        select(CompositionModel, CompositionChildModel.coefficient)
        .join(CompositionChildModel, CompositionChildModel.child_id == CompositionModel.id)
        .where(CompositionChildModel.composition_id == composition_id)
        .order_by(CompositionModel.code)
    )

    return CompositionDetail(
        composition=CompositionRef.model_validate(composition),
        resources=[
            ResourceLink(
                resource_id=resource.id,
                code=resource.code,
                description=resource.description,
                unit=resource.unit,
                category=resource.category,
                coefficient=coefficient,
            )
            for resource, coefficient in resource_rows.all()
        ],
        children=[
            ChildLink(
                composition_id=child.id,
                code=child.code,
                description=child.description,
                unit=child.unit,
                coefficient=coefficient,
            )
            for child, coefficient in child_rows.all()
        ],
    )


def _code_or_description(model, search: str | None):
    if not search:
        return None
    search_term = f"%{search.strip()}%"
    return model.code.ilike(search_term) | model.description.ilike(search_term)


async def search_resources(
    session: AsyncSession,
    search: str | None = None,
    category: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> ResourcePage:
    """Resources whose code or description contains ``search``, by code.

    Args:
        session: Database session
        search: Case-insensitive substring matched against code and description
        category: Exact category filter (material, labor, equipment, service)
        page: 1-based page number
        per_page: Page size
    """
    filters = []
    matches = _code_or_description(ResourceModel, search)
    if matches is not None:
        filters.append(matches)
    if category:
        filters.append(ResourceModel.category == category)

    total = await session.scalar(
        select(func.count()).select_from(ResourceModel).where(*filters)
    ) or 0
    result = await session.execute(
        select(ResourceModel)
        .where(*filters)
        .order_by(ResourceModel.code)
        .limit(per_page)
        .offset((page - 1) * per_page)
    )

    return ResourcePage(
        items=[ResourceSummary.model_validate(row) for row in result.scalars().all()],
        page=page,
        per_page=per_page,
        total=total,
        total_pages=(total + per_page - 1) // per_page,
    )


async def get_resource_detail(
    session: AsyncSession,
    resource_id: UUID,
    price_limit: int = RECENT_PRICE_ROWS,
) -> ResourceDetail:
    """Resource with its latest price rows, newest month first then region.

    Raises:
        ResourceNotFound: If the resource does not exist
    """
    resource = await session.get(ResourceModel, resource_id)
    if resource is None:
        raise ResourceNotFound(f"Resource {resource_id} not found")

    prices = await session.execute(
        select(PriceModel)
        .where(PriceModel.resource_id == resource_id)
        .order_by(PriceModel.reference_month.desc(), PriceModel.region)
        .limit(price_limit)
    )
    return ResourceDetail(
        resource=ResourceSummary.model_validate(resource),
        prices=[PriceEntry.model_validate(price) for price in prices.scalars().all()],
    )


async def search_compositions(
    session: AsyncSession,
    search: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> CompositionPage:
    """Compositions whose code or description contains ``search``, by code."""
    filters = []
    matches = _code_or_description(CompositionModel, search)
    if matches is not None:
        filters.append(matches)

    total = await session.scalar(
        select(func.count()).select_from(CompositionModel).where(*filters)
    ) or 0
    result = await session.execute(
        select(CompositionModel)
        .where(*filters)
        .order_by(CompositionModel.code)
        .limit(per_page)
        .offset((page - 1) * per_page)
    )

    return CompositionPage(
        items=[CompositionSummary.model_validate(row) for row in result.scalars().all()],
        page=page,
        per_page=per_page,
        total=total,
        total_pages=(total + per_page - 1) // per_page,
    )

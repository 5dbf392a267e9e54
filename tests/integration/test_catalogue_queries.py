"""Integration tests for the read-only catalogue search and detail queries."""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from sinapicalc.db.models import CompositionModel, PriceModel, ResourceModel
from sinapicalc.errors import ResourceNotFound
from sinapicalc.resolution.queries import (
    get_resource_detail,
    search_compositions,
    search_resources,
)


async def _seed(session: AsyncSession) -> dict[str, ResourceModel]:
    resources = {
        code: ResourceModel(
            id=uuid4(), code=code, description=description, unit=unit, category=category
        )
        for code, description, unit, category in [
            ("1001", "AREIA MEDIA", "M3", "material"),
            ("1002", "AREIA GROSSA", "M3", "material"),
            ("2001", "PEDREIRO COM ENCARGOS", "H", "labor"),
            ("3001", "BETONEIRA 400 L", "H", "equipment"),
            ("4001", "Cimento Portland", "KG", "material"),
        ]
    }
    session.add_all(resources.values())
    session.add_all(
        [
            CompositionModel(code="87000", description="ARGAMASSA TRACO 1:3", unit="M3"),
            CompositionModel(code="87100", description="ALVENARIA DE VEDACAO", unit="M2"),
            CompositionModel(code="92000", description="Concreto usinado", unit="M3"),
        ]
    )
    await session.commit()
    return resources


class TestSearchResources:
    @pytest.mark.asyncio
    async def test_no_filters_lists_everything_by_code(self, db_session: AsyncSession):
        await _seed(db_session)

        page = await search_resources(db_session)

        assert [item.code for item in page.items] == ["1001", "1002", "2001", "3001", "4001"]
        assert page.total == 5
        assert page.total_pages == 1

    @pytest.mark.asyncio
    async def test_search_matches_description_case_insensitively(self, db_session: AsyncSession):
        await _seed(db_session)

        page = await search_resources(db_session, search="areia")
        assert [item.code for item in page.items] == ["1001", "1002"]

        page = await search_resources(db_session, search="CIMENTO")
        assert [item.code for item in page.items] == ["4001"]

    @pytest.mark.asyncio
    async def test_search_matches_code(self, db_session: AsyncSession):
        await _seed(db_session)

        page = await search_resources(db_session, search="200")

        assert [item.code for item in page.items] == ["2001"]

    @pytest.mark.asyncio
    async def test_category_filter_combines_with_search(self, db_session: AsyncSession):
        await _seed(db_session)

        page = await search_resources(db_session, category="labor")
        assert [item.code for item in page.items] == ["2001"]

        page = await search_resources(db_session, search="a", category="equipment")
        assert [item.code for item in page.items] == ["3001"]

    @pytest.mark.asyncio
    async def test_pagination(self, db_session: AsyncSession):
        await _seed(db_session)

        first = await search_resources(db_session, page=1, per_page=2)
        last = await search_resources(db_session, page=3, per_page=2)
        beyond = await search_resources(db_session, page=4, per_page=2)

        assert [item.code for item in first.items] == ["1001", "1002"]
        assert [item.code for item in last.items] == ["4001"]
        assert first.total == last.total == 5
        assert first.total_pages == 3
        assert beyond.items == []

    @pytest.mark.asyncio
    async def test_empty_catalogue(self, db_session: AsyncSession):
        page = await search_resources(db_session, search="areia")

        assert page.items == []
        assert page.total == 0
        assert page.total_pages == 0


class TestResourceDetail:
    @pytest.mark.asyncio
    async def test_prices_newest_month_first_then_region(self, db_session: AsyncSession):
        resources = await _seed(db_session)
        sand = resources["1001"]
        db_session.add_all(
            [
                PriceModel(resource_id=sand.id, region="SP", reference_month="2024-01",
                           price_standard=Decimal("0.80"), price_exempt=Decimal("0.70")),
                PriceModel(resource_id=sand.id, region="AC", reference_month="2024-02",
                           price_standard=Decimal("1.10"), price_exempt=None),
                PriceModel(resource_id=sand.id, region="SP", reference_month="2024-02",
                           price_standard=Decimal("0.90"), price_exempt=Decimal("0.75")),
            ]
        )
        await db_session.commit()

        detail = await get_resource_detail(db_session, sand.id)

        assert detail.resource.code == "1001"
        assert detail.resource.category == "material"
        assert [(p.reference_month, p.region) for p in detail.prices] == [
            ("2024-02", "AC"),
            ("2024-02", "SP"),
            ("2024-01", "SP"),
        ]
        assert detail.prices[0].price_exempt is None
        assert detail.prices[1].price_standard == Decimal("0.90")

    @pytest.mark.asyncio
    async def test_price_rows_are_limited(self, db_session: AsyncSession):
        resources = await _seed(db_session)
        sand = resources["1001"]
        db_session.add_all(
            PriceModel(resource_id=sand.id, region="SP", reference_month=f"2024-{month:02d}",
                       price_standard=Decimal(month))
            for month in range(1, 13)
        )
        await db_session.commit()

        detail = await get_resource_detail(db_session, sand.id, price_limit=3)

        assert [p.reference_month for p in detail.prices] == ["2024-12", "2024-11", "2024-10"]

    @pytest.mark.asyncio
    async def test_resource_without_prices(self, db_session: AsyncSession):
        resources = await _seed(db_session)

        detail = await get_resource_detail(db_session, resources["2001"].id)

        assert detail.prices == []

    @pytest.mark.asyncio
    async def test_unknown_resource(self, db_session: AsyncSession):
        with pytest.raises(ResourceNotFound):
            await get_resource_detail(db_session, uuid4())


class TestSearchCompositions:
    @pytest.mark.asyncio
    async def test_search_by_description_and_code(self, db_session: AsyncSession):
        await _seed(db_session)

        by_description = await search_compositions(db_session, search="concreto")
        by_code = await search_compositions(db_session, search="871")

        assert [item.code for item in by_description.items] == ["92000"]
        assert [item.code for item in by_code.items] == ["87100"]

    @pytest.mark.asyncio
    async def test_pagination(self, db_session: AsyncSession):
        await _seed(db_session)

        page = await search_compositions(db_session, page=2, per_page=2)

        assert [item.code for item in page.items] == ["92000"]
        assert page.total == 3
        assert page.total_pages == 2

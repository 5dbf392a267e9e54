"""Integration tests for composition cost resolution.

Graphs are built directly with ORM rows so each test states exactly the
shape it exercises (nesting, cycles, deep chains, shared children).
"""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from sinapicalc.db.models import (
    CompositionChildModel,
    CompositionModel,
    CompositionResourceModel,
    PriceModel,
    ResourceModel,
)
from sinapicalc.errors import CompositionNotFound
from sinapicalc.models import PricingContext, SkipReason
from sinapicalc.resolution.engine import CostResolver

MONTH = "2024-01"


class GraphBuilder:
    """Small helper that stages rows and inserts them parents first."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.resources: dict[str, ResourceModel] = {}
        self.compositions: dict[str, CompositionModel] = {}
        self.prices: list[PriceModel] = []
        self.links: list = []

    def resource(self, code, standard=None, exempt=None, region="SP", month=MONTH):
        resource = ResourceModel(id=uuid4(), code=code, description=f"Resource {code}", unit="UN")
        self.resources[code] = resource
        if standard is not None or exempt is not None:
            self.prices.append(
                PriceModel(
                    resource_id=resource.id,
                    region=region,
                    reference_month=month,
                    price_standard=standard,
                    price_exempt=exempt,
                )
            )
        return resource

    def composition(self, code):
        composition = CompositionModel(
            id=uuid4(), code=code, description=f"Composition {code}", unit="M2"
        )
        self.compositions[code] = composition
        return composition

    def uses(self, parent, resource_code, coefficient):
        self.links.append(
            CompositionResourceModel(
                composition_id=self.compositions[parent].id,
                resource_id=self.resources[resource_code].id,
                coefficient=Decimal(coefficient),
            )
        )

    def contains(self, parent, child, coefficient):
        self.links.append(
            CompositionChildModel(
                composition_id=self.compositions[parent].id,
                child_id=self.compositions[child].id,
                coefficient=Decimal(coefficient),
            )
        )

    async def commit(self):
        self.session.add_all(self.resources.values())
        self.session.add_all(self.compositions.values())
        await self.session.flush()
        self.session.add_all(self.prices + self.links)
        await self.session.commit()


def _context(**overrides) -> PricingContext:
    values = {"region": "SP", "reference_month": MONTH}
    values.update(overrides)
    return PricingContext(**values)


@pytest.fixture
def graph(db_session):
    return GraphBuilder(db_session)


class TestCost:
    @pytest.mark.asyncio
    async def test_nested_composition_end_to_end(self, db_session, graph):
        graph.resource("R1", standard=Decimal("10.00"))
        graph.composition("CHILD")
        graph.uses("CHILD", "R1", "2")
        graph.composition("PARENT")
        graph.contains("PARENT", "CHILD", "1")
        await graph.commit()

        resolver = CostResolver(db_session)
        resolution = await resolver.resolve_by_code("PARENT", _context(quantity=Decimal("3")))

        assert resolution.unit_cost == Decimal("20.00")
        assert resolution.total_cost == Decimal("60.00")
        assert resolution.lines == []
        assert len(resolution.sub_compositions) == 1
        sub = resolution.sub_compositions[0]
        assert sub.code == "CHILD"
        assert sub.unit_cost == Decimal("20")
        assert sub.line_cost == Decimal("20")
        assert sub.expanded

    @pytest.mark.asyncio
    async def test_tax_regime_selects_price_field(self, db_session, graph):
        graph.resource("R1", standard=Decimal("10.00"), exempt=Decimal("8.00"))
        graph.composition("C")
        graph.uses("C", "R1", "1.5")
        await graph.commit()

        resolver = CostResolver(db_session)
        standard = await resolver.resolve_by_code("C", _context())
        exempt = await resolver.resolve_by_code("C", _context(tax_exempt=True))

        assert standard.unit_cost == Decimal("15.00")
        assert exempt.unit_cost == Decimal("12.00")

    @pytest.mark.asyncio
    async def test_missing_price_counts_as_zero_and_is_flagged(self, db_session, graph):
        graph.resource("R1", standard=Decimal("10.00"))
        graph.resource("R2")
        graph.resource("R3", exempt=Decimal("4.00"))  # no standard price
        graph.composition("C")
        graph.uses("C", "R1", "1")
        graph.uses("C", "R2", "5")
        graph.uses("C", "R3", "5")
        await graph.commit()

        resolution = await CostResolver(db_session).resolve_by_code("C", _context())

        assert resolution.unit_cost == Decimal("10.00")
        assert resolution.missing_price_count == 2
        flags = {line.code: line.has_price for line in resolution.lines}
        assert flags == {"R1": True, "R2": False, "R3": False}

    @pytest.mark.asyncio
    async def test_other_region_or_month_is_unpriced(self, db_session, graph):
        graph.resource("R1", standard=Decimal("10.00"), region="RJ")
        graph.composition("C")
        graph.uses("C", "R1", "1")
        await graph.commit()

        resolver = CostResolver(db_session)
        assert (await resolver.resolve_by_code("C", _context())).unit_cost == Decimal("0.00")
        assert (
            await resolver.resolve_by_code("C", _context(region="RJ", reference_month="2024-02"))
        ).missing_price_count == 1

    @pytest.mark.asyncio
    async def test_rounding_happens_once(self, db_session, graph):
        graph.resource("R1", standard=Decimal("0.33"))
        graph.composition("C")
        graph.uses("C", "R1", "0.5")
        graph.composition("P")
        graph.contains("P", "C", "3")
        await graph.commit()

        resolution = await CostResolver(db_session).resolve_by_code(
            "P", _context(quantity=Decimal("10"))
        )

        # 0.33 * 0.5 * 3 = 0.495; the total is 10 x the unrounded unit cost
        assert resolution.unit_cost == Decimal("0.50")
        assert resolution.total_cost == Decimal("4.95")

    @pytest.mark.asyncio
    async def test_unknown_composition(self, db_session):
        resolver = CostResolver(db_session)
        with pytest.raises(CompositionNotFound):
            await resolver.resolve_by_code("NOPE", _context())
        with pytest.raises(CompositionNotFound):
            await resolver.resolve(uuid4(), _context())


class TestTraversalGuards:
    @pytest.mark.asyncio
    async def test_cycle_terminates_and_is_flagged(self, db_session, graph):
        graph.resource("R1", standard=Decimal("1.00"))
        graph.composition("A")
        graph.composition("B")
        graph.uses("A", "R1", "1")
        graph.uses("B", "R1", "2")
        graph.contains("A", "B", "1")
        graph.contains("B", "A", "1")
        await graph.commit()

        resolver = CostResolver(db_session)
        resolution = await resolver.resolve_by_code("A", _context())
        tree = await resolver.resolve_tree_by_code("A", _context())

        assert resolution.unit_cost == Decimal("3.00")
        assert resolution.skipped_count == 1
        back_edge = tree.children[0].children[0]
        assert back_edge.code == "A"
        assert back_edge.expanded is False
        assert back_edge.skip_reason == SkipReason.CYCLE

    @pytest.mark.asyncio
    async def test_self_reference(self, db_session, graph):
        graph.composition("A")
        graph.contains("A", "A", "1")
        await graph.commit()

        tree = await CostResolver(db_session).resolve_tree_by_code("A", _context())

        assert tree.children[0].skip_reason == SkipReason.CYCLE

    @pytest.mark.asyncio
    async def test_depth_cap(self, db_session, graph):
        graph.resource("R1", standard=Decimal("1.00"))
        codes = [f"L{level}" for level in range(8)]
        for code in codes:
            graph.composition(code)
            graph.uses(code, "R1", "1")
        for parent, child in zip(codes, codes[1:]):
            graph.contains(parent, child, "1")
        await graph.commit()

        resolver = CostResolver(db_session, max_depth=5)
        resolution = await resolver.resolve_by_code("L0", _context())
        node = await resolver.resolve_tree_by_code("L0", _context())

        # L0..L5 expanded, L6 cut off
        assert resolution.unit_cost == Decimal("6.00")
        assert resolution.skipped_count == 1
        depth = 0
        while node.children and node.children[0].expanded:
            node = node.children[0]
            depth += 1
        assert depth == 5
        assert node.children[0].skip_reason == SkipReason.DEPTH_LIMIT
        assert node.children[0].depth == 6

    @pytest.mark.asyncio
    async def test_shared_child_is_expanded_once(self, db_session, graph):
        graph.resource("R1", standard=Decimal("5.00"))
        for code in ("A", "B", "C", "D"):
            graph.composition(code)
        graph.uses("D", "R1", "1")
        graph.contains("A", "B", "1")
        graph.contains("A", "C", "1")
        graph.contains("B", "D", "1")
        graph.contains("C", "D", "1")
        await graph.commit()

        resolver = CostResolver(db_session)
        resolution = await resolver.resolve_by_code("A", _context())
        tree = await resolver.resolve_tree_by_code("A", _context())

        # Second visit to D contributes nothing and is flagged
        assert resolution.unit_cost == Decimal("5.00")
        branch_b, branch_c = tree.children
        assert branch_b.children[0].expanded
        assert branch_c.children[0].skip_reason == SkipReason.DUPLICATE
        assert branch_c.unit_cost == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_tree_mirrors_cost(self, db_session, graph):
        graph.resource("R1", standard=Decimal("10.00"))
        graph.composition("CHILD")
        graph.uses("CHILD", "R1", "2")
        graph.composition("PARENT")
        graph.contains("PARENT", "CHILD", "1")
        await graph.commit()

        resolver = CostResolver(db_session)
        tree = await resolver.resolve_tree_by_code("PARENT", _context())

        assert tree.unit_cost == Decimal("20.00")
        assert tree.depth == 0
        child = tree.children[0]
        assert child.depth == 1
        assert child.unit_cost == Decimal("20.00")
        assert child.resources[0].code == "R1"
        assert child.resources[0].line_cost == Decimal("20")

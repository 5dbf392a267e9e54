"""Cost resolution over the composition graph.

A composition's unit cost is the sum of its resource lines (price x
coefficient) plus, for each sub-composition, the child's unit cost x the
link coefficient. Prices come from the (region, month) row of each
resource in the requested tax regime; an absent row or a NULL regime
field prices the line at zero and flags it.

Upstream data can contain cycles and very deep chains, so one traversal
shares a single visited set:
- a child already on the current path is a ``cycle``
- a child already expanded elsewhere in the tree is a ``duplicate``
- a child below ``max_depth`` is a ``depth_limit``
Skipped children are reported in the output and contribute zero.

Nothing is rounded until ``unit_cost`` and ``total_cost``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from sinapicalc.db.models import (
    CompositionChildModel,
    CompositionModel,
    CompositionResourceModel,
    PriceModel,
    ResourceModel,
)
from sinapicalc.errors import CompositionNotFound
from sinapicalc.models import (
    CompositionNode,
    CompositionRef,
    CostLine,
    CostResolution,
    PricingContext,
    SkipReason,
    SubCompositionLine,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
DEFAULT_MAX_DEPTH = 5


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class _Expansion:
    """Unrounded result of expanding one composition."""

    node: CompositionNode
    unit_cost: Decimal
    missing_prices: int = 0
    skipped: int = 0
    # Unrounded unit cost per entry of node.children (zero when skipped)
    child_costs: list[Decimal] = field(default_factory=list)


class CostResolver:
    """Read-only resolver; safe to run concurrently with other resolutions."""

    def __init__(self, session: AsyncSession, max_depth: int = DEFAULT_MAX_DEPTH):
        self.session = session
        self.max_depth = max_depth

    async def resolve(self, composition_id: UUID, context: PricingContext) -> CostResolution:
        """Unit cost, total cost and breakdown of one composition.

        Raises:
            CompositionNotFound: If the composition does not exist
        """
        expansion = await self._expand_root(composition_id, context)
        root = expansion.node

        sub_compositions = [
            SubCompositionLine(
                composition_id=child.id,
                code=child.code,
                description=child.description,
                unit=child.unit,
                coefficient=child.coefficient,
                unit_cost=child_cost,
                line_cost=child_cost * child.coefficient,
                expanded=child.expanded,
                skip_reason=child.skip_reason,
            )
            for child, child_cost in zip(root.children, expansion.child_costs)
        ]

        return CostResolution(
            composition=CompositionRef(
                id=root.id, code=root.code, description=root.description, unit=root.unit
            ),
            context=context,
            lines=root.resources,
            sub_compositions=sub_compositions,
            unit_cost=round_money(expansion.unit_cost),
            total_cost=round_money(expansion.unit_cost * context.quantity),
            missing_price_count=expansion.missing_prices,
            skipped_count=expansion.skipped,
        )

    async def resolve_tree(
        self, composition_id: UUID, context: PricingContext
    ) -> CompositionNode:
        """Full priced tree, mirroring :meth:`resolve`.

        Raises:
            CompositionNotFound: If the composition does not exist
        """
        expansion = await self._expand_root(composition_id, context)
        return expansion.node

    async def resolve_by_code(self, code: str, context: PricingContext) -> CostResolution:
        return await self.resolve(await self.composition_id_for(code), context)

    async def resolve_tree_by_code(self, code: str, context: PricingContext) -> CompositionNode:
        return await self.resolve_tree(await self.composition_id_for(code), context)

    async def composition_id_for(self, code: str) -> UUID:
        result = await self.session.execute(
            select(CompositionModel.id).where(CompositionModel.code == code)
        )
        composition_id = result.scalar_one_or_none()
        if composition_id is None:
            raise CompositionNotFound(f"Composition {code} not found")
        return composition_id

    # ---- traversal ----

    async def _expand_root(self, composition_id: UUID, context: PricingContext) -> _Expansion:
        composition = await self.session.get(CompositionModel, composition_id)
        if composition is None:
            raise CompositionNotFound(f"Composition {composition_id} not found")

        visited: set[UUID] = set()
        path: list[UUID] = []
        expansion = await self._expand(
            composition.id,
            composition.code,
            composition.description,
            composition.unit,
            Decimal("1"),
            0,
            context,
            visited,
            path,
        )
        logger.debug(
            "Resolved %s: %d compositions expanded, %d skipped, %d unpriced lines",
            composition.code, len(visited), expansion.skipped, expansion.missing_prices,
        )
        return expansion

    async def _expand(
        self,
        composition_id: UUID,
        code: str,
        description: str,
        unit: str,
        coefficient: Decimal,
        depth: int,
        context: PricingContext,
        visited: set[UUID],
        path: list[UUID],
    ) -> _Expansion:
        visited.add(composition_id)
        path.append(composition_id)

        lines = await self._resource_lines(composition_id, context)
        node = CompositionNode(
            id=composition_id,
            code=code,
            description=description,
            unit=unit,
            coefficient=coefficient,
            depth=depth,
            resources=lines,
        )
        expansion = _Expansion(
            node=node,
            unit_cost=sum((line.line_cost for line in lines), Decimal("0")),
            missing_prices=sum(1 for line in lines if not line.has_price),
        )

        for child_id, child_coefficient, child_row in await self._child_links(composition_id):
            reason = self._skip_reason(child_id, child_row, depth + 1, visited, path)
            if reason is not None:
                node.children.append(
                    CompositionNode(
                        id=child_id,
                        code=child_row.code if child_row else "",
                        description=child_row.description if child_row else "",
                        unit=child_row.unit if child_row else "",
                        coefficient=child_coefficient,
                        depth=depth + 1,
                        expanded=False,
                        skip_reason=reason,
                    )
                )
                expansion.child_costs.append(Decimal("0"))
                expansion.skipped += 1
                continue

            child = await self._expand(
                child_id,
                child_row.code,
                child_row.description,
                child_row.unit,
                child_coefficient,
                depth + 1,
                context,
                visited,
                path,
            )
            node.children.append(child.node)
            expansion.child_costs.append(child.unit_cost)
            expansion.unit_cost += child.unit_cost * child_coefficient
            expansion.missing_prices += child.missing_prices
            expansion.skipped += child.skipped

        path.pop()
        node.unit_cost = round_money(expansion.unit_cost)
        return expansion

    def _skip_reason(
        self,
        child_id: UUID,
        child_row,
        depth: int,
        visited: set[UUID],
        path: list[UUID],
    ) -> SkipReason | None:
        if child_row is None:
            return SkipReason.MISSING
        if child_id in path:
            return SkipReason.CYCLE
        if child_id in visited:
            return SkipReason.DUPLICATE
        if depth > self.max_depth:
            return SkipReason.DEPTH_LIMIT
        return None

    # ---- queries ----

    async def _resource_lines(
        self, composition_id: UUID, context: PricingContext
    ) -> list[CostLine]:
        price_field = PriceModel.price_exempt if context.tax_exempt else PriceModel.price_standard
        result = await self.session.execute(
            select(
                ResourceModel.id,
                ResourceModel.code,
                ResourceModel.description,
                ResourceModel.unit,
                ResourceModel.category,
                CompositionResourceModel.coefficient,
                price_field,
            )
            .join(ResourceModel, ResourceModel.id == CompositionResourceModel.resource_id)
            .outerjoin(
                PriceModel,
                and_(
                    PriceModel.resource_id == ResourceModel.id,
                    PriceModel.region == context.region,
                    PriceModel.reference_month == context.reference_month,
                ),
            )
            .where(CompositionResourceModel.composition_id == composition_id)
            .order_by(ResourceModel.code, CompositionResourceModel.id)
        )

        lines = []
        for resource_id, code, description, unit, category, coefficient, price in result.all():
            coefficient = Decimal(coefficient)
            unit_price = Decimal(price) if price is not None else Decimal("0")
            lines.append(
                CostLine(
                    resource_id=resource_id,
                    code=code,
                    description=description,
                    unit=unit,
                    category=category,
                    coefficient=coefficient,
                    unit_price=unit_price,
                    line_cost=unit_price * coefficient,
                    has_price=price is not None,
                )
            )
        return lines

    async def _child_links(self, composition_id: UUID):
        """(child_id, coefficient, child composition or None) per sub-composition link."""
        result = await self.session.execute(
            select(CompositionChildModel.child_id, CompositionChildModel.coefficient, CompositionModel)
            .outerjoin(CompositionModel, CompositionModel.id == CompositionChildModel.child_id)
            .where(CompositionChildModel.composition_id == composition_id)
            .order_by(CompositionModel.code, CompositionChildModel.id)
        )
        return [
            (child_id, Decimal(coefficient), child)
            for child_id, coefficient, child in result.all()
        ]

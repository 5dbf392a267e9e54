"""Batched, idempotent writes of the resource/composition graph.

Every write is keyed by natural code, so each entry point can be re-run and
run in any order. Failures are contained at the unit of work that caused
them (a batch, a price sub-batch, one composition) and recorded as a single
error string on ``GraphIngestor.errors``; the run itself never raises for
bad data.

Compositions are written in two passes: phase 1 creates every header so
that phase 2 can link a composition to siblings that did not exist when
the run started.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sinapicalc.config import IngestionConfig
from sinapicalc.db.models import (
    CompositionChildModel,
    CompositionModel,
    CompositionResourceModel,
    PriceModel,
    ResourceModel,
)
from sinapicalc.db.upsert import chunked, fetch_ids_by_code, upsert_statement
from sinapicalc.errors import IngestionCancelled
from sinapicalc.pipeline.types import (
    CompositionEntry,
    CompositionStats,
    PriceRow,
    ResourceRow,
    SheetStats,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], "Awaitable[None] | None"]

RESOURCE_PROGRESS_EVERY = 1000
COMPOSITION_PROGRESS_EVERY = 2000


def price_column(tax_exempt: bool) -> str:
    """Name of the regime field a price import writes."""
    return "price_exempt" if tax_exempt else "price_standard"


def _short(error: Exception) -> str:
    return str(error).splitlines()[0] if str(error) else error.__class__.__name__


class GraphIngestor:
    """Writes parsed SINAPI rows into the persisted graph."""

    def __init__(
        self,
        session: AsyncSession,
        config: IngestionConfig | None = None,
        progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        self.session = session
        self.config = config or IngestionConfig()
        self.progress = progress
        self.cancel_event = cancel_event
        self.errors: list[str] = []

    async def emit(self, message: str) -> None:
        logger.info(message)
        if self.progress is None:
            return
        result = self.progress(message)
        if inspect.isawaitable(result):
            await result

    def check_cancelled(self) -> None:
        """Raise between units of work once the caller has asked to stop."""
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise IngestionCancelled("Ingestion cancelled by caller")

    def _record_error(self, message: str, error: Exception | None = None) -> None:
        self.errors.append(message)
        if error is not None:
            logger.error(message, exc_info=error)
        else:
            logger.warning(message)

    # ---- Resources + prices ----

    async def upsert_resources(
        self,
        rows: list[ResourceRow],
        reference_month: str,
        tax_exempt: bool = False,
    ) -> SheetStats:
        """Upsert resources and their prices for one regime.

        Each batch of resources is one transaction; the prices of a batch
        are then written in smaller sub-batches, each its own transaction.
        Only the regime field being imported is touched on existing prices.
        """
        stats = SheetStats(
            resources_total=len(rows),
            prices_total=sum(len(row.prices) for row in rows),
        )
        column = price_column(tax_exempt)
        processed = 0

        for batch_number, batch in enumerate(
            chunked(rows, self.config.resource_batch_size), start=1
        ):
            self.check_cancelled()
            written, prices_written = await self._write_resource_batch(
                batch, batch_number, reference_month, column
            )
            stats.resources_imported += written
            stats.prices_imported += prices_written

            previous, processed = processed, processed + len(batch)
            if processed // RESOURCE_PROGRESS_EVERY > previous // RESOURCE_PROGRESS_EVERY:
                await self.emit(f"{processed}/{len(rows)} resources processed...")

        logger.info(
            "Resources: %d/%d imported, prices: %d/%d imported (%s)",
            stats.resources_imported, stats.resources_total,
            stats.prices_imported, stats.prices_total, column,
        )
        return stats

    async def _write_resource_batch(
        self,
        batch: list[ResourceRow],
        batch_number: int,
        reference_month: str,
        column: str,
    ) -> tuple[int, int]:
        # Postgres refuses to update one row twice in a statement; last row wins
        unique = {row.code: row for row in batch}
        try:
            await self.session.execute(
                upsert_statement(
                    self.session,
                    ResourceModel,
                    [
                        {
                            "code": row.code,
                            "description": row.description,
                            "unit": row.unit,
                            "category": row.category.value,
                        }
                        for row in unique.values()
                    ],
                    conflict_columns=["code"],
                    update_columns=["description", "unit", "category"],
                )
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self._record_error(f"Resources batch {batch_number}: {_short(e)}", e)
            return 0, 0

        id_map = await fetch_ids_by_code(
            self.session, ResourceModel, unique, self.config.lookup_chunk_size
        )
        price_rows = {}
        for row in unique.values():
            resource_id = id_map.get(row.code)
            if resource_id is None:
                continue
            for price in row.prices:
                price_rows[(resource_id, price.region)] = {
                    "resource_id": resource_id,
                    "region": price.region,
                    "reference_month": reference_month,
                    column: price.amount,
                }

        prices_written = await self._write_prices(
            list(price_rows.values()), column, f"Prices batch {batch_number}"
        )
        return len(batch), prices_written

    async def _write_prices(self, price_rows: list[dict], column: str, label: str) -> int:
        """Upsert price rows in sub-batches; returns how many were written."""
        written = 0
        for sub_number, sub_batch in enumerate(
            chunked(price_rows, self.config.price_sub_batch_size), start=1
        ):
            try:
                await self.session.execute(
                    upsert_statement(
                        self.session,
                        PriceModel,
                        [dict(row) for row in sub_batch],
                        conflict_columns=["resource_id", "region", "reference_month"],
                        update_columns=[column],
                    )
                )
                await self.session.commit()
                written += len(sub_batch)
            except SQLAlchemyError as e:
                await self.session.rollback()
                self._record_error(f"{label}.{sub_number}: {_short(e)}", e)
        return written

    async def upsert_prices(
        self,
        rows: list[PriceRow],
        reference_month: str,
        tax_exempt: bool = True,
    ) -> SheetStats:
        """Price-only import for resources that must already exist.

        Unknown codes are reported (one error each) and skipped.
        """
        stats = SheetStats(prices_total=sum(len(row.prices) for row in rows))
        column = price_column(tax_exempt)
        by_code = {row.code: row for row in rows}

        for chunk_number, codes in enumerate(
            chunked(list(by_code), self.config.lookup_chunk_size), start=1
        ):
            self.check_cancelled()
            id_map = await fetch_ids_by_code(
                self.session, ResourceModel, codes, self.config.lookup_chunk_size
            )

            price_rows = []
            for code in codes:
                resource_id = id_map.get(code)
                if resource_id is None:
                    self.errors.append(f"Resource {code} not found for {column}")
                    continue
                for price in by_code[code].prices:
                    price_rows.append({
                        "resource_id": resource_id,
                        "region": price.region,
                        "reference_month": reference_month,
                        column: price.amount,
                    })

            stats.prices_imported += await self._write_prices(
                price_rows, column, f"Price chunk {chunk_number}"
            )

        logger.info(
            "Prices: %d/%d imported (%s)", stats.prices_imported, stats.prices_total, column
        )
        return stats

    # ---- Compositions ----

    async def ingest_compositions(self, entries: list[CompositionEntry]) -> CompositionStats:
        """Two-phase composition build.

        Phase 1 upserts every header and maps code -> id. Phase 2 replaces
        the links of each composition in its own transaction, so a
        composition is never left with half of its new links.
        """
        stats = CompositionStats(
            compositions_total=len(entries),
            items_total=sum(entry.child_count for entry in entries),
        )

        await self.emit(f"Phase 1: creating {len(entries)} compositions...")
        id_map = await self._upsert_composition_headers(entries, stats)

        # Sub-compositions may point at codes created by an earlier run
        child_codes = {
            child.code for entry in entries for child in entry.compositions
        } - id_map.keys()
        if child_codes:
            id_map.update(
                await fetch_ids_by_code(
                    self.session, CompositionModel, child_codes, self.config.lookup_chunk_size
                )
            )

        resource_ids = await fetch_ids_by_code(
            self.session,
            ResourceModel,
            (child.code for entry in entries for child in entry.resources),
            self.config.lookup_chunk_size,
        )

        await self.emit("Phase 2: linking resources and sub-compositions...")
        for position, entry in enumerate(entries, start=1):
            self.check_cancelled()
            composition_id = id_map.get(entry.code)
            if composition_id is not None:
                await self._replace_links(entry, composition_id, id_map, resource_ids, stats)

            if position % COMPOSITION_PROGRESS_EVERY == 0:
                await self.emit(
                    f"Phase 2: {position}/{len(entries)} compositions "
                    f"({stats.items_imported} links)..."
                )

        if stats.missing_children:
            logger.warning("%d child references could not be resolved", stats.missing_children)
        logger.info(
            "Compositions: %d/%d imported, links: %d/%d",
            stats.compositions_imported, stats.compositions_total,
            stats.items_imported, stats.items_total,
        )
        return stats

    def _header_statement(self, entries: list[CompositionEntry]):
        return upsert_statement(
            self.session,
            CompositionModel,
            [
                {"code": entry.code, "description": entry.description, "unit": entry.unit}
                for entry in entries
            ],
            conflict_columns=["code"],
            update_columns=["description", "unit"],
            keep_existing_if_blank=["description", "unit"],
        )

    async def _upsert_composition_headers(
        self, entries: list[CompositionEntry], stats: CompositionStats
    ) -> dict[str, UUID]:
        created: list[str] = []

        for batch_number, batch in enumerate(
            chunked(entries, self.config.composition_batch_size), start=1
        ):
            self.check_cancelled()
            unique = list({entry.code: entry for entry in batch}.values())
            try:
                await self.session.execute(self._header_statement(unique))
                await self.session.commit()
                created.extend(entry.code for entry in unique)
            except SQLAlchemyError as e:
                await self.session.rollback()
                logger.warning(
                    "Composition batch %d failed (%s), retrying row by row",
                    batch_number, _short(e),
                )
                for entry in unique:
                    try:
                        await self.session.execute(self._header_statement([entry]))
                        await self.session.commit()
                        created.append(entry.code)
                    except SQLAlchemyError as row_error:
                        await self.session.rollback()
                        self._record_error(
                            f"Composition {entry.code}: {_short(row_error)}", row_error
                        )

            done = batch_number * self.config.composition_batch_size
            if done % COMPOSITION_PROGRESS_EVERY == 0:
                await self.emit(f"Phase 1: {done}/{len(entries)} compositions...")

        stats.compositions_imported = len(created)
        return await fetch_ids_by_code(
            self.session, CompositionModel, created, self.config.lookup_chunk_size
        )

    async def _replace_links(
        self,
        entry: CompositionEntry,
        composition_id: UUID,
        composition_ids: dict[str, UUID],
        resource_ids: dict[str, UUID],
        stats: CompositionStats,
    ) -> None:
        resource_links = []
        child_links = []
        missing = 0

        for child in entry.resources:
            resource_id = resource_ids.get(child.code)
            if resource_id is None:
                missing += 1
                continue
            resource_links.append(
                CompositionResourceModel(
                    composition_id=composition_id,
                    resource_id=resource_id,
                    coefficient=child.coefficient,
                )
            )

        for child in entry.compositions:
            child_id = composition_ids.get(child.code)
            if child_id is None:
                missing += 1
                continue
            child_links.append(
                CompositionChildModel(
                    composition_id=composition_id,
                    child_id=child_id,
                    coefficient=child.coefficient,
                )
            )

        try:
            await self.session.execute(
                delete(CompositionResourceModel).where(
                    CompositionResourceModel.composition_id == composition_id
                )
            )
            await self.session.execute(
                delete(CompositionChildModel).where(
                    CompositionChildModel.composition_id == composition_id
                )
            )
            self.session.add_all(resource_links + child_links)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self._record_error(f"Links {entry.code}: {_short(e)}", e)
            return

        stats.items_imported += len(resource_links) + len(child_links)
        stats.missing_children += missing
        if missing:
            logger.debug("Composition %s: %d unresolved children", entry.code, missing)

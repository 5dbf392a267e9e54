"""Collector - acquisition, parsing, ingestion and audit for one SINAPI month.

Runs the reference workbook's three sheets in a fixed order:
1. ISD: resources + standard-regime prices
2. ICD: tax-exempt prices for resources created in step 1
3. Analítico: composition breakdowns (two-phase graph build)

Completed steps are never rolled back when a later one fails. Whatever
happens, the run leaves exactly one audit record behind.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession

from sinapicalc.acquisition.archive import (
    ScratchWorkspace,
    extract_archive,
    find_reference_workbook,
    reference_month_from_name,
)
from sinapicalc.acquisition.http import ArchiveDownloader, build_download_url
from sinapicalc.config import AppConfig, get_config
from sinapicalc.errors import AcquisitionError
from sinapicalc.ingestion.audit import record_import
from sinapicalc.ingestion.graph import GraphIngestor, ProgressCallback
from sinapicalc.models import CollectSummary, Counts
from sinapicalc.parsing.workbook import (
    group_composition_lines,
    open_workbook,
    read_composition_sheet,
    read_price_sheet,
    read_resource_sheet,
)
from sinapicalc.pipeline.types import ImportKind

logger = logging.getLogger(__name__)


class SinapiCollector:
    """Collects one reference month into the graph.

    Args:
        session: Database session used for every write
        config: Application configuration (defaults to the environment)
        downloader: Archive downloader, injectable for tests
        progress: Sync or async callable receiving human-readable messages
        cancel_event: Set by the caller to stop between units of work
    """

    def __init__(
        self,
        session: AsyncSession,
        config: AppConfig | None = None,
        downloader: ArchiveDownloader | None = None,
        progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        self.session = session
        self.config = config or get_config()
        self.downloader = downloader or ArchiveDownloader(self.config.source)
        self.progress = progress
        self.cancel_event = cancel_event

    async def emit(self, message: str) -> None:
        logger.info(message)
        if self.progress is None:
            return
        result = self.progress(message)
        if inspect.isawaitable(result):
            await result

    async def collect(self, year: int, month: int, operator: str) -> CollectSummary:
        """Download and ingest the archive published for ``year``/``month``.

        Raises:
            AcquisitionError: If the archive cannot be downloaded or opened
            ParseStructureError: If a required sheet is missing
            IngestionCancelled: If the caller cancelled the run
        """
        url = build_download_url(year, month, self.config.source.download_url)
        requested_month = f"{year:04d}-{month:02d}"

        with ScratchWorkspace(self.config.source.scratch_dir) as workdir:
            await self.emit(f"Downloading archive for {requested_month}...")
            zip_path = await self.downloader.download(url, workdir / "sinapi.zip")
            return await self._process_archive(
                zip_path, workdir, operator, default_month=requested_month
            )

    async def collect_from_archive(
        self,
        payload: bytes,
        operator: str,
        reference_month: str | None = None,
    ) -> CollectSummary:
        """Ingest an archive the caller already has.

        The reference month comes from ``reference_month`` when given,
        otherwise from the workbook's file name.
        """
        if len(payload) < self.config.source.min_archive_bytes:
            raise AcquisitionError(
                f"Archive is too small ({len(payload)} bytes), probably corrupt"
            )

        with ScratchWorkspace(self.config.source.scratch_dir) as workdir:
            zip_path = workdir / "upload.zip"
            zip_path.write_bytes(payload)
            return await self._process_archive(
                zip_path, workdir, operator, override_month=reference_month
            )

    async def _process_archive(
        self,
        zip_path: Path,
        workdir: Path,
        operator: str,
        default_month: str | None = None,
        override_month: str | None = None,
    ) -> CollectSummary:
        await self.emit("Extracting archive...")
        extracted = await asyncio.to_thread(extract_archive, zip_path, workdir / "extracted")
        workbook_path = await asyncio.to_thread(find_reference_workbook, extracted)

        reference_month = (
            override_month or reference_month_from_name(workbook_path.name) or default_month
        )
        if not reference_month:
            raise AcquisitionError(
                f"Cannot tell the reference month from {workbook_path.name}; "
                "pass it explicitly"
            )

        await self.emit(f"Processing {workbook_path.name} ({reference_month})...")
        return await self._ingest_workbook(workbook_path, reference_month, operator)

    async def _ingest_workbook(
        self, workbook_path: Path, reference_month: str, operator: str
    ) -> CollectSummary:
        ingestor = GraphIngestor(
            self.session,
            self.config.ingestion,
            progress=self.emit,
            cancel_event=self.cancel_event,
        )
        summary = CollectSummary(reference_month=reference_month, file_name=workbook_path.name)
        parse_errors: list[str] = []
        failure: Exception | None = None

        try:
            with open_workbook(workbook_path) as workbook:
                await self.emit("Importing resources and standard prices...")
                sheet = await asyncio.to_thread(read_resource_sheet, workbook)
                parse_errors.extend(sheet.errors)
                stats = await ingestor.upsert_resources(sheet.rows, reference_month)
                summary.resources = Counts(
                    total=stats.resources_total, imported=stats.resources_imported
                )
                summary.prices = Counts(total=stats.prices_total, imported=stats.prices_imported)

                await self.emit("Importing tax-exempt prices...")
                sheet = await asyncio.to_thread(read_price_sheet, workbook)
                parse_errors.extend(sheet.errors)
                stats = await ingestor.upsert_prices(sheet.rows, reference_month, tax_exempt=True)
                summary.prices.total += stats.prices_total
                summary.prices.imported += stats.prices_imported

                await self.emit("Importing composition breakdowns...")
                sheet = await asyncio.to_thread(read_composition_sheet, workbook)
                parse_errors.extend(sheet.errors)
                entries = group_composition_lines(sheet.rows)
                await self.emit(
                    f"{len(entries)} compositions, {len(sheet.rows)} breakdown lines"
                )
                composition_stats = await ingestor.ingest_compositions(entries)
                summary.compositions = Counts(
                    total=composition_stats.compositions_total,
                    imported=composition_stats.compositions_imported,
                )
                summary.breakdown_items = Counts(
                    total=composition_stats.items_total,
                    imported=composition_stats.items_imported,
                )
        except Exception as e:
            failure = e
            await self.session.rollback()
            logger.error(f"Collection of {reference_month} stopped: {e}", exc_info=True)

        errors = parse_errors + ingestor.errors
        if failure is not None:
            errors.append(f"Run stopped: {failure}")

        await record_import(
            self.session,
            ImportKind.AUTOMATIC_COLLECTION,
            workbook_path.name,
            total_records=(
                summary.resources.total
                + summary.prices.total
                + summary.compositions.total
                + summary.breakdown_items.total
            ),
            imported_count=(
                summary.resources.imported
                + summary.prices.imported
                + summary.compositions.imported
                + summary.breakdown_items.imported
            ),
            errors=errors,
            imported_by=operator,
            error_cap=self.config.ingestion.audit_error_cap,
        )

        if failure is not None:
            raise failure

        summary.error_count = len(errors)
        summary.errors = errors[: self.config.ingestion.summary_error_cap]
        await self.emit("Collection finished")
        return summary

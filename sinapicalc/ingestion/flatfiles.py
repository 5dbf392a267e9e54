"""Flat-file (CSV) importers for resources, composition breakdowns and prices.

Meant for bootstrapping or patching the graph without a full workbook.
Run in order resources -> compositions -> prices when starting from an
empty store; each importer is safe to re-run on its own.

Row problems are reported as "Row N (line L): ..." where N counts data
rows from 1 and L is the physical line in the file.
"""

from __future__ import annotations

import logging
import re
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sinapicalc.config import IngestionConfig
from sinapicalc.db.models import (
    CompositionModel,
    CompositionResourceModel,
    PriceModel,
    ResourceModel,
)
from sinapicalc.db.upsert import chunked, fetch_ids_by_code, upsert_statement
from sinapicalc.errors import ParseStructureError
from sinapicalc.ingestion.audit import record_import
from sinapicalc.parsing.flatfile import FlatRow, read_table, resolve_columns
from sinapicalc.parsing.numbers import classify_category, normalize_code, parse_decimal
from sinapicalc.pipeline.types import ChildRef, ImportKind, ImportResult

logger = logging.getLogger(__name__)

_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
_REGION_RE = re.compile(r"^[A-Z]{2}$")

RESOURCE_COLUMNS: dict[str, tuple[str, ...]] = {
    "code": ("codigo", "código", "cod", "code"),
    "description": ("descricao", "descrição", "desc", "description"),
    "unit": ("unidade", "un", "und", "unit"),
    "category": ("tipo", "classificacao", "classificação", "category"),
}

COMPOSITION_COLUMNS: dict[str, tuple[str, ...]] = {
    "composition_code": (
        "composicao_codigo", "comp_codigo", "codigo_composicao", "composition_code", "codigo",
        "code",
    ),
    "description": (
        "composicao_descricao", "comp_descricao", "descricao_composicao", "descricao",
        "description",
    ),
    "unit": (
        "composicao_unidade", "comp_unidade", "unidade_composicao", "unidade", "unit",
    ),
    "resource_code": ("insumo_codigo", "codigo_insumo", "cod_insumo", "resource_code"),
    "coefficient": ("coeficiente", "coef", "quantidade", "coefficient"),
}

PRICE_COLUMNS: dict[str, tuple[str, ...]] = {
    "code": ("codigo", "código", "cod", "codigo_insumo", "code"),
    "region": ("uf", "estado", "region"),
    "reference_month": (
        "mes_referencia", "mes", "referencia", "mês", "reference_month", "month",
    ),
    "price_exempt": ("preco_desonerado", "desonerado", "preco_des", "price_exempt"),
    "price_standard": (
        "preco_nao_desonerado", "nao_desonerado", "preco_nao_des", "price_standard",
    ),
}

DEFAULT_COMPOSITION_UNIT = "UN"


def _batch_error(label: str, error: Exception) -> str:
    message = str(error).splitlines()[0] if str(error) else error.__class__.__name__
    return f"{label}: {message}"


async def _finish(
    session: AsyncSession,
    kind: ImportKind,
    file_name: str,
    result: ImportResult,
    imported_by: str,
    config: IngestionConfig,
) -> ImportResult:
    await record_import(
        session,
        kind,
        file_name,
        total_records=result.total_records,
        imported_count=result.imported_count,
        errors=result.errors,
        imported_by=imported_by,
        error_cap=config.audit_error_cap,
    )
    return result.finalize()


async def import_resources(
    session: AsyncSession,
    file_name: str,
    payload: bytes,
    imported_by: str,
    config: IngestionConfig | None = None,
) -> ImportResult:
    """Import resources from a delimited file (code; description; unit; category).

    Raises:
        ParseStructureError: If the file is empty or lacks code/description/unit
    """
    config = config or IngestionConfig()
    table = read_table(payload)
    columns = resolve_columns(
        table.header, RESOURCE_COLUMNS, required=("code", "description", "unit")
    )

    result = ImportResult(total_records=len(table.rows))
    for batch_number, batch in enumerate(
        chunked(table.rows, config.flatfile_batch_size), start=1
    ):
        valid: dict[str, dict] = {}
        accepted = 0
        for row in batch:
            code = normalize_code(row.get(columns["code"]))
            description = row.get(columns["description"])
            if not code:
                result.errors.append(f"{row.label}: missing code")
                continue
            if not description:
                result.errors.append(f"{row.label}: missing description for {code}")
                continue
            valid[code] = {
                "code": code,
                "description": description,
                "unit": row.get(columns["unit"]),
                "category": classify_category(row.get(columns["category"])).value,
            }
            accepted += 1

        if not valid:
            continue
        try:
            await session.execute(
                upsert_statement(
                    session,
                    ResourceModel,
                    list(valid.values()),
                    conflict_columns=["code"],
                    update_columns=["description", "unit", "category"],
                )
            )
            await session.commit()
            result.imported_count += accepted
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("Resource batch %d failed", batch_number, exc_info=True)
            result.errors.append(_batch_error(f"Batch {batch_number}", e))

    logger.info(
        "Imported %d/%d resources from %s", result.imported_count, result.total_records, file_name
    )
    return await _finish(session, ImportKind.RESOURCES, file_name, result, imported_by, config)


async def import_compositions(
    session: AsyncSession,
    file_name: str,
    payload: bytes,
    imported_by: str,
    config: IngestionConfig | None = None,
) -> ImportResult:
    """Import composition breakdowns (composition code; description; unit;
    resource code; coefficient), one row per resource line.

    Totals count compositions, not rows. Resource links of a composition
    that carries at least one line are replaced; sub-composition links are
    left alone since this format cannot express them.

    Raises:
        ParseStructureError: If the file is empty or lacks composition code/description
    """
    config = config or IngestionConfig()
    table = read_table(payload)
    columns = resolve_columns(
        table.header, COMPOSITION_COLUMNS, required=("composition_code", "description")
    )
    has_items = columns["resource_code"] is not None and columns["coefficient"] is not None

    result = ImportResult()
    headers: dict[str, dict] = {}
    items: dict[str, list[ChildRef]] = {}

    for row in table.rows:
        code = normalize_code(row.get(columns["composition_code"]))
        if not code:
            result.errors.append(f"{row.label}: missing composition code")
            continue

        if code not in headers:
            headers[code] = {
                "code": code,
                "description": row.get(columns["description"]),
                "unit": row.get(columns["unit"]) or DEFAULT_COMPOSITION_UNIT,
            }
            items[code] = []

        if not has_items:
            continue
        child = _read_child(row, columns, result)
        if child is not None:
            items[code].append(child)

    result.total_records = len(headers)
    resource_ids = await fetch_ids_by_code(
        session,
        ResourceModel,
        (child.code for children in items.values() for child in children),
        config.lookup_chunk_size,
    )

    for code, header in headers.items():
        try:
            await _write_composition(session, header, items[code], resource_ids, result)
            await session.commit()
            result.imported_count += 1
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("Composition %s failed", code, exc_info=True)
            result.errors.append(_batch_error(f"Composition {code}", e))

    logger.info(
        "Imported %d/%d compositions from %s",
        result.imported_count, result.total_records, file_name,
    )
    return await _finish(session, ImportKind.COMPOSITIONS, file_name, result, imported_by, config)


def _read_child(row: FlatRow, columns: dict, result: ImportResult) -> ChildRef | None:
    resource_code = normalize_code(row.get(columns["resource_code"]))
    if not resource_code:
        return None
    try:
        coefficient = parse_decimal(row.get(columns["coefficient"]))
    except ValueError:
        result.errors.append(f"{row.label}: invalid coefficient for {resource_code}")
        return None
    if coefficient <= 0:
        result.errors.append(f"{row.label}: coefficient must be positive for {resource_code}")
        return None
    return ChildRef(code=resource_code, coefficient=coefficient)


async def _write_composition(
    session: AsyncSession,
    header: dict,
    children: list[ChildRef],
    resource_ids: dict[str, UUID],
    result: ImportResult,
) -> None:
    await session.execute(
        upsert_statement(
            session,
            CompositionModel,
            [dict(header)],
            conflict_columns=["code"],
            update_columns=["description", "unit"],
            keep_existing_if_blank=["description"],
        )
    )
    if not children:
        return

    composition_id = (
        await fetch_ids_by_code(session, CompositionModel, [header["code"]])
    )[header["code"]]
    await session.execute(
        delete(CompositionResourceModel).where(
            CompositionResourceModel.composition_id == composition_id
        )
    )

    found = [child for child in children if child.code in resource_ids]
    session.add_all(
        CompositionResourceModel(
            composition_id=composition_id,
            resource_id=resource_ids[child.code],
            coefficient=child.coefficient,
        )
        for child in found
    )

    missing = len(children) - len(found)
    if missing:
        result.errors.append(f"Composition {header['code']}: {missing} resource(s) not found")


async def import_prices(
    session: AsyncSession,
    file_name: str,
    payload: bytes,
    imported_by: str,
    config: IngestionConfig | None = None,
) -> ImportResult:
    """Import prices (code; region; month; standard and/or exempt price).

    Only the regime columns present in the header and filled in on a row are
    written, so a file carrying one regime never clears the other.

    Raises:
        ParseStructureError: If the file is empty, lacks code/region/month,
            or has no price column at all
    """
    config = config or IngestionConfig()
    table = read_table(payload)
    columns = resolve_columns(
        table.header, PRICE_COLUMNS, required=("code", "region", "reference_month")
    )
    regime_columns = [
        name for name in ("price_standard", "price_exempt") if columns[name] is not None
    ]
    if not regime_columns:
        raise ParseStructureError(
            "No price columns found (expected preco_nao_desonerado and/or preco_desonerado)"
        )

    resource_ids = await fetch_ids_by_code(
        session,
        ResourceModel,
        (normalize_code(row.get(columns["code"])) for row in table.rows),
        config.lookup_chunk_size,
    )

    result = ImportResult(total_records=len(table.rows))
    for batch_number, batch in enumerate(
        chunked(table.rows, config.flatfile_batch_size), start=1
    ):
        merged: dict[tuple, dict] = {}
        accepted = 0
        for row in batch:
            values = _read_price_row(row, columns, regime_columns, resource_ids, result)
            if values is None:
                continue
            key = (values["resource_id"], values["region"], values["reference_month"])
            merged.setdefault(key, {}).update(values)
            accepted += 1

        if not merged:
            continue
        try:
            await _write_price_rows(session, list(merged.values()))
            await session.commit()
            result.imported_count += accepted
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("Price batch %d failed", batch_number, exc_info=True)
            result.errors.append(_batch_error(f"Batch {batch_number}", e))

    logger.info(
        "Imported %d/%d prices from %s", result.imported_count, result.total_records, file_name
    )
    return await _finish(session, ImportKind.PRICES, file_name, result, imported_by, config)


def _read_price_row(
    row: FlatRow,
    columns: dict,
    regime_columns: list[str],
    resource_ids: dict[str, UUID],
    result: ImportResult,
) -> dict | None:
    code = normalize_code(row.get(columns["code"]))
    region = row.get(columns["region"]).upper()
    month = row.get(columns["reference_month"])

    resource_id = resource_ids.get(code)
    if resource_id is None:
        result.errors.append(f"{row.label}: resource {code or '(empty)'} not found")
        return None
    if not _REGION_RE.match(region) or not _MONTH_RE.match(month):
        result.errors.append(f"{row.label}: invalid region or month ({region!r}, {month!r})")
        return None

    values: dict = {"resource_id": resource_id, "region": region, "reference_month": month}
    for name in regime_columns:
        raw = row.get(columns[name])
        if not raw:
            continue
        try:
            amount = parse_decimal(raw)
        except ValueError:
            result.errors.append(f"{row.label}: invalid {name} {raw!r}")
            return None
        if amount < 0:
            result.errors.append(f"{row.label}: negative {name}")
            return None
        values[name] = amount

    if not any(name in values for name in regime_columns):
        result.errors.append(f"{row.label}: no price values")
        return None
    return values


async def _write_price_rows(session: AsyncSession, rows: list[dict]) -> None:
    # A multi-row VALUES clause needs the same keys on every row
    groups: dict[tuple[str, ...], list[dict]] = {}
    for row in rows:
        regimes = tuple(sorted(k for k in row if k.startswith("price_")))
        groups.setdefault(regimes, []).append(row)

    for regimes, group in groups.items():
        await session.execute(
            upsert_statement(
                session,
                PriceModel,
                group,
                conflict_columns=["resource_id", "region", "reference_month"],
                update_columns=list(regimes),
            )
        )


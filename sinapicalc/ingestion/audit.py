"""Append-only import audit log."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sinapicalc.db.models import ImportLogModel
from sinapicalc.pipeline.types import ImportKind

logger = logging.getLogger(__name__)

DEFAULT_ERROR_CAP = 100


async def record_import(
    session: AsyncSession,
    kind: ImportKind | str,
    file_name: str,
    total_records: int,
    imported_count: int,
    errors: list[str],
    imported_by: str,
    error_cap: int = DEFAULT_ERROR_CAP,
) -> ImportLogModel:
    """Append one audit record and commit it.

    ``error_count`` is the full number of errors; only the first
    ``error_cap`` strings are stored.

    Args:
        session: Database session
        kind: automatic_collection, resources, compositions or prices
        file_name: Source file the run read
        total_records: Records attempted
        imported_count: Records written
        errors: Every error string collected during the run
        imported_by: Operator identity
        error_cap: Maximum error strings kept on the record
    """
    entry = ImportLogModel(
        kind=ImportKind(kind).value,
        file_name=file_name,
        total_records=total_records,
        imported_count=imported_count,
        error_count=len(errors),
        errors=errors[:error_cap] or None,
        imported_by=imported_by,
        created_at=datetime.now(timezone.utc),
    )
    session.add(entry)
    await session.commit()

    logger.info(
        "Recorded %s import of %s: %d/%d imported, %d errors (by %s)",
        entry.kind, file_name, imported_count, total_records, len(errors), imported_by,
    )
    return entry


async def list_imports(session: AsyncSession, limit: int = 20) -> list[ImportLogModel]:
    """Most recent audit records first."""
    result = await session.execute(
        select(ImportLogModel)
        .order_by(ImportLogModel.created_at.desc(), ImportLogModel.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())

"""Integration tests for the import audit log."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from sinapicalc.db.models import ImportLogModel
from sinapicalc.ingestion.audit import list_imports, record_import
from sinapicalc.pipeline.types import ImportKind


@pytest.mark.asyncio
async def test_error_list_is_capped_but_counted(db_session):
    errors = [f"Row {i} (line {i + 1}): missing code" for i in range(1, 151)]

    entry = await record_import(
        db_session,
        ImportKind.RESOURCES,
        "insumos.csv",
        total_records=150,
        imported_count=0,
        errors=errors,
        imported_by="tester",
    )

    assert entry.error_count == 150
    assert len(entry.errors) == 100
    assert entry.errors[0] == "Row 1 (line 2): missing code"


@pytest.mark.asyncio
async def test_list_imports_newest_first(db_session):
    for name in ("a.csv", "b.csv", "c.csv"):
        await record_import(db_session, "prices", name, 1, 1, [], "tester")

    entries = await list_imports(db_session, limit=2)

    assert [entry.file_name for entry in entries] == ["c.csv", "b.csv"]
    assert all(entry.errors is None for entry in entries)


@pytest.mark.asyncio
async def test_unknown_kind_is_rejected(db_session):
    with pytest.raises(ValueError):
        await record_import(db_session, "nightly", "x.csv", 0, 0, [], "tester")

    db_session.add(
        ImportLogModel(
            kind="nightly", file_name="x.csv", imported_by="tester", total_records=0
        )
    )
    with pytest.raises(IntegrityError):
        await db_session.commit()

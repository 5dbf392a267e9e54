"""Natural-key upsert helpers.

PostgreSQL and SQLite both support INSERT .. ON CONFLICT DO UPDATE, but through
dialect-specific constructs. Statements are built for the dialect bound to
the session so ingestion code stays dialect-agnostic.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def dialect_insert(session: AsyncSession, model):
    """Return the ON CONFLICT-capable insert() for the session's dialect."""
    dialect = session.bind.dialect.name if session.bind else "sqlite"
    if dialect == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def upsert_statement(
    session: AsyncSession,
    model,
    rows: list[dict[str, Any]],
    conflict_columns: list[str],
    update_columns: Iterable[str],
    keep_existing_if_blank: Iterable[str] = (),
):
    """Build a multi-row upsert keyed on ``conflict_columns``.

    Only ``update_columns`` are overwritten on conflict, which lets callers
    touch one field of an existing row without clobbering its siblings.
    Columns listed in ``keep_existing_if_blank`` keep their stored value
    when the incoming one is an empty string.
    """
    for row in rows:
        row.setdefault("id", uuid4())

    stmt = dialect_insert(session, model).values(rows)
    update_columns = list(update_columns)
    if not update_columns:
        return stmt.on_conflict_do_nothing(index_elements=conflict_columns)

    keep = set(keep_existing_if_blank)
    set_ = {}
    for col in update_columns:
        incoming = getattr(stmt.excluded, col)
        if col in keep:
            incoming = func.coalesce(func.nullif(incoming, ""), getattr(model, col))
        set_[col] = incoming

    # Column.onupdate is not applied by ON CONFLICT DO UPDATE
    if "updated_at" in model.__table__.c:
        set_["updated_at"] = func.now()

    return stmt.on_conflict_do_update(index_elements=conflict_columns, set_=set_)


async def fetch_ids_by_code(
    session: AsyncSession,
    model,
    codes: Iterable[str],
    chunk_size: int = 500,
) -> dict[str, UUID]:
    """Map natural codes to primary keys, querying in chunks.

    Chunking keeps IN lists below SQLite's bound-parameter limit.
    """
    unique_codes = list(dict.fromkeys(code for code in codes if code))
    id_map: dict[str, UUID] = {}

    for chunk in chunked(unique_codes, chunk_size):
        result = await session.execute(
            select(model.code, model.id).where(model.code.in_(chunk))
        )
        id_map.update({code: pk for code, pk in result.all()})

    return id_map

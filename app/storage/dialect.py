# ==== CAPABILITY-DRIVEN QUERY HELPERS ==== #

"""
Statement builders that depend on store capabilities.

Each helper consults the StoreCapabilities detected at engine start-up and
emits exactly one statement shape for the connected dialect.
"""

from typing import Any, Dict, Optional, Sequence

from sqlalchemy import Select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.storage.db import get_capabilities


def locked(stmt: Select) -> Select:
    """Apply a row-level write lock when the store supports it."""
    if get_capabilities().supports_row_locks:
        return stmt.with_for_update()
    return stmt


def _insert_for_dialect(model):
    dialect = get_capabilities().dialect
    if dialect == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


async def insert_ignoring_conflict(
    db: AsyncSession,
    model,
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
    returning=None,
) -> Optional[Any]:
    """
    INSERT a row unless it collides on the given unique columns.

    A collision is a no-op rather than an error, so callers can make writes
    keyed by an external reference safe to retry.

    Args:
        db (AsyncSession): Session inside the caller's transaction
        model: Mapped class to insert into
        values (Dict[str, Any]): Column values
        conflict_columns (Sequence[str]): Unique columns that define a duplicate
        returning: Column to return for a fresh insert (defaults to the primary key)

    Returns:
        Optional[Any]: The returned column for a new row, None on conflict
    """
    column = returning if returning is not None else model.__mapper__.primary_key[0]
    stmt = (
        _insert_for_dialect(model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
        .returning(column)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()

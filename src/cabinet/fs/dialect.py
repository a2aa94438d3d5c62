"""Dialect-aware SQL helpers — insert-if-absent for lazily created rows."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession


def get_dialect(engine: Engine | AsyncEngine) -> str:
    """Return 'sqlite', 'postgresql', or 'mssql'."""
    # AsyncEngine wraps a sync engine
    sync_engine = getattr(engine, "sync_engine", engine)
    name = sync_engine.dialect.name
    if name == "sqlite":
        return "sqlite"
    if name in ("postgresql", "postgres"):
        return "postgresql"
    if name in ("mssql", "pyodbc"):
        return "mssql"
    return name


async def insert_if_absent(
    session: AsyncSession,
    dialect: str,
    model: type,
    values: dict[str, Any],
    conflict_keys: list[str],
) -> int:
    """Insert a row unless one with the same *conflict_keys* exists. Returns rowcount.

    Safe under concurrent callers: the database arbitrates, not a
    read-then-insert in Python.

    - SQLite/PostgreSQL: INSERT ... ON CONFLICT DO NOTHING
    - MSSQL: MERGE INTO ... WITH (HOLDLOCK) WHEN NOT MATCHED
    """
    if dialect == "mssql":
        table_name: str = model.__tablename__  # type: ignore[attr-defined]
        on_clause = " AND ".join(f"target.{k} = :{k}" for k in conflict_keys)
        insert_cols = ", ".join(values.keys())
        insert_vals = ", ".join(f":{k}" for k in values)
        merge_sql = f"""
            MERGE INTO {table_name} WITH (HOLDLOCK) AS target
            USING (SELECT {", ".join(f":{k} AS {k}" for k in conflict_keys)}) AS source
            ON {on_clause}
            WHEN NOT MATCHED THEN
                INSERT ({insert_cols})
                VALUES ({insert_vals});
        """
        result = await session.execute(text(merge_sql), values)
        return result.rowcount  # type: ignore[return-value]

    from sqlalchemy.dialects import sqlite as sqlite_dialect

    dialect_module: Any = sqlite_dialect
    if dialect == "postgresql":
        from sqlalchemy.dialects import postgresql as pg_dialect

        dialect_module = pg_dialect

    stmt = (
        dialect_module.insert(model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=conflict_keys)
    )
    result = await session.execute(stmt)
    return result.rowcount  # type: ignore[return-value]

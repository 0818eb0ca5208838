"""DuckDB catalog queries used by migrations and the CLI."""

from __future__ import annotations

from typing import Iterable

import duckdb


def quote_ident(name: str) -> str:
    """Quote an identifier for DuckDB SQL."""
    return '"' + name.replace('"', '""') + '"'


def get_column_names(conn: duckdb.DuckDBPyConnection, table_name: str) -> set[str]:
    rows = conn.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_name = ? AND table_schema = current_schema()
        """,
        [table_name],
    ).fetchall()
    return {row[0] for row in rows}


def count_rows(conn: duckdb.DuckDBPyConnection, table_name: str) -> int | None:
    """COUNT(*) of *table_name*, or None if it cannot be read."""
    try:
        row = conn.execute(f"SELECT COUNT(*) FROM {quote_ident(table_name)}").fetchone()
    except duckdb.Error:
        return None
    return int(row[0]) if row else 0


def table_counts(
    conn: duckdb.DuckDBPyConnection, tables: Iterable[str]
) -> dict[str, int | None]:
    """Row count per table, in the order given."""
    return {name: count_rows(conn, name) for name in tables}


def format_count(n: int | None) -> str:
    return "missing" if n is None else str(n)

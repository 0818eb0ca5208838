"""Database tables.

Centralizes creation and additive migration of:
- invoices
- payment_transactions
- upload_batches
- column_mappings
"""

from __future__ import annotations

import duckdb

from .catalog import get_column_names, quote_ident

LEDGER_TABLES = ("invoices", "payment_transactions", "upload_batches", "column_mappings")


def init_infra(conn: duckdb.DuckDBPyConnection) -> None:
    """Ensure all tables exist and carry every current column."""
    ensure_invoices(conn)
    ensure_transactions(conn)
    ensure_upload_batches(conn)
    ensure_column_mappings(conn)


def _ensure_columns(
    conn: duckdb.DuckDBPyConnection, table: str, columns: dict[str, str]
) -> list[str]:
    """Add any of *columns* (name -> type/default DDL) missing from *table*.

    Databases created by older releases gain new columns in place; existing
    rows get the column default. Returns the names added.
    """
    existing = get_column_names(conn, table)
    added: list[str] = []
    for name, ddl in columns.items():
        if name in existing:
            continue
        conn.execute(f"ALTER TABLE {quote_ident(table)} ADD COLUMN {quote_ident(name)} {ddl}")
        added.append(name)
    return added


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def ensure_invoices(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute("CREATE SEQUENCE IF NOT EXISTS invoices_seq")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS invoices (
            id INTEGER PRIMARY KEY DEFAULT nextval('invoices_seq'),
            reference_number VARCHAR NOT NULL,
            amount_due DECIMAL(12, 2) NOT NULL,
            amount_paid DECIMAL(12, 2) NOT NULL DEFAULT 0,
            outstanding_balance DECIMAL(12, 2) NOT NULL DEFAULT 0,
            overpaid_amount DECIMAL(12, 2) NOT NULL DEFAULT 0,
            status VARCHAR NOT NULL DEFAULT 'Unpaid',
            created_at TIMESTAMP DEFAULT current_timestamp
        )
        """
    )
    _ensure_columns(conn, "invoices", {"updated_at": "TIMESTAMP"})


# ---------------------------------------------------------------------------
# Payment transactions
# ---------------------------------------------------------------------------


def ensure_transactions(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute("CREATE SEQUENCE IF NOT EXISTS payment_transactions_seq")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS payment_transactions (
            id INTEGER PRIMARY KEY DEFAULT nextval('payment_transactions_seq'),
            batch_id INTEGER,
            line_number INTEGER,
            reference_number VARCHAR,
            amount DECIMAL(12, 2) NOT NULL,
            payment_date DATE NOT NULL,
            description VARCHAR,
            invoice_id INTEGER,
            status VARCHAR NOT NULL,
            created_at TIMESTAMP DEFAULT current_timestamp
        )
        """
    )
    _ensure_columns(
        conn,
        "payment_transactions",
        {"duplicate_of": "INTEGER", "updated_at": "TIMESTAMP"},
    )


# ---------------------------------------------------------------------------
# Upload audit log
# ---------------------------------------------------------------------------


def ensure_upload_batches(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute("CREATE SEQUENCE IF NOT EXISTS upload_batches_seq")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS upload_batches (
            id INTEGER PRIMARY KEY DEFAULT nextval('upload_batches_seq'),
            filename VARCHAR NOT NULL,
            uploaded_by VARCHAR,
            outcome VARCHAR NOT NULL,
            message VARCHAR,
            total_rows INTEGER NOT NULL DEFAULT 0,
            transactions_processed INTEGER NOT NULL DEFAULT 0,
            matched_count INTEGER NOT NULL DEFAULT 0,
            partial_count INTEGER NOT NULL DEFAULT 0,
            overpaid_count INTEGER NOT NULL DEFAULT 0,
            unmatched_count INTEGER NOT NULL DEFAULT 0,
            duplicate_count INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP DEFAULT current_timestamp
        )
        """
    )
    _ensure_columns(
        conn,
        "upload_batches",
        {
            "non_payment_count": "INTEGER DEFAULT 0",
            "mapping_json": "VARCHAR",
            "issues_json": "VARCHAR",
        },
    )


# ---------------------------------------------------------------------------
# Saved column mappings
# ---------------------------------------------------------------------------


def ensure_column_mappings(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS column_mappings (
            name VARCHAR NOT NULL,
            signature VARCHAR NOT NULL,
            roles_json VARCHAR NOT NULL,
            use_count INTEGER NOT NULL DEFAULT 0,
            last_used_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT current_timestamp
        )
        """
    )

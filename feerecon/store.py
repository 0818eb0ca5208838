"""Invoice/transaction store.

:class:`LedgerStore` is the port the reconciliation core depends on;
:class:`DuckDBLedgerStore` is the DuckDB adapter used by the CLI and tests.
This is the only module that issues SQL against the ledger tables.

Writes that touch one invoice's transaction set or derived fields run inside
:meth:`DuckDBLedgerStore.invoice_scope`: a per-invoice re-entrant lock held
for the duration of a database transaction, so two batches touching the same
invoice serialize instead of interleaving.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterator, Protocol, Sequence

import duckdb

from .audit import UploadBatch
from .errors import StoreUnavailableError
from .infra import init_infra
from .models import (
    CanonicalTransaction,
    Invoice,
    InvoiceStatus,
    PaymentTransaction,
    RowIssue,
    TransactionStatus,
)
from .reference import normalize_reference

if TYPE_CHECKING:
    from .ledger import LedgerState

log = logging.getLogger(__name__)

# DuckDB errors that mean the store itself is unusable, not that a query is wrong.
_UNAVAILABLE_ERRORS = (
    duckdb.IOException,
    duckdb.ConnectionException,
    duckdb.TransactionException,
)


@dataclass(frozen=True)
class SavedMapping:
    name: str
    signature: str
    roles: dict[str, str]
    use_count: int = 0
    last_used_at: datetime | None = None


class LedgerStore(Protocol):
    """What the reconciliation core needs from persistence."""

    def invoice_scope(self, invoice_id: int) -> Any: ...

    def get_invoice(self, invoice_id: int) -> Invoice | None: ...

    def find_invoice_by_reference(self, reference: str) -> Invoice | None: ...

    def list_invoices(self, status: str | None = None) -> list[Invoice]: ...

    def write_ledger(self, invoice_id: int, state: "LedgerState") -> None: ...

    def insert_transaction(
        self,
        txn: CanonicalTransaction,
        *,
        status: TransactionStatus,
        batch_id: int | None = None,
        invoice_id: int | None = None,
        duplicate_of: int | None = None,
    ) -> PaymentTransaction: ...

    def find_duplicate(
        self, invoice_id: int, reference: str | None, amount: Decimal, payment_date: date
    ) -> PaymentTransaction | None: ...

    def get_transaction(self, txn_id: int) -> PaymentTransaction | None: ...

    def linked_transactions(self, invoice_id: int) -> list[PaymentTransaction]: ...

    def unmatched_transactions(self) -> list[PaymentTransaction]: ...

    def link_transaction(
        self,
        txn_id: int,
        invoice_id: int | None,
        status: TransactionStatus,
        duplicate_of: int | None = None,
    ) -> None: ...

    def set_transaction_status(
        self, txn_ids: Sequence[int], status: TransactionStatus
    ) -> None: ...

    def next_batch_id(self) -> int: ...

    def insert_batch(self, batch: UploadBatch) -> UploadBatch: ...


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

_INVOICE_COLUMNS = (
    "id, reference_number, amount_due, amount_paid, "
    "outstanding_balance, overpaid_amount, status"
)
_TXN_COLUMNS = (
    "id, reference_number, amount, payment_date, description, status, "
    "invoice_id, batch_id, line_number, duplicate_of"
)
_BATCH_COLUMNS = (
    "id, filename, uploaded_by, outcome, message, total_rows, "
    "transactions_processed, matched_count, partial_count, overpaid_count, "
    "unmatched_count, duplicate_count, error_count, non_payment_count, "
    "mapping_json, issues_json, created_at"
)


def _invoice(row: tuple) -> Invoice:
    return Invoice(
        id=row[0],
        reference_number=row[1],
        amount_due=row[2],
        amount_paid=row[3],
        outstanding_balance=row[4],
        overpaid_amount=row[5],
        status=InvoiceStatus(row[6]),
    )


def _transaction(row: tuple) -> PaymentTransaction:
    return PaymentTransaction(
        id=row[0],
        reference_number=row[1],
        amount=row[2],
        payment_date=row[3],
        description=row[4] or "",
        status=TransactionStatus(row[5]),
        invoice_id=row[6],
        batch_id=row[7],
        line_number=row[8],
        duplicate_of=row[9],
    )


class _InvoiceLocks:
    """Registry of one re-entrant lock per invoice id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.RLock] = {}

    def get(self, invoice_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(invoice_id)
            if lock is None:
                lock = self._locks[invoice_id] = threading.RLock()
            return lock


class DuckDBLedgerStore:
    """:class:`LedgerStore` backed by a DuckDB connection.

    Each thread works through its own cursor of *conn*, so one store can be
    shared by concurrent uploads.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection, *, init: bool = True):
        self.conn = conn
        self._local = threading.local()
        self._locks = _InvoiceLocks()
        # Serializes invoice creation so reference numbers stay unique.
        self._create_lock = threading.Lock()
        if init:
            self._run(lambda: init_infra(conn))

    @classmethod
    def open(cls, db_path: str) -> "DuckDBLedgerStore":
        try:
            conn = duckdb.connect(str(db_path))
        except _UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"Cannot open database {db_path}: {e}") from e
        return cls(conn)

    def close(self) -> None:
        self.conn.close()

    # -- plumbing ----------------------------------------------------------

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        cur = getattr(self._local, "cursor", None)
        if cur is None:
            cur = self._local.cursor = self.conn.cursor()
        return cur

    def _run(self, fn):
        try:
            return fn()
        except _UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"{type(e).__name__}: {e}") from e

    def _execute(self, sql: str, params: Sequence[Any] | None = None):
        return self._run(lambda: self._cursor().execute(sql, list(params or [])))

    def _fetchone(self, sql: str, params: Sequence[Any] | None = None):
        return self._run(lambda: self._cursor().execute(sql, list(params or [])).fetchone())

    def _fetchall(self, sql: str, params: Sequence[Any] | None = None) -> list[tuple]:
        return self._run(lambda: self._cursor().execute(sql, list(params or [])).fetchall())

    @contextmanager
    def invoice_scope(self, invoice_id: int) -> Iterator[None]:
        """Hold *invoice_id*'s lock inside one database transaction.

        Nested scopes on the same thread join the outermost transaction;
        an exception anywhere rolls the whole scope back.
        """
        with self._locks.get(invoice_id):
            depth = getattr(self._local, "depth", 0)
            if depth == 0:
                self._execute("BEGIN TRANSACTION")
            self._local.depth = depth + 1
            try:
                yield
            except BaseException:
                self._local.depth = depth
                if depth == 0:
                    self._rollback()
                raise
            self._local.depth = depth
            if depth == 0:
                try:
                    self._execute("COMMIT")
                except StoreUnavailableError:
                    self._rollback()
                    raise

    def _rollback(self) -> None:
        try:
            self._cursor().execute("ROLLBACK")
        except duckdb.Error as e:
            log.warning("Rollback failed: %s", e)

    # -- invoices ----------------------------------------------------------

    def get_invoice(self, invoice_id: int) -> Invoice | None:
        row = self._fetchone(
            f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE id = ?", [invoice_id]
        )
        return _invoice(row) if row else None

    def find_invoice_by_reference(self, reference: str) -> Invoice | None:
        """Exact lookup, case-insensitive and trimmed."""
        key = normalize_reference(reference)
        if not key:
            return None
        row = self._fetchone(
            f"SELECT {_INVOICE_COLUMNS} FROM invoices "
            "WHERE upper(trim(reference_number)) = ? ORDER BY id LIMIT 1",
            [key],
        )
        return _invoice(row) if row else None

    def list_invoices(self, status: str | None = None) -> list[Invoice]:
        sql = f"SELECT {_INVOICE_COLUMNS} FROM invoices"
        params: list[Any] = []
        if status:
            sql += " WHERE lower(status) = lower(?)"
            params.append(status)
        sql += " ORDER BY id"
        return [_invoice(r) for r in self._fetchall(sql, params)]

    def upsert_invoice(self, reference_number: str, amount_due: Decimal) -> tuple[Invoice, bool]:
        """Create an invoice or update its ``amount_due``.

        Returns ``(invoice, created)``. Derived fields are left to the ledger.
        """
        reference_number = reference_number.strip()
        with self._create_lock:
            existing = self.find_invoice_by_reference(reference_number)
            if existing is None:
                row = self._fetchone(
                    "INSERT INTO invoices (reference_number, amount_due, outstanding_balance) "
                    "VALUES (?, ?, ?) RETURNING id",
                    [reference_number, amount_due, amount_due],
                )
                return self.get_invoice(row[0]), True
        with self.invoice_scope(existing.id):
            self._execute(
                "UPDATE invoices SET amount_due = ?, updated_at = current_timestamp "
                "WHERE id = ?",
                [amount_due, existing.id],
            )
        return self.get_invoice(existing.id), False

    def write_ledger(self, invoice_id: int, state: "LedgerState") -> None:
        self._execute(
            """
            UPDATE invoices
            SET amount_paid = ?, outstanding_balance = ?, overpaid_amount = ?,
                status = ?, updated_at = current_timestamp
            WHERE id = ?
            """,
            [
                state.amount_paid,
                state.outstanding_balance,
                state.overpaid_amount,
                str(state.status),
                invoice_id,
            ],
        )

    # -- transactions ------------------------------------------------------

    def insert_transaction(
        self,
        txn: CanonicalTransaction,
        *,
        status: TransactionStatus,
        batch_id: int | None = None,
        invoice_id: int | None = None,
        duplicate_of: int | None = None,
    ) -> PaymentTransaction:
        row = self._fetchone(
            f"""
            INSERT INTO payment_transactions
                (batch_id, line_number, reference_number, amount, payment_date,
                 description, invoice_id, status, duplicate_of)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING {_TXN_COLUMNS}
            """,
            [
                batch_id,
                txn.line_number,
                txn.reference_number,
                txn.amount,
                txn.payment_date,
                txn.description,
                invoice_id,
                str(status),
                duplicate_of,
            ],
        )
        return _transaction(row)

    def find_duplicate(
        self, invoice_id: int, reference: str | None, amount: Decimal, payment_date: date
    ) -> PaymentTransaction | None:
        """Earliest counted transaction on *invoice_id* with the same key."""
        row = self._fetchone(
            f"""
            SELECT {_TXN_COLUMNS} FROM payment_transactions
            WHERE invoice_id = ?
              AND upper(trim(coalesce(reference_number, ''))) = ?
              AND amount = ?
              AND payment_date = ?
              AND status NOT IN (?, ?)
            ORDER BY id
            LIMIT 1
            """,
            [
                invoice_id,
                normalize_reference(reference or ""),
                amount,
                payment_date,
                str(TransactionStatus.DUPLICATE),
                str(TransactionStatus.FAILED),
            ],
        )
        return _transaction(row) if row else None

    def get_transaction(self, txn_id: int) -> PaymentTransaction | None:
        row = self._fetchone(
            f"SELECT {_TXN_COLUMNS} FROM payment_transactions WHERE id = ?", [txn_id]
        )
        return _transaction(row) if row else None

    def linked_transactions(self, invoice_id: int) -> list[PaymentTransaction]:
        rows = self._fetchall(
            f"SELECT {_TXN_COLUMNS} FROM payment_transactions "
            "WHERE invoice_id = ? ORDER BY id",
            [invoice_id],
        )
        return [_transaction(r) for r in rows]

    def unmatched_transactions(self) -> list[PaymentTransaction]:
        return self.list_transactions(status=TransactionStatus.UNMATCHED)

    def list_transactions(
        self,
        *,
        status: str | None = None,
        reference: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        batch_id: int | None = None,
    ) -> list[PaymentTransaction]:
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            clauses.append("lower(status) = lower(?)")
            params.append(str(status))
        if reference:
            clauses.append("upper(trim(reference_number)) = ?")
            params.append(normalize_reference(reference))
        if date_from:
            clauses.append("payment_date >= ?")
            params.append(date_from)
        if date_to:
            clauses.append("payment_date <= ?")
            params.append(date_to)
        if batch_id is not None:
            clauses.append("batch_id = ?")
            params.append(batch_id)
        sql = f"SELECT {_TXN_COLUMNS} FROM payment_transactions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        return [_transaction(r) for r in self._fetchall(sql, params)]

    def link_transaction(
        self,
        txn_id: int,
        invoice_id: int | None,
        status: TransactionStatus,
        duplicate_of: int | None = None,
    ) -> None:
        self._execute(
            """
            UPDATE payment_transactions
            SET invoice_id = ?, status = ?, duplicate_of = ?,
                updated_at = current_timestamp
            WHERE id = ?
            """,
            [invoice_id, str(status), duplicate_of, txn_id],
        )

    def set_transaction_status(
        self, txn_ids: Sequence[int], status: TransactionStatus
    ) -> None:
        ids = list(txn_ids)
        if not ids:
            return
        placeholders = ", ".join("?" for _ in ids)
        self._execute(
            f"UPDATE payment_transactions SET status = ?, updated_at = current_timestamp "
            f"WHERE id IN ({placeholders})",
            [str(status), *ids],
        )

    # -- upload batches ----------------------------------------------------

    def next_batch_id(self) -> int:
        """Reserve an id for a batch whose audit record is written at the end."""
        return int(self._fetchone("SELECT nextval('upload_batches_seq')")[0])

    def insert_batch(self, batch: UploadBatch) -> UploadBatch:
        """Write a batch's audit record. Records are never updated afterwards."""
        params = [
            batch.filename,
            batch.uploaded_by,
            batch.outcome,
            batch.message,
            batch.total_rows,
            batch.transactions_processed,
            batch.matched_count,
            batch.partial_count,
            batch.overpaid_count,
            batch.unmatched_count,
            batch.duplicate_count,
            batch.error_count,
            batch.non_payment_count,
            json.dumps(batch.mapping) if batch.mapping is not None else None,
            json.dumps([i.to_dict() for i in batch.issues]),
        ]
        columns = (
            "filename, uploaded_by, outcome, message, total_rows, "
            "transactions_processed, matched_count, partial_count, overpaid_count, "
            "unmatched_count, duplicate_count, error_count, non_payment_count, "
            "mapping_json, issues_json"
        )
        placeholders = ", ".join("?" for _ in params)
        if batch.id is not None:
            columns = "id, " + columns
            placeholders = "?, " + placeholders
            params = [batch.id, *params]
        row = self._fetchone(
            f"INSERT INTO upload_batches ({columns}) VALUES ({placeholders}) "
            "RETURNING id, created_at",
            params,
        )
        return replace(batch, id=row[0], created_at=row[1])

    def get_batch(self, batch_id: int) -> UploadBatch | None:
        row = self._fetchone(
            f"SELECT {_BATCH_COLUMNS} FROM upload_batches WHERE id = ?", [batch_id]
        )
        return _batch(row) if row else None

    def list_batches(self, limit: int | None = None) -> list[UploadBatch]:
        sql = f"SELECT {_BATCH_COLUMNS} FROM upload_batches ORDER BY id DESC"
        params: list[Any] = []
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [_batch(r) for r in self._fetchall(sql, params)]

    # -- saved column mappings ---------------------------------------------

    def save_column_mapping(self, name: str, signature: str, roles: dict[str, str]) -> SavedMapping:
        """Save *roles* under *name*, replacing any mapping with that name or signature."""
        self._execute(
            "DELETE FROM column_mappings WHERE name = ? OR signature = ?", [name, signature]
        )
        self._execute(
            "INSERT INTO column_mappings (name, signature, roles_json) VALUES (?, ?, ?)",
            [name, signature, json.dumps(roles, sort_keys=True)],
        )
        return SavedMapping(name=name, signature=signature, roles=dict(roles))

    def find_column_mapping(self, signature: str) -> SavedMapping | None:
        row = self._fetchone(
            "SELECT name, signature, roles_json, use_count, last_used_at "
            "FROM column_mappings WHERE signature = ? "
            "ORDER BY created_at DESC LIMIT 1",
            [signature],
        )
        return _mapping(row) if row else None

    def mark_mapping_used(self, name: str) -> None:
        self._execute(
            "UPDATE column_mappings SET use_count = use_count + 1, "
            "last_used_at = current_timestamp WHERE name = ?",
            [name],
        )

    def list_column_mappings(self) -> list[SavedMapping]:
        rows = self._fetchall(
            "SELECT name, signature, roles_json, use_count, last_used_at "
            "FROM column_mappings ORDER BY name"
        )
        return [_mapping(r) for r in rows]

    def delete_column_mapping(self, name: str) -> bool:
        row = self._fetchone(
            "DELETE FROM column_mappings WHERE name = ? RETURNING name", [name]
        )
        return row is not None


def _mapping(row: tuple) -> SavedMapping:
    return SavedMapping(
        name=row[0],
        signature=row[1],
        roles=json.loads(row[2]),
        use_count=row[3] or 0,
        last_used_at=row[4],
    )


def _batch(row: tuple) -> UploadBatch:
    issues = tuple(
        RowIssue(i.get("line"), i.get("kind", ""), i.get("reason", ""))
        for i in json.loads(row[15] or "[]")
    )
    return UploadBatch(
        id=row[0],
        filename=row[1],
        uploaded_by=row[2],
        outcome=row[3],
        message=row[4],
        total_rows=row[5] or 0,
        transactions_processed=row[6] or 0,
        matched_count=row[7] or 0,
        partial_count=row[8] or 0,
        overpaid_count=row[9] or 0,
        unmatched_count=row[10] or 0,
        duplicate_count=row[11] or 0,
        error_count=row[12] or 0,
        non_payment_count=row[13] or 0,
        mapping=json.loads(row[14]) if row[14] else None,
        issues=issues,
        created_at=row[16],
    )


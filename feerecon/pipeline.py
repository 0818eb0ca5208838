"""Batch orchestration: one uploaded statement from raw text to audit record.

parse -> detect schema -> normalize -> link -> recompute -> audit

Recomputation is deferred until every row of the batch is linked, then run
once per touched invoice.  If the store fails mid-batch, the invoices
touched so far are recomputed before the batch is reported as aborted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .audit import ABORTED, COMPLETED, REJECTED, UploadBatch, build_batch, record_batch
from .config import ReconConfig
from .errors import (
    BatchAbortedError,
    ConfigError,
    MalformedInputError,
    SchemaAmbiguousError,
    StoreUnavailableError,
)
from .ledger import recompute_invoice
from .models import Invoice, PaymentTransaction, RowIssue
from .normalize import MALFORMED, normalize_rows
from .reconcile import ReconciliationEngine
from .schema import IGNORE, SchemaMapping, detect_schema, header_signature
from .store import DuckDBLedgerStore
from .tabular import ParsedTable, parse_delimited

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatementAnalysis:
    table: ParsedTable
    mapping: SchemaMapping
    saved_mapping: str | None = None


@dataclass(frozen=True)
class BatchResult:
    batch: UploadBatch
    transactions: tuple[PaymentTransaction, ...]
    changed_invoices: tuple[Invoice, ...]
    mapping: SchemaMapping


def mapping_roles(mapping: SchemaMapping) -> dict[str, str]:
    """role -> column name for the first column holding each role."""
    roles: dict[str, str] = {}
    for col in mapping.columns:
        if col.role != IGNORE and col.role not in roles:
            roles[col.role] = col.name
    return roles


def analyze_statement(
    text: str,
    config: ReconConfig | None = None,
    overrides: dict[str, str | int] | None = None,
    store: DuckDBLedgerStore | None = None,
) -> StatementAnalysis:
    """Parse *text* and detect its column roles.

    Without explicit *overrides*, a mapping saved for the same header
    signature is applied when *store* has one.

    Raises:
        MalformedInputError: nothing usable could be read.
        SchemaAmbiguousError: a required role has no confident column.
    """
    config = config or ReconConfig()
    table = parse_delimited(
        text,
        delimiter=config.delimiter,
        trailing_cell_tolerance=config.trailing_cell_tolerance,
    )
    log.info(
        "Parsed %d row(s) (%d skipped), delimiter %r, %d column(s)",
        len(table.rows),
        len(table.skipped),
        table.delimiter,
        table.width,
    )

    saved_name = None
    if not overrides and store is not None:
        signature = header_signature(table.header)
        saved = store.find_column_mapping(signature) if signature else None
        if saved is not None:
            overrides = dict(saved.roles)
            saved_name = saved.name
            log.info("Using saved column mapping '%s'", saved.name)

    mapping = detect_schema(table, config, overrides)
    for col in mapping.columns:
        log.info(
            "  %-24s %-12s %.2f%s",
            col.name,
            col.role,
            col.confidence,
            " (override)" if col.override else "",
        )
    if saved_name is not None and store is not None:
        store.mark_mapping_used(saved_name)
    return StatementAnalysis(table=table, mapping=mapping, saved_mapping=saved_name)


def process_statement(
    store: DuckDBLedgerStore,
    text: str,
    filename: str,
    *,
    uploaded_by: str | None = None,
    config: ReconConfig | None = None,
    overrides: dict[str, str | int] | None = None,
    save_mapping_as: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BatchResult:
    """Run one upload batch end to end and write its audit record.

    Raises:
        MalformedInputError, SchemaAmbiguousError, ConfigError: the batch
            was rejected before any row was stored; a ``rejected`` audit
            record is written first.
        BatchAbortedError: the store failed mid-batch; ``batch`` holds the
            partial counters.
    """
    config = config or ReconConfig()
    batch_id = store.next_batch_id()
    log.info("Processing %s (batch %d)", filename, batch_id)

    try:
        analysis = analyze_statement(text, config, overrides, store)
        signature = header_signature(analysis.table.header)
        if save_mapping_as and signature is None:
            raise ConfigError("Cannot save a column mapping for a file without a header row")
    except (MalformedInputError, SchemaAmbiguousError, ConfigError) as e:
        record_batch(
            store,
            build_batch(
                filename,
                outcome=REJECTED,
                uploaded_by=uploaded_by,
                message=str(e),
                batch_id=batch_id,
            ),
        )
        raise

    table, mapping = analysis.table, analysis.mapping
    roles = mapping_roles(mapping)
    if save_mapping_as:
        store.save_column_mapping(save_mapping_as, signature, roles)
        log.info("Saved column mapping '%s'", save_mapping_as)

    normalized = normalize_rows(table, mapping, config)
    for issue in normalized.issues:
        if issue.kind == MALFORMED:
            log.warning("Line %s skipped: %s", issue.line_number, issue.reason)
    log.info(
        "Normalized %d transaction(s) from %d row(s)",
        len(normalized.transactions),
        normalized.rows_seen,
    )

    engine = ReconciliationEngine(store, config, sleep=sleep)
    issues: list[RowIssue] = list(normalized.issues)
    linked: list[PaymentTransaction] = []
    touched: set[int] = set()

    def batch_record(outcome: str, message: str | None = None, transactions=None) -> UploadBatch:
        return build_batch(
            filename,
            transactions=linked if transactions is None else transactions,
            issues=sorted(issues, key=lambda i: i.line_number or 0),
            total_rows=normalized.rows_seen,
            transactions_processed=len(normalized.transactions),
            outcome=outcome,
            uploaded_by=uploaded_by,
            message=message,
            mapping=roles,
            batch_id=batch_id,
        )

    changed: list[Invoice] = []
    try:
        for txn in normalized.transactions:
            outcome = engine.link(txn, batch_id=batch_id)
            linked.append(outcome.transaction)
            if outcome.issue is not None:
                issues.append(outcome.issue)
            if outcome.invoice is not None:
                touched.add(outcome.invoice.id)

        for invoice_id in sorted(touched):
            invoice, was_changed = recompute_invoice(store, invoice_id)
            if was_changed:
                changed.append(invoice)
    except StoreUnavailableError as e:
        raise _abort(store, batch_record, touched, len(linked), e) from e

    final = tuple(store.list_transactions(batch_id=batch_id))
    batch = record_batch(store, batch_record(COMPLETED, transactions=final))
    return BatchResult(
        batch=batch,
        transactions=final,
        changed_invoices=tuple(changed),
        mapping=mapping,
    )


def _abort(store, batch_record, touched: set[int], stored: int, error: Exception) -> BatchAbortedError:
    message = f"Store unavailable after {stored} row(s): {error}"
    log.error("Batch aborted: %s", message)
    try:
        for invoice_id in sorted(touched):
            recompute_invoice(store, invoice_id)
    except StoreUnavailableError as e:
        log.error(
            "Could not recompute %d touched invoice(s) (%s); run `feerecon recompute`",
            len(touched),
            e,
        )
    batch = batch_record(ABORTED, message)
    try:
        batch = record_batch(store, batch)
    except StoreUnavailableError as e:
        log.error("Could not write audit record for aborted batch: %s", e)
    return BatchAbortedError(message, batch)

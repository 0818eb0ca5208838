"""Upload audit log.

One :class:`UploadBatch` per upload, written once after the batch finishes
(completed, rejected or aborted) and never updated.  The reconciliation
logic never reads it back.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from .models import PaymentTransaction, RowIssue, TransactionStatus

log = logging.getLogger(__name__)

COMPLETED = "completed"
REJECTED = "rejected"
ABORTED = "aborted"

# Row issue kinds that count as errors, alongside Failed transactions.
ERROR_ISSUE_KINDS = frozenset({"malformed", "parse_error"})


@dataclass(frozen=True)
class UploadBatch:
    filename: str
    outcome: str = COMPLETED
    uploaded_by: str | None = None
    message: str | None = None
    total_rows: int = 0
    transactions_processed: int = 0
    matched_count: int = 0
    partial_count: int = 0
    overpaid_count: int = 0
    unmatched_count: int = 0
    duplicate_count: int = 0
    error_count: int = 0
    non_payment_count: int = 0
    mapping: dict[str, str] | None = None
    issues: tuple[RowIssue, ...] = field(default=())
    id: int | None = None
    created_at: datetime | None = None

    def counters(self) -> dict[str, int]:
        return {
            "total_rows": self.total_rows,
            "transactions_processed": self.transactions_processed,
            "matched_count": self.matched_count,
            "partial_count": self.partial_count,
            "overpaid_count": self.overpaid_count,
            "unmatched_count": self.unmatched_count,
            "duplicate_count": self.duplicate_count,
            "error_count": self.error_count,
            "non_payment_count": self.non_payment_count,
        }


def build_batch(
    filename: str,
    *,
    transactions: Iterable[PaymentTransaction] = (),
    issues: Iterable[RowIssue] = (),
    total_rows: int = 0,
    transactions_processed: int | None = None,
    outcome: str = COMPLETED,
    uploaded_by: str | None = None,
    message: str | None = None,
    mapping: dict[str, str] | None = None,
    batch_id: int | None = None,
) -> UploadBatch:
    """Count *transactions* by their final status and *issues* by kind.

    ``transactions_processed`` defaults to the number of transactions given;
    an aborted batch passes the number of rows that normalized so the gap
    to the persisted set is visible.
    """
    transactions = list(transactions)
    issues = tuple(issues)
    by_status = Counter(t.status for t in transactions)
    by_kind = Counter(i.kind for i in issues)
    errors = by_status[TransactionStatus.FAILED] + sum(
        by_kind[k] for k in ERROR_ISSUE_KINDS
    )
    return UploadBatch(
        id=batch_id,
        filename=filename,
        outcome=outcome,
        uploaded_by=uploaded_by,
        message=message,
        total_rows=total_rows,
        transactions_processed=(
            len(transactions) if transactions_processed is None else transactions_processed
        ),
        matched_count=by_status[TransactionStatus.MATCHED],
        partial_count=by_status[TransactionStatus.PARTIAL],
        overpaid_count=by_status[TransactionStatus.OVERPAID],
        unmatched_count=by_status[TransactionStatus.UNMATCHED],
        duplicate_count=by_status[TransactionStatus.DUPLICATE],
        error_count=errors,
        non_payment_count=by_kind["non_payment"],
        mapping=mapping,
        issues=issues,
    )


def record_batch(store, batch: UploadBatch) -> UploadBatch:
    """Persist *batch* and log its counters."""
    saved = store.insert_batch(batch)
    log.info(
        "Batch %s (%s) %s: %d row(s), %d transaction(s): "
        "matched=%d partial=%d overpaid=%d unmatched=%d duplicate=%d "
        "error=%d non_payment=%d",
        saved.id,
        saved.filename,
        saved.outcome,
        saved.total_rows,
        saved.transactions_processed,
        saved.matched_count,
        saved.partial_count,
        saved.overpaid_count,
        saved.unmatched_count,
        saved.duplicate_count,
        saved.error_count,
        saved.non_payment_count,
    )
    return saved


def format_batch(batch: UploadBatch) -> list[str]:
    """Human-readable lines for one audit record."""
    lines = [
        f"Batch {batch.id}: {batch.filename} [{batch.outcome}]"
        + (f" by {batch.uploaded_by}" if batch.uploaded_by else "")
    ]
    if batch.message:
        lines.append(f"  {batch.message}")
    for key, value in batch.counters().items():
        lines.append(f"  {key + ':':<24} {value}")
    return lines

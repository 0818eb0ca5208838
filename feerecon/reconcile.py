"""Reconciliation engine: attach transactions to invoices.

Per transaction:

1. Lookup: the invoice whose reference equals the extracted reference
   (case-insensitive, trimmed; optionally through zero-padded variants).
   No reference or no invoice -> ``Unmatched``.
2. Duplicate check: a counted transaction with the same reference, amount
   and payment date already linked to that invoice -> ``Duplicate``, linked
   with ``duplicate_of`` set and excluded from the ledger.
3. Link: otherwise linked as ``Matched``.  This status is provisional; the
   ledger recompute that follows synchronizes it to the invoice's aggregate.

Invoice lookups that hit an unavailable store are retried with exponential
backoff; once the retries are spent the row is stored as ``Failed`` and the
batch carries on.  A later relink run retries Failed rows.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from .config import ReconConfig
from .errors import ReconError, StoreUnavailableError
from .ledger import RepairReport, recompute_invoice, recompute_invoices
from .models import (
    CanonicalTransaction,
    Invoice,
    PaymentTransaction,
    RowIssue,
    TransactionStatus,
)
from .reference import reference_variants
from .store import LedgerStore

log = logging.getLogger(__name__)

T = TypeVar("T")

DUPLICATE = "duplicate"
STORE_ERROR = "store_error"


def with_retries(
    fn: Callable[[], T],
    *,
    what: str,
    max_retries: int = 3,
    backoff: float = 0.5,
    max_backoff: float = 8.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn*, retrying on :class:`StoreUnavailableError`.

    Waits ``backoff`` (doubling, capped at ``max_backoff``) plus jitter
    between attempts.  Re-raises the last error once ``max_retries`` retries
    are spent.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except StoreUnavailableError as e:
            if attempt < max_retries:
                jitter = random.uniform(0, backoff / 2)
                log.warning(
                    "[Retry %d/%d] %s: %s",
                    attempt + 1,
                    max_retries,
                    what,
                    e,
                )
                sleep(backoff + jitter)
                backoff = min(backoff * 2, max_backoff)
                attempt += 1
                continue
            raise


@dataclass(frozen=True)
class LinkOutcome:
    transaction: PaymentTransaction
    invoice: Invoice | None = None
    issue: RowIssue | None = None


@dataclass
class RelinkReport:
    """Outcome of re-evaluating Unmatched and Failed transactions."""

    examined: int = 0
    retried: int = 0
    linked: int = 0
    duplicates: int = 0
    repair: RepairReport = field(default_factory=RepairReport)


class ReconciliationEngine:
    def __init__(
        self,
        store: LedgerStore,
        config: ReconConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.config = config or ReconConfig()
        self._sleep = sleep

    def _retry(self, fn: Callable[[], T], what: str) -> T:
        return with_retries(
            fn,
            what=what,
            max_retries=self.config.max_retries,
            backoff=self.config.retry_backoff_s,
            max_backoff=self.config.max_backoff_s,
            sleep=self._sleep,
        )

    def lookup_invoice(self, reference: str | None) -> Invoice | None:
        """Invoice for *reference*, trying padded variants in order."""
        if not reference:
            return None
        for key in reference_variants(reference, self.config.reference_digit_width):
            invoice = self.store.find_invoice_by_reference(key)
            if invoice is not None:
                return invoice
        return None

    # -- ingestion ---------------------------------------------------------

    def link(self, txn: CanonicalTransaction, *, batch_id: int | None = None) -> LinkOutcome:
        """Persist *txn* and attach it to its invoice.

        Raises:
            StoreUnavailableError: if the transaction itself cannot be
                written; the caller aborts the batch.
        """
        ref = txn.reference_number
        if not ref:
            saved = self._retry(
                lambda: self.store.insert_transaction(
                    txn, status=TransactionStatus.UNMATCHED, batch_id=batch_id
                ),
                f"store unmatched row {txn.line_number}",
            )
            return LinkOutcome(saved)

        try:
            invoice = self._retry(
                lambda: self.lookup_invoice(ref), f"invoice lookup for {ref}"
            )
        except StoreUnavailableError as e:
            log.warning(
                "Line %d: invoice lookup for %s failed after %d retries, marking Failed",
                txn.line_number,
                ref,
                self.config.max_retries,
            )
            saved = self._retry(
                lambda: self.store.insert_transaction(
                    txn, status=TransactionStatus.FAILED, batch_id=batch_id
                ),
                f"store failed row {txn.line_number}",
            )
            return LinkOutcome(
                saved,
                issue=RowIssue(txn.line_number, STORE_ERROR, f"invoice lookup failed: {e}"),
            )

        if invoice is None:
            saved = self._retry(
                lambda: self.store.insert_transaction(
                    txn, status=TransactionStatus.UNMATCHED, batch_id=batch_id
                ),
                f"store unmatched row {txn.line_number}",
            )
            return LinkOutcome(saved)

        return self._retry(
            lambda: self._attach(txn, invoice, batch_id),
            f"link row {txn.line_number} to {invoice.reference_number}",
        )

    def _attach(
        self, txn: CanonicalTransaction, invoice: Invoice, batch_id: int | None
    ) -> LinkOutcome:
        with self.store.invoice_scope(invoice.id):
            original = self.store.find_duplicate(
                invoice.id, txn.reference_number, txn.amount, txn.payment_date
            )
            if original is None:
                saved = self.store.insert_transaction(
                    txn,
                    status=TransactionStatus.MATCHED,
                    batch_id=batch_id,
                    invoice_id=invoice.id,
                )
                return LinkOutcome(saved, invoice)

            saved = self.store.insert_transaction(
                txn,
                status=TransactionStatus.DUPLICATE,
                batch_id=batch_id,
                invoice_id=invoice.id,
                duplicate_of=original.id,
            )
        log.warning(
            "Line %d: %s %s on %s duplicates transaction %d; not counted",
            txn.line_number,
            invoice.reference_number,
            txn.amount,
            txn.payment_date.isoformat(),
            original.id,
        )
        return LinkOutcome(
            saved,
            invoice,
            RowIssue(
                txn.line_number,
                DUPLICATE,
                f"same reference, amount and date as transaction {original.id}",
            ),
        )

    # -- operator actions --------------------------------------------------

    def relink_unmatched(self) -> RelinkReport:
        """Re-run lookup for Unmatched and Failed transactions, then recompute.

        Picks up invoices imported after the statement was uploaded, and
        rows whose lookup failed while the store was unavailable.  A Failed
        row whose reference still names no invoice becomes Unmatched.
        """
        report = RelinkReport()
        touched: set[int] = set()
        candidates = sorted(
            self.store.unmatched_transactions()
            + self.store.list_transactions(status=TransactionStatus.FAILED),
            key=lambda t: t.id,
        )
        for txn in candidates:
            report.examined += 1
            failed = txn.status == TransactionStatus.FAILED
            if failed:
                report.retried += 1
            invoice = self._retry(
                lambda: self.lookup_invoice(txn.reference_number),
                f"invoice lookup for {txn.reference_number}",
            )
            if invoice is None:
                if failed:
                    self.store.set_transaction_status([txn.id], TransactionStatus.UNMATCHED)
                continue
            with self.store.invoice_scope(invoice.id):
                original = self.store.find_duplicate(
                    invoice.id, txn.reference_number, txn.amount, txn.payment_date
                )
                if original is None:
                    self.store.link_transaction(txn.id, invoice.id, TransactionStatus.MATCHED)
                    report.linked += 1
                else:
                    self.store.link_transaction(
                        txn.id, invoice.id, TransactionStatus.DUPLICATE, original.id
                    )
                    report.duplicates += 1
            touched.add(invoice.id)
            log.info("  transaction %d -> %s", txn.id, invoice.reference_number)

        report.repair = recompute_invoices(self.store, touched)
        log.info(
            "Relinked %d of %d transaction(s) (%d duplicate, %d previously failed)",
            report.linked + report.duplicates,
            report.examined,
            report.duplicates,
            report.retried,
        )
        return report

    def release_duplicate(self, txn_id: int) -> Invoice:
        """Count a flagged duplicate as a distinct payment after all."""
        txn = self.store.get_transaction(txn_id)
        if txn is None:
            raise LookupError(f"Transaction {txn_id} does not exist")
        if txn.status != TransactionStatus.DUPLICATE or txn.invoice_id is None:
            raise ReconError(
                f"Transaction {txn_id} is {txn.status}, only linked Duplicate "
                "transactions can be released"
            )
        with self.store.invoice_scope(txn.invoice_id):
            self.store.link_transaction(txn.id, txn.invoice_id, TransactionStatus.MATCHED)
            invoice, _ = recompute_invoice(self.store, txn.invoice_id)
        log.info(
            "Released transaction %d; %s is now %s", txn_id, invoice.reference_number, invoice.status
        )
        return invoice

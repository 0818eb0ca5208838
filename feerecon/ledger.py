"""Ledger recomputation.

An invoice's ``amount_paid``, ``outstanding_balance``, ``overpaid_amount``
and ``status`` are a pure function of ``amount_due`` and the amounts of the
transactions currently linked to it (Duplicate and Failed excluded).  They
are always recomputed in full from the linked set, never incremented, so a
recompute can be repeated, reordered or run over the whole table at any
time with the same result.

The same :func:`recompute_invoice` runs inline after every batch and as the
``recompute`` repair command.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable

from .models import (
    TRANSACTION_STATUS_FOR_INVOICE,
    Invoice,
    InvoiceStatus,
)
from .values import ZERO, round_money

if TYPE_CHECKING:
    from .store import LedgerStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerState:
    amount_paid: Decimal
    outstanding_balance: Decimal
    overpaid_amount: Decimal
    status: InvoiceStatus


def invoice_status(amount_due: Decimal, amount_paid: Decimal) -> InvoiceStatus:
    """Status by the ordered rule: Overpaid, Paid, Partial, Unpaid."""
    if amount_paid > amount_due:
        return InvoiceStatus.OVERPAID
    if amount_paid == amount_due:
        return InvoiceStatus.PAID
    if amount_paid > 0:
        return InvoiceStatus.PARTIAL
    return InvoiceStatus.UNPAID


def compute_ledger(amount_due: Decimal, amounts: Iterable[Decimal]) -> LedgerState:
    """Derive the ledger fields from *amount_due* and the counted amounts."""
    due = round_money(Decimal(amount_due))
    paid = round_money(sum((Decimal(a) for a in amounts), ZERO))
    return LedgerState(
        amount_paid=paid,
        outstanding_balance=max(ZERO, due - paid),
        overpaid_amount=max(ZERO, paid - due),
        status=invoice_status(due, paid),
    )


def ledger_of(invoice: Invoice) -> LedgerState:
    return LedgerState(
        amount_paid=invoice.amount_paid,
        outstanding_balance=invoice.outstanding_balance,
        overpaid_amount=invoice.overpaid_amount,
        status=invoice.status,
    )


def recompute_invoice(store: "LedgerStore", invoice_id: int) -> tuple[Invoice, bool]:
    """Recompute one invoice from its linked transactions, atomically.

    Also synchronizes the status of every counted linked transaction to
    the invoice's aggregate (Partial, Matched or Overpaid).

    Returns ``(invoice_after, changed)``.
    """
    with store.invoice_scope(invoice_id):
        invoice = store.get_invoice(invoice_id)
        if invoice is None:
            raise LookupError(f"Invoice {invoice_id} does not exist")
        counted = [t for t in store.linked_transactions(invoice_id) if t.is_counted()]
        state = compute_ledger(invoice.amount_due, (t.amount for t in counted))
        changed = state != ledger_of(invoice)
        if changed:
            store.write_ledger(invoice_id, state)

        target = TRANSACTION_STATUS_FOR_INVOICE.get(state.status)
        if target is not None:
            stale = [t.id for t in counted if t.status != target]
            if stale:
                store.set_transaction_status(stale, target)

        updated = store.get_invoice(invoice_id)
    if changed:
        log.info(
            "  %s: %s paid=%s outstanding=%s overpaid=%s",
            invoice.reference_number,
            state.status,
            state.amount_paid,
            state.outstanding_balance,
            state.overpaid_amount,
        )
    return updated, changed


@dataclass
class RepairReport:
    """Outcome of a bulk recompute."""

    invoices_checked: int = 0
    changed: list[str] = field(default_factory=list)

    @property
    def invoices_changed(self) -> int:
        return len(self.changed)


def recompute_invoices(store: "LedgerStore", invoice_ids: Iterable[int]) -> RepairReport:
    """Recompute the given invoices in ascending id order."""
    report = RepairReport()
    for invoice_id in sorted(set(invoice_ids)):
        invoice, changed = recompute_invoice(store, invoice_id)
        report.invoices_checked += 1
        if changed:
            report.changed.append(invoice.reference_number)
    return report


def recompute_all(store: "LedgerStore") -> RepairReport:
    """Repair operation: recompute every invoice in the store."""
    report = recompute_invoices(store, (inv.id for inv in store.list_invoices()))
    log.info(
        "Recomputed %d invoice(s), %d changed",
        report.invoices_checked,
        report.invoices_changed,
    )
    return report

"""Invoice and payment transaction records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import StrEnum

from .values import ZERO


class InvoiceStatus(StrEnum):
    UNPAID = "Unpaid"
    PARTIAL = "Partial"
    PAID = "Paid"
    OVERPAID = "Overpaid"


class TransactionStatus(StrEnum):
    UNMATCHED = "Unmatched"
    MATCHED = "Matched"
    PARTIAL = "Partial"
    OVERPAID = "Overpaid"
    DUPLICATE = "Duplicate"
    FAILED = "Failed"


# Linked transactions in these states never count towards amount_paid.
UNCOUNTED_STATUSES = frozenset({TransactionStatus.DUPLICATE, TransactionStatus.FAILED})

# Per-transaction status synchronized from the invoice's aggregate status.
TRANSACTION_STATUS_FOR_INVOICE = {
    InvoiceStatus.PARTIAL: TransactionStatus.PARTIAL,
    InvoiceStatus.PAID: TransactionStatus.MATCHED,
    InvoiceStatus.OVERPAID: TransactionStatus.OVERPAID,
}


@dataclass(frozen=True)
class Invoice:
    """An invoice as supplied by the invoicing system.

    ``amount_paid``, ``outstanding_balance``, ``overpaid_amount`` and
    ``status`` are derived; only :mod:`feerecon.ledger` writes them.
    """

    id: int
    reference_number: str
    amount_due: Decimal
    amount_paid: Decimal = ZERO
    outstanding_balance: Decimal = ZERO
    overpaid_amount: Decimal = ZERO
    status: InvoiceStatus = InvoiceStatus.UNPAID


@dataclass(frozen=True)
class CanonicalTransaction:
    """A normalized statement row, not yet persisted or linked."""

    line_number: int
    reference_number: str | None
    amount: Decimal
    payment_date: date
    description: str


@dataclass(frozen=True)
class PaymentTransaction:
    id: int
    reference_number: str | None
    amount: Decimal
    payment_date: date
    description: str
    status: TransactionStatus
    invoice_id: int | None = None
    batch_id: int | None = None
    line_number: int | None = None
    duplicate_of: int | None = None

    def is_counted(self) -> bool:
        """True if this transaction contributes to its invoice's amount_paid."""
        return self.invoice_id is not None and self.status not in UNCOUNTED_STATUSES


@dataclass(frozen=True)
class RowIssue:
    """A row that did not become a transaction, or was flagged.

    ``kind`` is one of ``malformed``, ``parse_error``, ``non_payment``,
    ``non_transactional``, ``duplicate`` or ``store_error``.
    """

    line_number: int | None
    kind: str
    reason: str

    def to_dict(self) -> dict[str, object]:
        return {"line": self.line_number, "kind": self.kind, "reason": self.reason}

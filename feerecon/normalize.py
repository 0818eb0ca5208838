"""Transaction normalization: parsed rows + schema -> canonical transactions.

One :class:`~feerecon.models.CanonicalTransaction` per qualifying row.
Amounts are positive money received, rounded half-up to cents; dates are
calendar dates.  Rows that do not qualify are never invented into
transactions; each is recorded as a :class:`~feerecon.models.RowIssue`:

- ``malformed``: rejected by the tabular parser, or both debit and credit
  populated
- ``parse_error``: an amount with no usable date, or an amount cell that is
  not a number
- ``non_payment``: money out (debit, negative or zero amount)
- ``non_transactional``: header repeats, balance and total lines, rows with
  no resolvable amount
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal

from .config import ReconConfig
from .models import CanonicalTransaction, RowIssue
from .reference import ReferencePatterns, extract_reference
from .schema import AMOUNT, CREDIT, DATE, DEBIT, DESCRIPTION, REFERENCE, SchemaMapping
from .tabular import ParsedTable, TableRow
from .values import ZERO, is_blank, parse_amount, parse_date, round_money

MALFORMED = "malformed"
PARSE_ERROR = "parse_error"
NON_PAYMENT = "non_payment"
NON_TRANSACTIONAL = "non_transactional"

_BALANCE_LINE_RE = re.compile(
    r"\b(?:opening|closing)\s+balance\b"
    r"|\b(?:brought|carried)\s+(?:forward|fwd)\b"
    r"|\bbalance\s+(?:b/?f|c/?f)\b"
    r"|^\s*(?:sub\s*)?totals?\s*(?:[:\-].*)?$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class NormalizationResult:
    transactions: tuple[CanonicalTransaction, ...]
    issues: tuple[RowIssue, ...]
    rows_seen: int

    def count(self, kind: str) -> int:
        return sum(1 for i in self.issues if i.kind == kind)


class _RowRejected(Exception):
    def __init__(self, kind: str, reason: str):
        self.kind = kind
        self.reason = reason
        super().__init__(reason)


def is_balance_line(text: str) -> bool:
    """True for opening/closing balance, brought/carried forward and total lines."""
    return bool(_BALANCE_LINE_RE.search(text or ""))


def _amount_cell(row: TableRow, idx: int | None, label: str) -> Decimal | None:
    if idx is None:
        return None
    cell = row.cell(idx)
    if is_blank(cell):
        return None
    value = parse_amount(cell)
    if value is None:
        raise _RowRejected(PARSE_ERROR, f"{label} {cell!r} is not a number")
    return value


def _received_amount(row: TableRow, mapping: SchemaMapping) -> Decimal | None:
    """Money received on this row; None when no amount is populated.

    Raises _RowRejected for money out and for rows populating both sides.
    """
    if mapping.has(CREDIT):
        credit = _amount_cell(row, mapping.index_of(CREDIT), "credit")
        debit = _amount_cell(row, mapping.index_of(DEBIT), "debit")
        if credit is not None and debit is not None and credit != ZERO and debit != ZERO:
            raise _RowRejected(MALFORMED, "both debit and credit populated")
        if credit is not None and credit != ZERO:
            if credit < 0:
                raise _RowRejected(NON_PAYMENT, f"negative credit {credit}")
            return credit
        if debit is not None and debit != ZERO:
            raise _RowRejected(NON_PAYMENT, f"debit {abs(debit)}")
        if credit is not None or debit is not None:
            raise _RowRejected(NON_PAYMENT, "zero amount")
        return None

    amount = _amount_cell(row, mapping.index_of(AMOUNT), "amount")
    if amount is None:
        return None
    if amount <= 0:
        raise _RowRejected(NON_PAYMENT, f"amount {amount} is not money received")
    return amount


def _description(row: TableRow, mapping: SchemaMapping) -> str:
    parts = [row.cell(i) for i in mapping.indices_of(DESCRIPTION)]
    return " ".join(p for p in parts if not is_blank(p))


def normalize_row(
    row: TableRow,
    mapping: SchemaMapping,
    patterns: ReferencePatterns,
    *,
    day_first: bool = True,
) -> CanonicalTransaction:
    """Normalize one row.

    Raises:
        _RowRejected: when the row does not yield a payment.
    """
    description = _description(row, mapping)
    text = description or " ".join(c for c in row.cells if not is_blank(c))
    if is_balance_line(text):
        raise _RowRejected(NON_TRANSACTIONAL, "balance or total line")

    amount = _received_amount(row, mapping)
    date_idx = mapping.index_of(DATE)
    date_cell = row.cell(date_idx) if date_idx is not None else ""
    payment_date = parse_date(date_cell, day_first=day_first)

    if amount is None:
        raise _RowRejected(NON_TRANSACTIONAL, "no amount")
    if payment_date is None:
        if is_blank(date_cell):
            raise _RowRejected(PARSE_ERROR, "amount without a date")
        raise _RowRejected(PARSE_ERROR, f"unparseable date {date_cell!r}")

    amount = round_money(amount)
    if amount <= 0:
        raise _RowRejected(NON_PAYMENT, "amount rounds to zero")

    ref_idx = mapping.index_of(REFERENCE)
    reference = extract_reference(
        description,
        row.cell(ref_idx) if ref_idx is not None else "",
        reference_confidence=mapping.confidence_of(REFERENCE),
        patterns=patterns,
    )
    return CanonicalTransaction(
        line_number=row.line_number,
        reference_number=reference,
        amount=amount,
        payment_date=payment_date,
        description=description,
    )


def normalize_rows(
    table: ParsedTable,
    mapping: SchemaMapping,
    config: ReconConfig | None = None,
) -> NormalizationResult:
    """Normalize every row of *table*; see module docstring for row outcomes."""
    config = config or ReconConfig()
    patterns = ReferencePatterns.from_config(config)
    header = tuple(h.lower() for h in table.header) if table.header else None

    transactions: list[CanonicalTransaction] = []
    issues: list[RowIssue] = [
        RowIssue(e.line_number, MALFORMED, e.reason) for e in table.skipped
    ]
    for row in table.rows:
        if header is not None and tuple(c.lower() for c in row.cells) == header:
            issues.append(RowIssue(row.line_number, NON_TRANSACTIONAL, "repeated header"))
            continue
        try:
            transactions.append(
                normalize_row(row, mapping, patterns, day_first=config.day_first)
            )
        except _RowRejected as e:
            issues.append(RowIssue(row.line_number, e.kind, e.reason))

    issues.sort(key=lambda i: i.line_number or 0)
    return NormalizationResult(
        transactions=tuple(transactions),
        issues=tuple(issues),
        rows_seen=table.total_rows,
    )

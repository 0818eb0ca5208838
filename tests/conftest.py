"""Shared fixtures and helpers for the feerecon test suite."""

from datetime import date
from decimal import Decimal

import duckdb
import pytest

from feerecon.config import ReconConfig
from feerecon.errors import StoreUnavailableError
from feerecon.infra import init_infra
from feerecon.models import CanonicalTransaction
from feerecon.store import DuckDBLedgerStore

DEBIT_CREDIT_STATEMENT = """\
Date,Description,Debit,Credit,Balance
,Opening Balance,,,1000.00
02/03/2024,PAYMENT FROM STUDENT HAR234,,2850.00,3850.00
03/03/2024,BANK CHARGES,15.00,,3835.00
"""

SIGNED_AMOUNT_STATEMENT = """\
Posted Date,Narrative,Amount
2024-03-05,SUT001 school fees,1425.00
2024-03-06,Monthly account fee,-35.00
2024-03-07,Deposit ref 0042,500.00
2024-03-08,EFT ZZZ999 unknown payer,100.00
"""


@pytest.fixture
def conn():
    """In-memory DuckDB connection for each test."""
    c = duckdb.connect(":memory:")
    init_infra(c)
    yield c
    c.close()


@pytest.fixture
def store(conn):
    return DuckDBLedgerStore(conn)


@pytest.fixture
def fast_config():
    """Default config without real backoff delays."""
    return ReconConfig(retry_backoff_s=0.0, max_backoff_s=0.0)


@pytest.fixture
def sleeps():
    """Records requested backoff delays instead of sleeping."""
    return []


def make_txn(
    reference: str | None = "HAR234",
    amount: str = "2850.00",
    payment_date: date = date(2024, 3, 2),
    line_number: int = 2,
    description: str = "",
) -> CanonicalTransaction:
    return CanonicalTransaction(
        line_number=line_number,
        reference_number=reference,
        amount=Decimal(amount),
        payment_date=payment_date,
        description=description or f"PAYMENT {reference or ''}".strip(),
    )


@pytest.fixture
def txn():
    """Factory for canonical transactions."""
    return make_txn


class FlakyStore(DuckDBLedgerStore):
    """Store whose invoice lookups or transaction writes fail on demand.

    ``lookup_failures`` / ``insert_failures`` count down one per call; while
    positive the call raises :class:`StoreUnavailableError`.  A negative
    value fails forever.
    """

    def __init__(self, conn, *, lookup_failures: int = 0, insert_failures: int = 0,
                 inserts_before_failing: int = 0):
        super().__init__(conn)
        self.lookup_failures = lookup_failures
        self.insert_failures = insert_failures
        self.inserts_before_failing = inserts_before_failing
        self.lookup_calls = 0

    def find_invoice_by_reference(self, reference):
        self.lookup_calls += 1
        if self.lookup_failures:
            self.lookup_failures -= 1 if self.lookup_failures > 0 else 0
            raise StoreUnavailableError("IOException: database is locked")
        return super().find_invoice_by_reference(reference)

    def insert_transaction(self, txn, **kwargs):
        if self.inserts_before_failing > 0:
            self.inserts_before_failing -= 1
        elif self.insert_failures:
            self.insert_failures -= 1 if self.insert_failures > 0 else 0
            raise StoreUnavailableError("IOException: disk I/O error")
        return super().insert_transaction(txn, **kwargs)


@pytest.fixture
def flaky_store(conn):
    def build(**kwargs) -> FlakyStore:
        return FlakyStore(conn, **kwargs)

    return build

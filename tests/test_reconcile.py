from datetime import date
from decimal import Decimal

import pytest

from feerecon.config import ReconConfig
from feerecon.errors import ReconError, StoreUnavailableError
from feerecon.models import InvoiceStatus, TransactionStatus
from feerecon.reconcile import DUPLICATE, STORE_ERROR, ReconciliationEngine, with_retries

D = Decimal


class TestWithRetries:
    """Tests for the retry helper."""

    def test_returns_first_success(self, sleeps):
        assert with_retries(lambda: 42, what="x", sleep=sleeps.append) == 42
        assert sleeps == []

    def test_retries_then_succeeds(self, sleeps):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StoreUnavailableError("locked")
            return "ok"

        result = with_retries(flaky, what="x", backoff=1.0, max_backoff=8.0, sleep=sleeps.append)
        assert result == "ok"
        assert len(calls) == 3
        assert len(sleeps) == 2
        # exponential base plus at most half a base of jitter
        assert 1.0 <= sleeps[0] <= 1.5
        assert 2.0 <= sleeps[1] <= 3.0

    def test_gives_up(self, sleeps):
        def down():
            raise StoreUnavailableError("gone")

        with pytest.raises(StoreUnavailableError):
            with_retries(down, what="x", max_retries=2, backoff=0.0, sleep=sleeps.append)
        assert len(sleeps) == 2

    def test_backoff_capped(self, sleeps):
        def down():
            raise StoreUnavailableError("gone")

        with pytest.raises(StoreUnavailableError):
            with_retries(down, what="x", max_retries=5, backoff=1.0, max_backoff=2.0, sleep=sleeps.append)
        assert max(sleeps) <= 3.0

    def test_other_errors_not_retried(self, sleeps):
        def broken():
            raise ValueError("bug")

        with pytest.raises(ValueError):
            with_retries(broken, what="x", sleep=sleeps.append)
        assert sleeps == []


class TestLink:
    """Tests for attaching one transaction."""

    def test_no_invoice_is_unmatched(self, store, fast_config, txn):
        engine = ReconciliationEngine(store, fast_config)
        outcome = engine.link(txn(reference="ZZZ999"))
        assert outcome.transaction.status == TransactionStatus.UNMATCHED
        assert outcome.transaction.invoice_id is None
        assert outcome.invoice is None
        assert outcome.issue is None

    def test_no_reference_is_unmatched(self, store, fast_config, txn):
        store.upsert_invoice("HAR234", D("2850.00"))
        outcome = ReconciliationEngine(store, fast_config).link(txn(reference=None))
        assert outcome.transaction.status == TransactionStatus.UNMATCHED

    def test_matched(self, store, fast_config, txn):
        invoice, _ = store.upsert_invoice("HAR234", D("2850.00"))
        outcome = ReconciliationEngine(store, fast_config).link(txn(reference="har234"), batch_id=3)
        assert outcome.transaction.status == TransactionStatus.MATCHED
        assert outcome.transaction.invoice_id == invoice.id
        assert outcome.transaction.batch_id == 3
        assert outcome.invoice.id == invoice.id

    def test_duplicate_linked_but_flagged(self, store, fast_config, txn):
        invoice, _ = store.upsert_invoice("HAR234", D("2850.00"))
        engine = ReconciliationEngine(store, fast_config)
        first = engine.link(txn())
        second = engine.link(txn(line_number=9))
        assert second.transaction.status == TransactionStatus.DUPLICATE
        assert second.transaction.invoice_id == invoice.id
        assert second.transaction.duplicate_of == first.transaction.id
        assert second.issue.kind == DUPLICATE
        assert second.issue.line_number == 9

    def test_different_date_is_not_duplicate(self, store, fast_config, txn):
        store.upsert_invoice("HAR234", D("2850.00"))
        engine = ReconciliationEngine(store, fast_config)
        engine.link(txn(amount="1425.00"))
        second = engine.link(txn(amount="1425.00", payment_date=date(2024, 4, 2)))
        assert second.transaction.status == TransactionStatus.MATCHED

    def test_lookup_recovers_within_retries(self, store, flaky_store, fast_config, sleeps, txn):
        store.upsert_invoice("HAR234", D("2850.00"))
        store = flaky_store(lookup_failures=2)
        engine = ReconciliationEngine(store, fast_config, sleep=sleeps.append)
        outcome = engine.link(txn())
        assert outcome.transaction.status == TransactionStatus.MATCHED
        assert len(sleeps) == 2

    def test_lookup_failure_marks_failed(self, flaky_store, fast_config, sleeps, txn):
        store = flaky_store(lookup_failures=-1)
        engine = ReconciliationEngine(store, fast_config, sleep=sleeps.append)
        outcome = engine.link(txn())
        assert outcome.transaction.status == TransactionStatus.FAILED
        assert outcome.issue.kind == STORE_ERROR
        assert store.lookup_calls == fast_config.max_retries + 1
        assert len(sleeps) == fast_config.max_retries

    def test_failed_row_write_is_retried(self, flaky_store, fast_config, sleeps, txn):
        store = flaky_store(lookup_failures=-1, insert_failures=1)
        engine = ReconciliationEngine(store, fast_config, sleep=sleeps.append)
        outcome = engine.link(txn())
        assert outcome.transaction.status == TransactionStatus.FAILED
        assert store.get_transaction(outcome.transaction.id) is not None
        assert len(sleeps) == fast_config.max_retries + 1

    def test_insert_failure_propagates(self, flaky_store, fast_config, sleeps, txn):
        store = flaky_store(insert_failures=-1)
        engine = ReconciliationEngine(store, fast_config, sleep=sleeps.append)
        with pytest.raises(StoreUnavailableError):
            engine.link(txn(reference="ZZZ999"))

    def test_padded_reference_variant(self, store, txn):
        invoice, _ = store.upsert_invoice("HAR020", D("500.00"))
        exact = ReconciliationEngine(store, ReconConfig(retry_backoff_s=0.0))
        assert exact.link(txn(reference="HAR20")).transaction.status == TransactionStatus.UNMATCHED

        padded = ReconciliationEngine(
            store, ReconConfig(reference_digit_width=3, retry_backoff_s=0.0)
        )
        outcome = padded.link(txn(reference="HAR20"))
        assert outcome.transaction.invoice_id == invoice.id


class TestRelink:
    """Tests for re-evaluating Unmatched and Failed transactions."""

    def test_links_after_invoice_import(self, store, fast_config, txn):
        engine = ReconciliationEngine(store, fast_config)
        engine.link(txn())
        engine.link(txn(reference="ZZZ999"))

        invoice, _ = store.upsert_invoice("HAR234", D("2850.00"))
        report = engine.relink_unmatched()
        assert report.examined == 2
        assert report.linked == 1
        assert report.duplicates == 0
        assert report.repair.changed == ["HAR234"]
        assert store.get_invoice(invoice.id).status == InvoiceStatus.PAID
        assert len(store.unmatched_transactions()) == 1

    def test_relinked_duplicate(self, store, fast_config, txn):
        engine = ReconciliationEngine(store, fast_config)
        engine.link(txn())
        invoice, _ = store.upsert_invoice("HAR234", D("2850.00"))
        engine.link(txn())
        report = engine.relink_unmatched()
        assert report.duplicates == 1
        assert store.get_invoice(invoice.id).amount_paid == D("2850.00")

    def test_failed_row_linked_once_store_recovers(self, store, flaky_store, fast_config, txn):
        invoice, _ = store.upsert_invoice("HAR234", D("2850.00"))
        outage = ReconciliationEngine(flaky_store(lookup_failures=-1), fast_config)
        failed = outage.link(txn()).transaction
        assert failed.status == TransactionStatus.FAILED

        report = ReconciliationEngine(store, fast_config).relink_unmatched()
        assert report.examined == 1
        assert report.retried == 1
        assert report.linked == 1
        assert store.get_transaction(failed.id).invoice_id == invoice.id
        assert store.get_invoice(invoice.id).status == InvoiceStatus.PAID

    def test_failed_row_without_invoice_becomes_unmatched(self, flaky_store, fast_config, txn):
        outage = ReconciliationEngine(flaky_store(lookup_failures=-1), fast_config)
        failed = outage.link(txn(reference="ZZZ999")).transaction

        healthy = flaky_store()
        report = ReconciliationEngine(healthy, fast_config).relink_unmatched()
        assert report.linked == 0
        assert healthy.get_transaction(failed.id).status == TransactionStatus.UNMATCHED



class TestReleaseDuplicate:
    """Tests for counting a flagged duplicate."""

    def test_release(self, store, fast_config, txn):
        invoice, _ = store.upsert_invoice("HAR234", D("2850.00"))
        engine = ReconciliationEngine(store, fast_config)
        engine.link(txn(amount="1425.00"))
        dup = engine.link(txn(amount="1425.00"))
        after = engine.release_duplicate(dup.transaction.id)
        assert after.id == invoice.id
        assert after.amount_paid == D("2850.00")
        assert after.status == InvoiceStatus.PAID
        assert store.get_transaction(dup.transaction.id).status == TransactionStatus.MATCHED

    def test_missing(self, store, fast_config):
        with pytest.raises(LookupError):
            ReconciliationEngine(store, fast_config).release_duplicate(999)

    def test_not_a_duplicate(self, store, fast_config, txn):
        store.upsert_invoice("HAR234", D("2850.00"))
        engine = ReconciliationEngine(store, fast_config)
        matched = engine.link(txn())
        with pytest.raises(ReconError, match="only linked Duplicate"):
            engine.release_duplicate(matched.transaction.id)

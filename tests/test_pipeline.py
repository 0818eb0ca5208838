import threading
from decimal import Decimal

import pytest

from feerecon.audit import ABORTED, COMPLETED, REJECTED
from feerecon.errors import BatchAbortedError, ConfigError, SchemaAmbiguousError
from feerecon.models import InvoiceStatus, TransactionStatus
from feerecon.pipeline import analyze_statement, process_statement
from feerecon.schema import AMOUNT
from tests.conftest import DEBIT_CREDIT_STATEMENT, SIGNED_AMOUNT_STATEMENT

D = Decimal


class TestProcessStatement:
    """End-to-end tests for one upload batch."""

    def test_full_payment(self, store, fast_config):
        invoice, _ = store.upsert_invoice("HAR234", D("2850.00"))
        result = process_statement(store, DEBIT_CREDIT_STATEMENT, "march.csv", config=fast_config)

        after = store.get_invoice(invoice.id)
        assert after.status == InvoiceStatus.PAID
        assert after.amount_paid == D("2850.00")
        assert after.outstanding_balance == D("0")
        assert after.overpaid_amount == D("0")
        assert [i.reference_number for i in result.changed_invoices] == ["HAR234"]

        batch = result.batch
        assert batch.outcome == COMPLETED
        assert batch.total_rows == 3
        assert batch.transactions_processed == 1
        assert batch.matched_count == 1
        assert batch.non_payment_count == 1
        assert batch.error_count == 0
        assert [t.line_number for t in result.transactions] == [3]

    def test_reupload_is_duplicate(self, store, fast_config):
        invoice, _ = store.upsert_invoice("HAR234", D("2850.00"))
        first = process_statement(store, DEBIT_CREDIT_STATEMENT, "march.csv", config=fast_config)
        second = process_statement(store, DEBIT_CREDIT_STATEMENT, "march.csv", config=fast_config)

        assert second.batch.duplicate_count == 1
        assert second.batch.matched_count == 0
        assert second.changed_invoices == ()
        dup = second.transactions[0]
        assert dup.status == TransactionStatus.DUPLICATE
        assert dup.duplicate_of == first.transactions[0].id
        assert store.get_invoice(invoice.id).amount_paid == D("2850.00")
        assert [i.kind for i in second.batch.issues if i.line_number == 3] == ["duplicate"]

    def test_partial_and_unmatched(self, store, fast_config):
        store.upsert_invoice("SUT001", D("2850.00"))
        result = process_statement(store, SIGNED_AMOUNT_STATEMENT, "april.csv", config=fast_config)
        batch = result.batch
        assert batch.partial_count == 1
        assert batch.unmatched_count == 2
        assert batch.non_payment_count == 1
        assert batch.transactions_processed == 3
        assert store.find_invoice_by_reference("SUT001").status == InvoiceStatus.PARTIAL

    def test_batch_recorded(self, store, fast_config):
        result = process_statement(
            store, DEBIT_CREDIT_STATEMENT, "march.csv", uploaded_by="bursar", config=fast_config
        )
        saved = store.get_batch(result.batch.id)
        assert saved.uploaded_by == "bursar"
        assert saved.unmatched_count == 1
        assert saved.mapping["credit"] == "Credit"
        assert all(t.batch_id == result.batch.id for t in result.transactions)

    def test_ambiguous_schema_rejected(self, store, fast_config):
        text = "Date,Description\n2024-03-01,PAYMENT HAR234\n2024-03-02,PAYMENT SUT001\n"
        with pytest.raises(SchemaAmbiguousError):
            process_statement(store, text, "bad.csv", config=fast_config)
        [batch] = store.list_batches()
        assert batch.outcome == REJECTED
        assert "amount" in batch.message
        assert store.list_transactions() == []

    def test_store_failure_aborts(self, store, flaky_store, fast_config, sleeps):
        invoice, _ = store.upsert_invoice("SUT001", D("1425.00"))
        flaky = flaky_store(insert_failures=-1, inserts_before_failing=1)
        with pytest.raises(BatchAbortedError) as exc:
            process_statement(
                flaky, SIGNED_AMOUNT_STATEMENT, "april.csv", config=fast_config, sleep=sleeps.append
            )
        batch = exc.value.batch
        assert batch.outcome == ABORTED
        assert batch.transactions_processed == 3
        assert batch.matched_count == 1
        assert store.get_batch(batch.id).outcome == ABORTED
        # the row stored before the failure still counts
        assert store.get_invoice(invoice.id).status == InvoiceStatus.PAID
        assert len(sleeps) == fast_config.max_retries


class TestSavedMappings:
    """Tests for reusing a confirmed column mapping."""

    TEXT = (
        "When,Narrative,Paid\n"
        "2024-03-01,PAYMENT HAR234,2850.00\n"
        "2024-03-02,PAYMENT SUT001,1425.00\n"
    )

    def test_saved_mapping_applied_by_header(self, store, fast_config):
        process_statement(
            store,
            self.TEXT,
            "first.csv",
            config=fast_config,
            overrides={AMOUNT: "Paid"},
            save_mapping_as="school-bank",
        )
        analysis = analyze_statement(self.TEXT, fast_config, store=store)
        assert analysis.saved_mapping == "school-bank"
        assert analysis.mapping.index_of(AMOUNT) == 2
        [saved] = store.list_column_mappings()
        assert saved.use_count == 1

    def test_explicit_overrides_win(self, store, fast_config):
        process_statement(
            store,
            self.TEXT,
            "first.csv",
            config=fast_config,
            overrides={AMOUNT: "Paid"},
            save_mapping_as="school-bank",
        )
        analysis = analyze_statement(self.TEXT, fast_config, overrides={AMOUNT: 2}, store=store)
        assert analysis.saved_mapping is None

    def test_headerless_file_cannot_save_mapping(self, store, fast_config):
        text = "2024-03-01,PAYMENT HAR234,2850.00\n2024-03-02,PAYMENT SUT001,1425.00\n"
        with pytest.raises(ConfigError, match="without a header row"):
            process_statement(
                store, text, "noheader.csv", config=fast_config, save_mapping_as="school-bank"
            )
        [batch] = store.list_batches()
        assert batch.outcome == REJECTED
        assert "header row" in batch.message
        assert store.list_column_mappings() == []
        assert store.list_transactions() == []


def test_concurrent_uploads_count_payment_once(store, fast_config):
    """Two batches carrying the same payment race for one invoice."""
    invoice, _ = store.upsert_invoice("HAR234", D("2850.00"))
    errors: list[BaseException] = []

    def upload(name):
        try:
            process_statement(store, DEBIT_CREDIT_STATEMENT, name, config=fast_config)
        except BaseException as e:
            errors.append(e)
            raise

    threads = [threading.Thread(target=upload, args=(f"copy{i}.csv",)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert errors == []
    statuses = sorted(t.status for t in store.linked_transactions(invoice.id))
    assert statuses == [TransactionStatus.DUPLICATE, TransactionStatus.MATCHED]
    assert store.get_invoice(invoice.id).amount_paid == D("2850.00")

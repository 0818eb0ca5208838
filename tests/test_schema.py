import pytest

from feerecon.errors import ConfigError, SchemaAmbiguousError
from feerecon.schema import (
    AMOUNT,
    BALANCE,
    CREDIT,
    DATE,
    DEBIT,
    DESCRIPTION,
    REFERENCE,
    detect_schema,
    header_keywords,
    header_signature,
)
from feerecon.tabular import parse_delimited
from tests.conftest import DEBIT_CREDIT_STATEMENT, SIGNED_AMOUNT_STATEMENT


def roles_by_name(mapping):
    return {c.name: c.role for c in mapping.columns}


class TestDetectSchema:
    """Tests for column role assignment."""

    def test_debit_credit_balance(self):
        mapping = detect_schema(parse_delimited(DEBIT_CREDIT_STATEMENT))
        assert roles_by_name(mapping) == {
            "Date": DATE,
            "Description": DESCRIPTION,
            "Debit": DEBIT,
            "Credit": CREDIT,
            "Balance": BALANCE,
        }
        assert not mapping.has(AMOUNT)

    def test_signed_amount(self):
        mapping = detect_schema(parse_delimited(SIGNED_AMOUNT_STATEMENT))
        assert roles_by_name(mapping) == {
            "Posted Date": DATE,
            "Narrative": DESCRIPTION,
            "Amount": AMOUNT,
        }

    def test_confidence_in_unit_interval(self):
        mapping = detect_schema(parse_delimited(DEBIT_CREDIT_STATEMENT))
        for col in mapping.columns:
            assert 0.0 <= col.confidence <= 1.0

    def test_reference_column(self):
        text = (
            "Date,Reference,Details,Amount\n"
            "2024-03-01,HAR234,EFT PAYMENT,2850.00\n"
            "2024-03-02,SUT001,EFT PAYMENT,1425.00\n"
            "2024-03-03,KLM045,CASH DEPOSIT,300.00\n"
        )
        mapping = detect_schema(parse_delimited(text))
        assert mapping.index_of(REFERENCE) == 1
        assert mapping.confidence_of(REFERENCE) >= 0.6
        assert mapping.index_of(DESCRIPTION) == 2

    def test_whole_number_credit_column(self):
        text = (
            "Date,Description,Credit\n"
            "01/03/2024,PAYMENT HAR234,2850\n"
            "02/03/2024,PAYMENT SUT001,1425\n"
        )
        mapping = detect_schema(parse_delimited(text))
        assert mapping.index_of(CREDIT) == 2
        assert not mapping.has(REFERENCE)

    def test_headerless_whole_number_amounts(self):
        text = (
            "01/03/2024,PAYMENT HAR234,2850\n"
            "02/03/2024,PAYMENT SUT001,1425\n"
            "03/03/2024,CASH DEPOSIT KLM045,500\n"
        )
        mapping = detect_schema(parse_delimited(text))
        assert [c.role for c in mapping.columns] == [DATE, DESCRIPTION, AMOUNT]

    def test_digit_reference_under_reference_header(self):
        text = (
            "Date,Student Ref,Amount\n"
            "2024-03-01,1234,2850.00\n"
            "2024-03-02,5678,1425.00\n"
        )
        mapping = detect_schema(parse_delimited(text))
        assert mapping.index_of(REFERENCE) == 1
        assert mapping.index_of(AMOUNT) == 2

    def test_headerless_content_inference(self):
        text = (
            "2024-03-01,PAYMENT HAR234,2850.00\n"
            "2024-03-02,BANK FEE,-15.00\n"
            "2024-03-03,PAYMENT SUT001,1425.00\n"
        )
        mapping = detect_schema(parse_delimited(text))
        assert [c.role for c in mapping.columns] == [DATE, DESCRIPTION, AMOUNT]

    def test_unlabelled_pair_becomes_debit_credit(self):
        text = (
            "2024-03-01,PAYMENT HAR234,,2850.00\n"
            "2024-03-02,BANK FEE,15.00,\n"
            "2024-03-03,PAYMENT SUT001,,1425.00\n"
            "2024-03-04,TRANSFER OUT,200.00,\n"
        )
        mapping = detect_schema(parse_delimited(text))
        assert mapping.index_of(DEBIT) == 2
        assert mapping.index_of(CREDIT) == 3

    def test_unlabelled_pair_with_more_debits(self):
        text = (
            "01/03/2024,BANK FEE,15.00,\n"
            "02/03/2024,CARD PURCHASE,20.00,\n"
            "03/03/2024,PAYMENT SUT001,,2850.00\n"
        )
        mapping = detect_schema(parse_delimited(text))
        assert mapping.index_of(DEBIT) == 2
        assert mapping.index_of(CREDIT) == 3

    def test_value_date_stays_date(self):
        """The "value" in "Value Date" does not pull a date column to amount."""
        text = (
            "Value Date,Memo,Amount\n"
            "2024-03-01,HAR234,10.00\n"
            "2024-03-02,SUT001,20.00\n"
        )
        mapping = detect_schema(parse_delimited(text))
        assert mapping.index_of(DATE) == 0
        assert mapping.index_of(AMOUNT) == 2

    def test_missing_amount_is_ambiguous(self):
        text = "Date,Description\n2024-03-01,PAYMENT HAR234\n2024-03-02,PAYMENT SUT001\n"
        with pytest.raises(SchemaAmbiguousError) as exc:
            detect_schema(parse_delimited(text))
        assert exc.value.missing_roles == (AMOUNT,)
        assert "amount" in str(exc.value)
        assert set(exc.value.candidates) == {"Date", "Description"}

    def test_missing_date_is_ambiguous(self):
        text = "Description,Amount\nPAYMENT HAR234,10.00\nPAYMENT SUT001,20.00\n"
        with pytest.raises(SchemaAmbiguousError) as exc:
            detect_schema(parse_delimited(text))
        assert exc.value.missing_roles == (DATE,)

    def test_text_only_file(self):
        """A file of free text has neither a date nor an amount."""
        text = "a,b\nfoo,bar\nbaz,qux\n"
        with pytest.raises(SchemaAmbiguousError) as exc:
            detect_schema(parse_delimited(text, has_header=True))
        assert set(exc.value.missing_roles) == {DATE, AMOUNT}

    def test_idempotent(self):
        table = parse_delimited(DEBIT_CREDIT_STATEMENT)
        assert detect_schema(table) == detect_schema(table)


class TestOverrides:
    """Tests for manual column mapping."""

    def test_override_by_name(self):
        text = (
            "When,What,In\n"
            "x,PAYMENT HAR234,2850.00\n"
            "y,PAYMENT SUT001,1425.00\n"
        )
        mapping = detect_schema(parse_delimited(text), overrides={DATE: "When"})
        col = mapping.columns[0]
        assert col.role == DATE
        assert col.confidence == 1.0
        assert col.override

    def test_override_by_index(self):
        text = (
            "Txn,Narrative,Paid\n"
            "2024-03-01,PAYMENT HAR234,2850.00\n"
            "2024-03-02,PAYMENT SUT001,1425.00\n"
        )
        mapping = detect_schema(parse_delimited(text), overrides={CREDIT: 2})
        assert mapping.index_of(CREDIT) == 2
        assert mapping.index_of(DATE) == 0
        assert not mapping.has(AMOUNT)

    def test_amount_override_drops_debit_credit(self):
        mapping = detect_schema(
            parse_delimited(DEBIT_CREDIT_STATEMENT), overrides={AMOUNT: "Balance"}
        )
        assert mapping.index_of(AMOUNT) == 4
        assert not mapping.has(DEBIT)
        assert not mapping.has(CREDIT)

    def test_unknown_column(self):
        with pytest.raises(ConfigError, match="Unknown column"):
            detect_schema(parse_delimited(SIGNED_AMOUNT_STATEMENT), overrides={DATE: "Nope"})

    def test_unknown_role(self):
        with pytest.raises(ConfigError, match="Unknown role"):
            detect_schema(parse_delimited(SIGNED_AMOUNT_STATEMENT), overrides={"payee": "Amount"})

    def test_index_out_of_range(self):
        with pytest.raises(ConfigError, match="out of range"):
            detect_schema(parse_delimited(SIGNED_AMOUNT_STATEMENT), overrides={DATE: 9})


class TestHeaderHelpers:
    """Tests for header signatures and keyword matching."""

    def test_signature_ignores_order_and_case(self):
        assert header_signature(["Date", "Amount"]) == header_signature(["amount", " DATE "])

    def test_signature_differs_by_columns(self):
        assert header_signature(["Date", "Amount"]) != header_signature(["Date", "Credit"])

    def test_no_header(self):
        assert header_signature(None) is None

    def test_keywords(self):
        assert header_keywords("Transaction Date") == {DATE}
        assert CREDIT in header_keywords("Money In")
        assert header_keywords("Foo") == set()


"""Fee reconciliation: bank statements against student invoices."""

from .audit import UploadBatch, build_batch, record_batch
from .config import ReconConfig, load_config, resolve_db_path
from .errors import (
    BatchAbortedError,
    ConfigError,
    MalformedInputError,
    ReconError,
    ReferenceNotFoundError,
    SchemaAmbiguousError,
    StoreUnavailableError,
)
from .ledger import compute_ledger, invoice_status, recompute_all, recompute_invoice
from .models import (
    CanonicalTransaction,
    Invoice,
    InvoiceStatus,
    PaymentTransaction,
    TransactionStatus,
)
from .normalize import normalize_rows
from .pipeline import BatchResult, analyze_statement, process_statement
from .reconcile import ReconciliationEngine
from .reference import extract_reference
from .schema import SchemaMapping, detect_schema
from .store import DuckDBLedgerStore, LedgerStore
from .tabular import ParsedTable, parse_delimited

__all__ = [
    # Configuration
    "ReconConfig",
    "load_config",
    "resolve_db_path",
    # Errors
    "ReconError",
    "ConfigError",
    "MalformedInputError",
    "SchemaAmbiguousError",
    "ReferenceNotFoundError",
    "StoreUnavailableError",
    "BatchAbortedError",
    # Records
    "Invoice",
    "InvoiceStatus",
    "PaymentTransaction",
    "TransactionStatus",
    "CanonicalTransaction",
    # Parsing and detection
    "ParsedTable",
    "parse_delimited",
    "SchemaMapping",
    "detect_schema",
    "extract_reference",
    "normalize_rows",
    # Reconciliation and ledger
    "ReconciliationEngine",
    "compute_ledger",
    "invoice_status",
    "recompute_invoice",
    "recompute_all",
    # Audit
    "UploadBatch",
    "build_batch",
    "record_batch",
    # Store
    "LedgerStore",
    "DuckDBLedgerStore",
    # Pipeline
    "BatchResult",
    "analyze_statement",
    "process_statement",
]

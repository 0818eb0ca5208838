"""CLI entry point for fee reconciliation.

Usage:
    feerecon init
    feerecon import-invoices invoices.csv

    # Reconcile one bank statement
    feerecon upload statement.csv --uploaded-by bursar

    # Columns the detector cannot place can be mapped by hand
    feerecon upload statement.csv --map date="Txn Date" --map credit=Paid-In

    # Repair derived invoice fields without re-uploading
    feerecon recompute
"""

import logging
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import click
import polars as pl
from dotenv import find_dotenv, load_dotenv

# Load .env by walking upward from the CWD.
_dotenv_path = find_dotenv(usecwd=True)
DOTENV_PATH = Path(_dotenv_path) if _dotenv_path else None
if _dotenv_path:
    load_dotenv(_dotenv_path)

from feerecon.audit import UploadBatch, format_batch
from feerecon.catalog import format_count, table_counts
from feerecon.config import ReconConfig, load_config, resolve_db_path
from feerecon.errors import (
    BatchAbortedError,
    ReconError,
    SchemaAmbiguousError,
)
from feerecon.infra import LEDGER_TABLES
from feerecon.ledger import recompute_all, recompute_invoice
from feerecon.models import Invoice, PaymentTransaction
from feerecon.pipeline import analyze_statement, process_statement
from feerecon.reconcile import ReconciliationEngine
from feerecon.schema import ROLES
from feerecon.store import DuckDBLedgerStore
from feerecon.values import parse_amount, parse_date

log = logging.getLogger(__name__)


def _configure_logging(quiet: bool = False) -> None:
    level = logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def _open_store(ctx: click.Context) -> DuckDBLedgerStore:
    db_path = resolve_db_path(ctx.obj.get("db"))
    try:
        store = DuckDBLedgerStore.open(str(db_path))
    except ReconError as e:
        raise click.ClickException(str(e))
    ctx.call_on_close(store.close)
    return store


def _load_config(**overrides) -> ReconConfig:
    try:
        return load_config(**overrides)
    except ReconError as e:
        raise click.ClickException(str(e))


def _read_statement(path: Path) -> str:
    """Read a statement export; exports that are not UTF-8 are read as Latin-1."""
    raw = path.read_bytes()
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        log.warning("%s is not UTF-8; reading as Latin-1", path.name)
        return raw.decode("latin-1")


def _parse_mapping_options(values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated ``--map ROLE=COLUMN`` options."""
    overrides: dict[str, str] = {}
    for item in values:
        role, sep, column = item.partition("=")
        role = role.strip().lower()
        if not sep or not role or not column.strip():
            raise click.BadParameter(f"expected ROLE=COLUMN, got {item!r}", param_hint="--map")
        if role not in ROLES:
            raise click.BadParameter(
                f"unknown role {role!r} (expected one of: {', '.join(ROLES)})",
                param_hint="--map",
            )
        overrides[role] = column.strip()
    return overrides


def _echo_candidates(e: SchemaAmbiguousError) -> None:
    if not e.candidates:
        return
    click.echo("Best guess per column:")
    for name, (role, conf) in e.candidates.items():
        click.echo(f"  {name:<24} {role:<12} {conf:.2f}")


def _echo_batch(batch: UploadBatch) -> None:
    for line in format_batch(batch):
        click.echo(line)


def _invoice_line(inv: Invoice) -> str:
    return (
        f"  {inv.reference_number:<12} {inv.status:<9} due={inv.amount_due:>10} "
        f"paid={inv.amount_paid:>10} outstanding={inv.outstanding_balance:>10} "
        f"overpaid={inv.overpaid_amount:>10}"
    )


def _transaction_line(t: PaymentTransaction) -> str:
    ref = t.reference_number or "-"
    extra = f" duplicate_of={t.duplicate_of}" if t.duplicate_of is not None else ""
    return (
        f"  #{t.id:<6} {t.payment_date.isoformat()} {ref:<12} {t.amount:>10} "
        f"{t.status:<9} batch={t.batch_id}{extra}  {t.description}"
    )


def _date_option(value: str | None, name: str) -> date | None:
    if value is None:
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise click.BadParameter(f"not a date: {value!r}", param_hint=name)
    return parsed


@click.group()
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=None,
    help="Database path (default: $FEERECON_DB, else feerecon.db)",
)
@click.pass_context
def main(ctx: click.Context, db: Path | None):
    """feerecon: reconcile bank statements against student invoices."""
    ctx.ensure_object(dict)
    ctx.obj["db"] = db


@main.command()
@click.pass_context
def init(ctx: click.Context):
    """Create the database and its tables (safe to re-run)."""
    store = _open_store(ctx)
    click.echo(f"Database: {resolve_db_path(ctx.obj.get('db'))}")
    for name, n in table_counts(store.conn, LEDGER_TABLES).items():
        click.echo(f"  {name:<22} {format_count(n)} rows")


@main.command("import-invoices")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--quiet", "-q", is_flag=True, help="Suppress verbose output")
@click.pass_context
def import_invoices(ctx: click.Context, path: Path, quiet: bool):
    """Create or update invoices from a CSV with reference_number,amount_due."""
    _configure_logging(quiet)
    try:
        df = pl.read_csv(path, infer_schema_length=0)
    except pl.exceptions.PolarsError as e:
        raise click.ClickException(f"Cannot read {path}: {e}")
    columns = {c.strip().lower(): c for c in df.columns}
    missing = [c for c in ("reference_number", "amount_due") if c not in columns]
    if missing:
        raise click.ClickException(f"{path} is missing column(s): {', '.join(missing)}")

    store = _open_store(ctx)
    created = updated = 0
    rows = df.select(
        pl.col(columns["reference_number"]).alias("reference_number"),
        pl.col(columns["amount_due"]).alias("amount_due"),
    ).iter_rows()
    for line, (reference, raw_amount) in enumerate(rows, start=2):
        amount = parse_amount(raw_amount)
        if not reference or not reference.strip() or amount is None or amount < 0:
            log.warning("Line %d skipped: invalid invoice %r, %r", line, reference, raw_amount)
            continue
        try:
            invoice, was_created = store.upsert_invoice(reference, amount)
            if not was_created:
                recompute_invoice(store, invoice.id)
        except ReconError as e:
            raise click.ClickException(str(e))
        if was_created:
            created += 1
        else:
            updated += 1
    click.echo(f"Invoices: {created} created, {updated} updated")


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--uploaded-by", default=None, help="Operator recorded on the batch")
@click.option(
    "--map",
    "mappings",
    multiple=True,
    metavar="ROLE=COLUMN",
    help="Assign a column (header name or 0-based index) to a role; repeatable",
)
@click.option("--save-mapping", default=None, metavar="NAME", help="Save the column mapping under NAME")
@click.option("--delimiter", default=None, help="Field delimiter (default: sniffed)")
@click.option("--quiet", "-q", is_flag=True, help="Suppress verbose output")
@click.pass_context
def upload(
    ctx: click.Context,
    path: Path,
    uploaded_by: str | None,
    mappings: tuple[str, ...],
    save_mapping: str | None,
    delimiter: str | None,
    quiet: bool,
):
    """Reconcile one bank statement export."""
    _configure_logging(quiet)
    overrides = _parse_mapping_options(mappings)
    config = _load_config(delimiter=delimiter)
    text = _read_statement(path)
    store = _open_store(ctx)

    try:
        result = process_statement(
            store,
            text,
            path.name,
            uploaded_by=uploaded_by,
            config=config,
            overrides=overrides or None,
            save_mapping_as=save_mapping,
        )
    except SchemaAmbiguousError as e:
        _echo_candidates(e)
        raise click.ClickException(str(e))
    except BatchAbortedError as e:
        if e.batch is not None:
            _echo_batch(e.batch)
        raise click.ClickException(str(e))
    except ReconError as e:
        raise click.ClickException(str(e))

    click.echo()
    _echo_batch(result.batch)
    if result.changed_invoices:
        click.echo("\nInvoices changed:")
        for inv in result.changed_invoices:
            click.echo(_invoice_line(inv))


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--map",
    "mappings",
    multiple=True,
    metavar="ROLE=COLUMN",
    help="Assign a column (header name or 0-based index) to a role; repeatable",
)
@click.option("--delimiter", default=None, help="Field delimiter (default: sniffed)")
@click.pass_context
def analyze(ctx: click.Context, path: Path, mappings: tuple[str, ...], delimiter: str | None):
    """Show the role detected for each column, without storing anything."""
    _configure_logging(quiet=True)
    overrides = _parse_mapping_options(mappings)
    config = _load_config(delimiter=delimiter)
    text = _read_statement(path)
    store = _open_store(ctx)
    try:
        analysis = analyze_statement(text, config, overrides or None, store)
    except SchemaAmbiguousError as e:
        _echo_candidates(e)
        raise click.ClickException(str(e))
    except ReconError as e:
        raise click.ClickException(str(e))

    table = analysis.table
    click.echo(f"{path.name}: {len(table.rows)} row(s), delimiter {table.delimiter!r}")
    if analysis.saved_mapping:
        click.echo(f"Saved mapping: {analysis.saved_mapping}")
    if table.skipped:
        click.echo(f"Skipped {len(table.skipped)} malformed row(s)")
    click.echo()
    for col in analysis.mapping.columns:
        flag = " (override)" if col.override else (" (header)" if col.keyword else "")
        click.echo(f"  {col.index:>2}  {col.name:<24} {col.role:<12} {col.confidence:.2f}{flag}")


@main.command()
@click.option("--reference", default=None, help="Recompute only this invoice")
@click.option("--quiet", "-q", is_flag=True, help="Suppress verbose output")
@click.pass_context
def recompute(ctx: click.Context, reference: str | None, quiet: bool):
    """Recompute derived invoice fields from linked transactions."""
    _configure_logging(quiet)
    store = _open_store(ctx)
    try:
        if reference:
            invoice = store.find_invoice_by_reference(reference)
            if invoice is None:
                raise click.ClickException(f"No invoice with reference {reference!r}")
            invoice, changed = recompute_invoice(store, invoice.id)
            click.echo(_invoice_line(invoice) + ("  (changed)" if changed else ""))
            return
        report = recompute_all(store)
    except ReconError as e:
        raise click.ClickException(str(e))
    click.echo(
        f"Checked {report.invoices_checked} invoice(s), {report.invoices_changed} changed"
    )
    for ref in report.changed:
        click.echo(f"  {ref}")


@main.command()
@click.option("--quiet", "-q", is_flag=True, help="Suppress verbose output")
@click.pass_context
def relink(ctx: click.Context, quiet: bool):
    """Match Unmatched and Failed transactions against the current invoices."""
    _configure_logging(quiet)
    store = _open_store(ctx)
    try:
        report = ReconciliationEngine(store, _load_config()).relink_unmatched()
    except ReconError as e:
        raise click.ClickException(str(e))
    click.echo(
        f"Examined {report.examined}, linked {report.linked}, "
        f"duplicate {report.duplicates}, previously failed {report.retried}, "
        f"invoices changed {report.repair.invoices_changed}"
    )


@main.command("release-duplicate")
@click.argument("txn_id", type=int)
@click.pass_context
def release_duplicate(ctx: click.Context, txn_id: int):
    """Count a flagged Duplicate transaction as a separate payment."""
    _configure_logging()
    store = _open_store(ctx)
    try:
        invoice = ReconciliationEngine(store, _load_config()).release_duplicate(txn_id)
    except (ReconError, LookupError) as e:
        raise click.ClickException(str(e))
    click.echo(_invoice_line(invoice))


@main.command()
@click.option("--status", default=None, help="Unpaid, Partial, Paid or Overpaid")
@click.pass_context
def invoices(ctx: click.Context, status: str | None):
    """List invoices."""
    rows = _open_store(ctx).list_invoices(status=status)
    click.echo(f"Invoices ({len(rows)}):")
    for inv in rows:
        click.echo(_invoice_line(inv))


@main.command()
@click.option("--status", default=None, help="Transaction status")
@click.option("--reference", default=None, help="Payer reference")
@click.option("--from", "date_from", default=None, help="Earliest payment date")
@click.option("--to", "date_to", default=None, help="Latest payment date")
@click.option("--batch", "batch_id", type=int, default=None, help="Upload batch id")
@click.pass_context
def transactions(
    ctx: click.Context,
    status: str | None,
    reference: str | None,
    date_from: str | None,
    date_to: str | None,
    batch_id: int | None,
):
    """List payment transactions."""
    rows = _open_store(ctx).list_transactions(
        status=status,
        reference=reference,
        date_from=_date_option(date_from, "--from"),
        date_to=_date_option(date_to, "--to"),
        batch_id=batch_id,
    )
    click.echo(f"Transactions ({len(rows)}):")
    for t in rows:
        click.echo(_transaction_line(t))


@main.command()
@click.option("--limit", type=int, default=20, help="Most recent N batches (0 = all)")
@click.option("--issues", "show_issues", is_flag=True, help="Also list row issues")
@click.pass_context
def batches(ctx: click.Context, limit: int, show_issues: bool):
    """List upload batches, newest first."""
    rows = _open_store(ctx).list_batches(limit=limit or None)
    if not rows:
        click.echo("No batches.")
    for batch in rows:
        _echo_batch(batch)
        if show_issues:
            for issue in batch.issues:
                click.echo(f"    line {issue.line_number}: {issue.kind}: {issue.reason}")


@main.command()
@click.option("--delete", "delete_name", default=None, metavar="NAME", help="Delete a saved mapping")
@click.pass_context
def mappings(ctx: click.Context, delete_name: str | None):
    """List saved column mappings."""
    store = _open_store(ctx)
    if delete_name:
        if not store.delete_column_mapping(delete_name):
            raise click.ClickException(f"No saved mapping named {delete_name!r}")
        click.echo(f"Deleted mapping {delete_name}")
        return
    saved = store.list_column_mappings()
    if not saved:
        click.echo("No saved mappings.")
    for m in saved:
        last = m.last_used_at.isoformat(sep=" ", timespec="seconds") if m.last_used_at else "never"
        click.echo(f"{m.name}  [{m.signature}]  used {m.use_count}x, last {last}")
        for role, column in sorted(m.roles.items()):
            click.echo(f"  {role:<12} {column}")


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


@main.command()
@click.argument("what", type=click.Choice(["invoices", "transactions"]))
@click.argument("out", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--status", default=None, help="Only rows with this status")
@click.pass_context
def export(ctx: click.Context, what: str, out: Path, status: str | None):
    """Export invoices or transactions to CSV."""
    store = _open_store(ctx)
    if what == "invoices":
        records = [
            {
                "reference_number": inv.reference_number,
                "amount_due": _money(inv.amount_due),
                "amount_paid": _money(inv.amount_paid),
                "outstanding_balance": _money(inv.outstanding_balance),
                "overpaid_amount": _money(inv.overpaid_amount),
                "status": str(inv.status),
            }
            for inv in store.list_invoices(status=status)
        ]
        schema = [
            "reference_number", "amount_due", "amount_paid",
            "outstanding_balance", "overpaid_amount", "status",
        ]
    else:
        invoice_refs = {inv.id: inv.reference_number for inv in store.list_invoices()}
        records = [
            {
                "id": str(t.id),
                "payment_date": t.payment_date.isoformat(),
                "reference_number": t.reference_number or "",
                "amount": _money(t.amount),
                "status": str(t.status),
                "invoice": invoice_refs.get(t.invoice_id, "") if t.invoice_id else "",
                "batch_id": "" if t.batch_id is None else str(t.batch_id),
                "duplicate_of": "" if t.duplicate_of is None else str(t.duplicate_of),
                "description": t.description,
            }
            for t in store.list_transactions(status=status)
        ]
        schema = [
            "id", "payment_date", "reference_number", "amount", "status",
            "invoice", "batch_id", "duplicate_of", "description",
        ]
    df = pl.DataFrame(records, schema={c: pl.Utf8 for c in schema})
    out.parent.mkdir(parents=True, exist_ok=True)
    df.write_csv(out)
    click.echo(f"Wrote {df.height} {what} to {out}")


if __name__ == "__main__":
    main()

"""Command-line entry point for the service ledger."""

import argparse
import sys
import traceback
from pathlib import Path

from config import TAX_BASES, load_config
from core import invoicing, queries, store
from core.audit import list_entries
from core.backup import export_data, restore_data
from core.db import init_db
from core.errors import ImportAbortedError, LedgerError
from core.ingest import import_file
from core.money import format_cents, parse_cents
from paths import IMPORTS_DIR, ensure_data_dirs


def _print_result(outcome: dict) -> None:
    stats = outcome.get("stats") or {}
    print(f"  source={outcome.get('source')} run_id={outcome.get('run_id')}")
    print(f"  Customers created: {stats.get('customers_created', 0)}")
    print(f"  Customers matched: {stats.get('customers_matched', 0)}")
    print(f"  Jobs created: {stats.get('jobs_created', 0)}")
    print(f"  Payments recorded: {stats.get('payments_recorded', 0)}")
    print(f"  Expenses created: {stats.get('expenses_created', 0)}")
    print(f"  Revenue: {format_cents(stats.get('total_revenue_cents', 0))}")
    print(f"  Fees: {format_cents(stats.get('total_fees_cents', 0))}")
    print(f"  Skipped (duplicates/unusable): {stats.get('skipped', 0)}")


def import_batch(paths: list[Path], verbose: bool = False) -> dict:
    """Import files in order, printing progress. One failed file does not stop the rest."""
    total = len(paths)
    completed = 0
    failed = 0

    if total == 0:
        print(f"No CSV files found in {IMPORTS_DIR}")
        return {"total": 0, "completed": 0, "failed": 0}

    for i, path in enumerate(paths, start=1):
        print(f"[{i}/{total}] Importing: {path.name}")
        try:
            outcome = import_file(path)
        except ImportAbortedError as e:
            _print_debug_exception("import_aborted", e, path.name, verbose)
            failed += 1
            print(f"  status=failed error={e}")
            if e.result is not None:
                print(f"  committed before failure: {e.result.jobs_created} transaction(s)")
            continue
        except (LedgerError, OSError) as e:
            _print_debug_exception("import_failed", e, path.name, verbose)
            failed += 1
            print(f"  status=failed error={e}")
            continue
        completed += 1
        print("  status=completed")
        _print_result(outcome)

    if total > 1:
        print("\n=====================================")
        print("Import Summary")
        print("=====================================")
        print(f"Total files: {total}")
        print(f"Completed: {completed}")
        print(f"Failed: {failed}")
        print("=====================================")
    return {"total": total, "completed": completed, "failed": failed}


def cmd_import(args: argparse.Namespace) -> int:
    if args.all == bool(args.files):
        print("Error: pass CSV files or --all (not both)", file=sys.stderr)
        return 1
    if args.all:
        paths = sorted(IMPORTS_DIR.glob("*.csv"))
    else:
        paths = [Path(p) for p in args.files]
    summary = import_batch(paths, verbose=args.verbose)
    return 1 if summary["failed"] else 0


def cmd_complete_job(args: argparse.Namespace) -> int:
    invoice = invoicing.complete_job(args.job_id)
    if invoice is None:
        print(f"Error: job {args.job_id} not found", file=sys.stderr)
        return 1
    print(
        f"Invoice {invoice.invoice_number} created: {format_cents(invoice.total_cents)} "
        f"due {invoice.due_date}"
    )
    return 0


def _amount_cents(raw: str) -> int:
    cents = parse_cents(raw)
    if cents <= 0:
        raise argparse.ArgumentTypeError(f"amount must be positive, got {raw!r}")
    return cents


def cmd_pay(args: argparse.Namespace) -> int:
    invoice = invoicing.record_payment(args.invoice_id, args.amount, method=args.method, notes=args.notes)
    if invoice is None:
        print(f"Error: invoice {args.invoice_id} not found", file=sys.stderr)
        return 1
    print(
        f"{invoice.invoice_number}: paid {format_cents(invoice.paid_amount_cents)} of "
        f"{format_cents(invoice.total_cents)} ({invoice.payment_status})"
    )
    return 0


def cmd_refund(args: argparse.Namespace) -> int:
    invoice = invoicing.record_refund(args.invoice_id, args.amount, method=args.method, notes=args.notes)
    if invoice is None:
        print(f"Error: invoice {args.invoice_id} not found", file=sys.stderr)
        return 1
    print(
        f"{invoice.invoice_number}: refunded {format_cents(args.amount)}, paid now "
        f"{format_cents(invoice.paid_amount_cents)} ({invoice.payment_status})"
    )
    return 0


def cmd_delete_job(args: argparse.Namespace) -> int:
    deleted = invoicing.delete_job(args.job_id, force=args.force)
    if deleted is None:
        print(f"Error: job {args.job_id} not found", file=sys.stderr)
        return 1
    print(f"Job {args.job_id} deleted")
    return 0


def cmd_summary(args: argparse.Namespace) -> int:
    summary = queries.get_dashboard_summary()
    print("=====================================")
    print("Ledger Summary")
    print("=====================================")
    print(f"Customers: {summary['customer_count']}")
    print(f"Jobs: {summary['job_count']}")
    print(f"Invoices: {summary['invoice_count']}")
    for status, count in summary["invoices_by_status"].items():
        print(f"  {status}: {count}")
    print(f"Invoiced: {format_cents(summary['invoiced_cents'])}")
    print(f"Collected: {format_cents(summary['collected_cents'])}")
    print(f"Outstanding: {format_cents(summary['outstanding_cents'])}")
    print(f"Expenses: {format_cents(summary['expenses_cents'])}")
    print(f"Net: {format_cents(summary['net_cents'])}")
    if summary["low_stock_count"]:
        print(f"Low stock items: {summary['low_stock_count']}")
    print("=====================================")
    return 0


def cmd_audit(args: argparse.Namespace) -> int:
    for entry in list_entries(entity_id=args.entity_id, limit=args.limit):
        print(
            f"{entry['timestamp']}  {entry['entity_type']:<10} {entry['action']:<9} "
            f"{entry['entity_id']}  {entry['details']}"
        )
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    counts = export_data(args.path)
    print(f"Backup written to {args.path}")
    for table, count in counts.items():
        print(f"  {table}: {count}")
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    counts = restore_data(args.path)
    print(f"Ledger restored from {args.path}")
    for table, count in counts.items():
        print(f"  {table}: {count}")
    return 0


def cmd_settings(args: argparse.Namespace) -> int:
    changes = {
        key: getattr(args, key)
        for key in (
            "invoice_prefix",
            "next_invoice_number",
            "default_tax_rate",
            "default_labor_rate_cents",
            "tax_basis",
        )
        if getattr(args, key) is not None
    }
    if changes:
        try:
            settings = invoicing.update_settings(changes)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print("Settings updated")
    else:
        settings = store.load_settings()
    print(f"  Invoice prefix: {settings.invoice_prefix}")
    print(f"  Next invoice number: {settings.next_invoice_number}")
    print(f"  Default tax rate: {settings.default_tax_rate}%")
    print(f"  Default labor rate: {format_cents(settings.default_labor_rate_cents)}/h")
    print(f"  Tax basis: {settings.tax_basis}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="service-ledger",
        description="Service Ledger - statement imports and invoice tracking",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--verbose",
        action="store_true",
        help="Print caught exceptions and full tracebacks for debugging.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", parents=[common], help="Import PayPal / eBay CSV exports")
    p.add_argument("files", nargs="*", default=[], help="CSV files to import, in order")
    p.add_argument("--all", action="store_true", help=f"Import every CSV in {IMPORTS_DIR}")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("complete-job", parents=[common], help="Invoice a job")
    p.add_argument("job_id")
    p.set_defaults(func=cmd_complete_job)

    for name, func, help_text in (
        ("pay", cmd_pay, "Record a payment against an invoice"),
        ("refund", cmd_refund, "Record a refund against an invoice"),
    ):
        p = sub.add_parser(name, parents=[common], help=help_text)
        p.add_argument("invoice_id")
        p.add_argument("amount", type=_amount_cents, help="Amount in dollars, e.g. 150.00")
        p.add_argument("--method", default="", help="Payment method, e.g. Cash, PayPal")
        p.add_argument("--notes", default="")
        p.set_defaults(func=func)

    p = sub.add_parser("delete-job", parents=[common], help="Delete a job with its invoice and payments")
    p.add_argument("job_id")
    p.add_argument("--force", action="store_true", help="Required for invoiced or paid jobs")
    p.set_defaults(func=cmd_delete_job)

    p = sub.add_parser("summary", parents=[common], help="Print ledger totals")
    p.set_defaults(func=cmd_summary)

    p = sub.add_parser("audit", parents=[common], help="Print the newest audit entries")
    p.add_argument("--entity-id", default=None)
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_audit)

    p = sub.add_parser("export", parents=[common], help="Write a JSON backup of the ledger")
    p.add_argument("path")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("restore", parents=[common], help="Replace the ledger with a JSON backup")
    p.add_argument("path")
    p.set_defaults(func=cmd_restore)

    p = sub.add_parser("settings", parents=[common], help="Show or change ledger settings")
    p.add_argument("--invoice-prefix", dest="invoice_prefix", default=None)
    p.add_argument("--next-invoice-number", dest="next_invoice_number", type=int, default=None)
    p.add_argument("--tax-rate", dest="default_tax_rate", type=float, default=None, help="Percent, e.g. 8.25")
    p.add_argument(
        "--labor-rate",
        dest="default_labor_rate_cents",
        type=parse_cents,
        default=None,
        help="Hourly rate in dollars, e.g. 85.00",
    )
    p.add_argument("--tax-basis", choices=TAX_BASES, default=None, help="Which subtotal new invoices tax")
    p.set_defaults(func=cmd_settings)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point with CLI argument parsing."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    ensure_data_dirs()
    init_db(config)

    try:
        code = args.func(args)
    except LedgerError as e:
        _print_debug_exception(args.command, e, "-", args.verbose)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if code:
        sys.exit(code)


def _print_debug_exception(stage: str, error: Exception, subject: str, verbose: bool) -> None:
    """Print traceback details only when verbose debugging is enabled."""
    if not verbose:
        return
    print(f"\n[DEBUG] {stage} subject={subject}: {error}", file=sys.stderr)
    traceback.print_exc()


if __name__ == "__main__":
    main()

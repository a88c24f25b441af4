"""
Statement import orchestrators.

`import_statement` detects the format and hands off to the PayPal or eBay
importer. Each imported transaction (a PayPal row, or every eBay row that
shares an order number) is written as one SQLite transaction together with
its dedup index rows, the invoice counter and its audit entries. A failure
part way through stops the run; earlier transactions stay committed and
re-running the file picks up where it stopped.
"""

from __future__ import annotations

from collections.abc import Iterable
from contextlib import closing
from dataclasses import dataclass, field

from core import store
from core.audit import AuditTrail
from core.bom import Kit, find_kit, load_kits
from core.db import get_connection, transaction
from core.dedup import (
    KIND_FEE,
    KIND_ORDER,
    KIND_SHIPPING_LABEL,
    DedupGuard,
    ebay_fee_marker,
    ebay_label_marker,
    ebay_order_marker,
    paypal_marker,
)
from core.detect import StatementFormat, detect_format
from core.errors import ImportAbortedError, NoDataRowsError
from core.invoicing import calculate_totals, derive_payment_status, job_status_for_payment
from core.models import (
    Customer,
    Expense,
    ImportResult,
    Invoice,
    Job,
    Part,
    Payment,
    Settings,
)
from core.money import format_cents, parse_cents, parse_fee_cents
from core.parsers import (
    SELLING_FEE_COLUMNS,
    MarketplaceRow,
    ProcessorRow,
    is_blank,
    parse_marketplace_rows,
    parse_processor_rows,
)
from core.resolvers import CustomerResolver, InventoryResolver
from paths import KITS_CONFIG_PATH

IMPORT_TAX_BASIS = "full"
MULTI_ITEM_TITLE = "Multi-Item"
GENERIC_SALE_NAME = "eBay Multi-Item Sale"
SHIPPING_PART_NAME = "Shipping & handling"


@dataclass
class _Unit:
    """Everything one imported transaction writes."""

    job: Job
    invoice: Invoice
    payments: list[Payment] = field(default_factory=list)
    expenses: list[Expense] = field(default_factory=list)
    references: list[tuple[str, str, str, str]] = field(default_factory=list)
    audit: AuditTrail = field(default_factory=AuditTrail)


class _Run:
    """Shared state of one import run: resolvers, dedup view, counter, result."""

    def __init__(
        self,
        source: str,
        customers: Iterable[Customer] | None,
        settings: Settings | None,
        with_inventory: bool = False,
    ) -> None:
        with closing(get_connection()) as connection:
            if customers is None:
                customers = store.list_customers(connection)
            if settings is None:
                settings = store.load_settings(connection)
            self.guard = DedupGuard.load(connection, source)
            self.inventory = (
                InventoryResolver(store.list_inventory(connection)) if with_inventory else None
            )
        self.customers = CustomerResolver(customers)
        self.settings = settings
        self.result = ImportResult(source=source)

    def next_invoice_number(self) -> str:
        return self.settings.allocate_invoice_number()

    def commit(self, unit: _Unit) -> None:
        with transaction() as connection:
            self.customers.flush(connection)
            if self.inventory is not None:
                self.inventory.flush(connection)
            store.upsert_job(connection, unit.job)
            store.upsert_invoice(connection, unit.invoice)
            for payment in unit.payments:
                store.insert_payment(connection, payment)
            for expense in unit.expenses:
                store.insert_expense(connection, expense)
            store.save_next_invoice_number(connection, self.settings.next_invoice_number)
            for kind, external_id, entity_type, entity_id in unit.references:
                self.guard.register(connection, kind, external_id, entity_type, entity_id)
            unit.audit.flush(connection)

        result = self.result
        result.customers_created = self.customers.created
        result.customers_matched = self.customers.matched
        result.jobs_created += 1
        result.payments_recorded += len(unit.payments)
        result.expenses_created += len(unit.expenses)
        received = sum(p.amount_cents for p in unit.payments if p.type == "payment")
        refunded = sum(p.amount_cents for p in unit.payments if p.type == "refund")
        result.total_revenue_cents += max(0, received - refunded)
        result.total_fees_cents += sum(e.amount_cents for e in unit.expenses)

    def abort(self, exc: Exception, label: str) -> ImportAbortedError:
        return ImportAbortedError(
            f"Import stopped at {label} after {self.result.jobs_created} transaction(s): {exc}",
            self.result,
        )


def _build_invoice(job: Job, invoice_number: str, invoice_date: str, method: str) -> Invoice:
    invoice = Invoice(
        invoice_number=invoice_number,
        job_id=job.id,
        customer_id=job.customer_id,
        invoice_date=invoice_date,
        due_date=invoice_date,
        tax_basis=IMPORT_TAX_BASIS,
        payment_method=method,
        payment_date=invoice_date,
    )
    for key, value in calculate_totals(job, IMPORT_TAX_BASIS).items():
        setattr(invoice, key, value)
    job.invoice_id = invoice.id
    return invoice


# -----------------------------
# Entry point
# -----------------------------

def import_statement(
    raw_text: str,
    customers: Iterable[Customer] | None = None,
    settings: Settings | None = None,
    file_name: str | None = None,
) -> ImportResult:
    """
    Import a PayPal or eBay export.

    Raises UnrecognizedFormatError / NoDataRowsError before any write, and
    ImportAbortedError (carrying the partial result) if a transaction fails.
    """
    statement_format = detect_format(raw_text)
    if statement_format is StatementFormat.PAYPAL:
        return import_paypal(raw_text, customers, settings, file_name=file_name)
    return import_ebay(raw_text, customers, settings, file_name=file_name)


# -----------------------------
# PayPal
# -----------------------------

def import_paypal(
    raw_text: str,
    customers: Iterable[Customer] | None = None,
    settings: Settings | None = None,
    file_name: str | None = None,
) -> ImportResult:
    rows = [row for row in parse_processor_rows(raw_text) if row.is_importable]
    if not rows:
        raise NoDataRowsError("No completed payment transactions found in this PayPal CSV.")

    run = _Run("paypal", customers, settings)
    for row in rows:
        tx_id = row.transaction_id
        if not tx_id or run.guard.contains(KIND_ORDER, tx_id):
            run.result.skipped += 1
            continue
        try:
            run.commit(_paypal_unit(run, row))
        except Exception as exc:
            raise run.abort(exc, f"PayPal TX {tx_id} in {file_name or 'statement'}") from exc
    return run.result


def _paypal_unit(run: _Run, row: ProcessorRow) -> _Unit:
    tx_id = row.transaction_id
    marker = paypal_marker(tx_id)
    customer = run.customers.resolve(row.name, "", ["paypal"], "PayPal")
    amount = row.amount_cents
    fee = row.fee_cents
    date_iso = row.date_iso
    stamp = f"{date_iso}T{row.time}" if row.time else date_iso
    description = row.item_title or "PayPal payment"

    job = Job(
        customer_id=customer.id,
        date_of_service=date_iso,
        problem_description=description,
        work_performed=description,
        labor_rate_cents=run.settings.default_labor_rate_cents,
        misc_fees_cents=amount,
        misc_fees_description=f"PayPal payment - {tx_id}",
        tax_rate=0.0,
        technician_notes=marker,
    )
    invoice = _build_invoice(job, run.next_invoice_number(), stamp, "PayPal")
    payment = Payment(
        invoice_id=invoice.id,
        amount_cents=invoice.total_cents,
        method="PayPal",
        notes=marker,
        date=stamp,
    )
    invoice.paid_amount_cents = payment.amount_cents
    invoice.payment_status = derive_payment_status(invoice.paid_amount_cents, invoice.total_cents)
    job.status = job_status_for_payment(invoice.payment_status)

    unit = _Unit(job=job, invoice=invoice, payments=[payment])
    unit.references.append((KIND_ORDER, tx_id, "job", job.id))

    if fee > 0 and not run.guard.contains(KIND_FEE, tx_id):
        expense = Expense(
            vendor="PayPal",
            amount_cents=fee,
            date=date_iso,
            category="misc",
            description="PayPal transaction fee",
            job_id=job.id,
            customer_id=customer.id,
            notes=marker,
        )
        unit.expenses.append(expense)
        unit.references.append((KIND_FEE, tx_id, "expense", expense.id))
        unit.audit.add(
            "expense",
            expense.id,
            "created",
            f"PayPal fee {format_cents(fee)} recorded as expense - TX: {tx_id}",
        )

    unit.audit.add(
        "job",
        job.id,
        "created",
        f"Job created via PayPal CSV import - Customer: {customer.name}, "
        f"Amount: {format_cents(amount)}, TX: {tx_id}",
    )
    unit.audit.add(
        "invoice",
        invoice.id,
        "created",
        f"Invoice {invoice.invoice_number} created via PayPal CSV import - "
        f"{format_cents(invoice.total_cents)}",
    )
    unit.audit.add(
        "payment",
        payment.id,
        "paid",
        f"Payment recorded via PayPal CSV import - {format_cents(payment.amount_cents)}, "
        f"Method: PayPal, TX: {tx_id}",
    )
    return unit


# -----------------------------
# eBay
# -----------------------------

def _is_summary_row(row: MarketplaceRow) -> bool:
    return is_blank(row.item_title) or row.item_title.strip() == MULTI_ITEM_TITLE


def _column_cents(column: str, itemized: list[MarketplaceRow], summary: list[MarketplaceRow]) -> int:
    """
    Magnitude total of one money column for an order.

    Taken from the item lines when any of them fills the column, otherwise
    from the order's summary rows. Order-level amounts such as refunds and
    shipping labels are often reported on the summary row only.
    """
    rows = itemized if any(not is_blank(getattr(r, column)) for r in itemized) else summary
    return sum(parse_fee_cents(getattr(r, column)) for r in rows)


def group_orders(rows: list[MarketplaceRow]) -> tuple[dict[str, list[MarketplaceRow]], int]:
    """
    Group rows by order number, in file order.

    Rows without an order number, and orders where no row names a buyer,
    are counted as skipped.
    """
    groups: dict[str, list[MarketplaceRow]] = {}
    skipped = 0
    for row in rows:
        if is_blank(row.order_number):
            skipped += 1
            continue
        groups.setdefault(row.order_number.strip(), []).append(row)

    usable: dict[str, list[MarketplaceRow]] = {}
    for order_number, group in groups.items():
        if all(is_blank(r.buyer_name) for r in group):
            skipped += len(group)
            continue
        usable[order_number] = group
    return usable, skipped


def import_ebay(
    raw_text: str,
    customers: Iterable[Customer] | None = None,
    settings: Settings | None = None,
    file_name: str | None = None,
    kits: tuple[Kit, ...] | None = None,
) -> ImportResult:
    rows = parse_marketplace_rows(raw_text)
    orders, skipped = group_orders(rows)
    if not orders:
        raise NoDataRowsError("No order rows found in this eBay CSV.")
    if kits is None:
        kits = load_kits(KITS_CONFIG_PATH)

    run = _Run("ebay", customers, settings, with_inventory=True)
    run.result.skipped = skipped
    for order_number, group in orders.items():
        if run.guard.contains(KIND_ORDER, order_number):
            run.result.skipped += len(group)
            continue
        try:
            run.commit(_ebay_unit(run, order_number, group, kits))
        except Exception as exc:
            raise run.abort(exc, f"eBay order {order_number} in {file_name or 'statement'}") from exc
    return run.result


def _item_parts(inventory: InventoryResolver, row: MarketplaceRow, kits: tuple[Kit, ...]) -> list[Part]:
    """
    Parts for one itemized sale line.

    Prices are per unit when the subtotal divides evenly by the quantity;
    otherwise the line is booked as quantity 1 at the full subtotal, so the
    parts always sum to the subtotal.
    """
    quantity = row.quantity_value
    subtotal = parse_cents(row.item_subtotal)
    if subtotal % quantity:
        quantity = 1
    per_unit = subtotal // quantity

    kit = find_kit(row.item_title, kits)
    if kit is not None:
        return inventory.expand_kit(kit, per_unit, quantity)
    return [
        Part(
            name=row.item_title.strip(),
            quantity=quantity,
            unit_cost_cents=0,
            unit_price_cents=per_unit,
            source="inventory",
        )
    ]


def build_order_notes(order_number: str, head: MarketplaceRow, items: list[MarketplaceRow]) -> str:
    """Technician notes: order marker first, then every informative column."""
    lines = [ebay_order_marker(order_number)]

    def add(label: str, value: str) -> None:
        if not is_blank(value):
            lines.append(f"{label}: {value.strip()}")

    add("Item ID", head.item_id)
    add("Item Title", head.item_title)
    for extra in items:
        if extra is not head:
            add("Item", f"{extra.item_title} ({extra.item_id})")
    add("Buyer", head.buyer_name)
    if head.ship_to:
        lines.append(f"Ship To: {head.ship_to}")
    add("eBay Collected Tax", head.ebay_collected_tax)
    add("Seller Collected Tax", head.seller_collected_tax)
    add("Discount", head.discount)
    add("Gross Amount", head.gross_amount)
    add("Shipping Labels", head.shipping_labels)
    add("Promoted Listing Fee", head.promoted_listing_fee)
    add("Payment Dispute Fee", head.payment_dispute_fee)
    add("Refunds", head.refunds)
    add("Order Earnings", head.order_earnings)
    return "\n".join(lines)


def _ebay_unit(run: _Run, order_number: str, group: list[MarketplaceRow], kits: tuple[Kit, ...]) -> _Unit:
    head = next(r for r in group if not is_blank(r.buyer_name))
    itemized = [r for r in group if not _is_summary_row(r)]
    summary = [r for r in group if _is_summary_row(r)]
    customer = run.customers.resolve(head.buyer_name.strip(), head.ship_to, ["ebay"], "eBay")
    date_iso = head.date_iso

    parts: list[Part] = []
    for row in itemized:
        parts.extend(_item_parts(run.inventory, row, kits))
    if not itemized:
        subtotal = sum(parse_cents(r.item_subtotal) for r in group)
        if subtotal > 0:
            parts.append(Part(name=GENERIC_SALE_NAME, quantity=1, unit_price_cents=subtotal))

    shipping = _column_cents("shipping_and_handling", itemized, summary)
    if shipping > 0:
        parts.append(
            Part(
                name=SHIPPING_PART_NAME,
                quantity=1,
                unit_cost_cents=shipping,
                unit_price_cents=shipping,
                source="customer-provided",
            )
        )

    fees = {label: _column_cents(column, itemized, summary) for label, column in SELLING_FEE_COLUMNS.items()}
    fee_total = sum(fees.values())
    label_total = _column_cents("shipping_labels", itemized, summary)
    refund_total = _column_cents("refunds", itemized, summary)

    title = itemized[0].item_title.strip() if itemized else GENERIC_SALE_NAME
    job = Job(
        customer_id=customer.id,
        date_of_service=date_iso,
        problem_description=title,
        work_performed="eBay sale",
        labor_rate_cents=run.settings.default_labor_rate_cents,
        parts=parts,
        tax_rate=0.0,
        technician_notes=build_order_notes(order_number, head, itemized),
    )
    invoice = _build_invoice(job, run.next_invoice_number(), date_iso, "eBay")
    total = invoice.total_cents
    unit = _Unit(job=job, invoice=invoice)
    unit.references.append((KIND_ORDER, order_number, "job", job.id))

    if total > 0:
        payment = Payment(
            invoice_id=invoice.id,
            amount_cents=total,
            method="eBay",
            notes=ebay_order_marker(order_number),
            date=date_iso,
        )
        unit.payments.append(payment)
        unit.audit.add(
            "payment",
            payment.id,
            "paid",
            f"Payment recorded via eBay CSV import - {format_cents(total)}, Method: eBay",
        )
    if total > 0 and refund_total > 0:
        refund = Payment(
            invoice_id=invoice.id,
            amount_cents=refund_total,
            type="refund",
            method="eBay",
            notes=f"eBay Refund - Order: {order_number}",
            date=date_iso,
        )
        unit.payments.append(refund)
        unit.audit.add(
            "payment",
            refund.id,
            "refunded",
            f"Refund recorded via eBay CSV import - {format_cents(refund_total)}, Order: {order_number}",
        )

    invoice.paid_amount_cents = max(0, total - refund_total) if total > 0 else 0
    invoice.payment_status = derive_payment_status(invoice.paid_amount_cents, total)
    job.status = job_status_for_payment(invoice.payment_status)

    if fee_total > 0 and not run.guard.contains(KIND_FEE, order_number):
        details = ", ".join(f"{label}: {format_cents(cents)}" for label, cents in fees.items() if cents > 0)
        expense = Expense(
            vendor="eBay",
            amount_cents=fee_total,
            date=date_iso,
            category="misc",
            description=f"eBay selling fees ({details})",
            job_id=job.id,
            customer_id=customer.id,
            notes=ebay_fee_marker(order_number),
        )
        unit.expenses.append(expense)
        unit.references.append((KIND_FEE, order_number, "expense", expense.id))
        unit.audit.add(
            "expense",
            expense.id,
            "created",
            f"eBay selling fees {format_cents(fee_total)} recorded - Order: {order_number}",
        )
    if label_total > 0 and not run.guard.contains(KIND_SHIPPING_LABEL, order_number):
        expense = Expense(
            vendor="eBay",
            amount_cents=label_total,
            date=date_iso,
            category="misc",
            description="eBay shipping label",
            job_id=job.id,
            customer_id=customer.id,
            notes=ebay_label_marker(order_number),
        )
        unit.expenses.append(expense)
        unit.references.append((KIND_SHIPPING_LABEL, order_number, "expense", expense.id))
        unit.audit.add(
            "expense",
            expense.id,
            "created",
            f"eBay shipping label {format_cents(label_total)} - Order: {order_number}",
        )

    unit.audit.add(
        "job",
        job.id,
        "created",
        f"Job created via eBay CSV import - Customer: {customer.name}, "
        f"Total: {format_cents(total)}, Order: {order_number}",
    )
    unit.audit.add(
        "invoice",
        invoice.id,
        "created",
        f"Invoice {invoice.invoice_number} created via eBay CSV import - {format_cents(total)}",
    )
    return unit

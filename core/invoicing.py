"""
Invoice financial state machine and the ledger mutations around it.

Every public mutation runs as one `transaction()`: entity rows, stock
adjustments, the invoice counter and the audit entries commit together.
Lookups of a missing job/invoice/customer are a no-op returning None.
"""

from __future__ import annotations

import datetime
import sqlite3
from typing import Any

from config import TAX_BASES
from core import store
from core.audit import AuditTrail
from core.db import SETTINGS_KEYS, transaction
from core.errors import (
    CustomerHasJobsError,
    InvalidAmountError,
    InvoiceAlreadyExistsError,
    JobLockedError,
)
from core.models import (
    JOB_STATUSES,
    Attachment,
    Customer,
    Expense,
    InventoryItem,
    Invoice,
    Job,
    Part,
    Payment,
    Reminder,
    Settings,
    utc_now,
)
from core.money import format_cents, multiply_cents, percent_of

PAYMENT_TERMS_DAYS = 30

# Edits that change what was billed. Blocked on locked jobs without override.
STRUCTURAL_FIELDS = frozenset(
    {
        "customer_id",
        "labor_hours",
        "labor_rate_cents",
        "parts",
        "misc_fees_cents",
        "misc_fees_description",
        "tax_rate",
    }
)
BILLABLE_FIELDS = frozenset(
    {"labor_hours", "labor_rate_cents", "parts", "misc_fees_cents", "tax_rate"}
)
JOB_EDITABLE_FIELDS = STRUCTURAL_FIELDS | {
    "date_of_service",
    "problem_description",
    "work_performed",
    "technician_notes",
    "status",
}
CUSTOMER_EDITABLE_FIELDS = frozenset({"name", "email", "phone", "address", "notes", "tags"})
EXPENSE_EDITABLE_FIELDS = frozenset(
    {"date", "vendor", "category", "description", "amount_cents", "job_id", "customer_id", "notes"}
)


# -----------------------------
# Pure rules
# -----------------------------

def calculate_totals(job: Job, tax_basis: str = "full") -> dict[str, int]:
    """
    Invoice money fields for a job.

    Tax applies to the income-bearing subtotal (labor + inventory parts +
    misc) under the `income` basis, or to the whole subtotal under `full`.
    """
    labor = multiply_cents(job.labor_hours, job.labor_rate_cents)
    parts = sum(p.price_total_cents for p in job.parts if not p.is_pass_through)
    pass_through = sum(p.price_total_cents for p in job.parts if p.is_pass_through)
    misc = job.misc_fees_cents
    subtotal = labor + parts + pass_through + misc
    income = labor + parts + misc
    taxable = subtotal if tax_basis == "full" else income
    tax = percent_of(taxable, job.tax_rate)
    return {
        "labor_total_cents": labor,
        "parts_total_cents": parts,
        "pass_through_parts_cents": pass_through,
        "misc_fees_cents": misc,
        "subtotal_cents": subtotal,
        "tax_cents": tax,
        "total_cents": subtotal + tax,
        "income_amount_cents": income,
    }


def derive_payment_status(paid_cents: int, total_cents: int) -> str:
    if paid_cents <= 0:
        return "unpaid"
    if paid_cents > total_cents:
        return "overpaid"
    if paid_cents == total_cents:
        return "paid"
    return "partial"


def job_status_for_payment(payment_status: str) -> str:
    return "paid" if payment_status in ("paid", "overpaid") else "invoiced"


def _apply_totals(invoice: Invoice, totals: dict[str, int]) -> None:
    for key, value in totals.items():
        setattr(invoice, key, value)


def _today() -> str:
    return datetime.date.today().isoformat()


def _due_date(invoice_date: str) -> str:
    start = datetime.date.fromisoformat(invoice_date[:10])
    return (start + datetime.timedelta(days=PAYMENT_TERMS_DAYS)).isoformat()


# -----------------------------
# Customers
# -----------------------------

def add_customer(name: str, **fields: Any) -> Customer:
    customer = Customer(name=name.strip(), **fields)
    with transaction() as connection:
        store.upsert_customer(connection, customer)
        trail = AuditTrail()
        trail.add("customer", customer.id, "created", f'Customer "{customer.name}" created')
        trail.flush(connection)
    return customer


def update_customer(customer_id: str, changes: dict[str, Any]) -> Customer | None:
    unknown = set(changes) - CUSTOMER_EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported customer fields: {', '.join(sorted(unknown))}")
    with transaction() as connection:
        customer = store.get_customer(customer_id, connection)
        if customer is None:
            return None
        for key, value in changes.items():
            setattr(customer, key, value)
        customer.updated_at = utc_now()
        store.upsert_customer(connection, customer)
        trail = AuditTrail()
        trail.add(
            "customer",
            customer.id,
            "updated",
            f'Customer "{customer.name}" updated: {", ".join(sorted(changes))}',
        )
        trail.flush(connection)
    return customer


def archive_customer(customer_id: str) -> Customer | None:
    with transaction() as connection:
        customer = store.get_customer(customer_id, connection)
        if customer is None:
            return None
        customer.archived = True
        customer.updated_at = utc_now()
        store.upsert_customer(connection, customer)
        trail = AuditTrail()
        trail.add("customer", customer.id, "updated", f'Customer "{customer.name}" archived')
        trail.flush(connection)
    return customer


def delete_customer(customer_id: str) -> bool | None:
    """Delete a customer that owns no jobs."""
    with transaction() as connection:
        customer = store.get_customer(customer_id, connection)
        if customer is None:
            return None
        if store.customer_has_jobs(connection, customer_id):
            raise CustomerHasJobsError(
                f'Customer "{customer.name}" has jobs; delete or reassign them first.'
            )
        store.delete_customer_row(connection, customer_id)
        trail = AuditTrail()
        trail.add("customer", customer_id, "deleted", f'Customer "{customer.name}" deleted')
        trail.flush(connection)
    return True


# -----------------------------
# Inventory
# -----------------------------

def add_inventory_item(name: str, **fields: Any) -> InventoryItem:
    item = InventoryItem(name=name.strip(), **fields)
    with transaction() as connection:
        store.upsert_inventory_item(connection, item)
        trail = AuditTrail()
        trail.add(
            "inventory",
            item.id,
            "created",
            f'Inventory item "{item.name}" created (qty {item.quantity}, '
            f"cost: {format_cents(item.unit_cost_cents)})",
        )
        trail.flush(connection)
    return item


def _deducted_by_item(parts: list[Part]) -> dict[str, int]:
    totals: dict[str, int] = {}
    for part in parts:
        if part.stock_deducted and part.inventory_item_id:
            totals[part.inventory_item_id] = totals.get(part.inventory_item_id, 0) + part.quantity
    return totals


def _sync_stock(
    connection: sqlite3.Connection,
    old_parts: list[Part],
    new_parts: list[Part],
    trail: AuditTrail,
) -> None:
    """
    Move on-hand stock by the difference in deducted quantities.

    New inventory-linked parts consume stock. Existing parts keep their
    flag, so parts that never consumed stock (imports) never restore it.
    """
    old_by_id = {p.id: p for p in old_parts}
    for part in new_parts:
        if part.source != "inventory" or not part.inventory_item_id:
            part.stock_deducted = False
        elif part.id in old_by_id:
            part.stock_deducted = old_by_id[part.id].stock_deducted
        else:
            part.stock_deducted = True

    before = _deducted_by_item(old_parts)
    after = _deducted_by_item(new_parts)
    for item_id in sorted(set(before) | set(after)):
        delta = after.get(item_id, 0) - before.get(item_id, 0)
        if delta == 0:
            continue
        if not store.adjust_inventory_quantity(connection, item_id, -delta):
            continue
        action = "restocked" if delta < 0 else "updated"
        trail.add("inventory", item_id, action, f"Stock adjusted by {-delta} for job parts")


# -----------------------------
# Jobs
# -----------------------------

def add_job(customer_id: str, **fields: Any) -> Job | None:
    """Create a job; inventory-linked parts consume on-hand stock."""
    unknown = set(fields) - (JOB_EDITABLE_FIELDS - {"customer_id"})
    if unknown:
        raise ValueError(f"Unsupported job fields: {', '.join(sorted(unknown))}")
    with transaction() as connection:
        customer = store.get_customer(customer_id, connection)
        if customer is None:
            return None
        settings = store.load_settings(connection)
        fields.setdefault("labor_rate_cents", settings.default_labor_rate_cents)
        fields.setdefault("tax_rate", settings.default_tax_rate)
        status = fields.setdefault("status", "quoted")
        if status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {status}")
        job = Job(customer_id=customer_id, **fields)

        trail = AuditTrail()
        _sync_stock(connection, [], job.parts, trail)
        store.upsert_job(connection, job)
        trail.add("job", job.id, "created", f'Job created for "{customer.name}"')
        trail.flush(connection)
    return job


def _recalculate(connection: sqlite3.Connection, invoice: Invoice, job: Job, trail: AuditTrail) -> None:
    """Recompute totals against the existing paid amount and resync the job status."""
    old_total = invoice.total_cents
    _apply_totals(invoice, calculate_totals(job, invoice.tax_basis))
    invoice.payment_status = derive_payment_status(invoice.paid_amount_cents, invoice.total_cents)
    invoice.updated_at = utc_now()
    store.upsert_invoice(connection, invoice)
    trail.add(
        "invoice",
        invoice.id,
        "updated",
        f"Invoice {invoice.invoice_number} recalculated: {format_cents(old_total)} -> "
        f"{format_cents(invoice.total_cents)} ({invoice.payment_status})",
    )

    status = job_status_for_payment(invoice.payment_status)
    if job.status != status:
        job.status = status
        job.updated_at = utc_now()
        store.update_job_status(connection, job.id, status)
        trail.add("job", job.id, "updated", f"Job status changed to {status}")


def update_job(job_id: str, changes: dict[str, Any], override: bool = False) -> Job | None:
    """
    Edit a job.

    Structural edits on an invoiced or paid job need `override`. Billable
    edits on a job that has an invoice recalculate it in the same unit.
    """
    unknown = set(changes) - JOB_EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported job fields: {', '.join(sorted(unknown))}")
    if "status" in changes and changes["status"] not in JOB_STATUSES:
        raise ValueError(f"Unknown job status: {changes['status']}")

    with transaction() as connection:
        job = store.get_job(job_id, connection)
        if job is None:
            return None
        structural = STRUCTURAL_FIELDS & set(changes)
        if job.is_locked and structural and not override:
            raise JobLockedError(
                f"Job {job_id} is {job.status}; editing {', '.join(sorted(structural))} needs override."
            )

        trail = AuditTrail()
        if "parts" in changes:
            new_parts = list(changes["parts"])
            _sync_stock(connection, job.parts, new_parts, trail)
            changes = {**changes, "parts": new_parts}
        for key, value in changes.items():
            setattr(job, key, value)
        job.updated_at = utc_now()
        store.upsert_job(connection, job)
        trail.add("job", job.id, "updated", f"Job updated: {', '.join(sorted(changes))}")

        if BILLABLE_FIELDS & set(changes):
            invoice = store.get_invoice_for_job(job.id, connection)
            if invoice is not None:
                _recalculate(connection, invoice, job, trail)
        trail.flush(connection)
    return job


def complete_job(job_id: str, invoice_date: str | None = None) -> Invoice | None:
    """Invoice a job exactly once; the job becomes `invoiced`."""
    with transaction() as connection:
        job = store.get_job(job_id, connection)
        if job is None:
            return None
        if store.get_invoice_for_job(job_id, connection) is not None:
            raise InvoiceAlreadyExistsError(f"Job {job_id} already has an invoice.")

        settings = store.load_settings(connection)
        invoice_date = invoice_date or _today()
        invoice = Invoice(
            invoice_number=settings.allocate_invoice_number(),
            job_id=job.id,
            customer_id=job.customer_id,
            invoice_date=invoice_date,
            due_date=_due_date(invoice_date),
            tax_basis=settings.tax_basis,
        )
        _apply_totals(invoice, calculate_totals(job, settings.tax_basis))
        invoice.payment_status = derive_payment_status(0, invoice.total_cents)

        job.status = "invoiced"
        job.invoice_id = invoice.id
        job.updated_at = utc_now()

        store.upsert_invoice(connection, invoice)
        store.upsert_job(connection, job)
        store.save_next_invoice_number(connection, settings.next_invoice_number)

        trail = AuditTrail()
        trail.add(
            "invoice",
            invoice.id,
            "created",
            f"Invoice {invoice.invoice_number} created - {format_cents(invoice.total_cents)}",
        )
        trail.add("job", job.id, "updated", f"Job invoiced as {invoice.invoice_number}")
        trail.flush(connection)
    return invoice


def recalculate_invoice(invoice_id: str) -> Invoice | None:
    with transaction() as connection:
        invoice = store.get_invoice(invoice_id, connection)
        if invoice is None:
            return None
        job = store.get_job(invoice.job_id, connection)
        if job is None:
            return None
        trail = AuditTrail()
        _recalculate(connection, invoice, job, trail)
        trail.flush(connection)
    return invoice


# -----------------------------
# Payments
# -----------------------------

def record_payment(
    invoice_id: str,
    amount_cents: int,
    method: str = "",
    notes: str = "",
    date: str | None = None,
) -> Invoice | None:
    if amount_cents <= 0:
        raise InvalidAmountError(f"Payment amount must be positive, got {amount_cents} cents.")
    with transaction() as connection:
        invoice = store.get_invoice(invoice_id, connection)
        if invoice is None:
            return None
        payment = Payment(
            invoice_id=invoice.id,
            amount_cents=amount_cents,
            type="payment",
            method=method,
            notes=notes,
            date=date or utc_now(),
        )
        store.insert_payment(connection, payment)

        invoice.paid_amount_cents += amount_cents
        invoice.payment_status = derive_payment_status(invoice.paid_amount_cents, invoice.total_cents)
        invoice.payment_method = method or invoice.payment_method
        invoice.payment_date = payment.date
        invoice.updated_at = utc_now()
        store.upsert_invoice(connection, invoice)

        trail = AuditTrail()
        trail.add(
            "payment",
            payment.id,
            "paid",
            f"Payment {format_cents(amount_cents)} on {invoice.invoice_number}"
            + (f", Method: {method}" if method else ""),
        )
        if invoice.payment_status in ("paid", "overpaid"):
            job = store.get_job(invoice.job_id, connection)
            if job is not None and job.status != "paid":
                store.update_job_status(connection, job.id, "paid")
                trail.add("job", job.id, "updated", "Job status changed to paid")
        trail.flush(connection)
    return invoice


def record_refund(
    invoice_id: str,
    amount_cents: int,
    method: str = "",
    notes: str = "",
    date: str | None = None,
) -> Invoice | None:
    """Record money returned to the customer. The job status is left alone."""
    if amount_cents <= 0:
        raise InvalidAmountError(f"Refund amount must be positive, got {amount_cents} cents.")
    with transaction() as connection:
        invoice = store.get_invoice(invoice_id, connection)
        if invoice is None:
            return None
        payment = Payment(
            invoice_id=invoice.id,
            amount_cents=amount_cents,
            type="refund",
            method=method,
            notes=notes,
            date=date or utc_now(),
        )
        store.insert_payment(connection, payment)

        invoice.paid_amount_cents = max(0, invoice.paid_amount_cents - amount_cents)
        invoice.payment_status = derive_payment_status(invoice.paid_amount_cents, invoice.total_cents)
        invoice.updated_at = utc_now()
        store.upsert_invoice(connection, invoice)

        trail = AuditTrail()
        trail.add(
            "payment",
            payment.id,
            "refunded",
            f"Refund {format_cents(amount_cents)} on {invoice.invoice_number}",
        )
        trail.flush(connection)
    return invoice


# -----------------------------
# Deletion
# -----------------------------

def delete_job(job_id: str, force: bool = False) -> bool | None:
    """
    Delete a job and everything hanging off it.

    Invoice, payments, reminders and attachments go with it; stock consumed
    by its parts is put back. Invoiced or paid jobs need `force`.
    """
    with transaction() as connection:
        job = store.get_job(job_id, connection)
        if job is None:
            return None
        if job.is_locked and not force:
            raise JobLockedError(f"Job {job_id} is {job.status}; deleting it needs force.")

        trail = AuditTrail()
        invoice = store.get_invoice_for_job(job_id, connection)
        if invoice is not None:
            for payment_id in store.delete_payments_for_invoice(connection, invoice.id):
                trail.add("payment", payment_id, "deleted", f"Payment removed with {invoice.invoice_number}")
            store.delete_invoice_row(connection, invoice.id)
            trail.add("invoice", invoice.id, "deleted", f"Invoice {invoice.invoice_number} deleted")

        for reminder_id in store.delete_job_children(connection, "reminders", job_id):
            trail.add("reminder", reminder_id, "deleted", "Reminder removed with job")
        for attachment_id in store.delete_job_children(connection, "attachments", job_id):
            trail.add("attachment", attachment_id, "deleted", "Attachment removed with job")

        for part in job.parts:
            if not (part.stock_deducted and part.inventory_item_id):
                continue
            if store.adjust_inventory_quantity(connection, part.inventory_item_id, part.quantity):
                trail.add(
                    "inventory",
                    part.inventory_item_id,
                    "restocked",
                    f'Restocked {part.quantity} x "{part.name}" from deleted job',
                )

        # Let a deleted imported order be imported again.
        connection.execute(
            "DELETE FROM external_references WHERE entity_type = 'job' AND entity_id = ?",
            (job_id,),
        )
        store.delete_job_row(connection, job_id)
        trail.add("job", job_id, "deleted", f"Job deleted ({job.status})")
        trail.flush(connection)
    return True


# -----------------------------
# Expenses, reminders, attachments
# -----------------------------

def add_expense(vendor: str, amount_cents: int, **fields: Any) -> Expense:
    expense = Expense(vendor=vendor, amount_cents=amount_cents, **fields)
    with transaction() as connection:
        store.insert_expense(connection, expense)
        trail = AuditTrail()
        trail.add(
            "expense",
            expense.id,
            "created",
            f"Expense {format_cents(amount_cents)} from {vendor or 'unknown vendor'}",
        )
        trail.flush(connection)
    return expense


def update_expense(expense_id: str, changes: dict[str, Any]) -> Expense | None:
    unknown = set(changes) - EXPENSE_EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported expense fields: {', '.join(sorted(unknown))}")
    if "amount_cents" in changes and changes["amount_cents"] <= 0:
        raise InvalidAmountError(f"Expense amount must be positive, got {changes['amount_cents']}")
    with transaction() as connection:
        expense = store.get_expense(expense_id, connection)
        if expense is None:
            return None
        previous = expense.amount_cents
        for key, value in changes.items():
            setattr(expense, key, value)
        expense.updated_at = utc_now()
        store.update_expense_row(connection, expense)
        details = f"Expense from {expense.vendor} updated: {', '.join(sorted(changes))}"
        if expense.amount_cents != previous:
            details += f" ({format_cents(previous)} -> {format_cents(expense.amount_cents)})"
        trail = AuditTrail()
        trail.add("expense", expense.id, "updated", details)
        trail.flush(connection)
    return expense


def delete_expense(expense_id: str) -> bool | None:
    with transaction() as connection:
        expense = store.get_expense(expense_id, connection)
        if expense is None:
            return None
        connection.execute(
            "DELETE FROM external_references WHERE entity_type = 'expense' AND entity_id = ?",
            (expense_id,),
        )
        store.delete_expense_row(connection, expense_id)
        trail = AuditTrail()
        trail.add(
            "expense",
            expense_id,
            "deleted",
            f"Expense {format_cents(expense.amount_cents)} from {expense.vendor} deleted",
        )
        trail.flush(connection)
    return True


def add_reminder(
    title: str,
    due_date: str,
    job_id: str | None = None,
    customer_id: str | None = None,
) -> Reminder:
    reminder = Reminder(title=title, due_date=due_date, job_id=job_id, customer_id=customer_id)
    with transaction() as connection:
        store.insert_reminder(connection, reminder)
        trail = AuditTrail()
        trail.add("reminder", reminder.id, "created", f'Reminder "{title}" due {due_date}')
        trail.flush(connection)
    return reminder


def add_attachment(job_id: str, file_name: str, file_path: str = "", size_bytes: int = 0) -> Attachment:
    attachment = Attachment(job_id=job_id, file_name=file_name, file_path=file_path, size_bytes=size_bytes)
    with transaction() as connection:
        store.insert_attachment(connection, attachment)
        trail = AuditTrail()
        trail.add("attachment", attachment.id, "created", f'Attachment "{file_name}" added')
        trail.flush(connection)
    return attachment


# -----------------------------
# Settings
# -----------------------------

def _check_setting(key: str, value: Any) -> None:
    if key == "tax_basis" and value not in TAX_BASES:
        raise ValueError(f"tax_basis must be one of {', '.join(TAX_BASES)}, got {value!r}")
    if key == "next_invoice_number" and int(value) < 1:
        raise ValueError(f"next_invoice_number must be at least 1, got {value}")
    if key == "default_tax_rate" and not 0 <= float(value) <= 100:
        raise ValueError(f"default_tax_rate must be between 0 and 100, got {value}")
    if key == "default_labor_rate_cents" and int(value) < 0:
        raise ValueError(f"default_labor_rate_cents must not be negative, got {value}")
    if key == "invoice_prefix" and not str(value).strip():
        raise ValueError("invoice_prefix must not be empty")


def update_settings(changes: dict[str, Any]) -> Settings:
    """
    Change ledger settings.

    Only the keys present in `changes` are touched. Existing invoices keep
    the tax basis they were created with; the new basis applies to jobs
    invoiced from now on.
    """
    unknown = set(changes) - set(SETTINGS_KEYS)
    if unknown:
        raise ValueError(f"Unsupported settings: {', '.join(sorted(unknown))}")
    for key, value in changes.items():
        _check_setting(key, value)
    with transaction() as connection:
        settings = store.load_settings(connection)
        before = {key: getattr(settings, key) for key in changes}
        for key, value in changes.items():
            current = getattr(settings, key)
            setattr(settings, key, type(current)(value))
        store.save_settings(connection, settings)
        changed = [f"{key}: {before[key]} -> {getattr(settings, key)}" for key in sorted(changes)]
        trail = AuditTrail()
        trail.add("settings", "settings", "updated", f"Settings updated ({', '.join(changed)})")
        trail.flush(connection)
    return settings

"""Row <-> entity mapping and per-table writes. Writers take the caller's connection."""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from typing import Any

from core.db import SETTINGS_KEYS, get_connection
from core.models import (
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


def _upsert(connection: sqlite3.Connection, table: str, values: dict[str, Any]) -> None:
    """Insert a row keyed by id, or update it in place (no delete, so FK children survive)."""
    columns = list(values)
    assignments = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
    connection.execute(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
        f"ON CONFLICT(id) DO UPDATE SET {assignments}",
        tuple(values.values()),
    )


def _query(
    connection: sqlite3.Connection | None, query: str, params: tuple[Any, ...] = ()
) -> list[sqlite3.Row]:
    if connection is not None:
        return connection.execute(query, params).fetchall()
    with closing(get_connection()) as own:
        return own.execute(query, params).fetchall()


# -----------------------------
# Settings
# -----------------------------

def load_settings(connection: sqlite3.Connection | None = None) -> Settings:
    """Read settings rows; missing keys fall back to dataclass defaults."""
    values = {row["key"]: row["value"] for row in _query(connection, "SELECT key, value FROM settings")}
    settings = Settings()
    if "invoice_prefix" in values:
        settings.invoice_prefix = values["invoice_prefix"]
    if "next_invoice_number" in values:
        settings.next_invoice_number = int(values["next_invoice_number"])
    if "default_tax_rate" in values:
        settings.default_tax_rate = float(values["default_tax_rate"])
    if "default_labor_rate_cents" in values:
        settings.default_labor_rate_cents = int(values["default_labor_rate_cents"])
    if "tax_basis" in values:
        settings.tax_basis = values["tax_basis"]
    return settings


def save_settings(connection: sqlite3.Connection, settings: Settings) -> None:
    for key in SETTINGS_KEYS:
        connection.execute(
            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
            (key, str(getattr(settings, key))),
        )


def save_next_invoice_number(connection: sqlite3.Connection, next_number: int) -> None:
    connection.execute(
        "INSERT OR REPLACE INTO settings (key, value) VALUES ('next_invoice_number', ?)",
        (str(next_number),),
    )


# -----------------------------
# Customers
# -----------------------------

def _customer_from_row(row: sqlite3.Row) -> Customer:
    return Customer(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        phone=row["phone"],
        address=row["address"],
        notes=row["notes"],
        tags=list(json.loads(row["tags_json"] or "[]")),
        archived=bool(row["archived"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def list_customers(connection: sqlite3.Connection | None = None) -> list[Customer]:
    rows = _query(connection, "SELECT * FROM customers ORDER BY created_at, name")
    return [_customer_from_row(r) for r in rows]


def get_customer(customer_id: str, connection: sqlite3.Connection | None = None) -> Customer | None:
    rows = _query(connection, "SELECT * FROM customers WHERE id = ?", (customer_id,))
    return _customer_from_row(rows[0]) if rows else None


def upsert_customer(connection: sqlite3.Connection, customer: Customer) -> None:
    _upsert(
        connection,
        "customers",
        {
            "id": customer.id,
            "name": customer.name,
            "email": customer.email,
            "phone": customer.phone,
            "address": customer.address,
            "notes": customer.notes,
            "tags_json": json.dumps(list(customer.tags), ensure_ascii=False),
            "archived": 1 if customer.archived else 0,
            "created_at": customer.created_at,
            "updated_at": customer.updated_at,
        },
    )


def delete_customer_row(connection: sqlite3.Connection, customer_id: str) -> None:
    connection.execute("DELETE FROM customers WHERE id = ?", (customer_id,))


def customer_has_jobs(connection: sqlite3.Connection, customer_id: str) -> bool:
    row = connection.execute(
        "SELECT 1 FROM jobs WHERE customer_id = ? LIMIT 1", (customer_id,)
    ).fetchone()
    return row is not None


# -----------------------------
# Inventory
# -----------------------------

def _inventory_from_row(row: sqlite3.Row) -> InventoryItem:
    return InventoryItem(
        id=row["id"],
        name=row["name"],
        category=row["category"],
        unit_cost_cents=int(row["unit_cost_cents"]),
        unit_price_cents=int(row["unit_price_cents"]),
        quantity=int(row["quantity"]),
        reorder_level=row["reorder_level"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def list_inventory(connection: sqlite3.Connection | None = None) -> list[InventoryItem]:
    rows = _query(connection, "SELECT * FROM inventory_items ORDER BY name COLLATE NOCASE")
    return [_inventory_from_row(r) for r in rows]


def get_inventory_item(
    item_id: str, connection: sqlite3.Connection | None = None
) -> InventoryItem | None:
    rows = _query(connection, "SELECT * FROM inventory_items WHERE id = ?", (item_id,))
    return _inventory_from_row(rows[0]) if rows else None


def upsert_inventory_item(connection: sqlite3.Connection, item: InventoryItem) -> None:
    _upsert(
        connection,
        "inventory_items",
        {
            "id": item.id,
            "name": item.name,
            "category": item.category,
            "unit_cost_cents": item.unit_cost_cents,
            "unit_price_cents": item.unit_price_cents,
            "quantity": item.quantity,
            "reorder_level": item.reorder_level,
            "created_at": item.created_at,
            "updated_at": item.updated_at,
        },
    )


def adjust_inventory_quantity(connection: sqlite3.Connection, item_id: str, delta: int) -> bool:
    """Add `delta` to on-hand quantity. Returns True if the item exists."""
    cursor = connection.execute(
        "UPDATE inventory_items SET quantity = quantity + ?, updated_at = ? WHERE id = ?",
        (delta, utc_now(), item_id),
    )
    return cursor.rowcount > 0


# -----------------------------
# Jobs and parts
# -----------------------------

def _part_from_row(row: sqlite3.Row) -> Part:
    return Part(
        id=row["id"],
        name=row["name"],
        quantity=int(row["quantity"]),
        unit_cost_cents=int(row["unit_cost_cents"]),
        unit_price_cents=int(row["unit_price_cents"]),
        source=row["source"],
        inventory_item_id=row["inventory_item_id"],
        stock_deducted=bool(row["stock_deducted"]),
    )


def _job_from_row(row: sqlite3.Row, parts: list[Part]) -> Job:
    return Job(
        id=row["id"],
        customer_id=row["customer_id"],
        date_of_service=row["date_of_service"],
        problem_description=row["problem_description"],
        work_performed=row["work_performed"],
        labor_hours=float(row["labor_hours"]),
        labor_rate_cents=int(row["labor_rate_cents"]),
        parts=parts,
        misc_fees_cents=int(row["misc_fees_cents"]),
        misc_fees_description=row["misc_fees_description"],
        tax_rate=float(row["tax_rate"]),
        status=row["status"],
        technician_notes=row["technician_notes"],
        invoice_id=row["invoice_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def get_job(job_id: str, connection: sqlite3.Connection | None = None) -> Job | None:
    rows = _query(connection, "SELECT * FROM jobs WHERE id = ?", (job_id,))
    if not rows:
        return None
    part_rows = _query(
        connection, "SELECT * FROM job_parts WHERE job_id = ? ORDER BY position", (job_id,)
    )
    return _job_from_row(rows[0], [_part_from_row(p) for p in part_rows])


def list_jobs(
    customer_id: str | None = None, connection: sqlite3.Connection | None = None
) -> list[Job]:
    if customer_id is None:
        rows = _query(connection, "SELECT * FROM jobs ORDER BY created_at")
    else:
        rows = _query(
            connection, "SELECT * FROM jobs WHERE customer_id = ? ORDER BY created_at", (customer_id,)
        )
    parts_by_job: dict[str, list[Part]] = {}
    for p in _query(connection, "SELECT * FROM job_parts ORDER BY job_id, position"):
        parts_by_job.setdefault(p["job_id"], []).append(_part_from_row(p))
    return [_job_from_row(r, parts_by_job.get(r["id"], [])) for r in rows]


def upsert_job(connection: sqlite3.Connection, job: Job) -> None:
    """Write the job row and replace its ordered part list."""
    _upsert(
        connection,
        "jobs",
        {
            "id": job.id,
            "customer_id": job.customer_id,
            "date_of_service": job.date_of_service,
            "problem_description": job.problem_description,
            "work_performed": job.work_performed,
            "labor_hours": float(job.labor_hours),
            "labor_rate_cents": job.labor_rate_cents,
            "misc_fees_cents": job.misc_fees_cents,
            "misc_fees_description": job.misc_fees_description,
            "tax_rate": float(job.tax_rate),
            "status": job.status,
            "technician_notes": job.technician_notes,
            "invoice_id": job.invoice_id,
            "created_at": job.created_at,
            "updated_at": job.updated_at,
        },
    )
    connection.execute("DELETE FROM job_parts WHERE job_id = ?", (job.id,))
    for position, part in enumerate(job.parts, start=1):
        connection.execute(
            """
            INSERT INTO job_parts (
                id, job_id, position, name, quantity, unit_cost_cents, unit_price_cents,
                source, inventory_item_id, stock_deducted
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                part.id,
                job.id,
                position,
                part.name,
                part.quantity,
                part.unit_cost_cents,
                part.unit_price_cents,
                part.source,
                part.inventory_item_id,
                1 if part.stock_deducted else 0,
            ),
        )


def update_job_status(connection: sqlite3.Connection, job_id: str, status: str) -> None:
    connection.execute(
        "UPDATE jobs SET status = ?, updated_at = ? WHERE id = ?",
        (status, utc_now(), job_id),
    )


def delete_job_row(connection: sqlite3.Connection, job_id: str) -> None:
    connection.execute("DELETE FROM job_parts WHERE job_id = ?", (job_id,))
    connection.execute("DELETE FROM jobs WHERE id = ?", (job_id,))


# -----------------------------
# Invoices and payments
# -----------------------------

_INVOICE_COLUMNS = (
    "id", "invoice_number", "job_id", "customer_id", "invoice_date", "due_date",
    "labor_total_cents", "parts_total_cents", "pass_through_parts_cents", "misc_fees_cents",
    "subtotal_cents", "tax_cents", "total_cents", "income_amount_cents", "paid_amount_cents",
    "payment_status", "tax_basis", "payment_method", "payment_date", "created_at", "updated_at",
)


def _invoice_from_row(row: sqlite3.Row) -> Invoice:
    return Invoice(**{column: row[column] for column in _INVOICE_COLUMNS})


def get_invoice(invoice_id: str, connection: sqlite3.Connection | None = None) -> Invoice | None:
    rows = _query(connection, "SELECT * FROM invoices WHERE id = ?", (invoice_id,))
    return _invoice_from_row(rows[0]) if rows else None


def get_invoice_for_job(job_id: str, connection: sqlite3.Connection | None = None) -> Invoice | None:
    rows = _query(connection, "SELECT * FROM invoices WHERE job_id = ?", (job_id,))
    return _invoice_from_row(rows[0]) if rows else None


def list_invoices(
    customer_id: str | None = None,
    payment_status: str | None = None,
    connection: sqlite3.Connection | None = None,
) -> list[Invoice]:
    conditions = ["1 = 1"]
    params: list[Any] = []
    if customer_id is not None:
        conditions.append("customer_id = ?")
        params.append(customer_id)
    if payment_status is not None:
        conditions.append("payment_status = ?")
        params.append(payment_status)
    where = " AND ".join(conditions)
    rows = _query(
        connection,
        f"SELECT * FROM invoices WHERE {where} ORDER BY invoice_date, invoice_number",
        tuple(params),
    )
    return [_invoice_from_row(r) for r in rows]


def upsert_invoice(connection: sqlite3.Connection, invoice: Invoice) -> None:
    _upsert(connection, "invoices", {column: getattr(invoice, column) for column in _INVOICE_COLUMNS})


def delete_invoice_row(connection: sqlite3.Connection, invoice_id: str) -> None:
    connection.execute("DELETE FROM invoices WHERE id = ?", (invoice_id,))


def _payment_from_row(row: sqlite3.Row) -> Payment:
    return Payment(
        id=row["id"],
        invoice_id=row["invoice_id"],
        type=row["type"],
        amount_cents=int(row["amount_cents"]),
        method=row["method"],
        notes=row["notes"],
        date=row["date"],
        created_at=row["created_at"],
    )


def list_payments(invoice_id: str, connection: sqlite3.Connection | None = None) -> list[Payment]:
    rows = _query(
        connection,
        "SELECT * FROM payments WHERE invoice_id = ? ORDER BY created_at, rowid",
        (invoice_id,),
    )
    return [_payment_from_row(r) for r in rows]


def insert_payment(connection: sqlite3.Connection, payment: Payment) -> None:
    connection.execute(
        """
        INSERT INTO payments (id, invoice_id, type, amount_cents, method, notes, date, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            payment.id,
            payment.invoice_id,
            payment.type,
            payment.amount_cents,
            payment.method,
            payment.notes,
            payment.date,
            payment.created_at,
        ),
    )


def delete_payments_for_invoice(connection: sqlite3.Connection, invoice_id: str) -> list[str]:
    """Delete every payment of an invoice; returns the deleted ids."""
    ids = [
        r["id"]
        for r in connection.execute(
            "SELECT id FROM payments WHERE invoice_id = ?", (invoice_id,)
        ).fetchall()
    ]
    connection.execute("DELETE FROM payments WHERE invoice_id = ?", (invoice_id,))
    return ids


# -----------------------------
# Expenses
# -----------------------------

def _expense_from_row(row: sqlite3.Row) -> Expense:
    return Expense(
        id=row["id"],
        date=row["date"],
        vendor=row["vendor"],
        category=row["category"],
        description=row["description"],
        amount_cents=int(row["amount_cents"]),
        job_id=row["job_id"],
        customer_id=row["customer_id"],
        notes=row["notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def list_expenses(connection: sqlite3.Connection | None = None) -> list[Expense]:
    rows = _query(connection, "SELECT * FROM expenses ORDER BY date, created_at")
    return [_expense_from_row(r) for r in rows]


def get_expense(expense_id: str, connection: sqlite3.Connection | None = None) -> Expense | None:
    rows = _query(connection, "SELECT * FROM expenses WHERE id = ?", (expense_id,))
    return _expense_from_row(rows[0]) if rows else None


def insert_expense(connection: sqlite3.Connection, expense: Expense) -> None:
    connection.execute(
        """
        INSERT INTO expenses (
            id, date, vendor, category, description, amount_cents, job_id, customer_id,
            notes, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            expense.id,
            expense.date,
            expense.vendor,
            expense.category,
            expense.description,
            expense.amount_cents,
            expense.job_id,
            expense.customer_id,
            expense.notes,
            expense.created_at,
            expense.updated_at,
        ),
    )


def update_expense_row(connection: sqlite3.Connection, expense: Expense) -> None:
    connection.execute(
        """
        UPDATE expenses
        SET date = ?, vendor = ?, category = ?, description = ?, amount_cents = ?,
            job_id = ?, customer_id = ?, notes = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            expense.date,
            expense.vendor,
            expense.category,
            expense.description,
            expense.amount_cents,
            expense.job_id,
            expense.customer_id,
            expense.notes,
            expense.updated_at,
            expense.id,
        ),
    )


def delete_expense_row(connection: sqlite3.Connection, expense_id: str) -> None:
    connection.execute("DELETE FROM expenses WHERE id = ?", (expense_id,))


# -----------------------------
# Reminders and attachments
# -----------------------------

def insert_reminder(connection: sqlite3.Connection, reminder: Reminder) -> None:
    connection.execute(
        """
        INSERT INTO reminders (id, job_id, customer_id, title, due_date, completed, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            reminder.id,
            reminder.job_id,
            reminder.customer_id,
            reminder.title,
            reminder.due_date,
            1 if reminder.completed else 0,
            reminder.created_at,
        ),
    )


def insert_attachment(connection: sqlite3.Connection, attachment: Attachment) -> None:
    connection.execute(
        """
        INSERT INTO attachments (id, job_id, file_name, file_path, size_bytes, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            attachment.id,
            attachment.job_id,
            attachment.file_name,
            attachment.file_path,
            attachment.size_bytes,
            attachment.created_at,
        ),
    )


def delete_job_children(connection: sqlite3.Connection, table: str, job_id: str) -> list[str]:
    """Delete reminders or attachments of a job; returns the deleted ids."""
    if table not in ("reminders", "attachments"):
        raise ValueError(f"Unsupported child table: {table}")
    ids = [
        r["id"]
        for r in connection.execute(f"SELECT id FROM {table} WHERE job_id = ?", (job_id,)).fetchall()
    ]
    connection.execute(f"DELETE FROM {table} WHERE job_id = ?", (job_id,))
    return ids

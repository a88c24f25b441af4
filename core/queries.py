"""Centralized read-side SQL for the CLI summary and the API layer."""

from __future__ import annotations

import json
from typing import Any

from core.db import execute_returning_id, fetchall, fetchone


def get_dashboard_summary() -> dict[str, Any]:
    """Counts and money totals across the whole ledger."""
    invoices = fetchone(
        """
        SELECT
          COUNT(*) AS invoice_count,
          COALESCE(SUM(total_cents), 0) AS invoiced_cents,
          COALESCE(SUM(paid_amount_cents), 0) AS collected_cents,
          COALESCE(SUM(income_amount_cents), 0) AS income_cents,
          COALESCE(SUM(CASE WHEN total_cents > paid_amount_cents
                            THEN total_cents - paid_amount_cents ELSE 0 END), 0) AS outstanding_cents,
          COUNT(CASE WHEN payment_status = 'unpaid' THEN 1 END) AS unpaid_count,
          COUNT(CASE WHEN payment_status = 'partial' THEN 1 END) AS partial_count,
          COUNT(CASE WHEN payment_status = 'paid' THEN 1 END) AS paid_count,
          COUNT(CASE WHEN payment_status = 'overpaid' THEN 1 END) AS overpaid_count
        FROM invoices
        """
    ) or {}
    expenses = fetchone(
        "SELECT COUNT(*) AS expense_count, COALESCE(SUM(amount_cents), 0) AS expenses_cents FROM expenses"
    ) or {}
    counts = fetchone(
        """
        SELECT
          (SELECT COUNT(*) FROM customers WHERE archived = 0) AS customer_count,
          (SELECT COUNT(*) FROM jobs) AS job_count,
          (SELECT COUNT(*) FROM inventory_items
             WHERE reorder_level IS NOT NULL AND quantity <= reorder_level) AS low_stock_count
        """
    ) or {}

    collected = int(invoices.get("collected_cents") or 0)
    expenses_cents = int(expenses.get("expenses_cents") or 0)
    return {
        "customer_count": int(counts.get("customer_count") or 0),
        "job_count": int(counts.get("job_count") or 0),
        "invoice_count": int(invoices.get("invoice_count") or 0),
        "invoiced_cents": int(invoices.get("invoiced_cents") or 0),
        "collected_cents": collected,
        "income_cents": int(invoices.get("income_cents") or 0),
        "outstanding_cents": int(invoices.get("outstanding_cents") or 0),
        "expense_count": int(expenses.get("expense_count") or 0),
        "expenses_cents": expenses_cents,
        "net_cents": collected - expenses_cents,
        "low_stock_count": int(counts.get("low_stock_count") or 0),
        "invoices_by_status": {
            status: int(invoices.get(f"{status}_count") or 0)
            for status in ("unpaid", "partial", "paid", "overpaid")
        },
    }


def get_customer_total_spend(customer_id: str) -> int:
    """Sum of paid amounts over the customer's invoices."""
    row = fetchone(
        "SELECT COALESCE(SUM(paid_amount_cents), 0) AS spend FROM invoices WHERE customer_id = ?",
        (customer_id,),
    )
    return int((row or {}).get("spend") or 0)


def get_customer_outstanding_balance(customer_id: str) -> int:
    """Sum of max(0, total - paid) over the customer's invoices."""
    row = fetchone(
        """
        SELECT COALESCE(SUM(CASE WHEN total_cents > paid_amount_cents
                                 THEN total_cents - paid_amount_cents ELSE 0 END), 0) AS balance
        FROM invoices
        WHERE customer_id = ?
        """,
        (customer_id,),
    )
    return int((row or {}).get("balance") or 0)


def get_customers(include_archived: bool = False) -> list[dict[str, Any]]:
    """Customers with job count, total spend and outstanding balance."""
    where = "" if include_archived else "WHERE c.archived = 0"
    rows = fetchall(
        f"""
        SELECT c.id, c.name, c.email, c.phone, c.address, c.tags_json, c.archived,
               (SELECT COUNT(*) FROM jobs j WHERE j.customer_id = c.id) AS job_count,
               COALESCE(SUM(i.paid_amount_cents), 0) AS total_spend_cents,
               COALESCE(SUM(CASE WHEN i.total_cents > i.paid_amount_cents
                                 THEN i.total_cents - i.paid_amount_cents ELSE 0 END), 0)
                 AS outstanding_cents
        FROM customers c
        LEFT JOIN invoices i ON i.customer_id = c.id
        {where}
        GROUP BY c.id
        ORDER BY c.name COLLATE NOCASE
        """
    )
    for row in rows:
        row["tags"] = json.loads(row.pop("tags_json") or "[]")
        row["archived"] = bool(row["archived"])
    return rows


def get_customer_detail(customer_id: str) -> dict[str, Any] | None:
    """One customer with their jobs and invoices."""
    customer = fetchone("SELECT * FROM customers WHERE id = ?", (customer_id,))
    if customer is None:
        return None
    customer["tags"] = json.loads(customer.pop("tags_json") or "[]")
    customer["archived"] = bool(customer["archived"])
    customer["jobs"] = fetchall(
        """
        SELECT id, date_of_service, problem_description, status, invoice_id
        FROM jobs
        WHERE customer_id = ?
        ORDER BY date_of_service, created_at
        """,
        (customer_id,),
    )
    customer["invoices"] = get_invoices(customer_id=customer_id)
    customer["total_spend_cents"] = get_customer_total_spend(customer_id)
    customer["outstanding_cents"] = get_customer_outstanding_balance(customer_id)
    return customer


def get_invoices(
    customer_id: str | None = None,
    payment_status: str | None = None,
    limit: int = 500,
) -> list[dict[str, Any]]:
    """Invoices with customer name, newest first, optionally filtered."""
    conditions = ["1 = 1"]
    params: list[Any] = []
    if customer_id is not None:
        conditions.append("i.customer_id = ?")
        params.append(customer_id)
    if payment_status is not None:
        conditions.append("i.payment_status = ?")
        params.append(payment_status)
    params.append(limit)
    where = " AND ".join(conditions)
    return fetchall(
        f"""
        SELECT i.id, i.invoice_number, i.job_id, i.customer_id, c.name AS customer_name,
               i.invoice_date, i.due_date, i.subtotal_cents, i.tax_cents, i.total_cents,
               i.income_amount_cents, i.paid_amount_cents, i.payment_status,
               i.payment_method, i.payment_date
        FROM invoices i
        LEFT JOIN customers c ON c.id = i.customer_id
        WHERE {where}
        ORDER BY i.invoice_date DESC, i.invoice_number DESC
        LIMIT ?
        """,
        tuple(params),
    )


def get_invoice_payments(invoice_id: str) -> list[dict[str, Any]]:
    return fetchall(
        "SELECT * FROM payments WHERE invoice_id = ? ORDER BY created_at, rowid",
        (invoice_id,),
    )


def record_import_run(
    file_name: str,
    source: str | None,
    status: str,
    started_at: str,
    finished_at: str,
    stats: dict[str, Any] | None = None,
    error: str | None = None,
) -> int:
    """Persist the outcome of one file import. Returns the run id."""
    return execute_returning_id(
        """
        INSERT INTO import_runs (file_name, source, status, stats_json, error, started_at, finished_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            file_name,
            source,
            status,
            json.dumps(stats) if stats is not None else None,
            error,
            started_at,
            finished_at,
        ),
    )


def get_import_runs(limit: int = 50) -> list[dict[str, Any]]:
    """Most recent import runs with decoded stats."""
    rows = fetchall("SELECT * FROM import_runs ORDER BY id DESC LIMIT ?", (limit,))
    for row in rows:
        row["stats"] = json.loads(row.pop("stats_json") or "null")
    return rows

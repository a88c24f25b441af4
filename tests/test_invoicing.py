import sqlite3
from contextlib import closing

import pytest

from core import invoicing, store
from core.audit import list_entries
from core.db import get_connection
from core.errors import (
    CustomerHasJobsError,
    InvalidAmountError,
    InvoiceAlreadyExistsError,
    JobLockedError,
)
from core.invoicing import calculate_totals, derive_payment_status
from core.models import Job, Part


def _repair_job():
    customer = invoicing.add_customer("Grace Hopper", email="grace@example.com")
    item = invoicing.add_inventory_item("Battery", unit_cost_cents=2000, unit_price_cents=4500, quantity=5)
    job = invoicing.add_job(
        customer.id,
        problem_description="Laptop will not boot",
        labor_hours=1.5,
        parts=[
            Part(name="Battery", quantity=2, unit_cost_cents=2000, unit_price_cents=4500,
                 inventory_item_id=item.id),
            Part(name="Customer SSD", quantity=1, unit_cost_cents=3000, unit_price_cents=3000,
                 source="customer-provided"),
        ],
        misc_fees_cents=500,
        misc_fees_description="Diagnostics",
    )
    return customer, item, job


# -----------------------------
# Pure rules
# -----------------------------

def test_totals_income_basis_excludes_pass_through_from_tax():
    _, _, job = _repair_job()
    totals = calculate_totals(job, "income")
    assert totals == {
        "labor_total_cents": 12750,
        "parts_total_cents": 9000,
        "pass_through_parts_cents": 3000,
        "misc_fees_cents": 500,
        "subtotal_cents": 25250,
        "tax_cents": 1836,
        "total_cents": 27086,
        "income_amount_cents": 22250,
    }


def test_totals_full_basis_taxes_everything_and_is_the_default():
    _, _, job = _repair_job()
    totals = calculate_totals(job, "full")
    assert calculate_totals(job) == totals
    assert totals["tax_cents"] == 2083
    assert totals["total_cents"] == 25250 + 2083


def test_totals_for_empty_job_are_zero():
    totals = calculate_totals(Job(customer_id="c"), "income")
    assert set(totals.values()) == {0}


@pytest.mark.parametrize(
    "paid, total, expected",
    [
        (0, 1000, "unpaid"),
        (0, 0, "unpaid"),
        (-5, 1000, "unpaid"),
        (400, 1000, "partial"),
        (1000, 1000, "paid"),
        (1001, 1000, "overpaid"),
    ],
)
def test_derive_payment_status(paid, total, expected):
    assert derive_payment_status(paid, total) == expected


# -----------------------------
# Jobs and stock
# -----------------------------

def test_add_job_uses_settings_defaults_and_consumes_stock():
    _, item, job = _repair_job()
    assert job.labor_rate_cents == 8500
    assert job.tax_rate == 8.25
    assert job.status == "quoted"
    assert store.get_inventory_item(item.id).quantity == 3
    stored = store.get_job(job.id)
    assert [p.stock_deducted for p in stored.parts] == [True, False]


def test_add_job_for_missing_customer_returns_none():
    assert invoicing.add_job("missing") is None


def test_add_job_rejects_unknown_fields():
    customer = invoicing.add_customer("Ada")
    with pytest.raises(ValueError):
        invoicing.add_job(customer.id, colour="red")


def test_replacing_parts_restocks_difference():
    _, item, job = _repair_job()
    kept = job.parts[0]
    kept.quantity = 1
    invoicing.update_job(job.id, {"parts": [kept]})
    assert store.get_inventory_item(item.id).quantity == 4


# -----------------------------
# Invoicing lifecycle
# -----------------------------

def test_complete_job_invoices_once():
    _, _, job = _repair_job()
    invoice = invoicing.complete_job(job.id, invoice_date="2024-03-01")

    assert invoice.invoice_number == "INV-1001"
    assert invoice.due_date == "2024-03-31"
    assert invoice.total_cents == 27333
    assert invoice.tax_cents == 2083
    assert invoice.income_amount_cents == 22250
    assert invoice.payment_status == "unpaid"
    assert invoice.tax_basis == "full"
    assert store.get_job(job.id).status == "invoiced"
    assert store.load_settings().next_invoice_number == 1002

    with pytest.raises(InvoiceAlreadyExistsError):
        invoicing.complete_job(job.id)
    assert store.load_settings().next_invoice_number == 1002


def test_payments_move_invoice_to_paid_and_job_with_it():
    _, _, job = _repair_job()
    invoice = invoicing.complete_job(job.id, invoice_date="2024-03-01")

    partial = invoicing.record_payment(invoice.id, 10000, method="Cash")
    assert partial.payment_status == "partial"
    assert store.get_job(job.id).status == "invoiced"

    paid = invoicing.record_payment(invoice.id, 17333, method="Card")
    assert paid.paid_amount_cents == 27333
    assert paid.payment_status == "paid"
    assert paid.payment_method == "Card"
    assert store.get_job(job.id).status == "paid"
    assert len(store.list_payments(invoice.id)) == 2


def test_overpayment_is_recorded_as_overpaid():
    _, _, job = _repair_job()
    invoice = invoicing.complete_job(job.id)
    updated = invoicing.record_payment(invoice.id, 30000)
    assert updated.payment_status == "overpaid"
    assert store.get_job(job.id).status == "paid"


def test_locked_job_needs_override_for_structural_edits():
    _, _, job = _repair_job()
    invoice = invoicing.complete_job(job.id)
    invoicing.record_payment(invoice.id, 27333)

    with pytest.raises(JobLockedError):
        invoicing.update_job(job.id, {"misc_fees_cents": 1500})

    # Non-structural edits are always allowed.
    invoicing.update_job(job.id, {"technician_notes": "Replaced battery"})
    assert store.get_job(job.id).technician_notes == "Replaced battery"

    invoicing.update_job(job.id, {"misc_fees_cents": 1500}, override=True)
    invoice = store.get_invoice_for_job(job.id)
    assert invoice.total_cents == 28416
    assert invoice.paid_amount_cents == 27333
    assert invoice.payment_status == "partial"
    assert store.get_job(job.id).status == "invoiced"


def test_refund_floors_paid_amount_and_leaves_job_status():
    _, _, job = _repair_job()
    invoice = invoicing.complete_job(job.id)
    invoicing.record_payment(invoice.id, 27333)

    refunded = invoicing.record_refund(invoice.id, 30000, notes="Goodwill")
    assert refunded.paid_amount_cents == 0
    assert refunded.payment_status == "unpaid"
    assert store.get_job(job.id).status == "paid"
    kinds = [p.type for p in store.list_payments(invoice.id)]
    assert kinds == ["payment", "refund"]


def test_downward_edit_on_paid_job_is_overpaid_and_stays_paid():
    _, _, job = _repair_job()
    invoice = invoicing.complete_job(job.id)
    invoicing.record_payment(invoice.id, 27333)

    invoicing.update_job(job.id, {"misc_fees_cents": 0}, override=True)
    invoice = store.get_invoice_for_job(job.id)
    # 24750 + 8.25% tax (2041.875 rounds up)
    assert invoice.total_cents == 26792
    assert invoice.paid_amount_cents == 27333
    assert invoice.payment_status == "overpaid"
    assert store.get_job(job.id).status == "paid"


def test_recalculating_after_refund_moves_paid_job_back_to_invoiced():
    _, _, job = _repair_job()
    invoice = invoicing.complete_job(job.id)
    invoicing.record_payment(invoice.id, 27333)
    invoicing.record_refund(invoice.id, 5000)
    assert store.get_job(job.id).status == "paid"

    recalculated = invoicing.recalculate_invoice(invoice.id)
    assert recalculated.total_cents == 27333
    assert recalculated.payment_status == "partial"
    assert store.get_job(job.id).status == "invoiced"
    assert list_entries(entity_id=job.id, limit=1)[0]["details"] == "Job status changed to invoiced"


@pytest.mark.parametrize(
    "steps, paid, status, job_status",
    [
        ([("payment", 20000), ("payment", 10000), ("refund", 5000)], 25000, "partial", "paid"),
        ([("refund", 5000), ("payment", 20000), ("payment", 10000)], 30000, "overpaid", "paid"),
        ([("payment", 20000), ("refund", 5000), ("payment", 10000)], 25000, "partial", "invoiced"),
        ([("payment", 30000), ("refund", 2667)], 27333, "paid", "paid"),
        ([("payment", 5000), ("refund", 9000), ("payment", 1000)], 1000, "partial", "invoiced"),
    ],
)
def test_payment_and_refund_orderings(steps, paid, status, job_status):
    _, _, job = _repair_job()
    invoice = invoicing.complete_job(job.id)
    for kind, amount in steps:
        if kind == "payment":
            updated = invoicing.record_payment(invoice.id, amount)
        else:
            updated = invoicing.record_refund(invoice.id, amount)
        assert updated.paid_amount_cents >= 0
        assert updated.payment_status == derive_payment_status(updated.paid_amount_cents, updated.total_cents)

    stored = store.get_invoice(invoice.id)
    assert stored.paid_amount_cents == paid
    assert stored.payment_status == status
    assert store.get_job(job.id).status == job_status
    assert [p.type for p in store.list_payments(invoice.id)] == [kind for kind, _ in steps]


def test_non_positive_amounts_are_rejected():
    _, _, job = _repair_job()
    invoice = invoicing.complete_job(job.id)
    with pytest.raises(InvalidAmountError):
        invoicing.record_payment(invoice.id, 0)
    with pytest.raises(InvalidAmountError):
        invoicing.record_refund(invoice.id, -100)
    assert store.list_payments(invoice.id) == []


def test_missing_ids_are_a_no_op():
    assert invoicing.complete_job("nope") is None
    assert invoicing.record_payment("nope", 100) is None
    assert invoicing.record_refund("nope", 100) is None
    assert invoicing.update_job("nope", {"technician_notes": "x"}) is None
    assert invoicing.delete_job("nope") is None
    assert invoicing.recalculate_invoice("nope") is None
    assert invoicing.delete_customer("nope") is None


# -----------------------------
# Deletion
# -----------------------------

def test_delete_locked_job_needs_force_and_cascades():
    customer, item, job = _repair_job()
    invoice = invoicing.complete_job(job.id)
    invoicing.record_payment(invoice.id, 5000)
    invoicing.add_reminder("Follow up", "2024-04-01", job_id=job.id)
    invoicing.add_attachment(job.id, "photo.jpg", size_bytes=1024)

    with pytest.raises(JobLockedError):
        invoicing.delete_job(job.id)
    assert store.get_job(job.id) is not None

    assert invoicing.delete_job(job.id, force=True) is True
    assert store.get_job(job.id) is None
    assert store.get_invoice(invoice.id) is None
    assert store.list_payments(invoice.id) == []
    assert store.get_inventory_item(item.id).quantity == 5
    with closing(get_connection()) as connection:
        leftovers = [
            connection.execute(f"SELECT COUNT(*) FROM {table} WHERE job_id = ?", (job.id,)).fetchone()[0]
            for table in ("reminders", "attachments", "job_parts")
        ]
    assert leftovers == [0, 0, 0]

    # The customer no longer owns a job and can go.
    assert invoicing.delete_customer(customer.id) is True


def test_customer_with_jobs_cannot_be_deleted():
    customer, _, _ = _repair_job()
    with pytest.raises(CustomerHasJobsError):
        invoicing.delete_customer(customer.id)
    assert store.get_customer(customer.id) is not None


def test_archive_and_update_customer():
    customer = invoicing.add_customer("Linus")
    invoicing.update_customer(customer.id, {"phone": "555-0100", "tags": ["vip"]})
    archived = invoicing.archive_customer(customer.id)
    stored = store.get_customer(customer.id)
    assert archived.archived is True
    assert stored.phone == "555-0100"
    assert stored.tags == ["vip"]
    with pytest.raises(ValueError):
        invoicing.update_customer(customer.id, {"id": "other"})


def test_deleting_imported_expense_frees_its_marker(paypal_csv):
    from core.importers import import_statement

    import_statement(paypal_csv({}))
    (expense,) = store.list_expenses()
    assert invoicing.delete_expense(expense.id) is True
    with closing(get_connection()) as connection:
        kinds = [
            row["kind"]
            for row in connection.execute("SELECT kind FROM external_references WHERE source = 'paypal'")
        ]
    assert kinds == ["order"]


# -----------------------------
# Audit trail
# -----------------------------

def test_every_mutation_is_audited():
    _, _, job = _repair_job()
    invoice = invoicing.complete_job(job.id)
    invoicing.record_payment(invoice.id, 100)

    actions = [(e["entity_type"], e["action"]) for e in reversed(list_entries(limit=100))]
    assert actions[:3] == [("customer", "created"), ("inventory", "created"), ("inventory", "updated")]
    assert ("job", "created") in actions
    assert ("invoice", "created") in actions
    assert actions[-1] == ("payment", "paid")
    assert [e["action"] for e in list_entries(entity_id=job.id)] == ["updated", "created"]


def test_audit_log_is_append_only():
    invoicing.add_customer("Audited")
    with closing(get_connection()) as connection:
        with pytest.raises(sqlite3.DatabaseError):
            connection.execute("UPDATE audit_log SET details = 'tampered'")
        with pytest.raises(sqlite3.DatabaseError):
            connection.execute("DELETE FROM audit_log")


# -----------------------------
# Expenses and settings
# -----------------------------

def test_update_expense_is_audited():
    expense = invoicing.add_expense("Parts Depot", 1250, category="parts", date="2024-03-02")
    updated = invoicing.update_expense(expense.id, {"amount_cents": 1500, "description": "Screws"})

    stored = store.get_expense(expense.id)
    assert (stored.amount_cents, stored.description, stored.category) == (1500, "Screws", "parts")
    assert updated.updated_at == stored.updated_at
    (entry, _) = list_entries(entity_id=expense.id)
    assert entry["action"] == "updated"
    assert entry["details"] == "Expense from Parts Depot updated: amount_cents, description ($12.50 -> $15.00)"


def test_update_expense_rejects_bad_changes():
    expense = invoicing.add_expense("Parts Depot", 1250)
    with pytest.raises(ValueError):
        invoicing.update_expense(expense.id, {"id": "other"})
    with pytest.raises(InvalidAmountError):
        invoicing.update_expense(expense.id, {"amount_cents": 0})
    assert store.get_expense(expense.id).amount_cents == 1250
    assert invoicing.update_expense("nope", {"notes": "x"}) is None


def test_update_settings_persists_and_audits():
    settings = invoicing.update_settings({"invoice_prefix": "SL-", "next_invoice_number": 2000})
    assert (settings.invoice_prefix, settings.next_invoice_number) == ("SL-", 2000)

    stored = store.load_settings()
    assert (stored.invoice_prefix, stored.next_invoice_number, stored.tax_basis) == ("SL-", 2000, "full")
    newest = list_entries(limit=1)[0]
    assert (newest["entity_type"], newest["action"]) == ("settings", "updated")
    assert newest["details"] == "Settings updated (invoice_prefix: INV- -> SL-, next_invoice_number: 1001 -> 2000)"

    customer = invoicing.add_customer("Walk-in")
    job = invoicing.add_job(customer.id, labor_hours=1)
    assert invoicing.complete_job(job.id).invoice_number == "SL-2000"


def test_income_basis_is_opt_in_and_sticks_to_its_invoices():
    _, _, first = _repair_job()
    full = invoicing.complete_job(first.id)

    invoicing.update_settings({"tax_basis": "income"})
    customer = invoicing.add_customer("Second Customer")
    second = invoicing.add_job(
        customer.id,
        labor_hours=1.5,
        parts=[Part(name="Customer SSD", quantity=1, unit_cost_cents=3000, unit_price_cents=3000,
                    source="customer-provided")],
    )
    income = invoicing.complete_job(second.id)
    # 12750 labor + 3000 pass-through, tax only on the labor
    assert (income.tax_basis, income.tax_cents, income.total_cents) == ("income", 1052, 16802)

    # Earlier invoices keep the basis they were created with.
    again = invoicing.recalculate_invoice(full.id)
    assert (again.tax_basis, again.total_cents) == ("full", 27333)


@pytest.mark.parametrize(
    "changes",
    [
        {"tax_basis": "gross"},
        {"next_invoice_number": 0},
        {"default_tax_rate": 101},
        {"default_labor_rate_cents": -1},
        {"invoice_prefix": "  "},
        {"currency": "EUR"},
    ],
)
def test_update_settings_rejects_bad_values(changes):
    with pytest.raises(ValueError):
        invoicing.update_settings(changes)
    assert store.load_settings().tax_basis == "full"
    assert store.load_settings().next_invoice_number == 1001

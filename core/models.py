"""Ledger entities. All money fields are integer cents."""

from __future__ import annotations

import datetime
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

JOB_STATUSES = ("quoted", "in-progress", "completed", "invoiced", "paid")
LOCKED_JOB_STATUSES = ("invoiced", "paid")
PAYMENT_STATUSES = ("unpaid", "partial", "paid", "overpaid")
PART_SOURCES = ("inventory", "customer-provided")
PAYMENT_TYPES = ("payment", "refund")


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> str:
    return datetime.datetime.now(datetime.UTC).isoformat()


@dataclass
class Customer:
    name: str
    email: str = ""
    phone: str = ""
    address: str = ""
    notes: str = ""
    tags: list[str] = field(default_factory=list)
    archived: bool = False
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


@dataclass
class Part:
    name: str
    quantity: int = 1
    unit_cost_cents: int = 0
    unit_price_cents: int = 0
    source: str = "inventory"
    inventory_item_id: str | None = None
    stock_deducted: bool = False
    id: str = field(default_factory=new_id)

    @property
    def price_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents

    @property
    def is_pass_through(self) -> bool:
        return self.source == "customer-provided"


@dataclass
class Job:
    customer_id: str
    date_of_service: str = ""
    problem_description: str = ""
    work_performed: str = ""
    labor_hours: float = 0.0
    labor_rate_cents: int = 0
    parts: list[Part] = field(default_factory=list)
    misc_fees_cents: int = 0
    misc_fees_description: str = ""
    tax_rate: float = 0.0
    status: str = "quoted"
    technician_notes: str = ""
    invoice_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def is_locked(self) -> bool:
        return self.status in LOCKED_JOB_STATUSES


@dataclass
class InventoryItem:
    name: str
    category: str = ""
    unit_cost_cents: int = 0
    unit_price_cents: int = 0
    quantity: int = 0
    reorder_level: int | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


@dataclass
class Invoice:
    invoice_number: str
    job_id: str
    customer_id: str
    invoice_date: str = ""
    due_date: str = ""
    labor_total_cents: int = 0
    parts_total_cents: int = 0
    pass_through_parts_cents: int = 0
    misc_fees_cents: int = 0
    subtotal_cents: int = 0
    tax_cents: int = 0
    total_cents: int = 0
    income_amount_cents: int = 0
    paid_amount_cents: int = 0
    payment_status: str = "unpaid"
    tax_basis: str = "full"
    payment_method: str | None = None
    payment_date: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


@dataclass
class Payment:
    invoice_id: str
    amount_cents: int
    type: str = "payment"
    method: str = ""
    notes: str = ""
    date: str = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)


@dataclass
class Expense:
    vendor: str
    amount_cents: int
    date: str = ""
    category: str = "misc"
    description: str = ""
    job_id: str | None = None
    customer_id: str | None = None
    notes: str = ""
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


@dataclass
class Reminder:
    title: str
    due_date: str
    job_id: str | None = None
    customer_id: str | None = None
    completed: bool = False
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)


@dataclass
class Attachment:
    job_id: str
    file_name: str
    file_path: str = ""
    size_bytes: int = 0
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)


@dataclass
class AuditEntry:
    entity_type: str
    entity_id: str
    action: str
    details: str = ""
    id: str = field(default_factory=new_id)
    timestamp: str = field(default_factory=utc_now)


@dataclass
class Settings:
    invoice_prefix: str = "INV-"
    next_invoice_number: int = 1001
    default_tax_rate: float = 8.25
    default_labor_rate_cents: int = 8500
    tax_basis: str = "full"

    def allocate_invoice_number(self) -> str:
        """Return the next invoice number and advance the counter in place."""
        number = f"{self.invoice_prefix}{self.next_invoice_number}"
        self.next_invoice_number += 1
        return number


@dataclass
class ImportResult:
    source: str
    customers_created: int = 0
    customers_matched: int = 0
    jobs_created: int = 0
    payments_recorded: int = 0
    expenses_created: int = 0
    total_revenue_cents: int = 0
    total_fees_cents: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def to_dict(entity: Any) -> dict[str, Any]:
    """Plain-dict view of any ledger dataclass (JSON friendly)."""
    return asdict(entity)

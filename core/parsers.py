"""
Statement parsers: turn raw export text into typed, normalized rows.

Supported layouts:
- PayPal activity download (flat, fully quoted CSV)
- eBay order earnings report (columnar, preamble lines before the header)
- eBay legacy transaction report (wider layout, projected onto the
  earnings row shape so downstream code never branches on layout)
"""

from __future__ import annotations

import csv
import datetime
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, fields

from core.money import parse_cents, parse_fee_cents

PLACEHOLDER = "--"

EARNINGS_HEADER_PREFIX = "Order creation date,Order number,Item ID"
TRANSACTIONS_HEADER_PREFIX = "Transaction creation date,Type,Order number"
PAYPAL_HEADER_FRAGMENT = '"Date","Time","TimeZone","Name"'

PAYPAL_MIN_FIELDS = 15
EARNINGS_MIN_FIELDS = 33
TRANSACTIONS_MIN_FIELDS = 38

# Selling fee label -> MarketplaceRow field
SELLING_FEE_COLUMNS = {
    "FVF Fixed": "fvf_fixed",
    "FVF Variable": "fvf_variable",
    "Below Standard": "below_standard_fee",
    "INAD": "inad_fee",
    "International": "international_fee",
    "Deposit Processing": "deposit_processing_fee",
    "Regulatory": "regulatory_fee",
    "Promoted Listing": "promoted_listing_fee",
    "Charity Donation": "charity_donation",
    "Payment Dispute": "payment_dispute_fee",
}

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_DAY_MON_YEAR = re.compile(r"^(\d{1,2})-([A-Za-z]{3})-(\d{2}|\d{4})$")
_DATE_FORMATS = (
    "%m/%d/%Y",
    "%Y-%m-%d",
    "%b %d, %Y",
    "%B %d, %Y",
)


def strip_bom(text: str) -> str:
    return text[1:] if text.startswith("\ufeff") else text


def split_fields(line: str) -> list[str]:
    """Split one delimited line, honoring quoted fields that contain commas."""
    for record in csv.reader([line]):
        return [value.strip() for value in record]
    return []


def read_records(lines: Iterable[str]) -> Iterator[list[str]]:
    """Field-split many lines; quoted fields may span lines. Blank records are dropped."""
    for record in csv.reader(lines):
        values = [value.strip() for value in record]
        if any(values):
            yield values


def normalize_date(raw: str | None) -> str:
    """
    Normalize export dates to YYYY-MM-DD.

    Accepts MM/DD/YYYY, DD-Mon-YY (two-digit years >= 50 are 19xx),
    DD-Mon-YYYY, Mon D, YYYY and ISO dates. Anything else is returned
    unchanged so the original text is never lost.
    """
    value = str(raw or "").strip()
    if not value:
        return ""
    match = _DAY_MON_YEAR.match(value)
    if match:
        day, month_name, year_text = match.groups()
        month = _MONTHS.get(month_name.lower())
        if month is not None:
            year = int(year_text)
            if len(year_text) == 2:
                year += 1900 if year >= 50 else 2000
            try:
                return datetime.date(year, month, int(day)).isoformat()
            except ValueError:
                return value
    for fmt in _DATE_FORMATS:
        try:
            return datetime.datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    return value


def is_blank(value: str | None) -> bool:
    """Empty or the '--' placeholder used by marketplace exports."""
    text = (value or "").strip()
    return not text or text == PLACEHOLDER


# -----------------------------
# PayPal activity download
# -----------------------------

@dataclass(frozen=True)
class ProcessorRow:
    date: str
    time: str
    time_zone: str
    name: str
    type: str
    status: str
    currency: str
    amount: str
    fees: str
    total: str
    transaction_id: str
    item_title: str

    @property
    def amount_cents(self) -> int:
        return parse_cents(self.amount)

    @property
    def fee_cents(self) -> int:
        return parse_fee_cents(self.fees)

    @property
    def date_iso(self) -> str:
        return normalize_date(self.date)

    @property
    def is_importable(self) -> bool:
        """Completed, named, incoming payments only."""
        return self.status == "Completed" and bool(self.name) and self.amount_cents > 0


def parse_processor_rows(text: str) -> list[ProcessorRow]:
    """Parse every data row (header is the first non-empty line); short rows are dropped."""
    lines = [line for line in strip_bom(text).splitlines() if line.strip()]
    if len(lines) < 2:
        return []
    rows: list[ProcessorRow] = []
    for f in read_records(lines[1:]):
        if len(f) < PAYPAL_MIN_FIELDS:
            continue
        rows.append(
            ProcessorRow(
                date=f[0],
                time=f[1],
                time_zone=f[2],
                name=f[3],
                type=f[4],
                status=f[5],
                currency=f[6],
                amount=f[7],
                fees=f[8],
                total=f[9],
                transaction_id=f[13],
                item_title=f[14],
            )
        )
    return rows


# -----------------------------
# eBay reports
# -----------------------------

@dataclass(frozen=True)
class MarketplaceRow:
    order_date: str
    order_number: str
    item_id: str
    item_title: str
    buyer_name: str
    ship_city: str
    ship_state: str
    ship_zip: str
    ship_country: str
    transaction_currency: str
    ebay_collected_tax: str
    item_price: str
    quantity: str
    item_subtotal: str
    shipping_and_handling: str
    seller_collected_tax: str
    discount: str
    payout_currency: str
    gross_amount: str
    fvf_fixed: str
    fvf_variable: str
    below_standard_fee: str
    inad_fee: str
    international_fee: str
    deposit_processing_fee: str
    regulatory_fee: str
    promoted_listing_fee: str
    charity_donation: str
    shipping_labels: str
    payment_dispute_fee: str
    expenses: str
    refunds: str
    order_earnings: str
    your_cost: str = PLACEHOLDER
    net_order_earnings: str = PLACEHOLDER

    @property
    def date_iso(self) -> str:
        return normalize_date(self.order_date)

    @property
    def quantity_value(self) -> int:
        try:
            quantity = int(self.quantity.strip())
        except (TypeError, ValueError):
            return 1
        return quantity if quantity >= 1 else 1

    @property
    def ship_to(self) -> str:
        parts = (self.ship_city, self.ship_state, self.ship_zip, self.ship_country)
        return ", ".join(p for p in parts if not is_blank(p))

    @property
    def selling_fee_cents(self) -> dict[str, int]:
        """Itemized per-order selling fees (magnitudes), shipping labels excluded."""
        return {label: parse_fee_cents(getattr(self, column)) for label, column in SELLING_FEE_COLUMNS.items()}


_EARNINGS_FIELDS = [f.name for f in fields(MarketplaceRow)]

# Legacy transaction report column -> earnings row field. Fields absent in
# the legacy layout are filled with the placeholder.
_TRANSACTIONS_COLUMNS = {
    "order_date": 0,
    "order_number": 2,
    "buyer_name": 5,
    "ship_city": 6,
    "ship_state": 7,
    "ship_zip": 8,
    "ship_country": 9,
    "payout_currency": 11,
    "item_id": 17,
    "item_title": 19,
    "quantity": 21,
    "item_subtotal": 22,
    "shipping_and_handling": 23,
    "seller_collected_tax": 24,
    "ebay_collected_tax": 25,
    "fvf_fixed": 26,
    "fvf_variable": 27,
    "regulatory_fee": 28,
    "inad_fee": 29,
    "below_standard_fee": 30,
    "international_fee": 31,
    "charity_donation": 32,
    "deposit_processing_fee": 33,
    "gross_amount": 34,
    "transaction_currency": 35,
}


def find_marketplace_header(lines: list[str]) -> tuple[int, str | None]:
    """Return (header index, layout) where layout is 'earnings' or 'transactions'."""
    for idx, line in enumerate(lines):
        if line.startswith(EARNINGS_HEADER_PREFIX):
            return idx, "earnings"
        if line.startswith(TRANSACTIONS_HEADER_PREFIX):
            return idx, "transactions"
    return -1, None


def _earnings_row(f: list[str]) -> MarketplaceRow:
    values = {name: (f[i] if i < len(f) and f[i] else PLACEHOLDER) for i, name in enumerate(_EARNINGS_FIELDS)}
    return MarketplaceRow(**values)


def _transactions_row(f: list[str]) -> MarketplaceRow:
    values = {name: PLACEHOLDER for name in _EARNINGS_FIELDS}
    for name, index in _TRANSACTIONS_COLUMNS.items():
        values[name] = f[index]
    return MarketplaceRow(**values)


def parse_marketplace_rows(text: str) -> list[MarketplaceRow]:
    """
    Parse either eBay layout into MarketplaceRow records.

    Earnings rows need at least 33 fields. Legacy transaction rows need at
    least 38 fields and only Type == "Order" rows are kept.
    """
    lines = strip_bom(text).splitlines()
    header_idx, layout = find_marketplace_header(lines)
    if layout is None:
        return []
    rows: list[MarketplaceRow] = []
    for f in read_records(lines[header_idx + 1:]):
        if layout == "earnings":
            if len(f) < EARNINGS_MIN_FIELDS:
                continue
            rows.append(_earnings_row(f))
        else:
            if len(f) < TRANSACTIONS_MIN_FIELDS or f[1] != "Order":
                continue
            rows.append(_transactions_row(f))
    return rows

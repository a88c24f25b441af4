import csv
import io

import pytest

from core import db

TEST_CONFIG = {
    "invoice_prefix": "INV-",
    "next_invoice_number": 1001,
    "default_tax_rate": 8.25,
    "default_labor_rate_cents": 8500,
    "tax_basis": "full",
}

PAYPAL_HEADER = (
    '"Date","Time","TimeZone","Name","Type","Status","Currency","Gross","Fee","Net",'
    '"From Email Address","To Email Address","Address Status","Transaction ID","Item Title"'
)

EARNINGS_FIELDS = [
    "order_date", "order_number", "item_id", "item_title", "buyer_name",
    "ship_city", "ship_state", "ship_zip", "ship_country", "transaction_currency",
    "ebay_collected_tax", "item_price", "quantity", "item_subtotal", "shipping_and_handling",
    "seller_collected_tax", "discount", "payout_currency", "gross_amount", "fvf_fixed",
    "fvf_variable", "below_standard_fee", "inad_fee", "international_fee", "deposit_processing_fee",
    "regulatory_fee", "promoted_listing_fee", "charity_donation", "shipping_labels",
    "payment_dispute_fee", "expenses", "refunds", "order_earnings",
]
EARNINGS_HEADER = [
    "Order creation date", "Order number", "Item ID", "Item title", "Buyer name",
    "Ship to city", "Ship to province/region/state", "Ship to zip", "Ship to country",
    "Transaction currency", "eBay collected tax", "Item price", "Quantity", "Item subtotal",
    "Shipping and handling", "Seller collected tax", "Discount", "Payout currency", "Gross amount",
    "Final Value Fee - fixed", "Final Value Fee - variable", "Very high item not as described fee",
    "Below standard performance fee", "International fee", "Deposit processing fee",
    "Regulatory operating fee", "Promoted Listing Standard fee", "Charity donation",
    "Shipping labels", "Payment dispute fee", "Expenses", "Refunds", "Order earnings",
]
EARNINGS_DEFAULTS = {
    "order_date": "14-Mar-24",
    "order_number": "12-34567-89012",
    "item_id": "1234567890",
    "item_title": "Bjorn Cyberviking Kit",
    "buyer_name": "John Smith",
    "ship_city": "Austin",
    "ship_state": "TX",
    "ship_zip": "78701",
    "ship_country": "US",
    "transaction_currency": "USD",
    "ebay_collected_tax": "9.90",
    "item_price": "120.00",
    "quantity": "1",
    "item_subtotal": "120.00",
    "shipping_and_handling": "8.00",
    "payout_currency": "USD",
    "gross_amount": "128.00",
    "fvf_fixed": "-0.40",
    "fvf_variable": "-15.90",
    "shipping_labels": "-6.50",
    "order_earnings": "105.20",
}

# Legacy transaction report column positions for the fields tests set.
TRANSACTIONS_POSITIONS = {
    "order_date": 0,
    "type": 1,
    "order_number": 2,
    "buyer_name": 5,
    "ship_city": 6,
    "ship_state": 7,
    "ship_zip": 8,
    "ship_country": 9,
    "item_id": 17,
    "item_title": 19,
    "quantity": 21,
    "item_subtotal": 22,
    "shipping_and_handling": 23,
    "fvf_fixed": 26,
    "fvf_variable": 27,
    "gross_amount": 34,
}


def _csv_lines(rows):
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue()


@pytest.fixture
def ledger_config(tmp_path):
    return {**TEST_CONFIG, "db_path": str(tmp_path / "ledger.db")}


@pytest.fixture(autouse=True)
def ledger_db(ledger_config, monkeypatch):
    """Every test gets its own freshly initialised SQLite ledger."""
    monkeypatch.delenv("SERVICE_LEDGER_DB_PATH", raising=False)
    db.init_db(ledger_config)
    yield db.get_db_path()


@pytest.fixture
def paypal_csv():
    def build(*rows):
        lines = [PAYPAL_HEADER]
        for overrides in rows:
            r = {
                "date": "03/14/2024",
                "time": "10:15:00",
                "name": "Jane Doe",
                "type": "Website Payment",
                "status": "Completed",
                "gross": "150.00",
                "fee": "-5.80",
                "net": "144.20",
                "tx": "TX123",
                "title": "Phone repair",
                **overrides,
            }
            values = [
                r["date"], r["time"], "PDT", r["name"], r["type"], r["status"], "USD",
                r["gross"], r["fee"], r["net"], "buyer@example.com", "shop@example.com",
                "Confirmed", r["tx"], r["title"],
            ]
            lines.append(",".join(f'"{v}"' for v in values))
        return "\n".join(lines) + "\n"

    return build


@pytest.fixture
def ebay_csv():
    def build(*rows):
        preamble = '"Order earnings report"\n"Mar 1, 2024 - Mar 31, 2024"\n\n'
        records = [EARNINGS_HEADER]
        for overrides in rows:
            r = {**EARNINGS_DEFAULTS, **overrides}
            records.append([r.get(name, "--") for name in EARNINGS_FIELDS])
        return preamble + _csv_lines(records)

    return build


@pytest.fixture
def ebay_legacy_csv():
    def build(*rows):
        preamble = '"Transaction report"\n"Mar 1, 2024 - Mar 31, 2024"\n\n'
        header = ["Transaction creation date", "Type", "Order number"] + [
            f"Column {i}" for i in range(3, 40)
        ]
        records = [header]
        for overrides in rows:
            r = {
                "order_date": "Mar 14, 2024",
                "type": "Order",
                "order_number": "98-76543-21098",
                "buyer_name": "Ada Lovelace",
                "ship_city": "London",
                "ship_state": "--",
                "ship_zip": "N1",
                "ship_country": "GB",
                "item_id": "555",
                "item_title": "Netgotchi Pocket Kit",
                "quantity": "1",
                "item_subtotal": "40.00",
                "shipping_and_handling": "5.00",
                "fvf_fixed": "-0.30",
                "fvf_variable": "-5.20",
                "gross_amount": "45.00",
                **overrides,
            }
            values = ["--"] * 40
            for name, position in TRANSACTIONS_POSITIONS.items():
                values[position] = r[name]
            records.append(values)
        return preamble + _csv_lines(records)

    return build

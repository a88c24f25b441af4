"""
Duplicate protection for statement imports.

Every imported transaction registers (source, kind, external_id) in the
`external_references` table in the same transaction as the records it
produced. Marker text in notes is kept for humans only.
"""

from __future__ import annotations

import re
import sqlite3

from core.models import utc_now

KIND_ORDER = "order"
KIND_FEE = "fee"
KIND_SHIPPING_LABEL = "shipping-label"
KINDS = (KIND_ORDER, KIND_FEE, KIND_SHIPPING_LABEL)

PAYPAL_MARKER = re.compile(r"PayPal TX: (\S+)")
EBAY_ORDER_MARKER = re.compile(r"eBay Order: (\S+)")
EBAY_FEE_MARKER = re.compile(r"eBay Fee: (ORDER|SHIP)-(\S+)")


def paypal_marker(transaction_id: str) -> str:
    return f"PayPal TX: {transaction_id}"


def ebay_order_marker(order_number: str) -> str:
    return f"eBay Order: {order_number}"


def ebay_fee_marker(order_number: str) -> str:
    return f"eBay Fee: ORDER-{order_number}"


def ebay_label_marker(order_number: str) -> str:
    return f"eBay Fee: SHIP-{order_number}"


class DedupGuard:
    """In-memory view of the index for one source, kept current during a run."""

    def __init__(self, source: str, seen: dict[str, set[str]] | None = None) -> None:
        self.source = source
        self._seen: dict[str, set[str]] = {kind: set() for kind in KINDS}
        for kind, ids in (seen or {}).items():
            self._seen.setdefault(kind, set()).update(ids)

    @classmethod
    def load(cls, connection: sqlite3.Connection, source: str) -> DedupGuard:
        rows = connection.execute(
            "SELECT kind, external_id FROM external_references WHERE source = ?",
            (source,),
        ).fetchall()
        seen: dict[str, set[str]] = {}
        for row in rows:
            seen.setdefault(row["kind"], set()).add(row["external_id"])
        return cls(source, seen)

    def contains(self, kind: str, external_id: str) -> bool:
        return external_id in self._seen.get(kind, set())

    def add(self, kind: str, external_id: str) -> None:
        self._seen.setdefault(kind, set()).add(external_id)

    def register(
        self,
        connection: sqlite3.Connection,
        kind: str,
        external_id: str,
        entity_type: str,
        entity_id: str,
    ) -> None:
        """Write the index row in the caller's transaction and remember it."""
        register(connection, self.source, kind, external_id, entity_type, entity_id)
        self.add(kind, external_id)


def register(
    connection: sqlite3.Connection,
    source: str,
    kind: str,
    external_id: str,
    entity_type: str,
    entity_id: str,
) -> None:
    if kind not in KINDS:
        raise ValueError(f"Unknown reference kind: {kind}")
    connection.execute(
        """
        INSERT INTO external_references (source, kind, external_id, entity_type, entity_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (source, kind, external_id, entity_type, entity_id, utc_now()),
    )


def backfill_external_references(connection: sqlite3.Connection) -> int:
    """
    Index marker text from ledgers written before the index existed.

    Jobs carry order markers; expenses carry fee and label markers. Returns
    the number of index rows added.
    """
    candidates: list[tuple[str, str, str, str, str]] = []

    for row in connection.execute("SELECT id, technician_notes FROM jobs").fetchall():
        notes = row["technician_notes"] or ""
        for match in PAYPAL_MARKER.finditer(notes):
            candidates.append(("paypal", KIND_ORDER, match.group(1), "job", row["id"]))
        for match in EBAY_ORDER_MARKER.finditer(notes):
            candidates.append(("ebay", KIND_ORDER, match.group(1), "job", row["id"]))

    for row in connection.execute("SELECT id, notes FROM expenses").fetchall():
        notes = row["notes"] or ""
        for match in PAYPAL_MARKER.finditer(notes):
            candidates.append(("paypal", KIND_FEE, match.group(1), "expense", row["id"]))
        for match in EBAY_FEE_MARKER.finditer(notes):
            kind = KIND_FEE if match.group(1) == "ORDER" else KIND_SHIPPING_LABEL
            candidates.append(("ebay", kind, match.group(2), "expense", row["id"]))

    added = 0
    now = utc_now()
    for source, kind, external_id, entity_type, entity_id in candidates:
        cursor = connection.execute(
            """
            INSERT OR IGNORE INTO external_references
                (source, kind, external_id, entity_type, entity_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (source, kind, external_id, entity_type, entity_id, now),
        )
        added += cursor.rowcount
    return added

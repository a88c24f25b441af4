"""
Get-or-create resolvers scoped to one import run.

Each resolver owns a lowercase-name map seeded from persisted records, a
pending list of entities it created, and the audit entries for them. New
entities are visible to later lookups immediately; `flush` writes the
pending ones inside the caller's unit of work.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable

from core import store
from core.audit import AuditTrail
from core.bom import Kit
from core.models import Customer, InventoryItem, Part
from core.money import allocate_proportionally, format_cents


def _name_key(name: str) -> str:
    return (name or "").strip().lower()


class CustomerResolver:
    """Exact, case-insensitive name match. No fuzzy matching."""

    def __init__(self, existing: Iterable[Customer]) -> None:
        self._by_name: dict[str, Customer] = {}
        for customer in existing:
            self._by_name.setdefault(_name_key(customer.name), customer)
        self.pending: list[Customer] = []
        self.audit = AuditTrail()
        self.created = 0
        self.matched = 0

    def resolve(
        self,
        name: str,
        address: str = "",
        tags: list[str] | None = None,
        source: str = "",
    ) -> Customer:
        key = _name_key(name)
        customer = self._by_name.get(key)
        if customer is not None:
            self.matched += 1
            return customer

        customer = Customer(
            name=name.strip(),
            address=address,
            notes=f"Imported from {source} CSV" if source else "",
            tags=list(tags or []),
        )
        self._by_name[key] = customer
        self.pending.append(customer)
        self.created += 1
        self.audit.add(
            "customer",
            customer.id,
            "created",
            f'Customer "{customer.name}" created via {source or "statement"} CSV import',
        )
        return customer

    def flush(self, connection: sqlite3.Connection) -> None:
        for customer in self.pending:
            store.upsert_customer(connection, customer)
        self.audit.flush(connection)
        self.pending = []


class InventoryResolver:
    """Find-or-create inventory items by case-insensitive name, shared across a run."""

    def __init__(self, existing: Iterable[InventoryItem], source: str = "eBay") -> None:
        self._by_name: dict[str, InventoryItem] = {}
        for item in existing:
            self._by_name.setdefault(_name_key(item.name), item)
        self.source = source
        self.pending: list[InventoryItem] = []
        self.audit = AuditTrail()
        self.created = 0

    def resolve(self, name: str, unit_cost_cents: int, category: str = "") -> InventoryItem:
        key = _name_key(name)
        item = self._by_name.get(key)
        if item is not None:
            return item

        # Sell price starts at cost; the real price comes from each sale.
        item = InventoryItem(
            name=name.strip(),
            category=category,
            unit_cost_cents=unit_cost_cents,
            unit_price_cents=unit_cost_cents,
            quantity=0,
        )
        self._by_name[key] = item
        self.pending.append(item)
        self.created += 1
        self.audit.add(
            "inventory",
            item.id,
            "created",
            f'Inventory item "{item.name}" auto-created via {self.source} import '
            f"(cost: {format_cents(unit_cost_cents)})",
        )
        return item

    def expand_kit(self, kit: Kit, per_unit_price_cents: int, quantity: int) -> list[Part]:
        """
        One inventory part per kit component.

        The per-unit sale price is split across components by cost share
        (equally when the kit has no cost); the split sums exactly to the
        per-unit price.
        """
        weights = [c.unit_cost_cents for c in kit.components]
        prices = allocate_proportionally(per_unit_price_cents, weights)
        parts: list[Part] = []
        for component, price in zip(kit.components, prices):
            item = self.resolve(component.name, component.unit_cost_cents, component.category)
            parts.append(
                Part(
                    name=component.name,
                    quantity=quantity,
                    unit_cost_cents=component.unit_cost_cents,
                    unit_price_cents=price,
                    source="inventory",
                    inventory_item_id=item.id,
                )
            )
        return parts

    def flush(self, connection: sqlite3.Connection) -> None:
        for item in self.pending:
            store.upsert_inventory_item(connection, item)
        self.audit.flush(connection)
        self.pending = []

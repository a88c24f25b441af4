import json

from core.bom import DEFAULT_KITS, find_kit, load_kits
from core.models import Customer, InventoryItem
from core.resolvers import CustomerResolver, InventoryResolver


def test_customer_resolver_matches_case_insensitively():
    existing = Customer(name="Jane Doe")
    resolver = CustomerResolver([existing])
    assert resolver.resolve("  jane DOE ") is existing
    assert resolver.matched == 1
    assert resolver.created == 0
    assert resolver.pending == []


def test_customer_resolver_creates_once_per_run():
    resolver = CustomerResolver([])
    first = resolver.resolve("Bob Builder", "Austin, TX", ["ebay"], "eBay")
    second = resolver.resolve("bob builder")
    assert first is second
    assert resolver.created == 1
    assert resolver.matched == 1
    assert first.notes == "Imported from eBay CSV"
    assert first.tags == ["ebay"]
    assert first.address == "Austin, TX"
    assert len(resolver.audit) == 1
    assert resolver.audit.entries[0].action == "created"


def test_customer_resolver_no_fuzzy_matching():
    resolver = CustomerResolver([Customer(name="Jane Doe")])
    resolver.resolve("Jane Do")
    assert resolver.created == 1


def test_find_kit_by_keyword():
    assert find_kit("BJORN Cyberviking kit") is DEFAULT_KITS[1]
    assert find_kit("WiFi Companion v2") is DEFAULT_KITS[0]
    assert find_kit("Netgotchi") is DEFAULT_KITS[2]
    assert find_kit("USB cable") is None
    assert find_kit(None) is None


def test_expand_kit_splits_price_by_cost_share():
    resolver = InventoryResolver([])
    parts = resolver.expand_kit(DEFAULT_KITS[1], 12000, 1)
    assert [p.name for p in parts] == ["Raspberry Pi Zero W", "E-Ink Display", "Micro SD Card"]
    assert [p.unit_price_cents for p in parts] == [4500, 6000, 1500]
    assert [p.unit_cost_cents for p in parts] == [3000, 4000, 1000]
    assert all(p.source == "inventory" and p.inventory_item_id for p in parts)
    assert resolver.created == 3


def test_expand_kit_reuses_items_across_orders():
    existing = InventoryItem(name="e-ink display", unit_cost_cents=4000)
    resolver = InventoryResolver([existing])
    first = resolver.expand_kit(DEFAULT_KITS[0], 10800, 1)
    second = resolver.expand_kit(DEFAULT_KITS[1], 8000, 2)
    assert first[1].inventory_item_id == existing.id
    assert second[1].inventory_item_id == existing.id
    assert first[2].inventory_item_id == second[2].inventory_item_id
    # Raspberry Pi 3B, Micro SD Card, Raspberry Pi Zero W
    assert resolver.created == 3
    assert sum(p.unit_price_cents for p in second) == 8000
    assert all(p.quantity == 2 for p in second)


def test_new_inventory_item_defaults():
    resolver = InventoryResolver([])
    item = resolver.resolve("ESP32", 600, "Electronics")
    assert item.quantity == 0
    assert item.unit_price_cents == 600
    assert "auto-created via eBay import (cost: $6.00)" in resolver.audit.entries[0].details


def test_load_kits_override_and_fallback(tmp_path):
    assert load_kits(tmp_path / "missing.json") is DEFAULT_KITS

    path = tmp_path / "kits.json"
    path.write_text(
        json.dumps(
            {
                "kits": [
                    {
                        "keywords": ["Pager"],
                        "components": [
                            {"name": "Pi Pico", "unit_cost_cents": 400, "category": "Electronics"},
                            {"name": "LCD", "unit_cost_cents": 600},
                        ],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    kits = load_kits(path)
    assert len(kits) == 1
    assert kits[0].keywords == ("pager",)
    assert kits[0].total_cost_cents == 1000
    assert find_kit("Pocket pager", kits) is kits[0]

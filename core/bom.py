"""
Bill-of-materials kits: product titles that map to known component lists.

A sold kit is expanded into one part per component so that profit is the
sale price minus the sum of component costs.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from core.backup import read_json


@dataclass(frozen=True)
class Component:
    name: str
    unit_cost_cents: int
    category: str = ""


@dataclass(frozen=True)
class Kit:
    keywords: tuple[str, ...]
    components: tuple[Component, ...]

    @property
    def total_cost_cents(self) -> int:
        return sum(c.unit_cost_cents for c in self.components)


DEFAULT_KITS: tuple[Kit, ...] = (
    Kit(
        keywords=("xeno", "wifi companion"),
        components=(
            Component("Raspberry Pi 3B", 5800, "Electronics"),
            Component("E-Ink Display", 4000, "Displays"),
            Component("Micro SD Card", 1000, "Storage"),
        ),
    ),
    Kit(
        keywords=("bjorn",),
        components=(
            Component("Raspberry Pi Zero W", 3000, "Electronics"),
            Component("E-Ink Display", 4000, "Displays"),
            Component("Micro SD Card", 1000, "Storage"),
        ),
    ),
    Kit(
        keywords=("netgotchi",),
        components=(
            Component("ESP32", 600, "Electronics"),
            Component("1.3 Inch IIC I2C OLED Display Module 128x64 SH1106", 400, "Displays"),
        ),
    ),
)


def load_kits(path: str | Path | None = None) -> tuple[Kit, ...]:
    """
    Load kits from a JSON file, falling back to the built-in table.

    Expected shape:
    {"kits": [{"keywords": ["bjorn"],
               "components": [{"name": "...", "unit_cost_cents": 3000, "category": "..."}]}]}
    """
    if path is None or not Path(path).exists():
        return DEFAULT_KITS
    payload = read_json(path, default={"kits": []})
    kits = [_kit_from_payload(k) for k in payload.get("kits") or [] if isinstance(k, dict)]
    kits = [k for k in kits if k is not None]
    return tuple(kits) if kits else DEFAULT_KITS


def _kit_from_payload(payload: dict[str, Any]) -> Kit | None:
    keywords = tuple(
        str(k).strip().lower() for k in payload.get("keywords") or [] if str(k).strip()
    )
    components = []
    for raw in payload.get("components") or []:
        if not isinstance(raw, dict) or not str(raw.get("name") or "").strip():
            continue
        components.append(
            Component(
                name=str(raw["name"]).strip(),
                unit_cost_cents=int(raw.get("unit_cost_cents") or 0),
                category=str(raw.get("category") or ""),
            )
        )
    if not keywords or not components:
        return None
    return Kit(keywords=keywords, components=tuple(components))


def find_kit(item_title: str | None, kits: tuple[Kit, ...] = DEFAULT_KITS) -> Kit | None:
    """First kit with a keyword contained in the title (case-insensitive)."""
    lower = (item_title or "").lower()
    if not lower:
        return None
    for kit in kits:
        if any(keyword in lower for keyword in kit.keywords):
            return kit
    return None

"""Append-only audit trail. Entries are written inside the caller's unit of work."""

from __future__ import annotations

import sqlite3
from typing import Any

from core.db import fetchall
from core.models import AuditEntry

ENTITY_TYPES = (
    "customer",
    "job",
    "invoice",
    "payment",
    "expense",
    "inventory",
    "reminder",
    "attachment",
    "settings",
)
ACTIONS = ("created", "updated", "deleted", "paid", "refunded", "restocked")


class AuditTrail:
    """Accumulates entries for one operation or one import run."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    def add(self, entity_type: str, entity_id: str, action: str, details: str = "") -> AuditEntry:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown audit entity type: {entity_type}")
        if action not in ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")
        entry = AuditEntry(entity_type=entity_type, entity_id=entity_id, action=action, details=details)
        self.entries.append(entry)
        return entry

    def flush(self, connection: sqlite3.Connection) -> int:
        """Write pending entries and clear the buffer. Returns the number written."""
        written = insert_entries(connection, self.entries)
        self.entries = []
        return written

    def __len__(self) -> int:
        return len(self.entries)


def insert_entries(connection: sqlite3.Connection, entries: list[AuditEntry]) -> int:
    for entry in entries:
        connection.execute(
            """
            INSERT INTO audit_log (id, entity_type, entity_id, action, details, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (entry.id, entry.entity_type, entry.entity_id, entry.action, entry.details, entry.timestamp),
        )
    return len(entries)


def record(
    connection: sqlite3.Connection,
    entity_type: str,
    entity_id: str,
    action: str,
    details: str = "",
) -> AuditEntry:
    """Write a single entry now."""
    trail = AuditTrail()
    entry = trail.add(entity_type, entity_id, action, details)
    trail.flush(connection)
    return entry


def list_entries(
    entity_id: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    """Newest-first audit entries, optionally for one entity."""
    if entity_id is None:
        return fetchall(
            "SELECT * FROM audit_log ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (limit,),
        )
    return fetchall(
        "SELECT * FROM audit_log WHERE entity_id = ? ORDER BY timestamp DESC, rowid DESC LIMIT ?",
        (entity_id, limit),
    )

"""JSON backup export/restore for the ledger, with safe file helpers."""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any

from core.audit import record
from core.db import get_connection, transaction
from core.errors import LedgerIOError
from core.models import utc_now

BACKUP_VERSION = 1

# Parents first. Restore inserts in this order and deletes in reverse.
BACKUP_TABLES = (
    "settings",
    "customers",
    "inventory_items",
    "jobs",
    "job_parts",
    "invoices",
    "payments",
    "expenses",
    "reminders",
    "attachments",
    "external_references",
)


def read_json(path: str | Path, default: dict[str, Any] | None = None) -> dict[str, Any]:
    """Read JSON object; return provided default if file does not exist."""
    file_path = Path(path)
    if not file_path.exists():
        return dict(default or {})

    try:
        with file_path.open("r", encoding="utf-8") as handle:
            parsed = json.load(handle)
    except json.JSONDecodeError as exc:
        raise LedgerIOError(
            f"Failed to parse JSON in '{path}'. "
            "Nothing was changed; fix malformed JSON and retry."
        ) from exc

    if not isinstance(parsed, dict):
        raise LedgerIOError(f"Expected JSON object in '{path}'. Nothing was changed.")
    return parsed


def atomic_write_json(path: str | Path, data: dict[str, Any]) -> None:
    """Write JSON through a tmp file, validate it, then replace the target."""
    file_path = Path(path)
    tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
    file_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, ensure_ascii=False)
            handle.write("\n")

        with tmp_path.open("r", encoding="utf-8") as handle:
            json.load(handle)

        tmp_path.replace(file_path)
    except (OSError, json.JSONDecodeError) as exc:
        _safe_remove(tmp_path)
        raise LedgerIOError(
            f"Failed to write backup '{path}'. Existing file unchanged; fix issue and retry."
        ) from exc


def _safe_remove(path: Path) -> None:
    """Best-effort tmp file cleanup."""
    try:
        if path.exists():
            path.unlink()
    except OSError:
        return


def _table_columns(connection: sqlite3.Connection, table: str) -> set[str]:
    return {row["name"] for row in connection.execute(f"PRAGMA table_info({table})")}


def export_data(path: str | Path) -> dict[str, int]:
    """
    Snapshot every ledger table (audit log included) into one JSON file.

    Returns row counts per table.
    """
    tables: dict[str, list[dict[str, Any]]] = {}
    with closing(get_connection()) as connection:
        for table in (*BACKUP_TABLES, "audit_log"):
            rows = connection.execute(f"SELECT * FROM {table}").fetchall()
            tables[table] = [dict(row) for row in rows]

    atomic_write_json(
        path,
        {"version": BACKUP_VERSION, "exported_at": utc_now(), "tables": tables},
    )
    return {table: len(rows) for table, rows in tables.items()}


def restore_data(path: str | Path) -> dict[str, int]:
    """
    Replace the ledger contents with a backup, in one transaction.

    Business tables are cleared and reloaded. The audit log is append-only:
    backed-up entries missing locally are added, nothing is removed, and a
    restore entry is appended.
    """
    payload = read_json(path)
    tables = payload.get("tables")
    if payload.get("version") != BACKUP_VERSION or not isinstance(tables, dict):
        raise LedgerIOError(f"'{path}' is not a ledger backup (version {BACKUP_VERSION}).")

    counts: dict[str, int] = {}
    with transaction() as connection:
        for table in reversed(BACKUP_TABLES):
            connection.execute(f"DELETE FROM {table}")
        for table in (*BACKUP_TABLES, "audit_log"):
            rows = tables.get(table) or []
            verb = "INSERT OR IGNORE" if table == "audit_log" else "INSERT"
            known = _table_columns(connection, table)
            for row in rows:
                columns = list(row)
                unknown = [c for c in columns if c not in known]
                if unknown:
                    raise LedgerIOError(
                        f"Backup table '{table}' has unknown column(s): {', '.join(map(str, unknown))}. "
                        "Nothing was changed."
                    )
                connection.execute(
                    f"{verb} INTO {table} ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    tuple(row.values()),
                )
            counts[table] = len(rows)
        record(
            connection,
            "settings",
            "ledger",
            "updated",
            f"Ledger restored from backup {Path(path).name}",
        )
    return counts

"""SQLite helpers for the ledger database."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Any

from paths import LEDGER_DB_PATH

_db_path: Path = Path(LEDGER_DB_PATH)

SETTINGS_KEYS = (
    "invoice_prefix",
    "next_invoice_number",
    "default_tax_rate",
    "default_labor_rate_cents",
    "tax_basis",
)


def set_db_path(path: str | Path) -> None:
    """Point every later connection at another database file."""
    global _db_path
    _db_path = Path(path)


def get_db_path() -> Path:
    return _db_path


def get_connection() -> sqlite3.Connection:
    """Create a configured SQLite connection."""
    _db_path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(_db_path)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    connection.execute("PRAGMA journal_mode = WAL")
    return connection


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """
    One atomic unit of work.

    Commits when the block exits normally, rolls back and re-raises on any
    exception, so a unit is either fully written or not written at all.
    """
    with closing(get_connection()) as connection:
        try:
            yield connection
            connection.commit()
        except BaseException:
            connection.rollback()
            raise


def _table_has_column(connection: sqlite3.Connection, table: str, column: str) -> bool:
    """Check if a table has a column via PRAGMA table_info."""
    cursor = connection.execute(f"PRAGMA table_info({table})")
    for row in cursor.fetchall():
        if row[1] == column:
            return True
    return False


def _migrate_invoice_tax_basis(connection: sqlite3.Connection) -> None:
    """Add tax_basis if missing (backward compatible)."""
    if not _table_has_column(connection, "invoices", "tax_basis"):
        connection.execute(
            "ALTER TABLE invoices ADD COLUMN tax_basis TEXT NOT NULL DEFAULT 'full'"
        )


def _migrate_part_stock_flag(connection: sqlite3.Connection) -> None:
    """Add stock_deducted if missing (backward compatible)."""
    if not _table_has_column(connection, "job_parts", "stock_deducted"):
        connection.execute(
            "ALTER TABLE job_parts ADD COLUMN stock_deducted INTEGER NOT NULL DEFAULT 0"
        )


def init_db(config: dict[str, Any] | None = None) -> None:
    """Initialize schema, run column migrations and seed settings."""
    from core.dedup import backfill_external_references

    if config is None:
        from config import load_config

        config = load_config()
    if config.get("db_path"):
        set_db_path(config["db_path"])

    with closing(get_connection()) as connection:
        schema_path = Path(__file__).resolve().parent / "schema.sql"
        connection.executescript(schema_path.read_text(encoding="utf-8"))
        _migrate_invoice_tax_basis(connection)
        _migrate_part_stock_flag(connection)
        _seed_settings(connection, config)
        backfill_external_references(connection)
        connection.commit()


def _seed_settings(connection: sqlite3.Connection, config: dict[str, Any]) -> None:
    """Seed settings from configuration; existing values are never overwritten."""
    for key in SETTINGS_KEYS:
        if key not in config:
            continue
        connection.execute(
            "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
            (key, str(config[key])),
        )


def fetchone(query: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
    """Execute query and return first row as dict."""
    with closing(get_connection()) as connection:
        row = connection.execute(query, params).fetchone()
        return dict(row) if row is not None else None


def fetchall(query: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
    """Execute query and return all rows as dicts."""
    with closing(get_connection()) as connection:
        rows = connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]


def execute(query: str, params: tuple[Any, ...] = ()) -> None:
    """Execute write query and commit."""
    with closing(get_connection()) as connection:
        connection.execute(query, params)
        connection.commit()


def execute_returning_id(query: str, params: tuple[Any, ...] = ()) -> int:
    """Execute write query and return last inserted row id."""
    with closing(get_connection()) as connection:
        cursor = connection.execute(query, params)
        connection.commit()
        return int(cursor.lastrowid)

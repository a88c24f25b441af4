"""Thin orchestration for statement files: read, import, record the run. No business logic here."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from core.detect import detect_format
from core.errors import FormatError, ImportAbortedError
from core.importers import import_statement
from core.models import utc_now
from core.queries import record_import_run
from paths import IMPORTS_DIR, ensure_data_dirs


def read_statement(path: str | Path) -> str:
    """Read an export as text; a UTF-8 BOM is left for the parsers to strip."""
    return Path(path).read_text(encoding="utf-8", errors="replace")


def import_text(raw_text: str, file_name: str) -> dict[str, Any]:
    """
    Import already-loaded statement text and record an import_runs row.

    Returns {"run_id", "file_name", "source", "status", "stats", "error"}.
    Format and abort errors are recorded, then re-raised.
    """
    started_at = utc_now()
    source: str | None = None
    try:
        source = detect_format(raw_text).source
        result = import_statement(raw_text, file_name=file_name)
    except ImportAbortedError as exc:
        stats = exc.result.to_dict() if exc.result is not None else None
        record_import_run(file_name, source, "failed", started_at, utc_now(), stats, str(exc))
        raise
    except FormatError as exc:
        record_import_run(file_name, source, "failed", started_at, utc_now(), None, str(exc))
        raise

    stats = result.to_dict()
    run_id = record_import_run(file_name, result.source, "completed", started_at, utc_now(), stats)
    return {
        "run_id": run_id,
        "file_name": file_name,
        "source": result.source,
        "status": "completed",
        "stats": stats,
        "error": None,
    }


def import_file(path: str | Path) -> dict[str, Any]:
    """Import one statement file from disk."""
    file_path = Path(path)
    return import_text(read_statement(file_path), file_path.name)


def list_statement_files() -> list[str]:
    """Sorted CSV file names waiting in IMPORTS_DIR."""
    ensure_data_dirs()
    return sorted(p.name for p in IMPORTS_DIR.glob("*.csv"))

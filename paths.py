"""Centralized filesystem paths for persistent data and configs."""

from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent

DATA_DIR = BASE_DIR / "data"
LEDGER_DB_PATH = DATA_DIR / "ledger.db"
IMPORTS_DIR = DATA_DIR / "imports"
BACKUPS_DIR = DATA_DIR / "backups"

CONFIG_DIR = BASE_DIR / "config"
KITS_CONFIG_PATH = CONFIG_DIR / "kits.json"


def ensure_data_dirs() -> None:
    """Ensure required data directories exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    IMPORTS_DIR.mkdir(parents=True, exist_ok=True)
    BACKUPS_DIR.mkdir(parents=True, exist_ok=True)

"""Centralize configuration and environment variables for the ledger."""

import os

from dotenv import load_dotenv

TAX_BASES = ("income", "full")

_DEFAULTS = {
    "invoice_prefix": "INV-",
    "next_invoice_number": 1001,
    "default_tax_rate": 8.25,
    "default_labor_rate_cents": 8500,
    "tax_basis": "full",
}


def load_config() -> dict:
    """Load and validate configuration from environment.

    Loads variables from .env. Every value has a default; the settings
    values only seed the settings table the first time the ledger
    database is initialised.

    Returns:
        dict: Configuration with keys 'db_path', 'invoice_prefix',
        'next_invoice_number', 'default_tax_rate',
        'default_labor_rate_cents' and 'tax_basis'.

    Raises:
        ValueError: If a numeric value does not parse or is out of range.
    """
    load_dotenv()
    config = dict(_DEFAULTS)
    config["db_path"] = os.environ.get("SERVICE_LEDGER_DB_PATH", "").strip() or None

    prefix = os.environ.get("SERVICE_LEDGER_INVOICE_PREFIX")
    if prefix is not None:
        config["invoice_prefix"] = prefix.strip()

    config["next_invoice_number"] = _env_int(
        "SERVICE_LEDGER_NEXT_INVOICE_NUMBER", config["next_invoice_number"]
    )
    if config["next_invoice_number"] < 1:
        raise ValueError("SERVICE_LEDGER_NEXT_INVOICE_NUMBER must be at least 1.")

    config["default_labor_rate_cents"] = _env_int(
        "SERVICE_LEDGER_DEFAULT_LABOR_RATE_CENTS", config["default_labor_rate_cents"]
    )
    if config["default_labor_rate_cents"] < 0:
        raise ValueError("SERVICE_LEDGER_DEFAULT_LABOR_RATE_CENTS cannot be negative.")

    raw_rate = os.environ.get("SERVICE_LEDGER_DEFAULT_TAX_RATE", "").strip()
    if raw_rate:
        try:
            config["default_tax_rate"] = float(raw_rate)
        except ValueError as exc:
            raise ValueError(
                f"SERVICE_LEDGER_DEFAULT_TAX_RATE must be a number, got {raw_rate!r}."
            ) from exc
    if not 0 <= config["default_tax_rate"] <= 100:
        raise ValueError("SERVICE_LEDGER_DEFAULT_TAX_RATE must be between 0 and 100.")

    basis = os.environ.get("SERVICE_LEDGER_TAX_BASIS", "").strip().lower()
    if basis:
        if basis not in TAX_BASES:
            raise ValueError(
                f"SERVICE_LEDGER_TAX_BASIS must be one of {', '.join(TAX_BASES)}."
            )
        config["tax_basis"] = basis
    return config


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}.") from exc

"""Signature-based statement format detection."""

from __future__ import annotations

from enum import Enum

from core.errors import UnrecognizedFormatError
from core.parsers import (
    EARNINGS_HEADER_PREFIX,
    PAYPAL_HEADER_FRAGMENT,
    TRANSACTIONS_HEADER_PREFIX,
    strip_bom,
)

# eBay reports carry a few preamble lines (title, date range, seller) before the header.
SIGNATURE_SCAN_LINES = 25


class StatementFormat(str, Enum):
    EBAY_EARNINGS = "ebay-earnings"
    EBAY_TRANSACTIONS = "ebay-transactions"
    PAYPAL = "paypal"

    @property
    def source(self) -> str:
        """Source family: 'paypal' or 'ebay'."""
        return "paypal" if self is StatementFormat.PAYPAL else "ebay"


# Tried in order: newest marketplace layout, legacy marketplace layout, processor.
_SIGNATURES: tuple[tuple[StatementFormat, tuple[str, ...], tuple[str, ...]], ...] = (
    (StatementFormat.EBAY_EARNINGS, ("Order earnings report",), (EARNINGS_HEADER_PREFIX,)),
    (StatementFormat.EBAY_TRANSACTIONS, ("Transaction report",), (TRANSACTIONS_HEADER_PREFIX,)),
    (StatementFormat.PAYPAL, (PAYPAL_HEADER_FRAGMENT,), ()),
)


def _leading_lines(text: str, limit: int = SIGNATURE_SCAN_LINES) -> list[str]:
    lines: list[str] = []
    for line in strip_bom(text).splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        lines.append(stripped)
        if len(lines) >= limit:
            break
    return lines


def detect_format(text: str) -> StatementFormat:
    """
    Pick the statement format from the first non-empty lines.

    Raises UnrecognizedFormatError when no signature matches; nothing is
    parsed in that case.
    """
    lines = _leading_lines(text or "")
    for statement_format, fragments, prefixes in _SIGNATURES:
        for line in lines:
            if any(fragment in line for fragment in fragments):
                return statement_format
            if any(line.startswith(prefix) for prefix in prefixes):
                return statement_format
    raise UnrecognizedFormatError(
        "Unrecognized CSV format. Expected a PayPal activity export or an eBay "
        "order earnings / transaction report."
    )

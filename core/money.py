"""Integer cents helpers. Deterministic, pure, never float for stored amounts."""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def round_half_up(value: Decimal | int | float) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(Decimal(str(value)).to_integral_value(rounding=ROUND_HALF_UP))


def parse_cents(raw: str | int | float | None) -> int:
    """
    Convert free-text currency to integer cents.

    - Strips everything except digits, a minus sign and the decimal point
      (currency symbols, commas, codes, spaces)
    - Rounds half-up to whole cents
    - Empty, placeholder ("--") or unparseable input is 0
    """
    if raw is None:
        return 0
    cleaned = _NON_NUMERIC.sub("", str(raw))
    if not cleaned:
        return 0
    negative = cleaned.startswith("-")
    cleaned = cleaned.replace("-", "")
    if not cleaned or cleaned == ".":
        return 0
    try:
        dec = Decimal(cleaned)
    except InvalidOperation:
        return 0
    cents = round_half_up(dec * 100)
    return -cents if negative else cents


def parse_fee_cents(raw: str | None) -> int:
    """Fee columns are reported as negative numbers; only the magnitude matters."""
    return abs(parse_cents(raw))


def multiply_cents(quantity: float | int, cents: int) -> int:
    """Extended amount (hours or quantity times a cents rate), rounded half-up."""
    return round_half_up(Decimal(str(quantity)) * cents)


def percent_of(cents: int, rate_percent: float) -> int:
    """`rate_percent` percent of `cents`, rounded half-up."""
    return round_half_up(Decimal(cents) * Decimal(str(rate_percent)) / 100)


def allocate_proportionally(total_cents: int, weights: list[int]) -> list[int]:
    """
    Split `total_cents` across `weights` proportionally.

    Each share is rounded half-up; the rounding residue lands on the last
    share so the result always sums to `total_cents`. All-zero weights
    split equally.
    """
    if not weights:
        return []
    weight_sum = sum(weights)
    if weight_sum > 0:
        shares = [round_half_up(Decimal(total_cents) * w / weight_sum) for w in weights]
    else:
        shares = [round_half_up(Decimal(total_cents) / len(weights)) for _ in weights]
    shares[-1] += total_cents - sum(shares)
    return shares


def format_cents(cents: int | None) -> str:
    """Render cents as a dollar string, e.g. 15000 -> '$150.00'."""
    value = int(cents or 0)
    sign = "-" if value < 0 else ""
    dollars, cents_part = divmod(abs(value), 100)
    return f"{sign}${dollars:,}.{cents_part:02d}"

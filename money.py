"""
Fixed-point money and percentage helpers.

Amounts are integer cents, percentages are integer basis points
(1% == 100 bp). Decimal is only used at the edges, to parse input and to
render the decimal strings the API returns.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Sequence, Union

from errors import ValidationFailedError

FULL_PERCENT_BP = 10_000

Number = Union[Decimal, str, int]


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, float):
        raise ValidationFailedError("Floating point amounts are not accepted")
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValidationFailedError(f"Invalid decimal value: {value!r}") from exc


def _scaled(value: Number, scale: int, label: str) -> int:
    amount = _to_decimal(value)
    if not amount.is_finite():
        raise ValidationFailedError(f"Invalid {label}: {value!r}")
    scaled = amount * scale
    if scaled != scaled.to_integral_value():
        raise ValidationFailedError(f"{label.capitalize()} has more than two decimals")
    return int(scaled)


def to_cents(value: Number) -> int:
    return _scaled(value, 100, "amount")


def percent_to_bp(value: Number) -> int:
    bp = _scaled(value, 100, "percentage")
    if bp < 0 or bp > FULL_PERCENT_BP:
        raise ValidationFailedError("Percentage must be between 0 and 100")
    return bp


def bp_to_decimal(bp: int) -> Decimal:
    return (Decimal(bp) / Decimal(100)).quantize(Decimal("0.01"))


def _format_hundredths(value: int) -> str:
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 100)
    return f"{sign}{whole}.{frac:02d}"


def format_cents(cents: int) -> str:
    return _format_hundredths(cents)


def format_bp(bp: int) -> str:
    return _format_hundredths(bp)


def share_of(amount_cents: int, bp: int) -> int:
    """Truncating share of an amount; rounds toward zero, never up."""
    share = abs(amount_cents) * bp // FULL_PERCENT_BP
    return share if amount_cents >= 0 else -share


def percentage_of(part_cents: int, total_cents: int) -> int:
    """Basis points that ``part`` represents of ``total`` (truncated)."""
    if total_cents == 0:
        return 0
    return part_cents * FULL_PERCENT_BP // total_cents


def split_by_percentages(amount_cents: int, bps: Sequence[int]) -> list[int]:
    """
    Split an amount by basis-point weights.

    Each share is truncated. When the weights cover exactly 100% the last
    share absorbs the remainder, so the parts add up to the amount.
    """
    shares = [share_of(amount_cents, bp) for bp in bps]
    if shares and sum(bps) == FULL_PERCENT_BP:
        shares[-1] += amount_cents - sum(shares)
    return shares

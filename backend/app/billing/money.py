"""Fixed-point money helpers."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Optional, Union

from pydantic import PlainSerializer

TWO_PLACES = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100

MoneyInput = Union[Decimal, int, float, str]

# Decimal amounts serialised as JSON numbers.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def to_money(value: MoneyInput) -> Decimal:
    """Round ``value`` half-up to two decimal places.

    Raises ``ValueError`` when ``value`` is not a finite number.
    """

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid money amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid money amount: {value!r}")
    try:
        return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        # Too many digits to hold at two decimal places.
        raise ValueError(f"Invalid money amount: {value!r}") from exc


def parse_money(value: object) -> Optional[Decimal]:
    """Lenient variant of :func:`to_money` returning ``None`` for bad input."""

    if value is None or isinstance(value, bool):
        return None
    try:
        return to_money(value)  # type: ignore[arg-type]
    except ValueError:
        return None


def to_minor_units(amount: MoneyInput) -> int:
    return int((to_money(amount) * MINOR_UNITS_PER_MAJOR).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value: Optional[int]) -> Optional[Decimal]:
    if value is None:
        return None
    return to_money(Decimal(value) / MINOR_UNITS_PER_MAJOR)


def format_money(amount: Decimal) -> str:
    """Two decimal string used in keys and fingerprints."""

    return f"{to_money(amount):.2f}"


__all__ = [
    "Money",
    "TWO_PLACES",
    "format_money",
    "from_minor_units",
    "parse_money",
    "to_minor_units",
    "to_money",
]

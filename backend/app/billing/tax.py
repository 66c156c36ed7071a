"""Sales and service tax (SST) quotes."""
from __future__ import annotations

from decimal import Decimal
from typing import Union

from pydantic import BaseModel, ConfigDict

from .money import Money, parse_money, to_money

DEFAULT_SST_RATE = Decimal("0.08")


class TaxQuote(BaseModel):
    """Tax breakdown for a monthly subtotal."""

    subtotal: Money
    sst_rate: Decimal
    sst_amount: Money
    total: Money
    currency: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


def calculate_sst_quote(
    subtotal: object,
    currency: str,
    *,
    rate: Union[Decimal, float, str] = DEFAULT_SST_RATE,
) -> TaxQuote:
    """Quote SST on ``subtotal``; negative or unparsable subtotals quote as zero."""

    safe_subtotal = parse_money(subtotal)
    if safe_subtotal is None or safe_subtotal < 0:
        safe_subtotal = to_money(0)
    sst_rate = Decimal(str(rate))
    sst_amount = to_money(safe_subtotal * sst_rate)
    return TaxQuote(
        subtotal=safe_subtotal,
        sst_rate=sst_rate,
        sst_amount=sst_amount,
        total=to_money(safe_subtotal + sst_amount),
        currency=currency.strip().lower(),
    )


__all__ = ["DEFAULT_SST_RATE", "TaxQuote", "calculate_sst_quote"]

"""Billing configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

SUPPORTED_PROVIDERS = ("mock", "stripe")


@dataclass(frozen=True)
class BillingConfig:
    """Process-wide billing settings resolved once at startup."""

    provider_name: str = "mock"
    currency: str = "myr"
    minimum_term_months: int = 12
    sst_rate: Decimal = Decimal("0.08")
    stripe_automatic_tax: bool = True
    stripe_tax_rate_id: Optional[str] = None
    checkout_success_url: Optional[str] = None
    checkout_cancel_url: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    webhook_tolerance_seconds: int = 300
    auto_idempotency_window_minutes: int = 15
    backfill_default_limit: int = 200
    backfill_max_limit: int = 1000

    @property
    def is_stripe(self) -> bool:
        return self.provider_name == "stripe"

    def describe(self) -> dict:
        return {
            "provider": self.provider_name,
            "currency": self.currency,
            "minimum_term_months": self.minimum_term_months,
            "sst_rate": float(self.sst_rate),
            "stripe_automatic_tax": self.stripe_automatic_tax,
        }


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    return default


def _to_positive_int(value: Optional[str], *, default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _to_rate(value: Optional[str], *, default: Decimal) -> Decimal:
    if value is None or value.strip() == "":
        return default
    try:
        parsed = Decimal(value.strip())
    except InvalidOperation:
        return default
    if not parsed.is_finite() or parsed < 0 or parsed >= 1:
        return default
    return parsed


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables.

    Invalid values fall back to their defaults instead of failing startup.
    """

    env_mapping = os.environ if env is None else env
    defaults = BillingConfig()

    provider_name = (env_mapping.get("BILLING_PROVIDER") or "").strip().lower()
    if provider_name not in SUPPORTED_PROVIDERS:
        provider_name = defaults.provider_name

    currency = (env_mapping.get("BILLING_DEFAULT_CURRENCY") or "").strip().lower() or defaults.currency

    return BillingConfig(
        provider_name=provider_name,
        currency=currency,
        minimum_term_months=_to_positive_int(
            env_mapping.get("BILLING_MINIMUM_TERM_MONTHS"), default=defaults.minimum_term_months
        ),
        sst_rate=_to_rate(env_mapping.get("BILLING_SST_RATE"), default=defaults.sst_rate),
        stripe_automatic_tax=_to_bool(
            env_mapping.get("BILLING_STRIPE_AUTOMATIC_TAX"), default=defaults.stripe_automatic_tax
        ),
        stripe_tax_rate_id=_optional(env_mapping.get("BILLING_STRIPE_TAX_RATE_ID")),
        checkout_success_url=_optional(env_mapping.get("BILLING_CHECKOUT_SUCCESS_URL")),
        checkout_cancel_url=_optional(env_mapping.get("BILLING_CHECKOUT_CANCEL_URL")),
        stripe_secret_key=_optional(env_mapping.get("STRIPE_SECRET_KEY")),
        stripe_webhook_secret=_optional(env_mapping.get("STRIPE_WEBHOOK_SECRET")),
        webhook_tolerance_seconds=_to_positive_int(
            env_mapping.get("BILLING_WEBHOOK_TOLERANCE_SECONDS"), default=defaults.webhook_tolerance_seconds
        ),
        auto_idempotency_window_minutes=_to_positive_int(
            env_mapping.get("BILLING_AUTO_IDEMPOTENCY_WINDOW_MINUTES"),
            default=defaults.auto_idempotency_window_minutes,
        ),
        backfill_default_limit=_to_positive_int(
            env_mapping.get("BILLING_BACKFILL_DEFAULT_LIMIT"), default=defaults.backfill_default_limit
        ),
        backfill_max_limit=_to_positive_int(
            env_mapping.get("BILLING_BACKFILL_MAX_LIMIT"), default=defaults.backfill_max_limit
        ),
    )


__all__ = ["BillingConfig", "SUPPORTED_PROVIDERS", "load_billing_config"]

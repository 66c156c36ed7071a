"""Payment provider implementations and factory."""
from __future__ import annotations

from typing import Optional

from ..config import BillingConfig
from .base import (
    BillingAddress,
    CatalogPriceRequest,
    CatalogPriceResult,
    CheckoutSessionRequest,
    CheckoutSessionResult,
    CustomerRequest,
    InvoicePage,
    PaymentProvider,
    SessionLineItem,
)
from .mock import MockPaymentProvider, hash_id
from .stripe_provider import StripePaymentProvider


def get_provider_by_name(name: Optional[str], config: BillingConfig) -> PaymentProvider:
    """Return the provider recorded on a subscription, defaulting to mock."""

    if (name or "").strip().lower() == "stripe":
        return StripePaymentProvider(secret_key=config.stripe_secret_key)
    return MockPaymentProvider()


def create_payment_provider(config: BillingConfig) -> PaymentProvider:
    return get_provider_by_name(config.provider_name, config)


__all__ = [
    "BillingAddress",
    "CatalogPriceRequest",
    "CatalogPriceResult",
    "CheckoutSessionRequest",
    "CheckoutSessionResult",
    "CustomerRequest",
    "InvoicePage",
    "MockPaymentProvider",
    "PaymentProvider",
    "SessionLineItem",
    "StripePaymentProvider",
    "create_payment_provider",
    "get_provider_by_name",
    "hash_id",
]

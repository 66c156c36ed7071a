"""Capability contract for payment providers."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from ..models import BillingProviderName, ProviderCancellation
from ..money import Money


class BillingAddress(BaseModel):
    line1: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CustomerRequest(BaseModel):
    """Details sent to the provider when creating a customer."""

    external_user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[BillingAddress] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class SessionLineItem(BaseModel):
    name: str
    quantity: int
    unit_amount: Money
    currency: str
    product_id: Optional[str] = None
    provider_price_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CheckoutSessionRequest(BaseModel):
    """Everything the provider needs to open a hosted checkout session."""

    customer_id: str
    line_items: List[SessionLineItem]
    currency: str
    automatic_tax: bool
    manual_tax_rate_id: Optional[str] = None
    minimum_term_months: int
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class CheckoutSessionResult(BaseModel):
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CatalogPriceRequest(BaseModel):
    internal_product_id: str
    name: str
    description: Optional[str] = None
    currency: str
    monthly_unit_amount: Money
    existing_provider_product_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class CatalogPriceResult(BaseModel):
    provider_product_id: str
    provider_price_id: str
    currency: str
    unit_amount: Money
    interval: str = "month"
    interval_count: int = 1

    model_config = ConfigDict(frozen=True)


class InvoicePage(BaseModel):
    """One page of raw provider invoices, newest first."""

    invoices: List[Dict[str, Any]] = Field(default_factory=list)
    has_more: bool = False

    model_config = ConfigDict(frozen=True)


class PaymentProvider(Protocol):
    """External payment processor integration."""

    name: BillingProviderName

    def ensure_customer(self, request: CustomerRequest) -> str:
        """Create the provider customer and return its id."""

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSessionResult:
        """Open a hosted checkout session for a subscription."""

    def get_checkout_session_url(self, session_id: str) -> Optional[str]:
        """Return the hosted URL of an existing session, if it has one."""

    def ensure_catalog_price(self, request: CatalogPriceRequest) -> CatalogPriceResult:
        """Create a monthly recurring price, creating the product when needed."""

    def cancel_now(self, provider_subscription_id: str) -> ProviderCancellation:
        ...

    def cancel_at_period_end(self, provider_subscription_id: str) -> ProviderCancellation:
        ...

    def list_invoices(self, *, limit: int, starting_after: Optional[str] = None) -> InvoicePage:
        ...


def session_total(request: CheckoutSessionRequest) -> Decimal:
    return sum((item.unit_amount * item.quantity for item in request.line_items), Decimal("0"))


__all__ = [
    "BillingAddress",
    "CatalogPriceRequest",
    "CatalogPriceResult",
    "CheckoutSessionRequest",
    "CheckoutSessionResult",
    "CustomerRequest",
    "InvoicePage",
    "PaymentProvider",
    "SessionLineItem",
    "session_total",
]

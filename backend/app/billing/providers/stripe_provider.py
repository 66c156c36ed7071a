"""Stripe implementation of the payment provider contract."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import stripe

from ..exceptions import PersistenceError, ProviderError
from ..models import BillingProviderName, ProviderCancellation
from ..money import to_minor_units, to_money
from .base import (
    CatalogPriceRequest,
    CatalogPriceResult,
    CheckoutSessionRequest,
    CheckoutSessionResult,
    CustomerRequest,
    InvoicePage,
)

logger = logging.getLogger(__name__)


def _from_unix(value: object) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _clean_metadata(metadata: Mapping[str, str]) -> Dict[str, str]:
    return {key: value for key, value in metadata.items() if key and value}


def _to_plain(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _subscription_snapshot(subscription: Any, fallback_id: str) -> ProviderCancellation:
    data = _to_plain(subscription)
    current_period_end = data.get("current_period_end")
    if current_period_end is None:
        items = (data.get("items") or {}).get("data") or []
        if items:
            current_period_end = items[0].get("current_period_end")
    return ProviderCancellation(
        provider_subscription_id=data.get("id") or fallback_id,
        provider_status=data.get("status"),
        current_period_end=_from_unix(current_period_end),
        cancelled_at=_from_unix(data.get("canceled_at")),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
    )


class StripePaymentProvider:
    """Payment provider backed by the official Stripe SDK."""

    name = BillingProviderName.STRIPE

    def __init__(self, *, secret_key: Optional[str]) -> None:
        self._secret_key = secret_key

    def _api_key(self) -> str:
        if not self._secret_key:
            raise PersistenceError("STRIPE_SECRET_KEY is not configured")
        return self._secret_key

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, api_key=self._api_key(), **kwargs)
        except stripe.StripeError as exc:
            logger.warning("Stripe %s failed: %s", operation, exc)
            message = getattr(exc, "user_message", None) or str(exc) or f"Stripe {operation} failed"
            raise ProviderError(message, detail={"operation": operation}) from exc

    def ensure_customer(self, request: CustomerRequest) -> str:
        params: Dict[str, Any] = {
            "metadata": _clean_metadata({"internal_user_id": request.external_user_id, **request.metadata}),
        }
        if request.email:
            params["email"] = request.email
        if request.name:
            params["name"] = request.name
        if request.phone:
            params["phone"] = request.phone
        if request.address is not None:
            address = request.address.model_dump(exclude_none=True)
            if address:
                params["address"] = address

        customer = self._call("customer.create", stripe.Customer.create, **params)
        if not customer.get("id"):
            raise ProviderError("Stripe response missing customer.id")
        return customer["id"]

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSessionResult:
        if not request.success_url or not request.cancel_url:
            raise PersistenceError("Checkout success and cancel URLs are required for Stripe sessions")

        line_items = []
        for item in request.line_items:
            line: Dict[str, Any] = {"quantity": item.quantity}
            if not request.automatic_tax and request.manual_tax_rate_id:
                line["tax_rates"] = [request.manual_tax_rate_id]
            if item.provider_price_id:
                line["price"] = item.provider_price_id
            else:
                product_data: Dict[str, Any] = {"name": item.name}
                if item.product_id:
                    product_data["metadata"] = {"internal_product_id": item.product_id}
                line["price_data"] = {
                    "currency": item.currency,
                    "unit_amount": to_minor_units(item.unit_amount),
                    "recurring": {"interval": "month"},
                    "product_data": product_data,
                }
            line_items.append(line)

        metadata = _clean_metadata(request.metadata)
        session = self._call(
            "checkout.session.create",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=request.customer_id,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            billing_address_collection="required",
            automatic_tax={"enabled": request.automatic_tax},
            line_items=line_items,
            metadata=metadata,
            subscription_data={
                "metadata": {**metadata, "minimum_term_months": str(request.minimum_term_months)},
            },
        )
        subscription = session.get("subscription")
        return CheckoutSessionResult(
            checkout_url=session.get("url"),
            session_id=session.get("id"),
            provider_subscription_id=subscription if isinstance(subscription, str) and subscription else None,
        )

    def get_checkout_session_url(self, session_id: str) -> Optional[str]:
        normalized = session_id.strip()
        if not normalized:
            return None
        session = self._call("checkout.session.retrieve", stripe.checkout.Session.retrieve, normalized)
        return session.get("url") or None

    def ensure_catalog_price(self, request: CatalogPriceRequest) -> CatalogPriceResult:
        metadata = _clean_metadata({"internal_product_id": request.internal_product_id, **request.metadata})
        product_id = request.existing_provider_product_id
        if not product_id:
            product_params: Dict[str, Any] = {"name": request.name, "metadata": metadata}
            if request.description:
                product_params["description"] = request.description
            product = self._call("product.create", stripe.Product.create, **product_params)
            product_id = product["id"]

        price = self._call(
            "price.create",
            stripe.Price.create,
            product=product_id,
            currency=request.currency,
            unit_amount=to_minor_units(request.monthly_unit_amount),
            recurring={"interval": "month", "interval_count": 1},
            metadata=metadata,
        )
        return CatalogPriceResult(
            provider_product_id=product_id,
            provider_price_id=price["id"],
            currency=request.currency,
            unit_amount=to_money(request.monthly_unit_amount),
        )

    def cancel_now(self, provider_subscription_id: str) -> ProviderCancellation:
        normalized = provider_subscription_id.strip()
        if not normalized:
            raise ProviderError("Stripe provider subscription ID is required")
        cancelled = self._call("subscription.cancel", stripe.Subscription.cancel, normalized)
        return _subscription_snapshot(cancelled, normalized)

    def cancel_at_period_end(self, provider_subscription_id: str) -> ProviderCancellation:
        normalized = provider_subscription_id.strip()
        if not normalized:
            raise ProviderError("Stripe provider subscription ID is required")
        updated = self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            normalized,
            cancel_at_period_end=True,
        )
        return _subscription_snapshot(updated, normalized)

    def list_invoices(self, *, limit: int, starting_after: Optional[str] = None) -> InvoicePage:
        params: Dict[str, Any] = {"limit": max(1, min(limit, 100))}
        if starting_after:
            params["starting_after"] = starting_after
        page = self._call("invoice.list", stripe.Invoice.list, **params)
        return InvoicePage(
            invoices=[_to_plain(invoice) for invoice in page.get("data") or []],
            has_more=bool(page.get("has_more")),
        )


__all__ = ["StripePaymentProvider"]

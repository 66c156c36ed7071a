"""Deterministic provider used for local development and tests."""
from __future__ import annotations

import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..models import BillingProviderName, ProviderCancellation
from ..money import format_money, to_money
from .base import (
    CatalogPriceRequest,
    CatalogPriceResult,
    CheckoutSessionRequest,
    CheckoutSessionResult,
    CustomerRequest,
    InvoicePage,
    session_total,
)

logger = logging.getLogger(__name__)


def hash_id(prefix: str, seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}_{digest}"


class MockPaymentProvider:
    """Provider that fabricates stable ids without any network traffic."""

    name = BillingProviderName.MOCK

    def __init__(self, *, invoices: Optional[List[Dict[str, Any]]] = None) -> None:
        self._invoices = list(invoices or [])

    def ensure_customer(self, request: CustomerRequest) -> str:
        return hash_id("mock_cus", f"{request.external_user_id}:{request.email or ''}")

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSessionResult:
        stamp = time.time_ns()
        total = format_money(session_total(request))
        logger.debug("Mock checkout session for customer %s total=%s", request.customer_id, total)
        return CheckoutSessionResult(
            checkout_url=None,
            session_id=hash_id("mock_cs", f"{request.customer_id}:{total}:{stamp}"),
            provider_subscription_id=hash_id(
                "mock_sub", f"{request.customer_id}:{request.minimum_term_months}:{stamp}"
            ),
        )

    def get_checkout_session_url(self, session_id: str) -> Optional[str]:
        return None

    def ensure_catalog_price(self, request: CatalogPriceRequest) -> CatalogPriceResult:
        product_id = request.existing_provider_product_id or hash_id(
            "mock_prod", f"{request.internal_product_id}:{request.name}"
        )
        amount = to_money(request.monthly_unit_amount)
        return CatalogPriceResult(
            provider_product_id=product_id,
            provider_price_id=hash_id("mock_price", f"{product_id}:{request.currency}:{format_money(amount)}"),
            currency=request.currency,
            unit_amount=amount,
        )

    def cancel_now(self, provider_subscription_id: str) -> ProviderCancellation:
        return ProviderCancellation(
            provider_subscription_id=provider_subscription_id,
            provider_status="canceled",
            cancelled_at=datetime.now(timezone.utc),
        )

    def cancel_at_period_end(self, provider_subscription_id: str) -> ProviderCancellation:
        return ProviderCancellation(
            provider_subscription_id=provider_subscription_id,
            provider_status="active",
            cancel_at_period_end=True,
        )

    def list_invoices(self, *, limit: int, starting_after: Optional[str] = None) -> InvoicePage:
        start = 0
        if starting_after:
            ids = [invoice.get("id") for invoice in self._invoices]
            start = ids.index(starting_after) + 1 if starting_after in ids else len(ids)
        page = self._invoices[start:start + limit]
        return InvoicePage(invoices=page, has_more=start + limit < len(self._invoices))


__all__ = ["MockPaymentProvider", "hash_id"]

"""API schemas for billing endpoints."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import CheckoutRequest, CheckoutResult, Subscription, SubscriptionStatus, SubscriptionUpdate
from ..billing.eligibility import DeliveryOverrides
from ..billing.tax import TaxQuote


class CheckoutRequestBody(BaseModel):
    """Raw checkout body; field-level validation happens in the service."""

    user_id: Optional[str] = Field(default=None, alias="userId")
    bundle_id: Optional[str] = Field(default=None, alias="bundleId")
    start_date: Optional[str] = Field(default=None, alias="startDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")
    minimum_term_months: Optional[Any] = Field(default=None, alias="minimumTermMonths")
    monthly_total: Optional[Any] = Field(default=None, alias="monthlyTotal")
    currency: Optional[str] = None
    product_name: Optional[str] = Field(default=None, alias="productName")
    items: Optional[Any] = None
    idempotency_key: Optional[Any] = Field(default=None, alias="idempotencyKey")
    success_url: Optional[str] = Field(default=None, alias="successUrl")
    cancel_url: Optional[str] = Field(default=None, alias="cancelUrl")
    delivery_company_name: Optional[str] = Field(default=None, alias="deliveryCompanyName")
    delivery_address: Optional[str] = Field(default=None, alias="deliveryAddress")
    delivery_city: Optional[str] = Field(default=None, alias="deliveryCity")
    delivery_zip_postal: Optional[str] = Field(default=None, alias="deliveryZipPostal")
    delivery_contact_name: Optional[str] = Field(default=None, alias="deliveryContactName")
    delivery_contact_phone: Optional[str] = Field(default=None, alias="deliveryContactPhone")

    model_config = ConfigDict(populate_by_name=True)

    def to_request(self) -> CheckoutRequest:
        return CheckoutRequest(
            user_id=self.user_id,
            bundle_id=self.bundle_id,
            start_date=self.start_date,
            end_date=self.end_date,
            minimum_term_months=self.minimum_term_months,
            monthly_total=self.monthly_total,
            currency=self.currency,
            product_name=self.product_name,
            items=self.items,
            idempotency_key=self.idempotency_key,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            delivery=DeliveryOverrides(
                company_name=self.delivery_company_name,
                address=self.delivery_address,
                city=self.delivery_city,
                zip_postal=self.delivery_zip_postal,
                contact_name=self.delivery_contact_name,
                contact_phone=self.delivery_contact_phone,
            ),
        )


class CheckoutResponse(BaseModel):
    subscription: Subscription
    checkout_url: Optional[str] = None
    checkout_session_id: Optional[str] = None
    billing_provider: str
    tax_quote: TaxQuote
    idempotent_replay: bool = False

    @classmethod
    def from_result(cls, result: CheckoutResult) -> "CheckoutResponse":
        return cls(
            subscription=result.subscription,
            checkout_url=result.checkout_url,
            checkout_session_id=result.checkout_session_id,
            billing_provider=result.billing_provider.value,
            tax_quote=result.tax_quote,
            idempotent_replay=result.idempotent_replay,
        )


class BillingConfigResponse(BaseModel):
    provider: str
    currency: str
    minimum_term_months: int
    sst_rate: float
    stripe_automatic_tax_enabled: bool
    stripe_manual_tax_rate_id: Optional[str] = None


class WebhookAcknowledgement(BaseModel):
    received: bool = True
    duplicate: Optional[bool] = None
    processed: Optional[bool] = None
    subscription_id: Optional[str] = None


class InvoiceBackfillRequest(BaseModel):
    limit: Optional[Any] = None
    dry_run: Optional[Any] = Field(default=False, alias="dryRun")

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionUpdateBody(BaseModel):
    """Admin edit; ``billing_status`` is accepted as an alias of ``status``."""

    status: Optional[SubscriptionStatus] = None
    billing_status: Optional[SubscriptionStatus] = Field(default=None, alias="billingStatus")
    start_date: Optional[str] = Field(default=None, alias="startDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")
    monthly_total: Optional[Decimal] = Field(default=None, alias="monthlyTotal")
    cancel_at_period_end: bool = Field(default=False, alias="cancelAtPeriodEnd")

    model_config = ConfigDict(populate_by_name=True)

    def to_update(self) -> SubscriptionUpdate:
        return SubscriptionUpdate(
            status=self.billing_status or self.status,
            start_date=self.start_date,
            end_date=self.end_date,
            monthly_total=self.monthly_total,
            cancel_at_period_end=self.cancel_at_period_end,
        )


class SubscriptionUpdateResponse(BaseModel):
    subscription: Subscription
    cancellation_deferred: bool = False
    service_state: Optional[str] = None


class CatalogSyncRequest(BaseModel):
    product_ids: Optional[List[Any]] = Field(default=None, alias="productIds")
    currency: Optional[str] = None
    dry_run: Optional[Any] = Field(default=False, alias="dryRun")

    model_config = ConfigDict(populate_by_name=True)


class ProductCreateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    monthly_price: Optional[Any] = Field(default=None, alias="monthlyPrice")
    stock_quantity: Optional[Any] = Field(default=0, alias="stockQuantity")
    status: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    video_url: Optional[str] = Field(default=None, alias="videoUrl")

    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ProductImportBody(BaseModel):
    rows: List[ProductCreateBody]

    def to_payloads(self) -> List[Dict[str, Any]]:
        return [row.to_payload() for row in self.rows]


class ProductImportResponse(BaseModel):
    imported: int
    product_codes: List[str] = Field(default_factory=list)


__all__ = [
    "BillingConfigResponse",
    "CatalogSyncRequest",
    "CheckoutRequestBody",
    "CheckoutResponse",
    "InvoiceBackfillRequest",
    "ProductCreateBody",
    "ProductImportBody",
    "ProductImportResponse",
    "SubscriptionUpdateBody",
    "SubscriptionUpdateResponse",
    "WebhookAcknowledgement",
]

"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .money import Money
from .tax import TaxQuote


class SubscriptionStatus(str, Enum):
    """Billing status of a rental subscription."""

    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_FAILED = "payment_failed"
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class BillingProviderName(str, Enum):
    """Payment providers the back office can talk to."""

    MOCK = "mock"
    STRIPE = "stripe"


class WebhookEventStatus(str, Enum):
    """Processing state of a ledgered webhook event."""

    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class InvoiceStatus(str, Enum):
    """Status of a mirrored provider invoice."""

    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"
    PAYMENT_FAILED = "payment_failed"
    UNKNOWN = "unknown"


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    CHECKOUT_CREATED = "checkout_created"
    CHECKOUT_REPLAYED = "checkout_replayed"
    CHECKOUT_FAILED = "checkout_failed"
    STATUS_CHANGED = "status_changed"
    TRANSITION_SKIPPED = "transition_skipped"
    CANCELLATION_DEFERRED = "cancellation_deferred"
    CANCELLATION_APPLIED = "cancellation_applied"
    WEBHOOK_PROCESSED = "webhook_processed"
    WEBHOOK_DUPLICATE = "webhook_duplicate"
    WEBHOOK_FAILED = "webhook_failed"
    INVOICE_MIRRORED = "invoice_mirrored"


class DeliverySnapshot(BaseModel):
    """Delivery details copied onto the subscription at checkout."""

    company_name: str
    address: str
    city: str
    zip_postal: str
    contact_name: str
    contact_phone: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def trimmed(self) -> Dict[str, str]:
        return {key: value.strip() for key, value in self.model_dump().items()}


class CheckoutLineItem(BaseModel):
    """Validated line item requested at checkout."""

    product_id: Optional[str] = None
    product_name: str
    category: Optional[str] = None
    monthly_price: Money
    duration_months: Optional[int] = None
    quantity: int = 1

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionItem(BaseModel):
    """Persisted line item belonging to a subscription."""

    subscription_id: str
    product_id: Optional[str] = None
    product_name: str
    category: Optional[str] = None
    monthly_price: Money
    duration_months: Optional[int] = None
    quantity: int = Field(default=1, ge=1)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Subscription(BaseModel):
    """Local billing record for a furniture rental."""

    id: str
    user_id: str
    bundle_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.PENDING_PAYMENT
    subtotal_amount: Money = Decimal("0.00")
    tax_amount: Money = Decimal("0.00")
    monthly_total: Money = Decimal("0.00")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    commitment_start_at: Optional[datetime] = None
    commitment_end_at: Optional[datetime] = None
    minimum_term_months: Optional[int] = None
    billing_provider: Optional[BillingProviderName] = None
    billing_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    provider_checkout_session_id: Optional[str] = None
    billing_currency: str = "myr"
    checkout_idempotency_key: Optional[str] = None
    checkout_request_fingerprint: Optional[str] = None
    delivery: Optional[DeliverySnapshot] = None
    last_provider_event_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("billing_currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    @property
    def is_terminal(self) -> bool:
        return self.status in {SubscriptionStatus.CANCELLED, SubscriptionStatus.COMPLETED}


class BillingCustomer(BaseModel):
    """Maps a local user to a provider customer."""

    id: str
    user_id: str
    provider: BillingProviderName
    provider_customer_id: str
    email: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingWebhookEvent(BaseModel):
    """Ledger row guaranteeing a provider event is applied at most once."""

    provider: BillingProviderName
    event_id: str
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: WebhookEventStatus = WebhookEventStatus.RECEIVED
    error_message: Optional[str] = None
    subscription_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingInvoice(BaseModel):
    """Local read replica of a provider invoice."""

    provider: BillingProviderName
    provider_invoice_id: str
    provider_subscription_id: Optional[str] = None
    subscription_id: Optional[str] = None
    billing_customer_id: Optional[str] = None
    invoice_number: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.UNKNOWN
    currency: str = "myr"
    subtotal_amount: Optional[Money] = None
    tax_amount: Optional[Money] = None
    total_amount: Optional[Money] = None
    amount_paid: Optional[Money] = None
    amount_due: Optional[Money] = None
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    payment_intent_id: Optional[str] = None
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    period_start_at: Optional[datetime] = None
    period_end_at: Optional[datetime] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()


class BillingAuditEvent(BaseModel):
    """Structured audit event for operators and analytics."""

    event_type: BillingAuditEventType
    subscription_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutResult(BaseModel):
    """Return value of a checkout request, fresh or replayed."""

    subscription: Subscription
    checkout_url: Optional[str] = None
    checkout_session_id: Optional[str] = None
    billing_provider: BillingProviderName
    tax_quote: TaxQuote
    idempotent_replay: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProviderCancellation(BaseModel):
    """Provider-side snapshot returned by a cancellation call."""

    provider_subscription_id: str
    provider_status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_at_period_end: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CancellationOutcome(BaseModel):
    """Result of an admin cancellation request."""

    subscription: Subscription
    deferred: bool
    service_state: Optional[str] = None
    provider_cancellation: Optional[ProviderCancellation] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionUpdateResult(BaseModel):
    """Result of an admin edit, including any cancellation it triggered."""

    subscription: Subscription
    cancellation: Optional[CancellationOutcome] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookOutcome(BaseModel):
    """Acknowledgement returned to the provider for a delivered event."""

    received: bool = True
    duplicate: bool = False
    processed: bool = False
    subscription_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class InvoiceBackfillReport(BaseModel):
    """Counts produced by an invoice backfill run."""

    provider: BillingProviderName
    dry_run: bool
    requested_limit: int
    fetched_count: int = 0
    mirrored_count: int = 0
    linked_subscription_count: int = 0
    linked_billing_customer_count: int = 0
    unresolved_invoice_ids: List[str] = Field(default_factory=list)
    unresolved_total: int = 0
    has_more_available: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingCustomer",
    "BillingInvoice",
    "BillingProviderName",
    "BillingWebhookEvent",
    "CancellationOutcome",
    "CheckoutLineItem",
    "CheckoutResult",
    "DeliverySnapshot",
    "InvoiceBackfillReport",
    "InvoiceStatus",
    "ProviderCancellation",
    "Subscription",
    "SubscriptionItem",
    "SubscriptionStatus",
    "SubscriptionUpdateResult",
    "WebhookEventStatus",
    "WebhookOutcome",
]

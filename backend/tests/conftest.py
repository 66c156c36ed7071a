"""In-memory stand-ins for the billing, fulfillment, and catalog stores."""
from __future__ import annotations

import hashlib
import hmac
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

import pytest

from backend.app.billing import (
    BillingAuditEvent,
    BillingConfig,
    BillingCustomer,
    BillingInvoice,
    BillingProviderName,
    BillingService,
    BillingWebhookEvent,
    Subscription,
)
from backend.app.billing.eligibility import CheckoutProfile, CompanyProfile, UserProfile
from backend.app.billing.models import ProviderCancellation, SubscriptionItem, WebhookEventStatus
from backend.app.billing.providers import (
    CatalogPriceRequest,
    CatalogPriceResult,
    CheckoutSessionRequest,
    CheckoutSessionResult,
    CustomerRequest,
    InvoicePage,
    PaymentProvider,
)
from backend.app.billing.service import BillingEventLogger, BillingRepository
from backend.app.fulfillment import FulfillmentRepository, FulfillmentService, ServiceState, SubscriptionFulfillment
from backend.app.fulfillment.models import DeliveryOrderStatus
from backend.app.storage import DuplicateKeyError

IDEMPOTENCY_CONSTRAINT = "subscriptions_checkout_idempotency_key_key"


def complete_checkout_profile(user_id: str, **company_overrides: Any) -> CheckoutProfile:
    company = {
        "company_name": "Acme Sdn Bhd",
        "registration_number": "202401000123",
        "address": "Level 5, Menara Acme",
        "office_city": "Kuala Lumpur",
        "office_zip_postal": "50450",
        "industry": "Technology",
        "team_size": "11-50",
    }
    company.update(company_overrides)
    return CheckoutProfile(
        user_id=user_id,
        email="ops@acme.test",
        profile=UserProfile(full_name="Aina Rahman", job_title="Office Manager", phone_number="+60123456789"),
        company=CompanyProfile(**company),
    )


class InMemoryBillingRepository(BillingRepository):
    def __init__(self) -> None:
        self.subscriptions: Dict[str, Subscription] = {}
        self.items: List[SubscriptionItem] = []
        self.profiles: Dict[str, CheckoutProfile] = {}
        self.customers: Dict[Tuple[str, BillingProviderName], BillingCustomer] = {}
        self.price_maps: Dict[Tuple[BillingProviderName, str], Dict[str, str]] = {}
        self.webhook_events: Dict[Tuple[BillingProviderName, str], BillingWebhookEvent] = {}
        self.invoices: Dict[Tuple[BillingProviderName, str], BillingInvoice] = {}
        self.update_calls: List[Tuple[str, Dict[str, Any]]] = []
        self.before_insert: Optional[Callable[[Subscription], None]] = None
        self.update_error: Optional[Exception] = None
        self.items_error: Optional[Exception] = None

    def add_subscription(self, subscription: Subscription) -> Subscription:
        self.subscriptions[subscription.id] = subscription
        return subscription

    def add_checkout_profile(self, user_id: str, **company_overrides: Any) -> CheckoutProfile:
        profile = complete_checkout_profile(user_id, **company_overrides)
        self.profiles[user_id] = profile
        return profile

    def add_customer(self, user_id: str, provider: BillingProviderName, provider_customer_id: str) -> BillingCustomer:
        customer = BillingCustomer(
            id=str(uuid4()),
            user_id=user_id,
            provider=provider,
            provider_customer_id=provider_customer_id,
        )
        self.customers[(user_id, provider)] = customer
        return customer

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(subscription_id)

    def get_subscription_by_idempotency_key(self, key: str) -> Optional[Subscription]:
        return next(
            (sub for sub in self.subscriptions.values() if sub.checkout_idempotency_key == key),
            None,
        )

    def find_subscription_by_provider_subscription_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        return next(
            (sub for sub in self.subscriptions.values() if sub.provider_subscription_id == provider_subscription_id),
            None,
        )

    def find_subscription_by_checkout_session(self, session_id: str) -> Optional[Subscription]:
        return next(
            (sub for sub in self.subscriptions.values() if sub.provider_checkout_session_id == session_id),
            None,
        )

    def list_subscriptions(
        self,
        *,
        ids: Sequence[str] = (),
        provider_subscription_ids: Sequence[str] = (),
    ) -> List[Subscription]:
        return [
            sub
            for sub in self.subscriptions.values()
            if sub.id in ids or (sub.provider_subscription_id and sub.provider_subscription_id in provider_subscription_ids)
        ]

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        if self.before_insert is not None:
            self.before_insert(subscription)
        key = subscription.checkout_idempotency_key
        if key and self.get_subscription_by_idempotency_key(key) is not None:
            raise DuplicateKeyError(IDEMPOTENCY_CONSTRAINT)
        self.subscriptions[subscription.id] = subscription
        return subscription

    def update_subscription(self, subscription_id: str, changes: Mapping[str, Any]) -> Optional[Subscription]:
        if self.update_error is not None:
            raise self.update_error
        self.update_calls.append((subscription_id, dict(changes)))
        current = self.subscriptions.get(subscription_id)
        if current is None:
            return None
        updated = current.model_copy(update=dict(changes))
        self.subscriptions[subscription_id] = updated
        return updated

    def insert_subscription_items(self, items: Sequence[SubscriptionItem]) -> None:
        if self.items_error is not None:
            raise self.items_error
        self.items.extend(items)

    def get_checkout_profile(self, user_id: str) -> Optional[CheckoutProfile]:
        return self.profiles.get(user_id)

    def get_billing_customer(self, user_id: str, provider: BillingProviderName) -> Optional[BillingCustomer]:
        return self.customers.get((user_id, provider))

    def insert_billing_customer(self, customer: BillingCustomer) -> BillingCustomer:
        key = (customer.user_id, customer.provider)
        if key in self.customers:
            raise DuplicateKeyError("billing_customers_user_id_provider_key")
        self.customers[key] = customer
        return customer

    def list_billing_customers_by_provider_ids(
        self,
        provider: BillingProviderName,
        provider_customer_ids: Sequence[str],
    ) -> List[BillingCustomer]:
        return [
            customer
            for customer in self.customers.values()
            if customer.provider == provider and customer.provider_customer_id in provider_customer_ids
        ]

    def get_catalog_price_map(self, provider: BillingProviderName, currency: str) -> Dict[str, str]:
        return dict(self.price_maps.get((provider, currency), {}))

    def get_webhook_event(self, provider: BillingProviderName, event_id: str) -> Optional[BillingWebhookEvent]:
        return self.webhook_events.get((provider, event_id))

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        key = (event.provider, event.event_id)
        if key in self.webhook_events:
            return False
        self.webhook_events[key] = event
        return True

    def mark_webhook_event_processed(
        self,
        provider: BillingProviderName,
        event_id: str,
        *,
        subscription_id: Optional[str],
    ) -> None:
        event = self.webhook_events[(provider, event_id)]
        self.webhook_events[(provider, event_id)] = event.model_copy(
            update={
                "status": WebhookEventStatus.PROCESSED,
                "subscription_id": subscription_id,
                "error_message": None,
                "processed_at": datetime.now(timezone.utc),
            }
        )

    def mark_webhook_event_failed(
        self,
        provider: BillingProviderName,
        event_id: str,
        *,
        error_message: str,
    ) -> None:
        event = self.webhook_events[(provider, event_id)]
        self.webhook_events[(provider, event_id)] = event.model_copy(
            update={"status": WebhookEventStatus.FAILED, "error_message": error_message}
        )

    def find_invoice_subscription_id(self, provider: BillingProviderName, provider_invoice_id: str) -> Optional[str]:
        invoice = self.invoices.get((provider, provider_invoice_id))
        return invoice.subscription_id if invoice else None

    def upsert_invoices(self, invoices: Sequence[BillingInvoice]) -> int:
        for invoice in invoices:
            self.invoices[(invoice.provider, invoice.provider_invoice_id)] = invoice
        return len(invoices)


class InMemoryFulfillmentRepository(FulfillmentRepository):
    def __init__(self) -> None:
        self.rows: Dict[str, SubscriptionFulfillment] = {}
        self.delivery_orders: Dict[str, DeliveryOrderStatus] = {}
        self.delivery_error: Optional[Exception] = None

    def get_fulfillment(self, subscription_id: str) -> Optional[SubscriptionFulfillment]:
        return self.rows.get(subscription_id)

    def insert_fulfillment(self, fulfillment: SubscriptionFulfillment) -> SubscriptionFulfillment:
        if fulfillment.subscription_id in self.rows:
            raise DuplicateKeyError("subscription_fulfillment_subscription_id_key")
        self.rows[fulfillment.subscription_id] = fulfillment
        return fulfillment

    def update_service_state(
        self,
        subscription_id: str,
        service_state: ServiceState,
    ) -> Optional[SubscriptionFulfillment]:
        current = self.rows.get(subscription_id)
        if current is None:
            return None
        updated = current.model_copy(update={"service_state": service_state})
        self.rows[subscription_id] = updated
        return updated

    def create_delivery_order(self, subscription_id: str, status: DeliveryOrderStatus) -> None:
        if self.delivery_error is not None:
            raise self.delivery_error
        if subscription_id in self.delivery_orders:
            raise DuplicateKeyError("delivery_orders_subscription_id_key")
        self.delivery_orders[subscription_id] = status


class RecordingPaymentProvider(PaymentProvider):
    def __init__(self, name: BillingProviderName = BillingProviderName.MOCK) -> None:
        self.name = name
        self.customers: List[CustomerRequest] = []
        self.sessions: List[CheckoutSessionRequest] = []
        self.cancellations: List[Tuple[str, str]] = []
        self.price_requests: List[CatalogPriceRequest] = []
        self.checkout_error: Optional[Exception] = None
        self.cancelled_at = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)
        self.period_end = datetime(2026, 2, 15, 9, 30, tzinfo=timezone.utc)

    def ensure_customer(self, request: CustomerRequest) -> str:
        self.customers.append(request)
        return f"cus_{len(self.customers)}"

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSessionResult:
        if self.checkout_error is not None:
            raise self.checkout_error
        self.sessions.append(request)
        number = len(self.sessions)
        return CheckoutSessionResult(
            checkout_url=f"https://pay.test/cs_{number}",
            session_id=f"cs_{number}",
            provider_subscription_id=f"sub_{number}",
        )

    def get_checkout_session_url(self, session_id: str) -> Optional[str]:
        return f"https://pay.test/{session_id}"

    def ensure_catalog_price(self, request: CatalogPriceRequest) -> CatalogPriceResult:
        self.price_requests.append(request)
        number = len(self.price_requests)
        return CatalogPriceResult(
            provider_product_id=request.existing_provider_product_id or f"prod_{number}",
            provider_price_id=f"price_{number}",
            currency=request.currency,
            unit_amount=request.monthly_unit_amount,
        )

    def cancel_now(self, provider_subscription_id: str) -> ProviderCancellation:
        self.cancellations.append((provider_subscription_id, "now"))
        return ProviderCancellation(
            provider_subscription_id=provider_subscription_id,
            provider_status="canceled",
            cancelled_at=self.cancelled_at,
        )

    def cancel_at_period_end(self, provider_subscription_id: str) -> ProviderCancellation:
        self.cancellations.append((provider_subscription_id, "period_end"))
        return ProviderCancellation(
            provider_subscription_id=provider_subscription_id,
            provider_status="active",
            current_period_end=self.period_end,
            cancel_at_period_end=True,
        )

    def list_invoices(self, *, limit: int, starting_after: Optional[str] = None) -> InvoicePage:
        return InvoicePage()


class RecordingEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list:
        return [event.event_type for event in self.events]


@pytest.fixture
def billing_repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def fulfillment_repository() -> InMemoryFulfillmentRepository:
    return InMemoryFulfillmentRepository()


@pytest.fixture
def payment_provider() -> RecordingPaymentProvider:
    return RecordingPaymentProvider()


@pytest.fixture
def stripe_provider() -> RecordingPaymentProvider:
    return RecordingPaymentProvider(BillingProviderName.STRIPE)


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def build_billing_service(billing_repository, fulfillment_repository, payment_provider, event_logger):
    def build(
        *,
        config: Optional[BillingConfig] = None,
        provider: Optional[PaymentProvider] = None,
    ) -> BillingService:
        return BillingService(
            repository=billing_repository,
            provider=provider or payment_provider,
            fulfillment=FulfillmentService(repository=fulfillment_repository),
            event_logger=event_logger,
            config=config or BillingConfig(),
        )

    return build


@pytest.fixture
def billing_service(build_billing_service) -> BillingService:
    return build_billing_service()


@pytest.fixture
def sign_webhook() -> Callable[..., str]:
    """Builds a ``Stripe-Signature`` header in the provider's ``t=,v1=`` format."""

    def sign(payload: bytes, secret: str, *, timestamp: Optional[int] = None) -> str:
        signed_at = int(time.time()) if timestamp is None else timestamp
        digest = hmac.new(secret.encode("utf-8"), f"{signed_at}.".encode("utf-8") + payload, hashlib.sha256)
        return f"t={signed_at},v1={digest.hexdigest()}"

    return sign

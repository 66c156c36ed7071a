"""Core service coordinating checkout and cancellation with payment providers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..fulfillment import FulfillmentService
from ..storage import DuplicateKeyError
from .commitment import calculate_commitment_end_date, ensure_minimum_commitment, parse_optional_iso_date
from .config import BillingConfig
from .eligibility import (
    CheckoutProfile,
    DeliveryOverrides,
    ensure_profile_complete,
    resolve_delivery_snapshot,
)
from .exceptions import (
    BillingError,
    BillingNotFoundError,
    BillingValidationError,
    CheckoutInProgressError,
    IdempotencyConflictError,
    PersistenceError,
    ProviderError,
    TransitionNotAllowedError,
)
from .fingerprint import derive_auto_idempotency_key, derive_checkout_fingerprint, normalize_idempotency_key
from .lifecycle import can_transition, map_provider_subscription_status
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingCustomer,
    BillingInvoice,
    BillingProviderName,
    BillingWebhookEvent,
    CancellationOutcome,
    CheckoutLineItem,
    CheckoutResult,
    ProviderCancellation,
    Subscription,
    SubscriptionItem,
    SubscriptionStatus,
    SubscriptionUpdateResult,
)
from .money import format_money, parse_money, to_money
from .providers import (
    BillingAddress,
    CheckoutSessionRequest,
    CustomerRequest,
    PaymentProvider,
    SessionLineItem,
)
from .tax import TaxQuote, calculate_sst_quote
from .validation import parse_checkout_items, parse_optional_text, parse_positive_int, parse_uuid

logger = logging.getLogger("billing")

FALLBACK_ITEM_NAME = "Furniture Rental"
FALLBACK_ITEM_CATEGORY = "General"
CUSTOMER_COUNTRY = "MY"

_IN_FLIGHT_STATUSES = frozenset(
    {SubscriptionStatus.PENDING, SubscriptionStatus.PENDING_PAYMENT, SubscriptionStatus.INCOMPLETE}
)


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class BillingRepository(Protocol):
    """Persistence operations required by the billing service."""

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_idempotency_key(self, key: str) -> Optional[Subscription]:
        ...

    def find_subscription_by_provider_subscription_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        ...

    def find_subscription_by_checkout_session(self, session_id: str) -> Optional[Subscription]:
        ...

    def list_subscriptions(
        self,
        *,
        ids: Sequence[str] = (),
        provider_subscription_ids: Sequence[str] = (),
    ) -> List[Subscription]:
        ...

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def update_subscription(self, subscription_id: str, changes: Mapping[str, Any]) -> Optional[Subscription]:
        ...

    def insert_subscription_items(self, items: Sequence[SubscriptionItem]) -> None:
        ...

    def get_checkout_profile(self, user_id: str) -> Optional[CheckoutProfile]:
        ...

    def get_billing_customer(self, user_id: str, provider: BillingProviderName) -> Optional[BillingCustomer]:
        ...

    def insert_billing_customer(self, customer: BillingCustomer) -> BillingCustomer:
        ...

    def list_billing_customers_by_provider_ids(
        self,
        provider: BillingProviderName,
        provider_customer_ids: Sequence[str],
    ) -> List[BillingCustomer]:
        ...

    def get_catalog_price_map(self, provider: BillingProviderName, currency: str) -> Dict[str, str]:
        ...

    def get_webhook_event(self, provider: BillingProviderName, event_id: str) -> Optional[BillingWebhookEvent]:
        ...

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        ...

    def mark_webhook_event_processed(
        self,
        provider: BillingProviderName,
        event_id: str,
        *,
        subscription_id: Optional[str],
    ) -> None:
        ...

    def mark_webhook_event_failed(
        self,
        provider: BillingProviderName,
        event_id: str,
        *,
        error_message: str,
    ) -> None:
        ...

    def find_invoice_subscription_id(self, provider: BillingProviderName, provider_invoice_id: str) -> Optional[str]:
        ...

    def upsert_invoices(self, invoices: Sequence[BillingInvoice]) -> int:
        ...


class CheckoutRequest(BaseModel):
    """Checkout input as received; validated by :class:`BillingService`."""

    user_id: Optional[str] = None
    bundle_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    minimum_term_months: Optional[Any] = None
    monthly_total: Optional[Any] = None
    currency: Optional[str] = None
    product_name: Optional[str] = None
    items: Optional[Any] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    idempotency_key: Optional[Any] = None
    delivery: DeliveryOverrides = Field(default_factory=DeliveryOverrides)

    model_config = ConfigDict(frozen=True)


class SubscriptionUpdate(BaseModel):
    """Admin edit of a subscription's billing fields."""

    status: Optional[SubscriptionStatus] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    monthly_total: Optional[Any] = None
    cancel_at_period_end: bool = False

    model_config = ConfigDict(frozen=True)


@dataclass(frozen=True)
class _CheckoutPlan:
    user_id: str
    bundle_id: Optional[str]
    items: List[CheckoutLineItem]
    minimum_term_months: int
    start_date: datetime
    commitment_end_date: datetime
    pinned_start_date: Optional[datetime]
    pinned_end_date: Optional[datetime]
    currency: str
    tax_quote: TaxQuote


@dataclass
class BillingService:
    """Coordinates checkout, replay, and cancellation for rental subscriptions."""

    repository: BillingRepository
    provider: PaymentProvider
    fulfillment: FulfillmentService
    event_logger: BillingEventLogger
    config: BillingConfig = field(default_factory=BillingConfig)
    provider_lookup: Optional[Callable[[Optional[str]], PaymentProvider]] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def provider_for(self, name: Optional[BillingProviderName]) -> PaymentProvider:
        """Provider that owns a subscription recorded under ``name``."""

        if name is None or name == self.provider.name or self.provider_lookup is None:
            return self.provider
        return self.provider_lookup(name.value)

    # Checkout

    def create_checkout(
        self,
        request: CheckoutRequest,
        *,
        idempotency_header: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CheckoutResult:
        """Create a pending subscription and provider session exactly once per logical request."""

        current_time = now or self._now()
        plan = self._plan_checkout(request, current_time)

        checkout_profile = self.repository.get_checkout_profile(plan.user_id)
        if checkout_profile is None:
            raise BillingNotFoundError("User account not found")
        ensure_profile_complete(checkout_profile)
        delivery = resolve_delivery_snapshot(checkout_profile, request.delivery)

        fingerprint = derive_checkout_fingerprint(
            user_id=plan.user_id,
            bundle_id=plan.bundle_id,
            start_date=plan.pinned_start_date,
            commitment_end_date=plan.pinned_end_date,
            currency=plan.currency,
            minimum_term_months=plan.minimum_term_months,
            delivery=delivery,
            items=plan.items,
        )
        idempotency_key = normalize_idempotency_key(request.idempotency_key, idempotency_header)
        if idempotency_key is None:
            idempotency_key = derive_auto_idempotency_key(
                fingerprint,
                current_time,
                window_minutes=self.config.auto_idempotency_window_minutes,
            )

        existing = self.repository.get_subscription_by_idempotency_key(idempotency_key)
        if existing is not None:
            return self._resolve_replay(existing, fingerprint, plan.tax_quote)

        provider = self.provider
        customer = self._ensure_billing_customer(checkout_profile, delivery, provider)
        price_map = self.repository.get_catalog_price_map(provider.name, plan.currency)

        pending = Subscription(
            id=str(uuid4()),
            user_id=plan.user_id,
            bundle_id=plan.bundle_id,
            status=SubscriptionStatus.PENDING_PAYMENT,
            subtotal_amount=plan.tax_quote.subtotal,
            tax_amount=plan.tax_quote.sst_amount,
            monthly_total=plan.tax_quote.total,
            start_date=plan.start_date,
            end_date=plan.commitment_end_date,
            commitment_start_at=plan.start_date,
            commitment_end_at=plan.commitment_end_date,
            minimum_term_months=plan.minimum_term_months,
            billing_provider=provider.name,
            billing_customer_id=customer.id,
            billing_currency=plan.currency,
            checkout_idempotency_key=idempotency_key,
            checkout_request_fingerprint=fingerprint,
            delivery=delivery,
        )
        try:
            created = self.repository.insert_subscription(pending)
        except DuplicateKeyError as exc:
            winner = self.repository.get_subscription_by_idempotency_key(idempotency_key)
            if winner is None:
                raise PersistenceError(f"Failed to create subscription: {exc}") from exc
            logger.info("Checkout insert lost idempotency race key=%s", idempotency_key)
            return self._resolve_replay(winner, fingerprint, plan.tax_quote)

        try:
            self.fulfillment.initialize_delivery_order(created.id)
            self.repository.insert_subscription_items(
                [
                    SubscriptionItem(subscription_id=created.id, **item.model_dump())
                    for item in plan.items
                ]
            )
        except Exception as exc:
            self._mark_checkout_failed(created, f"child rows: {exc}")
            raise PersistenceError(f"Failed to initialize subscription records: {exc}") from exc

        success_url = parse_optional_text(request.success_url) or self.config.checkout_success_url
        cancel_url = parse_optional_text(request.cancel_url) or self.config.checkout_cancel_url
        if provider.name == BillingProviderName.STRIPE:
            self._ensure_stripe_checkout_configured(created, success_url, cancel_url)

        session_request = CheckoutSessionRequest(
            customer_id=customer.provider_customer_id,
            line_items=[
                SessionLineItem(
                    name=item.product_name,
                    quantity=item.quantity,
                    unit_amount=item.monthly_price,
                    currency=plan.currency,
                    product_id=item.product_id,
                    provider_price_id=(
                        price_map.get(f"{item.product_id}:{format_money(item.monthly_price)}")
                        if item.product_id
                        else None
                    ),
                )
                for item in plan.items
            ],
            currency=plan.currency,
            automatic_tax=self.config.stripe_automatic_tax,
            manual_tax_rate_id=self.config.stripe_tax_rate_id,
            minimum_term_months=plan.minimum_term_months,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"internal_subscription_id": created.id, "internal_user_id": plan.user_id},
        )
        try:
            session = provider.create_checkout_session(session_request)
        except BillingError as exc:
            self._mark_checkout_failed(created, exc.message)
            raise
        except Exception as exc:
            self._mark_checkout_failed(created, str(exc))
            raise ProviderError(f"Failed to create checkout session: {exc}") from exc

        updated = self.repository.update_subscription(
            created.id,
            {
                "provider_checkout_session_id": session.session_id,
                "provider_subscription_id": session.provider_subscription_id,
            },
        )
        if updated is None:
            raise PersistenceError("Failed to persist checkout session")

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CHECKOUT_CREATED,
                subscription_id=updated.id,
                actor_id=plan.user_id,
                metadata={"provider": provider.name.value, "idempotency_key": idempotency_key},
            )
        )
        return CheckoutResult(
            subscription=updated,
            checkout_url=session.checkout_url,
            checkout_session_id=session.session_id,
            billing_provider=provider.name,
            tax_quote=plan.tax_quote,
        )

    def _plan_checkout(self, request: CheckoutRequest, now: datetime) -> _CheckoutPlan:
        user_id = parse_uuid(request.user_id, "user_id", required=True)
        bundle_id = parse_uuid(request.bundle_id, "bundle_id")
        pinned_start = parse_optional_iso_date(request.start_date, "start_date")
        pinned_end = parse_optional_iso_date(request.end_date, "end_date")

        requested_term = None
        if request.minimum_term_months is not None:
            requested_term = parse_positive_int(request.minimum_term_months)
            if requested_term is None:
                raise BillingValidationError("minimum_term_months must be a positive integer")

        monthly_total: Optional[Decimal] = None
        if request.monthly_total is not None:
            monthly_total = parse_money(request.monthly_total)
            if monthly_total is None or monthly_total < 0:
                raise BillingValidationError("monthly_total must be a non-negative number")

        items = parse_checkout_items(request.items)
        if not items and monthly_total is not None and monthly_total > 0:
            items = [
                CheckoutLineItem(
                    product_name=parse_optional_text(request.product_name) or FALLBACK_ITEM_NAME,
                    category=FALLBACK_ITEM_CATEGORY,
                    monthly_price=monthly_total,
                    quantity=1,
                )
            ]
        if not items:
            raise BillingValidationError("Provide at least one line item or monthly_total")

        configured_term = self.config.minimum_term_months
        for index, item in enumerate(items):
            if item.duration_months is not None and item.duration_months < configured_term:
                raise BillingValidationError(
                    f"items[{index}].duration_months must be at least {configured_term} months"
                )

        minimum_term = max(
            [configured_term, requested_term or 0]
            + [item.duration_months for item in items if item.duration_months is not None]
        )
        start = pinned_start or now
        commitment_end = calculate_commitment_end_date(start, minimum_term, pinned_end)
        ensure_minimum_commitment(start, minimum_term, commitment_end)

        currency = (parse_optional_text(request.currency) or self.config.currency).lower()
        subtotal = sum((item.monthly_price * item.quantity for item in items), Decimal("0"))
        tax_quote = calculate_sst_quote(subtotal, currency, rate=self.config.sst_rate)

        return _CheckoutPlan(
            user_id=user_id,
            bundle_id=bundle_id,
            items=items,
            minimum_term_months=minimum_term,
            start_date=start,
            commitment_end_date=commitment_end,
            pinned_start_date=pinned_start,
            pinned_end_date=commitment_end if pinned_start or pinned_end else None,
            currency=currency,
            tax_quote=tax_quote,
        )

    def _resolve_replay(self, existing: Subscription, fingerprint: str, tax_quote: TaxQuote) -> CheckoutResult:
        """Answer a retried checkout from the stored attempt without writing anything."""

        stored_fingerprint = (existing.checkout_request_fingerprint or "").strip()
        if stored_fingerprint and stored_fingerprint != fingerprint:
            raise IdempotencyConflictError(
                "This idempotency key was already used with different checkout details."
            )

        if not existing.provider_checkout_session_id:
            if existing.status in _IN_FLIGHT_STATUSES:
                raise CheckoutInProgressError("Checkout is still being created. Please retry in a few seconds.")
            if existing.status == SubscriptionStatus.PAYMENT_FAILED:
                raise IdempotencyConflictError(
                    "Previous checkout attempt failed. Retry by starting a new checkout."
                )

        provider = self.provider_for(existing.billing_provider)
        checkout_url = None
        if existing.provider_checkout_session_id:
            try:
                checkout_url = provider.get_checkout_session_url(existing.provider_checkout_session_id)
            except Exception:
                logger.warning(
                    "Could not refresh checkout URL for subscription %s",
                    existing.id,
                    exc_info=True,
                )

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CHECKOUT_REPLAYED,
                subscription_id=existing.id,
                actor_id=existing.user_id,
            )
        )
        return CheckoutResult(
            subscription=existing,
            checkout_url=checkout_url,
            checkout_session_id=existing.provider_checkout_session_id,
            billing_provider=existing.billing_provider or provider.name,
            tax_quote=tax_quote,
            idempotent_replay=True,
        )

    def _ensure_billing_customer(self, checkout_profile, delivery, provider: PaymentProvider) -> BillingCustomer:
        existing = self.repository.get_billing_customer(checkout_profile.user_id, provider.name)
        if existing is not None:
            return existing

        profile = checkout_profile.profile
        provider_customer_id = provider.ensure_customer(
            CustomerRequest(
                external_user_id=checkout_profile.user_id,
                email=checkout_profile.email,
                name=delivery.contact_name or (profile.full_name if profile else None),
                phone=delivery.contact_phone,
                address=BillingAddress(
                    line1=delivery.address,
                    city=delivery.city,
                    postal_code=delivery.zip_postal,
                    country=CUSTOMER_COUNTRY,
                ),
                metadata={"source": "checkout"},
            )
        )
        customer = BillingCustomer(
            id=str(uuid4()),
            user_id=checkout_profile.user_id,
            provider=provider.name,
            provider_customer_id=provider_customer_id,
            email=checkout_profile.email,
        )
        try:
            return self.repository.insert_billing_customer(customer)
        except DuplicateKeyError as exc:
            winner = self.repository.get_billing_customer(checkout_profile.user_id, provider.name)
            if winner is None:
                raise PersistenceError(f"Failed to persist billing customer: {exc}") from exc
            return winner

    def _ensure_stripe_checkout_configured(
        self,
        subscription: Subscription,
        success_url: Optional[str],
        cancel_url: Optional[str],
    ) -> None:
        problem = None
        if not success_url or not cancel_url:
            problem = "BILLING_CHECKOUT_SUCCESS_URL and BILLING_CHECKOUT_CANCEL_URL must be configured for Stripe"
        elif not self.config.stripe_automatic_tax and not self.config.stripe_tax_rate_id:
            problem = "BILLING_STRIPE_TAX_RATE_ID must be configured when automatic tax is disabled"
        if problem:
            self._mark_checkout_failed(subscription, problem)
            raise PersistenceError(problem)

    def _mark_checkout_failed(self, subscription: Subscription, reason: str) -> None:
        try:
            self.repository.update_subscription(subscription.id, {"status": SubscriptionStatus.PAYMENT_FAILED})
        except Exception:
            logger.exception("Failed to roll subscription %s to payment_failed", subscription.id)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CHECKOUT_FAILED,
                subscription_id=subscription.id,
                actor_id=subscription.user_id,
                metadata={"reason": reason[:500]},
            )
        )

    # Cancellation and admin edits

    def request_cancellation(
        self,
        subscription_id: str,
        *,
        end_date: Optional[str] = None,
        at_period_end: bool = False,
        now: Optional[datetime] = None,
    ) -> CancellationOutcome:
        """Cancel, or defer cancellation until the commitment term has been served."""

        subscription = self._require_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.COMPLETED:
            raise TransitionNotAllowedError("Completed subscriptions cannot be cancelled")
        explicit_end = parse_optional_iso_date(end_date, "end_date")

        service_state = self.fulfillment.mark_offboarding_requested(subscription.id)

        if subscription.status == SubscriptionStatus.CANCELLED:
            return CancellationOutcome(subscription=subscription, deferred=False, service_state=service_state.value)

        current_time = now or self._now()
        if subscription.commitment_end_at is not None and subscription.commitment_end_at > current_time:
            deferred = self._update(
                subscription.id,
                {"end_date": explicit_end or subscription.commitment_end_at},
            )
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.CANCELLATION_DEFERRED,
                    subscription_id=subscription.id,
                    actor_id=subscription.user_id,
                    metadata={"commitment_end_at": subscription.commitment_end_at.isoformat()},
                )
            )
            return CancellationOutcome(subscription=deferred, deferred=True, service_state=service_state.value)

        provider_cancellation = self._cancel_at_provider(subscription, at_period_end=at_period_end)

        target_status = SubscriptionStatus.CANCELLED
        if at_period_end and provider_cancellation is not None:
            target_status = map_provider_subscription_status(provider_cancellation.provider_status)
        target_end = explicit_end
        if target_end is None and provider_cancellation is not None:
            provider_dates = [provider_cancellation.cancelled_at, provider_cancellation.current_period_end]
            if at_period_end:
                provider_dates.reverse()
            target_end = next((value for value in provider_dates if value is not None), None)
        changes: Dict[str, Any] = {"status": target_status}
        if target_end is not None:
            changes["end_date"] = target_end
        updated = self._update(subscription.id, changes)

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CANCELLATION_APPLIED,
                subscription_id=subscription.id,
                actor_id=subscription.user_id,
                metadata={"status": target_status.value, "at_period_end": str(at_period_end).lower()},
            )
        )
        return CancellationOutcome(
            subscription=updated,
            deferred=False,
            service_state=service_state.value,
            provider_cancellation=provider_cancellation,
        )

    def _cancel_at_provider(
        self,
        subscription: Subscription,
        *,
        at_period_end: bool,
    ) -> Optional[ProviderCancellation]:
        if not subscription.provider_subscription_id:
            if subscription.billing_provider == BillingProviderName.STRIPE:
                raise TransitionNotAllowedError(
                    "Stripe subscription is missing provider_subscription_id; cannot cancel at provider"
                )
            return None

        provider = self.provider_for(subscription.billing_provider)
        try:
            if at_period_end:
                return provider.cancel_at_period_end(subscription.provider_subscription_id)
            return provider.cancel_now(subscription.provider_subscription_id)
        except BillingError:
            raise
        except Exception as exc:
            raise ProviderError(f"Failed to cancel subscription at provider: {exc}") from exc

    def update_subscription(
        self,
        subscription_id: str,
        update: SubscriptionUpdate,
        *,
        now: Optional[datetime] = None,
    ) -> SubscriptionUpdateResult:
        """Apply an admin edit; a move to ``cancelled`` goes through the cancellation policy."""

        subscription = self._require_subscription(subscription_id)
        changes: Dict[str, Any] = {}

        if update.start_date is not None:
            changes["start_date"] = parse_optional_iso_date(update.start_date, "start_date")
        if update.monthly_total is not None:
            monthly_total = parse_money(update.monthly_total)
            if monthly_total is None or monthly_total < 0:
                raise BillingValidationError("monthly_total must be a non-negative number")
            changes["monthly_total"] = to_money(monthly_total)

        cancellation = None
        if update.status == SubscriptionStatus.CANCELLED:
            cancellation = self.request_cancellation(
                subscription.id,
                end_date=update.end_date,
                at_period_end=update.cancel_at_period_end,
                now=now,
            )
            subscription = cancellation.subscription
        else:
            if update.end_date is not None:
                changes["end_date"] = parse_optional_iso_date(update.end_date, "end_date")
            if update.status is not None and update.status != subscription.status:
                if not can_transition(subscription.status, update.status):
                    raise TransitionNotAllowedError(
                        f"Cannot move subscription from {subscription.status.value} to {update.status.value}"
                    )
                changes["status"] = update.status

        if changes:
            previous_status = subscription.status
            subscription = self._update(subscription.id, changes)
            if subscription.status != previous_status:
                self.event_logger.log(
                    BillingAuditEvent(
                        event_type=BillingAuditEventType.STATUS_CHANGED,
                        subscription_id=subscription.id,
                        metadata={"from": previous_status.value, "to": subscription.status.value, "source": "admin"},
                    )
                )
        return SubscriptionUpdateResult(subscription=subscription, cancellation=cancellation)

    def _require_subscription(self, subscription_id: str) -> Subscription:
        subscription_id = parse_uuid(subscription_id, "subscription id", required=True)
        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise BillingNotFoundError("Subscription not found")
        return subscription

    def _update(self, subscription_id: str, changes: Mapping[str, Any]) -> Subscription:
        updated = self.repository.update_subscription(subscription_id, changes)
        if updated is None:
            raise BillingNotFoundError("Subscription not found")
        return updated


__all__ = [
    "BillingEventLogger",
    "BillingRepository",
    "BillingService",
    "CheckoutRequest",
    "SubscriptionUpdate",
]

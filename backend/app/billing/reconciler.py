"""Exactly-once application of provider webhook events."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .config import BillingConfig
from .exceptions import PersistenceError
from .invoices import build_invoice_mirror
from .lifecycle import (
    can_transition,
    is_stale_event,
    map_provider_subscription_status,
    resolve_lifecycle_end_date,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingProviderName,
    BillingWebhookEvent,
    Subscription,
    SubscriptionStatus,
    WebhookEventStatus,
    WebhookOutcome,
)
from .service import BillingEventLogger, BillingRepository
from .validation import coerce_uuid
from .webhooks import (
    SUBSCRIPTION_LIFECYCLE_EVENTS,
    ProviderEvent,
    WebhookEventType,
    from_unix_timestamp,
    parse_webhook_event,
    read_string,
    verify_webhook_signature,
)

logger = logging.getLogger("billing")

_INVOICE_STATUS_TARGETS = {
    WebhookEventType.INVOICE_PAYMENT_FAILED: SubscriptionStatus.PAYMENT_FAILED,
    WebhookEventType.INVOICE_PAID: SubscriptionStatus.ACTIVE,
    WebhookEventType.INVOICE_PAYMENT_SUCCEEDED: SubscriptionStatus.ACTIVE,
}


def _provider_period_end(obj: Dict[str, Any]) -> Optional[datetime]:
    period_end = from_unix_timestamp(obj.get("current_period_end"))
    if period_end is not None:
        return period_end
    items = obj.get("items")
    data = items.get("data") if isinstance(items, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return from_unix_timestamp(data[0].get("current_period_end"))
    return None


@dataclass
class WebhookReconciler:
    """Verifies, ledgers, and applies provider webhook deliveries."""

    repository: BillingRepository
    event_logger: BillingEventLogger
    config: BillingConfig = field(default_factory=BillingConfig)
    provider: BillingProviderName = BillingProviderName.STRIPE

    def handle(
        self,
        payload: bytes,
        signature_header: Optional[str],
    ) -> WebhookOutcome:
        """Apply a signed delivery once; repeated deliveries are acknowledged as duplicates."""

        secret = self.config.stripe_webhook_secret
        if not secret:
            raise PersistenceError("STRIPE_WEBHOOK_SECRET is not configured")
        verify_webhook_signature(
            payload,
            signature_header,
            secret,
            tolerance_seconds=self.config.webhook_tolerance_seconds,
        )
        event = parse_webhook_event(payload)

        existing = self.repository.get_webhook_event(self.provider, event.id)
        if existing is not None and existing.status == WebhookEventStatus.PROCESSED:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.WEBHOOK_DUPLICATE,
                    subscription_id=existing.subscription_id,
                    metadata={"event_id": event.id, "event_type": event.type},
                )
            )
            return WebhookOutcome(duplicate=True, subscription_id=existing.subscription_id)
        if existing is None:
            # A concurrent delivery may have inserted the row first; either way it exists now.
            self.repository.record_webhook_event(
                BillingWebhookEvent(
                    provider=self.provider,
                    event_id=event.id,
                    event_type=event.type,
                    payload=event.payload,
                )
            )

        try:
            processed, subscription_id = self._dispatch(event)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            self.repository.mark_webhook_event_failed(self.provider, event.id, error_message=message)
            logger.exception("Webhook %s (%s) failed", event.id, event.type)
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.WEBHOOK_FAILED,
                    metadata={"event_id": event.id, "event_type": event.type, "error": message[:500]},
                )
            )
            raise PersistenceError("Webhook processing failed", detail={"event_id": event.id}) from exc

        self.repository.mark_webhook_event_processed(self.provider, event.id, subscription_id=subscription_id)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.WEBHOOK_PROCESSED,
                subscription_id=subscription_id,
                metadata={"event_id": event.id, "event_type": event.type, "processed": str(processed).lower()},
            )
        )
        return WebhookOutcome(processed=processed, subscription_id=subscription_id)

    def _dispatch(self, event: ProviderEvent) -> Tuple[bool, Optional[str]]:
        subscription = self.resolve_subscription(event)
        subscription_id = subscription.id if subscription else None

        if event.is_invoice_event:
            self._mirror_invoice(event, subscription)

        kind = event.kind
        if kind == WebhookEventType.UNHANDLED:
            if not event.is_invoice_event:
                logger.info("Ignoring unhandled webhook type %s", event.type)
            return event.is_invoice_event, subscription_id
        if subscription is None:
            logger.warning(
                "No subscription resolved for webhook %s (%s); lifecycle skipped",
                event.id,
                event.type,
            )
            return True, None

        obj = event.data_object
        changes: Dict[str, Any] = {}
        provider_period_end: Optional[datetime] = None

        if kind == WebhookEventType.CHECKOUT_SESSION_COMPLETED:
            paid = read_string(obj.get("payment_status")) == "paid"
            target = SubscriptionStatus.ACTIVE if paid else SubscriptionStatus.PENDING_PAYMENT
            provider_subscription_id = read_string(obj.get("subscription"))
            if provider_subscription_id and provider_subscription_id != subscription.provider_subscription_id:
                changes["provider_subscription_id"] = provider_subscription_id
            session_id = read_string(obj.get("id"))
            if session_id and not subscription.provider_checkout_session_id:
                changes["provider_checkout_session_id"] = session_id
        elif kind in SUBSCRIPTION_LIFECYCLE_EVENTS:
            if kind == WebhookEventType.SUBSCRIPTION_DELETED:
                target = SubscriptionStatus.CANCELLED
            else:
                target = map_provider_subscription_status(read_string(obj.get("status")))
            provider_period_end = _provider_period_end(obj) or from_unix_timestamp(obj.get("ended_at"))
            provider_subscription_id = read_string(obj.get("id"))
            if provider_subscription_id and not subscription.provider_subscription_id:
                changes["provider_subscription_id"] = provider_subscription_id
        else:
            target = _INVOICE_STATUS_TARGETS[kind]

        self._apply_lifecycle(subscription, event, target, provider_period_end, changes)
        return True, subscription_id

    def resolve_subscription(self, event: ProviderEvent) -> Optional[Subscription]:
        """First match wins: internal id, provider subscription, checkout session, invoice mirror."""

        refs = event.references()
        internal_id = coerce_uuid(refs.internal_subscription_id)
        if internal_id:
            subscription = self.repository.get_subscription(internal_id)
            if subscription is not None:
                return subscription
        if refs.provider_subscription_id:
            subscription = self.repository.find_subscription_by_provider_subscription_id(
                refs.provider_subscription_id
            )
            if subscription is not None:
                return subscription
        if refs.provider_checkout_session_id:
            subscription = self.repository.find_subscription_by_checkout_session(refs.provider_checkout_session_id)
            if subscription is not None:
                return subscription
        if refs.provider_invoice_id:
            linked_id = self.repository.find_invoice_subscription_id(self.provider, refs.provider_invoice_id)
            if linked_id:
                return self.repository.get_subscription(linked_id)
        return None

    def _apply_lifecycle(
        self,
        subscription: Subscription,
        event: ProviderEvent,
        target: SubscriptionStatus,
        provider_period_end: Optional[datetime],
        changes: Dict[str, Any],
    ) -> None:
        if is_stale_event(subscription, event.created):
            self._log_skip(subscription, event, target, "stale_event")
            return

        if target != subscription.status:
            if can_transition(subscription.status, target):
                changes["status"] = target
            else:
                self._log_skip(subscription, event, target, "transition_not_allowed")

        end_date = resolve_lifecycle_end_date(subscription, provider_period_end)
        if end_date is not None and end_date != subscription.end_date:
            changes["end_date"] = end_date
        if event.created is not None:
            changes["last_provider_event_at"] = event.created

        if not changes:
            return
        self.repository.update_subscription(subscription.id, changes)
        if "status" in changes:
            logger.info(
                "Subscription %s moved %s -> %s via %s",
                subscription.id,
                subscription.status.value,
                target.value,
                event.type,
                extra={"event_id": event.id},
            )
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.STATUS_CHANGED,
                    subscription_id=subscription.id,
                    metadata={
                        "from": subscription.status.value,
                        "to": target.value,
                        "source": event.type,
                        "event_id": event.id,
                    },
                )
            )

    def _log_skip(self, subscription: Subscription, event: ProviderEvent, target: SubscriptionStatus, reason: str) -> None:
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.TRANSITION_SKIPPED,
                subscription_id=subscription.id,
                metadata={
                    "from": subscription.status.value,
                    "to": target.value,
                    "reason": reason,
                    "event_id": event.id,
                },
            )
        )

    def _mirror_invoice(self, event: ProviderEvent, subscription: Optional[Subscription]) -> None:
        obj = event.data_object
        billing_customer_id = subscription.billing_customer_id if subscription else None
        provider_customer_id = read_string(obj.get("customer"))
        if billing_customer_id is None and provider_customer_id:
            customers = self.repository.list_billing_customers_by_provider_ids(self.provider, [provider_customer_id])
            billing_customer_id = customers[0].id if customers else None

        invoice = build_invoice_mirror(
            obj,
            provider=self.provider,
            event_type=event.type,
            subscription_id=subscription.id if subscription else None,
            provider_subscription_id=subscription.provider_subscription_id if subscription else None,
            billing_customer_id=billing_customer_id,
        )
        if invoice is None:
            logger.warning("Invoice event %s carried no invoice id", event.id)
            return
        self.repository.upsert_invoices([invoice])
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.INVOICE_MIRRORED,
                subscription_id=invoice.subscription_id,
                metadata={"provider_invoice_id": invoice.provider_invoice_id, "status": invoice.status.value},
            )
        )


__all__ = ["WebhookReconciler"]

"""Webhook ledger and lifecycle reconciliation."""
from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest

from backend.app.billing import (
    BillingAuditEventType,
    BillingConfig,
    BillingProviderName,
    InvoiceStatus,
    PersistenceError,
    Subscription,
    SubscriptionStatus,
    WebhookReconciler,
    WebhookSignatureError,
)
from backend.app.billing.models import WebhookEventStatus

SECRET = "whsec_test_secret"
NOW_TS = 1_768_469_400
SUB_ID = "3c0d4b52-8f61-4c1e-9a57-2f6d0e1b7a93"
USER_ID = "6f1c2d9e-3b4a-4c5d-8e7f-1a2b3c4d5e6f"
OTHER_ID = "9a1e7c44-2b3d-4f5a-8c6e-0d1f2a3b4c5d"
STRIPE = BillingProviderName.STRIPE


def utc(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@pytest.fixture
def reconciler(billing_repository, event_logger) -> WebhookReconciler:
    return WebhookReconciler(
        repository=billing_repository,
        event_logger=event_logger,
        config=BillingConfig(stripe_webhook_secret=SECRET),
    )


@pytest.fixture
def deliver(reconciler, sign_webhook):
    def send(event: dict, *, signed_at: Optional[int] = None):
        payload = json.dumps(event).encode("utf-8")
        return reconciler.handle(payload, sign_webhook(payload, SECRET, timestamp=signed_at))

    return send


def event(event_id: str, event_type: str, obj: dict, *, created: int = NOW_TS) -> dict:
    return {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}


def pending_checkout(**overrides) -> Subscription:
    fields = {
        "id": SUB_ID,
        "user_id": USER_ID,
        "status": SubscriptionStatus.PENDING_PAYMENT,
        "billing_provider": STRIPE,
        "provider_checkout_session_id": "cs_1",
        "end_date": datetime(2027, 1, 15, tzinfo=timezone.utc),
        "commitment_end_at": datetime(2027, 1, 15, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Subscription(**fields)


def test_missing_webhook_secret_is_a_server_error(billing_repository, event_logger):
    reconciler = WebhookReconciler(repository=billing_repository, event_logger=event_logger, config=BillingConfig())

    with pytest.raises(PersistenceError) as excinfo:
        reconciler.handle(b"{}", "t=1,v1=abc")

    assert excinfo.value.message == "STRIPE_WEBHOOK_SECRET is not configured"


def test_tampered_payload_is_rejected(reconciler, billing_repository, sign_webhook):
    payload = json.dumps(event("evt_1", "invoice.paid", {"id": "in_1"})).encode("utf-8")
    header = sign_webhook(payload, SECRET)

    with pytest.raises(WebhookSignatureError):
        reconciler.handle(payload.replace(b"in_1", b"in_2"), header)

    assert billing_repository.webhook_events == {}


def test_stale_signature_timestamp_is_rejected(deliver, billing_repository):
    with pytest.raises(WebhookSignatureError) as excinfo:
        deliver(event("evt_1", "invoice.paid", {"id": "in_1"}), signed_at=int(time.time()) - 301)

    assert excinfo.value.message == "Invalid Stripe webhook signature"
    assert billing_repository.webhook_events == {}


def test_paid_checkout_session_activates_subscription(deliver, billing_repository, event_logger):
    billing_repository.add_subscription(pending_checkout())

    outcome = deliver(
        event(
            "evt_checkout",
            "checkout.session.completed",
            {
                "id": "cs_1",
                "payment_status": "paid",
                "subscription": "sub_live",
                "metadata": {"internal_subscription_id": SUB_ID},
            },
        ),
    )

    stored = billing_repository.subscriptions[SUB_ID]
    assert outcome.processed is True
    assert outcome.subscription_id == SUB_ID
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.provider_subscription_id == "sub_live"
    assert stored.last_provider_event_at == utc(NOW_TS)
    assert billing_repository.webhook_events[(STRIPE, "evt_checkout")].status == WebhookEventStatus.PROCESSED
    assert event_logger.types == [
        BillingAuditEventType.STATUS_CHANGED,
        BillingAuditEventType.WEBHOOK_PROCESSED,
    ]


def test_unpaid_checkout_session_stays_pending(deliver, billing_repository):
    billing_repository.add_subscription(pending_checkout())

    deliver(event("evt_unpaid", "checkout.session.completed", {"id": "cs_1", "payment_status": "unpaid"}))

    assert billing_repository.subscriptions[SUB_ID].status == SubscriptionStatus.PENDING_PAYMENT


def test_redelivered_event_is_acknowledged_as_duplicate(deliver, billing_repository, event_logger):
    billing_repository.add_subscription(pending_checkout())
    paid = event("evt_dup", "checkout.session.completed", {"id": "cs_1", "payment_status": "paid"})

    deliver(paid)
    updates_after_first = len(billing_repository.update_calls)
    second = deliver(paid)

    assert second.duplicate is True
    assert second.subscription_id == SUB_ID
    assert len(billing_repository.update_calls) == updates_after_first
    assert event_logger.types[-1] == BillingAuditEventType.WEBHOOK_DUPLICATE


def test_older_event_does_not_override_newer_state(deliver, billing_repository, event_logger):
    billing_repository.add_subscription(
        pending_checkout(
            status=SubscriptionStatus.ACTIVE,
            provider_subscription_id="sub_live",
            last_provider_event_at=utc(NOW_TS),
        )
    )

    outcome = deliver(
        event("evt_old", "customer.subscription.updated", {"id": "sub_live", "status": "past_due"}, created=NOW_TS - 60),
    )

    assert outcome.processed is True
    assert billing_repository.subscriptions[SUB_ID].status == SubscriptionStatus.ACTIVE
    skipped = [e for e in event_logger.events if e.event_type == BillingAuditEventType.TRANSITION_SKIPPED]
    assert skipped[0].metadata["reason"] == "stale_event"


def test_disallowed_transition_is_skipped_but_event_processed(deliver, billing_repository, event_logger):
    billing_repository.add_subscription(
        pending_checkout(status=SubscriptionStatus.CANCELLED, provider_subscription_id="sub_live")
    )

    deliver(event("evt_late", "customer.subscription.updated", {"id": "sub_live", "status": "active"}))

    stored = billing_repository.subscriptions[SUB_ID]
    assert stored.status == SubscriptionStatus.CANCELLED
    assert stored.last_provider_event_at == utc(NOW_TS)
    skipped = [e for e in event_logger.events if e.event_type == BillingAuditEventType.TRANSITION_SKIPPED]
    assert skipped[0].metadata["reason"] == "transition_not_allowed"
    assert billing_repository.webhook_events[(STRIPE, "evt_late")].status == WebhookEventStatus.PROCESSED


def test_deleted_subscription_is_cancelled_with_provider_end_date(deliver, billing_repository):
    billing_repository.add_subscription(
        pending_checkout(
            status=SubscriptionStatus.ACTIVE,
            provider_subscription_id="sub_live",
            end_date=None,
            commitment_end_at=None,
        )
    )

    deliver(
        event("evt_deleted", "customer.subscription.deleted", {"id": "sub_live", "status": "canceled", "ended_at": NOW_TS}),
    )

    stored = billing_repository.subscriptions[SUB_ID]
    assert stored.status == SubscriptionStatus.CANCELLED
    assert stored.end_date == utc(NOW_TS)


def test_period_end_is_read_from_subscription_items(deliver, billing_repository):
    billing_repository.add_subscription(
        pending_checkout(provider_subscription_id="sub_live", end_date=None, commitment_end_at=None)
    )
    period_end = NOW_TS + 30 * 86400

    deliver(
        event(
            "evt_created",
            "customer.subscription.created",
            {"id": "sub_live", "status": "active", "items": {"data": [{"current_period_end": period_end}]}},
        ),
    )

    stored = billing_repository.subscriptions[SUB_ID]
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.end_date == utc(period_end)


def test_failed_invoice_marks_payment_failed_and_mirrors_invoice(deliver, billing_repository, event_logger):
    customer = billing_repository.add_customer(USER_ID, STRIPE, "cus_1")
    billing_repository.add_subscription(
        pending_checkout(
            status=SubscriptionStatus.ACTIVE,
            provider_subscription_id="sub_live",
            billing_customer_id=customer.id,
        )
    )

    deliver(
        event(
            "evt_invoice",
            "invoice.payment_failed",
            {
                "id": "in_1",
                "subscription": "sub_live",
                "customer": "cus_1",
                "status": "open",
                "currency": "MYR",
                "subtotal": 18000,
                "total": 19440,
                "amount_due": 19440,
                "amount_paid": 0,
            },
        ),
    )

    assert billing_repository.subscriptions[SUB_ID].status == SubscriptionStatus.PAYMENT_FAILED
    invoice = billing_repository.invoices[(STRIPE, "in_1")]
    assert invoice.status == InvoiceStatus.PAYMENT_FAILED
    assert invoice.subscription_id == SUB_ID
    assert invoice.billing_customer_id == customer.id
    assert invoice.tax_amount == Decimal("14.40")
    assert invoice.currency == "myr"
    assert BillingAuditEventType.INVOICE_MIRRORED in event_logger.types


def test_other_invoice_events_are_mirrored_without_lifecycle_change(deliver, billing_repository):
    customer = billing_repository.add_customer(USER_ID, STRIPE, "cus_9")

    outcome = deliver(
        event("evt_final", "invoice.finalized", {"id": "in_9", "customer": "cus_9", "status": "open", "total": 5000}),
    )

    invoice = billing_repository.invoices[(STRIPE, "in_9")]
    assert outcome.processed is True
    assert outcome.subscription_id is None
    assert invoice.status == InvoiceStatus.OPEN
    assert invoice.billing_customer_id == customer.id


def test_invoice_mirror_links_later_events_to_subscription(deliver, billing_repository):
    billing_repository.add_subscription(pending_checkout(status=SubscriptionStatus.PAYMENT_FAILED))
    deliver(
        event("evt_a", "invoice.finalized", {"id": "in_7", "metadata": {"internal_subscription_id": SUB_ID}}),
    )

    deliver(event("evt_b", "invoice.paid", {"id": "in_7", "paid": True}))

    assert billing_repository.subscriptions[SUB_ID].status == SubscriptionStatus.ACTIVE


def test_unrelated_event_types_are_acknowledged(deliver, billing_repository):
    outcome = deliver(event("evt_cus", "customer.created", {"id": "cus_1"}))

    assert outcome.processed is False
    assert billing_repository.webhook_events[(STRIPE, "evt_cus")].status == WebhookEventStatus.PROCESSED


def test_lifecycle_event_without_subscription_is_processed(deliver):
    outcome = deliver(event("evt_orphan", "customer.subscription.updated", {"id": "sub_other", "status": "active"}))

    assert outcome.processed is True
    assert outcome.subscription_id is None


def test_processing_failure_is_ledgered_and_retryable(deliver, billing_repository, event_logger):
    billing_repository.add_subscription(pending_checkout())
    billing_repository.update_error = RuntimeError("database unavailable")
    paid = event("evt_retry", "checkout.session.completed", {"id": "cs_1", "payment_status": "paid"})

    with pytest.raises(PersistenceError) as excinfo:
        deliver(paid)

    ledger = billing_repository.webhook_events[(STRIPE, "evt_retry")]
    assert excinfo.value.payload["event_id"] == "evt_retry"
    assert ledger.status == WebhookEventStatus.FAILED
    assert ledger.error_message == "database unavailable"
    assert event_logger.types[-1] == BillingAuditEventType.WEBHOOK_FAILED

    billing_repository.update_error = None
    outcome = deliver(paid)

    assert outcome.processed is True
    assert billing_repository.subscriptions[SUB_ID].status == SubscriptionStatus.ACTIVE


def two_rentals(billing_repository) -> None:
    billing_repository.add_subscription(
        pending_checkout(status=SubscriptionStatus.ACTIVE, provider_subscription_id="sub_a", provider_checkout_session_id="cs_a")
    )
    billing_repository.add_subscription(
        pending_checkout(
            id=OTHER_ID,
            status=SubscriptionStatus.ACTIVE,
            provider_subscription_id="sub_b",
            provider_checkout_session_id="cs_b",
        )
    )


def test_metadata_internal_id_wins_over_provider_subscription_id(deliver, billing_repository):
    two_rentals(billing_repository)

    outcome = deliver(
        event(
            "evt_meta",
            "customer.subscription.updated",
            {"id": "sub_b", "status": "past_due", "metadata": {"internal_subscription_id": SUB_ID}},
        ),
    )

    assert outcome.subscription_id == SUB_ID
    assert billing_repository.subscriptions[SUB_ID].status == SubscriptionStatus.PAYMENT_FAILED
    assert billing_repository.subscriptions[OTHER_ID].status == SubscriptionStatus.ACTIVE


def test_unknown_metadata_id_falls_back_to_provider_subscription_id(deliver, billing_repository):
    two_rentals(billing_repository)

    outcome = deliver(
        event(
            "evt_meta_gone",
            "customer.subscription.updated",
            {"id": "sub_b", "status": "active", "metadata": {"internal_subscription_id": "0b7f5d1e-6a2c-4e3b-9d8f-7c6b5a4e3d2c"}},
        ),
    )

    assert outcome.subscription_id == OTHER_ID


def test_provider_subscription_id_wins_over_checkout_session(deliver, billing_repository):
    two_rentals(billing_repository)

    outcome = deliver(
        event("evt_cs", "checkout.session.completed", {"id": "cs_a", "payment_status": "paid", "subscription": "sub_b"}),
    )

    assert outcome.subscription_id == OTHER_ID


def test_checkout_session_is_used_when_provider_subscription_is_unknown(deliver, billing_repository):
    two_rentals(billing_repository)

    outcome = deliver(
        event("evt_cs_new", "checkout.session.completed", {"id": "cs_a", "payment_status": "paid", "subscription": "sub_new"}),
    )

    assert outcome.subscription_id == SUB_ID


def test_invoice_mirror_is_the_last_resort(deliver, billing_repository):
    two_rentals(billing_repository)
    deliver(event("evt_fin", "invoice.finalized", {"id": "in_5", "metadata": {"internal_subscription_id": SUB_ID}}))

    by_mirror = deliver(event("evt_paid", "invoice.paid", {"id": "in_5", "subscription": "sub_gone", "paid": True}))
    by_subscription = deliver(event("evt_again", "invoice.paid", {"id": "in_5", "subscription": "sub_b", "paid": True}))

    assert by_subscription.subscription_id == OTHER_ID
    assert by_mirror.subscription_id == SUB_ID

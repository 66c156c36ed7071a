"""Invoice mirror mapping and provider backfill."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from backend.app.billing import (
    BillingConfig,
    BillingProviderName,
    InvoiceBackfill,
    InvoiceStatus,
    Subscription,
)
from backend.app.billing.backfill import resolve_backfill_limit, resolve_dry_run
from backend.app.billing.invoices import build_invoice_mirror, normalize_invoice_status, resolve_invoice_period
from backend.app.billing.providers import MockPaymentProvider

MOCK = BillingProviderName.MOCK
USER_ID = "6f1c2d9e-3b4a-4c5d-8e7f-1a2b3c4d5e6f"
LINKED_BY_PROVIDER = "3c0d4b52-8f61-4c1e-9a57-2f6d0e1b7a93"
LINKED_BY_METADATA = "7d2e5c41-0a93-4b6f-8e12-5c9a0b3d6f74"


def utc(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@pytest.mark.parametrize(
    "event_type, raw_status, paid, expected",
    [
        ("invoice.payment_failed", "paid", True, InvoiceStatus.PAYMENT_FAILED),
        ("invoice.voided", "open", None, InvoiceStatus.VOID),
        (None, "open", True, InvoiceStatus.PAID),
        (None, "Uncollectible", None, InvoiceStatus.UNCOLLECTIBLE),
        ("invoice.finalized", "draft", False, InvoiceStatus.DRAFT),
        (None, "weird", None, InvoiceStatus.UNKNOWN),
    ],
)
def test_invoice_status_precedence(event_type, raw_status, paid, expected):
    assert normalize_invoice_status(event_type, raw_status, paid) == expected


def test_invoice_period_prefers_direct_fields():
    start, end = resolve_invoice_period({"period_start": 100, "period_end": 200, "lines": {"data": []}})

    assert (start, end) == (utc(100), utc(200))


def test_invoice_period_spans_line_items():
    invoice = {
        "lines": {
            "data": [
                {"period": {"start": 300, "end": 400}},
                {"period": {"start": 100, "end": 250}},
                {"description": "no period"},
            ]
        }
    }

    assert resolve_invoice_period(invoice) == (utc(100), utc(400))


def test_invoice_mirror_maps_amounts_and_links():
    mirror = build_invoice_mirror(
        {
            "id": "in_1",
            "number": "DESK-0001",
            "status": "paid",
            "currency": "MYR",
            "subtotal": 18000,
            "tax": 1440,
            "total": 19440,
            "amount_paid": 19440,
            "amount_due": 0,
            "payment_intent": "pi_1",
            "status_transitions": {"paid_at": 1_768_469_400},
        },
        provider=BillingProviderName.STRIPE,
        subscription_id=LINKED_BY_PROVIDER,
    )

    assert mirror.status == InvoiceStatus.PAID
    assert mirror.currency == "myr"
    assert mirror.subtotal_amount == Decimal("180.00")
    assert mirror.tax_amount == Decimal("14.40")
    assert mirror.amount_due == Decimal("0.00")
    assert mirror.paid_at == utc(1_768_469_400)
    assert mirror.payment_intent_id == "pi_1"
    assert mirror.raw_payload["number"] == "DESK-0001"


def test_invoice_without_id_is_not_mirrored():
    assert build_invoice_mirror({"status": "paid"}, provider=MOCK) is None


def test_backfill_limit_and_dry_run_parsing():
    config = BillingConfig()

    assert resolve_backfill_limit(None, config) == 200
    assert resolve_backfill_limit("50", config) == 50
    assert resolve_backfill_limit("abc", config) == 200
    assert resolve_backfill_limit(5000, config) == 1000
    assert resolve_dry_run(True) is True
    assert resolve_dry_run("true") is False


@pytest.fixture
def provider_invoices():
    return [
        {"id": "in_1", "subscription": "sub_live", "customer": "cus_1", "status": "paid", "total": 19440},
        {
            "id": "in_2",
            "customer": "cus_2",
            "status": "open",
            "subscription_details": {"metadata": {"internal_subscription_id": LINKED_BY_METADATA}},
        },
        {"id": "in_3", "customer": "cus_3", "status": "void"},
        {"id": "in_4", "status": "draft"},
    ]


@pytest.fixture
def seeded_repository(billing_repository):
    billing_repository.add_subscription(
        Subscription(
            id=LINKED_BY_PROVIDER,
            user_id=USER_ID,
            provider_subscription_id="sub_live",
            billing_customer_id="bc-live",
        )
    )
    billing_repository.add_subscription(
        Subscription(id=LINKED_BY_METADATA, user_id=USER_ID, billing_customer_id="bc-meta")
    )
    billing_repository.add_customer("1b4e28ba-2fa1-4d3b-a3f5-ef19b5a7633b", MOCK, "cus_3")
    return billing_repository


def test_backfill_mirrors_and_links_invoices(seeded_repository, provider_invoices):
    backfill = InvoiceBackfill(repository=seeded_repository, provider=MockPaymentProvider(invoices=provider_invoices))

    report = backfill.run(limit=10)

    assert report.provider == MOCK
    assert report.fetched_count == 4
    assert report.mirrored_count == 4
    assert report.linked_subscription_count == 2
    assert report.linked_billing_customer_count == 3
    assert report.unresolved_invoice_ids == ["in_3", "in_4"]
    assert report.unresolved_total == 2
    assert report.has_more_available is False
    assert seeded_repository.invoices[(MOCK, "in_1")].subscription_id == LINKED_BY_PROVIDER
    assert seeded_repository.invoices[(MOCK, "in_2")].billing_customer_id == "bc-meta"
    assert seeded_repository.invoices[(MOCK, "in_3")].status == InvoiceStatus.VOID


def test_backfill_respects_limit(seeded_repository, provider_invoices):
    backfill = InvoiceBackfill(repository=seeded_repository, provider=MockPaymentProvider(invoices=provider_invoices))

    report = backfill.run(limit=2)

    assert report.requested_limit == 2
    assert report.fetched_count == 2
    assert report.has_more_available is True
    assert sorted(invoice_id for _, invoice_id in seeded_repository.invoices) == ["in_1", "in_2"]


def test_backfill_dry_run_writes_nothing(seeded_repository, provider_invoices):
    backfill = InvoiceBackfill(repository=seeded_repository, provider=MockPaymentProvider(invoices=provider_invoices))

    report = backfill.run(dry_run=True)

    assert report.dry_run is True
    assert report.mirrored_count == 0
    assert report.linked_subscription_count == 2
    assert seeded_repository.invoices == {}


def test_backfill_is_rerunnable(seeded_repository, provider_invoices):
    backfill = InvoiceBackfill(repository=seeded_repository, provider=MockPaymentProvider(invoices=provider_invoices))

    backfill.run()
    backfill.run()

    assert len(seeded_repository.invoices) == 4


def test_metadata_subscription_id_wins_over_provider_subscription(seeded_repository):
    invoice = {
        "id": "in_5",
        "subscription": "sub_live",
        "customer": "cus_5",
        "status": "paid",
        "metadata": {"internal_subscription_id": LINKED_BY_METADATA},
    }
    backfill = InvoiceBackfill(repository=seeded_repository, provider=MockPaymentProvider(invoices=[invoice]))

    backfill.run()

    mirror = seeded_repository.invoices[(MOCK, "in_5")]
    assert mirror.subscription_id == LINKED_BY_METADATA
    assert mirror.billing_customer_id == "bc-meta"


def test_provider_subscription_is_used_when_metadata_id_is_unknown(seeded_repository):
    invoice = {
        "id": "in_6",
        "subscription": "sub_live",
        "status": "open",
        "metadata": {"internal_subscription_id": "9b2f4c1e-7d3a-4e8b-a6f5-0c1d2e3f4a5b"},
    }
    backfill = InvoiceBackfill(repository=seeded_repository, provider=MockPaymentProvider(invoices=[invoice]))

    backfill.run()

    assert seeded_repository.invoices[(MOCK, "in_6")].subscription_id == LINKED_BY_PROVIDER

"""Application wiring for the billing services."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..billing import (
    BillingAuditEvent,
    BillingConfig,
    BillingEventLogger,
    BillingService,
    InvoiceBackfill,
    WebhookReconciler,
    load_billing_config,
)
from ..billing.providers import PaymentProvider, create_payment_provider, get_provider_by_name
from ..billing.repository import PostgresBillingRepository
from ..catalog import CatalogService
from ..catalog.repository import PostgresCatalogRepository
from ..fulfillment import FulfillmentService
from ..fulfillment.repository import PostgresFulfillmentRepository

logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s subscription=%s actor=%s metadata=%s",
            event.event_type.value,
            event.subscription_id,
            event.actor_id,
            event.metadata,
            extra={"billing_event": event.event_type.value, "subscription_id": event.subscription_id},
        )


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    config = load_billing_config()
    logger.info("Billing configured %s", config.describe())
    return config


@lru_cache(maxsize=1)
def get_payment_provider() -> PaymentProvider:
    return create_payment_provider(get_billing_config())


def _lookup_provider(name) -> PaymentProvider:
    return get_provider_by_name(name, get_billing_config())


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    return BillingService(
        repository=PostgresBillingRepository(),
        provider=get_payment_provider(),
        fulfillment=FulfillmentService(repository=PostgresFulfillmentRepository()),
        event_logger=LoggingBillingEventLogger(),
        config=get_billing_config(),
        provider_lookup=_lookup_provider,
    )


@lru_cache(maxsize=1)
def get_webhook_reconciler() -> WebhookReconciler:
    return WebhookReconciler(
        repository=PostgresBillingRepository(),
        event_logger=LoggingBillingEventLogger(),
        config=get_billing_config(),
    )


@lru_cache(maxsize=1)
def get_invoice_backfill() -> InvoiceBackfill:
    config = get_billing_config()
    # Invoices always live in Stripe, whatever provider new checkouts use.
    return InvoiceBackfill(
        repository=PostgresBillingRepository(),
        provider=get_provider_by_name("stripe", config),
        config=config,
    )


@lru_cache(maxsize=1)
def get_catalog_service() -> CatalogService:
    return CatalogService(
        repository=PostgresCatalogRepository(),
        provider=get_payment_provider(),
        config=get_billing_config(),
    )


__all__ = [
    "LoggingBillingEventLogger",
    "get_billing_config",
    "get_billing_service",
    "get_catalog_service",
    "get_invoice_backfill",
    "get_payment_provider",
    "get_webhook_reconciler",
]

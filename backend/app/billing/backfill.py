"""Re-runnable backfill of the local invoice mirror from the provider."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import BillingConfig
from .invoices import build_invoice_mirror
from .models import BillingInvoice, InvoiceBackfillReport
from .providers import PaymentProvider
from .service import BillingRepository
from .validation import coerce_uuid, parse_positive_int
from .webhooks import read_string

logger = logging.getLogger("billing")

PROVIDER_PAGE_SIZE = 100
MAX_REPORTED_UNRESOLVED = 20


def resolve_backfill_limit(raw_limit: object, config: BillingConfig) -> int:
    """Requested limit capped at the configured maximum; invalid input uses the default."""

    limit = parse_positive_int(raw_limit)
    if limit is None:
        limit = config.backfill_default_limit
    return min(limit, config.backfill_max_limit)


def resolve_dry_run(raw_dry_run: object) -> bool:
    return raw_dry_run is True


@dataclass
class InvoiceBackfill:
    """Pages provider invoices into the mirror, linking what it can."""

    repository: BillingRepository
    provider: PaymentProvider
    config: BillingConfig = field(default_factory=BillingConfig)

    def run(self, *, limit: object = None, dry_run: object = False) -> InvoiceBackfillReport:
        requested_limit = resolve_backfill_limit(limit, self.config)
        is_dry_run = resolve_dry_run(dry_run)

        fetched: List[Dict[str, Any]] = []
        starting_after: Optional[str] = None
        has_more = False
        while len(fetched) < requested_limit:
            page = self.provider.list_invoices(
                limit=min(PROVIDER_PAGE_SIZE, requested_limit - len(fetched)),
                starting_after=starting_after,
            )
            fetched.extend(page.invoices)
            has_more = page.has_more
            if not page.invoices or not page.has_more:
                break
            starting_after = read_string(page.invoices[-1].get("id"))
            if starting_after is None:
                break

        invoices = self._build_mirrors(fetched)
        mirrored = 0
        if invoices and not is_dry_run:
            mirrored = self.repository.upsert_invoices(invoices)

        unresolved = [invoice.provider_invoice_id for invoice in invoices if invoice.subscription_id is None]
        report = InvoiceBackfillReport(
            provider=self.provider.name,
            dry_run=is_dry_run,
            requested_limit=requested_limit,
            fetched_count=len(fetched),
            mirrored_count=mirrored,
            linked_subscription_count=sum(1 for invoice in invoices if invoice.subscription_id),
            linked_billing_customer_count=sum(1 for invoice in invoices if invoice.billing_customer_id),
            unresolved_invoice_ids=unresolved[:MAX_REPORTED_UNRESOLVED],
            unresolved_total=len(unresolved),
            has_more_available=has_more,
        )
        logger.info(
            "Invoice backfill fetched=%s mirrored=%s unresolved=%s dry_run=%s",
            report.fetched_count,
            report.mirrored_count,
            report.unresolved_total,
            report.dry_run,
        )
        return report

    def _build_mirrors(self, raw_invoices: List[Dict[str, Any]]) -> List[BillingInvoice]:
        provider_name = self.provider.name
        provider_subscription_ids = sorted(
            {value for value in (read_string(raw.get("subscription")) for raw in raw_invoices) if value}
        )
        internal_ids = sorted(
            {value for value in (coerce_uuid(_metadata_subscription_id(raw)) for raw in raw_invoices) if value}
        )
        provider_customer_ids = sorted(
            {value for value in (read_string(raw.get("customer")) for raw in raw_invoices) if value}
        )

        subscriptions = self.repository.list_subscriptions(
            ids=internal_ids,
            provider_subscription_ids=provider_subscription_ids,
        ) if internal_ids or provider_subscription_ids else []
        by_id = {subscription.id: subscription for subscription in subscriptions}
        by_provider_id = {
            subscription.provider_subscription_id: subscription
            for subscription in subscriptions
            if subscription.provider_subscription_id
        }
        customers = self.repository.list_billing_customers_by_provider_ids(
            provider_name,
            provider_customer_ids,
        ) if provider_customer_ids else []
        customer_ids = {customer.provider_customer_id: customer.id for customer in customers}

        mirrors: List[BillingInvoice] = []
        for raw in raw_invoices:
            # Internal id from metadata wins over the provider subscription id.
            provider_subscription_id = read_string(raw.get("subscription"))
            internal_id = coerce_uuid(_metadata_subscription_id(raw))
            subscription = by_id.get(internal_id) if internal_id else None
            if subscription is None and provider_subscription_id:
                subscription = by_provider_id.get(provider_subscription_id)

            billing_customer_id = subscription.billing_customer_id if subscription else None
            if billing_customer_id is None:
                provider_customer_id = read_string(raw.get("customer"))
                billing_customer_id = customer_ids.get(provider_customer_id) if provider_customer_id else None

            mirror = build_invoice_mirror(
                raw,
                provider=provider_name,
                subscription_id=subscription.id if subscription else None,
                provider_subscription_id=provider_subscription_id,
                billing_customer_id=billing_customer_id,
            )
            if mirror is not None:
                mirrors.append(mirror)
        return mirrors


def _metadata_subscription_id(raw: Dict[str, Any]) -> Optional[str]:
    details = raw.get("subscription_details")
    nested = details.get("metadata") if isinstance(details, dict) else None
    for container in (raw.get("metadata"), nested):
        if isinstance(container, dict):
            value = read_string(container.get("internal_subscription_id"))
            if value:
                return value
    return None


__all__ = ["InvoiceBackfill", "resolve_backfill_limit", "resolve_dry_run"]

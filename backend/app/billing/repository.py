"""Persistence layer for billing domain objects."""
from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import psycopg2.extras

from ..storage import PostgresRepository
from .eligibility import CheckoutProfile, CompanyProfile, UserProfile
from .models import (
    BillingCustomer,
    BillingInvoice,
    BillingProviderName,
    BillingWebhookEvent,
    DeliverySnapshot,
    Subscription,
    SubscriptionItem,
    SubscriptionStatus,
    WebhookEventStatus,
)
from .money import format_money

INVOICE_UPSERT_CHUNK_SIZE = 200

_DELIVERY_COLUMNS = {
    "company_name": "delivery_company_name",
    "address": "delivery_address",
    "city": "delivery_city",
    "zip_postal": "delivery_zip_postal",
    "contact_name": "delivery_contact_name",
    "contact_phone": "delivery_contact_phone",
}

# Columns an UPDATE may touch; the delivery snapshot is immutable.
_UPDATABLE_SUBSCRIPTION_COLUMNS = frozenset(
    {
        "status",
        "start_date",
        "end_date",
        "monthly_total",
        "billing_customer_id",
        "provider_subscription_id",
        "provider_checkout_session_id",
        "last_provider_event_at",
    }
)

_INVOICE_COLUMNS = (
    "provider",
    "provider_invoice_id",
    "provider_subscription_id",
    "subscription_id",
    "billing_customer_id",
    "invoice_number",
    "status",
    "currency",
    "subtotal_amount",
    "tax_amount",
    "total_amount",
    "amount_paid",
    "amount_due",
    "hosted_invoice_url",
    "invoice_pdf",
    "payment_intent_id",
    "due_date",
    "paid_at",
    "period_start_at",
    "period_end_at",
    "raw_payload",
)


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _row_to_subscription(row: dict) -> Subscription:
    delivery = None
    if all(row.get(column) for column in _DELIVERY_COLUMNS.values()):
        delivery = DeliverySnapshot(**{field: row[column] for field, column in _DELIVERY_COLUMNS.items()})
    provider = row.get("billing_provider")
    return Subscription(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        bundle_id=_optional_str(row.get("bundle_id")),
        status=SubscriptionStatus(row["status"]),
        subtotal_amount=row.get("subtotal_amount") or 0,
        tax_amount=row.get("tax_amount") or 0,
        monthly_total=row.get("monthly_total") or 0,
        start_date=row.get("start_date"),
        end_date=row.get("end_date"),
        commitment_start_at=row.get("commitment_start_at"),
        commitment_end_at=row.get("commitment_end_at"),
        minimum_term_months=row.get("minimum_term_months"),
        billing_provider=BillingProviderName(provider) if provider else None,
        billing_customer_id=_optional_str(row.get("billing_customer_id")),
        provider_subscription_id=row.get("provider_subscription_id"),
        provider_checkout_session_id=row.get("provider_checkout_session_id"),
        billing_currency=row.get("billing_currency") or "myr",
        checkout_idempotency_key=row.get("checkout_idempotency_key"),
        checkout_request_fingerprint=row.get("checkout_request_fingerprint"),
        delivery=delivery,
        last_provider_event_at=row.get("last_provider_event_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_customer(row: dict) -> BillingCustomer:
    return BillingCustomer(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        provider=BillingProviderName(row["provider"]),
        provider_customer_id=row["provider_customer_id"],
        email=row.get("email"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


def _row_to_webhook_event(row: dict) -> BillingWebhookEvent:
    return BillingWebhookEvent(
        provider=BillingProviderName(row["provider"]),
        event_id=row["event_id"],
        event_type=row["event_type"],
        payload=row.get("payload") or {},
        status=WebhookEventStatus(row["status"]),
        error_message=row.get("error_message"),
        subscription_id=_optional_str(row.get("subscription_id")),
        processed_at=row.get("processed_at"),
        received_at=row["received_at"],
    )


def _invoice_params(invoice: BillingInvoice) -> Dict[str, Any]:
    params = invoice.model_dump()
    params["provider"] = invoice.provider.value
    params["status"] = invoice.status.value
    params["raw_payload"] = psycopg2.extras.Json(invoice.raw_payload, dumps=_json_dumps)
    return params


def _json_dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class PostgresBillingRepository(PostgresRepository):
    """Concrete repository persisting billing models in PostgreSQL."""

    # Subscriptions

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self._fetch_subscription("id = %s", subscription_id)

    def get_subscription_by_idempotency_key(self, key: str) -> Optional[Subscription]:
        return self._fetch_subscription("checkout_idempotency_key = %s", key)

    def find_subscription_by_provider_subscription_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        return self._fetch_subscription("provider_subscription_id = %s", provider_subscription_id)

    def find_subscription_by_checkout_session(self, session_id: str) -> Optional[Subscription]:
        return self._fetch_subscription("provider_checkout_session_id = %s", session_id)

    def _fetch_subscription(self, predicate: str, value: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM subscriptions
                WHERE {predicate}
                LIMIT 1
                """,
                (value,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def list_subscriptions(
        self,
        *,
        ids: Sequence[str] = (),
        provider_subscription_ids: Sequence[str] = (),
    ) -> List[Subscription]:
        if not ids and not provider_subscription_ids:
            return []
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE id::text = ANY(%s) OR provider_subscription_id = ANY(%s)
                """,
                (list(ids), list(provider_subscription_ids)),
            )
            return [_row_to_subscription(row) for row in cursor.fetchall() or []]

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a new subscription; a reused idempotency key raises ``DuplicateKeyError``."""

        delivery = subscription.delivery.model_dump() if subscription.delivery else {}
        params = {
            "id": subscription.id,
            "user_id": subscription.user_id,
            "bundle_id": subscription.bundle_id,
            "status": subscription.status.value,
            "subtotal_amount": subscription.subtotal_amount,
            "tax_amount": subscription.tax_amount,
            "monthly_total": subscription.monthly_total,
            "start_date": subscription.start_date,
            "end_date": subscription.end_date,
            "commitment_start_at": subscription.commitment_start_at,
            "commitment_end_at": subscription.commitment_end_at,
            "minimum_term_months": subscription.minimum_term_months,
            "billing_provider": subscription.billing_provider.value if subscription.billing_provider else None,
            "billing_customer_id": subscription.billing_customer_id,
            "billing_currency": subscription.billing_currency,
            "checkout_idempotency_key": subscription.checkout_idempotency_key,
            "checkout_request_fingerprint": subscription.checkout_request_fingerprint,
        }
        params.update({column: delivery.get(field) for field, column in _DELIVERY_COLUMNS.items()})
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscriptions (
                    id,
                    user_id,
                    bundle_id,
                    status,
                    subtotal_amount,
                    tax_amount,
                    monthly_total,
                    start_date,
                    end_date,
                    commitment_start_at,
                    commitment_end_at,
                    minimum_term_months,
                    billing_provider,
                    billing_customer_id,
                    billing_currency,
                    checkout_idempotency_key,
                    checkout_request_fingerprint,
                    delivery_company_name,
                    delivery_address,
                    delivery_city,
                    delivery_zip_postal,
                    delivery_contact_name,
                    delivery_contact_phone
                )
                VALUES (%(id)s, %(user_id)s, %(bundle_id)s, %(status)s, %(subtotal_amount)s,
                        %(tax_amount)s, %(monthly_total)s, %(start_date)s, %(end_date)s,
                        %(commitment_start_at)s, %(commitment_end_at)s, %(minimum_term_months)s,
                        %(billing_provider)s, %(billing_customer_id)s, %(billing_currency)s,
                        %(checkout_idempotency_key)s, %(checkout_request_fingerprint)s,
                        %(delivery_company_name)s, %(delivery_address)s, %(delivery_city)s,
                        %(delivery_zip_postal)s, %(delivery_contact_name)s, %(delivery_contact_phone)s)
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def update_subscription(self, subscription_id: str, changes: Mapping[str, Any]) -> Optional[Subscription]:
        unknown = set(changes) - _UPDATABLE_SUBSCRIPTION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update subscription columns: {', '.join(sorted(unknown))}")
        if not changes:
            return self.get_subscription(subscription_id)

        assignments = ", ".join(f"{column} = %({column})s" for column in sorted(changes))
        params = {
            column: value.value if isinstance(value, SubscriptionStatus) else value
            for column, value in changes.items()
        }
        params["subscription_id"] = subscription_id
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE subscriptions
                SET {assignments},
                    updated_at = NOW()
                WHERE id = %(subscription_id)s
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def insert_subscription_items(self, items: Sequence[SubscriptionItem]) -> None:
        if not items:
            return
        with self._cursor() as cursor:
            psycopg2.extras.execute_values(
                cursor,
                """
                INSERT INTO subscription_items (
                    subscription_id,
                    product_id,
                    product_name,
                    category,
                    monthly_price,
                    duration_months,
                    quantity
                )
                VALUES %s
                """,
                [
                    (
                        item.subscription_id,
                        item.product_id,
                        item.product_name,
                        item.category,
                        item.monthly_price,
                        item.duration_months,
                        item.quantity,
                    )
                    for item in items
                ],
            )

    # Customers and profiles

    def get_checkout_profile(self, user_id: str) -> Optional[CheckoutProfile]:
        """Return the buyer's email, profile and company; ``None`` for unknown users."""

        with self._cursor() as cursor:
            cursor.execute("SELECT id, email FROM users WHERE id = %s LIMIT 1", (user_id,))
            user_row = cursor.fetchone()
            if not user_row:
                return None
            cursor.execute(
                "SELECT full_name, job_title, phone_number FROM profiles WHERE id = %s LIMIT 1",
                (user_id,),
            )
            profile_row = cursor.fetchone()
            cursor.execute(
                """
                SELECT company_name, registration_number, address, office_city, office_zip_postal,
                       delivery_address, delivery_city, delivery_zip_postal, industry, team_size
                FROM companies
                WHERE profile_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            company_row = cursor.fetchone()
        return CheckoutProfile(
            user_id=str(user_row["id"]),
            email=user_row.get("email"),
            profile=UserProfile(**profile_row) if profile_row else None,
            company=CompanyProfile(**company_row) if company_row else None,
        )

    def get_billing_customer(self, user_id: str, provider: BillingProviderName) -> Optional[BillingCustomer]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_customers
                WHERE user_id = %s AND provider = %s
                LIMIT 1
                """,
                (user_id, provider.value),
            )
            row = cursor.fetchone()
            return _row_to_customer(row) if row else None

    def insert_billing_customer(self, customer: BillingCustomer) -> BillingCustomer:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_customers (id, user_id, provider, provider_customer_id, email, metadata)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    customer.id,
                    customer.user_id,
                    customer.provider.value,
                    customer.provider_customer_id,
                    customer.email,
                    psycopg2.extras.Json(customer.metadata),
                ),
            )
            return _row_to_customer(cursor.fetchone())

    def list_billing_customers_by_provider_ids(
        self,
        provider: BillingProviderName,
        provider_customer_ids: Iterable[str],
    ) -> List[BillingCustomer]:
        ids = list(provider_customer_ids)
        if not ids:
            return []
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_customers
                WHERE provider = %s AND provider_customer_id = ANY(%s)
                """,
                (provider.value, ids),
            )
            return [_row_to_customer(row) for row in cursor.fetchall() or []]

    def get_catalog_price_map(self, provider: BillingProviderName, currency: str) -> Dict[str, str]:
        """Map ``product_id:amount`` to the active provider price id."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT product_id, unit_amount, provider_price_id
                FROM billing_catalog_prices
                WHERE provider = %s AND currency = %s AND is_active = TRUE
                ORDER BY created_at DESC
                """,
                (provider.value, currency),
            )
            price_map: Dict[str, str] = {}
            for row in cursor.fetchall() or []:
                key = f"{row['product_id']}:{format_money(row['unit_amount'])}"
                price_map.setdefault(key, row["provider_price_id"])
            return price_map

    # Webhook ledger

    def get_webhook_event(self, provider: BillingProviderName, event_id: str) -> Optional[BillingWebhookEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_webhook_events
                WHERE provider = %s AND event_id = %s
                LIMIT 1
                """,
                (provider.value, event_id),
            )
            row = cursor.fetchone()
            return _row_to_webhook_event(row) if row else None

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (
                    provider,
                    event_id,
                    event_type,
                    payload,
                    status,
                    received_at
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (provider, event_id) DO NOTHING
                """,
                (
                    event.provider.value,
                    event.event_id,
                    event.event_type,
                    psycopg2.extras.Json(event.payload),
                    event.status.value,
                    event.received_at,
                ),
            )
            return cursor.rowcount > 0

    def mark_webhook_event_processed(
        self,
        provider: BillingProviderName,
        event_id: str,
        *,
        subscription_id: Optional[str],
    ) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_webhook_events
                SET status = %s,
                    subscription_id = %s,
                    processed_at = NOW(),
                    error_message = NULL
                WHERE provider = %s AND event_id = %s
                """,
                (WebhookEventStatus.PROCESSED.value, subscription_id, provider.value, event_id),
            )

    def mark_webhook_event_failed(
        self,
        provider: BillingProviderName,
        event_id: str,
        *,
        error_message: str,
    ) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_webhook_events
                SET status = %s,
                    error_message = %s
                WHERE provider = %s AND event_id = %s
                """,
                (WebhookEventStatus.FAILED.value, error_message[:1000], provider.value, event_id),
            )

    # Invoices

    def find_invoice_subscription_id(self, provider: BillingProviderName, provider_invoice_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT subscription_id
                FROM billing_invoices
                WHERE provider = %s AND provider_invoice_id = %s
                LIMIT 1
                """,
                (provider.value, provider_invoice_id),
            )
            row = cursor.fetchone()
            return _optional_str(row["subscription_id"]) if row else None

    def upsert_invoices(self, invoices: Sequence[BillingInvoice]) -> int:
        """Upsert keyed by (provider, provider_invoice_id) in chunks."""

        if not invoices:
            return 0
        columns = ", ".join(_INVOICE_COLUMNS)
        placeholders = ", ".join(f"%({column})s" for column in _INVOICE_COLUMNS)
        updates = ",\n                    ".join(
            f"{column} = EXCLUDED.{column}"
            for column in _INVOICE_COLUMNS
            if column not in {"provider", "provider_invoice_id"}
        )
        written = 0
        for start in range(0, len(invoices), INVOICE_UPSERT_CHUNK_SIZE):
            chunk = invoices[start:start + INVOICE_UPSERT_CHUNK_SIZE]
            with self._cursor() as cursor:
                cursor.executemany(
                    f"""
                    INSERT INTO billing_invoices ({columns})
                    VALUES ({placeholders})
                    ON CONFLICT (provider, provider_invoice_id) DO UPDATE SET
                        {updates},
                        updated_at = NOW()
                    """,
                    [_invoice_params(invoice) for invoice in chunk],
                )
            written += len(chunk)
        return written


__all__ = ["INVOICE_UPSERT_CHUNK_SIZE", "PostgresBillingRepository"]

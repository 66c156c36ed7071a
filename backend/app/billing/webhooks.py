"""Webhook signature verification and event parsing."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import stripe
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import BillingValidationError, WebhookSignatureError

logger = logging.getLogger("billing")

DEFAULT_TOLERANCE_SECONDS = 300


class WebhookEventType(str, Enum):
    """Provider event types with a lifecycle side effect."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    UNHANDLED = "unhandled"

    @classmethod
    def from_raw(cls, raw_type: str) -> "WebhookEventType":
        try:
            return cls(raw_type)
        except ValueError:
            return cls.UNHANDLED


SUBSCRIPTION_LIFECYCLE_EVENTS = frozenset(
    {
        WebhookEventType.SUBSCRIPTION_CREATED,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        WebhookEventType.SUBSCRIPTION_DELETED,
    }
)


class SubscriptionReferences(BaseModel):
    """Identifiers an event carries that can locate a local subscription."""

    internal_subscription_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    provider_checkout_session_id: Optional[str] = None
    provider_invoice_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ProviderEvent(BaseModel):
    """Parsed provider webhook envelope."""

    id: str
    type: str
    created: Optional[datetime] = None
    data_object: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def kind(self) -> WebhookEventType:
        return WebhookEventType.from_raw(self.type)

    @property
    def is_invoice_event(self) -> bool:
        return self.type.startswith("invoice.")

    @property
    def metadata(self) -> Dict[str, Any]:
        metadata = self.data_object.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    def references(self) -> SubscriptionReferences:
        obj = self.data_object
        if self.type.startswith("customer.subscription"):
            provider_subscription_id = read_string(obj.get("id"))
        else:
            provider_subscription_id = read_string(obj.get("subscription"))
        return SubscriptionReferences(
            internal_subscription_id=read_string(self.metadata.get("internal_subscription_id")),
            provider_subscription_id=provider_subscription_id,
            provider_checkout_session_id=(
                read_string(obj.get("id")) if self.type.startswith("checkout.session") else None
            ),
            provider_invoice_id=read_string(obj.get("id")) if self.is_invoice_event else None,
        )


def read_string(value: object) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def read_number(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def from_unix_timestamp(value: object) -> Optional[datetime]:
    seconds = read_number(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def verify_webhook_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> None:
    """Raise :class:`WebhookSignatureError` unless the header signs ``payload``."""

    if not header:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            header,
            secret,
            tolerance=tolerance_seconds,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        logger.warning("Rejected Stripe webhook signature: %s", exc)
        raise WebhookSignatureError("Invalid Stripe webhook signature") from exc


def parse_webhook_event(payload: bytes) -> ProviderEvent:
    try:
        document = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BillingValidationError("Invalid webhook JSON payload") from exc
    if not isinstance(document, dict):
        raise BillingValidationError("Invalid webhook JSON payload")

    event_id = read_string(document.get("id"))
    event_type = read_string(document.get("type"))
    if not event_id or not event_type:
        raise BillingValidationError("Webhook event id and type are required")

    data = document.get("data")
    data_object = data.get("object") if isinstance(data, dict) else None
    return ProviderEvent(
        id=event_id,
        type=event_type,
        created=from_unix_timestamp(document.get("created")),
        data_object=data_object if isinstance(data_object, dict) else {},
        payload=document,
    )


__all__ = [
    "DEFAULT_TOLERANCE_SECONDS",
    "ProviderEvent",
    "SUBSCRIPTION_LIFECYCLE_EVENTS",
    "SubscriptionReferences",
    "WebhookEventType",
    "from_unix_timestamp",
    "parse_webhook_event",
    "read_number",
    "read_string",
    "verify_webhook_signature",
]

"""Billing domain package: checkout idempotency, webhook reconciliation and invoice mirroring."""

from .backfill import InvoiceBackfill
from .config import BillingConfig, load_billing_config
from .exceptions import (
    BillingError,
    BillingNotFoundError,
    BillingValidationError,
    CheckoutInProgressError,
    CodeAllocationError,
    IdempotencyConflictError,
    PersistenceError,
    ProfileIncompleteError,
    ProviderError,
    TransitionNotAllowedError,
    WebhookSignatureError,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingCustomer,
    BillingInvoice,
    BillingProviderName,
    BillingWebhookEvent,
    CancellationOutcome,
    CheckoutResult,
    InvoiceBackfillReport,
    InvoiceStatus,
    Subscription,
    SubscriptionStatus,
    WebhookOutcome,
)
from .reconciler import WebhookReconciler
from .service import (
    BillingEventLogger,
    BillingRepository,
    BillingService,
    CheckoutRequest,
    SubscriptionUpdate,
)

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingConfig",
    "BillingCustomer",
    "BillingError",
    "BillingEventLogger",
    "BillingInvoice",
    "BillingNotFoundError",
    "BillingProviderName",
    "BillingRepository",
    "BillingService",
    "BillingValidationError",
    "BillingWebhookEvent",
    "CancellationOutcome",
    "CheckoutInProgressError",
    "CheckoutRequest",
    "CheckoutResult",
    "CodeAllocationError",
    "IdempotencyConflictError",
    "InvoiceBackfill",
    "InvoiceBackfillReport",
    "InvoiceStatus",
    "PersistenceError",
    "ProfileIncompleteError",
    "ProviderError",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionUpdate",
    "TransitionNotAllowedError",
    "WebhookOutcome",
    "WebhookReconciler",
    "WebhookSignatureError",
    "load_billing_config",
]

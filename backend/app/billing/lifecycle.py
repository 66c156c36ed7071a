"""Subscription status state machine and provider status mapping."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from .models import Subscription, SubscriptionStatus

S = SubscriptionStatus

PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": S.ACTIVE,
    "trialing": S.ACTIVE,
    "past_due": S.PAYMENT_FAILED,
    "unpaid": S.PAYMENT_FAILED,
    "incomplete": S.PENDING_PAYMENT,
    "incomplete_expired": S.PENDING_PAYMENT,
    "canceled": S.CANCELLED,
    "paused": S.PENDING_PAYMENT,
}

# Cancelled and completed are terminal.
ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.PENDING: frozenset({S.PENDING_PAYMENT, S.INCOMPLETE, S.PAYMENT_FAILED, S.ACTIVE, S.CANCELLED}),
    S.PENDING_PAYMENT: frozenset({S.PENDING, S.INCOMPLETE, S.PAYMENT_FAILED, S.ACTIVE, S.CANCELLED}),
    S.INCOMPLETE: frozenset({S.PENDING_PAYMENT, S.PAYMENT_FAILED, S.ACTIVE, S.CANCELLED}),
    S.PAYMENT_FAILED: frozenset({S.PENDING_PAYMENT, S.ACTIVE, S.CANCELLED}),
    S.ACTIVE: frozenset({S.PENDING_PAYMENT, S.PAYMENT_FAILED, S.CANCELLED, S.COMPLETED}),
    S.CANCELLED: frozenset(),
    S.COMPLETED: frozenset(),
}

def map_provider_subscription_status(provider_status: Optional[str]) -> SubscriptionStatus:
    """Map a provider subscription status onto the local status set."""

    if not provider_status:
        return S.PENDING_PAYMENT
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower(), S.PENDING_PAYMENT)


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def resolve_lifecycle_end_date(
    subscription: Subscription,
    provider_period_end: Optional[datetime],
) -> Optional[datetime]:
    """A persisted end date outranks the commitment end, which outranks the provider period."""

    if subscription.end_date is not None:
        return subscription.end_date
    if subscription.commitment_end_at is not None:
        return subscription.commitment_end_at
    return provider_period_end


def is_stale_event(subscription: Subscription, event_created_at: Optional[datetime]) -> bool:
    """``True`` when a newer lifecycle event has already been applied."""

    if event_created_at is None or subscription.last_provider_event_at is None:
        return False
    return event_created_at < subscription.last_provider_event_at


__all__ = [
    "ALLOWED_TRANSITIONS",
    "PROVIDER_STATUS_MAP",
    "can_transition",
    "is_stale_event",
    "map_provider_subscription_status",
    "resolve_lifecycle_end_date",
]

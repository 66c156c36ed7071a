"""Fulfillment records tracked alongside billing."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ServiceState(str, Enum):
    """Operational state of the rented furniture at the customer site."""

    PENDING = "pending"
    ACTIVE = "active"
    OFFBOARDING_REQUESTED = "offboarding_requested"
    CLOSED = "closed"


class CollectionStatus(str, Enum):
    NOT_COLLECTED = "not_collected"
    SCHEDULED = "scheduled"
    COLLECTED = "collected"


class DeliveryOrderStatus(str, Enum):
    CONFIRMED = "confirmed"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"


class SubscriptionFulfillment(BaseModel):
    subscription_id: str
    service_state: ServiceState
    collection_status: CollectionStatus = CollectionStatus.NOT_COLLECTED
    first_delivery_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "CollectionStatus",
    "DeliveryOrderStatus",
    "ServiceState",
    "SubscriptionFulfillment",
]

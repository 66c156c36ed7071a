"""Service-state tracking for rented furniture."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from ..storage import DuplicateKeyError
from .models import CollectionStatus, DeliveryOrderStatus, ServiceState, SubscriptionFulfillment

logger = logging.getLogger(__name__)

_OFFBOARDING_NOOP_STATES = frozenset({ServiceState.OFFBOARDING_REQUESTED, ServiceState.CLOSED})


class FulfillmentRepository(Protocol):
    def get_fulfillment(self, subscription_id: str) -> Optional[SubscriptionFulfillment]:
        ...

    def insert_fulfillment(self, fulfillment: SubscriptionFulfillment) -> SubscriptionFulfillment:
        ...

    def update_service_state(
        self,
        subscription_id: str,
        service_state: ServiceState,
    ) -> Optional[SubscriptionFulfillment]:
        ...

    def create_delivery_order(self, subscription_id: str, status: DeliveryOrderStatus) -> None:
        ...


@dataclass
class FulfillmentService:
    """Keeps the physical side of a rental in step with billing."""

    repository: FulfillmentRepository

    def mark_offboarding_requested(self, subscription_id: str) -> ServiceState:
        """Flag the rental for collection; repeat calls are no-ops."""

        current = self.repository.get_fulfillment(subscription_id)
        if current is None:
            try:
                created = self.repository.insert_fulfillment(
                    SubscriptionFulfillment(
                        subscription_id=subscription_id,
                        service_state=ServiceState.OFFBOARDING_REQUESTED,
                        collection_status=CollectionStatus.NOT_COLLECTED,
                    )
                )
                return created.service_state
            except DuplicateKeyError:
                # Lost the insert race; fall through and read the winner.
                current = self.repository.get_fulfillment(subscription_id)
                if current is None:
                    raise

        if current.service_state in _OFFBOARDING_NOOP_STATES:
            return current.service_state

        updated = self.repository.update_service_state(subscription_id, ServiceState.OFFBOARDING_REQUESTED)
        if updated is None:
            raise RuntimeError("Failed to update fulfillment service state")
        logger.info("Offboarding requested for subscription %s", subscription_id)
        return updated.service_state

    def initialize_delivery_order(self, subscription_id: str) -> bool:
        """Create the confirmed delivery order; ``False`` when it already exists."""

        try:
            self.repository.create_delivery_order(subscription_id, DeliveryOrderStatus.CONFIRMED)
        except DuplicateKeyError:
            return False
        return True


__all__ = ["FulfillmentRepository", "FulfillmentService"]

"""Fulfillment domain package tracking delivery and offboarding."""

from .models import CollectionStatus, DeliveryOrderStatus, ServiceState, SubscriptionFulfillment
from .service import FulfillmentRepository, FulfillmentService

__all__ = [
    "CollectionStatus",
    "DeliveryOrderStatus",
    "FulfillmentRepository",
    "FulfillmentService",
    "ServiceState",
    "SubscriptionFulfillment",
]

"""Persistence for fulfillment state and delivery orders."""
from __future__ import annotations

from typing import Optional

from ..storage import PostgresRepository
from .models import CollectionStatus, DeliveryOrderStatus, ServiceState, SubscriptionFulfillment


def _row_to_fulfillment(row: dict) -> SubscriptionFulfillment:
    return SubscriptionFulfillment(
        subscription_id=str(row["subscription_id"]),
        service_state=ServiceState(row["service_state"]),
        collection_status=CollectionStatus(row.get("collection_status") or CollectionStatus.NOT_COLLECTED.value),
        first_delivery_at=row.get("first_delivery_at"),
        updated_at=row["updated_at"],
    )


class PostgresFulfillmentRepository(PostgresRepository):
    """Stores subscription fulfillment rows and delivery orders in PostgreSQL."""

    def get_fulfillment(self, subscription_id: str) -> Optional[SubscriptionFulfillment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscription_fulfillment
                WHERE subscription_id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_fulfillment(row) if row else None

    def insert_fulfillment(self, fulfillment: SubscriptionFulfillment) -> SubscriptionFulfillment:
        """Insert a fulfillment row; raises ``DuplicateKeyError`` when one exists."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_fulfillment (
                    subscription_id,
                    service_state,
                    collection_status,
                    first_delivery_at
                )
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (
                    fulfillment.subscription_id,
                    fulfillment.service_state.value,
                    fulfillment.collection_status.value,
                    fulfillment.first_delivery_at,
                ),
            )
            return _row_to_fulfillment(cursor.fetchone())

    def update_service_state(
        self,
        subscription_id: str,
        service_state: ServiceState,
    ) -> Optional[SubscriptionFulfillment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscription_fulfillment
                SET service_state = %s,
                    updated_at = NOW()
                WHERE subscription_id = %s
                RETURNING *
                """,
                (service_state.value, subscription_id),
            )
            row = cursor.fetchone()
            return _row_to_fulfillment(row) if row else None

    def create_delivery_order(self, subscription_id: str, status: DeliveryOrderStatus) -> None:
        """Insert the delivery order; raises ``DuplicateKeyError`` when one exists."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO delivery_orders (subscription_id, do_status)
                VALUES (%s, %s)
                """,
                (subscription_id, status.value),
            )


__all__ = ["PostgresFulfillmentRepository"]

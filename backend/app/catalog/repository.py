"""PostgreSQL persistence for products and catalog price mappings."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

import psycopg2.extras

from ..billing.models import BillingProviderName
from ..storage import PostgresRepository
from .codes import parse_product_code_number
from .models import CatalogPrice, Product, ProductDraft, ProductStatus

_PRODUCT_INSERT = """
    INSERT INTO products (
        product_code,
        name,
        description,
        category,
        monthly_price,
        image_url,
        video_url,
        stock_quantity,
        status,
        is_active,
        published_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    RETURNING *
"""


def _row_to_product(row: dict) -> Product:
    return Product(
        id=str(row["id"]),
        product_code=row["product_code"],
        name=row["name"],
        description=row.get("description"),
        category=row["category"],
        monthly_price=row["monthly_price"],
        stock_quantity=row.get("stock_quantity") or 0,
        status=ProductStatus(row.get("status") or ProductStatus.DRAFT.value),
        is_active=bool(row.get("is_active")),
        image_url=row.get("image_url"),
        video_url=row.get("video_url"),
        published_at=row.get("published_at"),
        created_at=row["created_at"],
    )


def _row_to_catalog_price(row: dict) -> CatalogPrice:
    return CatalogPrice(
        product_id=str(row["product_id"]),
        provider=BillingProviderName(row["provider"]),
        provider_product_id=row["provider_product_id"],
        provider_price_id=row["provider_price_id"],
        currency=row["currency"],
        unit_amount=row["unit_amount"],
        interval=row.get("interval") or "month",
        interval_count=row.get("interval_count") or 1,
        is_active=bool(row.get("is_active")),
        created_at=row["created_at"],
    )


def _product_params(draft: ProductDraft, product_code: str, now: datetime) -> Tuple:
    return (
        product_code,
        draft.name,
        draft.description,
        draft.category,
        draft.monthly_price,
        draft.image_url,
        draft.video_url,
        draft.stock_quantity,
        draft.status.value,
        draft.is_active,
        now if draft.is_active else None,
    )


class PostgresCatalogRepository(PostgresRepository):
    """Products, product codes and provider price mappings."""

    def generate_product_code(self, category_code: str) -> Optional[str]:
        with self._cursor(function="generate_product_code") as cursor:
            cursor.execute("SELECT generate_product_code(%s) AS product_code", (category_code,))
            row = cursor.fetchone()
            return row["product_code"] if row else None

    def max_product_code_number(self, category_code: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT product_code
                FROM products
                WHERE product_code LIKE %s
                ORDER BY product_code DESC
                LIMIT 1
                """,
                (f"{category_code}-%",),
            )
            row = cursor.fetchone()
        return parse_product_code_number(row["product_code"], category_code) if row else 0

    def insert_product(self, draft: ProductDraft, product_code: str) -> Product:
        """Insert one product; a taken code raises ``DuplicateKeyError``."""

        with self._cursor() as cursor:
            cursor.execute(_PRODUCT_INSERT, _product_params(draft, product_code, datetime.now(timezone.utc)))
            return _row_to_product(cursor.fetchone())

    def insert_products(self, drafts: Sequence[ProductDraft], product_codes: Sequence[str]) -> List[Product]:
        """Insert a batch in one transaction; any failure leaves nothing behind."""

        now = datetime.now(timezone.utc)
        created: List[Product] = []
        with self._cursor() as cursor:
            for draft, product_code in zip(drafts, product_codes):
                cursor.execute(_PRODUCT_INSERT, _product_params(draft, product_code, now))
                created.append(_row_to_product(cursor.fetchone()))
        return created

    def list_active_products(self, product_ids: Sequence[str] = ()) -> List[Product]:
        with self._cursor() as cursor:
            if product_ids:
                cursor.execute(
                    """
                    SELECT *
                    FROM products
                    WHERE is_active = TRUE AND id::text = ANY(%s)
                    ORDER BY name ASC
                    """,
                    (list(product_ids),),
                )
            else:
                cursor.execute("SELECT * FROM products WHERE is_active = TRUE ORDER BY name ASC")
            return [_row_to_product(row) for row in cursor.fetchall() or []]

    def list_catalog_prices(
        self,
        provider: BillingProviderName,
        product_ids: Sequence[str],
    ) -> List[CatalogPrice]:
        """Mappings for ``product_ids``, newest first."""

        if not product_ids:
            return []
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_catalog_prices
                WHERE provider = %s AND product_id::text = ANY(%s)
                ORDER BY created_at DESC
                """,
                (provider.value, list(product_ids)),
            )
            return [_row_to_catalog_price(row) for row in cursor.fetchall() or []]

    def insert_catalog_price(self, price: CatalogPrice) -> CatalogPrice:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_catalog_prices (
                    product_id,
                    provider,
                    provider_product_id,
                    provider_price_id,
                    currency,
                    unit_amount,
                    interval,
                    interval_count,
                    is_active,
                    metadata
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    price.product_id,
                    price.provider.value,
                    price.provider_product_id,
                    price.provider_price_id,
                    price.currency,
                    price.unit_amount,
                    price.interval,
                    price.interval_count,
                    price.is_active,
                    psycopg2.extras.Json({"source": "catalog-sync"}),
                ),
            )
            return _row_to_catalog_price(cursor.fetchone())


__all__ = ["PostgresCatalogRepository"]

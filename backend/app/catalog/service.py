"""Product creation with unique codes and provider price synchronisation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Protocol, Sequence
from urllib.parse import urlparse

from ..billing.config import BillingConfig
from ..billing.exceptions import BillingValidationError
from ..billing.models import BillingProviderName
from ..billing.money import format_money, parse_money, to_money
from ..billing.providers import CatalogPriceRequest, PaymentProvider
from ..billing.validation import coerce_uuid, parse_optional_text
from ..storage import DuplicateKeyError
from .codes import BatchCodeAllocator, ProductCodeStore, allocate_product_code, insert_with_unique_code, normalize_category
from .models import (
    CatalogPrice,
    CatalogSyncReport,
    CatalogSyncResult,
    Product,
    ProductDraft,
    ProductStatus,
    SyncAction,
)

logger = logging.getLogger(__name__)

PRODUCT_CREATE_ATTEMPTS = 5
PRODUCT_IMPORT_ATTEMPTS = 3


class CatalogRepository(ProductCodeStore, Protocol):
    def insert_product(self, draft: ProductDraft, product_code: str) -> Product:
        ...

    def insert_products(self, drafts: Sequence[ProductDraft], product_codes: Sequence[str]) -> List[Product]:
        ...

    def list_active_products(self, product_ids: Sequence[str] = ()) -> List[Product]:
        ...

    def list_catalog_prices(self, provider: BillingProviderName, product_ids: Sequence[str]) -> List[CatalogPrice]:
        ...

    def insert_catalog_price(self, price: CatalogPrice) -> CatalogPrice:
        ...


def _is_http_url(value: Optional[str]) -> bool:
    if not value:
        return True
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _parse_stock(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _to_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return False


def product_errors(raw: Mapping[str, Any]) -> List[str]:
    """Validation problems with a raw product payload, in field order."""

    errors: List[str] = []
    if parse_optional_text(raw.get("name")) is None:
        errors.append("name is required")
    if normalize_category(raw.get("category")) is None:
        errors.append("category is invalid")
    price = parse_money(raw.get("monthly_price"))
    if price is None or price <= 0:
        errors.append("monthly_price must be a positive number")
    if _parse_stock(raw.get("stock_quantity", 0)) is None:
        errors.append("stock_quantity must be an integer greater than or equal to 0")
    if not _is_http_url(parse_optional_text(raw.get("image_url"))):
        errors.append("image_url must be a valid HTTP(S) URL")
    if not _is_http_url(parse_optional_text(raw.get("video_url"))):
        errors.append("video_url must be a valid HTTP(S) URL")
    status = raw.get("status")
    if status is not None and parse_optional_text(status) not in {member.value for member in ProductStatus}:
        errors.append("status is invalid")
    return errors


def build_product_draft(raw: Mapping[str, Any], *, status: Optional[ProductStatus] = None) -> ProductDraft:
    """Build a draft from a payload already checked by :func:`product_errors`."""

    category, category_code = normalize_category(raw.get("category"))  # type: ignore[misc]
    return ProductDraft(
        name=parse_optional_text(raw.get("name")) or "",
        description=parse_optional_text(raw.get("description")),
        category=category,
        category_code=category_code,
        monthly_price=to_money(parse_money(raw.get("monthly_price")) or Decimal("0")),
        stock_quantity=_parse_stock(raw.get("stock_quantity", 0)) or 0,
        status=status or ProductStatus(parse_optional_text(raw.get("status")) or ProductStatus.DRAFT.value),
        image_url=parse_optional_text(raw.get("image_url")),
        video_url=parse_optional_text(raw.get("video_url")),
    )


@dataclass
class CatalogService:
    repository: CatalogRepository
    provider: PaymentProvider
    config: BillingConfig = field(default_factory=BillingConfig)

    def create_product(self, raw: Mapping[str, Any]) -> Product:
        errors = product_errors(raw)
        if errors:
            raise BillingValidationError(errors[0], detail={"errors": errors})
        draft = build_product_draft(raw)

        product = insert_with_unique_code(
            lambda: allocate_product_code(self.repository, draft.category_code),
            lambda code: self.repository.insert_product(draft, code),
            attempts=PRODUCT_CREATE_ATTEMPTS,
        )
        logger.info("Created product %s (%s)", product.product_code, product.id)
        return product

    def import_products(self, rows: Sequence[Mapping[str, Any]]) -> List[Product]:
        """All-or-nothing import of already-parsed rows; imported products start as drafts."""

        if not rows:
            raise BillingValidationError("Import must include at least one row")
        errors = [
            f"Row {index}: {problem}"
            for index, row in enumerate(rows, start=1)
            for problem in product_errors(row)
            if not problem.startswith("status")
        ]
        if errors:
            raise BillingValidationError("Import validation failed", detail={"errors": errors})
        drafts = [build_product_draft(row, status=ProductStatus.DRAFT) for row in rows]
        category_codes = [draft.category_code for draft in drafts]

        products = insert_with_unique_code(
            lambda: BatchCodeAllocator(self.repository).allocate(category_codes),
            lambda codes: self.repository.insert_products(drafts, codes),
            attempts=PRODUCT_IMPORT_ATTEMPTS,
            failure_message="Failed to generate unique product codes for import. Please retry.",
        )
        logger.info("Imported %s products", len(products))
        return products

    def sync_catalog_prices(
        self,
        *,
        product_ids: object = None,
        currency: object = None,
        dry_run: object = False,
    ) -> CatalogSyncReport:
        """Create provider prices for active products lacking an exact active match."""

        provider_name = self.provider.name
        resolved_currency = (parse_optional_text(currency) or self.config.currency).lower()
        is_dry_run = _to_bool(dry_run)
        requested_ids = [
            value for value in (coerce_uuid(entry) for entry in (product_ids if isinstance(product_ids, list) else []))
            if value
        ]

        products = self.repository.list_active_products(requested_ids)
        if not products:
            return CatalogSyncReport(provider=provider_name, dry_run=is_dry_run)

        existing = self.repository.list_catalog_prices(provider_name, [product.id for product in products])
        results: List[CatalogSyncResult] = []
        for product in products:
            if product.monthly_price <= 0:
                raise BillingValidationError(f"Product {product.id} has invalid monthly_price")
            rows = [price for price in existing if price.product_id == product.id]
            exact = next(
                (
                    price
                    for price in rows
                    if price.is_active
                    and price.currency == resolved_currency
                    and format_money(price.unit_amount) == format_money(product.monthly_price)
                ),
                None,
            )
            if exact is not None:
                results.append(
                    CatalogSyncResult(
                        product_id=product.id,
                        product_name=product.name,
                        action=SyncAction.SKIPPED,
                        provider_product_id=exact.provider_product_id,
                        provider_price_id=exact.provider_price_id,
                        unit_amount=exact.unit_amount,
                        currency=exact.currency,
                    )
                )
                continue

            latest_product_id = next((price.provider_product_id for price in rows if price.provider_product_id), None)
            if is_dry_run:
                results.append(
                    CatalogSyncResult(
                        product_id=product.id,
                        product_name=product.name,
                        action=SyncAction.CREATED,
                        provider_product_id=latest_product_id or f"pending_{product.id}",
                        provider_price_id=f"pending_price_{product.id}",
                        unit_amount=product.monthly_price,
                        currency=resolved_currency,
                    )
                )
                continue

            created = self.provider.ensure_catalog_price(
                CatalogPriceRequest(
                    internal_product_id=product.id,
                    existing_provider_product_id=latest_product_id,
                    name=product.name,
                    description=product.description,
                    currency=resolved_currency,
                    monthly_unit_amount=product.monthly_price,
                    metadata={"source": "catalog-sync"},
                )
            )
            mapping = CatalogPrice(
                product_id=product.id,
                provider=provider_name,
                provider_product_id=created.provider_product_id,
                provider_price_id=created.provider_price_id,
                currency=created.currency,
                unit_amount=created.unit_amount,
                interval=created.interval,
                interval_count=created.interval_count,
            )
            try:
                self.repository.insert_catalog_price(mapping)
            except DuplicateKeyError:
                logger.info("Catalog price %s already recorded", created.provider_price_id)
            results.append(
                CatalogSyncResult(
                    product_id=product.id,
                    product_name=product.name,
                    action=SyncAction.CREATED,
                    provider_product_id=created.provider_product_id,
                    provider_price_id=created.provider_price_id,
                    unit_amount=created.unit_amount,
                    currency=created.currency,
                )
            )

        created_count = sum(1 for result in results if result.action == SyncAction.CREATED)
        return CatalogSyncReport(
            provider=provider_name,
            dry_run=is_dry_run,
            total_products=len(products),
            created_count=created_count,
            skipped_count=len(results) - created_count,
            synced=results,
        )


__all__ = [
    "CatalogRepository",
    "CatalogService",
    "PRODUCT_CREATE_ATTEMPTS",
    "PRODUCT_IMPORT_ATTEMPTS",
    "build_product_draft",
    "product_errors",
]

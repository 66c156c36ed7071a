"""Catalog records: products and their provider price mappings."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing.models import BillingProviderName
from ..billing.money import Money


class ProductStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class SyncAction(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"


class ProductDraft(BaseModel):
    """Validated product fields awaiting a product code."""

    name: str
    description: Optional[str] = None
    category: str
    category_code: str
    monthly_price: Money
    stock_quantity: int = 0
    status: ProductStatus = ProductStatus.DRAFT
    image_url: Optional[str] = None
    video_url: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status == ProductStatus.ACTIVE


class Product(BaseModel):
    id: str
    product_code: str
    name: str
    description: Optional[str] = None
    category: str
    monthly_price: Money
    stock_quantity: int = 0
    status: ProductStatus = ProductStatus.DRAFT
    is_active: bool = False
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CatalogPrice(BaseModel):
    """Provider product/price pair recorded for an internal product."""

    product_id: str
    provider: BillingProviderName
    provider_product_id: str
    provider_price_id: str
    currency: str
    unit_amount: Money
    interval: str = "month"
    interval_count: int = 1
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CatalogSyncResult(BaseModel):
    product_id: str
    product_name: str
    action: SyncAction
    provider_product_id: str
    provider_price_id: str
    unit_amount: Money
    currency: str

    model_config = ConfigDict(frozen=True)


class CatalogSyncReport(BaseModel):
    provider: BillingProviderName
    dry_run: bool
    total_products: int = 0
    created_count: int = 0
    skipped_count: int = 0
    synced: List[CatalogSyncResult] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


__all__ = [
    "CatalogPrice",
    "CatalogSyncReport",
    "CatalogSyncResult",
    "Product",
    "ProductDraft",
    "ProductStatus",
    "SyncAction",
]

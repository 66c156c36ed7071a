"""Catalog package: product codes and provider price sync."""

from .codes import allocate_product_code, format_product_code, insert_with_unique_code, normalize_category
from .models import CatalogPrice, CatalogSyncReport, CatalogSyncResult, Product, ProductDraft, ProductStatus
from .service import CatalogRepository, CatalogService

__all__ = [
    "CatalogPrice",
    "CatalogRepository",
    "CatalogService",
    "CatalogSyncReport",
    "CatalogSyncResult",
    "Product",
    "ProductDraft",
    "ProductStatus",
    "allocate_product_code",
    "format_product_code",
    "insert_with_unique_code",
    "normalize_category",
]

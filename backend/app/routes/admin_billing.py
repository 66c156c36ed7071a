"""Back-office routes for billing maintenance and catalog codes."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, status

from ..billing import BillingError, InvoiceBackfillReport
from ..catalog import Product
from ..schemas.billing import (
    InvoiceBackfillRequest,
    ProductCreateBody,
    ProductImportBody,
    ProductImportResponse,
    SubscriptionUpdateBody,
    SubscriptionUpdateResponse,
)
from ..services.billing import get_billing_service, get_catalog_service, get_invoice_backfill

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/billing/invoices/backfill", response_model=InvoiceBackfillReport)
def backfill_invoices(payload: Optional[InvoiceBackfillRequest] = None) -> InvoiceBackfillReport:
    payload = payload or InvoiceBackfillRequest()
    backfill = get_invoice_backfill()
    try:
        return backfill.run(limit=payload.limit, dry_run=payload.dry_run)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.patch("/subscriptions/{subscription_id}", response_model=SubscriptionUpdateResponse)
def update_subscription(subscription_id: str, payload: SubscriptionUpdateBody) -> SubscriptionUpdateResponse:
    service = get_billing_service()
    try:
        result = service.update_subscription(subscription_id, payload.to_update())
    except BillingError as exc:
        raise exc.to_http_exception() from exc

    cancellation = result.cancellation
    return SubscriptionUpdateResponse(
        subscription=result.subscription,
        cancellation_deferred=bool(cancellation and cancellation.deferred),
        service_state=cancellation.service_state if cancellation else None,
    )


@router.post("/products", response_model=Product, status_code=status.HTTP_201_CREATED)
def create_product(payload: ProductCreateBody) -> Product:
    service = get_catalog_service()
    try:
        return service.create_product(payload.to_payload())
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/products/import", response_model=ProductImportResponse, status_code=status.HTTP_201_CREATED)
def import_products(payload: ProductImportBody) -> ProductImportResponse:
    service = get_catalog_service()
    try:
        products = service.import_products(payload.to_payloads())
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ProductImportResponse(
        imported=len(products),
        product_codes=[product.product_code for product in products],
    )


__all__ = ["router"]

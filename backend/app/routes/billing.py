"""API routes exposing checkout and billing configuration."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, Response, status

from ..billing import BillingError
from ..catalog import CatalogSyncReport
from ..schemas.billing import (
    BillingConfigResponse,
    CatalogSyncRequest,
    CheckoutRequestBody,
    CheckoutResponse,
)
from ..services.billing import get_billing_config, get_billing_service, get_catalog_service

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def create_checkout(
    payload: CheckoutRequestBody,
    response: Response,
    x_idempotency_key: Optional[str] = Header(None, alias="X-Idempotency-Key"),
) -> CheckoutResponse:
    service = get_billing_service()
    try:
        result = service.create_checkout(payload.to_request(), idempotency_header=x_idempotency_key)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    if result.idempotent_replay:
        response.status_code = status.HTTP_200_OK
    return CheckoutResponse.from_result(result)


@router.get("/config", response_model=BillingConfigResponse)
def read_billing_config() -> BillingConfigResponse:
    config = get_billing_config()
    return BillingConfigResponse(
        provider=config.provider_name,
        currency=config.currency,
        minimum_term_months=config.minimum_term_months,
        sst_rate=float(config.sst_rate),
        stripe_automatic_tax_enabled=config.stripe_automatic_tax,
        stripe_manual_tax_rate_id=config.stripe_tax_rate_id,
    )


@router.post("/catalog/sync", response_model=CatalogSyncReport)
def sync_catalog(payload: Optional[CatalogSyncRequest] = None) -> CatalogSyncReport:
    payload = payload or CatalogSyncRequest()
    service = get_catalog_service()
    try:
        return service.sync_catalog_prices(
            product_ids=payload.product_ids,
            currency=payload.currency,
            dry_run=payload.dry_run,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc


__all__ = ["router"]

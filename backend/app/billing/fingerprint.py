"""Deterministic checkout fingerprints and idempotency keys."""
from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .exceptions import BillingValidationError
from .models import CheckoutLineItem, DeliverySnapshot
from .money import format_money

MAX_IDEMPOTENCY_KEY_LENGTH = 120
AUTO_KEY_PREFIX = "auto"
AUTO_KEY_FINGERPRINT_CHARS = 48


def _normalize_item(item: CheckoutLineItem) -> Dict[str, Any]:
    return {
        "product_id": item.product_id,
        "product_name": item.product_name.strip(),
        "category": item.category.strip() if item.category else None,
        "monthly_price": format_money(item.monthly_price),
        "duration_months": item.duration_months,
        "quantity": item.quantity,
    }


def _item_sort_key(item: Mapping[str, Any]) -> str:
    return ":".join(
        str(item[field]) if item[field] is not None else ""
        for field in ("product_id", "product_name", "monthly_price", "duration_months", "quantity")
    )


def normalize_items(items: Iterable[CheckoutLineItem]) -> List[Dict[str, Any]]:
    """Normalised items in a stable order so reordering never changes the hash."""

    return sorted((_normalize_item(item) for item in items), key=_item_sort_key)


def derive_checkout_fingerprint(
    *,
    user_id: str,
    bundle_id: Optional[str],
    start_date: Optional[datetime],
    commitment_end_date: Optional[datetime],
    currency: str,
    minimum_term_months: int,
    delivery: DeliverySnapshot,
    items: Iterable[CheckoutLineItem],
) -> str:
    """SHA-256 hex digest of the canonical checkout request.

    Dates the caller did not pin are passed as ``None`` so a retried request
    without a start date still hashes the same.
    """

    canonical = {
        "user_id": user_id,
        "bundle_id": bundle_id,
        "start_date": start_date.isoformat() if start_date else None,
        "end_date": commitment_end_date.isoformat() if commitment_end_date else None,
        "currency": currency.strip().lower(),
        "minimum_term_months": minimum_term_months,
        "delivery": delivery.trimmed(),
        "items": normalize_items(items),
    }
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def normalize_idempotency_key(body_key: object, header_key: Optional[str]) -> Optional[str]:
    """Pick the body key over the header; blank keys count as absent."""

    for candidate in (body_key, header_key):
        if candidate is None:
            continue
        if not isinstance(candidate, str):
            raise BillingValidationError("idempotency_key must be a string")
        trimmed = candidate.strip()
        if not trimmed:
            continue
        if len(trimmed) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise BillingValidationError(
                f"idempotency_key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
            )
        return trimmed
    return None


def derive_auto_idempotency_key(fingerprint: str, now: datetime, *, window_minutes: int = 15) -> str:
    """Key shared by identical requests arriving in the same time window."""

    window_ms = window_minutes * 60 * 1000
    bucket = int(now.timestamp() * 1000) // window_ms
    return f"{AUTO_KEY_PREFIX}:{bucket}:{fingerprint[:AUTO_KEY_FINGERPRINT_CHARS]}"


__all__ = [
    "MAX_IDEMPOTENCY_KEY_LENGTH",
    "derive_auto_idempotency_key",
    "derive_checkout_fingerprint",
    "normalize_idempotency_key",
    "normalize_items",
]

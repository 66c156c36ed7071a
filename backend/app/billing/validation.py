"""Parsing of loosely typed checkout input."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from .exceptions import BillingValidationError
from .models import CheckoutLineItem
from .money import parse_money


def parse_uuid(value: object, field_name: str, *, required: bool = False) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise BillingValidationError(f"Invalid or missing {field_name}")
        return None
    if not isinstance(value, str):
        raise BillingValidationError(f"Invalid or missing {field_name}")
    try:
        return str(UUID(value.strip()))
    except ValueError as exc:
        raise BillingValidationError(f"Invalid or missing {field_name}") from exc


def coerce_uuid(value: object) -> Optional[str]:
    """Canonical UUID string, or ``None`` for anything that is not one."""

    if not isinstance(value, str):
        return None
    try:
        return str(UUID(value.strip()))
    except ValueError:
        return None


def parse_optional_text(value: object) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_positive_int(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def parse_positive_money(value: object) -> Optional[Decimal]:
    amount = parse_money(value)
    if amount is None or amount <= 0:
        return None
    return amount


def parse_checkout_items(raw_items: object) -> List[CheckoutLineItem]:
    """Validate raw line items, reporting the first bad field by index."""

    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise BillingValidationError("items must be an array")

    items: List[CheckoutLineItem] = []
    for index, raw in enumerate(raw_items):
        prefix = f"items[{index}]"
        if not isinstance(raw, dict):
            raise BillingValidationError(f"{prefix} must be an object")
        item: dict[str, Any] = raw

        product_name = parse_optional_text(item.get("product_name"))
        if product_name is None:
            raise BillingValidationError(f"{prefix}.product_name is required")

        product_id = None
        if item.get("product_id") not in (None, ""):
            product_id = parse_uuid(item.get("product_id"), f"{prefix}.product_id")

        quantity = parse_positive_int(item.get("quantity", 1))
        if quantity is None:
            raise BillingValidationError(f"{prefix}.quantity must be a positive integer")

        monthly_price = parse_positive_money(item.get("monthly_price"))
        if monthly_price is None:
            raise BillingValidationError(f"{prefix}.monthly_price must be a positive number")

        duration_months = None
        if item.get("duration_months") is not None:
            duration_months = parse_positive_int(item.get("duration_months"))
            if duration_months is None:
                raise BillingValidationError(f"{prefix}.duration_months must be a positive integer")

        items.append(
            CheckoutLineItem(
                product_id=product_id,
                product_name=product_name,
                category=parse_optional_text(item.get("category")),
                monthly_price=monthly_price,
                duration_months=duration_months,
                quantity=quantity,
            )
        )
    return items


__all__ = [
    "coerce_uuid",
    "parse_checkout_items",
    "parse_optional_text",
    "parse_positive_int",
    "parse_positive_money",
    "parse_uuid",
]

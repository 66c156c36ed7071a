"""Mapping of provider invoice payloads onto the local invoice mirror."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from .models import BillingInvoice, BillingProviderName, InvoiceStatus
from .money import from_minor_units
from .webhooks import from_unix_timestamp, read_number, read_string

DEFAULT_INVOICE_CURRENCY = "myr"

_EVENT_STATUS_OVERRIDES: Dict[str, InvoiceStatus] = {
    "invoice.payment_failed": InvoiceStatus.PAYMENT_FAILED,
    "invoice.voided": InvoiceStatus.VOID,
    "invoice.marked_uncollectible": InvoiceStatus.UNCOLLECTIBLE,
    "invoice.paid": InvoiceStatus.PAID,
    "invoice.payment_succeeded": InvoiceStatus.PAID,
}

_RAW_STATUSES = {
    "draft": InvoiceStatus.DRAFT,
    "open": InvoiceStatus.OPEN,
    "paid": InvoiceStatus.PAID,
    "void": InvoiceStatus.VOID,
    "uncollectible": InvoiceStatus.UNCOLLECTIBLE,
}


def normalize_invoice_status(
    event_type: Optional[str],
    raw_status: Optional[str],
    paid: Optional[bool],
) -> InvoiceStatus:
    """Event type outranks the paid flag, which outranks the raw status."""

    if event_type and event_type in _EVENT_STATUS_OVERRIDES:
        return _EVENT_STATUS_OVERRIDES[event_type]
    if paid is True:
        return InvoiceStatus.PAID
    return _RAW_STATUSES.get((raw_status or "").strip().lower(), InvoiceStatus.UNKNOWN)


def resolve_invoice_period(invoice: Mapping[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Direct period fields, else the widest span across line item periods."""

    direct_start = read_number(invoice.get("period_start"))
    direct_end = read_number(invoice.get("period_end"))
    if direct_start is not None or direct_end is not None:
        return from_unix_timestamp(direct_start), from_unix_timestamp(direct_end)

    lines = invoice.get("lines")
    line_data = lines.get("data") if isinstance(lines, dict) else None
    starts = []
    ends = []
    for line in line_data if isinstance(line_data, list) else []:
        period = line.get("period") if isinstance(line, dict) else None
        if not isinstance(period, dict):
            continue
        start = read_number(period.get("start"))
        end = read_number(period.get("end"))
        if start is not None:
            starts.append(start)
        if end is not None:
            ends.append(end)
    return (
        from_unix_timestamp(min(starts)) if starts else None,
        from_unix_timestamp(max(ends)) if ends else None,
    )


def _tax_minor_units(invoice: Mapping[str, Any]) -> Optional[int]:
    explicit = read_number(invoice.get("tax"))
    if explicit is None:
        explicit = read_number(invoice.get("amount_tax"))
    if explicit is not None:
        return explicit
    subtotal = read_number(invoice.get("subtotal"))
    total = read_number(invoice.get("total"))
    if subtotal is not None and total is not None:
        return total - subtotal
    return None


def build_invoice_mirror(
    invoice: Mapping[str, Any],
    *,
    provider: BillingProviderName,
    event_type: Optional[str] = None,
    subscription_id: Optional[str] = None,
    provider_subscription_id: Optional[str] = None,
    billing_customer_id: Optional[str] = None,
) -> Optional[BillingInvoice]:
    """Build the mirror row for ``invoice``; ``None`` when it has no id."""

    provider_invoice_id = read_string(invoice.get("id"))
    if not provider_invoice_id:
        return None

    paid_flag = invoice.get("paid")
    status_transitions = invoice.get("status_transitions")
    paid_at = status_transitions.get("paid_at") if isinstance(status_transitions, dict) else None
    period_start, period_end = resolve_invoice_period(invoice)
    currency = read_string(invoice.get("currency"))

    return BillingInvoice(
        provider=provider,
        provider_invoice_id=provider_invoice_id,
        provider_subscription_id=provider_subscription_id or read_string(invoice.get("subscription")),
        subscription_id=subscription_id,
        billing_customer_id=billing_customer_id,
        invoice_number=read_string(invoice.get("number")),
        status=normalize_invoice_status(
            event_type,
            read_string(invoice.get("status")),
            paid_flag if isinstance(paid_flag, bool) else None,
        ),
        currency=currency.lower() if currency else DEFAULT_INVOICE_CURRENCY,
        subtotal_amount=from_minor_units(read_number(invoice.get("subtotal"))),
        tax_amount=from_minor_units(_tax_minor_units(invoice)),
        total_amount=from_minor_units(read_number(invoice.get("total"))),
        amount_paid=from_minor_units(read_number(invoice.get("amount_paid"))),
        amount_due=from_minor_units(read_number(invoice.get("amount_due"))),
        hosted_invoice_url=read_string(invoice.get("hosted_invoice_url")),
        invoice_pdf=read_string(invoice.get("invoice_pdf")),
        payment_intent_id=read_string(invoice.get("payment_intent")),
        due_date=from_unix_timestamp(invoice.get("due_date")),
        paid_at=from_unix_timestamp(paid_at),
        period_start_at=period_start,
        period_end_at=period_end,
        raw_payload=dict(invoice),
    )


__all__ = ["build_invoice_mirror", "normalize_invoice_status", "resolve_invoice_period"]

"""Minimum-commitment date arithmetic."""
from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from typing import Optional, Union

from .exceptions import BillingValidationError

DateInput = Union[str, date, datetime]


def parse_optional_iso_date(value: object, field_name: str) -> Optional[datetime]:
    """Parse an optional ISO-8601 value into an aware UTC datetime."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        raise BillingValidationError(f"{field_name} must be a valid ISO date")
    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise BillingValidationError(f"{field_name} must be a valid ISO date") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""

    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def calculate_commitment_end_date(
    start: DateInput,
    minimum_term_months: int,
    explicit_end: Optional[DateInput] = None,
) -> datetime:
    """Return the commitment end; an explicit end date wins unchanged."""

    if explicit_end is not None:
        parsed_end = parse_optional_iso_date(explicit_end, "end_date")
        if parsed_end is not None:
            return parsed_end
    parsed_start = parse_optional_iso_date(start, "start_date")
    if parsed_start is None:
        raise BillingValidationError("start_date must be a valid ISO date")
    return add_months(parsed_start, minimum_term_months)


def ensure_minimum_commitment(start: datetime, minimum_term_months: int, end: datetime) -> None:
    required_end = add_months(start, minimum_term_months)
    if end < required_end:
        raise BillingValidationError(
            f"end_date must be at least {minimum_term_months} months after start_date"
        )


__all__ = [
    "add_months",
    "calculate_commitment_end_date",
    "ensure_minimum_commitment",
    "parse_optional_iso_date",
]

"""Error taxonomy for billing operations."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Billing failure carrying the HTTP status it should surface as."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class _BillingErrorKind(BillingError):
    """Base for errors whose code and status are fixed by the subclass."""

    error_code = "billing_error"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(
            code=self.error_code,
            message=message,
            status_code=self.http_status,
            detail=detail,
        )


class BillingValidationError(_BillingErrorKind):
    """Malformed or inconsistent input."""

    error_code = "validation_error"


class ProfileIncompleteError(_BillingErrorKind):
    """The buyer profile is missing fields required for checkout."""

    error_code = "profile_incomplete"
    http_status = status.HTTP_403_FORBIDDEN


class BillingNotFoundError(_BillingErrorKind):
    error_code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND


class IdempotencyConflictError(_BillingErrorKind):
    """The idempotency key was reused with different details or after a failure."""

    error_code = "idempotency_conflict"
    http_status = status.HTTP_409_CONFLICT


class CheckoutInProgressError(_BillingErrorKind):
    """An earlier request with the same key has not finished creating its session."""

    error_code = "checkout_in_progress"
    http_status = status.HTTP_409_CONFLICT


class TransitionNotAllowedError(_BillingErrorKind):
    error_code = "transition_not_allowed"
    http_status = status.HTTP_409_CONFLICT


class CodeAllocationError(_BillingErrorKind):
    """No unique code could be allocated within the retry ceiling."""

    error_code = "code_allocation_failed"
    http_status = status.HTTP_409_CONFLICT


class WebhookSignatureError(_BillingErrorKind):
    error_code = "invalid_signature"


class ProviderError(_BillingErrorKind):
    """The payment provider call failed."""

    error_code = "provider_error"
    http_status = status.HTTP_502_BAD_GATEWAY


class PersistenceError(_BillingErrorKind):
    """Storage or configuration failure the caller cannot fix."""

    error_code = "server_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


__all__ = [
    "BillingError",
    "BillingNotFoundError",
    "BillingValidationError",
    "CheckoutInProgressError",
    "CodeAllocationError",
    "IdempotencyConflictError",
    "PersistenceError",
    "ProfileIncompleteError",
    "ProviderError",
    "TransitionNotAllowedError",
    "WebhookSignatureError",
]

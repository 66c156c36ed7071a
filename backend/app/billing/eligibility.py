"""Checkout eligibility: profile completeness and delivery snapshots."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from .exceptions import BillingValidationError, ProfileIncompleteError
from .models import DeliverySnapshot

COMPANY_FIELD_LABELS = (
    "Company Legal Name",
    "Registration Number",
    "HQ Office Address",
    "Office City",
    "Office Zip / Postal",
    "Delivery Address",
    "Delivery City",
    "Delivery Zip / Postal",
    "Industry",
    "Team Size",
)


class UserProfile(BaseModel):
    full_name: Optional[str] = None
    job_title: Optional[str] = None
    phone_number: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CompanyProfile(BaseModel):
    company_name: Optional[str] = None
    registration_number: Optional[str] = None
    address: Optional[str] = None
    office_city: Optional[str] = None
    office_zip_postal: Optional[str] = None
    delivery_address: Optional[str] = None
    delivery_city: Optional[str] = None
    delivery_zip_postal: Optional[str] = None
    industry: Optional[str] = None
    team_size: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def resolved_delivery_address(self) -> Optional[str]:
        return self.delivery_address if _has_text(self.delivery_address) else self.address

    @property
    def resolved_delivery_city(self) -> Optional[str]:
        return self.delivery_city if _has_text(self.delivery_city) else self.office_city

    @property
    def resolved_delivery_zip_postal(self) -> Optional[str]:
        return self.delivery_zip_postal if _has_text(self.delivery_zip_postal) else self.office_zip_postal


class CheckoutProfile(BaseModel):
    """Everything known about the buyer when a checkout starts."""

    user_id: str
    email: Optional[str] = None
    profile: Optional[UserProfile] = None
    company: Optional[CompanyProfile] = None

    model_config = ConfigDict(frozen=True)


class DeliveryOverrides(BaseModel):
    """Delivery fields supplied on the checkout request itself."""

    company_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_postal: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None

    model_config = ConfigDict(frozen=True)


def _has_text(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def _first_text(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if _has_text(value):
            return value.strip()
    return None


def missing_profile_fields(checkout_profile: CheckoutProfile) -> List[str]:
    profile = checkout_profile.profile or UserProfile()
    missing: List[str] = []
    if not _has_text(profile.full_name):
        missing.append("Full Name")
    if not _has_text(profile.job_title):
        missing.append("Job Title")
    if not _has_text(profile.phone_number):
        missing.append("Phone Number")
    if not _has_text(checkout_profile.email):
        missing.append("Business Email")

    company = checkout_profile.company
    if company is None:
        missing.extend(COMPANY_FIELD_LABELS)
        return missing

    checks = (
        ("Company Legal Name", company.company_name),
        ("Registration Number", company.registration_number),
        ("HQ Office Address", company.address),
        ("Office City", company.office_city),
        ("Office Zip / Postal", company.office_zip_postal),
        ("Delivery Address", company.resolved_delivery_address),
        ("Delivery City", company.resolved_delivery_city),
        ("Delivery Zip / Postal", company.resolved_delivery_zip_postal),
        ("Industry", company.industry),
        ("Team Size", company.team_size),
    )
    missing.extend(label for label, value in checks if not _has_text(value))
    return missing


def ensure_profile_complete(checkout_profile: CheckoutProfile) -> None:
    missing = missing_profile_fields(checkout_profile)
    if missing:
        raise ProfileIncompleteError(
            f"Complete your profile before placing an order. Missing: {', '.join(missing)}",
            detail={"missing_fields": missing},
        )


def resolve_delivery_snapshot(
    checkout_profile: CheckoutProfile,
    overrides: Optional[DeliveryOverrides] = None,
) -> DeliverySnapshot:
    """Request fields first, then company delivery or office fields, then the profile contact."""

    overrides = overrides or DeliveryOverrides()
    company = checkout_profile.company or CompanyProfile()
    profile = checkout_profile.profile or UserProfile()

    resolved = {
        "company_name": _first_text(overrides.company_name, company.company_name),
        "address": _first_text(overrides.address, company.resolved_delivery_address),
        "city": _first_text(overrides.city, company.resolved_delivery_city),
        "zip_postal": _first_text(overrides.zip_postal, company.resolved_delivery_zip_postal),
        "contact_name": _first_text(overrides.contact_name, profile.full_name),
        "contact_phone": _first_text(overrides.contact_phone, profile.phone_number),
    }
    labels = {
        "company_name": "Company Name",
        "address": "Delivery Address",
        "city": "Delivery City",
        "zip_postal": "Delivery Zip / Postal",
        "contact_name": "Site Contact Name",
        "contact_phone": "Site Contact Phone",
    }
    missing = [labels[key] for key, value in resolved.items() if value is None]
    if missing:
        raise BillingValidationError(
            f"Delivery details are incomplete. Missing: {', '.join(missing)}",
            detail={"missing_fields": missing},
        )
    return DeliverySnapshot(**resolved)


__all__ = [
    "CheckoutProfile",
    "CompanyProfile",
    "DeliveryOverrides",
    "UserProfile",
    "ensure_profile_complete",
    "missing_profile_fields",
    "resolve_delivery_snapshot",
]

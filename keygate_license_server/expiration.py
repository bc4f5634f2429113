"""
License expiration rules.

NEVER never expires. DATE expires once `expiration_date <= now`.
DURATION + CREATION stores `created_at + days` when the license is written.
DURATION + ACTIVATION keeps `expiration_date` empty (UPCOMING) until the first
successful verification, which stores `now + days`.
"""
from __future__ import annotations

import enum
from datetime import datetime, timedelta
from typing import Optional

from .models import ExpirationStart, ExpirationType, License, utcnow
from .results import Failure, RequestStatus


class LicenseStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    UPCOMING = "UPCOMING"
    EXPIRED = "EXPIRED"
    SUSPENDED = "SUSPENDED"


def calculate_expiration_date(now: datetime, days: int) -> datetime:
    return now + timedelta(days=days)


def calculate_license_expiration_date(
    expiration_type: ExpirationType,
    expiration_start: ExpirationStart,
    expiration_days: Optional[int] = None,
    expiration_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """Expiration date to store on a newly created license."""
    if expiration_type == ExpirationType.NEVER:
        return None
    if expiration_type == ExpirationType.DURATION:
        if expiration_start == ExpirationStart.CREATION and expiration_days:
            return calculate_expiration_date(now or utcnow(), expiration_days)
        return None
    return expiration_date


def calculate_updated_license_expiration_date(
    expiration_type: ExpirationType,
    expiration_start: ExpirationStart,
    previous_type: Optional[ExpirationType],
    previous_date: Optional[datetime],
    expiration_days: Optional[int] = None,
    expiration_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Expiration date to store when an existing license is edited.
    A DURATION+CREATION license keeps its running clock unless it is entering
    DURATION from another type or has no stored date yet.
    """
    if expiration_type == ExpirationType.NEVER:
        return None

    if expiration_type == ExpirationType.DURATION:
        if expiration_start == ExpirationStart.ACTIVATION:
            # keep the activation clock if one is already running
            return previous_date if previous_type == ExpirationType.DURATION else None

        was_duration = previous_type == ExpirationType.DURATION
        if expiration_days and (previous_date is None or not was_duration):
            return calculate_expiration_date(now or utcnow(), expiration_days)
        return previous_date

    return expiration_date


def needs_activation(license: License) -> bool:
    return (
        license.expiration_type == ExpirationType.DURATION
        and license.expiration_date is None
        and bool(license.expiration_days)
    )


def is_expired(license: License, now: Optional[datetime] = None) -> bool:
    if license.expiration_type == ExpirationType.NEVER or license.expiration_date is None:
        return False
    return license.expiration_date <= (now or utcnow())


def get_license_status(license: License, now: Optional[datetime] = None) -> LicenseStatus:
    if license.suspended:
        return LicenseStatus.SUSPENDED
    if needs_activation(license):
        return LicenseStatus.UPCOMING
    if is_expired(license, now):
        return LicenseStatus.EXPIRED
    return LicenseStatus.ACTIVE


def check_license_expiration(license: License, now: Optional[datetime] = None) -> Optional[Failure]:
    if is_expired(license, now):
        return Failure(RequestStatus.LICENSE_EXPIRED, "License expired")
    return None

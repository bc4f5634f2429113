import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

UUID_V4 = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
LICENSE_KEY = re.compile(r"^[A-Z0-9]{5}-[A-Z0-9]{5}-[A-Z0-9]{5}-[A-Z0-9]{5}-[A-Z0-9]{5}$")
GENERAL_NAME = re.compile(r"^[a-zA-Z0-9\s\-_]{3,255}$")
NO_SPACES = re.compile(r"^[^\s]+$")

VERIFY_FIELDS = {"licenseKey", "hardwareIdentifier", "customerId", "productId", "challenge", "version", "branch"}
CLASSLOADER_FIELDS = {"licenseKey", "hardwareIdentifier", "customerId", "productId", "sessionKey", "version", "branch"}


class ValidationError(ValueError):
    pass


@dataclass
class VerifyPayload:
    license_key: str
    hardware_identifier: Optional[str] = None
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    challenge: Optional[str] = None
    version: Optional[str] = None
    branch: Optional[str] = None


@dataclass
class ClassloaderPayload:
    license_key: str
    hardware_identifier: str
    product_id: str
    session_key: str
    customer_id: Optional[str] = None
    version: Optional[str] = None
    branch: Optional[str] = None


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_V4.match(value))


def mask(value: Optional[str], keep: int = 8) -> str:
    """Shortened form of a sensitive value for log lines."""
    if not value:
        return "none"
    return f"{value[:keep]}..."


def _string(data: Dict[str, Any], name: str, label: str, required: bool = False) -> Optional[str]:
    value = data.get(name)
    if value is None:
        if required:
            raise ValidationError(f"{label} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string")
    return value


def _bounded(value: Optional[str], label: str, min_len: int, max_len: int) -> Optional[str]:
    if value is None:
        return None
    if len(value) < min_len:
        raise ValidationError(f"{label} must be at least {min_len} characters")
    if len(value) > max_len:
        raise ValidationError(f"{label} must be less than {max_len} characters")
    if not NO_SPACES.match(value):
        raise ValidationError(f"{label} must not contain spaces")
    return value


def _license_key(data: Dict[str, Any]) -> str:
    value = _string(data, "licenseKey", "License key", required=True)
    if not LICENSE_KEY.match(value):
        raise ValidationError("License key must be in the format of XXXXX-XXXXX-XXXXX-XXXXX-XXXXX")
    return value


def _uuid(data: Dict[str, Any], name: str, label: str, required: bool = False) -> Optional[str]:
    value = _string(data, name, label, required=required)
    if value is not None and not is_uuid(value):
        raise ValidationError(f"{label} must be a valid UUID")
    return value


def _branch(data: Dict[str, Any]) -> Optional[str]:
    value = _string(data, "branch", "Branch name")
    if value is not None and not GENERAL_NAME.match(value):
        raise ValidationError("Branch name must contain only letters, numbers, dashes, and underscores")
    return value


def _reject_unknown(data: Dict[str, Any], allowed: set) -> None:
    if set(data) - allowed:
        raise ValidationError("Invalid payload")


def parse_verify_payload(data: Any, require_hardware_identifier: bool = False) -> Tuple[Optional[VerifyPayload], Optional[str]]:
    """Returns (payload, None) or (None, first validation message)."""
    try:
        if not isinstance(data, dict):
            raise ValidationError("Invalid payload")
        _reject_unknown(data, VERIFY_FIELDS)
        payload = VerifyPayload(
            license_key=_license_key(data),
            hardware_identifier=_bounded(
                _string(data, "hardwareIdentifier", "Hardware identifier", required=require_hardware_identifier),
                "Hardware identifier", 10, 1000,
            ),
            customer_id=_uuid(data, "customerId", "Customer UUID"),
            product_id=_uuid(data, "productId", "Product UUID"),
            challenge=_bounded(_string(data, "challenge", "Challenge"), "Challenge", 10, 1000),
            version=_bounded(_string(data, "version", "Version"), "Version", 3, 255),
            branch=_branch(data),
        )
    except ValidationError as e:
        return None, str(e)
    return payload, None


def parse_classloader_payload(data: Any) -> Tuple[Optional[ClassloaderPayload], Optional[str]]:
    try:
        if not isinstance(data, dict):
            raise ValidationError("Invalid payload")
        _reject_unknown(data, CLASSLOADER_FIELDS)
        payload = ClassloaderPayload(
            license_key=_license_key(data),
            product_id=_uuid(data, "productId", "Product UUID", required=True),
            session_key=_bounded(
                _string(data, "sessionKey", "Session key", required=True), "Session key", 10, 1000
            ),
            hardware_identifier=_bounded(
                _string(data, "hardwareIdentifier", "Hardware identifier", required=True),
                "Hardware identifier", 10, 1000,
            ),
            customer_id=_uuid(data, "customerId", "Customer UUID"),
            version=_bounded(_string(data, "version", "Version"), "Version", 3, 255),
            branch=_branch(data),
        )
    except ValidationError as e:
        return None, str(e)
    return payload, None

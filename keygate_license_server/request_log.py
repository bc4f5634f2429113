import logging
from typing import Optional

from .db import db
from .models import RequestLog, RequestType, utcnow
from .results import RequestStatus

logger = logging.getLogger(__name__)


def add_request_log(
    team_id: str,
    request_type: RequestType,
    status: RequestStatus,
    status_code: int,
    license_key_lookup: Optional[str] = None,
    customer_id: Optional[str] = None,
    product_id: Optional[str] = None,
    release_id: Optional[str] = None,
    device_identifier: Optional[str] = None,
    ip_address: Optional[str] = None,
    country: Optional[str] = None,
) -> RequestLog:
    """Stages a log row in the current session; the caller owns the commit."""
    entry = RequestLog(
        team_id=team_id,
        type=request_type,
        status=status.value,
        status_code=status_code,
        license_key_lookup=license_key_lookup,
        customer_id=customer_id,
        product_id=product_id,
        release_id=release_id,
        device_identifier=device_identifier,
        ip_address=ip_address,
        country=country,
        created_at=utcnow(),
    )
    db.session.add(entry)
    return entry


def log_rejection(team_id: str, request_type: RequestType, status: RequestStatus, status_code: int, **fields) -> None:
    """Writes a rejected attempt in its own commit."""
    add_request_log(team_id, request_type, status, status_code, **fields)
    db.session.commit()

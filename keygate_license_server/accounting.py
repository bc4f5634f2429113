"""
Seat and IP accounting writes.

Reads for the early gates are plain selects. The final write re-reads the
license row under SELECT ... FOR UPDATE and re-runs both limits against fresh
data, so two first-time devices racing for the last seat cannot both pass.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Set

from .db import db
from .expiration import calculate_expiration_date, needs_activation
from .gates import check_ip_limit, check_seats, ip_window_start
from .models import Device, IpLimitPeriod, License, Release, RequestType, RequestLog, utcnow
from .request_log import add_request_log
from .results import Failure, RequestStatus

logger = logging.getLogger(__name__)


@dataclass
class AccountingRequest:
    team_id: str
    license_id: str
    license_key_lookup: str
    request_type: RequestType
    ip_limit_period: IpLimitPeriod
    device_timeout_seconds: int
    device_identifier: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    release_id: Optional[str] = None


def load_seen_ips(team_id: str, license_key_lookup: str, period: IpLimitPeriod, now: datetime) -> Set[str]:
    """Distinct IPs with a successful request for the license inside the period."""
    rows = (
        db.session.query(RequestLog.ip_address)
        .filter(
            RequestLog.team_id == team_id,
            RequestLog.license_key_lookup == license_key_lookup,
            RequestLog.status == RequestStatus.VALID.value,
            RequestLog.ip_address.isnot(None),
            RequestLog.created_at >= ip_window_start(period, now),
        )
        .distinct()
        .all()
    )
    return {ip for (ip,) in rows}


def load_devices(license_id: str, refresh: bool = False) -> List[Device]:
    """Non-forgotten devices. `refresh` overwrites rows already loaded in the session."""
    query = Device.query.filter_by(license_id=license_id, forgotten=False)
    if refresh:
        query = query.populate_existing()
    return query.all()


def _upsert_device(req: AccountingRequest, now: datetime) -> None:
    device = Device.query.filter_by(license_id=req.license_id, device_identifier=req.device_identifier).first()
    if device is None:
        db.session.add(Device(
            license_id=req.license_id,
            team_id=req.team_id,
            device_identifier=req.device_identifier,
            ip_address=req.ip_address,
            country=req.country,
            last_beat_at=now,
        ))
        return

    device.last_beat_at = now
    device.forgotten = False
    device.forgotten_at = None
    device.ip_address = req.ip_address
    device.country = req.country


def commit_accounting(req: AccountingRequest, now: Optional[datetime] = None) -> Optional[Failure]:
    """
    Runs the limits again under a row lock and, when they still pass, records the
    device heartbeat, activates duration licenses and appends the VALID log, all in
    one transaction. Returns the failure (after rolling back) otherwise.
    """
    now = now or utcnow()

    license = (
        db.session.query(License)
        .filter_by(id=req.license_id)
        .with_for_update()
        .populate_existing()
        .one()
    )

    seen_ips = load_seen_ips(req.team_id, req.license_key_lookup, req.ip_limit_period, now)
    failure = check_ip_limit(license, seen_ips, req.ip_address)
    if failure is None:
        failure = check_seats(license, load_devices(license.id, refresh=True), req.device_identifier,
                              req.device_timeout_seconds, now)
    if failure is not None:
        db.session.rollback()
        return failure

    if req.device_identifier:
        _upsert_device(req, now)

    if needs_activation(license):
        license.expiration_date = calculate_expiration_date(now, license.expiration_days)
        logger.info("duration license activated license=%s expires=%s", license.id, license.expiration_date)

    license.last_active_at = now

    if req.release_id:
        db.session.query(Release).filter_by(id=req.release_id).update(
            {Release.last_seen_at: now}, synchronize_session=False
        )

    add_request_log(
        req.team_id,
        req.request_type,
        RequestStatus.VALID,
        200,
        license_key_lookup=req.license_key_lookup,
        customer_id=req.customer_id,
        product_id=req.product_id,
        release_id=req.release_id,
        device_identifier=req.device_identifier,
        ip_address=req.ip_address,
        country=req.country,
    )
    db.session.commit()
    return None

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Set

from .db import db
from .geo import GeoData
from .models import BlacklistEntry, BlacklistType, Device, IpLimitPeriod, License, Team
from .results import Failure, RequestStatus

logger = logging.getLogger(__name__)

IP_LIMIT_PERIOD_DAYS = {
    IpLimitPeriod.DAY: 1,
    IpLimitPeriod.WEEK: 7,
    IpLimitPeriod.MONTH: 30,
}


def _record_hit(entry: BlacklistEntry) -> None:
    db.session.query(BlacklistEntry).filter_by(id=entry.id).update(
        {BlacklistEntry.hits: BlacklistEntry.hits + 1}, synchronize_session=False
    )


def _match(entries: Iterable[BlacklistEntry], kind: BlacklistType, value: Optional[str]) -> Optional[BlacklistEntry]:
    if not value:
        return None
    for entry in entries:
        if entry.type == kind and entry.value == value:
            return entry
    return None


def check_blacklist(
    team: Team,
    ip_address: Optional[str],
    geo_data: Optional[GeoData],
    device_identifier: Optional[str],
) -> Optional[Failure]:
    """IP first, then country (alpha-3), then hardware identifier. Bumps the rule's hit counter."""
    entries = list(team.blacklist)
    if not entries:
        return None

    checks = (
        (BlacklistType.IP_ADDRESS, ip_address, RequestStatus.IP_BLACKLISTED, "IP address is blacklisted"),
        (BlacklistType.COUNTRY, geo_data.alpha3 if geo_data else None,
         RequestStatus.COUNTRY_BLACKLISTED, "Country is blacklisted"),
        (BlacklistType.HARDWARE_IDENTIFIER, device_identifier,
         RequestStatus.HARDWARE_IDENTIFIER_BLACKLISTED, "Hardware identifier is blacklisted"),
    )
    for kind, value, status, details in checks:
        entry = _match(entries, kind, value)
        if entry is not None:
            _record_hit(entry)
            return Failure(status, details)
    return None


def ip_window_start(period: IpLimitPeriod, now: datetime) -> datetime:
    return now - timedelta(days=IP_LIMIT_PERIOD_DAYS[period])


def check_ip_limit(license: License, seen_ips: Set[str], ip_address: Optional[str]) -> Optional[Failure]:
    if not license.ip_limit or not ip_address:
        return None
    if ip_address in seen_ips:
        return None
    if len(seen_ips) >= license.ip_limit:
        logger.warning(
            "ip limit reached license=%s current=%s limit=%s",
            license.id, len(seen_ips), license.ip_limit,
        )
        return Failure(RequestStatus.IP_LIMIT_REACHED, "IP limit reached")
    return None


def active_devices(devices: Iterable[Device], timeout_seconds: int, now: datetime) -> List[Device]:
    cutoff = now - timedelta(seconds=timeout_seconds)
    return [d for d in devices if not d.forgotten and d.last_beat_at >= cutoff]


def check_seats(
    license: License,
    devices: Iterable[Device],
    device_identifier: Optional[str],
    timeout_seconds: int,
    now: datetime,
) -> Optional[Failure]:
    if not license.hwid_limit or not device_identifier:
        return None

    active = active_devices(devices, timeout_seconds, now)
    if any(d.device_identifier == device_identifier for d in active):
        return None  # heartbeat renewal

    if len(active) >= license.hwid_limit:
        logger.warning(
            "hwid limit reached license=%s current=%s limit=%s",
            license.id, len(active), license.hwid_limit,
        )
        return Failure(RequestStatus.HWID_LIMIT_REACHED, "HWID limit reached")
    return None

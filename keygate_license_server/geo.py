from dataclasses import dataclass
from typing import Mapping, Optional

import pycountry


@dataclass(frozen=True)
class GeoData:
    alpha2: str
    alpha3: str
    country: str


# Cloudflare sends these for unknown and Tor traffic
_UNKNOWN_COUNTRIES = {"XX", "T1", ""}


def resolve_geo(headers: Mapping[str, str]) -> Optional[GeoData]:
    """Country of the caller from the CF-IPCountry header, or None."""
    alpha2 = (headers.get("CF-IPCountry") or "").strip().upper()
    if alpha2 in _UNKNOWN_COUNTRIES:
        return None

    entry = pycountry.countries.get(alpha_2=alpha2)
    if entry is None:
        return None
    return GeoData(alpha2=entry.alpha_2, alpha3=entry.alpha_3, country=entry.name)


def resolve_ip(headers: Mapping[str, str], remote_addr: Optional[str]) -> Optional[str]:
    ip = (headers.get("CF-Connecting-IP") or "").strip()
    if ip:
        return ip

    forwarded = (headers.get("X-Forwarded-For") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip() or None

    return remote_addr or None

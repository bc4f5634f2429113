from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from .models import utcnow


class RequestStatus(str, enum.Enum):
    VALID = "VALID"
    BAD_REQUEST = "BAD_REQUEST"
    RATE_LIMIT = "RATE_LIMIT"
    TEAM_NOT_FOUND = "TEAM_NOT_FOUND"
    LICENSE_NOT_FOUND = "LICENSE_NOT_FOUND"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    RELEASE_NOT_FOUND = "RELEASE_NOT_FOUND"
    RELEASE_ARCHIVED = "RELEASE_ARCHIVED"
    RELEASE_DRAFT = "RELEASE_DRAFT"
    NO_ACCESS_TO_RELEASE = "NO_ACCESS_TO_RELEASE"
    LICENSE_SUSPENDED = "LICENSE_SUSPENDED"
    LICENSE_EXPIRED = "LICENSE_EXPIRED"
    IP_LIMIT_REACHED = "IP_LIMIT_REACHED"
    HWID_LIMIT_REACHED = "HWID_LIMIT_REACHED"
    IP_BLACKLISTED = "IP_BLACKLISTED"
    COUNTRY_BLACKLISTED = "COUNTRY_BLACKLISTED"
    HARDWARE_IDENTIFIER_BLACKLISTED = "HARDWARE_IDENTIFIER_BLACKLISTED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_SESSION_KEY = "INVALID_SESSION_KEY"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


HTTP_STATUS = {
    RequestStatus.VALID: 200,
    RequestStatus.BAD_REQUEST: 400,
    RequestStatus.INVALID_SESSION_KEY: 400,
    RequestStatus.RATE_LIMIT: 429,
    RequestStatus.TEAM_NOT_FOUND: 404,
    RequestStatus.LICENSE_NOT_FOUND: 404,
    RequestStatus.CUSTOMER_NOT_FOUND: 404,
    RequestStatus.PRODUCT_NOT_FOUND: 404,
    RequestStatus.RELEASE_NOT_FOUND: 404,
    RequestStatus.RELEASE_ARCHIVED: 403,
    RequestStatus.RELEASE_DRAFT: 403,
    RequestStatus.NO_ACCESS_TO_RELEASE: 403,
    RequestStatus.LICENSE_SUSPENDED: 403,
    RequestStatus.LICENSE_EXPIRED: 403,
    RequestStatus.IP_LIMIT_REACHED: 403,
    RequestStatus.HWID_LIMIT_REACHED: 403,
    RequestStatus.IP_BLACKLISTED: 403,
    RequestStatus.COUNTRY_BLACKLISTED: 403,
    RequestStatus.HARDWARE_IDENTIFIER_BLACKLISTED: 403,
    RequestStatus.FORBIDDEN: 403,
    RequestStatus.INTERNAL_SERVER_ERROR: 500,
}


@dataclass(frozen=True)
class Failure:
    """A rejected gate. `details` is safe to show to the client."""
    status: RequestStatus
    details: str

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.status]


@dataclass
class JsonResult:
    status: RequestStatus
    http_status: int
    data: Optional[Dict[str, Any]] = None
    details: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return self.status == RequestStatus.VALID

    def to_response(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "timestamp": utcnow().isoformat() + "Z",
            "valid": self.valid,
            "details": self.details,
        }
        result.update(self.extra)
        return {"data": self.data, "result": result}

    @classmethod
    def from_failure(cls, failure: Failure) -> "JsonResult":
        return cls(status=failure.status, http_status=failure.http_status, details=failure.details)


@dataclass
class StreamResult:
    """Successful classloader download: an encrypted chunk iterator plus headers."""
    stream: Iterator[bytes]
    headers: Dict[str, str]
    close: Optional[Callable[[], None]] = None
    status: RequestStatus = RequestStatus.VALID
    http_status: int = 200


Gate = Callable[[], Optional[Failure]]


def first_failure(gates: Iterable[Gate]) -> Optional[Failure]:
    """Run gates in order and stop at the first one that rejects."""
    for gate in gates:
        failure = gate()
        if failure is not None:
            return failure
    return None

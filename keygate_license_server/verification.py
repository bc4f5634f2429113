"""
verify / heartbeat orchestration.

Every request walks the same ordered gate list and stops at the first failure:
rate limits, team, license, blacklist, customer, product, release, suspension,
expiration, IP limit, seat limit. Only then is the accounting transaction run.
Failures come back as values; nothing here raises for a rejected client.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .accounting import AccountingRequest, commit_accounting, load_devices, load_seen_ips
from .config import ServerConfig
from .crypto import license_key_lookup, sign_challenge
from .expiration import check_license_expiration, get_license_status
from .gates import check_blacklist, check_ip_limit, check_seats
from .geo import GeoData
from .models import (
    Customer, License, Product, Release, ReleaseBranch, ReleaseStatus, RequestType, Team, utcnow,
)
from .rate_limiter import RateLimiter, is_trusted_source
from .request_log import log_rejection
from .results import Failure, Gate, JsonResult, RequestStatus, first_failure
from .validation import is_uuid, mask, parse_verify_payload

logger = logging.getLogger(__name__)

RATE_LIMIT_REQUESTS = 30
RATE_LIMIT_WINDOW_SECONDS = 60


@dataclass
class VerificationContext:
    request_id: str
    team_id: str
    ip_address: Optional[str]
    geo_data: Optional[GeoData]
    config: ServerConfig
    rate_limiter: RateLimiter
    now: datetime = field(default_factory=utcnow)

    @property
    def country(self) -> Optional[str]:
        return self.geo_data.alpha3 if self.geo_data else None


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def _bad_request(details: str) -> Failure:
    return Failure(RequestStatus.BAD_REQUEST, details)


def resolve_release(
    product: Product,
    version: Optional[str],
    branch: Optional[str],
    predicate: Callable[[Release], bool],
) -> Tuple[Optional[Release], Optional[Release], Optional[Failure]]:
    """
    Returns (release matching version, latest release, failure).
    Without a branch the latest release is taken from the main line first.
    """
    releases = [r for r in product.releases if predicate(r)]

    if branch:
        branch_entity = ReleaseBranch.query.filter_by(product_id=product.id, name=branch).first()
        if branch_entity is None:
            return None, None, Failure(RequestStatus.RELEASE_NOT_FOUND, "Branch not found")
        releases = [r for r in releases if r.branch_id == branch_entity.id]
        if not releases:
            return None, None, Failure(RequestStatus.RELEASE_NOT_FOUND, "No releases found for this branch")

    matching = next((r for r in releases if version and r.version == version), None)

    latest_candidates = [r for r in releases if r.latest]
    latest = next((r for r in latest_candidates if r.branch_id is None), None)
    if latest is None and latest_candidates:
        latest = latest_candidates[0]

    return matching, latest, None


class LicensePipeline:
    """
    Gates shared by every verification endpoint. `license_gates()` returns the
    ordered gates after team and license lookup; callers may append their own.
    """

    def __init__(
        self,
        ctx: VerificationContext,
        request_type: RequestType,
        license_key: str,
        device_identifier: Optional[str],
        customer_id: Optional[str],
        product_id: Optional[str],
    ):
        self.ctx = ctx
        self.request_type = request_type
        self.license_key = license_key
        self.device_identifier = device_identifier
        self.customer_id = customer_id
        self.product_id = product_id

        self.lookup = license_key_lookup(license_key, ctx.team_id, ctx.config.hmac_secret)
        self.team: Optional[Team] = None
        self.license: Optional[License] = None
        self.customer: Optional[Customer] = None
        self.product: Optional[Product] = None
        self.release: Optional[Release] = None
        self.latest_release: Optional[Release] = None

    # ---------- rate limits ----------
    def check_rate_limits(self, ip_prefix: str) -> Optional[Failure]:
        ctx = self.ctx
        if is_trusted_source(self.license_key, ctx.team_id,
                             ctx.config.trusted_license_keys, ctx.config.trusted_team_ids):
            return None

        if ctx.ip_address and ctx.rate_limiter.is_rate_limited(
            f"{ip_prefix}:{ctx.ip_address}", RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW_SECONDS
        ):
            return Failure(RequestStatus.RATE_LIMIT, "Rate limited")

        if ctx.rate_limiter.is_rate_limited(
            f"license-key:{ctx.team_id}:{self.lookup}", RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW_SECONDS
        ):
            return Failure(RequestStatus.RATE_LIMIT, "Rate limited")
        return None

    # ---------- lookups ----------
    def check_team(self, require_limits: bool = False) -> Optional[Failure]:
        team = Team.query.filter(Team.id == self.ctx.team_id, Team.deleted_at.is_(None)).first()
        if team is None or team.settings is None or team.key_pair is None:
            return Failure(RequestStatus.TEAM_NOT_FOUND, "Team not found")
        if require_limits and team.limits is None:
            return Failure(RequestStatus.TEAM_NOT_FOUND, "Team not found")
        self.team = team
        return None

    def check_license(self) -> Optional[Failure]:
        license = (
            License.query.join(Team, License.team_id == Team.id)
            .filter(
                License.team_id == self.ctx.team_id,
                License.license_key_lookup == self.lookup,
                Team.deleted_at.is_(None),
            )
            .first()
        )
        if license is None:
            return Failure(RequestStatus.LICENSE_NOT_FOUND, "License not found")
        self.license = license
        self.customer = next((c for c in license.customers if c.id == self.customer_id), None)
        self.product = next((p for p in license.products if p.id == self.product_id), None)
        return None

    # ---------- gates ----------
    def check_blacklist(self) -> Optional[Failure]:
        return check_blacklist(self.team, self.ctx.ip_address, self.ctx.geo_data, self.device_identifier)

    def check_customer(self) -> Optional[Failure]:
        has_customers = bool(self.license.customers)
        strict_missing = self.team.settings.strict_customers and has_customers and not self.customer_id
        no_match = has_customers and self.customer_id and self.customer is None
        if strict_missing or no_match:
            return Failure(RequestStatus.CUSTOMER_NOT_FOUND, "Customer not found")
        return None

    def check_product(self) -> Optional[Failure]:
        has_products = bool(self.license.products)
        strict_missing = self.team.settings.strict_products and has_products and not self.product_id
        no_match = has_products and self.product_id and self.product is None
        if strict_missing or no_match:
            return Failure(RequestStatus.PRODUCT_NOT_FOUND, "Product not found")
        return None

    def check_suspended(self) -> Optional[Failure]:
        if self.license.suspended:
            return Failure(RequestStatus.LICENSE_SUSPENDED, "License suspended")
        return None

    def check_expiration(self) -> Optional[Failure]:
        return check_license_expiration(self.license, self.ctx.now)

    def check_ip_limit(self) -> Optional[Failure]:
        if not self.license.ip_limit or not self.ctx.ip_address:
            return None
        seen = load_seen_ips(self.ctx.team_id, self.lookup, self.team.settings.ip_limit_period, self.ctx.now)
        return check_ip_limit(self.license, seen, self.ctx.ip_address)

    def check_seats(self) -> Optional[Failure]:
        if not self.license.hwid_limit or not self.device_identifier:
            return None
        return check_seats(
            self.license,
            load_devices(self.license.id),
            self.device_identifier,
            self.team.settings.device_timeout_seconds,
            self.ctx.now,
        )

    def license_gates(self, include_product: bool = True, after_product: Sequence[Gate] = ()) -> List[Gate]:
        gates: List[Gate] = [self.check_blacklist, self.check_customer]
        if include_product:
            gates.append(self.check_product)
            gates += after_product
        gates += [self.check_suspended, self.check_expiration, self.check_ip_limit, self.check_seats]
        return gates

    # ---------- accounting ----------
    def commit(self) -> Optional[Failure]:
        settings = self.team.settings
        release = self.release or self.latest_release
        return commit_accounting(
            AccountingRequest(
                team_id=self.ctx.team_id,
                license_id=self.license.id,
                license_key_lookup=self.lookup,
                request_type=self.request_type,
                ip_limit_period=settings.ip_limit_period,
                device_timeout_seconds=settings.device_timeout_seconds,
                device_identifier=self.device_identifier,
                ip_address=self.ctx.ip_address,
                country=self.ctx.country,
                customer_id=self.customer.id if self.customer else None,
                product_id=self.product.id if self.product else None,
                release_id=release.id if release else None,
            ),
            self.ctx.now,
        )

    # ---------- reporting ----------
    def reject(self, failure: Failure) -> Failure:
        """Logs a rejection and, once the team is known, appends it to the request log."""
        logger.warning(
            "%s rejected request_id=%s team_id=%s license_key=%s status=%s details=%s",
            self.request_type.value.lower(), self.ctx.request_id, self.ctx.team_id,
            mask(self.license_key), failure.status.value, failure.details,
        )
        if self.team is not None:
            log_rejection(
                self.ctx.team_id,
                self.request_type,
                failure.status,
                failure.http_status,
                license_key_lookup=self.lookup if self.license else None,
                customer_id=self.customer.id if self.customer else None,
                product_id=self.product.id if self.product else None,
                release_id=self.release.id if self.release else None,
                device_identifier=self.device_identifier,
                ip_address=self.ctx.ip_address,
                country=self.ctx.country,
            )
        return failure

    def summary(self) -> Dict[str, Any]:
        license = self.license
        return {
            "license": {
                "id": license.id,
                "status": get_license_status(license, self.ctx.now).value,
                "suspended": license.suspended,
                "expirationType": license.expiration_type.value,
                "expirationStart": license.expiration_start.value,
                "expirationDate": _dt(license.expiration_date),
                "expirationDays": license.expiration_days,
                "ipLimit": license.ip_limit,
                "hwidLimit": license.hwid_limit,
            },
            "customers": [
                {"id": c.id, "email": c.email, "fullName": c.full_name} for c in license.customers
            ],
            "products": [{"id": p.id, "name": p.name} for p in license.products],
        }


def _verify_release_gate(pipeline: LicensePipeline, version: Optional[str], branch: Optional[str]) -> Gate:
    def gate() -> Optional[Failure]:
        if pipeline.product is None:
            return None
        release, latest, failure = resolve_release(
            pipeline.product, version, branch, lambda r: r.status == ReleaseStatus.PUBLISHED
        )
        if failure is not None:
            return failure
        has_releases = any(r.status == ReleaseStatus.PUBLISHED for r in pipeline.product.releases)
        strict_no_version = pipeline.team.settings.strict_releases and has_releases and not version
        if strict_no_version or (version and has_releases and release is None):
            return Failure(RequestStatus.RELEASE_NOT_FOUND, "Release not found with specified version")
        pipeline.release, pipeline.latest_release = release, latest
        return None

    return gate


def _handle(ctx: VerificationContext, raw_payload: Any, request_type: RequestType) -> JsonResult:
    heartbeat = request_type == RequestType.HEARTBEAT

    if not is_uuid(ctx.team_id):
        return JsonResult.from_failure(_bad_request("Invalid team UUID"))

    payload, error = parse_verify_payload(raw_payload, require_hardware_identifier=heartbeat)
    if payload is None:
        logger.warning("%s schema validation failed request_id=%s team_id=%s error=%s",
                       request_type.value.lower(), ctx.request_id, ctx.team_id, error)
        return JsonResult.from_failure(_bad_request(error))

    pipeline = LicensePipeline(
        ctx,
        request_type,
        payload.license_key,
        payload.hardware_identifier,
        payload.customer_id,
        payload.product_id,
    )

    gates: List[Gate] = [
        lambda: pipeline.check_rate_limits("license-verify"),
        pipeline.check_team,
        pipeline.check_license,
    ]
    gates += pipeline.license_gates(
        after_product=[_verify_release_gate(pipeline, payload.version, payload.branch)],
    )
    gates.append(pipeline.commit)

    failure = first_failure(gates)
    if failure is not None:
        return JsonResult.from_failure(pipeline.reject(failure))

    extra: Dict[str, Any] = {}
    if payload.challenge:
        extra["challengeResponse"] = sign_challenge(payload.challenge, pipeline.team.key_pair.private_key)
        if heartbeat:
            extra["challenge"] = payload.challenge

    logger.info(
        "%s valid request_id=%s team_id=%s license_id=%s",
        request_type.value.lower(), ctx.request_id, ctx.team_id, pipeline.license.id,
    )
    return JsonResult(
        status=RequestStatus.VALID,
        http_status=200,
        data=pipeline.summary(),
        details="License is valid",
        extra=extra,
    )


def handle_verify(ctx: VerificationContext, payload: Any) -> JsonResult:
    return _handle(ctx, payload, RequestType.VERIFY)


def handle_heartbeat(ctx: VerificationContext, payload: Any) -> JsonResult:
    return _handle(ctx, payload, RequestType.HEARTBEAT)

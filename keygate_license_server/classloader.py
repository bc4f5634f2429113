"""
Classloader downloads: the verification gates, then release resolution, access
checks, session key handling and an encrypted file stream.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Union

from .crypto import SessionKeyError, create_encryption_stream, generate_hmac, private_decrypt
from .models import Release, ReleaseStatus, RequestType
from .results import Failure, Gate, JsonResult, RequestStatus, StreamResult, first_failure
from .storage import StoredObject
from .validation import is_uuid, parse_classloader_payload
from .verification import LicensePipeline, VerificationContext, resolve_release

logger = logging.getLogger(__name__)

SESSION_KEY_LIMIT = 1
SESSION_KEY_WINDOW_SECONDS = 900


class ObjectStorage(Protocol):
    def get_object(self, bucket: str, key: str) -> Optional[StoredObject]: ...


class ClassloaderPipeline(LicensePipeline):
    def __init__(self, ctx: VerificationContext, storage: ObjectStorage, payload):
        super().__init__(
            ctx,
            RequestType.CLASSLOADER,
            payload.license_key,
            payload.hardware_identifier,
            payload.customer_id,
            payload.product_id,
        )
        self.storage = storage
        self.payload = payload
        self.session_key_hex: Optional[str] = None
        self.stored: Optional[StoredObject] = None

    def check_allowed(self) -> Optional[Failure]:
        if not self.team.limits.allow_classloader:
            return Failure(
                RequestStatus.FORBIDDEN,
                "Using classloader requires a higher plan. Either upgrade or contact support.",
            )
        return None

    def check_product_match(self) -> Optional[Failure]:
        if self.product is None:
            return Failure(RequestStatus.PRODUCT_NOT_FOUND, "Product not found")
        return None

    def check_release(self) -> Optional[Failure]:
        version = self.payload.version
        release, latest, failure = resolve_release(
            self.product, version, self.payload.branch, lambda r: r.file is not None
        )
        if failure is not None:
            return failure

        self.latest_release = latest
        chosen = release if version else latest
        if chosen is None:
            return Failure(RequestStatus.RELEASE_NOT_FOUND, "Release not found")
        self.release = chosen
        return None

    def check_release_status(self) -> Optional[Failure]:
        if self.release.status == ReleaseStatus.ARCHIVED:
            return Failure(RequestStatus.RELEASE_ARCHIVED, "Release is archived")
        if self.release.status == ReleaseStatus.DRAFT:
            return Failure(RequestStatus.RELEASE_DRAFT, "Release is draft")
        return None

    def check_release_access(self) -> Optional[Failure]:
        allowed = {l.id for l in self.release.allowed_licenses}
        if allowed and self.license.id not in allowed:
            return Failure(RequestStatus.NO_ACCESS_TO_RELEASE, "License does not have access to this release")
        return None

    def check_session_key(self) -> Optional[Failure]:
        try:
            decrypted = private_decrypt(self.payload.session_key, self.team.key_pair.private_key)
        except SessionKeyError as e:
            logger.warning("session key rejected request_id=%s team_id=%s reason=%s",
                           self.ctx.request_id, self.ctx.team_id, e)
            return Failure(RequestStatus.INVALID_SESSION_KEY, "Invalid session key")

        session_key_hex = decrypted.hex()
        key_hash = generate_hmac(session_key_hex, self.ctx.config.hmac_secret)
        if self.ctx.rate_limiter.is_rate_limited(
            f"session-key:{self.ctx.team_id}:{key_hash}", SESSION_KEY_LIMIT, SESSION_KEY_WINDOW_SECONDS
        ):
            return Failure(RequestStatus.RATE_LIMIT, "Rate limited")

        self.session_key_hex = session_key_hex
        return None

    def fetch_file(self) -> Optional[Failure]:
        stored = self.storage.get_object(self.ctx.config.storage_bucket, self.release.file.key)
        if stored is None:
            return Failure(RequestStatus.RELEASE_NOT_FOUND, "File not found")
        self.stored = stored
        return None

    def close_file(self) -> None:
        if self.stored is not None:
            self.stored.close()
            self.stored = None

    def gates(self) -> List[Gate]:
        gates: List[Gate] = [
            lambda: self.check_rate_limits("license-encrypted"),
            lambda: self.check_team(require_limits=True),
            self.check_allowed,
            self.check_license,
        ]
        gates += self.license_gates(include_product=False)
        gates += [
            self.check_product_match,
            self.check_release,
            self.check_release_status,
            self.check_release_access,
            self.check_session_key,
            self.fetch_file,
            self.commit,
        ]
        return gates

    def headers(self) -> Dict[str, str]:
        release: Release = self.release
        file = release.file
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Security-Policy": "default-src 'none'",
            "X-Content-Type-Options": "nosniff",
            "X-File-Size": str(file.size),
            "X-Product-Name": self.product.name,
            "X-Release-Status": release.status.value,
            "X-Release-Created-At": release.created_at.isoformat() + "Z",
            "X-File-Created-At": file.created_at.isoformat() + "Z",
            "X-Version": release.version,
        }
        if self.latest_release is not None:
            headers["X-Latest-Version"] = self.latest_release.version
        if file.main_class_name:
            headers["X-Main-Class"] = file.main_class_name
        if self.ctx.config.version:
            headers["X-Keygate-Version"] = self.ctx.config.version
        return headers


def handle_classloader(
    ctx: VerificationContext, raw_payload: Any, storage: ObjectStorage
) -> Union[StreamResult, JsonResult]:
    if not is_uuid(ctx.team_id):
        return JsonResult.from_failure(Failure(RequestStatus.BAD_REQUEST, "Invalid team UUID"))

    payload, error = parse_classloader_payload(raw_payload)
    if payload is None:
        logger.warning("classloader schema validation failed request_id=%s team_id=%s error=%s",
                       ctx.request_id, ctx.team_id, error)
        return JsonResult.from_failure(Failure(RequestStatus.BAD_REQUEST, error))

    pipeline = ClassloaderPipeline(ctx, storage, payload)
    try:
        failure = first_failure(pipeline.gates())
        if failure is not None:
            pipeline.close_file()
            return JsonResult.from_failure(pipeline.reject(failure))

        headers = pipeline.headers()
    except Exception:
        pipeline.close_file()
        raise

    logger.info(
        "classloader streaming request_id=%s team_id=%s release_id=%s size=%s",
        ctx.request_id, ctx.team_id, pipeline.release.id, headers["X-File-Size"],
    )
    stored = pipeline.stored
    encrypt = create_encryption_stream(pipeline.session_key_hex)
    return StreamResult(stream=encrypt(stored.chunks), headers=headers, close=stored.close)

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List


class ConfigError(RuntimeError):
    pass


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


@dataclass
class ServerConfig:
    """
    Runtime configuration for the verification server.
    Keep this backward-compatible: add new fields with defaults only.
    """
    database_uri: str = "sqlite:///keygate_license.db"
    redis_url: str = "redis://localhost:6379/0"
    redis_timeout_seconds: float = 2.0

    # Keys the license key lookup hashes and rate-limit keys
    hmac_secret: str = ""

    # Object storage holding release files
    storage_bucket: str = ""
    aws_access_key: str = ""
    aws_secret_key: str = ""
    aws_region: str = ""
    storage_endpoint_url: str = ""

    # Trusted sources skip per-IP and per-license rate limits
    trusted_license_keys: List[str] = field(default_factory=list)
    trusted_team_ids: List[str] = field(default_factory=list)

    log_level: str = "INFO"
    version: str = ""


def load_config() -> ServerConfig:
    from .db import get_database_uri

    hmac_secret = os.environ.get("HMAC_SECRET", "").strip()
    if not hmac_secret:
        raise ConfigError("HMAC_SECRET env var missing.")

    return ServerConfig(
        database_uri=get_database_uri(),
        redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
        redis_timeout_seconds=float(os.environ.get("REDIS_TIMEOUT_SECONDS", "2") or 2),
        hmac_secret=hmac_secret,
        storage_bucket=os.environ.get("PRIVATE_OBJECT_STORAGE_BUCKET_NAME", ""),
        aws_access_key=os.environ.get("AWS_ACCESS_KEY_ID", ""),
        aws_secret_key=os.environ.get("AWS_SECRET_ACCESS_KEY", ""),
        aws_region=os.environ.get("AWS_REGION", ""),
        storage_endpoint_url=os.environ.get("PRIVATE_OBJECT_STORAGE_ENDPOINT", ""),
        trusted_license_keys=_split_csv(os.environ.get("TRUSTED_LICENSE_KEYS", "")),
        trusted_team_ids=_split_csv(os.environ.get("TRUSTED_TEAM_IDS", "")),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        version=os.environ.get("KEYGATE_VERSION", ""),
    )

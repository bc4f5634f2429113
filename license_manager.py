# license_manager.py
from __future__ import annotations

import hashlib
import json
import os
import platform
import secrets
import socket
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import requests

from keygate_license_server.crypto import create_decryption_stream, public_encrypt, verify_challenge


@dataclass
class LicenseResult:
    ok: bool
    message: str
    license_key: str
    device_id: str
    status_code: int = 0
    raw: Optional[Dict[str, Any]] = None


@dataclass
class ReleaseDownload:
    ok: bool
    message: str
    path: Optional[Path] = None
    version: str = ""
    main_class: str = ""
    raw: Optional[Dict[str, Any]] = None


class LicenseManager:
    """
    Client for the keygate verification endpoints:
    - Generates a stable device id locally, hashed so raw identifiers never leave the machine
    - verify / heartbeat with an optional signed challenge
    - classloader downloads with a one-time RSA-wrapped session key
    - Remembers the last valid license key on disk
    """

    def __init__(
        self,
        team_id: str,
        api_base: Optional[str] = None,
        public_key_pem: Optional[str] = None,
        app_name: str = "KEYGATE",
        storage_dir: Optional[Path] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.team_id = team_id
        self.api_base = (api_base or os.getenv("KEYGATE_LICENSE_API", "")).strip() or "http://127.0.0.1:5000"
        self.public_key_pem = public_key_pem
        self.app_name = app_name
        self.http = session or requests.Session()

        if storage_dir is None:
            storage_dir = Path.home() / f".{app_name.lower()}"
        self.storage_dir = storage_dir
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.state_path = self.storage_dir / "license_state.json"

        self._device_id = self._make_device_id()

    # ---------------------------
    # Device ID (stable)
    # ---------------------------
    def get_device_id(self) -> str:
        return self._device_id

    def _make_device_id(self) -> str:
        parts = [
            platform.system(),
            platform.machine(),
            socket.gethostname(),
            str(uuid.getnode()),
            self.app_name,
        ]
        raw = "|".join(parts).encode("utf-8", errors="ignore")
        return hashlib.sha256(raw).hexdigest()[:32].upper()

    # ---------------------------
    # Local state
    # ---------------------------
    def get_saved_license_key(self) -> str:
        return str(self._load_state().get("license_key", "") or "")

    def _load_state(self) -> Dict[str, Any]:
        if not self.state_path.exists():
            return {}
        try:
            return json.loads(self.state_path.read_text(encoding="utf-8")) or {}
        except (OSError, ValueError):
            return {}

    def _save_state(self, license_key: str) -> None:
        data = {"app": self.app_name, "license_key": license_key, "device_id": self._device_id}
        self.state_path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    # ---------------------------
    # HTTP helpers
    # ---------------------------
    def _url(self, action: str) -> str:
        return f"{self.api_base.rstrip('/')}/v1/client/teams/{self.team_id}/verification/{action}"

    def _post(self, action: str, payload: Dict[str, Any]) -> requests.Response:
        return self.http.post(self._url(action), json=payload, timeout=12)

    # ---------------------------
    # Public API
    # ---------------------------
    def _check(self, action: str, license_key: str, customer_id: Optional[str], product_id: Optional[str]) -> LicenseResult:
        license_key = (license_key or "").strip()
        device_id = self._device_id

        if not license_key:
            return LicenseResult(ok=False, message="Please enter a license key.",
                                 license_key=license_key, device_id=device_id)

        challenge = secrets.token_hex(16)
        payload: Dict[str, Any] = {
            "licenseKey": license_key,
            "hardwareIdentifier": device_id,
            "challenge": challenge,
        }
        if customer_id:
            payload["customerId"] = customer_id
        if product_id:
            payload["productId"] = product_id

        try:
            r = self._post(action, payload)
            data = r.json() if r.content else {}
        except requests.exceptions.RequestException as e:
            return LicenseResult(ok=False, message=f"License check failed: {e}",
                                 license_key=license_key, device_id=device_id)
        except ValueError:
            return LicenseResult(ok=False, message="License server returned an invalid response.",
                                 license_key=license_key, device_id=device_id, status_code=r.status_code)

        result = data.get("result") or {}
        ok = bool(result.get("valid", False))
        msg = str(result.get("details", "License check complete."))

        if ok and self.public_key_pem:
            signature = result.get("challengeResponse") or ""
            if not verify_challenge(challenge, signature, self.public_key_pem):
                ok, msg = False, "License server signature mismatch."

        if ok:
            self._save_state(license_key)

        return LicenseResult(ok=ok, message=msg, license_key=license_key, device_id=device_id,
                             status_code=r.status_code, raw=data)

    def verify_license(self, license_key: str, customer_id: Optional[str] = None,
                       product_id: Optional[str] = None) -> LicenseResult:
        return self._check("verify", license_key, customer_id, product_id)

    def heartbeat(self, license_key: str, customer_id: Optional[str] = None,
                  product_id: Optional[str] = None) -> LicenseResult:
        return self._check("heartbeat", license_key, customer_id, product_id)

    def download_release(
        self,
        license_key: str,
        product_id: str,
        out_path: Path,
        version: Optional[str] = None,
        branch: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> ReleaseDownload:
        if not self.public_key_pem:
            raise RuntimeError("public_key_pem is required for classloader downloads.")

        session_key = secrets.token_bytes(32)
        params = {
            "licenseKey": license_key,
            "productId": product_id,
            "hardwareIdentifier": self._device_id,
            "sessionKey": public_encrypt(session_key, self.public_key_pem),
        }
        if version:
            params["version"] = version
        if branch:
            params["branch"] = branch
        if customer_id:
            params["customerId"] = customer_id

        try:
            r = self.http.get(self._url("classloader"), params=params, timeout=60, stream=True)
        except requests.exceptions.RequestException as e:
            return ReleaseDownload(ok=False, message=f"Download failed: {e}")

        with r:
            if r.headers.get("Content-Type", "").startswith("application/json"):
                data = r.json()
                result = data.get("result") or {}
                return ReleaseDownload(ok=False, message=str(result.get("details", "Download rejected.")), raw=data)

            decrypt = create_decryption_stream(session_key.hex())
            chunks: Iterator[bytes] = r.iter_content(chunk_size=64 * 1024)
            with open(out_path, "wb") as fh:
                for plain in decrypt(chunks):
                    fh.write(plain)

            return ReleaseDownload(
                ok=True,
                message="Release downloaded.",
                path=out_path,
                version=r.headers.get("X-Version", ""),
                main_class=r.headers.get("X-Main-Class", ""),
            )

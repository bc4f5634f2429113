import logging
import os
import uuid
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import BadRequest

from .classloader import handle_classloader
from .config import ServerConfig, load_config
from .db import db, get_engine_options
from .geo import resolve_geo, resolve_ip
from .models import utcnow
from .rate_limiter import RateLimiter
from .results import JsonResult, RequestStatus, StreamResult
from .storage import S3Storage
from .verification import VerificationContext, handle_heartbeat, handle_verify

logger = logging.getLogger(__name__)

VERIFICATION_ROUTE = "/v1/client/teams/<team_id>/verification"


def _json(result: JsonResult):
    return jsonify(result.to_response()), result.http_status


def _error(status: RequestStatus, http_status: int, details: str):
    return _json(JsonResult(status=status, http_status=http_status, details=details))


def _with_hardware_identifier(data: Dict[str, Any]) -> Dict[str, Any]:
    """`deviceIdentifier` is the deprecated name; `hardwareIdentifier` wins when both are sent."""
    data = dict(data)
    legacy = data.pop("deviceIdentifier", None)
    if not data.get("hardwareIdentifier") and legacy:
        data["hardwareIdentifier"] = legacy
    return data


def create_app(
    config: Optional[ServerConfig] = None,
    rate_limiter: Optional[RateLimiter] = None,
    storage=None,
) -> Flask:
    config = config or load_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)

    app.config["SQLALCHEMY_DATABASE_URI"] = config.database_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = get_engine_options(config.database_uri)

    db.init_app(app)

    if rate_limiter is None:
        rate_limiter = RateLimiter.from_url(config.redis_url, config.redis_timeout_seconds)
    if storage is None:
        storage = S3Storage(
            access_key=config.aws_access_key,
            secret_key=config.aws_secret_key,
            region=config.aws_region,
            endpoint_url=config.storage_endpoint_url,
        )

    app.extensions["keygate"] = {"config": config, "rate_limiter": rate_limiter, "storage": storage}

    def _context(team_id: str, request_id: str) -> VerificationContext:
        return VerificationContext(
            request_id=request_id,
            team_id=team_id,
            ip_address=resolve_ip(request.headers, request.remote_addr),
            geo_data=resolve_geo(request.headers),
            config=config,
            rate_limiter=rate_limiter,
        )

    def _run_json(name: str, team_id: str, handler):
        request_id = str(uuid.uuid4())
        started = utcnow()
        logger.info("%s started request_id=%s team_id=%s", name, request_id, team_id)
        try:
            raw = request.get_json(force=True)
            if isinstance(raw, dict):
                raw = _with_hardware_identifier(raw)
            result = handler(_context(team_id, request_id), raw)
        except BadRequest:
            db.session.rollback()
            logger.warning("%s invalid json request_id=%s team_id=%s", name, request_id, team_id)
            return _error(RequestStatus.BAD_REQUEST, 400, "Invalid JSON payload")
        except Exception:
            db.session.rollback()
            logger.exception("%s failed request_id=%s team_id=%s", name, request_id, team_id)
            return _error(RequestStatus.INTERNAL_SERVER_ERROR, 500, "Internal server error")

        elapsed_ms = int((utcnow() - started).total_seconds() * 1000)
        logger.info(
            "%s completed request_id=%s team_id=%s status=%s code=%s ms=%s",
            name, request_id, team_id, result.status.value, result.http_status, elapsed_ms,
        )
        return _json(result)

    @app.get("/health")
    def health():
        return jsonify({"ok": True, "service": "keygate-license", "time": utcnow().isoformat()})

    @app.post(f"{VERIFICATION_ROUTE}/verify")
    def verify(team_id: str):
        return _run_json("verify", team_id, handle_verify)

    @app.post(f"{VERIFICATION_ROUTE}/heartbeat")
    def heartbeat(team_id: str):
        return _run_json("heartbeat", team_id, handle_heartbeat)

    @app.get(f"{VERIFICATION_ROUTE}/classloader")
    def classloader(team_id: str):
        request_id = str(uuid.uuid4())
        logger.info("classloader started request_id=%s team_id=%s", request_id, team_id)

        payload = {k: v for k, v in request.args.items() if v != ""}
        try:
            result = handle_classloader(_context(team_id, request_id), _with_hardware_identifier(payload), storage)
        except Exception:
            db.session.rollback()
            logger.exception("classloader failed request_id=%s team_id=%s", request_id, team_id)
            return _error(RequestStatus.INTERNAL_SERVER_ERROR, 500, "Internal server error")

        if isinstance(result, StreamResult):
            response = Response(result.stream, status=200, headers=result.headers)
            if result.close is not None:
                response.call_on_close(result.close)
            return response

        logger.info(
            "classloader completed request_id=%s team_id=%s status=%s code=%s",
            request_id, team_id, result.status.value, result.http_status,
        )
        return _json(result)

    return app


# local dev helper
if __name__ == "__main__":
    app = create_app()
    with app.app_context():
        db.create_all()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "5000")), debug=True)

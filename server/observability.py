# server/observability.py
# Cross-cutting concerns: JSON logging, request IDs, latency logging, JSON error bodies.
# Error bodies share one shape: {"error": <stable message>, "code": <status>, "request_id": ...}.
# Log lines at the boundary carry the error kind and instance id, never payloads or keys.

import sys
import time
import logging
from uuid import uuid4
from typing import Any, Dict

from flask import g, request, jsonify
from werkzeug.exceptions import HTTPException
from pydantic import ValidationError
from pythonjsonlogger.json import JsonFormatter

try:
    from .errors import GatewayError  # type: ignore
except ImportError:  # top-level mode
    from errors import GatewayError  # type: ignore


def _json_formatter() -> logging.Formatter:
    return JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s "
        "%(request_id)s %(method)s %(path)s %(status)s %(latency_ms)s "
        "%(remote_ip)s %(user_agent)s %(event)s %(instance_id)s %(error_kind)s"
    )


def init_logging(app, level: str = "INFO") -> None:
    if app.config.get("_OBS_LOGGING_INIT", False):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_json_formatter())
    app.logger.handlers.clear()
    app.logger.addHandler(handler)
    app.logger.setLevel(getattr(logging, level, logging.INFO))
    app.logger.propagate = False
    app.config["_OBS_LOGGING_INIT"] = True


def client_ip() -> str:
    """Best guess at the caller's address for access logs (CF header, then first XFF hop)."""
    ip = request.headers.get("CF-Connecting-IP")
    if ip:
        return ip.strip()
    xff = request.headers.get("X-Forwarded-For")
    if xff:
        return xff.split(",")[0].strip()
    return request.remote_addr or ""


def error_payload(message: str, code: int) -> Dict[str, Any]:
    """Unified error body for every JSON error response."""
    return {
        "error": message,
        "code": code,
        "request_id": getattr(g, "request_id", None),
    }


def register_request_id(app) -> None:
    if app.config.get("_OBS_REQID_INIT", False):
        return

    @app.before_request
    def _before_request():
        g.request_id = str(uuid4())
        g._start_time = time.monotonic()

    @app.after_request
    def _after_request(resp):
        resp.headers["X-Request-ID"] = getattr(g, "request_id", "")
        return resp

    app.config["_OBS_REQID_INIT"] = True


def register_latency_logging(app) -> None:
    if app.config.get("_OBS_LATENCY_INIT", False):
        return

    @app.after_request
    def _access_log(resp):
        start = getattr(g, "_start_time", None)
        latency_ms = int((time.monotonic() - start) * 1000) if start else None
        record: Dict[str, Any] = {
            "request_id": getattr(g, "request_id", None),
            "method": request.method,
            "path": request.path,
            "status": resp.status_code,
            "latency_ms": latency_ms,  # time to first byte for streams
            "remote_ip": client_ip(),
            "user_agent": request.user_agent.string if request.user_agent else None,
            "event": "http.access",
        }
        app.logger.info("http.access", extra=record)
        return resp

    app.config["_OBS_LATENCY_INIT"] = True


def register_error_handlers(app) -> None:
    if app.config.get("_OBS_ERRORS_INIT", False):
        return

    @app.errorhandler(GatewayError)
    def _gateway_error(e: GatewayError):
        payload = error_payload(e.message, e.status)
        level = logging.ERROR if e.status >= 500 else logging.WARNING
        app.logger.log(
            level,
            "http.error",
            extra={
                "event": "http.error",
                "error_kind": e.kind,
                "instance_id": e.instance_id,
                "status": e.status,
                "request_id": payload["request_id"],
            },
        )
        return jsonify(payload), e.status, e.headers()

    @app.errorhandler(ValidationError)
    def _validation_error(e: ValidationError):
        payload = error_payload("Validation error", 400)
        app.logger.warning("http.error", extra={"event": "http.error", "error_kind": "validation", "status": 400})
        return jsonify(payload), 400

    @app.errorhandler(HTTPException)
    def _http_exception(e: HTTPException):
        message = "Request too large" if e.code == 413 else (e.name or "Error")
        payload = error_payload(message, e.code or 500)
        app.logger.warning(
            "http.error",
            extra={"event": "http.error", "error_kind": "http", "status": e.code, "request_id": payload["request_id"]},
        )
        return jsonify(payload), e.code

    @app.errorhandler(Exception)
    def _unhandled_exception(e: Exception):
        payload = error_payload("Internal server error", 500)
        app.logger.error(
            "http.exception",
            exc_info=True,
            extra={"event": "http.exception", "error_kind": "internal", "status": 500, "request_id": payload["request_id"]},
        )
        return jsonify(payload), 500

    app.config["_OBS_ERRORS_INIT"] = True

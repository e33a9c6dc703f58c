# server/security.py
# CORS for the embeddable widget plus common security headers on every response.
# - Allow-Origin echoes the caller's Origin (or "*"); origin policy itself is
#   enforced per instance by services/origin.py, not here.
# - OPTIONS on any path is a preflight and answers 204.

from flask import request

CORS_HEADERS = {
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Accept, Origin",
    "Access-Control-Max-Age": "86400",
}


def cors_headers(origin=None) -> dict:
    return {**CORS_HEADERS, "Access-Control-Allow-Origin": origin or "*"}


def register_cors(app) -> None:
    """Answer preflights and attach the CORS header set to all responses."""
    if app.config.get("_CORS_INIT", False):
        return  # idempotent for reloader

    @app.before_request
    def _preflight():
        if request.method == "OPTIONS":
            return app.response_class(status=204)
        return None

    @app.after_request
    def _cors(resp):
        for name, value in cors_headers(request.headers.get("Origin")).items():
            resp.headers[name] = value
        resp.headers.add("Vary", "Origin")
        return resp

    app.config["_CORS_INIT"] = True


def register_security_headers(app) -> None:
    """Attach common security headers on all responses."""
    if app.config.get("_SEC_HEADERS_INIT", False):
        return

    @app.after_request
    def _security_headers(resp):
        # API only: nothing here should ever be framed or sniffed
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")

        # HSTS only makes sense over HTTPS
        if app.config.get("PREFERRED_URL_SCHEME", "https") == "https":
            resp.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )
        return resp

    app.config["_SEC_HEADERS_INIT"] = True

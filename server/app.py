# server/app.py
# Flask app factory: wires settings, key-value platform, services and routes.

import time

# ---------------------- Import strategy (works in BOTH launch modes) ----------------------
# If launched with:  gunicorn --chdir server app:app
#   -> this module is loaded as a *top-level* module (no package), so use absolute imports.
# If launched with:  gunicorn server.app:app
#   -> this module is loaded as part of the 'server' package, so use relative imports.
if __package__ in (None, ""):  # top-level launch: gunicorn --chdir server app:app
    from config import load_settings, make_flask_app
    from observability import (  # JSON logging & middleware
        init_logging,
        register_request_id,
        register_latency_logging,
        register_error_handlers,
    )
    from security import register_cors, register_security_headers
    from routes.chat import chat_bp
    from routes.instances import instances_bp
    from services.analytics import AnalyticsRecorder
    from services.config_store import ConfigStore
    from services.counter_store import CounterStore
    from services.kv_store import Platform
    from services.origin import OriginAuthorizer
    from services.pipeline import ChatPipeline
    from services.rate_limiter import RateLimiter
    from services.upstream import UpstreamProxy
else:  # package launch: gunicorn server.app:app
    from .config import load_settings, make_flask_app
    from .observability import (
        init_logging,
        register_request_id,
        register_latency_logging,
        register_error_handlers,
    )
    from .security import register_cors, register_security_headers
    from .routes.chat import chat_bp
    from .routes.instances import instances_bp
    from .services.analytics import AnalyticsRecorder
    from .services.config_store import ConfigStore
    from .services.counter_store import CounterStore
    from .services.kv_store import Platform
    from .services.origin import OriginAuthorizer
    from .services.pipeline import ChatPipeline
    from .services.rate_limiter import RateLimiter
    from .services.upstream import UpstreamProxy
# ------------------------------------------------------------------------------------------------


def create_app(settings=None, platform=None, transport=None, clock=None):
    """
    Build the gateway.
    - settings:  Settings (default: from environment)
    - platform:  Platform with the three KV namespaces (default: Redis if KV_URL, else memory)
    - transport: httpx transport for the upstream client (tests pass httpx.MockTransport)
    - clock:     epoch-seconds callable driving rate limits and analytics (tests advance it)
    """
    settings = settings or load_settings()
    clock = clock or time.time
    if platform is None:
        platform = Platform.from_url(settings.kv_url) if settings.kv_url else Platform.in_memory(clock)

    app = make_flask_app(settings)

    # ---------------------- Cross-cutting initialization ----------------------
    init_logging(app, settings.log_level)
    register_request_id(app)
    register_latency_logging(app)
    register_error_handlers(app)
    register_cors(app)
    register_security_headers(app)

    if not settings.kv_url:
        app.logger.warning("kv.memory", extra={"event": "kv.memory"})  # per-process stores only

    # ---------------------- Services ------------------------------------------
    pipeline = ChatPipeline(
        configs=ConfigStore(platform.config_store, cache_ttl=settings.config_cache_ttl, logger=app.logger),
        authorizer=OriginAuthorizer(settings.service_hosts, logger=app.logger),
        limiter=RateLimiter(CounterStore(platform.counter_store), logger=app.logger),
        proxy=UpstreamProxy(
            settings.api_host,
            timeout=settings.upstream_timeout,
            transport=transport,
            logger=app.logger,
        ),
        analytics=AnalyticsRecorder(platform.analytics_store, logger=app.logger),
        default_api_key=settings.default_api_key,
        clock=clock,
        logger=app.logger,
    )
    app.extensions["chat_pipeline"] = pipeline
    app.extensions["kv_platform"] = platform

    # ---------------------- Routes --------------------------------------------
    app.register_blueprint(chat_bp)
    app.register_blueprint(instances_bp)

    @app.route("/health", methods=["GET"])
    def health():
        return {"status": "ok"}, 200  # for load balancer health checks

    return app


app = create_app()

if __name__ == "__main__":
    # Local dev convenience; production uses gunicorn
    app.run(debug=True)

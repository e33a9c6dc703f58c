# server/config.py
# Process-wide gateway settings, read once from the environment (.env in dev).
# Settings are immutable after start and injected into components by app.create_app().

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv
from flask import Flask

load_dotenv()  # load .env for local dev

DEFAULT_API_HOST = "https://api.typingmind.com"
DEFAULT_MAX_CONTENT_LENGTH = 1024 * 1024  # 1 MiB request bodies


@dataclass(frozen=True)
class Settings:
    default_api_key: str = field(default="", repr=False)
    api_host: str = DEFAULT_API_HOST
    upstream_timeout: float = 30.0
    kv_url: Optional[str] = None               # Redis URL; None -> in-memory stores
    config_cache_ttl: float = 0.0              # seconds, clamped to 60 by ConfigStore
    service_hosts: Tuple[str, ...] = ()        # gateway's own hostnames (same-origin rule)
    max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH
    log_level: str = "INFO"


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def load_settings() -> Settings:
    hosts = os.getenv("SERVICE_HOST", "")
    return Settings(
        default_api_key=os.getenv("DEFAULT_API_KEY", ""),
        api_host=os.getenv("TYPINGMIND_API_HOST") or DEFAULT_API_HOST,
        upstream_timeout=_float_env("UPSTREAM_TIMEOUT", 30.0),
        kv_url=os.getenv("KV_URL") or os.getenv("REDIS_URL") or None,
        config_cache_ttl=_float_env("CONFIG_CACHE_TTL", 0.0),
        service_hosts=tuple(h.strip() for h in hosts.split(",") if h.strip()),
        max_content_length=_int_env("MAX_CONTENT_LENGTH", DEFAULT_MAX_CONTENT_LENGTH),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def make_flask_app(settings: Settings) -> Flask:
    """Bare Flask app carrying the settings; wiring happens in app.create_app()."""
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_content_length
    app.config["GATEWAY_SETTINGS"] = settings
    app.config["PREFERRED_URL_SCHEME"] = os.getenv("PREFERRED_URL_SCHEME", "https")
    app.json.sort_keys = False  # relay upstream JSON in its own key order
    return app

# server/services/origin.py
# Decides whether a browser request may use an instance, from Origin/Referer/Host.
# Pattern grammar is deliberately narrow:
#   domains: "*" (any), "*.base" (base and its subdomains), otherwise exact
#   paths:   "*" matches any run of characters, everything else is literal

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional
from urllib.parse import SplitResult, urlsplit

try:
    from ..models import InstanceConfig  # type: ignore
except ImportError:  # top-level mode
    from models import InstanceConfig  # type: ignore


def parse_request_url(value: Optional[str]) -> Optional[SplitResult]:
    """Parse an Origin/Referer value; None unless it has a scheme and a hostname."""
    if not value:
        return None
    try:
        parts = urlsplit(value.strip())
        hostname = parts.hostname
    except ValueError:
        return None
    if not parts.scheme or not hostname:
        return None
    return parts


def request_domain(origin: Optional[str], referer: Optional[str]) -> str:
    """Hostname the request came from, for analytics tallies."""
    parts = parse_request_url(origin or referer)
    return parts.hostname if parts else "unknown"


def domain_matches(hostname: str, pattern: str) -> bool:
    pattern = pattern.strip().lower()
    if pattern == "*":
        return True
    if pattern.startswith("*."):
        base = pattern[2:]
        return hostname == base or hostname.endswith(f".{base}")
    return hostname == pattern


def path_pattern(pattern: str) -> "re.Pattern[str]":
    return re.compile("".join(".*" if ch == "*" else re.escape(ch) for ch in pattern))


def path_matches(pathname: str, pattern: str) -> bool:
    return path_pattern(pattern).fullmatch(pathname) is not None


def _host_only(host: str) -> str:
    host = host.strip().lower()
    if host.startswith("["):  # [ipv6]:port
        return host.split("]", 1)[0] + "]"
    return host.rsplit(":", 1)[0] if host.count(":") == 1 else host


class OriginAuthorizer:
    """Origin/path allowlisting for one instance at a time.

    `service_hosts` are the gateway's own hostnames. A request with no Origin
    whose Host is one of them is same-origin and always allowed; with no
    service hosts configured that shortcut is off.
    """

    def __init__(self, service_hosts: Iterable[str] = (), logger: Optional[logging.Logger] = None) -> None:
        self._service_hosts = frozenset(_host_only(h) for h in service_hosts if h.strip())
        self._logger = logger or logging.getLogger(__name__)

    def is_same_origin(self, origin: Optional[str], host: Optional[str]) -> bool:
        return not origin and bool(host) and _host_only(host) in self._service_hosts

    def authorize(
        self,
        config: InstanceConfig,
        *,
        origin: Optional[str] = None,
        referer: Optional[str] = None,
        host: Optional[str] = None,
    ) -> bool:
        if self.is_same_origin(origin, host):
            return True

        request_url = origin or referer
        if not request_url:
            self._deny(config, "no_origin")
            return False

        parts = parse_request_url(request_url)
        if parts is None:
            self._deny(config, "unparseable_origin")
            return False

        hostname = parts.hostname or ""
        if not any(domain_matches(hostname, d) for d in config.allowed_domains):
            self._deny(config, "domain", hostname=hostname)
            return False

        if config.allowed_paths:
            pathname = parts.path or "/"
            if not any(path_matches(pathname, p) for p in config.allowed_paths):
                self._deny(config, "path", hostname=hostname)
                return False

        return True

    def _deny(self, config: InstanceConfig, reason: str, hostname: Optional[str] = None) -> None:
        self._logger.info(
            "origin.denied",
            extra={"event": "origin.denied", "instance_id": config.id, "reason": reason, "hostname": hostname},
        )

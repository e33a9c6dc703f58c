# server/services/rate_limiter.py
# Per-instance sliding-window limits on two axes, evaluated in order:
#   1. IP      (CF-Connecting-IP, else "unknown"), 1 hour,     rateLimit.perHour
#   2. session (only when a sessionId is sent),    10 minutes, rateLimit.perSession
# Read-modify-write against the counter store without locking: concurrent
# requests on one key may overshoot the budget slightly.
# Store read failures admit the request; write failures are logged only.

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

try:
    from ..errors import StoreUnavailable  # type: ignore
    from ..models import InstanceConfig  # type: ignore
except ImportError:  # top-level mode
    from errors import StoreUnavailable  # type: ignore
    from models import InstanceConfig  # type: ignore

from .counter_store import CounterStore


@dataclass(frozen=True)
class Axis:
    name: str
    label: str
    window_seconds: int

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


IP_AXIS = Axis("ip", "IP", 60 * 60)
SESSION_AXIS = Axis("session", "Session", 10 * 60)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    axis: Optional[str] = None
    retry_after: Optional[int] = None  # seconds, set on denials


ALLOW = RateLimitDecision(allowed=True)


def counter_key(axis: Axis, instance_id: str, principal: str) -> str:
    return f"ratelimit:{axis.name}:{instance_id}:{principal}"


def ip_principal(headers: Mapping[str, str]) -> str:
    """Client IP as reported by the edge; the limiter trusts nothing else."""
    ip = (headers.get("CF-Connecting-IP") or "").strip()
    return ip or "unknown"


def _seconds_until_free(recent: List[int], axis: Axis, now_ms: int) -> int:
    # The oldest event leaves the window first.
    return max(1, math.ceil((min(recent) + axis.window_ms - now_ms) / 1000))


class RateLimiter:
    def __init__(self, counters: CounterStore, logger: Optional[logging.Logger] = None) -> None:
        self._counters = counters
        self._logger = logger or logging.getLogger(__name__)

    def check(
        self,
        config: InstanceConfig,
        *,
        ip: str,
        session_id: Optional[str],
        now_ms: int,
    ) -> RateLimitDecision:
        """Consume one slot on each active axis or report the first exhausted one."""
        decision = self._consume(IP_AXIS, config.id, ip or "unknown", config.rate_limit.per_hour, now_ms)
        if not decision.allowed or not session_id:
            return decision
        return self._consume(SESSION_AXIS, config.id, session_id, config.rate_limit.per_session, now_ms)

    def _consume(self, axis: Axis, instance_id: str, principal: str, budget: int, now_ms: int) -> RateLimitDecision:
        key = counter_key(axis, instance_id, principal)
        try:
            stamps = self._counters.get(key)
        except StoreUnavailable:
            self._logger.warning(
                "ratelimit.read_failed",
                exc_info=True,
                extra={"event": "ratelimit.read_failed", "instance_id": instance_id, "axis": axis.name},
            )
            return ALLOW  # fail open

        cutoff = now_ms - axis.window_ms
        recent = [t for t in stamps if t > cutoff]
        if len(recent) >= budget:
            self._logger.info(
                "ratelimit.denied",
                extra={"event": "ratelimit.denied", "instance_id": instance_id, "axis": axis.name},
            )
            return RateLimitDecision(
                allowed=False,
                reason=f"{axis.label} rate limit exceeded",
                axis=axis.name,
                retry_after=_seconds_until_free(recent, axis, now_ms),
            )

        recent.append(now_ms)
        try:
            self._counters.put(key, recent, axis.window_seconds)
        except StoreUnavailable:
            self._logger.warning(
                "ratelimit.write_failed",
                exc_info=True,
                extra={"event": "ratelimit.write_failed", "instance_id": instance_id, "axis": axis.name},
            )
        return ALLOW

    # ---- Read-only view (status route) --------------------------------------------

    def status(
        self,
        config: InstanceConfig,
        *,
        ip: str,
        session_id: Optional[str],
        now_ms: int,
    ) -> Dict[str, Any]:
        """Current usage per axis without consuming anything."""
        out: Dict[str, Any] = {
            "messagesPerHour": self._usage(IP_AXIS, config.id, ip or "unknown", config.rate_limit.per_hour, now_ms)
        }
        if session_id:
            out["messagesPerSession"] = self._usage(
                SESSION_AXIS, config.id, session_id, config.rate_limit.per_session, now_ms
            )
        return out

    def _usage(self, axis: Axis, instance_id: str, principal: str, limit: int, now_ms: int) -> Dict[str, Any]:
        try:
            stamps = self._counters.get(counter_key(axis, instance_id, principal))
        except StoreUnavailable:
            self._logger.warning(
                "ratelimit.read_failed",
                extra={"event": "ratelimit.read_failed", "instance_id": instance_id, "axis": axis.name},
            )
            stamps = []
        recent = sorted(t for t in stamps if t > now_ms - axis.window_ms)
        resets_in = _seconds_until_free(recent, axis, now_ms) if recent else 0
        return {
            "used": len(recent),
            "limit": limit,
            "remaining": max(0, limit - len(recent)),
            "resetsIn": resets_in,
        }

# server/services/analytics.py
# Best-effort usage counters per instance:
#   analytics:daily:<YYYY-MM-DD>:<id>       {messages, domains, uniqueSessions, sampledSessionIds}  (30 days)
#   analytics:hourly:<YYYY-MM-DD>:<HH>:<id> {messages}                                             (7 days)
# Dates and hours are UTC. Updates are read-modify-write and may lose
# increments under concurrency; failures are logged and never reach the client.

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from .kv_store import KeyValueStore

DAILY_TTL_SECONDS = 30 * 86400
HOURLY_TTL_SECONDS = 7 * 86400
MAX_DOMAINS = 1024
MAX_SAMPLED_SESSIONS = 100


def daily_key(day: date, instance_id: str) -> str:
    return f"analytics:daily:{day.isoformat()}:{instance_id}"


def hourly_key(day: date, hour: int, instance_id: str) -> str:
    return f"analytics:hourly:{day.isoformat()}:{hour:02d}:{instance_id}"


def _empty_daily() -> Dict[str, Any]:
    return {"messages": 0, "domains": {}, "uniqueSessions": 0, "sampledSessionIds": []}


class AnalyticsRecorder:
    def __init__(self, kv: KeyValueStore, logger: Optional[logging.Logger] = None) -> None:
        self._kv = kv
        self._logger = logger or logging.getLogger(__name__)

    def record(
        self,
        instance_id: str,
        domain: str,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Count one admitted message. Never raises."""
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        try:
            self._bump_daily(instance_id, domain, session_id, now)
            self._bump_hourly(instance_id, now)
        except Exception:  # noqa: BLE001
            self._logger.warning(
                "analytics.failed",
                exc_info=True,
                extra={"event": "analytics.failed", "instance_id": instance_id},
            )

    def _bump_daily(self, instance_id: str, domain: str, session_id: Optional[str], now: datetime) -> None:
        key = daily_key(now.date(), instance_id)
        stats = {**_empty_daily(), **(self._kv.get_json(key) or {})}

        stats["messages"] = int(stats["messages"]) + 1

        domains = dict(stats["domains"])
        if domain in domains or len(domains) < MAX_DOMAINS:
            domains[domain] = int(domains.get(domain, 0)) + 1
        stats["domains"] = domains

        if session_id:
            sampled = list(stats["sampledSessionIds"])
            if session_id not in sampled:
                # Once the sample is full a repeat visitor may be counted again.
                stats["uniqueSessions"] = int(stats["uniqueSessions"]) + 1
                if len(sampled) < MAX_SAMPLED_SESSIONS:
                    sampled.append(session_id)
            stats["sampledSessionIds"] = sampled

        self._kv.put_json(key, stats, DAILY_TTL_SECONDS)

    def _bump_hourly(self, instance_id: str, now: datetime) -> None:
        key = hourly_key(now.date(), now.hour, instance_id)
        stats = self._kv.get_json(key) or {"messages": 0}
        stats["messages"] = int(stats.get("messages", 0)) + 1
        self._kv.put_json(key, stats, HOURLY_TTL_SECONDS)

    # ---- Read side (admin dashboards) --------------------------------------------

    def daily(self, instance_id: str, day: date) -> Dict[str, Any]:
        return {**_empty_daily(), **(self._kv.get_json(daily_key(day, instance_id)) or {})}

    def hourly(self, instance_id: str, day: date, hour: int) -> Dict[str, Any]:
        return self._kv.get_json(hourly_key(day, hour, instance_id)) or {"messages": 0}

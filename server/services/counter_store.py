# server/services/counter_store.py
# Sliding-window counter records: `ratelimit:<axis>:<instanceId>:<principal>`.
# Stored as {"messages": [epoch_ms, ...]}; a bare JSON array is also accepted on read.
# Writes overwrite the whole record and reset its TTL.

from __future__ import annotations

import json
from typing import Iterable, List

from .kv_store import KeyValueStore


class CounterStore:
    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    def get(self, key: str) -> List[int]:
        raw = self._kv.get(key)  # StoreUnavailable propagates to the limiter
        if raw is None:
            return []
        try:
            doc = json.loads(raw)
        except ValueError:
            return []
        if isinstance(doc, dict):
            doc = doc.get("messages", [])
        if not isinstance(doc, list):
            return []
        return [int(t) for t in doc if isinstance(t, (int, float)) and not isinstance(t, bool)]

    def put(self, key: str, timestamps: Iterable[int], ttl_seconds: int) -> None:
        self._kv.put_json(key, {"messages": [int(t) for t in timestamps]}, ttl_seconds)

# server/services/config_store.py
# Read-only lookup of instance configurations.
# Key precedence: `instance:<id>` first, then the legacy `agent:<id>` record.
# An optional per-process TTL cache (<= 60 s) also lets a recently seen config
# be served while the store is unreachable.

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

try:
    from ..errors import InstanceNotFound, InternalError, StoreUnavailable  # type: ignore
    from ..models import InstanceConfig, is_valid_instance_id  # type: ignore
except ImportError:  # top-level mode
    from errors import InstanceNotFound, InternalError, StoreUnavailable  # type: ignore
    from models import InstanceConfig, is_valid_instance_id  # type: ignore

from .kv_store import KeyValueStore

KEY_PREFIXES = ("instance:", "agent:")
MAX_CACHE_TTL = 60.0


class ConfigStore:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        cache_ttl: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._kv = kv
        self._cache_ttl = min(max(cache_ttl, 0.0), MAX_CACHE_TTL)
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._cache: Dict[str, Tuple[InstanceConfig, float]] = {}

    def lookup(self, instance_id: str) -> InstanceConfig:
        """Return the config for `instance_id`.

        Raises InstanceNotFound when the id is malformed or absent, and
        StoreUnavailable when the store is down and nothing is cached.
        """
        if not is_valid_instance_id(instance_id):
            raise InstanceNotFound(instance_id=None)

        cached = self._cache.get(instance_id)
        if cached and cached[1] > self._clock():
            return cached[0]

        try:
            doc = self._fetch(instance_id)
        except StoreUnavailable:
            if cached:
                self._logger.warning(
                    "config.stale",
                    extra={"event": "config.stale", "instance_id": instance_id},
                )
                return cached[0]
            raise

        if doc is None:
            raise InstanceNotFound(instance_id=instance_id)

        config = self._parse(instance_id, doc)
        if self._cache_ttl:
            self._cache[instance_id] = (config, self._clock() + self._cache_ttl)
        return config

    def _fetch(self, instance_id: str) -> Any:
        for prefix in KEY_PREFIXES:
            try:
                doc = self._kv.get_json(f"{prefix}{instance_id}")
            except ValueError:
                self._logger.error(
                    "config.malformed",
                    extra={"event": "config.malformed", "instance_id": instance_id, "key_prefix": prefix},
                )
                raise InternalError(instance_id=instance_id)
            if doc is not None:
                return doc
        return None

    def _parse(self, instance_id: str, doc: Any) -> InstanceConfig:
        if isinstance(doc, dict):
            doc = {**doc, "id": doc.get("id") or instance_id}
        try:
            config = InstanceConfig.model_validate(doc)
        except ValidationError as exc:
            self._logger.error(
                "config.invalid",
                extra={"event": "config.invalid", "instance_id": instance_id, "errors": exc.error_count()},
            )
            raise InternalError(instance_id=instance_id) from exc
        if config.id != instance_id:
            # Never serve a record under an id it was not written for.
            raise InstanceNotFound(instance_id=instance_id)
        return config

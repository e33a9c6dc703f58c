# server/services/pipeline.py
# Chat admission: parse -> lookup -> authorize -> limit -> (analytics) -> proxy.
# Framework-free; routes/chat.py binds it to Flask and owns the response.
# Every refusal is raised as a GatewayError with its fixed status/message.

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

try:
    from ..errors import BadRequest, Forbidden, RateLimited  # type: ignore
    from ..models import InstanceConfig, is_valid_instance_id  # type: ignore
    from ..schemas import MAX_MESSAGES, ChatRequest  # type: ignore
except ImportError:  # top-level mode
    from errors import BadRequest, Forbidden, RateLimited  # type: ignore
    from models import InstanceConfig, is_valid_instance_id  # type: ignore
    from schemas import MAX_MESSAGES, ChatRequest  # type: ignore

from .analytics import AnalyticsRecorder
from .config_store import ConfigStore
from .origin import OriginAuthorizer, request_domain
from .rate_limiter import RateLimiter, ip_principal
from .upstream import UpstreamProxy, UpstreamResult


def parse_chat_request(payload: Any) -> ChatRequest:
    """Validate a decoded /chat body. Raises BadRequest with the client-facing reason."""
    if not isinstance(payload, dict):
        raise BadRequest()
    instance_id = payload.get("instanceId")
    messages = payload.get("messages")
    if not isinstance(instance_id, str) or not instance_id:
        raise BadRequest()
    if not isinstance(messages, list) or not messages:
        raise BadRequest()
    if len(messages) > MAX_MESSAGES:
        raise BadRequest("Too many messages")
    if not is_valid_instance_id(instance_id):
        raise BadRequest("Invalid instance ID format")
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as exc:
        raise BadRequest() from exc  # e.g. a message that is not an object


@dataclass(frozen=True)
class Admission:
    """A request that passed lookup, origin checks and rate limits."""

    chat: ChatRequest
    config: InstanceConfig
    domain: str
    deadline: float  # on the proxy's monotonic clock


class ChatPipeline:
    def __init__(
        self,
        *,
        configs: ConfigStore,
        authorizer: OriginAuthorizer,
        limiter: RateLimiter,
        proxy: UpstreamProxy,
        analytics: AnalyticsRecorder,
        default_api_key: str = "",
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.configs = configs
        self.authorizer = authorizer
        self.limiter = limiter
        self.proxy = proxy
        self.analytics = analytics
        self._default_api_key = default_api_key
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def admit(
        self,
        chat: ChatRequest,
        headers: Mapping[str, str],
        deadline: Optional[float] = None,
    ) -> Admission:
        """Lookup, origin check and rate limits. The request budget runs from `deadline`
        (default: now) and covers these store round trips as well as the upstream call."""
        if deadline is None:
            deadline = self.proxy.start_deadline()
        config = self.configs.lookup(chat.instance_id)

        origin = headers.get("Origin")
        referer = headers.get("Referer")
        if not self.authorizer.authorize(config, origin=origin, referer=referer, host=headers.get("Host")):
            raise Forbidden(instance_id=config.id)

        decision = self.limiter.check(
            config,
            ip=ip_principal(headers),
            session_id=chat.session_id,
            now_ms=self.now_ms(),
        )
        if not decision.allowed:
            raise RateLimited(decision.reason, instance_id=config.id, retry_after=decision.retry_after)

        return Admission(
            chat=chat,
            config=config,
            domain=request_domain(origin, referer),
            deadline=deadline,
        )

    def forward(self, admission: Admission) -> UpstreamResult:
        config = admission.config
        api_key = config.api_key or self._default_api_key
        if not api_key:
            self._logger.warning(
                "upstream.no_api_key",
                extra={"event": "upstream.no_api_key", "instance_id": config.id},
            )
        return self.proxy.forward(config, admission.chat.messages, api_key, deadline=admission.deadline)

    def record_usage(self, admission: Admission) -> None:
        """Runs after the response is handed off; AnalyticsRecorder never raises."""
        self.analytics.record(
            admission.config.id,
            admission.domain,
            admission.chat.session_id,
            now=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
        )

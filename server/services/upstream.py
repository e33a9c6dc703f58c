# server/services/upstream.py
# Purpose: Single place for calls to the upstream agents API.
# Notes:
# - POST <apiHost>/api/v2/agents/<agentId>/chat with X-API-KEY and {"messages": [...]}.
# - text/event-stream bodies are relayed chunk by chunk, never parsed or buffered.
# - No retries: the upstream may have started billed work already.
# - The httpx client is shared by all requests and injectable (MockTransport in tests).

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import quote

import httpx

try:
    from ..errors import InternalError, UpstreamFailure, UpstreamTimeout  # type: ignore
    from ..models import InstanceConfig  # type: ignore
except ImportError:  # top-level mode
    from errors import InternalError, UpstreamFailure, UpstreamTimeout  # type: ignore
    from models import InstanceConfig  # type: ignore

SSE_CONTENT_TYPE = "text/event-stream"
_LOGGED_BODY_CHARS = 500


@dataclass
class UpstreamResult:
    """Either a parsed JSON payload or a raw byte stream to relay."""

    status: int
    content_type: str
    payload: Any = None
    stream: Optional[Iterator[bytes]] = None

    @property
    def is_stream(self) -> bool:
        return self.stream is not None


class UpstreamProxy:
    def __init__(
        self,
        api_host: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._api_host = api_host.rstrip("/")
        self._timeout = timeout
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            transport=transport,
            follow_redirects=False,
        )

    def chat_url(self, agent_id: str) -> str:
        return f"{self._api_host}/api/v2/agents/{quote(agent_id, safe='')}/chat"

    def start_deadline(self) -> float:
        """Deadline for a request whose budget starts now."""
        return self._clock() + self._timeout

    def _remaining(self, deadline: float, config: InstanceConfig) -> httpx.Timeout:
        remaining = deadline - self._clock()
        if remaining <= 0:
            self._log_timeout(config)
            raise UpstreamTimeout(instance_id=config.id)
        return httpx.Timeout(remaining, connect=min(remaining, 10.0))

    def forward(
        self,
        config: InstanceConfig,
        messages: List[Dict[str, Any]],
        api_key: str,
        deadline: Optional[float] = None,
    ) -> UpstreamResult:
        """Send the conversation upstream and classify the reply.

        Every phase up to the end of a JSON body gets only what is left of the
        budget ending at `deadline`; a stream gets a per-read idle timeout instead.
        """
        if deadline is None:
            deadline = self.start_deadline()
        request = self._client.build_request(
            "POST",
            self.chat_url(config.upstream_agent_id),
            json={"messages": messages},
            headers={"X-API-KEY": api_key, "Content-Type": "application/json"},
            timeout=self._remaining(deadline, config),
        )
        try:
            resp = self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            self._log_timeout(config)
            raise UpstreamTimeout(instance_id=config.id) from exc
        except httpx.HTTPError as exc:
            self._logger.error(
                "upstream.transport_error",
                extra={"event": "upstream.transport_error", "instance_id": config.id, "error": type(exc).__name__},
            )
            raise InternalError(instance_id=config.id) from exc

        content_type = resp.headers.get("content-type", "")

        if not resp.is_success:
            body = self._drain_text(resp)
            self._logger.error(
                "upstream.error",
                extra={
                    "event": "upstream.error",
                    "instance_id": config.id,
                    "upstream_status": resp.status_code,
                    "upstream_body": body[:_LOGGED_BODY_CHARS],
                },
            )
            raise UpstreamFailure(instance_id=config.id)

        if SSE_CONTENT_TYPE in content_type.lower():
            self._logger.info(
                "upstream.stream.start",
                extra={"event": "upstream.stream.start", "instance_id": config.id},
            )
            # A stream may outlive the budget; only the gap between reads is bounded.
            request.extensions["timeout"] = self._client.timeout.as_dict()
            return UpstreamResult(status=resp.status_code, content_type=content_type, stream=self._relay(resp, config.id))

        try:
            # Body reads look the timeout up when they start; narrow it to what is left.
            request.extensions["timeout"] = self._remaining(deadline, config).as_dict()
            raw = self._read_before(resp, deadline, config)
        finally:
            resp.close()
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            self._logger.error(
                "upstream.invalid_json",
                extra={"event": "upstream.invalid_json", "instance_id": config.id, "content_type": content_type},
            )
            raise UpstreamFailure(instance_id=config.id) from exc
        return UpstreamResult(status=resp.status_code, content_type="application/json", payload=payload)

    def _read_before(self, resp: httpx.Response, deadline: float, config: InstanceConfig) -> bytes:
        """Read the whole body, giving up once the request budget is spent."""
        chunks = []
        try:
            for chunk in resp.iter_bytes():
                chunks.append(chunk)
                if self._clock() > deadline:
                    self._log_timeout(config)
                    raise UpstreamTimeout(instance_id=config.id)
        except httpx.TimeoutException as exc:
            self._log_timeout(config)
            raise UpstreamTimeout(instance_id=config.id) from exc
        except httpx.HTTPError as exc:
            self._logger.error(
                "upstream.transport_error",
                extra={"event": "upstream.transport_error", "instance_id": config.id, "error": type(exc).__name__},
            )
            raise InternalError(instance_id=config.id) from exc
        return b"".join(chunks)

    def _relay(self, resp: httpx.Response, instance_id: str) -> Iterator[bytes]:
        # Closing this generator (client went away) closes the upstream response too.
        try:
            for chunk in resp.iter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as exc:
            # Headers are already out; all we can do is end the stream.
            self._logger.warning(
                "upstream.stream.error",
                extra={"event": "upstream.stream.error", "instance_id": instance_id, "error": type(exc).__name__},
            )
        finally:
            resp.close()

    def _drain_text(self, resp: httpx.Response) -> str:
        try:
            resp.read()
            return resp.text
        except httpx.HTTPError:
            return ""
        finally:
            resp.close()

    def _log_timeout(self, config: InstanceConfig) -> None:
        self._logger.warning(
            "upstream.timeout",
            extra={"event": "upstream.timeout", "instance_id": config.id, "timeout_s": self._timeout},
        )

    def close(self) -> None:
        self._client.close()

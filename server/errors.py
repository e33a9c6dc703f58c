# server/errors.py
# Gateway error taxonomy. Each error carries a fixed HTTP status and a stable
# client-facing message; observability.py turns them into the unified JSON body.

from __future__ import annotations

from typing import Dict, Optional


class GatewayError(Exception):
    """Base for every error that is allowed to leave the process boundary."""

    status: int = 500
    message: str = "Internal server error"
    kind: str = "internal"

    def __init__(self, message: Optional[str] = None, *, instance_id: Optional[str] = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)
        self.instance_id = instance_id

    def headers(self) -> Dict[str, str]:
        """Extra response headers for this error."""
        return {}


class BadRequest(GatewayError):
    status = 400
    message = "Missing required fields"
    kind = "bad_request"


class InstanceNotFound(GatewayError):
    status = 404
    message = "Agent not found"
    kind = "not_found"


class Forbidden(GatewayError):
    status = 403
    message = "Domain not authorized"
    kind = "forbidden"


class PayloadTooLarge(GatewayError):
    status = 413
    message = "Request too large"
    kind = "payload_too_large"


class RateLimited(GatewayError):
    status = 429
    message = "Rate limit exceeded"
    kind = "rate_limited"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        instance_id: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message, instance_id=instance_id)
        self.retry_after = retry_after  # seconds until the oldest counted message leaves the window

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)} if self.retry_after else {}


class UpstreamFailure(GatewayError):
    status = 500
    message = "Failed to get response from AI"
    kind = "upstream_failure"


class UpstreamTimeout(GatewayError):
    status = 504
    message = "Upstream timeout"
    kind = "upstream_timeout"


class InternalError(GatewayError):
    status = 500
    message = "Internal server error"
    kind = "internal"


class StoreUnavailable(InternalError):
    """Transport failure talking to an external key-value store."""

    kind = "store_unavailable"

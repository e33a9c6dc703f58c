# server/schemas.py
# Purpose: Pydantic v2 models for the /chat request and the JSON bodies the gateway emits.
# Notes:
# - Message objects are forwarded upstream untouched, so they stay plain dicts here.

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAX_MESSAGES = 100  # per request


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class ChatRequest(_CamelModel):
    instance_id: str = Field(..., min_length=1)
    messages: List[Dict[str, Any]] = Field(..., min_length=1)
    session_id: Optional[str] = None

    @field_validator("session_id", mode="before")
    @classmethod
    def _session_to_str(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None  # empty id means no session axis
        return str(value)


class ErrorResponse(BaseModel):
    error: str
    code: int
    request_id: Optional[str] = None


class InstanceInfo(_CamelModel):
    """Public view of an instance for the widget: no credentials, no policy."""

    id: str
    name: str
    theme: Dict[str, Any]
    features: Dict[str, Any]

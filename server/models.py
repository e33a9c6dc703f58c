# server/models.py
# Stored records read by the gateway.
# - InstanceConfig is written by the admin collaborator; the gateway only reads it.
# - Field names are camelCase on the wire; legacy names from the older
#   `agent:<id>` records are accepted as aliases.

from __future__ import annotations

import re
from typing import Any, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

INSTANCE_ID_PATTERN = r"^[a-z0-9-]{1,50}$"
INSTANCE_ID_RE = re.compile(INSTANCE_ID_PATTERN)

_AGENT_ID_KEYS = ("upstreamAgentId", "typingmindAgentId", "upstream_agent_id")


def is_valid_instance_id(instance_id: Any) -> bool:
    """True when `instance_id` is a string of 1-50 lowercase letters, digits or hyphens."""
    return isinstance(instance_id, str) and INSTANCE_ID_RE.match(instance_id) is not None


class _StoredModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # Admin rows store NULL for "use the default".
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class RateLimitConfig(_StoredModel):
    per_hour: int = Field(
        default=100,
        ge=1,
        validation_alias=AliasChoices("perHour", "messagesPerHour", "per_hour"),
        serialization_alias="perHour",
    )
    per_session: int = Field(
        default=20,
        ge=1,
        validation_alias=AliasChoices("perSession", "messagesPerSession", "per_session"),
        serialization_alias="perSession",
    )


class Features(_StoredModel):
    markdown: bool = False
    image_upload: bool = False
    persist_session: bool = False


class Theme(_StoredModel):
    primary_color: str = "#007bff"
    position: str = "bottom-right"
    width: int = 380
    embed_mode: str = "popup"


class InstanceConfig(_StoredModel):
    id: str = Field(pattern=INSTANCE_ID_PATTERN)
    name: Optional[str] = None
    upstream_agent_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices(*_AGENT_ID_KEYS),
        serialization_alias="upstreamAgentId",
    )
    api_key: Optional[str] = Field(default=None, repr=False)
    allowed_domains: Tuple[str, ...] = ()
    allowed_paths: Tuple[str, ...] = ()
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    features: Features = Field(default_factory=Features)
    theme: Theme = Field(default_factory=Theme)

    @model_validator(mode="before")
    @classmethod
    def _legacy_agent_id(cls, data: Any) -> Any:
        # Legacy `agent:<id>` records have no upstream id; they were posted to /agents/<id>/chat.
        if isinstance(data, dict) and not any(data.get(k) for k in _AGENT_ID_KEYS):
            data = {**data, "upstreamAgentId": data.get("id")}
        return data

    @property
    def display_name(self) -> str:
        return self.name or self.id

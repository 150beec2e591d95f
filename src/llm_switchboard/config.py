"""Configuration models for providers and orchestration policy."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from llm_switchboard.errors import ConfigurationError

SENSITIVE_FIELDS = ("api_key", "organization")


class ProviderConfig(BaseModel):
    """Live configuration bound to a provider instance.

    Instances are frozen: reconfiguration always produces a new object, and the
    registry swaps provider instances wholesale.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    provider_id: str
    base_url: str = Field(pattern=r"^https?://.+")
    api_key: str = ""
    default_model: str = ""
    timeout_s: float = Field(default=30.0, ge=1.0, le=300.0)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay_s: float = Field(default=1.0, ge=0.0, le=30.0)
    reasoning_timeout_multiplier: float = Field(default=3.0, ge=1.0, le=10.0)
    organization: str | None = None
    api_version: str | None = None

    def merged(self, partial: dict[str, Any]) -> ProviderConfig:
        """Return a validated copy with ``partial`` applied."""
        return build_config({**self.model_dump(), **partial})

    def sanitized(self) -> dict[str, Any]:
        """Return the config as a dict with credentials masked."""
        data = self.model_dump()
        for field in SENSITIVE_FIELDS:
            if data.get(field):
                data[field] = "***"
        return data


def build_config(values: dict[str, Any]) -> ProviderConfig:
    """Validate raw values into a ``ProviderConfig``."""
    try:
        return ProviderConfig(**values)
    except ValidationError as exc:
        provider = values.get("provider_id", "<unknown>")
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise ConfigurationError(f"{provider}: invalid configuration fields: {fields}") from exc


class OrchestrationPolicy(BaseModel):
    """Immutable orchestration policy, replaced only through ``reconfigure``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Off by default: an explicit but unusable provider must never be swapped silently.
    fallback_enabled: bool = False
    # 0 disables periodic connection probing.
    health_check_interval_s: float = Field(default=0.0, ge=0.0)
    provider_priority: tuple[str, ...] = ()
    keep_partial_on_cancel: bool = False
    # Sessions without an explicit request for streaming still stream when the provider can.
    prefer_streaming: bool = True

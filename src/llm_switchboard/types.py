"""Provider-agnostic request/response models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant"]
ContentBlock = dict[str, Any]


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatMessage(BaseModel):
    """Single chat message, either plain text or provider-native content blocks."""

    id: str = Field(default_factory=lambda: new_id("msg"))
    chat_id: str = ""
    role: Role
    content: str | list[ContentBlock]
    timestamp: datetime = Field(default_factory=utcnow)
    attachments: list[str] = Field(default_factory=list)
    reasoning_content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def text(self) -> str:
        """Return the plain-text portion of the message content."""
        if isinstance(self.content, str):
            return self.content
        parts = [block.get("text", "") for block in self.content if isinstance(block.get("text"), str)]
        return "\n".join(parts)


class CompletionOptions(BaseModel):
    """Per-request knobs shared by all providers."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop: list[str] | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class Usage(BaseModel):
    """Token accounting normalized across providers."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    # set when the provider omitted usage and counts were derived from text length
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def merge(self, other: Usage | None) -> Usage:
        """Overlay non-zero counts from a later usage report."""
        if other is None:
            return self
        return Usage(
            prompt_tokens=other.prompt_tokens or self.prompt_tokens,
            completion_tokens=other.completion_tokens or self.completion_tokens,
            estimated=self.estimated and other.estimated,
        )

    @classmethod
    def estimate(cls, prompt: str, completion: str) -> Usage:
        # ~4 characters per token
        return cls(
            prompt_tokens=-(-len(prompt) // 4),
            completion_tokens=-(-len(completion) // 4),
            estimated=True,
        )


class ModelInfo(BaseModel):
    """Model descriptor returned by a provider listing."""

    id: str
    provider: str
    display_name: str | None = None
    context_length: int | None = None


class CompletionResult(BaseModel):
    """Full (non-streaming) completion."""

    provider: str
    model: str
    text: str
    reasoning_text: str | None = None
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str | None = None
    # provider-specific payload kept for debugging or advanced use
    raw: dict[str, Any] = Field(default_factory=dict)


class StreamChunk(BaseModel):
    """Streaming chunk emitted at the provider boundary."""

    delta_text: str = ""
    delta_reasoning: str | None = None
    accumulated_text: str = ""
    accumulated_reasoning: str | None = None
    finished: bool = False
    usage: Usage | None = None
    finish_reason: str | None = None


class HealthResult(BaseModel):
    """Outcome of a connection probe."""

    provider: str
    ok: bool
    latency_s: float = 0.0
    model_count: int = 0
    error: str | None = None
    checked_at: datetime = Field(default_factory=utcnow)

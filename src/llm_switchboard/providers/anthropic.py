"""Anthropic provider implementation."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from llm_switchboard.errors import (
    AuthError,
    NetworkError,
    ProtocolError,
    ProviderError,
    RateLimitError,
)
from llm_switchboard.providers.base import (
    BaseProvider,
    ModelPricing,
    ProviderCapabilities,
    StreamPart,
)
from llm_switchboard.types import (
    ChatMessage,
    CompletionOptions,
    CompletionResult,
    ModelInfo,
    Usage,
)

_MESSAGES_PATH = "/v1/messages"
_MODELS_PATH = "/v1/models"
_API_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 4096

# Claude stop reasons mapped onto OpenAI-style finish reasons.
_FINISH_REASONS = {
    "end_turn": "stop",
    "max_tokens": "length",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "pause_turn": "pause",
    "refusal": "content_filter",
}

_STREAM_ERRORS: dict[str, type[ProviderError]] = {
    "authentication_error": AuthError,
    "permission_error": AuthError,
    "rate_limit_error": RateLimitError,
    "overloaded_error": NetworkError,
    "api_error": NetworkError,
}


class AnthropicProvider(BaseProvider):
    """Async wrapper for the Anthropic Messages API."""

    provider_id = "anthropic"
    display_name = "Anthropic Claude"
    capabilities = ProviderCapabilities(
        streaming=True,
        function_calling=True,
        vision=True,
        reasoning=True,
        max_context_length=200000,
        supported_formats=("text", "image", "document"),
    )
    pricing = {
        "claude-3-5-sonnet-20241022": ModelPricing(input=0.003, output=0.015),
        "claude-3-5-haiku-20241022": ModelPricing(input=0.0008, output=0.004),
        "claude-3-opus-20240229": ModelPricing(input=0.015, output=0.075),
        "claude-3-sonnet-20240229": ModelPricing(input=0.003, output=0.015),
        "claude-3-haiku-20240307": ModelPricing(input=0.00025, output=0.00125),
    }
    default_config = {
        "base_url": "https://api.anthropic.com",
        "default_model": "claude-3-5-sonnet-20241022",
        "timeout_s": 60.0,
        "api_version": _API_VERSION,
    }
    api_key_pattern = r"sk-ant-.{14,}"
    reasoning_model_prefixes = ("claude-3-7", "claude-sonnet-4", "claude-opus-4")

    _logger = logging.getLogger(__name__)

    def build_auth_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.config.api_key,
            "anthropic-version": self.config.api_version or _API_VERSION,
        }

    async def _fetch_models(self) -> list[ModelInfo]:
        data = await self._get_json(_MODELS_PATH)
        entries = data.get("data")
        if not isinstance(entries, list):
            raise ProtocolError(self.provider_id, "model listing has no 'data' array")
        return [
            ModelInfo(
                id=entry["id"],
                provider=self.provider_id,
                display_name=entry.get("display_name") or entry["id"],
                context_length=self.capabilities.max_context_length,
            )
            for entry in entries
            if isinstance(entry, dict) and isinstance(entry.get("id"), str)
        ]

    async def _complete(
        self, messages: list[ChatMessage], options: CompletionOptions, model: str
    ) -> CompletionResult:
        payload = self._build_payload(messages, options, model)
        data = await self._post_json(_MESSAGES_PATH, payload, timeout=self.timeout_for(model))

        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProtocolError(self.provider_id, "response has no content blocks")
        text, reasoning = self._extract_text(blocks)
        stop_reason = data.get("stop_reason")

        return CompletionResult(
            provider=self.provider_id,
            model=data.get("model") or model,
            text=text,
            reasoning_text=reasoning or None,
            usage=self._parse_usage(data.get("usage")) or Usage(),
            finish_reason=_FINISH_REASONS.get(stop_reason, "stop"),
            raw=data,
        )

    async def _stream_parts(
        self, messages: list[ChatMessage], options: CompletionOptions, model: str
    ) -> AsyncIterator[StreamPart]:
        payload = self._build_payload(messages, options, model)
        payload["stream"] = True

        async with contextlib.aclosing(
            self._sse_events(_MESSAGES_PATH, payload, timeout=self.timeout_for(model))
        ) as events:
            async for event in events:
                kind = event.get("type")
                if kind == "message_start":
                    message = event.get("message") or {}
                    yield StreamPart(usage=self._parse_usage(message.get("usage")))
                elif kind == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta":
                        yield StreamPart(text=delta.get("text") or "")
                    elif delta.get("type") == "thinking_delta":
                        yield StreamPart(reasoning=delta.get("thinking") or "")
                elif kind == "message_delta":
                    delta = event.get("delta") or {}
                    stop_reason = delta.get("stop_reason")
                    yield StreamPart(
                        usage=self._parse_usage(event.get("usage")),
                        finish_reason=_FINISH_REASONS.get(stop_reason) if stop_reason else None,
                    )
                elif kind == "message_stop":
                    return
                elif kind == "error":
                    raise self._stream_error(event.get("error") or {})

    def _build_payload(
        self, messages: list[ChatMessage], options: CompletionOptions, model: str
    ) -> dict[str, Any]:
        system_text, msgs = self._split_system(messages)

        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens or _DEFAULT_MAX_TOKENS,
            "messages": [self._serialize_message(m) for m in msgs],
        }

        if system_text:
            payload["system"] = system_text
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop:
            payload["stop_sequences"] = options.stop

        payload.update(options.extra)
        return payload

    @staticmethod
    def _split_system(messages: list[ChatMessage]) -> tuple[str, list[ChatMessage]]:
        system_parts: list[str] = []
        rest: list[ChatMessage] = []
        for m in messages:
            if m.role == "system":
                system_parts.append(m.text())
            else:
                rest.append(m)
        return ("\n".join(system_parts), rest)

    @staticmethod
    def _serialize_message(message: ChatMessage) -> dict[str, Any]:
        if isinstance(message.content, str):
            content: list[dict[str, Any]] = [{"type": "text", "text": message.content}]
        else:
            content = message.content
        return {"role": message.role, "content": content}

    @staticmethod
    def _extract_text(blocks: list[dict[str, Any]]) -> tuple[str, str]:
        text_parts: list[str] = []
        thinking_parts: list[str] = []
        for b in blocks:
            if b.get("type") == "text":
                text_parts.append(b.get("text", ""))
            elif b.get("type") == "thinking":
                thinking_parts.append(b.get("thinking", ""))
        return "".join(text_parts), "".join(thinking_parts)

    @staticmethod
    def _parse_usage(raw: Any) -> Usage | None:
        if not isinstance(raw, dict):
            return None
        return Usage(
            prompt_tokens=raw.get("input_tokens") or 0,
            completion_tokens=raw.get("output_tokens") or 0,
        )

    def _stream_error(self, error: dict[str, Any]) -> ProviderError:
        error_cls = _STREAM_ERRORS.get(error.get("type", ""), ProviderError)
        return error_cls(self.provider_id, error.get("message") or "stream error")

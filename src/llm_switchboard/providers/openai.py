"""OpenAI provider implementation."""

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

_MODEL_ORDER = ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo")

# In-band error frames carry an error type or code instead of an HTTP status.
_STREAM_ERRORS: dict[str, type[ProviderError]] = {
    "invalid_api_key": AuthError,
    "authentication_error": AuthError,
    "rate_limit_exceeded": RateLimitError,
    "rate_limit_error": RateLimitError,
    "server_error": NetworkError,
    "api_error": NetworkError,
}


class OpenAIProvider(BaseProvider):
    """Async wrapper for the OpenAI Chat Completions API.

    Also serves as the base for OpenAI-compatible backends, which override
    ``api_prefix`` and the descriptor attributes.
    """

    provider_id = "openai"
    display_name = "OpenAI"
    capabilities = ProviderCapabilities(
        streaming=True,
        function_calling=True,
        vision=True,
        reasoning=False,
        max_context_length=128000,
        supported_formats=("text", "image", "document"),
    )
    pricing = {
        "gpt-4o": ModelPricing(input=0.005, output=0.015),
        "gpt-4o-mini": ModelPricing(input=0.00015, output=0.0006),
        "gpt-4-turbo": ModelPricing(input=0.01, output=0.03),
        "gpt-4": ModelPricing(input=0.03, output=0.06),
        "gpt-3.5-turbo": ModelPricing(input=0.0015, output=0.002),
    }
    default_config = {
        "base_url": "https://api.openai.com",
        "default_model": "gpt-4o-mini",
        "timeout_s": 60.0,
    }
    api_key_pattern = r"sk-.{18,}"
    reasoning_model_prefixes = ("o1", "o3", "o4")
    api_prefix = "/v1"
    include_stream_usage = True

    _logger = logging.getLogger(__name__)

    def build_auth_headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        if self.config.organization:
            headers["OpenAI-Organization"] = self.config.organization
        return headers

    async def _fetch_models(self) -> list[ModelInfo]:
        data = await self._get_json(f"{self.api_prefix}/models")
        entries = data.get("data")
        if not isinstance(entries, list):
            raise ProtocolError(self.provider_id, "model listing has no 'data' array")
        models = [
            ModelInfo(id=entry["id"], provider=self.provider_id, display_name=entry["id"])
            for entry in entries
            if isinstance(entry, dict) and isinstance(entry.get("id"), str)
        ]
        return self._filter_models(models)

    def _filter_models(self, models: list[ModelInfo]) -> list[ModelInfo]:
        chat_models = [m for m in models if m.id.startswith(("gpt-", "o1", "o3", "o4"))]

        def rank(model: ModelInfo) -> tuple[int, str]:
            order = _MODEL_ORDER.index(model.id) if model.id in _MODEL_ORDER else len(_MODEL_ORDER)
            return (order, model.id)

        return sorted(chat_models, key=rank)

    async def _complete(
        self, messages: list[ChatMessage], options: CompletionOptions, model: str
    ) -> CompletionResult:
        payload = self._build_payload(messages, options, model)
        data = await self._post_json(
            f"{self.api_prefix}/chat/completions", payload, timeout=self.timeout_for(model)
        )

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProtocolError(self.provider_id, "response has no choices")
        choice = choices[0]
        message = choice.get("message") or {}

        return CompletionResult(
            provider=self.provider_id,
            model=data.get("model") or model,
            text=message.get("content") or "",
            reasoning_text=message.get("reasoning_content") or None,
            usage=self._parse_usage(data.get("usage")) or Usage(),
            finish_reason=choice.get("finish_reason"),
            raw=data,
        )

    async def _stream_parts(
        self, messages: list[ChatMessage], options: CompletionOptions, model: str
    ) -> AsyncIterator[StreamPart]:
        payload = self._build_payload(messages, options, model)
        payload["stream"] = True
        if self.include_stream_usage:
            payload["stream_options"] = {"include_usage": True}

        async with contextlib.aclosing(
            self._sse_events(
                f"{self.api_prefix}/chat/completions", payload, timeout=self.timeout_for(model)
            )
        ) as events:
            async for event in events:
                yield self._parse_stream_event(event)

    def _build_payload(
        self, messages: list[ChatMessage], options: CompletionOptions, model: str
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [self._serialize_message(m) for m in messages],
        }

        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop:
            payload["stop"] = options.stop

        payload.update(options.extra)
        return payload

    @staticmethod
    def _serialize_message(message: ChatMessage) -> dict[str, Any]:
        return {"role": message.role, "content": message.content}

    def _parse_stream_event(self, event: dict[str, Any]) -> StreamPart:
        if event.get("error"):
            raise self._stream_error(event["error"])
        part = StreamPart(usage=self._parse_usage(event.get("usage")))
        choices = event.get("choices") or []
        if not choices:
            return part

        choice = choices[0]
        delta = choice.get("delta") or {}
        content = delta.get("content")
        if isinstance(content, str):
            part.text = content
        reasoning = delta.get("reasoning_content")
        if isinstance(reasoning, str):
            part.reasoning = reasoning
        part.finish_reason = choice.get("finish_reason")
        return part

    def _stream_error(self, error: Any) -> ProviderError:
        if not isinstance(error, dict):
            return ProviderError(self.provider_id, str(error))
        message = error.get("message") or "stream error"
        code = error.get("code")
        if isinstance(code, int):
            return self._error_for_status(code, message)
        error_cls = _STREAM_ERRORS.get(code or "") or _STREAM_ERRORS.get(
            error.get("type") or "", ProviderError
        )
        return error_cls(self.provider_id, message)

    @staticmethod
    def _parse_usage(raw: Any) -> Usage | None:
        if not isinstance(raw, dict):
            return None
        return Usage(
            prompt_tokens=raw.get("prompt_tokens") or 0,
            completion_tokens=raw.get("completion_tokens") or 0,
        )

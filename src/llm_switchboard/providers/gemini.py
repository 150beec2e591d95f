"""Google Gemini provider implementation."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any

from llm_switchboard.errors import AuthError, ProtocolError, ProviderError
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

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
}

_SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]


class GeminiProvider(BaseProvider):
    """Async wrapper for the Gemini ``generateContent`` REST API.

    Messages use the ``user``/``model`` roles, system prompts travel as
    ``systemInstruction`` and parts flagged ``thought`` are reasoning text.
    """

    provider_id = "gemini"
    display_name = "Google Gemini"
    capabilities = ProviderCapabilities(
        streaming=True,
        function_calling=True,
        vision=True,
        reasoning=True,
        max_context_length=1000000,
        supported_formats=("text", "image"),
    )
    pricing = {
        "gemini-1.5-flash": ModelPricing(input=0.000075, output=0.0003),
        "gemini-1.5-pro": ModelPricing(input=0.00125, output=0.005),
        "gemini-2.0-flash": ModelPricing(input=0.0001, output=0.0004),
    }
    default_config = {
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "default_model": "gemini-1.5-flash",
        "timeout_s": 60.0,
    }
    api_key_pattern = r"AIza.+"
    reasoning_model_prefixes = ("gemini-2.5",)

    _logger = logging.getLogger(__name__)

    def build_auth_headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.config.api_key}

    async def _fetch_models(self) -> list[ModelInfo]:
        data = await self._get_json("/models")
        entries = data.get("models")
        if not isinstance(entries, list):
            raise ProtocolError(self.provider_id, "model listing has no 'models' array")

        models = []
        for entry in entries:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                continue
            methods = entry.get("supportedGenerationMethods")
            if methods is not None and "generateContent" not in methods:
                continue
            model_id = entry["name"].removeprefix("models/")
            if not model_id.startswith("gemini"):
                continue
            models.append(
                ModelInfo(
                    id=model_id,
                    provider=self.provider_id,
                    display_name=entry.get("displayName") or model_id,
                    context_length=entry.get("inputTokenLimit"),
                )
            )
        return models

    async def _complete(
        self, messages: list[ChatMessage], options: CompletionOptions, model: str
    ) -> CompletionResult:
        payload = self._build_payload(messages, options)
        data = await self._post_json(
            f"/models/{model}:generateContent", payload, timeout=self.timeout_for(model)
        )

        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise ProtocolError(self.provider_id, "response has no candidates")
        part = self._parse_candidate(candidates[0])

        return CompletionResult(
            provider=self.provider_id,
            model=data.get("modelVersion") or model,
            text=part.text,
            reasoning_text=part.reasoning or None,
            usage=self._parse_usage(data.get("usageMetadata")) or Usage(),
            finish_reason=part.finish_reason or "stop",
            raw=data,
        )

    async def _stream_parts(
        self, messages: list[ChatMessage], options: CompletionOptions, model: str
    ) -> AsyncIterator[StreamPart]:
        payload = self._build_payload(messages, options)

        async with contextlib.aclosing(
            self._sse_events(
                f"/models/{model}:streamGenerateContent",
                payload,
                params={"alt": "sse"},
                timeout=self.timeout_for(model),
            )
        ) as events:
            async for event in events:
                if event.get("error"):
                    raise self._stream_error(event)
                candidates = event.get("candidates") or []
                part = self._parse_candidate(candidates[0]) if candidates else StreamPart()
                part.usage = self._parse_usage(event.get("usageMetadata"))
                yield part

    def _build_payload(
        self, messages: list[ChatMessage], options: CompletionOptions
    ) -> dict[str, Any]:
        system_parts = [m.text() for m in messages if m.role == "system"]
        payload: dict[str, Any] = {
            "contents": [self._serialize_message(m) for m in messages if m.role != "system"],
            "safetySettings": _SAFETY_SETTINGS,
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": [{"text": "\n".join(system_parts)}]}

        generation: dict[str, Any] = {}
        if options.temperature is not None:
            generation["temperature"] = options.temperature
        if options.top_p is not None:
            generation["topP"] = options.top_p
        if options.max_tokens is not None:
            generation["maxOutputTokens"] = options.max_tokens
        if options.stop:
            generation["stopSequences"] = options.stop
        if generation:
            payload["generationConfig"] = generation

        payload.update(options.extra)
        return payload

    @staticmethod
    def _serialize_message(message: ChatMessage) -> dict[str, Any]:
        role = "model" if message.role == "assistant" else "user"
        if isinstance(message.content, str):
            parts: list[dict[str, Any]] = [{"text": message.content}]
        else:
            parts = message.content
        return {"role": role, "parts": parts}

    @staticmethod
    def _parse_candidate(candidate: Mapping[str, Any]) -> StreamPart:
        part = StreamPart()
        content = candidate.get("content") or {}
        for piece in content.get("parts") or []:
            text = piece.get("text")
            if not isinstance(text, str):
                continue
            if piece.get("thought"):
                part.reasoning += text
            else:
                part.text += text
        reason = candidate.get("finishReason")
        if reason:
            part.finish_reason = _FINISH_REASONS.get(reason, reason.lower())
        return part

    @staticmethod
    def _parse_usage(raw: Any) -> Usage | None:
        if not isinstance(raw, dict):
            return None
        return Usage(
            prompt_tokens=raw.get("promptTokenCount") or 0,
            completion_tokens=(raw.get("candidatesTokenCount") or 0)
            + (raw.get("thoughtsTokenCount") or 0),
        )

    def _stream_error(self, event: dict[str, Any]) -> ProviderError:
        error = event["error"]
        code = error.get("code") if isinstance(error, dict) else None
        if isinstance(code, int):
            return self._error_for_status(code, json.dumps(event))
        if isinstance(error, dict) and error.get("message"):
            return ProviderError(self.provider_id, error["message"])
        return ProviderError(self.provider_id, str(error))

    def _error_for_status(
        self, status: int, body: str, headers: Mapping[str, str] | None = None
    ) -> ProviderError:
        # Gemini reports a bad key as 400 INVALID_ARGUMENT.
        if status == 400 and "API_KEY_INVALID" in body:
            return AuthError(self.provider_id, "API key not valid", status_code=status)
        return super()._error_for_status(status, body, headers)

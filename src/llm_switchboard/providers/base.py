"""Provider-agnostic base interfaces and helpers."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar

import httpx

from llm_switchboard.config import ProviderConfig, build_config
from llm_switchboard.errors import (
    RETRYABLE_ERRORS,
    AuthError,
    ConfigurationError,
    NetworkError,
    NotFoundError,
    ProtocolError,
    ProviderError,
    RateLimitError,
    RequestTimeoutError,
)
from llm_switchboard.types import (
    ChatMessage,
    CompletionOptions,
    CompletionResult,
    HealthResult,
    ModelInfo,
    StreamChunk,
    Usage,
)

T = TypeVar("T")

_MAX_BACKOFF_S = 30.0


@dataclass(frozen=True)
class ProviderCapabilities:
    """Describes feature support for a provider."""

    streaming: bool = True
    function_calling: bool = False
    vision: bool = False
    reasoning: bool = False
    max_context_length: int = 4096
    supported_formats: tuple[str, ...] = ("text",)

    def missing(
        self,
        required: Iterable[str],
        *,
        min_context_length: int = 0,
        formats: Iterable[str] = (),
    ) -> list[str]:
        """Return the requirements this capability set does not meet."""
        gaps = [name for name in required if getattr(self, name, None) is not True]
        if self.max_context_length < min_context_length:
            gaps.append(f"max_context_length>={min_context_length}")
        gaps.extend(f"format:{fmt}" for fmt in formats if fmt not in self.supported_formats)
        return gaps

    def satisfies(
        self,
        required: Iterable[str],
        *,
        min_context_length: int = 0,
        formats: Iterable[str] = (),
    ) -> bool:
        return not self.missing(required, min_context_length=min_context_length, formats=formats)


@dataclass(frozen=True)
class ModelPricing:
    """USD per 1K tokens."""

    input: float
    output: float


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of a provider type."""

    provider_id: str
    display_name: str
    capabilities: ProviderCapabilities
    pricing: Mapping[str, ModelPricing] = field(default_factory=dict)
    default_config: Mapping[str, Any] = field(default_factory=dict)
    requires_credential: bool = True


@dataclass
class StreamPart:
    """Raw increment parsed from a provider stream."""

    text: str = ""
    reasoning: str = ""
    usage: Usage | None = None
    finish_reason: str | None = None


class BaseProvider(ABC):
    """Abstract base class for provider implementations.

    Subclasses declare their descriptor as class attributes and implement the
    wire-level hooks (``_fetch_models``, ``_complete``, ``_stream_parts``,
    ``build_auth_headers``). Retry, deadlines, error normalization and the
    streaming accumulation contract live here.
    """

    provider_id: ClassVar[str]
    display_name: ClassVar[str]
    capabilities: ClassVar[ProviderCapabilities] = ProviderCapabilities()
    pricing: ClassVar[Mapping[str, ModelPricing]] = {}
    default_config: ClassVar[Mapping[str, Any]] = {}
    requires_credential: ClassVar[bool] = True
    api_key_pattern: ClassVar[str | None] = None
    reasoning_model_prefixes: ClassVar[tuple[str, ...]] = ()

    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: ProviderConfig | Mapping[str, Any] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        capabilities: ProviderCapabilities | None = None,
    ) -> None:
        if not isinstance(config, ProviderConfig):
            config = build_config(
                {"provider_id": self.provider_id, **self.default_config, **(config or {})}
            )
        self.config = config
        if capabilities is not None:
            self.capabilities = capabilities
        self.initialized = False
        self.models: list[ModelInfo] = []
        self._transport = transport
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_s,
            transport=transport,
        )
        self._inflight = 0
        self._retired = False

    @classmethod
    def descriptor(cls) -> ProviderDescriptor:
        return ProviderDescriptor(
            provider_id=cls.provider_id,
            display_name=cls.display_name,
            capabilities=cls.capabilities,
            pricing=dict(cls.pricing),
            default_config=dict(cls.default_config),
            requires_credential=cls.requires_credential,
        )

    # ------------------------------------------------------------------ hooks

    @abstractmethod
    def build_auth_headers(self) -> dict[str, str]:
        """Return the authentication headers for this provider."""
        raise NotImplementedError

    @abstractmethod
    async def _fetch_models(self) -> list[ModelInfo]:
        """List models; raise normalized errors on failure."""
        raise NotImplementedError

    @abstractmethod
    async def _complete(
        self, messages: list[ChatMessage], options: CompletionOptions, model: str
    ) -> CompletionResult:
        """Execute one non-streaming request."""
        raise NotImplementedError

    @abstractmethod
    def _stream_parts(
        self, messages: list[ChatMessage], options: CompletionOptions, model: str
    ) -> AsyncIterator[StreamPart]:
        """Yield raw increments for one streaming request."""
        raise NotImplementedError

    # -------------------------------------------------------------- lifecycle

    @property
    def has_credential(self) -> bool:
        return not self.requires_credential or bool(self.config.api_key)

    def validate_config(self) -> None:
        """Fail fast on missing or malformed configuration."""
        missing = []
        if self.requires_credential and not self.config.api_key:
            missing.append("api_key")
        if not self.config.default_model:
            missing.append("default_model")
        if missing:
            raise ConfigurationError(
                f"{self.provider_id}: missing required configuration fields: {', '.join(missing)}"
            )
        pattern = self.api_key_pattern
        if pattern and self.config.api_key and not re.fullmatch(pattern, self.config.api_key):
            raise ConfigurationError(f"{self.provider_id}: api_key has an unexpected format")

    async def initialize(self) -> None:
        """Validate configuration and load the model list once."""
        self.validate_config()
        self.models = await self.list_models()
        self.initialized = True
        self._logger.info(
            "%s initialized with %d models", self.provider_id, len(self.models)
        )

    def update_config(self, partial: Mapping[str, Any]) -> BaseProvider:
        """Return a new, uninitialized provider bound to the merged config."""
        return type(self)(
            self.config.merged(dict(partial)),
            transport=self._transport,
            capabilities=self.capabilities,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def retire(self) -> None:
        """Mark the instance replaced; close it once no call is in flight."""
        self._retired = True
        if self._inflight == 0:
            await self.aclose()

    @contextlib.asynccontextmanager
    async def _tracked(self) -> AsyncIterator[None]:
        self._inflight += 1
        try:
            yield
        finally:
            self._inflight -= 1
            if self._retired and self._inflight == 0:
                await self.aclose()

    # ------------------------------------------------------------- operations

    def is_reasoning_model(self, model: str) -> bool:
        return any(model.startswith(prefix) for prefix in self.reasoning_model_prefixes)

    def timeout_for(self, model: str) -> float:
        """Tiered deadline: reasoning models get a longer budget."""
        if self.is_reasoning_model(model):
            return self.config.timeout_s * self.config.reasoning_timeout_multiplier
        return self.config.timeout_s

    def compute_cost(self, usage: Usage | None, model: str | None = None) -> float:
        if usage is None:
            return 0.0
        price = self.pricing.get(model or self.config.default_model)
        if price is None:
            return 0.0
        return (usage.prompt_tokens * price.input + usage.completion_tokens * price.output) / 1000

    async def list_models(self) -> list[ModelInfo]:
        """Return available models, or an empty list when listing fails."""
        try:
            async with self._tracked():
                return await self._with_retry("list_models", self._fetch_models)
        except ProviderError as exc:
            self._logger.warning("%s model listing failed: %s", self.provider_id, exc)
            return []

    async def test_connection(self) -> HealthResult:
        """Probe the provider without spending tokens."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            async with self._tracked():
                models = await self._with_retry("test_connection", self._fetch_models)
        except ProviderError as exc:
            return HealthResult(
                provider=self.provider_id,
                ok=False,
                latency_s=loop.time() - started,
                error=str(exc),
            )
        return HealthResult(
            provider=self.provider_id,
            ok=True,
            latency_s=loop.time() - started,
            model_count=len(models),
        )

    async def create_completion(
        self, messages: list[ChatMessage], options: CompletionOptions | None = None
    ) -> CompletionResult:
        """Execute a full completion; transient failures are retried."""
        options = options or CompletionOptions()
        model = options.model or self.config.default_model
        timeout = self.timeout_for(model)

        async def _call() -> CompletionResult:
            try:
                async with asyncio.timeout(timeout):
                    return await self._complete(messages, options, model)
            except TimeoutError as exc:
                raise RequestTimeoutError(
                    self.provider_id, f"no response within {timeout:.0f}s"
                ) from exc

        async with self._tracked():
            result = await self._with_retry("create_completion", _call)
        if result.usage.total_tokens == 0:
            result = result.model_copy(
                update={"usage": Usage.estimate(_prompt_text(messages), result.text)}
            )
        return result

    def stream_completion(
        self, messages: list[ChatMessage], options: CompletionOptions | None = None
    ) -> AsyncIterator[StreamChunk]:
        """Return an async iterator of accumulated stream chunks.

        Exactly one chunk has ``finished=True`` and it is always the last one.
        Transient failures are retried only while no content has arrived.
        """
        options = options or CompletionOptions()
        model = options.model or self.config.default_model

        async def _gen() -> AsyncIterator[StreamChunk]:
            async with self._tracked():
                if not self.capabilities.streaming:
                    result = await self.create_completion(messages, options)
                    if result.text or result.reasoning_text:
                        yield StreamChunk(
                            delta_text=result.text,
                            delta_reasoning=result.reasoning_text,
                            accumulated_text=result.text,
                            accumulated_reasoning=result.reasoning_text,
                        )
                    yield StreamChunk(
                        accumulated_text=result.text,
                        accumulated_reasoning=result.reasoning_text,
                        finished=True,
                        usage=result.usage,
                        finish_reason=result.finish_reason,
                    )
                    return

                attempt = 1
                while True:
                    state = _Accumulator()
                    try:
                        async with contextlib.aclosing(
                            self._stream_attempt(messages, options, model, state)
                        ) as chunks:
                            async for chunk in chunks:
                                yield chunk
                    except RETRYABLE_ERRORS as exc:
                        if state.received or attempt >= self.config.retry_attempts:
                            raise
                        delay = self._backoff(attempt, exc)
                        self._logger.warning(
                            "%s stream failed before content (%s), retrying in %.2fs (attempt %d/%d)",
                            self.provider_id,
                            exc,
                            delay,
                            attempt,
                            self.config.retry_attempts,
                        )
                        await asyncio.sleep(delay)
                        attempt += 1
                        continue
                    break

                usage = state.usage
                if usage is None or usage.total_tokens == 0:
                    usage = Usage.estimate(_prompt_text(messages), state.text)
                yield StreamChunk(
                    accumulated_text=state.text,
                    accumulated_reasoning=state.reasoning or None,
                    finished=True,
                    usage=usage,
                    finish_reason=state.finish_reason or "stop",
                )

        return _gen()

    async def _stream_attempt(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions,
        model: str,
        state: _Accumulator,
    ) -> AsyncIterator[StreamChunk]:
        loop = asyncio.get_running_loop()
        timeout = self.timeout_for(model)
        deadline = loop.time() + timeout
        parts = self._stream_parts(messages, options, model)
        try:
            while True:
                try:
                    async with asyncio.timeout_at(deadline):
                        part = await parts.__anext__()
                except StopAsyncIteration:
                    return
                except TimeoutError as exc:
                    raise RequestTimeoutError(
                        self.provider_id, f"stream exceeded {timeout:.0f}s"
                    ) from exc

                if part.usage is not None:
                    state.usage = (state.usage or Usage()).merge(part.usage)
                if part.finish_reason:
                    state.finish_reason = part.finish_reason
                if not part.text and not part.reasoning:
                    continue

                state.received = True
                state.text += part.text
                state.reasoning += part.reasoning
                yield StreamChunk(
                    delta_text=part.text,
                    delta_reasoning=part.reasoning or None,
                    accumulated_text=state.text,
                    accumulated_reasoning=state.reasoning or None,
                )
        finally:
            await parts.aclose()

    # ---------------------------------------------------------------- helpers

    def _backoff(self, attempt: int, exc: Exception) -> float:
        delay = self.config.retry_delay_s * (2 ** (attempt - 1))
        if isinstance(exc, RateLimitError) and exc.retry_after:
            delay = max(delay, exc.retry_after)
        return min(delay, _MAX_BACKOFF_S)

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await call()
            except RETRYABLE_ERRORS as exc:
                if attempt >= self.config.retry_attempts:
                    raise
                delay = self._backoff(attempt, exc)
                self._logger.warning(
                    "%s %s failed (%s), retrying in %.2fs (attempt %d/%d)",
                    self.provider_id,
                    operation,
                    exc,
                    delay,
                    attempt,
                    self.config.retry_attempts,
                )
                await asyncio.sleep(delay)
                attempt += 1

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", **self.build_auth_headers()}

    @contextlib.contextmanager
    def _transport_errors(self) -> Iterator[None]:
        try:
            yield
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(self.provider_id, str(exc) or "request timed out") from exc
        except httpx.TransportError as exc:
            raise NetworkError(self.provider_id, str(exc) or type(exc).__name__) from exc

    def _error_for_status(
        self, status: int, body: str, headers: Mapping[str, str] | None = None
    ) -> ProviderError:
        message = _extract_error_message(body) or f"HTTP {status}"
        if status in (401, 403):
            return AuthError(self.provider_id, message, status_code=status)
        if status == 404:
            return NotFoundError(self.provider_id, message, status_code=status)
        if status == 429:
            retry_after = None
            raw = (headers or {}).get("retry-after")
            if raw:
                with contextlib.suppress(ValueError):
                    retry_after = float(raw)
            return RateLimitError(
                self.provider_id, message, status_code=status, retry_after=retry_after
            )
        if status in (408, 504):
            return RequestTimeoutError(self.provider_id, message, status_code=status)
        if status >= 500:
            return NetworkError(self.provider_id, message, status_code=status)
        return ProviderError(self.provider_id, message, status_code=status)

    def _json_or_error(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            raise self._error_for_status(response.status_code, response.text, response.headers)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProtocolError(self.provider_id, "response is not valid JSON") from exc
        if not isinstance(data, dict):
            raise ProtocolError(self.provider_id, "response is not a JSON object")
        return data

    async def _get_json(self, path: str, params: Mapping[str, str] | None = None) -> dict[str, Any]:
        with self._transport_errors():
            response = await self._client.get(path, headers=self._headers(), params=params)
        return self._json_or_error(response)

    async def _post_json(
        self,
        path: str,
        payload: dict[str, Any],
        params: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        with self._transport_errors():
            response = await self._client.post(
                path,
                headers=self._headers(),
                json=payload,
                params=params,
                timeout=_request_timeout(timeout),
            )
        return self._json_or_error(response)

    async def _sse_events(
        self,
        path: str,
        payload: dict[str, Any],
        params: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """POST ``payload`` and yield each JSON ``data:`` event of the SSE reply.

        ``timeout`` overrides the client default for this request; completion
        calls pass the tiered timeout of their model.
        """
        with self._transport_errors():
            async with self._client.stream(
                "POST",
                path,
                headers=self._headers(),
                json=payload,
                params=params,
                timeout=_request_timeout(timeout),
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise self._error_for_status(
                        response.status_code,
                        body.decode(errors="replace"),
                        response.headers,
                    )

                async for line in response.aiter_lines():
                    line = line.strip()
                    # Event-name and comment lines carry nothing we need.
                    if not line.startswith("data:"):
                        continue

                    data_str = line[len("data:") :].strip()
                    if data_str == "[DONE]":
                        return

                    try:
                        event = json.loads(data_str)
                    except json.JSONDecodeError:
                        self._logger.debug("Skipping non-JSON streaming chunk: %s", data_str)
                        continue
                    if isinstance(event, dict):
                        yield event


@dataclass
class _Accumulator:
    text: str = ""
    reasoning: str = ""
    usage: Usage | None = None
    finish_reason: str | None = None
    received: bool = False


def _request_timeout(timeout: float | None) -> Any:
    return httpx.USE_CLIENT_DEFAULT if timeout is None else timeout


def _prompt_text(messages: list[ChatMessage]) -> str:
    return "\n".join(m.text() for m in messages)


def _extract_error_message(body: str) -> str:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body.strip()[:300]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(data.get("message"), str):
            return data["message"]
    return body.strip()[:300]

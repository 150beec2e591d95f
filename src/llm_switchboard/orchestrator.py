"""Request orchestration: provider selection, per-chat queues and streaming sessions."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from llm_switchboard.attachments import AttachmentAdapter, AttachmentRef, RawFile
from llm_switchboard.config import OrchestrationPolicy
from llm_switchboard.errors import (
    AttachmentError,
    CapabilityMismatch,
    ConfigurationError,
    InvalidTransition,
    NoProviderAvailable,
    NotConfiguredError,
    SwitchboardError,
)
from llm_switchboard.providers.base import BaseProvider
from llm_switchboard.registry import ProviderRegistry
from llm_switchboard.store import MessageStore
from llm_switchboard.types import (
    ChatMessage,
    CompletionOptions,
    HealthResult,
    ModelInfo,
    Usage,
    new_id,
    utcnow,
)

# Terminal sessions kept around for ``wait``/``subscribe`` after they finish.
_FINISHED_SESSION_LIMIT = 256


class SessionState(str, Enum):
    QUEUED = "queued"
    SELECTING = "selecting"
    EXECUTING = "executing"
    REJECTED = "rejected"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {SessionState.REJECTED, SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}
)

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.QUEUED: frozenset({SessionState.SELECTING, SessionState.CANCELLED}),
    SessionState.SELECTING: frozenset(
        {SessionState.EXECUTING, SessionState.REJECTED, SessionState.CANCELLED}
    ),
    SessionState.EXECUTING: frozenset(
        {SessionState.STREAMING, SessionState.FAILED, SessionState.CANCELLED}
    ),
    SessionState.STREAMING: frozenset(
        {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}
    ),
}

# Selection failures reject the session instead of failing it.
_REJECTIONS = (NotConfiguredError, NoProviderAvailable, AttachmentError, ConfigurationError)


class RequestSession(BaseModel):
    """State of one request, from queueing to its terminal state."""

    id: str = Field(default_factory=lambda: new_id("sess"))
    chat_id: str
    provider_id: str | None = None
    model: str | None = None
    state: SessionState = SessionState.QUEUED
    accumulated_text: str = ""
    accumulated_reasoning: str = ""
    error: str | None = None
    error_type: str | None = None
    usage: Usage | None = None
    cost: float = 0.0
    finish_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    state_history: list[tuple[SessionState, datetime]] = Field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def states(self) -> list[SessionState]:
        return [state for state, _ in self.state_history]


class SessionEvent(BaseModel):
    """Consumer-facing notification; decoupled from provider stream chunks."""

    session_id: str
    chat_id: str
    kind: Literal["state", "update", "terminal"]
    state: SessionState
    content: str = ""
    reasoning_content: str | None = None
    finished: bool = False
    error: str | None = None
    usage: Usage | None = None


class EventSink(Protocol):
    async def publish(self, event: SessionEvent) -> None: ...


@dataclass
class SendOptions:
    """Per-send selection and generation options."""

    provider_id: str | None = None
    model: str | None = None
    attachments: Sequence[RawFile] = ()
    required_capabilities: Sequence[str] = ()
    min_context_length: int = 0
    # None follows OrchestrationPolicy.prefer_streaming
    stream: bool | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop: list[str] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def completion_options(self, model: str) -> CompletionOptions:
        return CompletionOptions(
            model=model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            stop=self.stop,
            extra=dict(self.extra),
        )


@dataclass
class _Runtime:
    session: RequestSession
    messages: list[ChatMessage]
    options: SendOptions
    refs: list[AttachmentRef] | None = None
    task: asyncio.Task[None] | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)
    keep_partial: bool = False
    exec_started: float | None = None
    history: list[SessionEvent] = field(default_factory=list)
    last_update: SessionEvent | None = None
    subscribers: list[asyncio.Queue[SessionEvent]] = field(default_factory=list)


class RequestOrchestrator:
    """Routes chat requests to providers and drives their sessions.

    One session runs at a time per chat; later sends for the same chat wait in
    a FIFO queue. Different chats run concurrently. Each session produces
    exactly one terminal event and exactly one ``MessageStore.create`` call.
    """

    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        registry: ProviderRegistry,
        store: MessageStore,
        *,
        attachments: AttachmentAdapter | None = None,
        policy: OrchestrationPolicy | None = None,
        sink: EventSink | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.attachments = attachments or AttachmentAdapter()
        self._policy = policy or OrchestrationPolicy()
        self._sink = sink
        self._sessions: dict[str, _Runtime] = {}
        self._finished: deque[str] = deque()
        self._queues: dict[str, deque[str]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._health_task: asyncio.Task[None] | None = None
        self._started = False

    # ----------------------------------------------------------------- policy

    @property
    def policy(self) -> OrchestrationPolicy:
        return self._policy

    def reconfigure(self, policy: OrchestrationPolicy) -> OrchestrationPolicy:
        """Atomically replace the policy; returns the previous one."""
        previous, self._policy = self._policy, policy
        self._logger.info("Orchestration policy replaced: %s", policy.model_dump())
        if self._started and previous.health_check_interval_s != policy.health_check_interval_s:
            if self._health_task is not None:
                self._health_task.cancel()
                self._health_task = None
            self._start_health_loop()
        return previous

    # -------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        """Start periodic health probing if the policy enables it."""
        self._started = True
        self._start_health_loop()

    async def aclose(self) -> None:
        """Stop probing and cancel every session that has not finished."""
        self._started = False
        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        for session_id in list(self._sessions):
            await self.cancel(session_id)
        workers = list(self._workers.values())
        if workers:
            await asyncio.wait(workers)

    def _start_health_loop(self) -> None:
        if self._health_task is None and self._policy.health_check_interval_s > 0:
            self._health_task = asyncio.create_task(self._health_loop(), name="health-check")

    async def _health_loop(self) -> None:
        while self._policy.health_check_interval_s > 0:
            await asyncio.sleep(self._policy.health_check_interval_s)
            await self.check_health()

    async def check_health(self) -> dict[str, HealthResult]:
        """Probe every configured provider once."""
        results = {}
        for provider_id in self.registry.configured_provider_ids():
            try:
                results[provider_id] = await self.registry.check_health(provider_id)
            except NotConfiguredError:
                continue
        return results

    async def refresh_models(self, provider_id: str) -> list[ModelInfo]:
        return await self.registry.refresh_models(provider_id)

    # --------------------------------------------------------------- requests

    async def send(
        self,
        chat_id: str,
        messages: str | Sequence[ChatMessage],
        options: SendOptions | None = None,
    ) -> RequestSession:
        """Queue a request for ``chat_id`` and return its session.

        Attachment limits are enforced here, before any session exists: the
        global cap always, and the full per-provider rules when a provider is
        named explicitly. ``AttachmentError`` propagates to the caller.
        """
        options = options or SendOptions()
        if isinstance(messages, str):
            messages = [ChatMessage(role="user", chat_id=chat_id, content=messages)]

        refs = None
        files = list(options.attachments)
        if files:
            self.attachments.check_global_limits(files)
            if options.provider_id:
                refs = self.attachments.process(files, options.provider_id)

        session = RequestSession(
            chat_id=chat_id, provider_id=options.provider_id, model=options.model
        )
        session.state_history.append((SessionState.QUEUED, session.created_at))
        runtime = _Runtime(session=session, messages=list(messages), options=options, refs=refs)
        self._sessions[session.id] = runtime
        queued = self._state_event(session)
        self._record(runtime, queued)

        # enqueue before the first await so concurrent sends keep their order
        self._queues.setdefault(chat_id, deque()).append(session.id)
        if chat_id not in self._workers:
            self._workers[chat_id] = asyncio.create_task(
                self._chat_worker(chat_id), name=f"chat-{chat_id}"
            )
        self._logger.debug("Session %s queued for chat %s", session.id, chat_id)
        if self._sink is not None:
            await self._notify(queued)
        return session

    async def cancel(self, session_id: str, keep_partial: bool | None = None) -> bool:
        """Cancel a queued or running session. Returns False if already finished."""
        runtime = self._sessions.get(session_id)
        if runtime is None or runtime.session.terminal:
            return False

        runtime.keep_partial = (
            self._policy.keep_partial_on_cancel if keep_partial is None else keep_partial
        )
        queue = self._queues.get(runtime.session.chat_id)
        if queue is not None and session_id in queue:
            queue.remove(session_id)

        self._terminate(runtime, SessionState.CANCELLED)
        if runtime.task is not None:
            runtime.task.cancel()
        self._logger.info("Session %s cancelled", session_id)
        await self._persist(runtime)
        return True

    async def wait(self, session_id: str) -> RequestSession:
        """Wait until the session is terminal and persisted."""
        runtime = self._runtime(session_id)
        await runtime.done.wait()
        return runtime.session

    def get_session(self, session_id: str) -> RequestSession:
        return self._runtime(session_id).session

    def subscribe(self, session_id: str) -> AsyncIterator[SessionEvent]:
        """Return the session's event channel, replaying what already happened.

        Replay holds every state event plus the latest update; the iterator
        ends after the terminal event.
        """
        runtime = self._runtime(session_id)
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        replay = list(runtime.history)
        if runtime.last_update is not None:
            replay.insert(
                next((i for i, e in enumerate(replay) if e.kind == "terminal"), len(replay)),
                runtime.last_update,
            )
        for event in replay:
            queue.put_nowait(event)
        if not runtime.session.terminal:
            runtime.subscribers.append(queue)

        async def _gen() -> AsyncIterator[SessionEvent]:
            try:
                while True:
                    event = await queue.get()
                    yield event
                    if event.kind == "terminal":
                        return
            finally:
                if queue in runtime.subscribers:
                    runtime.subscribers.remove(queue)

        return _gen()

    # ---------------------------------------------------------------- workers

    async def _chat_worker(self, chat_id: str) -> None:
        queue = self._queues[chat_id]
        try:
            while queue:
                runtime = self._sessions[queue.popleft()]
                if runtime.session.terminal:
                    continue
                runtime.task = asyncio.create_task(
                    self._run(runtime), name=f"session-{runtime.session.id}"
                )
                # wait() keeps a cancelled session from cancelling the worker
                await asyncio.wait([runtime.task])
        finally:
            self._workers.pop(chat_id, None)
            if not queue:
                self._queues.pop(chat_id, None)

    async def _run(self, runtime: _Runtime) -> None:
        session = runtime.session
        loop = asyncio.get_running_loop()
        try:
            session.started_at = utcnow()
            await self._transition(runtime, SessionState.SELECTING)
            try:
                provider, model = await self._select(runtime)
            except _REJECTIONS as exc:
                self._logger.info("Session %s rejected: %s", session.id, exc)
                self._terminate(runtime, SessionState.REJECTED, exc)
                await self._persist(runtime)
                return

            session.provider_id = provider.provider_id
            session.model = model
            runtime.exec_started = loop.time()
            await self._transition(runtime, SessionState.EXECUTING)
            try:
                await self._execute(runtime, provider, model)
            except SwitchboardError as exc:
                self._logger.warning("Session %s failed: %s", session.id, exc)
                self._terminate(runtime, SessionState.FAILED, exc, provider=provider)
                await self._persist(runtime)
                return
            except Exception as exc:
                self._logger.exception("Session %s failed unexpectedly", session.id)
                self._terminate(runtime, SessionState.FAILED, exc, provider=provider)
                await self._persist(runtime)
                return

            self._terminate(runtime, SessionState.COMPLETED, provider=provider)
            await self._persist(runtime)
        except asyncio.CancelledError:
            # cancel() has already terminated the session; anything else is shutdown.
            if self._terminate(runtime, SessionState.CANCELLED):
                await self._persist(runtime)
            raise

    # -------------------------------------------------------------- selection

    async def _select(self, runtime: _Runtime) -> tuple[BaseProvider, str]:
        options = runtime.options
        files = list(options.attachments)
        required = set(options.required_capabilities)
        if any(f.mime_type.lower().startswith("image/") for f in files):
            required.add("vision")

        explicit = options.provider_id
        if explicit:
            instance = await self.registry.get_provider(explicit)
            if instance is not None and self.registry.is_configured(explicit):
                missing = instance.capabilities.missing(
                    required, min_context_length=options.min_context_length
                )
                if missing:
                    raise CapabilityMismatch(missing, explicit)
                return instance, options.model or instance.config.default_model
            if not self._policy.fallback_enabled:
                raise NotConfiguredError(explicit)
            self._logger.warning("Provider %s is not usable; falling back", explicit)

        candidates = self.registry.find_providers_by_capability(
            required, min_context_length=options.min_context_length
        )
        if not candidates:
            raise CapabilityMismatch(sorted(required))

        for provider_id in self._by_priority(candidates):
            if provider_id == explicit:
                continue
            if files and not self._attachments_fit(files, provider_id):
                continue
            instance = await self.registry.get_provider(provider_id)
            if instance is None or not self.registry.is_configured(provider_id):
                continue
            if not self.registry.is_healthy(provider_id):
                continue
            model = options.model if explicit is None else None
            if model and not _serves(instance, model):
                continue
            if files:
                runtime.refs = self.attachments.process(files, provider_id)
            return instance, model or instance.config.default_model

        raise NoProviderAvailable(
            "No configured and healthy provider can serve this request"
            + (f" (requires: {', '.join(sorted(required))})" if required else "")
        )

    def _by_priority(self, candidates: list[str]) -> list[str]:
        priority = [p for p in self._policy.provider_priority if p in candidates]
        return priority + [p for p in candidates if p not in priority]

    def _attachments_fit(self, files: list[RawFile], provider_id: str) -> bool:
        try:
            return self.attachments.validate(files, provider_id).valid
        except AttachmentError:
            return False

    # -------------------------------------------------------------- execution

    async def _execute(self, runtime: _Runtime, provider: BaseProvider, model: str) -> None:
        session = runtime.session
        messages = self._with_attachments(runtime, provider.provider_id)
        completion_options = runtime.options.completion_options(model)
        stream = runtime.options.stream
        if stream is None:
            stream = self._policy.prefer_streaming

        if not (stream and provider.capabilities.streaming):
            result = await provider.create_completion(messages, completion_options)
            await self._transition(runtime, SessionState.STREAMING)
            session.accumulated_text = result.text
            session.accumulated_reasoning = result.reasoning_text or ""
            session.usage = result.usage
            session.finish_reason = result.finish_reason
            await self._emit(runtime, self._update_event(session))
            return

        async with contextlib.aclosing(
            provider.stream_completion(messages, completion_options)
        ) as chunks:
            async for chunk in chunks:
                if session.state is SessionState.EXECUTING:
                    await self._transition(runtime, SessionState.STREAMING)
                if chunk.finished:
                    session.usage = chunk.usage
                    session.finish_reason = chunk.finish_reason
                    break
                session.accumulated_text += chunk.delta_text
                session.accumulated_reasoning += chunk.delta_reasoning or ""
                await self._emit(runtime, self._update_event(session))

        if session.state is SessionState.EXECUTING:
            await self._transition(runtime, SessionState.STREAMING)

    def _with_attachments(self, runtime: _Runtime, provider_id: str) -> list[ChatMessage]:
        messages = list(runtime.messages)
        if not runtime.refs:
            return messages

        for index in range(len(messages) - 1, -1, -1):
            if messages[index].role == "user":
                target = messages[index]
                blocks = self.attachments.format_for_provider(
                    runtime.refs, provider_id, text=target.text()
                )
                messages[index] = target.model_copy(
                    update={
                        "content": blocks,
                        "attachments": [*target.attachments, *(r.id for r in runtime.refs)],
                    }
                )
                return messages

        blocks = self.attachments.format_for_provider(runtime.refs, provider_id)
        messages.append(
            ChatMessage(role="user", chat_id=runtime.session.chat_id, content=blocks)
        )
        return messages

    # ------------------------------------------------------------ termination

    def _set_state(self, runtime: _Runtime, state: SessionState) -> None:
        session = runtime.session
        if state not in _TRANSITIONS.get(session.state, frozenset()):
            raise InvalidTransition(session.state.value, state.value)
        session.state = state
        session.state_history.append((state, utcnow()))

    async def _transition(self, runtime: _Runtime, state: SessionState) -> None:
        self._set_state(runtime, state)
        await self._emit(runtime, self._state_event(runtime.session))

    def _terminate(
        self,
        runtime: _Runtime,
        state: SessionState,
        error: BaseException | None = None,
        *,
        provider: BaseProvider | None = None,
    ) -> bool:
        """Move to a terminal state and publish the terminal event.

        Runs without awaiting so that cancellation cannot interleave with it.
        Returns False when the session was already terminal.
        """
        session = runtime.session
        if session.terminal:
            return False
        self._set_state(runtime, state)
        session.ended_at = session.state_history[-1][1]
        if error is not None:
            session.error = str(error) or type(error).__name__
            session.error_type = type(error).__name__
        if state is SessionState.CANCELLED and not runtime.keep_partial:
            session.accumulated_text = ""
            session.accumulated_reasoning = ""

        if provider is not None and state in (SessionState.COMPLETED, SessionState.FAILED):
            usage = session.usage
            if usage is None and state is SessionState.FAILED and session.accumulated_text:
                usage = Usage.estimate("", session.accumulated_text)
            session.cost = provider.compute_cost(usage, session.model)
            latency = asyncio.get_running_loop().time() - (runtime.exec_started or 0.0)
            self.registry.metrics(provider.provider_id).record(
                state is SessionState.COMPLETED, latency, usage, session.cost
            )

        event = SessionEvent(
            session_id=session.id,
            chat_id=session.chat_id,
            kind="terminal",
            state=state,
            content=session.accumulated_text,
            reasoning_content=session.accumulated_reasoning or None,
            finished=True,
            error=session.error,
            usage=session.usage,
        )
        runtime.history.append(event)
        for queue in runtime.subscribers:
            queue.put_nowait(event)
        runtime.subscribers.clear()
        return True

    async def _persist(self, runtime: _Runtime) -> None:
        """Write the single assistant message for a terminal session."""
        session = runtime.session
        message = ChatMessage(
            chat_id=session.chat_id,
            role="assistant",
            content=session.accumulated_text,
            reasoning_content=session.accumulated_reasoning or None,
            metadata={
                "session_id": session.id,
                "state": session.state.value,
                "provider": session.provider_id,
                "model": session.model,
                "usage": session.usage.model_dump() if session.usage else None,
                "cost": session.cost,
                "finish_reason": session.finish_reason,
                "error": session.error,
                "error_type": session.error_type,
            },
        )
        try:
            await self.store.create(message)
        except Exception:
            self._logger.exception("Failed to persist result of session %s", session.id)
        finally:
            if self._sink is not None:
                await self._notify(runtime.history[-1])
            runtime.done.set()
            self._retain(session.id)

    def _retain(self, session_id: str) -> None:
        self._finished.append(session_id)
        while len(self._finished) > _FINISHED_SESSION_LIMIT:
            self._sessions.pop(self._finished.popleft(), None)

    # ----------------------------------------------------------------- events

    async def _emit(self, runtime: _Runtime, event: SessionEvent) -> None:
        if runtime.session.terminal:
            return
        self._record(runtime, event)
        if self._sink is not None:
            await self._notify(event)

    @staticmethod
    def _record(runtime: _Runtime, event: SessionEvent) -> None:
        if event.kind == "update":
            runtime.last_update = event
        else:
            runtime.history.append(event)
        for queue in runtime.subscribers:
            queue.put_nowait(event)

    async def _notify(self, event: SessionEvent) -> None:
        try:
            await self._sink.publish(event)
        except Exception as exc:
            self._logger.warning("Event sink rejected %s event: %s", event.kind, exc)

    @staticmethod
    def _state_event(session: RequestSession) -> SessionEvent:
        return SessionEvent(
            session_id=session.id, chat_id=session.chat_id, kind="state", state=session.state
        )

    @staticmethod
    def _update_event(session: RequestSession) -> SessionEvent:
        return SessionEvent(
            session_id=session.id,
            chat_id=session.chat_id,
            kind="update",
            state=session.state,
            content=session.accumulated_text,
            reasoning_content=session.accumulated_reasoning or None,
        )

    def _runtime(self, session_id: str) -> _Runtime:
        try:
            return self._sessions[session_id]
        except KeyError as exc:
            raise KeyError(f"Unknown session '{session_id}'") from exc


def _serves(instance: BaseProvider, model: str) -> bool:
    if not instance.models:
        return model in instance.pricing
    return any(m.id == model for m in instance.models)

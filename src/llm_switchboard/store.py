"""Message persistence seam consumed by the orchestrator."""

from __future__ import annotations

from typing import Protocol

from llm_switchboard.types import ChatMessage


class MessageStore(Protocol):
    """Keyed message store. The orchestrator only ever calls ``create``."""

    async def create(self, message: ChatMessage) -> str: ...

    async def read(self, message_id: str) -> ChatMessage | None: ...

    async def update(self, message: ChatMessage) -> None: ...

    async def delete(self, message_id: str) -> None: ...

    async def list_by_chat(self, chat_id: str) -> list[ChatMessage]: ...


class InMemoryMessageStore:
    """Dictionary-backed store for scripts and tests."""

    def __init__(self) -> None:
        self._messages: dict[str, ChatMessage] = {}

    async def create(self, message: ChatMessage) -> str:
        self._messages[message.id] = message
        return message.id

    async def read(self, message_id: str) -> ChatMessage | None:
        return self._messages.get(message_id)

    async def update(self, message: ChatMessage) -> None:
        if message.id not in self._messages:
            raise KeyError(message.id)
        self._messages[message.id] = message

    async def delete(self, message_id: str) -> None:
        self._messages.pop(message_id, None)

    async def list_by_chat(self, chat_id: str) -> list[ChatMessage]:
        return sorted(
            (m for m in self._messages.values() if m.chat_id == chat_id),
            key=lambda m: m.timestamp,
        )

"""Conversation history storage for the reading assistant.

The store is the only persistence seam of the assistant; the default
in-memory implementation is enough for a single process and for tests.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Protocol

from app.gateway.types import Message


class ConversationStore(Protocol):
    async def append(self, conversation_id: str, *messages: Message) -> None: ...

    async def list(self, conversation_id: str, limit: int | None = None) -> list[Message]: ...

    async def archive(self, conversation_id: str) -> int: ...


class InMemoryConversationStore:
    """Keeps messages per conversation id in process memory."""

    def __init__(self):
        self._conversations: dict[str, list[Message]] = defaultdict(list)
        self._archived: dict[str, list[Message]] = {}
        self._lock = asyncio.Lock()

    async def append(self, conversation_id: str, *messages: Message) -> None:
        async with self._lock:
            self._conversations[conversation_id].extend(messages)

    async def list(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        async with self._lock:
            history = list(self._conversations.get(conversation_id, ()))
        if limit is not None:
            history = history[-limit:] if limit > 0 else []
        return history

    async def archive(self, conversation_id: str) -> int:
        """Move a conversation out of the active set. Returns the number of messages archived."""
        async with self._lock:
            messages = self._conversations.pop(conversation_id, [])
            if messages:
                self._archived.setdefault(conversation_id, []).extend(messages)
        return len(messages)

    def archived(self, conversation_id: str) -> list[Message]:
        return list(self._archived.get(conversation_id, ()))

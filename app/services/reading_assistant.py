"""Reading assistant — conversation-aware front door to the AI orchestrator.

Loads the conversation history, appends the new question, and sends the
whole exchange through the orchestrator. The question and the reply are
stored only once a complete answer has arrived, so a failed or abandoned
call leaves the history unchanged.

Usage:
    assistant = ReadingAssistant(orchestrator, InMemoryConversationStore())
    reply = await assistant.ask("conv-1", "Who narrates Moby-Dick?")

    async for chunk in assistant.stream("conv-1", "And where does it start?"):
        ...
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator

from app.gateway.orchestrator import AIOrchestrator
from app.gateway.types import AIRequest, AIResponse, Message, MessageRole, StreamChunk
from app.services.conversation import ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a reading assistant inside a book-tracking app. "
    "Answer questions about books, authors and the reader's progress concisely. "
    "If you are not sure about a plot detail, say so instead of guessing."
)


class ReadingAssistant:
    def __init__(
        self,
        orchestrator: AIOrchestrator,
        store: ConversationStore,
        max_history: int = 20,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.max_history = max_history
        self.system_prompt = system_prompt

    async def _build_request(
        self,
        conversation_id: str,
        question: str,
        system_prompt: str | None,
        stream: bool,
        **options,
    ) -> tuple[AIRequest, Message]:
        history = await self.store.list(conversation_id, limit=self.max_history)
        question_message = Message(MessageRole.USER, question)
        request = AIRequest(
            messages=[*history, question_message],
            system_prompt=system_prompt if system_prompt is not None else self.system_prompt,
            stream=stream,
            **options,
        )
        return request, question_message

    async def ask(
        self,
        conversation_id: str,
        question: str,
        system_prompt: str | None = None,
        **options,
    ) -> AIResponse:
        """Answer a question in the context of a conversation.

        `options` are passed to AIRequest (model, temperature, max_tokens, ...).
        Orchestrator errors propagate unchanged.
        """
        request, question_message = await self._build_request(conversation_id, question, system_prompt, False, **options)
        response = await self.orchestrator.ask(request)
        await self.store.append(
            conversation_id,
            question_message,
            Message(MessageRole.ASSISTANT, response.content),
        )
        logger.info(
            "Conversation %s answered by %s/%s in %dms",
            conversation_id,
            response.provider.value,
            response.model,
            response.latency_ms,
            extra={"conversation_id": conversation_id, "provider": response.provider.value},
        )
        return response

    async def stream(
        self,
        conversation_id: str,
        question: str,
        system_prompt: str | None = None,
        **options,
    ) -> AsyncGenerator[StreamChunk, None]:
        request, question_message = await self._build_request(conversation_id, question, system_prompt, True, **options)
        parts: list[str] = []
        async with self.orchestrator.stream(request) as chunks:
            async for chunk in chunks:
                parts.append(chunk.delta)
                if chunk.done:
                    await self.store.append(
                        conversation_id,
                        question_message,
                        Message(MessageRole.ASSISTANT, "".join(parts)),
                    )
                    logger.info(
                        "Conversation %s streamed by %s/%s",
                        conversation_id,
                        chunk.provider.value,
                        chunk.model,
                        extra={"conversation_id": conversation_id, "provider": chunk.provider.value},
                    )
                yield chunk

    async def history(self, conversation_id: str) -> list[Message]:
        return await self.store.list(conversation_id)

    async def end_conversation(self, conversation_id: str) -> int:
        archived = await self.store.archive(conversation_id)
        logger.info("Conversation %s archived (%d messages)", conversation_id, archived)
        return archived

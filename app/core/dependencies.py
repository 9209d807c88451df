from fastapi import Depends, Request

from app.gateway.errors import AIError
from app.gateway.orchestrator import AIOrchestrator
from app.services.conversation import ConversationStore
from app.services.reading_assistant import ReadingAssistant


def get_orchestrator(request: Request) -> AIOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise AIError("AI orchestrator is not initialized", code="NOT_INITIALIZED")
    return orchestrator


def get_conversation_store(request: Request) -> ConversationStore:
    return request.app.state.conversation_store


def get_reading_assistant(
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
    store: ConversationStore = Depends(get_conversation_store),
) -> ReadingAssistant:
    return ReadingAssistant(orchestrator, store)

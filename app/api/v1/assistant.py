"""Reading assistant API — ask, stream, conversation history, provider status."""

import json
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from app.core.dependencies import get_orchestrator, get_reading_assistant
from app.gateway.errors import AIError
from app.gateway.orchestrator import AIOrchestrator
from app.gateway.types import AIProvider
from app.schemas.assistant import (
    ArchiveResponse,
    AskRequest,
    AskResponse,
    HistoryMessage,
    HistoryResponse,
    UsageResponse,
)
from app.services.reading_assistant import ReadingAssistant

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/assistant", tags=["assistant"])


def _request_options(body: AskRequest) -> dict:
    return {"model": body.model, "temperature": body.temperature, "max_tokens": body.max_tokens}


@router.post("/ask", response_model=AskResponse)
async def ask(body: AskRequest, assistant: ReadingAssistant = Depends(get_reading_assistant)):
    response = await assistant.ask(body.conversation_id, body.question, body.system_prompt, **_request_options(body))
    return AskResponse(
        id=response.id,
        conversation_id=body.conversation_id,
        content=response.content,
        provider=response.provider.value,
        model=response.model,
        finish_reason=response.finish_reason.value,
        latency_ms=response.latency_ms,
        cost_usd=response.cost_usd,
        usage=UsageResponse(**response.usage.to_dict()),
    )


@router.post("/stream")
async def stream(body: AskRequest, assistant: ReadingAssistant = Depends(get_reading_assistant)):
    """Server-sent events: one `data:` JSON line per chunk, an `error` event on failure."""
    chunks = assistant.stream(body.conversation_id, body.question, body.system_prompt, **_request_options(body))

    async def events() -> AsyncGenerator[str, None]:
        try:
            async for chunk in chunks:
                yield f"data: {json.dumps(chunk.to_dict(), ensure_ascii=False)}\n\n"
        except AIError as exc:
            logger.warning("Stream for conversation %s failed: %s", body.conversation_id, exc)
            yield f"event: error\ndata: {json.dumps(exc.to_dict(), ensure_ascii=False)}\n\n"
        finally:
            await chunks.aclose()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/conversations/{conversation_id}", response_model=HistoryResponse)
async def get_history(conversation_id: str, assistant: ReadingAssistant = Depends(get_reading_assistant)):
    messages = await assistant.history(conversation_id)
    return HistoryResponse(
        conversation_id=conversation_id,
        messages=[HistoryMessage(role=m.role.value, content=m.content) for m in messages],
    )


@router.delete("/conversations/{conversation_id}", response_model=ArchiveResponse)
async def archive_conversation(conversation_id: str, assistant: ReadingAssistant = Depends(get_reading_assistant)):
    archived = await assistant.end_conversation(conversation_id)
    return ArchiveResponse(conversation_id=conversation_id, archived_messages=archived)


@router.get("/health")
async def health(orchestrator: AIOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_health_status()


@router.get("/stats")
async def stats(orchestrator: AIOrchestrator = Depends(get_orchestrator)):
    return {
        **orchestrator.get_stats(),
        "circuit_breakers": orchestrator.get_circuit_breaker_status(),
    }


@router.post("/providers/{provider}/reset")
async def reset_provider(provider: AIProvider, orchestrator: AIOrchestrator = Depends(get_orchestrator)):
    if orchestrator.get_adapter(provider) is None:
        raise HTTPException(status_code=404, detail=f"Provider {provider.value} is not configured")
    await orchestrator.reset_circuit_breaker(provider)
    return orchestrator.circuit_breaker.get_circuit_state(provider)

"""Response & Stream Normalizer.

Post-processes uniform responses and turns each vendor's incremental wire
format into one uniform chunk sequence:
  - SSE line framing → event payloads
  - vendor event payload → ChunkDelta (fixed schema per vendor)
  - ChunkDelta sequence → StreamChunk deltas + exactly one terminal chunk
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass

from app.gateway.errors import AIError, NetworkError
from app.gateway.schemas import GeminiResponse, OpenAIStreamEvent, QwenResponse
from app.gateway.types import (
    AIModel,
    AIProvider,
    AIResponse,
    FinishReason,
    StreamChunk,
    Usage,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
    "function_call": FinishReason.FUNCTION_CALL,
    "tool_calls": FinishReason.FUNCTION_CALL,
}


def map_finish_reason(raw: str | None) -> FinishReason | None:
    """Map a vendor finish reason onto FinishReason.

    Vendor filter outcomes (SAFETY, content_filter, RECITATION ...) map to ERROR.
    """
    if not raw or raw == "null":
        return None
    return _FINISH_REASONS.get(raw.lower(), FinishReason.ERROR)


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token) for vendors that omit usage."""
    return math.ceil(len(text) / 4) if text else 0


def normalize_response(response: AIResponse, model: AIModel | None = None) -> AIResponse:
    """Apply final normalization to a uniform response.

    This is idempotent — can be called multiple times safely.
    """
    usage = response.usage
    if usage.total_tokens == 0 and (usage.input_tokens or usage.output_tokens):
        usage.total_tokens = usage.input_tokens + usage.output_tokens

    if response.cost_usd == 0.0 and model is not None:
        caps = model.capabilities
        response.cost_usd = round(
            usage.input_tokens * caps.cost_per_input_token + usage.output_tokens * caps.cost_per_output_token,
            6,
        )

    if not response.model and model is not None:
        response.model = model.id

    return response


# ---------------------------------------------------------------------------
# SSE framing
# ---------------------------------------------------------------------------


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncGenerator[str, None]:
    """Yield the payload of every `data:` line.

    Comments (`:`), `event:`/`id:`/`retry:` fields and blank separators are
    skipped. Both `data: x` and `data:x` are accepted (DashScope omits the space).
    """
    async for line in lines:
        if not line or line.startswith(":"):
            continue
        if not line.startswith("data:"):
            continue
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        payload = payload.strip()
        if payload:
            yield payload


# ---------------------------------------------------------------------------
# Per-vendor event parsing
# ---------------------------------------------------------------------------


@dataclass
class ChunkDelta:
    """What one vendor event contributes to the stream."""

    text: str = ""
    finish_reason: FinishReason | None = None
    usage: Usage | None = None
    end_of_stream: bool = False  # Explicit vendor end marker (e.g. [DONE])


def parse_openai_event(payload: dict) -> ChunkDelta:
    """`choices[0].delta.content` shape (DeepSeek, Kimi)."""
    event = OpenAIStreamEvent.model_validate(payload)
    delta = ChunkDelta()
    usage = event.usage
    if event.choices:
        choice = event.choices[0]
        delta.text = choice.delta.content or ""
        delta.finish_reason = map_finish_reason(choice.finish_reason)
        usage = usage or choice.usage
    if usage is not None:
        delta.usage = Usage.from_counts(usage.prompt_tokens, usage.completion_tokens, usage.total_tokens)
    return delta


def parse_gemini_event(payload: dict) -> ChunkDelta:
    """`candidates[0].content.parts[]` shape."""
    event = GeminiResponse.model_validate(payload)
    delta = ChunkDelta()
    if event.candidates:
        candidate = event.candidates[0]
        if candidate.content is not None:
            delta.text = candidate.content.text
        delta.finish_reason = map_finish_reason(candidate.finish_reason)
    elif event.prompt_feedback and event.prompt_feedback.block_reason:
        delta.finish_reason = FinishReason.ERROR
    if event.usage_metadata is not None:
        meta = event.usage_metadata
        delta.usage = Usage.from_counts(meta.prompt_token_count, meta.candidates_token_count, meta.total_token_count)
    return delta


def parse_qwen_event(payload: dict) -> ChunkDelta:
    """DashScope `output.text` shape, requested with incremental_output=true."""
    event = QwenResponse.model_validate(payload)
    delta = ChunkDelta(text=event.output.text or "")
    if event.output.finished:
        delta.finish_reason = map_finish_reason(event.output.finish_reason)
    if event.usage is not None:
        delta.usage = Usage.from_counts(event.usage.input_tokens, event.usage.output_tokens, event.usage.total_tokens)
    return delta


# ---------------------------------------------------------------------------
# Stream normalizer
# ---------------------------------------------------------------------------


class StreamNormalizer:
    """Turns ChunkDeltas into the uniform StreamChunk sequence.

    Content chunks carry only the new text and no usage. `finish()` emits the
    single terminal chunk (done=True, usage populated) and may be called once.
    Vendors that end the body without a completion signal are treated as a
    truncated stream.
    """

    def __init__(self, provider: AIProvider, model: str, response_id: str | None = None):
        self.provider = provider
        self.model = model
        self.id = response_id or uuid.uuid4().hex
        self._parts: list[str] = []
        self._usage: Usage | None = None
        self._finish_reason: FinishReason | None = None
        self._end_marker = False
        self._done = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def completed(self) -> bool:
        return self._end_marker or self._finish_reason is not None

    def feed(self, delta: ChunkDelta) -> StreamChunk | None:
        if self._done:
            raise AIError("Chunk received after stream completion", self.provider, code="INVALID_RESPONSE")
        if delta.usage is not None:
            self._usage = delta.usage
        if delta.finish_reason is not None:
            self._finish_reason = delta.finish_reason
        if delta.end_of_stream:
            self._end_marker = True
        if not delta.text:
            return None
        self._parts.append(delta.text)
        return StreamChunk(id=self.id, delta=delta.text, provider=self.provider, model=self.model)

    def finish(self) -> StreamChunk:
        if self._done:
            raise AIError("Stream already completed", self.provider, code="INVALID_RESPONSE")
        if not self.completed:
            raise NetworkError("Stream ended before completion signal", self.provider)
        self._done = True
        usage = self._usage
        if usage is None:
            usage = Usage.from_counts(0, estimate_tokens(self.text))
        return StreamChunk(
            id=self.id,
            delta="",
            provider=self.provider,
            model=self.model,
            done=True,
            usage=usage,
            finish_reason=self._finish_reason or FinishReason.STOP,
        )


class AIStream:
    """Pull-based handle over a chunk sequence with explicit close.

    Usage:
        async with orchestrator.stream_request(request) as stream:
            async for chunk in stream:
                ...

    Closing (or leaving the `async with` block early) closes the underlying
    vendor response immediately.
    """

    def __init__(self, chunks: AsyncGenerator[StreamChunk, None]):
        self._chunks = chunks
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AIStream:
        return self

    async def __anext__(self) -> StreamChunk:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            self._closed = True
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._chunks.aclose()

    async def __aenter__(self) -> AIStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

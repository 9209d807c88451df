"""Shared fakes for the gateway tests.

ScriptedAdapter replays a list of outcomes instead of talking HTTP, so the
orchestrator, router and assistant tests can drive any failure sequence.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

import pytest

from app.core.config import settings

# Override settings for tests
settings.app_env = "development"
settings.ai_cache_enabled = False

from app.gateway.normalizer import ChunkDelta  # noqa: E402
from app.gateway.types import (  # noqa: E402
    AIModel,
    AIProvider,
    AIRequest,
    AIResponse,
    FinishReason,
    Message,
    MessageRole,
    ModelCapabilities,
    ProviderConfig,
    Usage,
)
from app.gateway.vendor_adapters import BaseVendorAdapter  # noqa: E402

DEFAULT_STREAM = ["Test ", "streaming ", "response"]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedAdapter(BaseVendorAdapter):
    """Adapter whose calls return (or raise) the next scripted outcome.

    `script` items: str (answer text), AIResponse, or an exception to raise.
    `stream_script` items: one list per stream call; each element is a text
    delta, a ChunkDelta, or an exception raised at that point. A stream without
    an explicit ChunkDelta gets a final stop delta with usage appended.
    """

    requires_api_key = False
    default_model = "scripted-model"

    def __init__(
        self,
        provider: AIProvider,
        script: list | None = None,
        stream_script: list[list] | None = None,
        *,
        model_ids: tuple[str, ...] = ("scripted-model",),
        capabilities: ModelCapabilities | None = None,
    ):
        super().__init__()
        self.provider = provider
        self.script = list(script or [])
        self.stream_script = list(stream_script or [])
        caps = capabilities or ModelCapabilities(max_context_tokens=8192, max_output_tokens=1024)
        self.model_catalog = {model_id: (model_id, caps) for model_id in model_ids}
        self.calls = 0
        self.stream_calls = 0
        self.healthy = True
        self.delay = 0.0
        self.requests: list[AIRequest] = []

    async def _validate_credentials(self) -> None:
        return None

    async def _fetch_models(self) -> list[AIModel]:
        return self._default_models()

    async def _perform_health_check(self) -> bool:
        return self.healthy

    async def _perform_request(self, request: AIRequest, model: AIModel) -> AIResponse:
        self.calls += 1
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.script.pop(0) if self.script else f"answer from {self.provider.value}"
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, AIResponse):
            return outcome
        return AIResponse(
            content=outcome,
            provider=self.provider,
            model=model.id,
            usage=Usage.from_counts(10, 5),
        )

    async def _stream_deltas(self, request: AIRequest, model: AIModel) -> AsyncGenerator[ChunkDelta, None]:
        self.stream_calls += 1
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        items = self.stream_script.pop(0) if self.stream_script else list(DEFAULT_STREAM)
        explicit_end = any(isinstance(item, ChunkDelta) for item in items)
        for item in items:
            if isinstance(item, BaseException):
                raise item
            yield item if isinstance(item, ChunkDelta) else ChunkDelta(text=item)
        if not explicit_end:
            yield ChunkDelta(finish_reason=FinishReason.STOP, usage=Usage.from_counts(12, 6))


async def make_scripted(
    provider: AIProvider,
    priority: int = 1,
    script: list | None = None,
    stream_script: list[list] | None = None,
    delay: float = 0.0,
    **kwargs,
) -> ScriptedAdapter:
    model_ids = kwargs.pop("model_ids", ("scripted-model",))
    capabilities = kwargs.pop("capabilities", None)
    adapter = ScriptedAdapter(provider, script, stream_script, model_ids=model_ids, capabilities=capabilities)
    adapter.delay = delay
    await adapter.initialize(ProviderConfig(provider=provider, priority=priority, **kwargs))
    return adapter


def user_request(text: str = "Who wrote Middlemarch?", **kwargs) -> AIRequest:
    return AIRequest(messages=[Message(MessageRole.USER, text)], **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


"""Vendor-Specific Adapters — protocol-level handling for each AI provider.

Each adapter translates an AIRequest into the vendor's HTTP protocol, sends
it, and returns an AIResponse (or a StreamChunk sequence) with normalized
fields. Failures are always raised as typed AIError subclasses.

Vendor-specific behaviors:
  - DeepSeek: OpenAI-compatible, "Server Busy" 503 → treated as rate limit
  - Kimi (Moonshot): OpenAI-compatible under /v1
  - Gemini: Google AI generateContent, systemInstruction, finishReason SAFETY
    → finish_reason=error, invalid key reported as HTTP 400
  - Qwen (DashScope): proprietary input/parameters envelope, SSE via
    X-DashScope-SSE header with incremental output, no model listing
  - Mock: offline canned reading-assistant answers
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from app.gateway.errors import (
    AIError,
    AuthenticationError,
    ModelNotAvailableError,
    NetworkError,
    ProviderTimeoutError,
    RateLimitError,
)
from app.gateway.normalizer import (
    DONE_SENTINEL,
    ChunkDelta,
    StreamNormalizer,
    estimate_tokens,
    iter_sse_data,
    map_finish_reason,
    normalize_response,
    parse_gemini_event,
    parse_openai_event,
    parse_qwen_event,
)
from app.gateway.rate_limiter import SlidingWindow, parse_rate_limit_headers, parse_retry_after
from app.gateway.schemas import (
    GeminiModelList,
    GeminiResponse,
    OpenAIChatCompletion,
    OpenAIModelList,
    QwenResponse,
    VendorErrorBody,
)
from app.gateway.types import (
    AIModel,
    AIProvider,
    AIRequest,
    AIResponse,
    FinishReason,
    MessageRole,
    ModelCapabilities,
    ProviderCapabilities,
    ProviderConfig,
    RateLimitStatus,
    StreamChunk,
    Usage,
)

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def validate_request(request: AIRequest, provider: AIProvider | None = None) -> None:
    """Reject malformed requests before any network call."""
    if not request.messages:
        raise AIError("Request must contain at least one message", provider, code="INVALID_REQUEST")
    if not 0.0 <= request.temperature <= 2.0:
        raise AIError("temperature must be between 0 and 2", provider, code="INVALID_REQUEST")
    if request.top_p is not None and not 0.0 <= request.top_p <= 1.0:
        raise AIError("top_p must be between 0 and 1", provider, code="INVALID_REQUEST")
    if request.max_tokens < 1:
        raise AIError("max_tokens must be at least 1", provider, code="INVALID_REQUEST")


def _caps(
    context: int,
    output: int,
    input_per_m: float = 0.0,
    output_per_m: float = 0.0,
    *,
    images: bool = False,
    documents: bool = False,
    functions: bool = True,
) -> ModelCapabilities:
    """Model capabilities with pricing given per 1M tokens."""
    return ModelCapabilities(
        supports_streaming=True,
        supports_function_calling=functions,
        supports_images=images,
        supports_documents=documents,
        max_context_tokens=context,
        max_output_tokens=output,
        cost_per_input_token=input_per_m / 1_000_000,
        cost_per_output_token=output_per_m / 1_000_000,
    )


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = VendorErrorBody.model_validate(resp.json())
    except (ValueError, ValidationError):
        return resp.text[:200]
    return body.detail or resp.text[:200]


class BaseVendorAdapter(ABC):
    """Base class for all vendor adapters.

    Subclasses implement the vendor hooks (`_validate_credentials`,
    `_fetch_models`, `_perform_request`, `_stream_deltas`,
    `_perform_health_check`); the public operations here add validation,
    error typing, latency/usage normalization and rate-limit bookkeeping.
    """

    provider: AIProvider
    default_model: str
    model_catalog: dict[str, tuple[str, ModelCapabilities]] = {}
    requires_api_key = True

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.config: ProviderConfig | None = None
        self.initialized = False
        self._models: list[AIModel] = []
        self._transport = transport
        self._header_status: RateLimitStatus | None = None
        self._window = SlidingWindow(limit=60)

    # -- configuration accessors -------------------------------------------

    def _require_config(self) -> ProviderConfig:
        if self.config is None:
            raise AIError("Adapter is not initialized", self.provider, code="NOT_INITIALIZED")
        return self.config

    @property
    def base_url(self) -> str:
        return self._require_config().endpoint

    @property
    def timeout(self) -> float:
        return self._require_config().timeout

    @property
    def api_key(self) -> str:
        return self._require_config().api_key

    @property
    def priority(self) -> int:
        return self.config.priority if self.config else 0

    @property
    def weight(self) -> float:
        return self.config.weight if self.config else 1.0

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Union of the capabilities of the adapter's models."""
        models = self._models or self._default_models()
        if not models:
            return ProviderCapabilities()
        caps = [m.capabilities for m in models]
        return ProviderCapabilities(
            supports_streaming=any(c.supports_streaming for c in caps),
            supports_function_calling=any(c.supports_function_calling for c in caps),
            supports_images=any(c.supports_images for c in caps),
            supports_documents=any(c.supports_documents for c in caps),
            max_context_tokens=max(c.max_context_tokens for c in caps),
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self, config: ProviderConfig) -> None:
        """Validate credentials and discover models.

        Raises AuthenticationError for a missing/rejected credential and
        NetworkError when the validation call cannot complete. Model discovery
        failures fall back to the built-in model list.
        """
        if config.provider != self.provider:
            raise AIError(
                f"Config for {config.provider.value} passed to {self.provider.value} adapter",
                self.provider,
                code="INVALID_CONFIG",
            )
        self.config = config
        self.initialized = False
        self._header_status = None
        self._window = SlidingWindow(limit=config.rate_limit)

        if self.requires_api_key and not config.api_key:
            raise AuthenticationError("API key is required", self.provider)

        try:
            await self._validate_credentials()
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(self.provider, self.timeout) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Credential validation failed: {exc}", self.provider) from exc

        self._models = await self._discover_models()
        self.initialized = True
        logger.info("Initialized %s adapter with %d models", self.provider.value, len(self._models))

    async def _discover_models(self) -> list[AIModel]:
        try:
            models = await self._fetch_models()
        except (AIError, httpx.HTTPError, ValueError) as exc:
            logger.warning("Model discovery failed for %s, using built-in list: %s", self.provider.value, exc)
            models = []
        if not models:
            models = self._default_models()

        allowed = self._require_config().models
        if allowed:
            filtered = [m for m in models if m.id in allowed]
            if filtered:
                return filtered
            logger.warning(
                "None of the allowed models %s offered by %s, keeping all %d",
                list(allowed),
                self.provider.value,
                len(models),
            )
        return models

    def _default_models(self) -> list[AIModel]:
        return [
            AIModel(id=model_id, name=name, provider=self.provider, capabilities=caps)
            for model_id, (name, caps) in self.model_catalog.items()
        ]

    def _model_for(self, model_id: str, name: str = "") -> AIModel:
        if model_id in self.model_catalog:
            catalog_name, caps = self.model_catalog[model_id]
            return AIModel(id=model_id, name=name or catalog_name, provider=self.provider, capabilities=caps)
        return AIModel(id=model_id, name=name or model_id, provider=self.provider, capabilities=_caps(8192, 4096))

    def _check_validation_response(self, resp: httpx.Response) -> None:
        if resp.status_code in (401, 403):
            raise AuthenticationError(_error_detail(resp) or "Invalid API key", self.provider, status_code=resp.status_code)
        if resp.status_code == 429:
            logger.warning("%s credential check was rate limited; assuming key is valid", self.provider.value)
            return
        if resp.status_code >= 400:
            raise NetworkError(
                f"Credential validation failed with HTTP {resp.status_code}",
                self.provider,
                status_code=resp.status_code,
            )

    # -- public operations -------------------------------------------------

    def get_models(self) -> list[AIModel]:
        if not self.initialized:
            raise AIError("Adapter is not initialized", self.provider, code="NOT_INITIALIZED")
        return list(self._models)

    def has_model(self, model_id: str) -> bool:
        return any(m.id == model_id for m in self._models)

    def get_rate_limit_status(self) -> RateLimitStatus:
        """Last header-reported status while valid, else the sliding-window estimate."""
        now = time.time()
        if self._header_status is not None and self._header_status.reset_time > now:
            return self._header_status
        return self._window.status(now)

    async def request(self, request: AIRequest) -> AIResponse:
        model = self._prepare(request)
        start = time.monotonic()
        try:
            response = await self._perform_request(request, model)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(self.provider, self.timeout) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc) or type(exc).__name__, self.provider) from exc
        response.latency_ms = int((time.monotonic() - start) * 1000)
        return normalize_response(response, model)

    async def stream_request(self, request: AIRequest) -> AsyncGenerator[StreamChunk, None]:
        """Lazy, finite, non-restartable chunk sequence ending in one done chunk."""
        model = self._prepare(request)
        if not model.capabilities.supports_streaming:
            raise AIError(f"Model {model.id} does not support streaming", self.provider, code="STREAMING_NOT_SUPPORTED")

        normalizer = StreamNormalizer(self.provider, model.id)
        deltas = self._stream_deltas(request, model)
        try:
            async for delta in deltas:
                chunk = normalizer.feed(delta)
                if chunk is not None:
                    yield chunk
                if delta.end_of_stream:
                    break
            yield normalizer.finish()
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(self.provider, self.timeout) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Stream interrupted: {exc}", self.provider) from exc
        finally:
            await deltas.aclose()

    async def health_check(self) -> bool:
        if not self.initialized:
            return False
        try:
            return await self._perform_health_check()
        except Exception as exc:  # health checks never raise
            logger.debug("Health check for %s failed: %s", self.provider.value, exc)
            return False

    def _prepare(self, request: AIRequest) -> AIModel:
        if not self.initialized:
            raise AIError("Adapter is not initialized", self.provider, code="NOT_INITIALIZED")
        validate_request(request, self.provider)
        if request.model:
            for model in self._models:
                if model.id == request.model:
                    return model
            raise ModelNotAvailableError(request.model, self.provider)
        for model in self._models:
            if model.id == self.default_model:
                return model
        return self._models[0] if self._models else self._model_for(self.default_model)

    # -- HTTP helpers ------------------------------------------------------

    def _observe(self, resp: httpx.Response) -> None:
        now = time.time()
        self._window.record(now)
        status = parse_rate_limit_headers(resp.headers, now=now)
        if status is not None:
            self._header_status = status

    def _raise_for_status(self, resp: httpx.Response, model_id: str = "") -> None:
        status = resp.status_code
        if status < 400:
            return
        detail = _error_detail(resp)
        if status in (401, 403):
            raise AuthenticationError(detail or "Invalid API key", self.provider, status_code=status)
        if status == 429:
            retry_after = parse_retry_after(resp.headers)
            raise RateLimitError(
                detail or "Rate limit exceeded",
                self.provider,
                retry_after=retry_after,
                reset_time=time.time() + retry_after,
            )
        if status == 404:
            raise ModelNotAvailableError(model_id or "requested", self.provider, status_code=status)
        if status >= 500:
            raise NetworkError(f"Server error {status}: {detail}", self.provider, status_code=status)
        raise AIError(f"API error {status}: {detail}", self.provider, code="API_ERROR", status_code=status)

    async def _post(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        model_id: str = "",
    ) -> httpx.Response:
        async with self._client() as client:
            resp = await client.post(url, json=payload, headers=headers, params=params)
        self._observe(resp)
        self._raise_for_status(resp, model_id)
        return resp

    def _parse(self, resp: httpx.Response, schema: type[SchemaT]) -> SchemaT:
        try:
            return schema.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise AIError(f"Malformed response: {exc}", self.provider, code="INVALID_RESPONSE") from exc

    async def _sse_events(
        self,
        url: str,
        payload: dict[str, Any],
        parse: Callable[[dict], ChunkDelta],
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        model_id: str = "",
    ) -> AsyncGenerator[ChunkDelta, None]:
        async with self._client() as client:
            async with client.stream("POST", url, json=payload, headers=headers, params=params) as resp:
                self._observe(resp)
                if resp.status_code >= 400:
                    await resp.aread()
                    self._raise_for_status(resp, model_id)
                async for data in iter_sse_data(resp.aiter_lines()):
                    if data == DONE_SENTINEL:
                        yield ChunkDelta(end_of_stream=True)
                        return
                    try:
                        delta = parse(json.loads(data))
                    except (ValueError, ValidationError) as exc:
                        raise AIError(
                            f"Malformed stream event: {exc}", self.provider, code="INVALID_RESPONSE"
                        ) from exc
                    yield delta

    # -- vendor hooks ------------------------------------------------------

    @abstractmethod
    async def _validate_credentials(self) -> None: ...

    @abstractmethod
    async def _fetch_models(self) -> list[AIModel]: ...

    @abstractmethod
    async def _perform_request(self, request: AIRequest, model: AIModel) -> AIResponse: ...

    @abstractmethod
    def _stream_deltas(self, request: AIRequest, model: AIModel) -> AsyncGenerator[ChunkDelta, None]: ...

    @abstractmethod
    async def _perform_health_check(self) -> bool: ...


# ---------------------------------------------------------------------------
# OpenAI-compatible base (DeepSeek, Kimi)
# ---------------------------------------------------------------------------


class OpenAICompatibleAdapter(BaseVendorAdapter):
    """Chat Completions protocol shared by OpenAI-style vendors."""

    api_prefix = ""

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.api_prefix}{path}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, request: AIRequest, model: AIModel, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model.id,
            "messages": [m.to_dict() for m in request.all_messages()],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": stream,
        }
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def _list_models(self) -> httpx.Response:
        async with self._client() as client:
            return await client.get(self._url("/models"), headers=self._headers())

    async def _validate_credentials(self) -> None:
        self._check_validation_response(await self._list_models())

    async def _fetch_models(self) -> list[AIModel]:
        resp = await self._list_models()
        self._raise_for_status(resp)
        listing = self._parse(resp, OpenAIModelList)
        return [self._model_for(entry.id) for entry in listing.data]

    async def _perform_health_check(self) -> bool:
        resp = await self._list_models()
        return resp.status_code == 200

    async def _perform_request(self, request: AIRequest, model: AIModel) -> AIResponse:
        resp = await self._post(
            self._url("/chat/completions"),
            self._payload(request, model, stream=False),
            headers=self._headers(),
            model_id=model.id,
        )
        data = self._parse(resp, OpenAIChatCompletion)
        choice = data.choices[0]
        usage = Usage()
        if data.usage is not None:
            usage = Usage.from_counts(data.usage.prompt_tokens, data.usage.completion_tokens, data.usage.total_tokens)
        return AIResponse(
            id=data.id or uuid.uuid4().hex,
            content=choice.message.content or "",
            provider=self.provider,
            model=data.model or model.id,
            usage=usage,
            finish_reason=map_finish_reason(choice.finish_reason) or FinishReason.STOP,
        )

    def _stream_deltas(self, request: AIRequest, model: AIModel) -> AsyncGenerator[ChunkDelta, None]:
        return self._sse_events(
            self._url("/chat/completions"),
            self._payload(request, model, stream=True),
            parse_openai_event,
            headers=self._headers(),
            model_id=model.id,
        )


# ---------------------------------------------------------------------------
# DeepSeek Adapter
# ---------------------------------------------------------------------------

_DEEPSEEK_MODELS = {
    "deepseek-chat": ("DeepSeek Chat", _caps(32_768, 4096, 0.14, 0.28)),
    "deepseek-coder": ("DeepSeek Coder", _caps(16_384, 4096, 0.14, 0.28)),
}


class DeepSeekAdapter(OpenAICompatibleAdapter):
    """DeepSeek adapter with Server Busy handling."""

    provider = AIProvider.DEEPSEEK
    default_model = "deepseek-chat"
    model_catalog = _DEEPSEEK_MODELS

    def _raise_for_status(self, resp: httpx.Response, model_id: str = "") -> None:
        # DeepSeek "Server Busy" → back off like a rate limit
        if resp.status_code == 503 and "busy" in resp.text.lower():
            raise RateLimitError("DeepSeek server busy", self.provider, retry_after=5.0, status_code=503)
        super()._raise_for_status(resp, model_id)


# ---------------------------------------------------------------------------
# Kimi Adapter (Moonshot)
# ---------------------------------------------------------------------------

_KIMI_MODELS = {
    "moonshot-v1-8k": ("Moonshot v1 8K", _caps(8_192, 4096, 1.70, 1.70, documents=True)),
    "moonshot-v1-32k": ("Moonshot v1 32K", _caps(32_768, 4096, 3.30, 3.30, documents=True)),
    "moonshot-v1-128k": ("Moonshot v1 128K", _caps(131_072, 4096, 8.30, 8.30, documents=True)),
}


class KimiAdapter(OpenAICompatibleAdapter):
    """Moonshot AI (Kimi) adapter; long-context document reading."""

    provider = AIProvider.KIMI
    default_model = "moonshot-v1-8k"
    model_catalog = _KIMI_MODELS
    api_prefix = "/v1"


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI)
# ---------------------------------------------------------------------------

_GEMINI_MODELS = {
    "gemini-1.5-pro": ("Gemini 1.5 Pro", _caps(2_097_152, 8192, 1.25, 5.00, images=True, documents=True)),
    "gemini-1.5-flash": ("Gemini 1.5 Flash", _caps(1_048_576, 8192, 0.075, 0.30, images=True, documents=True)),
    "gemini-1.0-pro": ("Gemini 1.0 Pro", _caps(32_768, 8192, 0.50, 1.50)),
}


class GeminiAdapter(BaseVendorAdapter):
    """Google Gemini adapter with SAFETY filter detection."""

    provider = AIProvider.GEMINI
    default_model = "gemini-1.5-flash"
    model_catalog = _GEMINI_MODELS

    def _url(self, path: str) -> str:
        return f"{self.base_url}/v1beta{path}"

    def _params(self, **extra: str) -> dict[str, str]:
        return {"key": self.api_key, **extra}

    def _payload(self, request: AIRequest, model: AIModel) -> dict[str, Any]:
        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        for message in request.all_messages():
            if message.role == MessageRole.SYSTEM:
                system_parts.append(message.content)
                continue
            role = "model" if message.role == MessageRole.ASSISTANT else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})

        generation_config: dict[str, Any] = {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_tokens,
        }
        if request.top_p is not None:
            generation_config["topP"] = request.top_p

        payload: dict[str, Any] = {"contents": contents, "generationConfig": generation_config}

        # System instruction (separate from contents in Gemini API)
        if system_parts:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
        return payload

    def _raise_for_status(self, resp: httpx.Response, model_id: str = "") -> None:
        # Gemini rejects bad keys with 400 INVALID_ARGUMENT rather than 401
        if resp.status_code == 400:
            detail = _error_detail(resp)
            if "api key" in detail.lower():
                raise AuthenticationError(detail, self.provider, status_code=400)
        super()._raise_for_status(resp, model_id)

    def _check_validation_response(self, resp: httpx.Response) -> None:
        if resp.status_code == 400:
            detail = _error_detail(resp)
            if "api key" in detail.lower():
                raise AuthenticationError(detail, self.provider, status_code=400)
        super()._check_validation_response(resp)

    async def _list_models(self) -> httpx.Response:
        async with self._client() as client:
            return await client.get(self._url("/models"), params=self._params())

    async def _validate_credentials(self) -> None:
        self._check_validation_response(await self._list_models())

    async def _fetch_models(self) -> list[AIModel]:
        resp = await self._list_models()
        self._raise_for_status(resp)
        listing = self._parse(resp, GeminiModelList)
        models: list[AIModel] = []
        for info in listing.models:
            model_id = info.name.removeprefix("models/")
            if not model_id.startswith("gemini") or "generateContent" not in info.supported_generation_methods:
                continue
            if model_id in self.model_catalog:
                models.append(self._model_for(model_id, info.display_name))
                continue
            caps = _caps(info.input_token_limit, info.output_token_limit or 8192, images=True, documents=True)
            models.append(AIModel(id=model_id, name=info.display_name or model_id, provider=self.provider, capabilities=caps))
        return models

    async def _perform_health_check(self) -> bool:
        resp = await self._list_models()
        return resp.status_code == 200

    async def _perform_request(self, request: AIRequest, model: AIModel) -> AIResponse:
        resp = await self._post(
            self._url(f"/models/{model.id}:generateContent"),
            self._payload(request, model),
            headers={"Content-Type": "application/json"},
            params=self._params(),
            model_id=model.id,
        )
        data = self._parse(resp, GeminiResponse)

        usage = Usage()
        if data.usage_metadata is not None:
            meta = data.usage_metadata
            usage = Usage.from_counts(meta.prompt_token_count, meta.candidates_token_count, meta.total_token_count)

        response = AIResponse(provider=self.provider, model=model.id, usage=usage)
        if not data.candidates:
            # No candidates: check prompt feedback
            block_reason = data.prompt_feedback.block_reason if data.prompt_feedback else None
            if not block_reason:
                raise AIError("Gemini returned no candidates", self.provider, code="INVALID_RESPONSE")
            logger.info("Gemini blocked prompt for request %s: %s", request.request_id, block_reason)
            response.finish_reason = FinishReason.ERROR
            return response

        candidate = data.candidates[0]
        response.content = candidate.content.text if candidate.content else ""
        response.finish_reason = map_finish_reason(candidate.finish_reason) or FinishReason.STOP
        if candidate.finish_reason == "SAFETY":
            logger.info("Gemini safety filter triggered for request %s", request.request_id)
        return response

    def _stream_deltas(self, request: AIRequest, model: AIModel) -> AsyncGenerator[ChunkDelta, None]:
        return self._sse_events(
            self._url(f"/models/{model.id}:streamGenerateContent"),
            self._payload(request, model),
            parse_gemini_event,
            headers={"Content-Type": "application/json"},
            params=self._params(alt="sse"),
            model_id=model.id,
        )


# ---------------------------------------------------------------------------
# Qwen Adapter (Alibaba DashScope)
# ---------------------------------------------------------------------------

_QWEN_MODELS = {
    "qwen-max": ("Qwen Max", _caps(32_768, 8192, 1.60, 6.40, images=True)),
    "qwen-plus": ("Qwen Plus", _caps(131_072, 8192, 0.40, 1.20)),
    "qwen-turbo": ("Qwen Turbo", _caps(131_072, 8192, 0.05, 0.20)),
}

_QWEN_GENERATION_PATH = "/api/v1/services/aigc/text-generation/generation"


class QwenAdapter(BaseVendorAdapter):
    """DashScope text-generation adapter. No model listing endpoint."""

    provider = AIProvider.QWEN
    default_model = "qwen-turbo"
    model_catalog = _QWEN_MODELS

    def _headers(self, stream: bool = False) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if stream:
            headers["X-DashScope-SSE"] = "enable"
            headers["Accept"] = "text/event-stream"
        return headers

    def _payload(self, request: AIRequest, model_id: str, stream: bool) -> dict[str, Any]:
        parameters: dict[str, Any] = {
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "result_format": "text",
            "incremental_output": stream,
        }
        if request.top_p is not None:
            parameters["top_p"] = request.top_p
        return {
            "model": model_id,
            "input": {"messages": [m.to_dict() for m in request.all_messages()]},
            "parameters": parameters,
        }

    async def _ping(self) -> httpx.Response:
        payload = {
            "model": self.default_model,
            "input": {"messages": [{"role": "user", "content": "ping"}]},
            "parameters": {"max_tokens": 1, "result_format": "text"},
        }
        async with self._client() as client:
            return await client.post(f"{self.base_url}{_QWEN_GENERATION_PATH}", json=payload, headers=self._headers())

    async def _validate_credentials(self) -> None:
        self._check_validation_response(await self._ping())

    async def _fetch_models(self) -> list[AIModel]:
        return self._default_models()

    async def _perform_health_check(self) -> bool:
        resp = await self._ping()
        return resp.status_code == 200

    async def _perform_request(self, request: AIRequest, model: AIModel) -> AIResponse:
        resp = await self._post(
            f"{self.base_url}{_QWEN_GENERATION_PATH}",
            self._payload(request, model.id, stream=False),
            headers=self._headers(),
            model_id=model.id,
        )
        data = self._parse(resp, QwenResponse)
        usage = Usage()
        if data.usage is not None:
            usage = Usage.from_counts(data.usage.input_tokens, data.usage.output_tokens, data.usage.total_tokens)
        return AIResponse(
            id=data.request_id or uuid.uuid4().hex,
            content=data.output.text or "",
            provider=self.provider,
            model=model.id,
            usage=usage,
            finish_reason=map_finish_reason(data.output.finish_reason) or FinishReason.STOP,
        )

    def _stream_deltas(self, request: AIRequest, model: AIModel) -> AsyncGenerator[ChunkDelta, None]:
        return self._sse_events(
            f"{self.base_url}{_QWEN_GENERATION_PATH}",
            self._payload(request, model.id, stream=True),
            parse_qwen_event,
            headers=self._headers(stream=True),
            model_id=model.id,
        )


# ---------------------------------------------------------------------------
# Mock Adapter (offline)
# ---------------------------------------------------------------------------

_MOCK_MODELS = {
    "mock-model": ("Mock Model", _caps(8_192, 2048, functions=False)),
    "mock-advanced": ("Mock Advanced", _caps(32_768, 4096, functions=False)),
    "mock-fast": ("Mock Fast", _caps(4_096, 1024, functions=False)),
}

_MOCK_ANSWERS: list[tuple[tuple[str, ...], str]] = [
    (
        ("theme", "themes", "meaning"),
        "The central themes here are identity, memory and the cost of ambition. "
        "Notice how the author returns to the same images whenever a character "
        "has to choose between loyalty and self-interest.",
    ),
    (
        ("character", "protagonist", "who is"),
        "The protagonist is defined less by what they say than by what they avoid "
        "saying. Track their silences across the chapters you have read so far.",
    ),
    (
        ("chapter", "summary", "summarize", "recap"),
        "In this chapter the conflict shifts from the outer world to the inner one: "
        "the plot slows down so the consequences of the earlier decision can land.",
    ),
    (
        ("overview", "about", "book"),
        "This book follows a small cast through a period of upheaval. It rewards "
        "slow reading: most of its foreshadowing sits in seemingly minor scenes.",
    ),
]

_MOCK_DEFAULT_ANSWER = (
    "That's a good question about your reading. Tell me which chapter you are on "
    "and I can point you to the passages that matter without spoiling what comes next."
)


class MockAdapter(BaseVendorAdapter):
    """Offline adapter with canned reading-assistant answers. No network."""

    provider = AIProvider.MOCK
    default_model = "mock-model"
    model_catalog = _MOCK_MODELS
    requires_api_key = False

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None, latency: float = 0.0):
        super().__init__(transport=transport)
        self.latency = latency

    @staticmethod
    def answer_for(question: str) -> str:
        lowered = question.lower()
        for keywords, answer in _MOCK_ANSWERS:
            if any(k in lowered for k in keywords):
                return answer
        return _MOCK_DEFAULT_ANSWER

    def _question(self, request: AIRequest) -> str:
        for message in reversed(request.messages):
            if message.role == MessageRole.USER:
                return message.content
        return ""

    def _input_tokens(self, request: AIRequest) -> int:
        return sum(estimate_tokens(m.content) for m in request.all_messages())

    async def _validate_credentials(self) -> None:
        return None

    async def _fetch_models(self) -> list[AIModel]:
        return self._default_models()

    async def _perform_health_check(self) -> bool:
        return True

    async def _perform_request(self, request: AIRequest, model: AIModel) -> AIResponse:
        if self.latency:
            await asyncio.sleep(self.latency)
        self._window.record(time.time())
        content = self.answer_for(self._question(request))
        return AIResponse(
            content=content,
            provider=self.provider,
            model=model.id,
            usage=Usage.from_counts(self._input_tokens(request), estimate_tokens(content)),
        )

    async def _stream_deltas(self, request: AIRequest, model: AIModel) -> AsyncGenerator[ChunkDelta, None]:
        self._window.record(time.time())
        content = self.answer_for(self._question(request))
        words = content.split(" ")
        for index, word in enumerate(words):
            if self.latency:
                await asyncio.sleep(self.latency)
            yield ChunkDelta(text=word if index == len(words) - 1 else f"{word} ")
        yield ChunkDelta(
            finish_reason=FinishReason.STOP,
            usage=Usage.from_counts(self._input_tokens(request), estimate_tokens(content)),
        )

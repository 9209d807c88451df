"""Tests for the vendor adapters (mocked HTTP, no network)."""

from __future__ import annotations

import json
from collections.abc import Callable
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.gateway.errors import (
    AIError,
    AuthenticationError,
    ModelNotAvailableError,
    NetworkError,
    ProviderTimeoutError,
    RateLimitError,
)
from app.gateway.types import (
    AIProvider,
    AIRequest,
    FinishReason,
    Message,
    MessageRole,
    ProviderConfig,
)
from app.gateway.vendor_adapters import (
    DeepSeekAdapter,
    GeminiAdapter,
    KimiAdapter,
    MockAdapter,
    QwenAdapter,
    validate_request,
)

Route = Callable[[httpx.Request], httpx.Response]


def _make_httpx_response(
    status_code: int,
    json_data: dict | None = None,
    text: str = "",
    headers: dict | None = None,
) -> httpx.Response:
    """Create a proper httpx.Response with request set."""
    request = httpx.Request("POST", "https://example.com")
    if json_data is not None:
        return httpx.Response(status_code, json=json_data, headers=headers, request=request)
    return httpx.Response(status_code, text=text, headers=headers, request=request)


def _transport(routes: dict[str, Route], calls: list[httpx.Request] | None = None) -> httpx.MockTransport:
    """Route by URL path suffix; unknown paths get a 404."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        for suffix, route in routes.items():
            if request.url.path.endswith(suffix):
                return route(request)
        return httpx.Response(404, json={"error": {"message": "not found"}})

    return httpx.MockTransport(handler)


def _sse(*events: dict | str, sep: str = "data: ") -> bytes:
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"{sep}{payload}\n\n")
    return "".join(lines).encode()


def _sse_response(body: bytes) -> Route:
    return lambda request: httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})


def _json(status_code: int, data: dict, headers: dict | None = None) -> Route:
    return lambda request: httpx.Response(status_code, json=data, headers=headers)


def _mislabelled_gzip(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=b"plain text, not gzip", headers={"content-encoding": "gzip"})


def _request(text: str = "What is Dune about?", **kwargs) -> AIRequest:
    return AIRequest(messages=[Message(MessageRole.USER, text)], **kwargs)


def _patched_client(**responses):
    """Patch httpx.AsyncClient in the adapters module (teacher-style mock client)."""
    patcher = patch("app.gateway.vendor_adapters.httpx.AsyncClient")
    mock_client_cls = patcher.start()
    mock_client = AsyncMock()
    for method, value in responses.items():
        if isinstance(value, BaseException):
            getattr(mock_client, method).side_effect = value
        else:
            getattr(mock_client, method).return_value = value
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_cls.return_value = mock_client
    return patcher, mock_client


OPENAI_MODELS = {"object": "list", "data": [{"id": "deepseek-chat"}, {"id": "deepseek-reasoner"}]}

GEMINI_MODELS = {
    "models": [
        {
            "name": "models/gemini-1.5-flash",
            "displayName": "Gemini 1.5 Flash",
            "inputTokenLimit": 1048576,
            "outputTokenLimit": 8192,
            "supportedGenerationMethods": ["generateContent", "countTokens"],
        },
        {
            "name": "models/gemini-2.0-flash",
            "displayName": "Gemini 2.0 Flash",
            "inputTokenLimit": 1048576,
            "outputTokenLimit": 8192,
            "supportedGenerationMethods": ["generateContent"],
        },
        {
            "name": "models/text-embedding-004",
            "supportedGenerationMethods": ["embedContent"],
        },
    ]
}


def _openai_completion(text="Paul Atreides on Arrakis.", model="deepseek-chat", finish_reason="stop"):
    return {
        "id": "chatcmpl-1",
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 1000, "completion_tokens": 500, "total_tokens": 1500},
    }


def _gemini_completion(text="Hello world", finish_reason="STOP"):
    return {
        "candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": finish_reason}],
        "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 20, "totalTokenCount": 30},
    }


@pytest.fixture
async def deepseek():
    adapter = DeepSeekAdapter(transport=_transport({"/models": _json(200, OPENAI_MODELS)}))
    await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))
    return adapter


@pytest.fixture
async def gemini():
    adapter = GeminiAdapter(transport=_transport({"/models": _json(200, GEMINI_MODELS)}))
    await adapter.initialize(ProviderConfig(provider=AIProvider.GEMINI, api_key="g-test"))
    return adapter


# ==========================================================================
# Test: Request validation
# ==========================================================================


class TestValidateRequest:
    @pytest.mark.parametrize(
        "request_kwargs",
        [
            {"messages": []},
            {"temperature": 2.5},
            {"temperature": -0.1},
            {"top_p": 1.5},
            {"max_tokens": 0},
        ],
    )
    def test_invalid_requests(self, request_kwargs):
        request_kwargs.setdefault("messages", [Message(MessageRole.USER, "Hi")])
        with pytest.raises(AIError) as exc_info:
            validate_request(AIRequest(**request_kwargs))
        assert exc_info.value.code == "INVALID_REQUEST"

    def test_valid_request(self):
        validate_request(_request(temperature=0.0, top_p=1.0, max_tokens=1))

    async def test_invalid_request_makes_no_call(self, deepseek):
        patcher, mock_client = _patched_client()
        try:
            with pytest.raises(AIError):
                await deepseek.request(AIRequest(messages=[]))
            mock_client.post.assert_not_called()
        finally:
            patcher.stop()


# ==========================================================================
# Test: Initialization
# ==========================================================================


class TestInitialize:
    async def test_discovers_models(self, deepseek):
        assert deepseek.initialized
        ids = [m.id for m in deepseek.get_models()]
        assert ids == ["deepseek-chat", "deepseek-reasoner"]
        assert deepseek.has_model("deepseek-reasoner")

    async def test_unknown_model_gets_generic_capabilities(self, deepseek):
        reasoner = next(m for m in deepseek.get_models() if m.id == "deepseek-reasoner")
        assert reasoner.capabilities.supports_streaming
        assert reasoner.capabilities.max_context_tokens > 0

    async def test_missing_key_fails_without_network(self):
        calls: list[httpx.Request] = []
        adapter = DeepSeekAdapter(transport=_transport({}, calls))
        with pytest.raises(AuthenticationError):
            await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK))
        assert calls == []
        assert not adapter.initialized

    async def test_rejected_key(self):
        adapter = DeepSeekAdapter(
            transport=_transport({"/models": _json(401, {"error": {"message": "Invalid API key"}})})
        )
        with pytest.raises(AuthenticationError) as exc_info:
            await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-bad"))
        assert exc_info.value.status_code == 401
        assert not adapter.initialized

    async def test_rate_limited_validation_assumes_valid_key(self):
        adapter = DeepSeekAdapter(transport=_transport({"/models": _json(429, {"error": {"message": "slow"}})}))
        await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))
        assert adapter.initialized
        assert {m.id for m in adapter.get_models()} == {"deepseek-chat", "deepseek-coder"}

    async def test_server_error_is_network_error(self):
        adapter = DeepSeekAdapter(transport=_transport({"/models": _json(500, {})}))
        with pytest.raises(NetworkError):
            await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))

    async def test_unreachable_host(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = DeepSeekAdapter(transport=httpx.MockTransport(refuse))
        with pytest.raises(NetworkError):
            await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))

    async def test_validation_timeout(self):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        adapter = KimiAdapter(transport=httpx.MockTransport(slow))
        with pytest.raises(ProviderTimeoutError):
            await adapter.initialize(ProviderConfig(provider=AIProvider.KIMI, api_key="sk-test", timeout=5))

    async def test_redirect_loop_is_network_error(self):
        def loop(request):
            raise httpx.TooManyRedirects("Exceeded maximum allowed redirects.", request=request)

        adapter = DeepSeekAdapter(transport=httpx.MockTransport(loop))
        with pytest.raises(NetworkError) as exc_info:
            await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))
        assert isinstance(exc_info.value.__cause__, httpx.TooManyRedirects)
        assert not adapter.initialized

    async def test_allow_list_filters_models(self):
        adapter = DeepSeekAdapter(transport=_transport({"/models": _json(200, OPENAI_MODELS)}))
        await adapter.initialize(
            ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test", models=("deepseek-chat",))
        )
        assert [m.id for m in adapter.get_models()] == ["deepseek-chat"]

    async def test_config_for_other_provider_rejected(self):
        with pytest.raises(AIError) as exc_info:
            await DeepSeekAdapter().initialize(ProviderConfig(provider=AIProvider.GEMINI, api_key="x"))
        assert exc_info.value.code == "INVALID_CONFIG"

    def test_get_models_before_initialize(self):
        with pytest.raises(AIError) as exc_info:
            DeepSeekAdapter().get_models()
        assert exc_info.value.code == "NOT_INITIALIZED"

    async def test_kimi_uses_v1_prefix(self):
        calls: list[httpx.Request] = []
        adapter = KimiAdapter(transport=_transport({"/v1/models": _json(200, {"data": [{"id": "moonshot-v1-8k"}]})}, calls))
        await adapter.initialize(ProviderConfig(provider=AIProvider.KIMI, api_key="sk-test"))
        assert calls[0].url == "https://api.moonshot.cn/v1/models"
        assert calls[0].headers["Authorization"] == "Bearer sk-test"

    async def test_gemini_discovery_filters_generation_models(self, gemini):
        ids = [m.id for m in gemini.get_models()]
        assert ids == ["gemini-1.5-flash", "gemini-2.0-flash"]
        assert gemini.capabilities.supports_images

    async def test_gemini_invalid_key_reported_as_400(self):
        body = {"error": {"code": 400, "message": "API key not valid. Please pass a valid API key."}}
        adapter = GeminiAdapter(transport=_transport({"/models": _json(400, body)}))
        with pytest.raises(AuthenticationError):
            await adapter.initialize(ProviderConfig(provider=AIProvider.GEMINI, api_key="bad"))

    async def test_qwen_validates_with_generation_ping(self):
        calls: list[httpx.Request] = []
        adapter = QwenAdapter(
            transport=_transport({"/generation": _json(200, {"output": {"text": "pong", "finish_reason": "stop"}})}, calls)
        )
        await adapter.initialize(ProviderConfig(provider=AIProvider.QWEN, api_key="sk-test"))
        assert json.loads(calls[0].content)["parameters"]["max_tokens"] == 1
        assert [m.id for m in adapter.get_models()] == ["qwen-max", "qwen-plus", "qwen-turbo"]

    async def test_mock_needs_no_key(self):
        adapter = MockAdapter()
        await adapter.initialize(ProviderConfig(provider=AIProvider.MOCK))
        assert adapter.initialized


# ==========================================================================
# Test: DeepSeek / Kimi (OpenAI-compatible)
# ==========================================================================


class TestDeepSeekAdapter:
    async def test_success(self, deepseek):
        patcher, mock_client = _patched_client(post=_make_httpx_response(200, _openai_completion()))
        try:
            resp = await deepseek.request(_request(system_prompt="You are a librarian."))
        finally:
            patcher.stop()

        assert resp.provider == AIProvider.DEEPSEEK
        assert resp.content == "Paul Atreides on Arrakis."
        assert resp.model == "deepseek-chat"
        assert resp.usage.total_tokens == 1500
        assert resp.finish_reason == FinishReason.STOP
        assert resp.cost_usd == pytest.approx((1000 * 0.14 + 500 * 0.28) / 1_000_000)
        assert resp.latency_ms >= 0

        url = mock_client.post.call_args.args[0]
        payload = mock_client.post.call_args.kwargs["json"]
        assert url == "https://api.deepseek.com/chat/completions"
        assert payload["messages"][0] == {"role": "system", "content": "You are a librarian."}
        assert payload["stream"] is False

    async def test_rate_limited_with_retry_after(self, deepseek):
        error = _make_httpx_response(429, {"error": {"message": "Too many requests"}}, headers={"Retry-After": "7"})
        patcher, _ = _patched_client(post=error)
        try:
            with pytest.raises(RateLimitError) as exc_info:
                await deepseek.request(_request())
        finally:
            patcher.stop()
        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.message == "Too many requests"

    async def test_server_busy_is_rate_limit(self, deepseek):
        patcher, _ = _patched_client(post=_make_httpx_response(503, text="Server busy, please retry"))
        try:
            with pytest.raises(RateLimitError) as exc_info:
                await deepseek.request(_request())
        finally:
            patcher.stop()
        assert exc_info.value.retry_after == 5.0

    async def test_server_error(self, deepseek):
        patcher, _ = _patched_client(post=_make_httpx_response(502, text="bad gateway"))
        try:
            with pytest.raises(NetworkError):
                await deepseek.request(_request())
        finally:
            patcher.stop()

    async def test_unknown_model_404(self, deepseek):
        patcher, _ = _patched_client(post=_make_httpx_response(404, {"error": {"message": "model not found"}}))
        try:
            with pytest.raises(ModelNotAvailableError):
                await deepseek.request(_request())
        finally:
            patcher.stop()

    async def test_client_error(self, deepseek):
        patcher, _ = _patched_client(post=_make_httpx_response(400, {"error": {"message": "bad payload"}}))
        try:
            with pytest.raises(AIError) as exc_info:
                await deepseek.request(_request())
        finally:
            patcher.stop()
        assert exc_info.value.code == "API_ERROR"
        assert exc_info.value.status_code == 400

    async def test_malformed_body(self, deepseek):
        patcher, _ = _patched_client(post=_make_httpx_response(200, {"choices": []}))
        try:
            with pytest.raises(AIError) as exc_info:
                await deepseek.request(_request())
        finally:
            patcher.stop()
        assert exc_info.value.code == "INVALID_RESPONSE"

    async def test_timeout(self, deepseek):
        patcher, _ = _patched_client(post=httpx.ReadTimeout("timeout"))
        try:
            with pytest.raises(ProviderTimeoutError):
                await deepseek.request(_request())
        finally:
            patcher.stop()

    async def test_undecodable_body_is_network_error(self):
        adapter = DeepSeekAdapter(
            transport=_transport({"/models": _json(200, OPENAI_MODELS), "/chat/completions": _mislabelled_gzip})
        )
        await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))
        with pytest.raises(NetworkError) as exc_info:
            await adapter.request(_request())
        assert isinstance(exc_info.value.__cause__, httpx.DecodingError)

    async def test_pinned_model_not_offered(self, deepseek):
        patcher, mock_client = _patched_client()
        try:
            with pytest.raises(ModelNotAvailableError):
                await deepseek.request(_request(model="gpt-4o"))
            mock_client.post.assert_not_called()
        finally:
            patcher.stop()

    async def test_rate_limit_headers_observed(self, deepseek):
        headers = {"x-ratelimit-limit-requests": "100", "x-ratelimit-remaining-requests": "42"}
        patcher, _ = _patched_client(post=_make_httpx_response(200, _openai_completion(), headers=headers))
        try:
            await deepseek.request(_request())
        finally:
            patcher.stop()
        status = deepseek.get_rate_limit_status()
        assert status.remaining == 42
        assert status.limit == 100

    async def test_window_estimate_without_headers(self, deepseek):
        patcher, _ = _patched_client(post=_make_httpx_response(200, _openai_completion()))
        try:
            await deepseek.request(_request())
        finally:
            patcher.stop()
        assert deepseek.get_rate_limit_status().remaining == 59

    async def test_stream(self):
        body = _sse(
            {"choices": [{"delta": {"role": "assistant", "content": ""}}]},
            {"choices": [{"delta": {"content": "Test "}}]},
            {"choices": [{"delta": {"content": "streaming "}}]},
            {"choices": [{"delta": {"content": "response"}, "finish_reason": None}]},
            {"choices": [{"delta": {}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 8, "completion_tokens": 3, "total_tokens": 11}},
            "[DONE]",
        )
        calls: list[httpx.Request] = []
        adapter = DeepSeekAdapter(
            transport=_transport({"/models": _json(200, OPENAI_MODELS), "/chat/completions": _sse_response(body)}, calls)
        )
        await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))

        chunks = [c async for c in adapter.stream_request(_request(stream=True))]

        assert [c.delta for c in chunks[:-1]] == ["Test ", "streaming ", "response"]
        assert [c.done for c in chunks].count(True) == 1
        assert chunks[-1].done
        assert chunks[-1].usage.total_tokens == 11
        assert chunks[-1].finish_reason == FinishReason.STOP
        payload = json.loads(calls[-1].content)
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}

    async def test_stream_rate_limited_before_body(self):
        adapter = DeepSeekAdapter(
            transport=_transport(
                {
                    "/models": _json(200, OPENAI_MODELS),
                    "/chat/completions": _json(429, {"error": {"message": "quota"}}, headers={"retry-after": "3"}),
                }
            )
        )
        await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))
        with pytest.raises(RateLimitError) as exc_info:
            await anext(adapter.stream_request(_request(stream=True)))
        assert exc_info.value.retry_after == 3.0

    async def test_stream_truncated(self):
        body = _sse({"choices": [{"delta": {"content": "Half an ans"}}]})
        adapter = DeepSeekAdapter(
            transport=_transport({"/models": _json(200, OPENAI_MODELS), "/chat/completions": _sse_response(body)})
        )
        await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))
        chunks = []
        with pytest.raises(NetworkError):
            async for chunk in adapter.stream_request(_request(stream=True)):
                chunks.append(chunk)
        assert [c.delta for c in chunks] == ["Half an ans"]

    async def test_stream_undecodable_body_is_network_error(self):
        adapter = DeepSeekAdapter(
            transport=_transport({"/models": _json(200, OPENAI_MODELS), "/chat/completions": _mislabelled_gzip})
        )
        await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))
        with pytest.raises(NetworkError):
            await anext(adapter.stream_request(_request(stream=True)))

    async def test_stream_malformed_event(self):
        body = _sse("{not json")
        adapter = DeepSeekAdapter(
            transport=_transport({"/models": _json(200, OPENAI_MODELS), "/chat/completions": _sse_response(body)})
        )
        await adapter.initialize(ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="sk-test"))
        with pytest.raises(AIError) as exc_info:
            await anext(adapter.stream_request(_request(stream=True)))
        assert exc_info.value.code == "INVALID_RESPONSE"


class TestKimiAdapter:
    async def test_stream_with_usage_in_choice(self):
        body = _sse(
            {"choices": [{"delta": {"content": "Call me "}}]},
            {"choices": [{"delta": {"content": "Ishmael."}}]},
            {
                "choices": [
                    {
                        "delta": {},
                        "finish_reason": "stop",
                        "usage": {"prompt_tokens": 5, "completion_tokens": 4, "total_tokens": 9},
                    }
                ]
            },
            "[DONE]",
        )
        adapter = KimiAdapter(
            transport=_transport(
                {
                    "/v1/models": _json(200, {"data": [{"id": "moonshot-v1-8k"}]}),
                    "/v1/chat/completions": _sse_response(body),
                }
            )
        )
        await adapter.initialize(ProviderConfig(provider=AIProvider.KIMI, api_key="sk-test"))
        chunks = [c async for c in adapter.stream_request(_request(stream=True))]
        assert "".join(c.delta for c in chunks) == "Call me Ishmael."
        assert chunks[-1].usage.total_tokens == 9
        assert chunks[-1].model == "moonshot-v1-8k"

    async def test_length_finish_reason(self):
        adapter = KimiAdapter(transport=_transport({"/v1/models": _json(200, {"data": [{"id": "moonshot-v1-8k"}]})}))
        await adapter.initialize(ProviderConfig(provider=AIProvider.KIMI, api_key="sk-test"))
        patcher, mock_client = _patched_client(
            post=_make_httpx_response(200, _openai_completion(model="moonshot-v1-8k", finish_reason="length"))
        )
        try:
            resp = await adapter.request(_request())
        finally:
            patcher.stop()
        assert resp.finish_reason == FinishReason.LENGTH
        assert mock_client.post.call_args.args[0] == "https://api.moonshot.cn/v1/chat/completions"


# ==========================================================================
# Test: Gemini
# ==========================================================================


class TestGeminiAdapter:
    async def test_success(self, gemini):
        patcher, mock_client = _patched_client(post=_make_httpx_response(200, _gemini_completion()))
        try:
            request = AIRequest(
                messages=[
                    Message(MessageRole.USER, "Recommend a book"),
                    Message(MessageRole.ASSISTANT, "Try Dune."),
                    Message(MessageRole.USER, "Why?"),
                ],
                system_prompt="Be concise.",
            )
            resp = await gemini.request(request)
        finally:
            patcher.stop()

        assert resp.content == "Hello world"
        assert resp.usage.total_tokens == 30
        assert resp.model == "gemini-1.5-flash"

        call = mock_client.post.call_args
        assert call.args[0].endswith("/v1beta/models/gemini-1.5-flash:generateContent")
        assert call.kwargs["params"] == {"key": "g-test"}
        payload = call.kwargs["json"]
        assert payload["systemInstruction"] == {"parts": [{"text": "Be concise."}]}
        assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]

    async def test_safety_block(self, gemini):
        patcher, _ = _patched_client(post=_make_httpx_response(200, _gemini_completion(text="", finish_reason="SAFETY")))
        try:
            resp = await gemini.request(_request())
        finally:
            patcher.stop()
        assert resp.finish_reason == FinishReason.ERROR
        assert resp.content == ""

    async def test_blocked_prompt(self, gemini):
        patcher, _ = _patched_client(post=_make_httpx_response(200, {"promptFeedback": {"blockReason": "SAFETY"}}))
        try:
            resp = await gemini.request(_request())
        finally:
            patcher.stop()
        assert resp.finish_reason == FinishReason.ERROR

    async def test_no_candidates_without_feedback(self, gemini):
        patcher, _ = _patched_client(post=_make_httpx_response(200, {"candidates": []}))
        try:
            with pytest.raises(AIError) as exc_info:
                await gemini.request(_request())
        finally:
            patcher.stop()
        assert exc_info.value.code == "INVALID_RESPONSE"

    async def test_stream(self):
        body = _sse(
            {"candidates": [{"content": {"parts": [{"text": "It was "}]}}]},
            {
                "candidates": [{"content": {"parts": [{"text": "a dark night."}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 6, "candidatesTokenCount": 5, "totalTokenCount": 11},
            },
        )
        calls: list[httpx.Request] = []
        adapter = GeminiAdapter(
            transport=_transport(
                {"/models": _json(200, GEMINI_MODELS), ":streamGenerateContent": _sse_response(body)},
                calls,
            )
        )
        await adapter.initialize(ProviderConfig(provider=AIProvider.GEMINI, api_key="g-test"))
        chunks = [c async for c in adapter.stream_request(_request(stream=True))]

        assert "".join(c.delta for c in chunks) == "It was a dark night."
        assert chunks[-1].done and chunks[-1].usage.total_tokens == 11
        assert calls[-1].url.params["alt"] == "sse"


# ==========================================================================
# Test: Qwen
# ==========================================================================


class TestQwenAdapter:
    @pytest.fixture
    async def qwen(self):
        adapter = QwenAdapter(transport=_transport({"/generation": _json(200, {"output": {"text": "pong"}})}))
        await adapter.initialize(ProviderConfig(provider=AIProvider.QWEN, api_key="sk-test"))
        return adapter

    async def test_success(self, qwen):
        data = {
            "request_id": "req-1",
            "output": {"text": "Tolstoy.", "finish_reason": "stop"},
            "usage": {"input_tokens": 12, "output_tokens": 3},
        }
        patcher, mock_client = _patched_client(post=_make_httpx_response(200, data))
        try:
            resp = await qwen.request(_request(model="qwen-max"))
        finally:
            patcher.stop()
        assert resp.id == "req-1"
        assert resp.content == "Tolstoy."
        assert resp.usage.total_tokens == 15
        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["model"] == "qwen-max"
        assert payload["input"]["messages"][-1] == {"role": "user", "content": "What is Dune about?"}
        assert payload["parameters"]["incremental_output"] is False

    async def test_flat_error_body(self, qwen):
        body = {"code": "InvalidApiKey", "message": "Invalid API-key provided."}
        patcher, _ = _patched_client(post=_make_httpx_response(401, body))
        try:
            with pytest.raises(AuthenticationError) as exc_info:
                await qwen.request(_request())
        finally:
            patcher.stop()
        assert exc_info.value.message == "Invalid API-key provided."

    async def test_stream(self):
        body = _sse(
            {"output": {"text": "War and ", "finish_reason": "null"}},
            {"output": {"text": "Peace", "finish_reason": "null"}},
            {"output": {"text": "", "finish_reason": "stop"}, "usage": {"input_tokens": 4, "output_tokens": 3}},
            sep="data:",
        )
        calls: list[httpx.Request] = []
        adapter = QwenAdapter(transport=_transport({"/generation": _sse_response(body)}, calls))
        await adapter.initialize(ProviderConfig(provider=AIProvider.QWEN, api_key="sk-test"))
        chunks = [c async for c in adapter.stream_request(_request(stream=True))]

        assert [c.delta for c in chunks if not c.done] == ["War and ", "Peace"]
        assert chunks[-1].usage.total_tokens == 7
        assert calls[-1].headers["X-DashScope-SSE"] == "enable"
        assert json.loads(calls[-1].content)["parameters"]["incremental_output"] is True


# ==========================================================================
# Test: Mock adapter & health checks
# ==========================================================================


class TestMockAdapter:
    @pytest.fixture
    async def mock_adapter(self):
        adapter = MockAdapter()
        await adapter.initialize(ProviderConfig(provider=AIProvider.MOCK))
        return adapter

    def test_keyword_answers(self):
        assert "themes" in MockAdapter.answer_for("What are the main themes?")
        assert "protagonist" in MockAdapter.answer_for("Who is the protagonist?")
        assert "chapter" in MockAdapter.answer_for("Can you summarize this chapter?")

    async def test_request(self, mock_adapter):
        resp = await mock_adapter.request(_request("Summarize chapter 3"))
        assert resp.provider == AIProvider.MOCK
        assert resp.model == "mock-model"
        assert resp.usage.output_tokens > 0

    async def test_stream_rebuilds_answer(self, mock_adapter):
        question = "Tell me about the book"
        chunks = [c async for c in mock_adapter.stream_request(_request(question, stream=True))]
        assert "".join(c.delta for c in chunks) == MockAdapter.answer_for(question)
        assert [c.done for c in chunks].count(True) == 1


class TestHealthCheck:
    async def test_uninitialized_is_unhealthy(self):
        assert await DeepSeekAdapter().health_check() is False

    async def test_healthy(self, deepseek):
        assert await deepseek.health_check() is True

    async def test_errors_report_unhealthy(self, deepseek):
        patcher, _ = _patched_client(get=httpx.ConnectError("down"))
        try:
            assert await deepseek.health_check() is False
        finally:
            patcher.stop()

"""Tests for the adapter registry."""

from __future__ import annotations

import httpx
import pytest

from app.gateway.errors import UnsupportedProviderError
from app.gateway.registry import (
    ADAPTER_REGISTRY,
    check_adapters_health,
    create_adapter,
    create_adapters,
    get_providers_with_capabilities,
    get_supported_providers,
    is_provider_supported,
)
from app.gateway.types import AIProvider, ProviderConfig
from app.gateway.vendor_adapters import (
    DeepSeekAdapter,
    GeminiAdapter,
    KimiAdapter,
    MockAdapter,
    QwenAdapter,
)


def _vendor_transport(rejected: set[str] = frozenset()) -> httpx.MockTransport:
    """Accepts every key except those in `rejected`; serves empty model lists."""

    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.params.get("key") or request.headers.get("Authorization", "").removeprefix("Bearer ")
        if key in rejected:
            return httpx.Response(401, json={"error": {"message": "Invalid API key"}})
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json={"data": [], "models": []})
        return httpx.Response(200, json={"output": {"text": "pong", "finish_reason": "stop"}})

    return httpx.MockTransport(handler)


class TestCreateAdapter:
    @pytest.mark.parametrize(
        "provider, cls",
        [
            (AIProvider.GEMINI, GeminiAdapter),
            (AIProvider.DEEPSEEK, DeepSeekAdapter),
            (AIProvider.QWEN, QwenAdapter),
            (AIProvider.KIMI, KimiAdapter),
            (AIProvider.MOCK, MockAdapter),
        ],
    )
    def test_identity(self, provider, cls):
        adapter = create_adapter(provider)
        assert isinstance(adapter, cls)
        assert adapter.provider == provider
        assert not adapter.initialized

    def test_accepts_string_names(self):
        assert create_adapter("Gemini").provider == AIProvider.GEMINI

    def test_unsupported_provider(self):
        with pytest.raises(UnsupportedProviderError) as exc_info:
            create_adapter("openai")
        assert exc_info.value.code == "UNSUPPORTED_PROVIDER"

    def test_every_provider_registered(self):
        assert set(ADAPTER_REGISTRY) == set(AIProvider)


class TestCreateAdapters:
    async def test_skips_disabled_and_keeps_order(self):
        configs = [
            ProviderConfig(provider=AIProvider.KIMI, api_key="k1"),
            ProviderConfig(provider=AIProvider.GEMINI, api_key="g1", enabled=False),
            ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="d1"),
        ]
        adapters = await create_adapters(configs, transport=_vendor_transport())
        assert [a.provider for a in adapters] == [AIProvider.KIMI, AIProvider.DEEPSEEK]
        assert all(a.initialized for a in adapters)

    async def test_rejected_credential_is_excluded(self):
        configs = [
            ProviderConfig(provider=AIProvider.DEEPSEEK, api_key="bad-key"),
            ProviderConfig(provider=AIProvider.QWEN, api_key="good-key"),
            ProviderConfig(provider=AIProvider.MOCK),
        ]
        adapters = await create_adapters(configs, transport=_vendor_transport(rejected={"bad-key"}))
        assert [a.provider for a in adapters] == [AIProvider.QWEN, AIProvider.MOCK]

    async def test_missing_key_is_excluded(self):
        configs = [ProviderConfig(provider=AIProvider.GEMINI), ProviderConfig(provider=AIProvider.MOCK)]
        adapters = await create_adapters(configs, transport=_vendor_transport())
        assert [a.provider for a in adapters] == [AIProvider.MOCK]

    async def test_no_providers(self):
        assert await create_adapters([]) == []


class TestCapabilityQueries:
    def test_images(self):
        assert get_providers_with_capabilities(images=True) == [AIProvider.GEMINI, AIProvider.QWEN]

    def test_documents(self):
        assert get_providers_with_capabilities(documents=True) == [AIProvider.GEMINI, AIProvider.KIMI]

    def test_context_window(self):
        assert get_providers_with_capabilities(min_context_tokens=100_000) == [AIProvider.GEMINI, AIProvider.KIMI]

    def test_restricted_to_given_providers(self):
        providers = [AIProvider.QWEN, AIProvider.MOCK]
        assert get_providers_with_capabilities(images=True, providers=providers) == [AIProvider.QWEN]

    def test_no_requirements_returns_all(self):
        assert get_providers_with_capabilities() == get_supported_providers()

    def test_is_provider_supported(self):
        assert is_provider_supported("kimi")
        assert not is_provider_supported("claude")


class TestHealth:
    async def test_check_adapters_health(self):
        healthy = MockAdapter()
        await healthy.initialize(ProviderConfig(provider=AIProvider.MOCK))
        result = await check_adapters_health([healthy, DeepSeekAdapter()])
        assert result == {AIProvider.MOCK: True, AIProvider.DEEPSEEK: False}

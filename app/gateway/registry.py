"""Adapter Registry — builds adapters from configuration.

Partial failure is tolerated: a provider whose initialization fails is logged
and left out, the others are still returned. Zero adapters is a valid
(degraded) outcome.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

import httpx

from app.gateway.errors import UnsupportedProviderError
from app.gateway.types import (
    AIProvider,
    CapabilityRequirements,
    ProviderCapabilities,
    ProviderConfig,
)
from app.gateway.vendor_adapters import (
    BaseVendorAdapter,
    DeepSeekAdapter,
    GeminiAdapter,
    KimiAdapter,
    MockAdapter,
    QwenAdapter,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[AIProvider, type[BaseVendorAdapter]] = {
    AIProvider.GEMINI: GeminiAdapter,
    AIProvider.DEEPSEEK: DeepSeekAdapter,
    AIProvider.QWEN: QwenAdapter,
    AIProvider.KIMI: KimiAdapter,
    AIProvider.MOCK: MockAdapter,
}

# Declared capabilities per provider, independent of model discovery
PROVIDER_CAPABILITIES: dict[AIProvider, ProviderCapabilities] = {
    AIProvider.GEMINI: ProviderCapabilities(
        supports_streaming=True,
        supports_function_calling=True,
        supports_images=True,
        supports_documents=True,
        max_context_tokens=2_097_152,
    ),
    AIProvider.DEEPSEEK: ProviderCapabilities(
        supports_streaming=True,
        supports_function_calling=True,
        max_context_tokens=32_768,
    ),
    AIProvider.QWEN: ProviderCapabilities(
        supports_streaming=True,
        supports_function_calling=True,
        supports_images=True,
        max_context_tokens=32_768,
    ),
    AIProvider.KIMI: ProviderCapabilities(
        supports_streaming=True,
        supports_function_calling=True,
        supports_documents=True,
        max_context_tokens=131_072,
    ),
    AIProvider.MOCK: ProviderCapabilities(
        supports_streaming=True,
        max_context_tokens=8_192,
    ),
}


def _coerce_provider(provider: AIProvider | str) -> AIProvider:
    if isinstance(provider, AIProvider):
        return provider
    try:
        return AIProvider(str(provider).lower())
    except ValueError:
        raise UnsupportedProviderError(str(provider)) from None


def create_adapter(
    provider: AIProvider | str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseVendorAdapter:
    """Factory: get the appropriate (uninitialized) adapter for a provider."""
    identity = _coerce_provider(provider)
    cls = ADAPTER_REGISTRY.get(identity)
    if cls is None:
        raise UnsupportedProviderError(identity.value)
    return cls(transport=transport)


async def _initialize(config: ProviderConfig, transport: httpx.AsyncBaseTransport | None) -> BaseVendorAdapter:
    adapter = create_adapter(config.provider, transport=transport)
    await adapter.initialize(config)
    return adapter


async def create_adapters(
    configs: Iterable[ProviderConfig],
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[BaseVendorAdapter]:
    """Initialize every enabled provider concurrently.

    Returned adapters keep the order of `configs`. Failed providers are logged
    and excluded.
    """
    enabled: list[ProviderConfig] = []
    for config in configs:
        if not config.enabled:
            logger.debug("Provider %s disabled, skipping", config.provider.value)
            continue
        enabled.append(config)

    results = await asyncio.gather(
        *(_initialize(config, transport) for config in enabled),
        return_exceptions=True,
    )

    adapters: list[BaseVendorAdapter] = []
    for config, result in zip(enabled, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            logger.error("Failed to initialize %s provider: %s", config.provider.value, result)
            continue
        adapters.append(result)

    logger.info(
        "Initialized %d/%d enabled providers: %s",
        len(adapters),
        len(enabled),
        ", ".join(a.provider.value for a in adapters) or "none",
    )
    return adapters


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


def get_supported_providers() -> list[AIProvider]:
    return list(ADAPTER_REGISTRY)


def is_provider_supported(name: str) -> bool:
    try:
        return _coerce_provider(name) in ADAPTER_REGISTRY
    except UnsupportedProviderError:
        return False


def get_providers_with_capabilities(
    *,
    streaming: bool = False,
    function_calling: bool = False,
    images: bool = False,
    documents: bool = False,
    min_context_tokens: int = 0,
    providers: Iterable[AIProvider] | None = None,
) -> list[AIProvider]:
    """Providers whose declared capabilities satisfy every requested capability.

    `providers` restricts the search (e.g. to the registered adapters);
    defaults to every supported provider.
    """
    requirements = CapabilityRequirements(
        streaming=streaming,
        function_calling=function_calling,
        images=images,
        documents=documents,
        min_context_tokens=min_context_tokens,
    )
    candidates = list(providers) if providers is not None else get_supported_providers()
    return [
        p for p in candidates if p in PROVIDER_CAPABILITIES and PROVIDER_CAPABILITIES[p].satisfies(requirements)
    ]


async def check_adapters_health(adapters: Iterable[BaseVendorAdapter]) -> dict[AIProvider, bool]:
    """Run all health checks concurrently."""
    adapters = list(adapters)
    results = await asyncio.gather(*(a.health_check() for a in adapters))
    return {a.provider: ok for a, ok in zip(adapters, results)}

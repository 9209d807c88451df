"""Core types and DTOs for the AI orchestration layer."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AIProvider(str, Enum):
    """Supported AI providers."""

    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    QWEN = "qwen"
    KIMI = "kimi"
    MOCK = "mock"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class FinishReason(str, Enum):
    """Why the model stopped producing output."""

    STOP = "stop"
    LENGTH = "length"
    FUNCTION_CALL = "function_call"
    ERROR = "error"


class LoadBalancingStrategy(str, Enum):
    """How the router orders healthy candidates."""

    PRIORITY = "priority"  # Deterministic: configured priority, then config order
    ROUND_ROBIN = "round_robin"  # Rotate among adapters of equal priority
    WEIGHTED_RANDOM = "weighted_random"  # Sample by ProviderConfig.weight
    LEAST_LATENCY = "least_latency"  # Lowest observed EWMA latency first


DEFAULT_BASE_URLS: dict[AIProvider, str] = {
    AIProvider.GEMINI: "https://generativelanguage.googleapis.com",
    AIProvider.DEEPSEEK: "https://api.deepseek.com",
    AIProvider.QWEN: "https://dashscope.aliyuncs.com",
    AIProvider.KIMI: "https://api.moonshot.cn",
    AIProvider.MOCK: "",
}


# ---------------------------------------------------------------------------
# Capabilities & models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CapabilityRequirements:
    """Conjunction of capabilities a request needs from a provider."""

    streaming: bool = False
    function_calling: bool = False
    images: bool = False
    documents: bool = False
    min_context_tokens: int = 0


@dataclass(frozen=True)
class ProviderCapabilities:
    """Declared capability set of a provider (or the union over its models)."""

    supports_streaming: bool = True
    supports_function_calling: bool = False
    supports_images: bool = False
    supports_documents: bool = False
    max_context_tokens: int = 0

    def satisfies(self, requirements: CapabilityRequirements | None) -> bool:
        if requirements is None:
            return True
        if requirements.streaming and not self.supports_streaming:
            return False
        if requirements.function_calling and not self.supports_function_calling:
            return False
        if requirements.images and not self.supports_images:
            return False
        if requirements.documents and not self.supports_documents:
            return False
        return self.max_context_tokens >= requirements.min_context_tokens


@dataclass(frozen=True)
class ModelCapabilities(ProviderCapabilities):
    """Per-model capabilities, including output cap and per-token cost (USD)."""

    max_output_tokens: int = 4096
    cost_per_input_token: float = 0.0
    cost_per_output_token: float = 0.0


@dataclass(frozen=True)
class AIModel:
    id: str
    name: str
    provider: AIProvider
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    available: bool = True

    def to_dict(self) -> dict:
        caps = self.capabilities
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider.value,
            "available": self.available,
            "max_context_tokens": caps.max_context_tokens,
            "max_output_tokens": caps.max_output_tokens,
            "supports_streaming": caps.supports_streaming,
            "supports_function_calling": caps.supports_function_calling,
            "supports_images": caps.supports_images,
            "supports_documents": caps.supports_documents,
        }


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderConfig:
    """Connection and routing configuration for one provider.

    Built once at startup from settings; never mutated afterwards.
    """

    provider: AIProvider
    api_key: str = field(default="", repr=False)
    base_url: str = ""
    timeout: float = 30.0  # Seconds per outbound call
    rate_limit: int = 60  # Declared requests per minute
    priority: int = 1  # Lower = preferred
    enabled: bool = True
    models: tuple[str, ...] = ()  # Allowed model ids, empty = all
    weight: float = 1.0  # Used by weighted_random

    @property
    def endpoint(self) -> str:
        return (self.base_url or DEFAULT_BASE_URLS.get(self.provider, "")).rstrip("/")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5  # Consecutive failures to open circuit
    recovery_timeout: float = 60.0  # Seconds before trying half-open
    request_timeout: float = 30.0  # Hard cap per outbound call
    monitoring_period: float = 300.0  # Failures older than this are forgotten
    rate_limit_escalation_threshold: int = 3  # Consecutive 429s before one counts as a failure


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = True
    ttl: float = 300.0  # Seconds
    max_size: int = 1000


@dataclass(frozen=True)
class AIServiceConfig:
    providers: tuple[ProviderConfig, ...] = ()
    load_balancing_strategy: LoadBalancingStrategy = LoadBalancingStrategy.PRIORITY
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    max_failover_attempts: int | None = None  # None = try every candidate

    @property
    def enabled_providers(self) -> list[ProviderConfig]:
        return [p for p in self.providers if p.enabled]


# ---------------------------------------------------------------------------
# Uniform request — input to the orchestrator
# ---------------------------------------------------------------------------


@dataclass
class Message:
    role: MessageRole
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}


@dataclass
class AIRequest:
    """A provider-agnostic chat request.

    `system_prompt`, when set, is sent ahead of `messages` as a system message.
    """

    messages: list[Message] = field(default_factory=list)
    model: str | None = None  # Pin a specific model id
    temperature: float = 0.7
    max_tokens: int = 1024
    top_p: float | None = None
    stream: bool = False
    system_prompt: str = ""
    required_capabilities: CapabilityRequirements | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])

    def all_messages(self) -> list[Message]:
        if not self.system_prompt:
            return list(self.messages)
        return [Message(MessageRole.SYSTEM, self.system_prompt), *self.messages]

    @property
    def requirements(self) -> CapabilityRequirements:
        """Capabilities the router should match, including streaming when requested."""
        base = self.required_capabilities or CapabilityRequirements()
        if self.stream and not base.streaming:
            return CapabilityRequirements(
                streaming=True,
                function_calling=base.function_calling,
                images=base.images,
                documents=base.documents,
                min_context_tokens=base.min_context_tokens,
            )
        return base


# ---------------------------------------------------------------------------
# Uniform response & stream chunks
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(cls, input_tokens: int | None, output_tokens: int | None, total_tokens: int | None = None) -> Usage:
        inp = input_tokens or 0
        out = output_tokens or 0
        return cls(input_tokens=inp, output_tokens=out, total_tokens=total_tokens or inp + out)

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class AIResponse:
    """Unified response DTO — same structure regardless of which provider produced it."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    content: str = ""
    role: MessageRole = MessageRole.ASSISTANT
    provider: AIProvider = AIProvider.MOCK
    model: str = ""
    usage: Usage = field(default_factory=Usage)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finish_reason: FinishReason = FinishReason.STOP
    latency_ms: int = 0
    cost_usd: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "role": self.role.value,
            "provider": self.provider.value,
            "model": self.model,
            "usage": self.usage.to_dict(),
            "created_at": self.created_at.isoformat(),
            "finish_reason": self.finish_reason.value,
            "latency_ms": self.latency_ms,
            "cost_usd": self.cost_usd,
        }


@dataclass
class StreamChunk:
    """One element of a stream. Only the terminal chunk has done=True and usage."""

    id: str
    delta: str
    provider: AIProvider
    model: str
    done: bool = False
    usage: Usage | None = None
    finish_reason: FinishReason | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "delta": self.delta,
            "provider": self.provider.value,
            "model": self.model,
            "done": self.done,
            "usage": self.usage.to_dict() if self.usage else None,
            "finish_reason": self.finish_reason.value if self.finish_reason else None,
        }


@dataclass(frozen=True)
class RateLimitStatus:
    remaining: int
    limit: int
    reset_time: float  # Epoch seconds

    def to_dict(self) -> dict:
        return {"remaining": self.remaining, "limit": self.limit, "reset_time": self.reset_time}

"""AI Orchestrator — façade integrating all gateway components.

Main entry point for the reading assistant:
  1. Validates the request (before any network call)
  2. Serves non-streaming requests from the response cache when possible
  3. Ranks candidate adapters via the Router
  4. Checks the Circuit Breaker per candidate (fast-fail, no call)
  5. Dispatches via the Vendor Adapter with a per-call timeout
  6. Records the outcome in the Circuit Breaker and Rate Tracker
  7. Fails over to the next candidate, or raises one AllProvidersFailedError

Streaming fails over only before the first chunk reaches the caller.

Usage:
    orchestrator = await AIOrchestrator.from_config(load_ai_service_config())

    response = await orchestrator.ask(request)

    async with orchestrator.stream(request) as chunks:
        async for chunk in chunks:
            ...

    await orchestrator.aclose()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx

from app.core.metrics import FAILOVERS, PROVIDER_LATENCY, PROVIDER_REQUESTS, observe_circuit_state
from app.gateway.cache import ResponseCache
from app.gateway.circuit_breaker import CircuitBreaker, CircuitState
from app.gateway.errors import (
    AIError,
    AllProvidersFailedError,
    AuthenticationError,
    CircuitOpenError,
    NetworkError,
    ProviderTimeoutError,
    RateLimitError,
)
from app.gateway.normalizer import AIStream
from app.gateway.rate_limiter import RateTracker
from app.gateway.registry import check_adapters_health, create_adapter, create_adapters
from app.gateway.router import Router, RoutingDecision
from app.gateway.types import (
    AIProvider,
    AIRequest,
    AIResponse,
    AIServiceConfig,
    ProviderConfig,
    StreamChunk,
    Usage,
)
from app.gateway.vendor_adapters import BaseVendorAdapter, validate_request

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results & statistics
# ---------------------------------------------------------------------------


@dataclass
class OrchestrationResult:
    response: AIResponse
    provider: AIProvider
    attempts: int
    duration_ms: int
    failover_used: bool = False
    providers_attempted: list[AIProvider] = field(default_factory=list)
    cached: bool = False

    def to_dict(self) -> dict:
        return {
            "response": self.response.to_dict(),
            "provider": self.provider.value,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "failover_used": self.failover_used,
            "providers_attempted": [p.value for p in self.providers_attempted],
            "cached": self.cached,
        }


@dataclass
class _ProviderStats:
    requests: int = 0
    successes: int = 0
    failures: int = 0
    total_latency_ms: int = 0
    last_used: datetime | None = None

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.successes if self.successes else 0.0

    def to_dict(self) -> dict:
        return {
            "requests": self.requests,
            "successes": self.successes,
            "failures": self.failures,
            "average_latency_ms": round(self.average_latency_ms, 1),
            "last_used": self.last_used.isoformat() if self.last_used else None,
        }


@dataclass
class ServiceStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    failovers: int = 0
    total_response_time_ms: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    providers: dict[AIProvider, _ProviderStats] = field(default_factory=dict)

    def provider(self, provider: AIProvider) -> _ProviderStats:
        if provider not in self.providers:
            self.providers[provider] = _ProviderStats()
        return self.providers[provider]

    @property
    def average_response_time_ms(self) -> float:
        return self.total_response_time_ms / self.successful_requests if self.successful_requests else 0.0


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AIOrchestrator:
    """Routes uniform requests across provider adapters with failover.

    Integrates:
      - Router: strategy-based candidate ordering
      - CircuitBreaker: failure detection and recovery
      - RateTracker: quota-based deprioritization
      - VendorAdapters: protocol-specific HTTP calls
      - ResponseCache: repeat non-streaming requests
    """

    def __init__(
        self,
        adapters: Iterable[BaseVendorAdapter],
        config: AIServiceConfig | None = None,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        rate_tracker: RateTracker | None = None,
        router: Router | None = None,
        cache: ResponseCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        adapter_factory: Callable[[AIProvider], BaseVendorAdapter] | None = None,
    ):
        self.config = config or AIServiceConfig()
        self._adapters: dict[AIProvider, BaseVendorAdapter] = {a.provider: a for a in adapters}
        self._adapter_factory = adapter_factory or (lambda provider: create_adapter(provider, transport=transport))

        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.config.circuit_breaker, providers=self._adapters)
        self.rate_tracker = rate_tracker or RateTracker()
        self.router = router or Router(self.circuit_breaker, self.rate_tracker, self.config.load_balancing_strategy)
        self.cache = cache or ResponseCache(self.config.cache)
        self.stats = ServiceStats()
        self._closed = False

        if not self._adapters:
            logger.warning("No AI providers available, orchestrator running in degraded mode")

    @classmethod
    async def from_config(
        cls,
        config: AIServiceConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> AIOrchestrator:
        adapters = await create_adapters(config.providers, transport=transport)
        return cls(adapters, config, transport=transport)

    @property
    def adapters(self) -> list[BaseVendorAdapter]:
        return list(self._adapters.values())

    @property
    def providers(self) -> list[AIProvider]:
        return list(self._adapters)

    @property
    def closed(self) -> bool:
        return self._closed

    def get_adapter(self, provider: AIProvider) -> BaseVendorAdapter | None:
        return self._adapters.get(provider)

    def _ensure_open(self) -> None:
        if self._closed:
            raise AIError("Orchestrator has been shut down", code="NOT_INITIALIZED")

    @property
    def _max_attempts(self) -> int:
        return self.config.max_failover_attempts or len(self._adapters)

    def _candidates(self, request: AIRequest) -> tuple[list[RoutingDecision], AIError | None]:
        """Ranked candidates, plus a CircuitOpenError when the router left any provider out."""
        decisions, circuit_open = self.router.rank_with_exclusions(self._adapters.values(), request)
        logger.debug(
            "Request %s candidates: %s",
            request.request_id,
            ", ".join(f"{d.provider.value}({'; '.join(d.reasons)})" for d in decisions) or "none",
        )
        return decisions, CircuitOpenError(circuit_open[-1]) if circuit_open else None

    # -- inbound contract ---------------------------------------------------

    async def ask(self, request: AIRequest) -> AIResponse:
        return await self.request(request)

    def stream(self, request: AIRequest) -> AIStream:
        return self.stream_request(request)

    async def request(self, request: AIRequest) -> AIResponse:
        result = await self.execute_with_details(request)
        return result.response

    async def execute_with_details(self, request: AIRequest) -> OrchestrationResult:
        """Execute a request through the full pipeline and report how it went."""
        self._ensure_open()
        validate_request(request)
        start = time.monotonic()
        self.stats.total_requests += 1

        cached = self.cache.get(request)
        if cached is not None:
            self.stats.successful_requests += 1
            logger.debug("Cache hit for request %s", request.request_id, extra={"request_id": request.request_id})
            return OrchestrationResult(
                response=cached,
                provider=cached.provider,
                attempts=0,
                duration_ms=int((time.monotonic() - start) * 1000),
                cached=True,
            )

        timeout = self.config.circuit_breaker.request_timeout
        attempted: list[AIProvider] = []
        decisions, last_error = self._candidates(request)

        for decision in decisions:
            if len(attempted) >= self._max_attempts:
                break
            provider = decision.provider
            if not await self.circuit_breaker.allow_request(provider):
                last_error = CircuitOpenError(provider)
                continue

            attempted.append(provider)
            call_start = time.monotonic()
            try:
                async with asyncio.timeout(timeout):
                    response = await decision.adapter.request(request)
            except TimeoutError:
                last_error = ProviderTimeoutError(provider, timeout)
                await self._record_failure(decision, last_error, call_start)
                continue
            except AIError as exc:
                last_error = exc
                await self._record_failure(decision, exc, call_start)
                continue
            except asyncio.CancelledError:
                self.circuit_breaker.release_trial(provider)
                raise
            except Exception as exc:
                last_error = self._unexpected(provider, exc)
                await self._record_failure(decision, last_error, call_start)
                continue

            await self._record_success(decision, call_start, response.usage, response.cost_usd)
            self._note_failover(attempted)
            self.cache.set(request, response)
            return OrchestrationResult(
                response=response,
                provider=provider,
                attempts=len(attempted),
                duration_ms=int((time.monotonic() - start) * 1000),
                failover_used=len(attempted) > 1,
                providers_attempted=attempted,
            )

        self.stats.failed_requests += 1
        raise AllProvidersFailedError(len(attempted), attempted, last_error) from last_error

    def stream_request(self, request: AIRequest) -> AIStream:
        """Start a stream. Validation errors raise here, provider errors on iteration."""
        self._ensure_open()
        validate_request(request)
        return AIStream(self._stream_with_failover(request))

    async def _stream_with_failover(self, request: AIRequest) -> AsyncGenerator[StreamChunk, None]:
        self.stats.total_requests += 1
        timeout = self.config.circuit_breaker.request_timeout
        attempted: list[AIProvider] = []
        decisions, last_error = self._candidates(request)

        for decision in decisions:
            if len(attempted) >= self._max_attempts:
                break
            provider = decision.provider
            if not await self.circuit_breaker.allow_request(provider):
                last_error = CircuitOpenError(provider)
                continue

            attempted.append(provider)
            call_start = time.monotonic()
            chunks = decision.adapter.stream_request(request)

            # Before the first chunk: failures fall through to the next candidate
            try:
                async with asyncio.timeout(timeout):
                    first = await anext(chunks)
            except (AIError, TimeoutError, StopAsyncIteration) as exc:
                await chunks.aclose()
                last_error = self._as_ai_error(provider, exc, timeout)
                await self._record_failure(decision, last_error, call_start)
                continue
            except asyncio.CancelledError:
                self.circuit_breaker.release_trial(provider)
                await chunks.aclose()
                raise
            except Exception as exc:
                await chunks.aclose()
                last_error = self._unexpected(provider, exc)
                await self._record_failure(decision, last_error, call_start)
                continue

            self._note_failover(attempted)

            # Committed to this provider: errors now end the stream
            chunk = first
            outcome_recorded = False
            try:
                while not chunk.done:
                    yield chunk
                    try:
                        chunk = await anext(chunks)
                    except StopAsyncIteration as exc:
                        raise NetworkError("Stream ended before completion", provider) from exc
                    except AIError:
                        raise
                    except Exception as exc:
                        raise self._unexpected(provider, exc) from exc
                # Success is recorded before the done chunk is handed out
                outcome_recorded = True
                await self._record_success(decision, call_start, chunk.usage or Usage(), 0.0)
                yield chunk
            except AIError as exc:
                outcome_recorded = True
                self.stats.failed_requests += 1
                await self._record_failure(decision, exc, call_start)
                logger.warning(
                    "Stream from %s failed mid-response: %s",
                    provider.value,
                    exc,
                    extra={"request_id": request.request_id, "provider": provider.value},
                )
                raise
            finally:
                if not outcome_recorded:
                    # Consumer stopped early; no verdict on provider health
                    self.circuit_breaker.release_trial(provider)
                await chunks.aclose()
            return

        self.stats.failed_requests += 1
        raise AllProvidersFailedError(len(attempted), attempted, last_error) from last_error

    # -- outcome bookkeeping -----------------------------------------------

    @staticmethod
    def _as_ai_error(provider: AIProvider, exc: BaseException, timeout: float) -> AIError:
        if isinstance(exc, AIError):
            return exc
        if isinstance(exc, TimeoutError):
            return ProviderTimeoutError(provider, timeout)
        return NetworkError("Stream ended before any data", provider)

    @staticmethod
    def _unexpected(provider: AIProvider, exc: Exception) -> AIError:
        logger.error("Unexpected %s from %s", type(exc).__name__, provider.value, exc_info=exc)
        error = NetworkError(f"Unexpected {type(exc).__name__}: {exc}", provider)
        error.__cause__ = exc
        return error

    def _note_failover(self, attempted: list[AIProvider]) -> None:
        if len(attempted) > 1:
            self.stats.failovers += 1
            FAILOVERS.inc()
            logger.info("Failover used: %s", " -> ".join(p.value for p in attempted))

    async def _record_success(self, decision: RoutingDecision, call_start: float, usage: Usage, cost: float) -> None:
        provider = decision.provider
        latency_ms = int((time.monotonic() - call_start) * 1000)

        await self.circuit_breaker.record_success(provider)
        await self.rate_tracker.update(provider, decision.adapter.get_rate_limit_status())
        self.router.record_latency(provider, latency_ms)

        stats = self.stats.provider(provider)
        stats.requests += 1
        stats.successes += 1
        stats.total_latency_ms += latency_ms
        stats.last_used = datetime.now(timezone.utc)
        self.stats.successful_requests += 1
        self.stats.total_response_time_ms += latency_ms
        self.stats.total_tokens += usage.total_tokens
        self.stats.total_cost_usd += cost

        PROVIDER_REQUESTS.labels(provider=provider.value, outcome="success").inc()
        PROVIDER_LATENCY.labels(provider=provider.value).observe(latency_ms / 1000)
        observe_circuit_state(provider.value, self.circuit_breaker.get_state(provider).value)

    async def _record_failure(self, decision: RoutingDecision, error: AIError, call_start: float) -> None:
        provider = decision.provider
        stats = self.stats.provider(provider)
        stats.requests += 1
        stats.failures += 1
        stats.last_used = datetime.now(timezone.utc)

        if isinstance(error, AuthenticationError):
            outcome = "auth_error"
            await self.circuit_breaker.trip_authentication(provider)
        elif isinstance(error, RateLimitError):
            outcome = "rate_limited"
            await self.rate_tracker.mark_exhausted(provider, error.retry_after)
            await self.circuit_breaker.record_rate_limited(provider)
        else:
            outcome = "timeout" if isinstance(error, ProviderTimeoutError) else "error"
            await self.rate_tracker.update(provider, decision.adapter.get_rate_limit_status())
            await self.circuit_breaker.record_failure(provider)

        logger.warning(
            "Provider %s failed after %dms (%s): %s",
            provider.value,
            int((time.monotonic() - call_start) * 1000),
            error.code,
            error.message,
            extra={"provider": provider.value},
        )
        PROVIDER_REQUESTS.labels(provider=provider.value, outcome=outcome).inc()
        observe_circuit_state(provider.value, self.circuit_breaker.get_state(provider).value)

    # -- status & management ----------------------------------------------

    def get_stats(self) -> dict:
        return {
            "total_requests": self.stats.total_requests,
            "successful_requests": self.stats.successful_requests,
            "failed_requests": self.stats.failed_requests,
            "failovers": self.stats.failovers,
            "average_response_time_ms": round(self.stats.average_response_time_ms, 1),
            "total_tokens": self.stats.total_tokens,
            "total_cost_usd": round(self.stats.total_cost_usd, 6),
            "cache": self.cache.get_stats(),
            "providers": {p.value: s.to_dict() for p, s in self.stats.providers.items()},
        }

    def get_circuit_breaker_status(self) -> list[dict]:
        return [self.circuit_breaker.get_circuit_state(p) for p in self._adapters]

    async def get_health_status(self) -> dict:
        """Run all health checks concurrently and combine them with breaker state."""
        reachable = await check_adapters_health(self._adapters.values())
        providers: dict[str, dict] = {}
        healthy_count = 0
        for provider, ok in reachable.items():
            state = self.circuit_breaker.get_state(provider)
            healthy = ok and state != CircuitState.OPEN
            healthy_count += healthy
            status = self.rate_tracker.get_status(provider)
            providers[provider.value] = {
                "healthy": healthy,
                "reachable": ok,
                "circuit_state": state.value,
                "rate_limited": self.rate_tracker.is_exhausted(provider),
                "rate_limit": status.to_dict() if status else None,
            }

        if not providers or healthy_count == 0:
            overall = "unhealthy"
        elif healthy_count < len(providers):
            overall = "degraded"
        else:
            overall = "healthy"
        return {
            "status": overall,
            "healthy_providers": healthy_count,
            "total_providers": len(providers),
            "providers": providers,
        }

    async def reset_circuit_breaker(self, provider: AIProvider) -> None:
        await self.circuit_breaker.reset(provider)
        observe_circuit_state(provider.value, CircuitState.CLOSED.value)

    async def reinitialize_provider(self, config: ProviderConfig) -> BaseVendorAdapter:
        """Re-run initialization with (possibly new) configuration.

        The only way out of an authentication-forced OPEN circuit. A fresh adapter
        is initialized and swapped in only on success; on failure the error is
        raised and the current adapter and breaker are left untouched.
        """
        self._ensure_open()
        adapter = self._adapter_factory(config.provider)
        await adapter.initialize(config)
        self._adapters[config.provider] = adapter
        self.rate_tracker.reset(config.provider)
        await self.reset_circuit_breaker(config.provider)
        logger.info("Provider %s re-initialized", config.provider.value)
        return adapter

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.cache.clear()
        logger.info("AI orchestrator shut down")

    shutdown = aclose

"""Router — orders candidate adapters for a request.

Ranking per request:
  1. drop adapters whose breaker would reject the call right now
  2. drop adapters lacking a pinned `request.model`
  3. order the rest by the load-balancing strategy
  4. demote (never drop) adapters that are rate-exhausted or whose declared
     capabilities don't match the request; rate-exhausted go last

The `priority` strategy is fully deterministic for the same inputs.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field

from app.gateway.circuit_breaker import CircuitBreaker
from app.gateway.rate_limiter import RateTracker
from app.gateway.types import AIProvider, AIRequest, LoadBalancingStrategy
from app.gateway.vendor_adapters import BaseVendorAdapter

logger = logging.getLogger(__name__)

LATENCY_SMOOTHING = 0.3  # EWMA weight of the newest sample


@dataclass
class RoutingDecision:
    """One ranked candidate with the reasons for its position."""

    provider: AIProvider
    adapter: BaseVendorAdapter
    priority: int
    rate_exhausted: bool = False
    capability_match: bool = True
    reasons: list[str] = field(default_factory=list)


class Router:
    """Produces a priority-ordered candidate list per request."""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        rate_tracker: RateTracker,
        strategy: LoadBalancingStrategy = LoadBalancingStrategy.PRIORITY,
        rng: random.Random | None = None,
    ):
        self.circuit_breaker = circuit_breaker
        self.rate_tracker = rate_tracker
        self.strategy = strategy
        self._rng = rng or random.Random()
        self._round_robin: dict[int, int] = {}
        self._latency_ms: dict[AIProvider, float] = {}

    def record_latency(self, provider: AIProvider, latency_ms: float) -> None:
        previous = self._latency_ms.get(provider)
        if previous is None:
            self._latency_ms[provider] = latency_ms
        else:
            self._latency_ms[provider] = LATENCY_SMOOTHING * latency_ms + (1 - LATENCY_SMOOTHING) * previous

    def get_latency(self, provider: AIProvider) -> float | None:
        return self._latency_ms.get(provider)

    def rank(self, adapters: Iterable[BaseVendorAdapter], request: AIRequest) -> list[RoutingDecision]:
        return self.rank_with_exclusions(adapters, request)[0]

    def rank_with_exclusions(
        self, adapters: Iterable[BaseVendorAdapter], request: AIRequest
    ) -> tuple[list[RoutingDecision], list[AIProvider]]:
        """Rank candidates and also report the providers left out because their breaker rejects calls."""
        requirements = request.requirements
        eligible: list[BaseVendorAdapter] = []
        circuit_open: list[AIProvider] = []
        for adapter in adapters:
            if not self.circuit_breaker.is_available(adapter.provider):
                logger.debug("Router: %s excluded, circuit open", adapter.provider.value)
                circuit_open.append(adapter.provider)
                continue
            if request.model and not adapter.has_model(request.model):
                logger.debug("Router: %s excluded, no model %s", adapter.provider.value, request.model)
                continue
            eligible.append(adapter)

        ordered = self._order(eligible)

        decisions: list[RoutingDecision] = []
        for position, adapter in enumerate(ordered):
            decision = RoutingDecision(
                provider=adapter.provider,
                adapter=adapter,
                priority=adapter.priority,
                rate_exhausted=self.rate_tracker.is_exhausted(adapter.provider),
                capability_match=adapter.capabilities.satisfies(requirements),
                reasons=[f"{self.strategy.value} position {position}", f"priority {adapter.priority}"],
            )
            if decision.rate_exhausted:
                decision.reasons.append("rate limit exhausted")
            if not decision.capability_match:
                decision.reasons.append("capability mismatch")
            decisions.append(decision)

        # Stable sort keeps the strategy order within each demotion bucket
        decisions.sort(key=lambda d: (d.rate_exhausted, not d.capability_match))
        return decisions, circuit_open

    def _order(self, adapters: list[BaseVendorAdapter]) -> list[BaseVendorAdapter]:
        if self.strategy == LoadBalancingStrategy.ROUND_ROBIN:
            return self._round_robin_order(adapters)
        if self.strategy == LoadBalancingStrategy.WEIGHTED_RANDOM:
            return self._weighted_order(adapters)
        if self.strategy == LoadBalancingStrategy.LEAST_LATENCY:
            # Unmeasured adapters go first so they get a sample
            return sorted(adapters, key=lambda a: (self._latency_ms.get(a.provider, 0.0), a.priority))
        return sorted(adapters, key=lambda a: a.priority)

    def _round_robin_order(self, adapters: list[BaseVendorAdapter]) -> list[BaseVendorAdapter]:
        groups: dict[int, list[BaseVendorAdapter]] = {}
        for adapter in adapters:
            groups.setdefault(adapter.priority, []).append(adapter)

        ordered: list[BaseVendorAdapter] = []
        for priority in sorted(groups):
            group = groups[priority]
            offset = self._round_robin.get(priority, 0) % len(group)
            self._round_robin[priority] = offset + 1
            ordered.extend(group[offset:] + group[:offset])
        return ordered

    def _weighted_order(self, adapters: list[BaseVendorAdapter]) -> list[BaseVendorAdapter]:
        # Weighted sampling without replacement (Efraimidis-Spirakis keys)
        keyed = []
        for adapter in adapters:
            weight = max(adapter.weight, 1e-9)
            keyed.append((self._rng.random() ** (1.0 / weight), adapter))
        keyed.sort(key=lambda item: item[0], reverse=True)
        return [adapter for _, adapter in keyed]

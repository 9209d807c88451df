"""Circuit Breaker — per-provider failure isolation.

Implements the circuit breaker pattern per provider:
  - CLOSED: normal operation, requests pass through
  - OPEN: too many failures, requests are rejected immediately
  - HALF_OPEN: testing recovery with a single trial request

Outcome rules:
  - failures count towards the threshold only while they are consecutive and
    younger than the monitoring period
  - rate limits are tracked separately; after `rate_limit_escalation_threshold`
    consecutive rate limits the next one is recorded as a failure
  - authentication errors force OPEN with no automatic recovery until the
    provider is reset (re-initialized)

Every transition runs under the provider's asyncio.Lock. The lock is never
held across the outbound call itself.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from app.gateway.types import AIProvider, CircuitBreakerConfig

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class _CircuitStats:
    """Failure tracking for a single provider's circuit."""

    consecutive_failures: int = 0
    consecutive_rate_limits: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rate_limits: int = 0
    total_rejections: int = 0
    last_failure_time: float = 0.0
    state: CircuitState = CircuitState.CLOSED
    opened_at: float = 0.0  # When circuit was opened
    auth_locked: bool = False  # Opened by a rejected credential
    trial_in_flight: bool = False
    failure_times: deque[float] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class CircuitBreaker:
    """Per-provider circuit breaker.

    Usage:
        cb = CircuitBreaker(config)

        if not await cb.allow_request(provider):
            # Circuit is open, skip without a network call
            ...

        await cb.record_success(provider)      # after success
        await cb.record_failure(provider)      # after transport / vendor failure
        await cb.record_rate_limited(provider) # after 429
        await cb.trip_authentication(provider) # after 401/403
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        providers: Iterable[AIProvider] | None = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._circuits: dict[AIProvider, _CircuitStats] = {}
        for provider in providers or ():
            self._get_circuit(provider)

    def _get_circuit(self, provider: AIProvider) -> _CircuitStats:
        if provider not in self._circuits:
            self._circuits[provider] = _CircuitStats()
        return self._circuits[provider]

    def _recovery_elapsed(self, circuit: _CircuitStats, now: float) -> bool:
        return not circuit.auth_locked and now - circuit.opened_at >= self.config.recovery_timeout

    # -- transitions --------------------------------------------------------

    async def allow_request(self, provider: AIProvider) -> bool:
        """Check whether a call may go out, taking the HALF_OPEN trial slot if so.

        Returns True if the circuit is closed, or if this caller becomes the
        single half-open trial.
        """
        circuit = self._get_circuit(provider)
        async with circuit.lock:
            now = self._clock()

            if circuit.state == CircuitState.CLOSED:
                return True

            if circuit.state == CircuitState.OPEN:
                if self._recovery_elapsed(circuit, now):
                    circuit.state = CircuitState.HALF_OPEN
                    circuit.trial_in_flight = True
                    logger.info("Circuit for %s transitioning to HALF_OPEN", provider.value)
                    return True
                circuit.total_rejections += 1
                return False

            # HALF_OPEN: one trial at a time
            if circuit.trial_in_flight:
                circuit.total_rejections += 1
                return False
            circuit.trial_in_flight = True
            return True

    async def record_success(self, provider: AIProvider) -> None:
        """Record a successful call — resets counters, closes a half-open circuit."""
        circuit = self._get_circuit(provider)
        async with circuit.lock:
            circuit.consecutive_failures = 0
            circuit.consecutive_rate_limits = 0
            circuit.failure_times.clear()
            circuit.total_successes += 1

            if circuit.state == CircuitState.HALF_OPEN:
                circuit.state = CircuitState.CLOSED
                circuit.trial_in_flight = False
                logger.info("Circuit for %s CLOSED (recovered)", provider.value)

    async def record_failure(self, provider: AIProvider) -> CircuitState:
        """Record a failed call. Returns the resulting state."""
        circuit = self._get_circuit(provider)
        async with circuit.lock:
            self._apply_failure(provider, circuit, self._clock())
            return circuit.state

    async def record_rate_limited(self, provider: AIProvider) -> bool:
        """Record a rate-limited call.

        Returns True when the rate limit was escalated to a breaker failure.
        """
        circuit = self._get_circuit(provider)
        async with circuit.lock:
            circuit.total_rate_limits += 1
            if circuit.consecutive_rate_limits >= self.config.rate_limit_escalation_threshold:
                circuit.consecutive_rate_limits = 0
                logger.warning(
                    "Provider %s rate limited %d times in a row, counting as failure",
                    provider.value,
                    self.config.rate_limit_escalation_threshold + 1,
                )
                self._apply_failure(provider, circuit, self._clock())
                return True

            circuit.consecutive_rate_limits += 1
            if circuit.state == CircuitState.HALF_OPEN:
                # Trial told us nothing about health; let the next caller try
                circuit.trial_in_flight = False
            return False

    async def trip_authentication(self, provider: AIProvider) -> None:
        """Force OPEN after a rejected credential. Only reset() leaves this state."""
        circuit = self._get_circuit(provider)
        async with circuit.lock:
            circuit.state = CircuitState.OPEN
            circuit.auth_locked = True
            circuit.opened_at = self._clock()
            circuit.trial_in_flight = False
            circuit.total_failures += 1
            circuit.last_failure_time = circuit.opened_at
        logger.warning("Circuit for %s OPENED: credential rejected, re-initialization required", provider.value)

    def release_trial(self, provider: AIProvider) -> None:
        """Give back the half-open trial slot when a call ended with no outcome (cancelled)."""
        circuit = self._get_circuit(provider)
        if circuit.state == CircuitState.HALF_OPEN:
            circuit.trial_in_flight = False

    def _apply_failure(self, provider: AIProvider, circuit: _CircuitStats, now: float) -> None:
        circuit.consecutive_failures += 1
        circuit.total_failures += 1
        circuit.last_failure_time = now

        cutoff = now - self.config.monitoring_period
        circuit.failure_times.append(now)
        while circuit.failure_times and circuit.failure_times[0] < cutoff:
            circuit.failure_times.popleft()

        if circuit.state == CircuitState.HALF_OPEN:
            circuit.state = CircuitState.OPEN
            circuit.opened_at = now
            circuit.trial_in_flight = False
            logger.warning("Circuit for %s re-OPENED: half-open trial failed", provider.value)
            return

        if circuit.state == CircuitState.CLOSED and len(circuit.failure_times) >= self.config.failure_threshold:
            circuit.state = CircuitState.OPEN
            circuit.opened_at = now
            logger.warning(
                "Circuit for %s OPENED after %d consecutive failures",
                provider.value,
                circuit.consecutive_failures,
            )

    # -- read accessors -----------------------------------------------------

    def get_state(self, provider: AIProvider) -> CircuitState:
        return self._get_circuit(provider).state

    def is_available(self, provider: AIProvider) -> bool:
        """Would allow_request() admit a call right now? Does not change state."""
        circuit = self._get_circuit(provider)
        if circuit.state == CircuitState.CLOSED:
            return True
        if circuit.state == CircuitState.OPEN:
            return self._recovery_elapsed(circuit, self._clock())
        return not circuit.trial_in_flight

    def get_circuit_state(self, provider: AIProvider) -> dict:
        """Get the current state of a provider's circuit."""
        circuit = self._get_circuit(provider)
        next_attempt = None
        if circuit.state == CircuitState.OPEN and not circuit.auth_locked:
            next_attempt = max(circuit.opened_at + self.config.recovery_timeout - self._clock(), 0.0)
        return {
            "provider": provider.value,
            "state": circuit.state.value,
            "consecutive_failures": circuit.consecutive_failures,
            "consecutive_rate_limits": circuit.consecutive_rate_limits,
            "total_failures": circuit.total_failures,
            "total_successes": circuit.total_successes,
            "total_rate_limits": circuit.total_rate_limits,
            "total_rejections": circuit.total_rejections,
            "requires_reinitialization": circuit.auth_locked,
            "seconds_until_retry": next_attempt,
        }

    def get_all_states(self) -> list[dict]:
        """Get circuit states for all tracked providers."""
        return [self.get_circuit_state(p) for p in self._circuits]

    async def reset(self, provider: AIProvider) -> None:
        """Reset a provider's circuit to CLOSED (used on re-initialization)."""
        circuit = self._get_circuit(provider)
        async with circuit.lock:
            circuit.state = CircuitState.CLOSED
            circuit.consecutive_failures = 0
            circuit.consecutive_rate_limits = 0
            circuit.failure_times.clear()
            circuit.auth_locked = False
            circuit.trial_in_flight = False
        logger.info("Circuit for %s manually RESET", provider.value)

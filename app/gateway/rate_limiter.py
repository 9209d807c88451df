"""Rate Tracker — per-provider remaining-quota bookkeeping.

Providers expose quota through response headers (OpenAI-style
`x-ratelimit-*`, `Retry-After`). Adapters parse those after every call, or fall
back to a sliding-window estimate of their own traffic against the declared
requests-per-minute. The RateTracker keeps the last known status per provider
so the Router can push exhausted providers to the back of the line.

Thread-safe via asyncio.Lock (one lock per provider).
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from app.gateway.types import AIProvider, RateLimitStatus

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
DEFAULT_RETRY_AFTER = 60.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


# ---------------------------------------------------------------------------
# Header parsing
# ---------------------------------------------------------------------------


def parse_duration(value: str | None) -> float | None:
    """Parse a reset/retry value into seconds.

    Accepts plain numbers ("30", "1.5") and duration strings ("6m0s", "1.5s",
    "200ms", "1h2m"). Returns None when the value is missing or unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass

    total = 0.0
    consumed = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != consumed:
            return None
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        consumed = match.end()
    if consumed != len(value):
        return None
    return total


def _header_int(headers: Mapping[str, str], *names: str) -> int | None:
    for name in names:
        raw = headers.get(name)
        if raw is None:
            continue
        try:
            return int(float(raw))
        except ValueError:
            logger.debug("Ignoring non-numeric rate limit header %s=%r", name, raw)
    return None


def parse_retry_after(headers: Mapping[str, str], default: float = DEFAULT_RETRY_AFTER) -> float:
    """Seconds to wait according to `Retry-After` (or the reset header), else `default`."""
    for name in ("retry-after", "x-ratelimit-reset-requests", "x-ratelimit-reset"):
        seconds = parse_duration(headers.get(name))
        if seconds is not None:
            return seconds
    return default


def parse_rate_limit_headers(headers: Mapping[str, str], now: float | None = None) -> RateLimitStatus | None:
    """Build a RateLimitStatus from `x-ratelimit-*` headers, or None if absent.

    `headers` must be case-insensitive (httpx.Headers) or use lower-case keys.
    """
    remaining = _header_int(headers, "x-ratelimit-remaining-requests", "x-ratelimit-remaining")
    if remaining is None:
        return None
    now = time.time() if now is None else now
    limit = _header_int(headers, "x-ratelimit-limit-requests", "x-ratelimit-limit")
    reset_in = parse_duration(headers.get("x-ratelimit-reset-requests") or headers.get("x-ratelimit-reset"))
    return RateLimitStatus(
        remaining=max(remaining, 0),
        limit=limit if limit is not None else remaining,
        reset_time=now + (reset_in if reset_in is not None else WINDOW_SECONDS),
    )


# ---------------------------------------------------------------------------
# Sliding window (adapter-side estimate)
# ---------------------------------------------------------------------------


@dataclass
class SlidingWindow:
    """Sliding 1-minute window of outgoing call timestamps (epoch seconds)."""

    limit: int
    entries: deque[float] = field(default_factory=deque)

    def _prune(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        while self.entries and self.entries[0] < cutoff:
            self.entries.popleft()

    def record(self, now: float) -> None:
        self._prune(now)
        self.entries.append(now)

    def status(self, now: float) -> RateLimitStatus:
        self._prune(now)
        reset_time = self.entries[0] + WINDOW_SECONDS if self.entries else now + WINDOW_SECONDS
        return RateLimitStatus(
            remaining=max(self.limit - len(self.entries), 0),
            limit=self.limit,
            reset_time=reset_time,
        )


# ---------------------------------------------------------------------------
# Rate tracker (orchestrator-side, shared across requests)
# ---------------------------------------------------------------------------


@dataclass
class _ProviderQuota:
    status: RateLimitStatus | None = None
    rate_limited_count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RateTracker:
    """Last-known RateLimitStatus per provider.

    Usage:
        tracker = RateTracker()

        # After any call:
        await tracker.update(provider, adapter.get_rate_limit_status())

        # After a 429:
        await tracker.mark_exhausted(provider, retry_after=exc.retry_after)

        # When ranking:
        tracker.is_exhausted(provider)
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._quotas: dict[AIProvider, _ProviderQuota] = {}

    def _get_quota(self, provider: AIProvider) -> _ProviderQuota:
        if provider not in self._quotas:
            self._quotas[provider] = _ProviderQuota()
        return self._quotas[provider]

    async def update(self, provider: AIProvider, status: RateLimitStatus | None) -> None:
        """Replace the provider's status with a fresher snapshot."""
        if status is None:
            return
        quota = self._get_quota(provider)
        async with quota.lock:
            # A forced exhaustion outlives estimates that still report capacity
            current = quota.status
            if (
                current is not None
                and current.remaining <= 0
                and current.reset_time > self._clock()
                and status.remaining > 0
                and status.reset_time < current.reset_time
            ):
                return
            quota.status = status

    async def mark_exhausted(self, provider: AIProvider, retry_after: float | None = None) -> None:
        """Record a RateLimitError: remaining=0 until now + retry_after."""
        quota = self._get_quota(provider)
        async with quota.lock:
            wait = DEFAULT_RETRY_AFTER if retry_after is None else retry_after
            limit = quota.status.limit if quota.status else 0
            quota.status = RateLimitStatus(remaining=0, limit=limit, reset_time=self._clock() + wait)
            quota.rate_limited_count += 1
        logger.info("Provider %s rate limited, deprioritized for %.1fs", provider.value, wait)

    def is_exhausted(self, provider: AIProvider) -> bool:
        quota = self._quotas.get(provider)
        if quota is None or quota.status is None:
            return False
        return quota.status.remaining <= 0 and quota.status.reset_time > self._clock()

    def get_status(self, provider: AIProvider) -> RateLimitStatus | None:
        quota = self._quotas.get(provider)
        return quota.status if quota else None

    def reset(self, provider: AIProvider) -> None:
        self._quotas.pop(provider, None)

    def get_stats(self, provider: AIProvider) -> dict:
        quota = self._get_quota(provider)
        return {
            "provider": provider.value,
            "status": quota.status.to_dict() if quota.status else None,
            "exhausted": self.is_exhausted(provider),
            "rate_limited_count": quota.rate_limited_count,
        }

    def get_all_stats(self) -> list[dict]:
        return [self.get_stats(p) for p in self._quotas]

"""Response cache for non-streaming requests.

Keyed by the request content (messages, model, sampling parameters), TTL
bound, FIFO eviction once `max_size` is reached.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable

from app.gateway.types import AIRequest, AIResponse, CacheConfig

logger = logging.getLogger(__name__)


def cache_key(request: AIRequest) -> str:
    payload = {
        "messages": [m.to_dict() for m in request.all_messages()],
        "model": request.model,
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
        "top_p": request.top_p,
    }
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _detached(response: AIResponse) -> AIResponse:
    """Copy that shares no mutable state with the cached entry."""
    return dataclasses.replace(response, usage=dataclasses.replace(response.usage))


class ResponseCache:
    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, AIResponse]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def get(self, request: AIRequest) -> AIResponse | None:
        if not self.enabled:
            return None
        key = cache_key(request)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, response = entry
        if expires_at <= self._clock():
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return _detached(response)

    def set(self, request: AIRequest, response: AIResponse) -> None:
        if not self.enabled:
            return
        key = cache_key(request)
        if key not in self._entries and len(self._entries) >= self.config.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache full, evicted %s", evicted[:12])
        self._entries[key] = (self._clock() + self.config.ttl, _detached(response))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def get_stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "size": len(self._entries),
            "max_size": self.config.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
        }

"""Lightweight in-memory TTL caches for collaborator lookups.

Dataset schemas are read on every turn but only change when a dataset is
re-uploaded, so the context assembler keeps them in a short-lived cache
instead of hitting the dataset tables for each turn of each conversation.
"""

import time
from collections.abc import Hashable
from typing import Any


class TTLCache:
    """Process-local mapping whose entries expire ``ttl`` seconds after write."""

    def __init__(self, ttl: float) -> None:
        self.ttl = ttl
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if time.monotonic() - stored_at > self.ttl:
            self._entries.pop(key, None)
            return None
        return value

    def put(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (time.monotonic(), value)

    def clear(self) -> None:
        self._entries.clear()


_registry: list[TTLCache] = []


def register(ttl: float) -> TTLCache:
    """Create a cache that ``clear_all`` knows about."""
    cache = TTLCache(ttl)
    _registry.append(cache)
    return cache


def clear_all() -> None:
    """Clear every registered cache (used by tests between requests)."""
    for cache in _registry:
        cache.clear()

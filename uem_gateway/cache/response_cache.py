"""TTL-bounded memoization of model results, isolated per scope.

Expiry is lazy: an entry older than its TTL is deleted when it is read
and reported as a miss.  Nothing sweeps the map in the background, so
entries that are never read again stay until ``clear()``.
"""

import json
import threading
from collections.abc import Callable
from copy import deepcopy
from dataclasses import dataclass
from hashlib import sha256
from time import monotonic
from typing import Any

from uem_gateway.models.context import ScopeKey

KEY_PREFIX = "ai-cache-"


def canonical_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def fingerprint(scope: ScopeKey, operation: str, body: object, key_length: int = 32) -> str:
    """Build the cache key for one scope/operation/payload combination.

    The digest is truncated to ``key_length`` hex characters.  That keeps
    keys short but it is not a trust boundary.
    """
    material = canonical_json([scope.as_key(), operation, body])
    digest = sha256(material.encode("utf-8")).hexdigest()
    return KEY_PREFIX + digest[: max(key_length, 8)]


@dataclass
class CacheEntry:
    payload: Any
    created_at: float
    ttl_seconds: float


class ResponseCache:
    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() - entry.created_at > entry.ttl_seconds:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return deepcopy(entry.payload)

    def set(self, key: str, value: Any, ttl_minutes: float = 30) -> None:
        entry = CacheEntry(
            payload=deepcopy(value),
            created_at=self._clock(),
            ttl_seconds=ttl_minutes * 60,
        )
        with self._lock:
            self._entries[key] = entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, object]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / lookups, 4) if lookups else None,
            }

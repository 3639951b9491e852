"""Per-scope fixed-window admission control for AI requests.

A scope gets a window of ``window_minutes`` starting with its first
admitted request.  Within the window requests are admitted while the
count is below the limit; a rejected request never touches the counter.
Once ``reset_at`` is reached the next request opens a fresh window.

Two backends share the same contract:

* ``InMemoryRateLimiter`` keeps windows in a dict guarded by a
  ``threading.Lock`` so the check-then-increment is one atomic step.
* ``RedisRateLimiter`` runs the same step as a server-side Lua script for
  deployments with several gateway replicas.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from time import monotonic
from typing import Any, Protocol

from uem_gateway.models.context import ScopeKey

try:  # pragma: no cover - optional dependency at runtime
    import redis  # type: ignore[import-not-found,import-untyped]
except Exception:  # pragma: no cover - optional dependency at runtime
    redis = None

logger = logging.getLogger("uemgw.ratelimit")


class RateLimiterBackendError(Exception):
    """Raised when the rate limit backend is unavailable or misconfigured."""


class RateLimiter(Protocol):
    def admit(self, scope: ScopeKey, limit: int, window_minutes: int) -> bool:
        """Return True and count the request if the scope is under its limit."""

    def window(self, scope: ScopeKey) -> dict[str, object]:
        """Return the current window for this scope."""

    def reset(self, scope: ScopeKey) -> None:
        """Drop the window for this scope."""


@dataclass
class RateWindow:
    count: int
    reset_at: float


class InMemoryRateLimiter:
    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def admit(self, scope: ScopeKey, limit: int, window_minutes: int) -> bool:
        key = scope.as_key()
        with self._lock:
            now = self._clock()
            current = self._windows.get(key)
            if current is None or now >= current.reset_at:
                if limit < 1:
                    return False
                self._windows[key] = RateWindow(count=1, reset_at=now + window_minutes * 60)
                return True
            if current.count >= limit:
                return False
            current.count += 1
            return True

    def window(self, scope: ScopeKey) -> dict[str, object]:
        with self._lock:
            current = self._windows.get(scope.as_key())
            now = self._clock()
            if current is None or now >= current.reset_at:
                return {"scope": scope.as_key(), "count": 0, "reset_in_seconds": 0.0}
            return {
                "scope": scope.as_key(),
                "count": current.count,
                "reset_in_seconds": round(current.reset_at - now, 3),
            }

    def reset(self, scope: ScopeKey) -> None:
        with self._lock:
            self._windows.pop(scope.as_key(), None)


# KEYS[1] = window key, ARGV[1] = limit, ARGV[2] = window in ms
_ADMIT_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    if tonumber(ARGV[1]) < 1 then
        return 0
    end
    redis.call('SET', KEYS[1], 1, 'PX', ARGV[2])
    return 1
end
if tonumber(current) >= tonumber(ARGV[1]) then
    return 0
end
redis.call('INCR', KEYS[1])
return 1
"""


class RedisRateLimiter:
    """Redis-backed limiter; window expiry is delegated to the key TTL."""

    def __init__(self, redis_url: str, key_prefix: str = "uemgw:rate") -> None:
        if redis is None:  # pragma: no cover - runtime dependency gate
            raise RateLimiterBackendError(
                "Redis rate limit backend selected but redis package is not installed"
            )
        self._key_prefix = key_prefix
        try:
            self._client: Any = redis.Redis.from_url(redis_url, decode_responses=True)
            self._client.ping()
        except Exception as exc:  # pragma: no cover - runtime guard
            raise RateLimiterBackendError(
                f"Failed to initialize Redis rate limit backend: {exc}"
            ) from exc

    def _key(self, scope: ScopeKey) -> str:
        return f"{self._key_prefix}:{scope.as_key()}"

    def admit(self, scope: ScopeKey, limit: int, window_minutes: int) -> bool:
        try:
            admitted = self._client.eval(
                _ADMIT_SCRIPT, 1, self._key(scope), limit, window_minutes * 60 * 1000
            )
        except Exception as exc:
            # admission must stay a boolean decision; an unreachable backend denies
            logger.warning(
                "rate_limit_backend_unavailable",
                extra={"error": f"{type(exc).__name__}: {exc}"},
            )
            return False
        return int(admitted) == 1

    def window(self, scope: ScopeKey) -> dict[str, object]:
        key = self._key(scope)
        try:
            raw_count = self._client.get(key)
            ttl_ms = self._client.pttl(key)
        except Exception as exc:
            raise RateLimiterBackendError(f"Redis read failed: {exc}") from exc
        if raw_count is None:
            return {"scope": scope.as_key(), "count": 0, "reset_in_seconds": 0.0}
        return {
            "scope": scope.as_key(),
            "count": int(raw_count),
            "reset_in_seconds": round(max(int(ttl_ms), 0) / 1000, 3),
        }

    def reset(self, scope: ScopeKey) -> None:
        try:
            self._client.delete(self._key(scope))
        except Exception as exc:
            raise RateLimiterBackendError(f"Redis delete failed: {exc}") from exc

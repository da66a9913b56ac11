"""Response cache transports for circuit breakers."""

import threading
import time
from collections.abc import Callable
from typing import Protocol


class CacheTransport(Protocol):
    """Storage used by a breaker to cache successful call results.

    ``get`` returns ``None`` on a miss, so ``None`` results are never cached.
    """

    def get(self, key: str) -> object | None:
        """Return the cached value for ``key`` or ``None``."""

    def set(self, key: str, value: object, ttl: float) -> None:
        """Store ``value``; ``ttl`` is in seconds and ``0`` means no expiry."""

    def flush(self) -> None:
        """Drop every cached value."""


class InMemoryCacheTransport:
    """Process-local cache with optional per-entry expiry."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[object, float | None]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> object | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: object, ttl: float) -> None:
        expires_at = self._clock() + ttl if ttl > 0 else None
        with self._lock:
            self._entries[key] = (value, expires_at)

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()


def default_cache_key(*args: object, **kwargs: object) -> str:
    """Derive a cache key from call arguments."""
    if not kwargs:
        return repr(args)
    return repr((args, sorted(kwargs.items())))

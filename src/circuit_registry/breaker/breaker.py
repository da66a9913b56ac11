"""Core circuit breaker implementation."""

import asyncio
import inspect
import threading
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, fields
from datetime import UTC, datetime
from typing import Any, Generic, ParamSpec, TypeVar, cast

from circuit_registry.breaker.cache import (
    CacheTransport,
    InMemoryCacheTransport,
    default_cache_key,
)
from circuit_registry.breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
    CircuitTimeoutError,
)
from circuit_registry.breaker.metrics import BreakerListener
from circuit_registry.breaker.state import BreakerSnapshot, CircuitState
from circuit_registry.breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

T = TypeVar("T")
P = ParamSpec("P")

ErrorFilter = Callable[[Exception], bool]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _ProbeGate:
    """Allow at most one in-flight half-open probe per breaker instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        name: Breaker name, unique within its group.
        group: Group the breaker belongs to.
        failure_threshold: Consecutive failures while ``CLOSED`` before opening.
        reset_timeout: Seconds to wait while ``OPEN`` before allowing a probe.
        timeout: Seconds a protected call may run, ``None`` disables the limit.
        expected_exceptions: Exceptions that count as failures.
        excluded_exceptions: Exceptions that must not count as failures.
        error_filter: Predicate marking an error as filtered. Filtered errors do
            not count as failures and are re-raised without fallback.
        cache: Cache successful results keyed by ``cache_get_key``.
        cache_ttl: Seconds a cached result stays valid, ``0`` means forever.
        cache_get_key: Builds the cache key from the call arguments.
        cache_transport: Cache backend. Defaults to an in-memory cache.
    """

    name: str = ""
    group: str = ""
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    timeout: float | None = 10.0
    expected_exceptions: tuple[type[Exception], ...] = (Exception,)
    excluded_exceptions: tuple[type[Exception], ...] = ()
    error_filter: ErrorFilter | None = None
    cache: bool = False
    cache_ttl: float = 0.0
    cache_get_key: Callable[..., str] | None = None
    cache_transport: CacheTransport | None = None

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be > 0 when provided")
        if self.cache_ttl < 0:
            raise ValueError("cache_ttl must be >= 0")

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "CircuitBreakerConfig":
        """Build a config from an options mapping, rejecting unknown keys."""
        known = {item.name for item in fields(cls)}
        unknown = sorted(str(key) for key in options if key not in known)
        if unknown:
            raise TypeError(f"unknown circuit breaker options: {', '.join(unknown)}")
        return cls(**dict(options))


class CircuitBreaker(Generic[P, T]):
    """Stateful proxy around one dangerous operation.

    The operation may be sync or async; ``fire`` is always awaited.
    """

    def __init__(
        self,
        func: Callable[P, Awaitable[T] | T],
        *,
        config: CircuitBreakerConfig | None = None,
        storage: AbstractBreakerStorage | None = None,
        listeners: Iterable[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker around ``func``.

        Args:
            func: Operation protected by the breaker.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            storage: State storage backend. Defaults to in-memory storage.
            listeners: Optional listener hooks for breaker events.
        """
        if not callable(func):
            raise TypeError("CircuitBreaker requires a callable operation")
        self._func = func
        self.config = CircuitBreakerConfig() if config is None else config
        self.name = self.config.name or getattr(func, "__name__", "anonymous")
        self.group = self.config.group or self.name
        self._storage = InMemoryBreakerStorage() if storage is None else storage
        self._listeners: list[BreakerListener] = list(listeners or ())
        self._probe_gate = _ProbeGate()
        self._fallback: Callable[..., Any] | None = None
        self._cache: CacheTransport | None = None
        if self.config.cache:
            self._cache = (
                InMemoryCacheTransport()
                if self.config.cache_transport is None
                else self.config.cache_transport
            )

    def __repr__(self) -> str:
        return f"<CircuitBreaker {self.key}>"

    @property
    def key(self) -> str:
        """Storage key, ``group:name``."""
        return f"{self.group}:{self.name}"

    @property
    def fallback_function(self) -> Callable[..., Any] | None:
        return self._fallback

    def fallback(self, func: Callable[..., Any]) -> "CircuitBreaker[P, T]":
        """Attach ``func`` as fallback, replacing any previous one.

        The fallback receives the same arguments as the protected call.
        """
        if not callable(func):
            raise TypeError("fallback must be callable")
        self._fallback = func
        return self

    def add_listener(self, listener: BreakerListener) -> None:
        self._listeners.append(listener)

    def clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.flush()

    async def snapshot(self) -> BreakerSnapshot:
        """Return the stored state of this breaker."""
        return await self._storage.get_state(self.key)

    async def _emit(self, event: str, *args: object) -> None:
        for listener in self._listeners:
            handler = getattr(listener, event, None)
            if handler is None:
                continue
            try:
                await handler(*args)
            except Exception:
                continue

    async def _transition(self, old: CircuitState, new: CircuitState) -> None:
        await self._emit("on_state_change", self.name, old, new)

    @staticmethod
    def _retry_after(snapshot: BreakerSnapshot, now: datetime, timeout: float) -> float:
        opened_at = now if snapshot.opened_at is None else snapshot.opened_at
        elapsed = (now - opened_at).total_seconds()
        return max(timeout - elapsed, 0.0)

    def _is_filtered(self, exc: Exception) -> bool:
        error_filter = self.config.error_filter
        if error_filter is not None and error_filter(exc):
            return True
        return isinstance(exc, self.config.excluded_exceptions)

    def _cache_key(self, *args: object, **kwargs: object) -> str:
        get_key = self.config.cache_get_key or default_cache_key
        return get_key(*args, **kwargs)

    async def _invoke(self, *args: P.args, **kwargs: P.kwargs) -> T:
        result = self._func(*args, **kwargs)
        if not inspect.isawaitable(result):
            return cast(T, result)
        if self.config.timeout is None:
            return await result

        deadline = asyncio.timeout(self.config.timeout)
        try:
            async with deadline:
                return await result
        except TimeoutError as exc:
            if not deadline.expired():
                raise
            raise CircuitTimeoutError(self.name, self.config.timeout) from exc

    async def call_fallback(self, *args: object, **kwargs: object) -> Any:
        """Run the attached fallback and notify listeners.

        Raises:
            CircuitBreakerError: When no fallback is attached.
        """
        if self._fallback is None:
            raise CircuitBreakerError(f"no fallback attached to {self.key}")
        result = self._fallback(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        await self._emit("on_fallback", self.name, result)
        return result

    async def fire(self, *args: P.args, **kwargs: P.kwargs) -> T:
        """Invoke the protected operation under circuit breaker protection.

        Args:
            *args: Positional arguments forwarded to the operation.
            **kwargs: Keyword arguments forwarded to the operation.

        Returns:
            The operation result, a cached result, or the fallback result.

        Raises:
            CircuitOpenError: When the circuit is open, the call is rejected and
                no fallback is attached.
            CircuitTimeoutError: When the call exceeds ``timeout`` and no
                fallback is attached.
            Exception: The original exception from the operation when it is
                filtered, or when it fails and no fallback is attached.
        """
        await self._emit("on_fire", self.name)

        cache_key: str | None = None
        if self._cache is not None:
            cache_key = self._cache_key(*args, **kwargs)
            cached = self._cache.get(cache_key)
            if cached is not None:
                await self._emit("on_cache_hit", self.name, cache_key)
                return cast(T, cached)
            await self._emit("on_cache_miss", self.name, cache_key)

        snapshot = await self._storage.get_state(self.key)
        now = _utcnow()
        is_probe = False

        if snapshot.state == CircuitState.OPEN:
            retry_after = self._retry_after(snapshot, now, self.config.reset_timeout)
            if retry_after > 0 or not self._probe_gate.try_acquire():
                await self._emit("on_call_rejected", self.name)
                if self._fallback is not None:
                    return cast(T, await self.call_fallback(*args, **kwargs))
                raise CircuitOpenError(self.name, retry_after=retry_after)
            is_probe = True

        start = time.monotonic()
        try:
            result = await self._invoke(*args, **kwargs)
        except CircuitTimeoutError as exc:
            elapsed = max(time.monotonic() - start, 0.0)
            await self._emit("on_call_timeout", self.name, elapsed)
            await self._record_failure(exc, elapsed, is_probe)
            if self._fallback is None:
                raise
            return cast(T, await self.call_fallback(*args, **kwargs))
        except Exception as exc:
            if self._is_filtered(exc):
                raise
            if not isinstance(exc, self.config.expected_exceptions):
                raise
            elapsed = max(time.monotonic() - start, 0.0)
            await self._record_failure(exc, elapsed, is_probe)
            if self._fallback is None:
                raise
            return cast(T, await self.call_fallback(*args, **kwargs))
        else:
            elapsed = max(time.monotonic() - start, 0.0)

            if is_probe:
                await self._transition(CircuitState.OPEN, CircuitState.HALF_OPEN)
                await self._storage.reset(self.key)
                await self._transition(CircuitState.HALF_OPEN, CircuitState.CLOSED)
            else:
                await self._storage.record_success(self.key)

            if cache_key is not None and result is not None:
                self._cache.set(cache_key, result, self.config.cache_ttl)

            await self._emit("on_call_succeeded", self.name, elapsed)
            return result
        finally:
            if is_probe:
                self._probe_gate.release()

    async def _record_failure(
        self, exc: Exception, elapsed: float, is_probe: bool
    ) -> None:
        await self._emit("on_call_failed", self.name, exc, elapsed)

        if is_probe:
            await self._transition(CircuitState.OPEN, CircuitState.HALF_OPEN)
            await self._storage.record_failure(self.key)
            await self._storage.force_open(self.key)
            await self._transition(CircuitState.HALF_OPEN, CircuitState.OPEN)
            return

        failure_snapshot = await self._storage.record_failure(self.key)
        if (
            failure_snapshot.state == CircuitState.CLOSED
            and failure_snapshot.failure_count >= self.config.failure_threshold
        ):
            await self._storage.force_open(self.key)
            await self._transition(CircuitState.CLOSED, CircuitState.OPEN)

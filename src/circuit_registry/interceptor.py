"""Per-call control flow of breaker-protected methods.

Each identity moves through ``UNRESOLVED -> CREATING -> READY`` once per
registry lifetime:

1. Call-site options are resolved against the receiver of the call.
2. The identity is ``group:name``; ``group`` falls back to the owner class
   name and ``name`` to the method name.
3. A registered breaker is fired as is. Its options, hooks and fallback were
   frozen when it was created.
4. Otherwise a breaker is built from the default options overlaid with the
   call-site options and registered *before* the setup hooks run, so that a
   concurrent call finds it. That call may fire the breaker while hooks and
   fallback are still being attached.
5. The default setup hook runs, then the call-site hook, then the
   ``fallback_method`` is attached, and the breaker is fired.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from contextvars import ContextVar
from types import MethodType
from typing import Any

from circuit_registry.breaker import (
    AbstractBreakerStorage,
    CircuitBreaker,
    CircuitBreakerConfig,
)
from circuit_registry.breaker.breaker import ErrorFilter
from circuit_registry.errors import DuplicateIdentityError
from circuit_registry.logging import (
    Logger,
    get_logger,
    log_exception,
    log_info,
    log_warning,
)
from circuit_registry.options import UseCircuitBreakerOptions, resolve_circuit_options
from circuit_registry.registry import (
    CircuitBreakerRegistry,
    DefaultConfiguration,
    get_registry,
)

_logger = get_logger(__name__)

# Error most recently reported as filtered in the current task.
_filtered_error: ContextVar[Exception | None] = ContextVar(
    "circuit_registry_filtered_error", default=None
)


def _remember_filtered(
    error_filter: ErrorFilter | None, excluded: tuple[type[Exception], ...]
) -> ErrorFilter:
    """Build an error filter that remembers what it filtered in the current task.

    Errors listed in ``excluded`` are filtered too, so every error the breaker
    treats as filtered can be recognized after ``fire``.
    """

    def _filter(exc: Exception) -> bool:
        filtered = isinstance(exc, excluded) or (
            error_filter is not None and bool(error_filter(exc))
        )
        if filtered:
            _filtered_error.set(exc)
        return filtered

    return _filter


class CircuitBreakerInterceptor:
    """Resolve, create and fire the breaker behind one decorated function."""

    def __init__(
        self,
        func: Callable[..., Any],
        *,
        use_options: UseCircuitBreakerOptions | None = None,
        registry: CircuitBreakerRegistry | None = None,
        storage: AbstractBreakerStorage | None = None,
        logger: Logger | None = None,
    ) -> None:
        """Create an interceptor for ``func``.

        Args:
            func: The original, undecorated function.
            use_options: Call-site configuration.
            registry: Registry to store breakers in. Defaults to the
                process-wide registry, looked up on each call.
            storage: State storage handed to created breakers.
            logger: Structured logger. Defaults to a structlog logger.
        """
        self._func = func
        self._use_options = (
            UseCircuitBreakerOptions() if use_options is None else use_options
        )
        self._registry = registry
        self._storage = storage
        self._logger = _logger if logger is None else logger
        self.owner_name: str | None = None
        self.method_name: str = getattr(func, "__name__", "anonymous")
        # Filtered-error policy per breaker key, fixed when first seen.
        self._fallback_on_filtered: dict[str, bool] = {}

    @property
    def registry(self) -> CircuitBreakerRegistry:
        return get_registry() if self._registry is None else self._registry

    def bind_owner(self, owner_name: str, method_name: str) -> None:
        """Record the class the function was declared on and its attribute name."""
        self.owner_name = owner_name
        self.method_name = method_name

    def identity(self, options: dict[str, Any]) -> tuple[str, str]:
        """Return ``(group, name)`` for resolved call-site ``options``."""
        group = options.get("group") or self.owner_name
        if not group:
            group = uuid.uuid4().hex
            log_warning(
                self._logger,
                "circuit_breaker.group_unresolved",
                method=self.method_name,
                group=group,
            )
        name = options.get("name") or self.method_name
        return group, name

    def _return_fallback_when_filtered(
        self, key: str, defaults: DefaultConfiguration
    ) -> bool:
        value = self._use_options.return_fallback_when_error_is_filtered
        if value is None:
            value = defaults.return_fallback_when_error_is_filtered
        return self._fallback_on_filtered.setdefault(key, value)

    async def invoke(self, receiver: object, *args: Any, **kwargs: Any) -> Any:
        """Run one call of the decorated function through its breaker.

        Args:
            receiver: Object the method was called on, ``None`` for plain
                functions.
            *args: Call arguments, without the receiver.
            **kwargs: Call keyword arguments.
        """
        options = resolve_circuit_options(receiver, self._use_options)
        group, name = self.identity(options)
        key = f"{group}:{name}"
        registry = self.registry
        defaults = registry.default_configuration()
        return_fallback = self._return_fallback_when_filtered(key, defaults)

        breaker = registry.get(key)
        if breaker is not None:
            return await self._fire(breaker, return_fallback, args, kwargs)

        merged: dict[str, Any] = {**defaults.options, **options}
        merged["group"] = merged.get("group") or group
        merged["name"] = merged.get("name") or name
        error_filter = merged.get("error_filter")
        excluded = tuple(merged.get("excluded_exceptions") or ())
        if error_filter is not None or excluded:
            merged["error_filter"] = _remember_filtered(error_filter, excluded)

        target = self._func if receiver is None else MethodType(self._func, receiver)
        breaker = CircuitBreaker(
            target,
            config=CircuitBreakerConfig.from_options(merged),
            storage=self._storage,
        )

        try:
            registry.register(key, breaker)
        except DuplicateIdentityError:
            winner = registry.get(key)
            if winner is None:
                raise
            log_info(self._logger, "circuit_breaker.registration_race_lost", key=key)
            return await self._fire(winner, return_fallback, args, kwargs)

        log_info(self._logger, "circuit_breaker.created", key=key)

        try:
            if defaults.setup is not None:
                await defaults.setup(breaker)
            if self._use_options.setup is not None:
                await self._use_options.setup(receiver, breaker)
        except Exception:
            log_exception(self._logger, "circuit_breaker.setup_failed", key=key)
            raise

        fallback_method = self._use_options.fallback_method
        if fallback_method and receiver is not None:
            fallback = getattr(receiver, fallback_method, None)
            if callable(fallback):
                breaker.fallback(fallback)

        return await self._fire(breaker, return_fallback, args, kwargs)

    async def _fire(
        self,
        breaker: CircuitBreaker[Any, Any],
        return_fallback_when_filtered: bool,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        token = _filtered_error.set(None)
        try:
            return await breaker.fire(*args, **kwargs)
        except Exception as exc:
            if (
                not return_fallback_when_filtered
                or breaker.fallback_function is None
                or _filtered_error.get() is not exc
            ):
                raise
            log_info(
                self._logger,
                "circuit_breaker.filtered_error_fallback",
                key=breaker.key,
                error=exc.__class__.__name__,
            )
            return await breaker.call_fallback(*args, **kwargs)
        finally:
            _filtered_error.reset(token)

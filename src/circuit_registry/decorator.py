from __future__ import annotations

import functools
from collections.abc import Callable, Mapping
from types import MethodType
from typing import Any

from circuit_registry.breaker import AbstractBreakerStorage
from circuit_registry.errors import NotAFunctionError
from circuit_registry.interceptor import CircuitBreakerInterceptor
from circuit_registry.logging import Logger
from circuit_registry.options import (
    CallSiteSetup,
    OptionsFactory,
    UseCircuitBreakerOptions,
)
from circuit_registry.registry import CircuitBreakerRegistry


class CircuitBreakerMethod:
    """Descriptor running a function through its lazily created breaker.

    Calling it always returns a coroutine. As a class attribute it binds the
    receiver like a method and uses the owner class name as breaker group.
    """

    def __init__(
        self, func: Callable[..., Any], interceptor: CircuitBreakerInterceptor
    ) -> None:
        functools.update_wrapper(self, func)
        self.interceptor = interceptor

    def __set_name__(self, owner: type, name: str) -> None:
        self.interceptor.bind_owner(owner.__name__, name)

    def __get__(self, instance: object, owner: type | None = None) -> Any:
        if instance is None:
            return self
        return MethodType(self, instance)

    async def __call__(self, *args: Any, **kwargs: Any) -> Any:
        if self.interceptor.owner_name is None:
            return await self.interceptor.invoke(None, *args, **kwargs)
        if not args:
            raise TypeError(
                f"{self.interceptor.owner_name}.{self.interceptor.method_name}() "
                "missing 1 required positional argument: 'self'"
            )
        receiver, *rest = args
        return await self.interceptor.invoke(receiver, *rest, **kwargs)


def use_circuit_breaker(
    options: UseCircuitBreakerOptions
    | Mapping[str, Any]
    | OptionsFactory
    | None = None,
    *,
    fallback_method: str | None = None,
    setup: CallSiteSetup | None = None,
    return_fallback_when_error_is_filtered: bool | None = None,
    registry: CircuitBreakerRegistry | None = None,
    storage: AbstractBreakerStorage | None = None,
    logger: Logger | None = None,
) -> Callable[[Callable[..., Any]], CircuitBreakerMethod]:
    """Wrap the decorated function in a circuit breaker created on first call.

    Args:
        options: Either a complete ``UseCircuitBreakerOptions`` or the breaker
            options (a mapping, or a function of the receiver returning one).
        fallback_method: Receiver method attached as fallback.
        setup: Coroutine function called as ``setup(receiver, breaker)`` when
            the breaker is created.
        return_fallback_when_error_is_filtered: Resolve errors matched by
            ``error_filter`` through the fallback.
        registry: Registry holding the breakers. Defaults to the process-wide
            registry.
        storage: State storage for created breakers.
        logger: Structured logger for lifecycle events.

    Raises:
        NotAFunctionError: When the decorated object is not callable.
        TypeError: When ``UseCircuitBreakerOptions`` is combined with keyword
            call-site options.
    """
    if isinstance(options, UseCircuitBreakerOptions):
        if (
            fallback_method is not None
            or setup is not None
            or return_fallback_when_error_is_filtered is not None
        ):
            raise TypeError(
                "pass call-site options either as UseCircuitBreakerOptions "
                "or as keyword arguments, not both"
            )
        use_options = options
    else:
        use_options = UseCircuitBreakerOptions(
            options=options,
            fallback_method=fallback_method,
            return_fallback_when_error_is_filtered=(
                return_fallback_when_error_is_filtered
            ),
            setup=setup,
        )

    def decorator(func: Callable[..., Any]) -> CircuitBreakerMethod:
        if not callable(func):
            raise NotAFunctionError(getattr(func, "__name__", repr(func)))
        interceptor = CircuitBreakerInterceptor(
            func,
            use_options=use_options,
            registry=registry,
            storage=storage,
            logger=logger,
        )
        return CircuitBreakerMethod(func, interceptor)

    return decorator

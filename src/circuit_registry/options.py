from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from circuit_registry.breaker import CircuitBreaker

OptionsFactory = Callable[[Any], Mapping[str, Any]]
CallSiteSetup = Callable[[Any, CircuitBreaker[Any, Any]], Awaitable[None]]


@dataclass(frozen=True)
class UseCircuitBreakerOptions:
    """Per-call-site breaker configuration.

    Attributes:
        options: Breaker options, either a mapping or a function called with
            the receiver of the decorated method that returns one.
        fallback_method: Name of a receiver method attached as fallback when
            the breaker is created.
        return_fallback_when_error_is_filtered: Resolve filtered errors through
            the fallback. ``None`` defers to the process default.
        setup: Coroutine function called once, as ``setup(receiver, breaker)``,
            when the breaker is created.
    """

    options: Mapping[str, Any] | OptionsFactory | None = None
    fallback_method: str | None = None
    return_fallback_when_error_is_filtered: bool | None = None
    setup: CallSiteSetup | None = None


def resolve_circuit_options(
    receiver: object,
    use_options: UseCircuitBreakerOptions | None,
) -> dict[str, Any]:
    """Return a fresh copy of the call-site options seen from ``receiver``."""
    if use_options is None or use_options.options is None:
        return {}
    options = use_options.options
    if callable(options):
        return dict(options(receiver))
    return dict(options)

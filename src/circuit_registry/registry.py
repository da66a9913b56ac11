from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any

from circuit_registry.breaker import CircuitBreaker
from circuit_registry.errors import (
    DuplicateIdentityError,
    InvalidBreakerError,
    InvalidIdentityError,
)

DefaultSetup = Callable[[CircuitBreaker[Any, Any]], Awaitable[None]]

_IDENTITY_OPTIONS = frozenset({"group", "name"})


@dataclass(frozen=True)
class DefaultConfiguration:
    """Process-wide defaults applied when a breaker is created.

    Attributes:
        options: Breaker options merged under every call-site's options.
        setup: Coroutine function called as ``setup(breaker)`` for every new
            breaker, before the call-site setup hook.
        return_fallback_when_error_is_filtered: Default filtered-error policy.
    """

    options: Mapping[str, Any] = field(default_factory=dict)
    setup: DefaultSetup | None = None
    return_fallback_when_error_is_filtered: bool = False

    def __post_init__(self) -> None:
        """Freeze default options so readers never see partial writes."""
        identity_keys = sorted(_IDENTITY_OPTIONS.intersection(self.options))
        if identity_keys:
            raise ValueError(
                "default options must not set breaker identity: "
                + ", ".join(identity_keys)
            )
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))


@dataclass(frozen=True)
class RegisteredBreaker:
    """One registry entry."""

    key: str
    breaker: CircuitBreaker[Any, Any]


class CircuitBreakerRegistry:
    """Keyed store of breakers with at most one breaker per key.

    Registration never overwrites: the first breaker registered under a key
    stays for the lifetime of the registry.
    """

    def __init__(self, defaults: DefaultConfiguration | None = None) -> None:
        self._breakers: dict[str, CircuitBreaker[Any, Any]] = {}
        self._lock = threading.Lock()
        self._defaults = DefaultConfiguration() if defaults is None else defaults

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._breakers

    def register(self, key: str, breaker: CircuitBreaker[Any, Any]) -> None:
        """Register ``breaker`` under ``key``.

        Raises:
            InvalidIdentityError: When ``key`` is missing, blank or not a string.
            InvalidBreakerError: When ``breaker`` is not a ``CircuitBreaker``.
            DuplicateIdentityError: When ``key`` is already registered.
        """
        if not isinstance(key, str) or not key.strip():
            raise InvalidIdentityError()
        if not isinstance(breaker, CircuitBreaker):
            raise InvalidBreakerError(breaker)
        with self._lock:
            if key in self._breakers:
                raise DuplicateIdentityError(key)
            self._breakers[key] = breaker

    def get(self, key: str) -> CircuitBreaker[Any, Any] | None:
        with self._lock:
            return self._breakers.get(key)

    def all_breakers(self) -> list[RegisteredBreaker]:
        """Return a snapshot of every registered breaker."""
        with self._lock:
            items = list(self._breakers.items())
        return [RegisteredBreaker(key=key, breaker=breaker) for key, breaker in items]

    def set_default_configuration(self, config: DefaultConfiguration) -> None:
        """Replace the default configuration wholesale.

        Only breakers created afterwards see the new defaults.
        """
        self._defaults = config

    def default_configuration(self) -> DefaultConfiguration:
        """Return a copy of the current default configuration."""
        return replace(self._defaults)


_registry: CircuitBreakerRegistry | None = None
_registry_lock = threading.Lock()


def get_registry() -> CircuitBreakerRegistry:
    """Return the process-wide registry, creating it on first access."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = CircuitBreakerRegistry()
    return _registry


def set_default_configuration(
    *,
    options: Mapping[str, Any] | None = None,
    setup: DefaultSetup | None = None,
    return_fallback_when_error_is_filtered: bool = False,
) -> None:
    """Replace the defaults of the process-wide registry.

    Call before the first invocation of any decorated method; breakers that
    already exist keep the configuration they were created with.
    """
    get_registry().set_default_configuration(
        DefaultConfiguration(
            options={} if options is None else options,
            setup=setup,
            return_fallback_when_error_is_filtered=(
                return_fallback_when_error_is_filtered
            ),
        )
    )


def list_all_breakers() -> list[RegisteredBreaker]:
    """Return every breaker registered in the process-wide registry."""
    return get_registry().all_breakers()

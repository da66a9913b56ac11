"""Framework-agnostic async circuit breaker engine.

This package implements the circuit breaker pattern from *Release It!* and is
the engine the call-site facade wraps.

Key behavior notes:
  - Storage persists only ``CLOSED`` and ``OPEN``. ``HALF_OPEN`` is an ephemeral,
    per-instance probe mode and is emitted to listeners for observability only.
  - Half-open probing is conservative: at most one in-flight probe call is
    permitted per ``CircuitBreaker`` instance.
  - Errors matched by ``excluded_exceptions`` or ``error_filter`` are filtered:
    they never count as failures, never reach the fallback and are re-raised.
    A filtered error during a probe leaves the circuit ``OPEN``.
  - Failures, timeouts and open-circuit rejections resolve through the
    fallback when one is attached.
"""

from circuit_registry.breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from circuit_registry.breaker.cache import CacheTransport, InMemoryCacheTransport
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

__all__ = [
    "AbstractBreakerStorage",
    "BreakerListener",
    "BreakerSnapshot",
    "CacheTransport",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "CircuitTimeoutError",
    "InMemoryBreakerStorage",
    "InMemoryCacheTransport",
]

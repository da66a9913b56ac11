"""Call-site circuit breakers created lazily and shared by identity.

Decorate a method with ``use_circuit_breaker(...)`` and the first call creates
a breaker keyed by ``group:name`` (owner class name and method name unless the
options say otherwise); later calls reuse it.
"""

from circuit_registry.breaker import (
    BreakerListener,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitOpenError,
    CircuitState,
    CircuitTimeoutError,
)
from circuit_registry.decorator import CircuitBreakerMethod, use_circuit_breaker
from circuit_registry.errors import (
    ConfigurationError,
    DuplicateIdentityError,
    InvalidBreakerError,
    InvalidIdentityError,
    NotAFunctionError,
)
from circuit_registry.interceptor import CircuitBreakerInterceptor
from circuit_registry.options import UseCircuitBreakerOptions, resolve_circuit_options
from circuit_registry.registry import (
    CircuitBreakerRegistry,
    DefaultConfiguration,
    RegisteredBreaker,
    get_registry,
    list_all_breakers,
    set_default_configuration,
)

__all__ = [
    "BreakerListener",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitBreakerInterceptor",
    "CircuitBreakerMethod",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "CircuitTimeoutError",
    "ConfigurationError",
    "DefaultConfiguration",
    "DuplicateIdentityError",
    "InvalidBreakerError",
    "InvalidIdentityError",
    "NotAFunctionError",
    "RegisteredBreaker",
    "UseCircuitBreakerOptions",
    "get_registry",
    "list_all_breakers",
    "resolve_circuit_options",
    "set_default_configuration",
    "use_circuit_breaker",
]

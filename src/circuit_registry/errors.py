"""Configuration error types for the circuit breaker facade.

These are programmer errors. They are raised at decoration time or on the
first invocation, never retried and never routed through a fallback.
"""


class ConfigurationError(Exception):
    """Base class for circuit breaker configuration errors."""


class NotAFunctionError(ConfigurationError, TypeError):
    """Raised when ``use_circuit_breaker`` decorates something not callable."""

    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(
            "use_circuit_breaker can only decorate functions, "
            f"but {target} is not a function."
        )


class InvalidIdentityError(ConfigurationError, ValueError):
    """Raised when a breaker key is missing, blank or not a string."""

    def __init__(self) -> None:
        super().__init__(
            "Invalid circuit name. A circuit's name must be a non-blank string."
        )


class InvalidBreakerError(ConfigurationError, TypeError):
    """Raised when registering something that is not a ``CircuitBreaker``."""

    def __init__(self, breaker: object) -> None:
        super().__init__(
            "Invalid circuit. A circuit must be a CircuitBreaker instance, "
            f"got {type(breaker).__name__}."
        )


class DuplicateIdentityError(ConfigurationError, ValueError):
    """Raised when a breaker key is already registered.

    Attributes:
        key: The already registered ``group:name`` key.
    """

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(
            f"Invalid circuit name. A circuit with a name {key} is already registered"
        )

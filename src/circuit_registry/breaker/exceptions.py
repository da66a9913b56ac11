"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the circuit is open.
  - A call being abandoned because it exceeded the configured timeout.
"""


class CircuitBreakerError(Exception):
    """Base exception for the breaker engine."""


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected because the circuit is open.

    Attributes:
        breaker_name: Name of the breaker rejecting the call.
        retry_after: Seconds until a half-open probe may be attempted.
    """

    def __init__(self, breaker_name: str, retry_after: float) -> None:
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        super().__init__(f"circuit_open: {breaker_name} retry_after={retry_after:g}s")


class CircuitTimeoutError(CircuitBreakerError, TimeoutError):
    """Raised when a protected call runs longer than the breaker timeout.

    Attributes:
        breaker_name: Name of the breaker that abandoned the call.
        timeout: Configured timeout in seconds.
    """

    def __init__(self, breaker_name: str, timeout: float) -> None:
        self.breaker_name = breaker_name
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:g}s: {breaker_name}")

"""Observability hooks for circuit breakers."""

from typing import Protocol

from circuit_registry.breaker.state import CircuitState


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Listeners may subclass this protocol explicitly and override only the
    events they care about; the inherited methods are no-ops.

    Notes:
        ``on_state_change(OPEN → HALF_OPEN)`` is emitted per probe attempt per
        breaker instance. Storage does not persist ``HALF_OPEN``.
    """

    async def on_fire(self, name: str) -> None:
        """Handle a protected call being requested."""

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Handle failed protected call completion."""

    async def on_call_timeout(self, name: str, elapsed: float) -> None:
        """Handle a protected call exceeding the breaker timeout."""

    async def on_fallback(self, name: str, result: object) -> None:
        """Handle a fallback producing the call result."""

    async def on_cache_hit(self, name: str, key: str) -> None:
        """Handle a call answered from the response cache."""

    async def on_cache_miss(self, name: str, key: str) -> None:
        """Handle a cacheable call not found in the response cache."""

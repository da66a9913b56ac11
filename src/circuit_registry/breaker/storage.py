"""State storage for circuit breakers.

Storage is decoupled from breaker logic. Custom backends (for example Redis)
can implement the interface to share breaker state across processes.

Important: storage persists only ``CLOSED`` and ``OPEN``. ``HALF_OPEN`` is an
ephemeral, per-instance probe mode and should not be persisted by backends.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import UTC, datetime

from circuit_registry.breaker.state import BreakerSnapshot, CircuitState


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _closed_snapshot(name: str) -> BreakerSnapshot:
    return BreakerSnapshot(
        name=name,
        state=CircuitState.CLOSED,
        failure_count=0,
        last_failure_at=None,
        opened_at=None,
    )


class AbstractBreakerStorage(ABC):
    """Abstract breaker storage interface."""

    @abstractmethod
    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current breaker snapshot for ``name``."""

    @abstractmethod
    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call and return the updated snapshot."""

    @abstractmethod
    async def record_failure(self, name: str) -> BreakerSnapshot:
        """Record a failed call and return the updated snapshot."""

    @abstractmethod
    async def force_open(self, name: str) -> BreakerSnapshot:
        """Force breaker ``name`` into ``OPEN`` state."""

    @abstractmethod
    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker ``name`` to a healthy ``CLOSED`` state."""


class InMemoryBreakerStorage(AbstractBreakerStorage):
    """In-memory storage shared by breakers of one process.

    Every operation is a short critical section with no suspension point, so a
    single thread lock keeps it consistent for coroutines and for breakers
    fired from event loops running in other threads.
    """

    def __init__(self) -> None:
        self._snapshots: dict[str, BreakerSnapshot] = {}
        self._lock = threading.Lock()

    def snapshots(self) -> list[BreakerSnapshot]:
        """Return a copy of every stored snapshot."""
        with self._lock:
            return list(self._snapshots.values())

    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current snapshot, creating a default one if missing."""
        with self._lock:
            return self._snapshots.setdefault(name, _closed_snapshot(name))

    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call.

        A healthy snapshot is returned untouched to avoid hot-path writes.
        """
        with self._lock:
            snapshot = self._snapshots.get(name)
            if snapshot is not None and snapshot == _closed_snapshot(name):
                return snapshot
            updated = _closed_snapshot(name)
            self._snapshots[name] = updated
            return updated

    async def record_failure(self, name: str) -> BreakerSnapshot:
        """Increment failure counters and return the updated snapshot."""
        with self._lock:
            snapshot = self._snapshots.get(name, _closed_snapshot(name))
            updated = replace(
                snapshot,
                failure_count=snapshot.failure_count + 1,
                last_failure_at=_utcnow(),
            )
            self._snapshots[name] = updated
            return updated

    async def force_open(self, name: str) -> BreakerSnapshot:
        """Force the circuit open and restart the reset timeout window."""
        with self._lock:
            snapshot = self._snapshots.get(name, _closed_snapshot(name))
            updated = replace(snapshot, state=CircuitState.OPEN, opened_at=_utcnow())
            self._snapshots[name] = updated
            return updated

    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker state and counters to a healthy default snapshot."""
        with self._lock:
            updated = _closed_snapshot(name)
            self._snapshots[name] = updated
            return updated

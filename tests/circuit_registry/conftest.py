from __future__ import annotations

import pytest

from circuit_registry import CircuitBreakerRegistry
from tests.circuit_registry.support.fakes import FakeLogger, RecordingListener


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def registry() -> CircuitBreakerRegistry:
    """Provide an isolated breaker registry per test."""
    return CircuitBreakerRegistry()


@pytest.fixture
def listener() -> RecordingListener:
    """Provide a fresh recording breaker listener per test."""
    return RecordingListener()

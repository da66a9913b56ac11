import asyncio

import pytest

import circuit_registry.breaker.breaker as breaker_mod
import circuit_registry.breaker.storage as storage_mod
from circuit_registry.breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitOpenError,
    CircuitState,
    CircuitTimeoutError,
    InMemoryBreakerStorage,
    InMemoryCacheTransport,
)
from tests.circuit_registry.support.fakes import FakeClock, RecordingListener

pytestmark = pytest.mark.asyncio


class _ExplodingListener:
    async def on_state_change(self, name: str, old: CircuitState, new: CircuitState):
        raise RuntimeError("boom")

    async def on_call_rejected(self, name: str):
        raise RuntimeError("boom")

    async def on_call_succeeded(self, name: str, elapsed: float):
        raise RuntimeError("boom")

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float):
        raise RuntimeError("boom")


async def _ok() -> str:
    return "ok"


async def _fail() -> None:
    raise RuntimeError("nope")


def _config(**overrides: object) -> CircuitBreakerConfig:
    values: dict[str, object] = {
        "name": "svc",
        "group": "tests",
        "failure_threshold": 1,
        "reset_timeout": 10.0,
    }
    values.update(overrides)
    return CircuitBreakerConfig.from_options(values)


async def test_closed_call_succeeds_and_stays_closed() -> None:
    breaker = CircuitBreaker(_ok, config=_config())

    assert await breaker.fire() == "ok"
    snapshot = await breaker.snapshot()
    assert snapshot.name == "tests:svc"
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0


async def test_fire_forwards_arguments_and_supports_sync_callables() -> None:
    def _add(left: int, right: int, *, scale: int = 1) -> int:
        return (left + right) * scale

    breaker = CircuitBreaker(_add, config=_config())

    assert await breaker.fire(1, 2, scale=10) == 30


async def test_name_and_group_default_to_function_name() -> None:
    breaker = CircuitBreaker(_ok)

    assert breaker.name == "_ok"
    assert breaker.group == "_ok"
    assert breaker.key == "_ok:_ok"


async def test_failure_threshold_opens_and_rejects_calls() -> None:
    breaker = CircuitBreaker(_fail, config=_config())

    with pytest.raises(RuntimeError):
        await breaker.fire()

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.fire()

    assert 0.0 < excinfo.value.retry_after <= 10.0
    snapshot = await breaker.snapshot()
    assert snapshot.is_open


async def test_half_open_allows_single_probe_and_rejects_concurrent() -> None:
    outcome = {"fail": True}
    started = asyncio.Event()
    release = asyncio.Event()

    async def _operation() -> str:
        if outcome["fail"]:
            raise RuntimeError("nope")
        started.set()
        await release.wait()
        return "ok"

    breaker = CircuitBreaker(_operation, config=_config(reset_timeout=0.0))

    with pytest.raises(RuntimeError):
        await breaker.fire()

    outcome["fail"] = False
    task = asyncio.create_task(breaker.fire())
    await started.wait()

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.fire()
    assert excinfo.value.retry_after == 0.0

    release.set()
    assert await task == "ok"
    snapshot = await breaker.snapshot()
    assert snapshot.state == CircuitState.CLOSED


async def test_probe_failure_reopens_and_restarts_timeout(monkeypatch) -> None:
    clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_utcnow", clock.now)
    monkeypatch.setattr(storage_mod, "_utcnow", clock.now)

    breaker = CircuitBreaker(_fail, config=_config(reset_timeout=5.0))

    with pytest.raises(RuntimeError):
        await breaker.fire()

    clock.advance(5.0)
    with pytest.raises(RuntimeError):
        await breaker.fire()

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.fire()
    assert excinfo.value.retry_after > 0.0


async def test_excluded_exception_during_probe_is_neutral(monkeypatch) -> None:
    class _Excluded(Exception):
        pass

    clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_utcnow", clock.now)
    monkeypatch.setattr(storage_mod, "_utcnow", clock.now)

    behaviour = {"raise": RuntimeError("nope")}

    async def _operation() -> str:
        error = behaviour["raise"]
        if error is not None:
            raise error
        return "ok"

    listener = RecordingListener()
    breaker = CircuitBreaker(
        _operation,
        config=_config(reset_timeout=5.0, excluded_exceptions=(_Excluded,)),
        listeners=[listener],
    )

    with pytest.raises(RuntimeError):
        await breaker.fire()

    listener.events.clear()
    clock.advance(5.0)
    behaviour["raise"] = _Excluded("ignored")

    with pytest.raises(_Excluded):
        await breaker.fire()

    snapshot = await breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN
    assert listener.names() == ["fire"]

    behaviour["raise"] = None
    assert await breaker.fire() == "ok"
    snapshot = await breaker.snapshot()
    assert snapshot.state == CircuitState.CLOSED


async def test_error_filter_does_not_count_and_skips_fallback() -> None:
    async def _not_found() -> None:
        raise LookupError("Not Found")

    breaker = CircuitBreaker(
        _not_found,
        config=_config(error_filter=lambda exc: isinstance(exc, LookupError)),
    )
    breaker.fallback(lambda: "fallback-value")

    for _ in range(3):
        with pytest.raises(LookupError):
            await breaker.fire()

    snapshot = await breaker.snapshot()
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0


async def test_failure_resolves_through_fallback_with_call_arguments(
    listener: RecordingListener,
) -> None:
    async def _lookup(user_id: int) -> str:
        raise RuntimeError("Service Unavailable")

    breaker = CircuitBreaker(
        _lookup, config=_config(failure_threshold=5), listeners=[listener]
    )
    breaker.fallback(lambda user_id: f"cached-{user_id}")

    assert await breaker.fire(7) == "cached-7"
    assert ("fallback", ("svc", "cached-7")) in listener.events
    assert ("failed", ("svc", "RuntimeError")) in listener.events


async def test_open_circuit_rejection_resolves_through_async_fallback() -> None:
    breaker = CircuitBreaker(_fail, config=_config())

    async def _fallback() -> str:
        return "degraded"

    with pytest.raises(RuntimeError):
        await breaker.fire()

    breaker.fallback(_fallback)

    assert await breaker.fire() == "degraded"


async def test_fallback_error_propagates() -> None:
    breaker = CircuitBreaker(_fail, config=_config(failure_threshold=5))

    def _broken_fallback() -> str:
        raise ValueError("fallback broke")

    breaker.fallback(_broken_fallback)

    with pytest.raises(ValueError, match="fallback broke"):
        await breaker.fire()


async def test_call_fallback_without_fallback_raises() -> None:
    breaker = CircuitBreaker(_ok, config=_config())

    with pytest.raises(CircuitBreakerError, match="no fallback"):
        await breaker.call_fallback()


async def test_timeout_counts_as_failure_and_notifies(
    listener: RecordingListener,
) -> None:
    async def _slow() -> str:
        await asyncio.sleep(1.0)
        return "late"

    breaker = CircuitBreaker(
        _slow, config=_config(timeout=0.01), listeners=[listener]
    )

    with pytest.raises(CircuitTimeoutError, match="Timed out after"):
        await breaker.fire()

    assert ("timeout", "svc") in listener.events
    snapshot = await breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN


async def test_timeout_error_raised_by_operation_is_not_a_breaker_timeout() -> None:
    async def _raises_timeout() -> None:
        raise TimeoutError("upstream")

    breaker = CircuitBreaker(_raises_timeout, config=_config(failure_threshold=5))

    with pytest.raises(TimeoutError) as excinfo:
        await breaker.fire()

    assert not isinstance(excinfo.value, CircuitTimeoutError)


async def test_cache_returns_stored_result_and_notifies(
    listener: RecordingListener,
) -> None:
    calls: list[int] = []
    transport = InMemoryCacheTransport()

    async def _user(user_id: int) -> dict[str, object]:
        calls.append(user_id)
        return {"id": user_id, "name": f"User {user_id}"}

    breaker = CircuitBreaker(
        _user,
        config=_config(
            cache=True,
            cache_transport=transport,
            cache_get_key=lambda user_id: f"service:{user_id}",
        ),
        listeners=[listener],
    )

    await breaker.fire(1)
    await breaker.fire(1)
    await breaker.fire(2)

    assert calls == [1, 2]
    assert len(transport) == 2
    assert transport.get("service:1") == {"id": 1, "name": "User 1"}
    assert ("cache_hit", "service:1") in listener.events
    assert ("cache_miss", "service:2") in listener.events

    breaker.clear_cache()
    assert len(transport) == 0


async def test_listener_exceptions_are_swallowed() -> None:
    recording = RecordingListener()
    breaker = CircuitBreaker(
        _fail,
        config=_config(),
        listeners=[_ExplodingListener(), recording],
    )

    with pytest.raises(RuntimeError):
        await breaker.fire()

    with pytest.raises(CircuitOpenError):
        await breaker.fire()

    assert ("failed", ("svc", "RuntimeError")) in recording.events
    assert (
        "state",
        ("svc", CircuitState.CLOSED, CircuitState.OPEN),
    ) in recording.events
    assert ("rejected", "svc") in recording.events


async def test_add_listener_after_construction() -> None:
    breaker = CircuitBreaker(_ok, config=_config())
    recording = RecordingListener()
    breaker.add_listener(recording)

    await breaker.fire()

    assert recording.names() == ["fire", "succeeded"]


async def test_config_rejects_invalid_values() -> None:
    with pytest.raises(ValueError, match="failure_threshold"):
        CircuitBreakerConfig(failure_threshold=0)
    with pytest.raises(ValueError, match="reset_timeout"):
        CircuitBreakerConfig(reset_timeout=-1.0)
    with pytest.raises(ValueError, match="timeout"):
        CircuitBreakerConfig(timeout=0)
    with pytest.raises(ValueError, match="cache_ttl"):
        CircuitBreakerConfig(cache_ttl=-1)


async def test_config_from_options_rejects_unknown_keys() -> None:
    with pytest.raises(TypeError, match="allow_warm_up"):
        CircuitBreakerConfig.from_options({"timeout": 1.0, "allow_warm_up": True})


async def test_breakers_sharing_storage_are_isolated_by_key() -> None:
    storage = InMemoryBreakerStorage()
    failing = CircuitBreaker(_fail, config=_config(group="a"), storage=storage)
    healthy = CircuitBreaker(_ok, config=_config(group="b"), storage=storage)

    with pytest.raises(RuntimeError):
        await failing.fire()

    assert await healthy.fire() == "ok"
    states = {snapshot.name: snapshot.state for snapshot in storage.snapshots()}
    assert states == {"a:svc": CircuitState.OPEN, "b:svc": CircuitState.CLOSED}


async def test_fallback_rejects_non_callable() -> None:
    breaker = CircuitBreaker(_ok, config=_config())

    with pytest.raises(TypeError):
        breaker.fallback("not-callable")  # type: ignore[arg-type]


async def test_fire_leaves_caller_task_name_unchanged() -> None:
    breaker = CircuitBreaker(_ok, config=_config())
    task = asyncio.current_task()
    assert task is not None
    task.set_name("caller-task")

    assert await breaker.fire() == "ok"

    assert task.get_name() == "caller-task"

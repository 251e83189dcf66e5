import asyncio

import pytest

from flowrouter.exceptions import CircuitBreakerOpenError, ValidationError
from flowrouter.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    is_connection_failure,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class Dependency:
    def __init__(self):
        self.calls = 0
        self.failing = True

    async def __call__(self):
        self.calls += 1
        if self.failing:
            raise ConnectionError("ECONNREFUSED 127.0.0.1:5432")
        return "ok"


def make_breaker(clock, **overrides):
    config = CircuitBreakerConfig(failure_threshold=3, reset_timeout=30.0, success_threshold=2, **overrides)
    return CircuitBreaker("postgres", config, clock=clock)


async def _fail_times(breaker, dependency, times):
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.call(dependency)


class TestIsConnectionFailure:
    def test_transport_errors_count(self):
        assert is_connection_failure(ConnectionError("boom"))
        assert is_connection_failure(asyncio.TimeoutError())
        assert is_connection_failure(RuntimeError("connect ECONNREFUSED 10.0.0.1:6379"))

    def test_caller_errors_do_not_count(self):
        assert not is_connection_failure(ValidationError("bad input"))
        assert not is_connection_failure(KeyError("missing"))

    def test_open_breaker_rejection_does_not_count(self):
        assert not is_connection_failure(CircuitBreakerOpenError("redis"))

    def test_driver_errors_by_name(self):
        OperationalError = type("OperationalError", (Exception,), {})
        assert is_connection_failure(OperationalError("server closed the connection"))


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        dependency = Dependency()

        async def scenario():
            await _fail_times(breaker, dependency, 3)

        asyncio.run(scenario())
        assert breaker.state == CircuitState.OPEN
        assert dependency.calls == 3

    def test_fails_fast_while_open(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        dependency = Dependency()

        async def scenario():
            await _fail_times(breaker, dependency, 3)
            clock.now += 10
            for _ in range(5):
                with pytest.raises(CircuitBreakerOpenError):
                    await breaker.call(dependency)

        asyncio.run(scenario())
        assert dependency.calls == 3
        assert breaker.stats()["rejected"] == 5

    def test_non_connection_errors_do_not_open(self):
        clock = FakeClock()
        breaker = make_breaker(clock)

        async def bad_query():
            raise ValueError("syntax error at or near SELEC")

        async def scenario():
            for _ in range(10):
                with pytest.raises(ValueError):
                    await breaker.call(bad_query)

        asyncio.run(scenario())
        assert breaker.state == CircuitState.CLOSED

    def test_success_resets_failure_count(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        dependency = Dependency()

        async def scenario():
            await _fail_times(breaker, dependency, 2)
            dependency.failing = False
            await breaker.call(dependency)
            dependency.failing = True
            await _fail_times(breaker, dependency, 2)

        asyncio.run(scenario())
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_trial_then_close(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        dependency = Dependency()

        async def scenario():
            await _fail_times(breaker, dependency, 3)
            clock.now += 31
            dependency.failing = False
            assert await breaker.call(dependency) == "ok"
            assert breaker.state == CircuitState.HALF_OPEN
            assert await breaker.call(dependency) == "ok"

        asyncio.run(scenario())
        assert breaker.state == CircuitState.CLOSED
        assert dependency.calls == 5

    def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        dependency = Dependency()

        async def scenario():
            await _fail_times(breaker, dependency, 3)
            clock.now += 31
            await _fail_times(breaker, dependency, 1)
            with pytest.raises(CircuitBreakerOpenError):
                await breaker.call(dependency)

        asyncio.run(scenario())
        assert breaker.state == CircuitState.OPEN
        assert dependency.calls == 4

    def test_half_open_allows_single_trial_in_flight(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        dependency = Dependency()
        release = None

        async def slow_call():
            await release.wait()
            return "ok"

        async def scenario():
            nonlocal release
            release = asyncio.Event()
            await _fail_times(breaker, dependency, 3)
            clock.now += 31
            trial = asyncio.create_task(breaker.call(slow_call))
            await asyncio.sleep(0)
            with pytest.raises(CircuitBreakerOpenError):
                await breaker.call(slow_call)
            release.set()
            assert await trial == "ok"

        asyncio.run(scenario())
        assert breaker.state == CircuitState.HALF_OPEN

    def test_reset_closes(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        dependency = Dependency()

        asyncio.run(_fail_times(breaker, dependency, 3))
        breaker.reset()

        assert breaker.is_closed
        assert breaker.stats()["failures"] == 0

import asyncio

import pytest

from core.circuit_breaker import (
    AsyncCircuitBreaker,
    CircuitBreakerOpenError,
    get_circuit_breaker,
    reset_circuit_breakers,
)


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def fail():
    raise RuntimeError("fail")


async def succeed():
    return "ok"


@pytest.mark.asyncio
async def test_circuit_breaker_opens():
    breaker = AsyncCircuitBreaker(failure_threshold=2, recovery_timeout=10)

    # Two failures
    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call(fail)

    # Now it should be open and the function is not even called
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(succeed)

    assert breaker.state == "open"
    assert await breaker.is_open()


@pytest.mark.asyncio
async def test_success_resets_failure_count():
    breaker = AsyncCircuitBreaker(failure_threshold=2)

    with pytest.raises(RuntimeError):
        await breaker.call(fail)
    assert breaker.failure_count == 1

    assert await breaker.call(succeed) == "ok"
    assert breaker.failure_count == 0
    assert breaker.state == "closed"


@pytest.mark.asyncio
async def test_half_open_trial_closes_on_success():
    clock = Clock()
    breaker = AsyncCircuitBreaker("trial", failure_threshold=1, recovery_timeout=30, clock=clock)

    with pytest.raises(RuntimeError):
        await breaker.call(fail)
    assert breaker.state == "open"

    clock.now = 31
    assert await breaker.call(succeed) == "ok"
    assert breaker.state == "closed"


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens():
    clock = Clock()
    breaker = AsyncCircuitBreaker("trial", failure_threshold=3, recovery_timeout=30, clock=clock)

    for _ in range(3):
        with pytest.raises(RuntimeError):
            await breaker.call(fail)

    clock.now = 30
    assert not await breaker.is_open()
    assert breaker.state == "half_open"

    with pytest.raises(RuntimeError):
        await breaker.call(fail)
    assert breaker.state == "open"


@pytest.mark.asyncio
async def test_manual_reset():
    breaker = AsyncCircuitBreaker(failure_threshold=1)
    with pytest.raises(RuntimeError):
        await breaker.call(fail)

    await breaker.reset()

    assert breaker.state == "closed"
    assert await breaker.call(succeed) == "ok"


def test_registry_returns_one_breaker_per_name():
    first = get_circuit_breaker("llm_openai", failure_threshold=3)
    assert get_circuit_breaker("llm_openai") is first
    assert get_circuit_breaker("llm_ollama") is not first
    assert first.failure_threshold == 3

    reset_circuit_breakers()
    assert get_circuit_breaker("llm_openai") is not first


@pytest.mark.asyncio
async def test_cancelled_trial_call_releases_half_open_slot():
    clock = Clock()
    breaker = AsyncCircuitBreaker("trial", failure_threshold=1, recovery_timeout=30, clock=clock)
    with pytest.raises(RuntimeError):
        await breaker.call(fail)

    clock.now = 31
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(10)

    trial = asyncio.create_task(breaker.call(slow))
    await started.wait()
    trial.cancel()
    with pytest.raises(asyncio.CancelledError):
        await trial

    clock.now = 1000
    assert [await breaker.call(succeed) for _ in range(3)] == ["ok", "ok", "ok"]
    assert breaker.state == "closed"

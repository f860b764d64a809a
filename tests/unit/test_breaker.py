"""Circuit breaker and integration guard tests."""

import asyncio
import time

import pytest

from stepwise.config import GuardSettings, ResilienceConfig
from stepwise.errors import CircuitOpenError, ModuleTimeoutError
from stepwise.registry import ModuleRegistry
from stepwise.resilience import CircuitBreaker, CircuitState, IntegrationGuard, ResilienceService


def _guard(**overrides):
    settings = GuardSettings(
        capacity=100, refill_amount=100, refill_interval=1.0, max_concurrent=10,
        failure_threshold=3, cooldown=0.1, timeout=1.0,
    ).model_copy(update=overrides)
    return IntegrationGuard("crm", settings)


def test_breaker_state_machine_with_fake_clock():
    now = [0.0]
    breaker = CircuitBreaker(failure_threshold=2, cooldown=10.0, clock=lambda: now[0])
    breaker.before_call()
    breaker.record_failure()
    assert breaker.is_closed()
    breaker.before_call()
    breaker.record_failure()
    assert breaker.is_open()

    with pytest.raises(CircuitOpenError) as exc:
        breaker.check()
    assert exc.value.retry_after == pytest.approx(10.0)

    now[0] = 10.0
    breaker.check()
    breaker.before_call()
    assert breaker.state == CircuitState.HALF_OPEN
    with pytest.raises(CircuitOpenError):
        breaker.before_call()

    breaker.record_failure()
    assert breaker.is_open()
    assert breaker.get_status()["retry_after"] == pytest.approx(10.0)

    now[0] = 20.0
    breaker.before_call()
    breaker.record_success()
    assert breaker.is_closed()
    assert breaker.failure_count == 0


def test_success_resets_consecutive_failures():
    breaker = CircuitBreaker(failure_threshold=2)
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.is_closed()


@pytest.mark.asyncio
async def test_guard_trips_after_threshold_and_skips_handler():
    guard = _guard(failure_threshold=3, cooldown=10.0)
    calls = 0

    async def failing(payload):
        nonlocal calls
        calls += 1
        raise RuntimeError("500 from crm")

    for _ in range(3):
        with pytest.raises(RuntimeError):
            await guard.invoke(failing, {})

    with pytest.raises(CircuitOpenError):
        await guard.invoke(failing, {})
    assert calls == 3
    assert guard.get_status()["breaker"]["state"] == "open"


@pytest.mark.asyncio
async def test_half_open_admits_exactly_one_trial():
    guard = _guard(failure_threshold=1, cooldown=0.05)

    async def failing(payload):
        raise RuntimeError("down")

    with pytest.raises(RuntimeError):
        await guard.invoke(failing, {})
    await asyncio.sleep(0.06)

    trials = 0

    async def slow_ok(payload):
        nonlocal trials
        trials += 1
        await asyncio.sleep(0.05)
        return "ok"

    results = await asyncio.gather(
        guard.invoke(slow_ok, {}), guard.invoke(slow_ok, {}), return_exceptions=True
    )
    assert trials == 1
    assert results.count("ok") == 1
    assert sum(isinstance(r, CircuitOpenError) for r in results) == 1
    assert guard.breaker.is_closed()


@pytest.mark.asyncio
async def test_timeout_counts_as_failure():
    guard = _guard(failure_threshold=1, cooldown=10.0, timeout=0.05)

    async def hangs(payload):
        await asyncio.sleep(1)

    with pytest.raises(ModuleTimeoutError) as exc:
        await guard.invoke(hangs, {})
    assert exc.value.integration == "crm"
    assert guard.breaker.is_open()


@pytest.mark.asyncio
async def test_sync_handlers_run_in_a_thread():
    guard = _guard()
    assert await guard.invoke(lambda payload: payload["x"] * 2, {"x": 21}) == 42


@pytest.mark.asyncio
async def test_one_failing_integration_does_not_affect_another():
    service = ResilienceService(
        ResilienceConfig(default=GuardSettings(failure_threshold=1, cooldown=10.0))
    )
    registry = ModuleRegistry()

    def broken(payload):
        raise RuntimeError("crm down")

    crm = registry.add("crm.contacts.create", broken)
    chat = registry.add("messaging.chat.send", lambda payload: "sent")

    with pytest.raises(RuntimeError):
        await service.invoke(crm, {})
    with pytest.raises(CircuitOpenError):
        await service.invoke(crm, {})
    assert await service.invoke(chat, {}) == "sent"
    snapshot = service.snapshot()
    assert snapshot["contacts"]["breaker"]["state"] == "open"
    assert snapshot["chat"]["breaker"]["state"] == "closed"


def test_guard_keys_are_shared_across_tenants_unless_scoped():
    shared = ResilienceService()
    assert shared.guard("crm", "t1") is shared.guard("crm", "t2")

    scoped = ResilienceService(ResilienceConfig(tenant_scoped=True))
    assert scoped.guard("crm", "t1") is not scoped.guard("crm", "t2")
    assert scoped.key_for("crm", "t1") == "t1:crm"


def test_per_integration_settings():
    config = ResilienceConfig(integrations={"crm": GuardSettings(max_concurrent=5, capacity=100)})
    service = ResilienceService(config)
    assert service.guard("crm").limiter.max_concurrent == 5
    assert service.guard("other").settings == config.default


@pytest.mark.asyncio
async def test_timed_out_thread_keeps_its_slot_until_it_returns():
    guard = _guard(max_concurrent=1, timeout=0.05)

    def blocking(payload):
        time.sleep(0.2)
        return "late"

    with pytest.raises(ModuleTimeoutError):
        await guard.invoke(blocking, {})
    assert guard.limiter.in_flight == 1

    started = time.monotonic()
    assert await guard.invoke(lambda payload: "next", {}) == "next"
    assert time.monotonic() - started >= 0.1
    assert guard.limiter.in_flight == 0


@pytest.mark.asyncio
async def test_timed_out_coroutine_releases_slot_at_once():
    guard = _guard(max_concurrent=1, timeout=0.05)

    async def hangs(payload):
        await asyncio.sleep(1)

    with pytest.raises(ModuleTimeoutError):
        await guard.invoke(hangs, {})
    assert guard.limiter.in_flight == 0

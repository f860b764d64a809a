import asyncio
import time

import pytest

from stepwise.config import GuardSettings, QueueConfig, ResilienceConfig
from stepwise.contracts import WorkflowDefinition
from stepwise.execute import RunExecutor
from stepwise.modules import register_builtin_modules
from stepwise.persistence import InMemoryRunStore
from stepwise.registry import ModuleRegistry
from stepwise.resilience import ResilienceService


class Timeline:
    """Records when labelled fake module calls start and end."""

    def __init__(self):
        self.spans = {}
        self.order = []

    def start(self, label):
        self.spans[label] = [time.monotonic(), None]
        self.order.append(label)

    def end(self, label):
        self.spans[label][1] = time.monotonic()

    def overlap(self, a, b):
        start_a, end_a = self.spans[a]
        start_b, end_b = self.spans[b]
        return start_a < end_b and start_b < end_a


@pytest.fixture
def timeline():
    return Timeline()


@pytest.fixture
def calls():
    return {"flaky": 0, "fail": 0}


@pytest.fixture
def registry(timeline, calls):
    registry = ModuleRegistry()
    register_builtin_modules(registry)

    async def sleep(payload):
        """Sleep for ``delay`` seconds and return ``value``."""
        label = payload.get("label", "step")
        timeline.start(label)
        await asyncio.sleep(payload.get("delay", 0))
        timeline.end(label)
        return payload.get("value", label)

    def fail(payload):
        calls["fail"] += 1
        raise RuntimeError(payload.get("message", "boom"))

    def flaky(payload):
        calls["flaky"] += 1
        if calls["flaky"] <= payload.get("failures", 1):
            raise RuntimeError(f"flaky failure {calls['flaky']}")
        return {"attempt": calls["flaky"]}

    registry.add("test.flow.sleep", sleep)
    registry.add("test.flow.fail", fail)
    registry.add("test.flow.flaky", flaky)
    registry.add("test.flow.echo", lambda payload: payload)
    registry.add("test.flow.notify", lambda payload: {"sent": True}, params=["to"])
    return registry


@pytest.fixture
def resilience():
    settings = GuardSettings(
        capacity=1000,
        refill_amount=1000,
        refill_interval=1.0,
        max_concurrent=50,
        failure_threshold=100,
        cooldown=1.0,
        timeout=5.0,
    )
    return ResilienceService(ResilienceConfig(default=settings))


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def executor(registry, resilience, store):
    return RunExecutor(registry, resilience, store)


@pytest.fixture
def queue_config():
    return QueueConfig(max_attempts=3, backoff_base=0.01, backoff_jitter=0.0, worker_concurrency=4)


@pytest.fixture
def make_workflow():
    def _make(steps, **kwargs):
        data = {"name": kwargs.pop("name", "test workflow"), "steps": steps}
        data.update(kwargs)
        return WorkflowDefinition.model_validate(data)

    return _make

"""Step scheduling and run execution tests."""

import asyncio
import time

import pytest

from stepwise.contracts import RunStatus, StepStatus
from stepwise.execute import RunExecutor
from stepwise.persistence import InMemoryRunStore, RunRecord
from stepwise.scheduler import RunContext, StepScheduler


async def _execute(registry, resilience, make_workflow, steps, trigger_data=None, **kwargs):
    scheduler = StepScheduler(registry, resilience)
    definition = make_workflow(steps, **kwargs)
    ctx = RunContext(run_id="run-1", trigger_data=trigger_data or {})
    return await scheduler.execute(definition, ctx)


def _statuses(outcome):
    return {step.step_name: step.status for step in outcome.steps}


@pytest.mark.asyncio
async def test_independent_steps_run_concurrently(registry, resilience, make_workflow, timeline):
    started = time.monotonic()
    outcome = await _execute(
        registry,
        resilience,
        make_workflow,
        [
            {"name": "a", "module": "test.flow.sleep", "params": {"label": "a", "delay": 0.2}, "outputAs": "a"},
            {"name": "b", "module": "test.flow.sleep", "params": {"label": "b", "delay": 0.2}, "outputAs": "b"},
        ],
    )
    elapsed = time.monotonic() - started

    assert outcome.status == RunStatus.SUCCESS
    assert timeline.overlap("a", "b")
    assert elapsed < 0.35


@pytest.mark.asyncio
async def test_consumer_starts_after_all_producers(registry, resilience, make_workflow, timeline):
    outcome = await _execute(
        registry,
        resilience,
        make_workflow,
        [
            {"name": "A", "module": "test.flow.sleep", "params": {"label": "A", "delay": 0.05}, "outputAs": "a"},
            {"name": "B", "module": "test.flow.sleep", "params": {"label": "B", "delay": 0.15}, "outputAs": "b"},
            {
                "name": "C",
                "module": "test.flow.sleep",
                "params": {"label": "C", "value": "{{a}}+{{b}}"},
                "outputAs": "c",
            },
        ],
    )

    assert outcome.status == RunStatus.SUCCESS
    assert timeline.overlap("A", "B")
    c_start = timeline.spans["C"][0]
    assert c_start >= timeline.spans["A"][1]
    assert c_start >= timeline.spans["B"][1]
    assert outcome.output == "A+B"


@pytest.mark.asyncio
async def test_params_resolve_with_exact_types(registry, resilience, make_workflow):
    outcome = await _execute(
        registry,
        resilience,
        make_workflow,
        [
            {
                "name": "shape",
                "module": "test.flow.echo",
                "params": {"n": "{{input.count}}", "tags": "{{input.tags}}", "s": "n={{input.count}}"},
                "outputAs": "shaped",
            }
        ],
        trigger_data={"count": 3, "tags": ["x"]},
    )
    assert outcome.output == {"n": 3, "tags": ["x"], "s": "n=3"}


@pytest.mark.asyncio
async def test_skipped_producer_fails_dependent(registry, resilience, make_workflow):
    outcome = await _execute(
        registry,
        resilience,
        make_workflow,
        [
            {"name": "lookup", "module": "test.flow.echo", "condition": "{{input.flag}} === true", "outputAs": "lead"},
            {"name": "notify", "module": "test.flow.echo", "params": {"id": "{{lead.id}}"}},
        ],
        trigger_data={"flag": False},
    )
    assert outcome.status == RunStatus.ERROR
    assert outcome.error_step == "notify"
    assert outcome.error_type == "MissingVariableError"
    assert _statuses(outcome) == {"lookup": StepStatus.SKIPPED, "notify": StepStatus.FAILED}


@pytest.mark.asyncio
async def test_dependent_with_false_condition_is_skipped_too(registry, resilience, make_workflow):
    outcome = await _execute(
        registry,
        resilience,
        make_workflow,
        [
            {"name": "lookup", "module": "test.flow.echo", "condition": "{{input.flag}}", "outputAs": "lead"},
            {
                "name": "notify",
                "module": "test.flow.echo",
                "condition": "{{input.flag}}",
                "params": {"id": "{{lead.id}}"},
                "outputAs": "sent",
            },
        ],
        trigger_data={"flag": False},
    )
    assert outcome.status == RunStatus.SUCCESS
    assert outcome.output is None
    assert set(_statuses(outcome).values()) == {StepStatus.SKIPPED}


@pytest.mark.asyncio
async def test_failure_stops_dispatch_but_in_flight_steps_finish(registry, resilience, make_workflow, calls):
    outcome = await _execute(
        registry,
        resilience,
        make_workflow,
        [
            {"name": "slow", "module": "test.flow.sleep", "params": {"label": "slow", "delay": 0.1}, "outputAs": "s"},
            {"name": "broken", "module": "test.flow.fail", "params": {"message": "HTTP 500"}, "outputAs": "x"},
            {"name": "after", "module": "test.flow.echo", "params": {"v": "{{x}}"}},
        ],
    )
    assert outcome.status == RunStatus.ERROR
    assert outcome.error_step == "broken"
    assert outcome.error == "HTTP 500"
    assert outcome.error_type == "ModuleExecutionError"
    statuses = _statuses(outcome)
    assert statuses["slow"] == StepStatus.SUCCEEDED
    assert statuses["broken"] == StepStatus.FAILED
    assert "after" not in statuses
    assert calls["fail"] == 1


@pytest.mark.asyncio
async def test_designated_output_step(registry, resilience, make_workflow):
    outcome = await _execute(
        registry,
        resilience,
        make_workflow,
        [
            {"name": "first", "module": "test.flow.sleep", "params": {"value": 1}, "outputAs": "one"},
            {"name": "second", "module": "test.flow.sleep", "params": {"value": 2}, "outputAs": "two"},
        ],
        outputStep="first",
    )
    assert outcome.output == 1


@pytest.mark.asyncio
async def test_cyclic_definition_fails_on_first_pending_step(registry, resilience, make_workflow):
    outcome = await _execute(
        registry,
        resilience,
        make_workflow,
        [
            {"name": "a", "module": "test.flow.echo", "params": {"v": "{{y}}"}, "outputAs": "x"},
            {"name": "b", "module": "test.flow.echo", "params": {"v": "{{x}}"}, "outputAs": "y"},
        ],
    )
    assert outcome.status == RunStatus.ERROR
    assert outcome.error_step == "a"


@pytest.mark.asyncio
async def test_unknown_module_fails_the_step(registry, resilience, make_workflow):
    outcome = await _execute(
        registry, resilience, make_workflow, [{"name": "a", "module": "nope.nope.nope"}]
    )
    assert outcome.status == RunStatus.ERROR
    assert outcome.error_type == "UnknownModuleError"


@pytest.mark.asyncio
async def test_executor_records_progress_in_store(executor, store, make_workflow):
    definition = make_workflow(
        [
            {"name": "a", "module": "test.flow.echo", "params": {"email": "{{input.email}}"}, "outputAs": "a"},
            {"name": "b", "module": "test.flow.echo", "condition": "false"},
        ]
    )
    run = RunRecord(
        workflow_id=definition.id,
        tenant_id=definition.tenant_id,
        trigger_data={"email": "a@b.c"},
        definition=definition.to_dict(),
    )
    await store.create_run(run)

    result = await executor.execute_run(run)

    assert result.status == RunStatus.SUCCESS
    assert result.output == {"email": "a@b.c"}
    stored = await store.get_run(run.id)
    assert stored.status == RunStatus.SUCCESS
    assert stored.step("a").status == StepStatus.SUCCEEDED
    assert stored.step("a").started_at is not None
    assert stored.step("b").status == StepStatus.SKIPPED


@pytest.mark.asyncio
async def test_cancellation_is_cooperative(executor, store, make_workflow, timeline):
    definition = make_workflow(
        [
            {"name": "a", "module": "test.flow.sleep", "params": {"label": "a", "delay": 0.2}, "outputAs": "a"},
            {"name": "b", "module": "test.flow.sleep", "params": {"label": "b", "value": "{{a}}"}},
        ]
    )
    run = RunRecord(workflow_id=definition.id, tenant_id="default", definition=definition.to_dict())
    await store.create_run(run)

    task = asyncio.create_task(executor.execute_run(run))
    await asyncio.sleep(0.05)
    assert run.id in executor.active_runs
    assert await executor.cancel(run.id) is True
    result = await task

    assert result.status == RunStatus.CANCELLED
    assert "a" in timeline.spans and timeline.spans["a"][1] is not None
    assert "b" not in timeline.spans
    stored = await store.get_run(run.id)
    assert stored.step("a").status == StepStatus.SUCCEEDED
    assert stored.step("b") is None
    assert await executor.cancel(run.id) is False


@pytest.mark.asyncio
async def test_cancel_before_start(executor, store, make_workflow):
    definition = make_workflow([{"name": "a", "module": "test.flow.echo"}])
    run = RunRecord(workflow_id=definition.id, tenant_id="default", definition=definition.to_dict())
    await store.create_run(run)
    assert await executor.cancel(run.id) is True

    result = await executor.execute_run(run.id)
    assert result.status == RunStatus.CANCELLED
    assert result.steps == []


@pytest.mark.asyncio
async def test_consumer_does_not_wait_for_unrelated_step(registry, resilience, make_workflow, timeline):
    outcome = await _execute(
        registry,
        resilience,
        make_workflow,
        [
            {"name": "A", "module": "test.flow.sleep", "params": {"label": "A", "delay": 0.05}, "outputAs": "a"},
            {"name": "B", "module": "test.flow.sleep", "params": {"label": "B", "delay": 0.3}, "outputAs": "b"},
            {"name": "C", "module": "test.flow.sleep", "params": {"label": "C", "value": "{{a}}"}, "outputAs": "c"},
        ],
    )

    assert outcome.status == RunStatus.SUCCESS
    assert timeline.spans["C"][0] >= timeline.spans["A"][1]
    assert timeline.spans["C"][0] < timeline.spans["B"][1]


@pytest.mark.asyncio
async def test_sign_of_non_number_makes_condition_false(executor, store, make_workflow):
    definition = make_workflow(
        [
            {"name": "slow", "module": "test.flow.sleep", "params": {"delay": 0.1}, "outputAs": "s"},
            {"name": "gate", "module": "test.flow.echo", "condition": "-{{input.name}} < 0", "outputAs": "g"},
        ]
    )
    run = RunRecord(
        workflow_id=definition.id,
        tenant_id="default",
        trigger_data={"name": "bob"},
        definition=definition.to_dict(),
    )
    await store.create_run(run)

    result = await executor.execute_run(run)

    assert result.status == RunStatus.SUCCESS
    stored = await store.get_run(run.id)
    assert stored.step("gate").status == StepStatus.SKIPPED
    assert stored.step("slow").status == StepStatus.SUCCEEDED


class _Falsy:
    def __bool__(self):
        raise ValueError("truth value is ambiguous")


@pytest.mark.asyncio
async def test_condition_crash_fails_the_step(registry, resilience, make_workflow):
    registry.add("test.flow.ambiguous", lambda payload: _Falsy())
    outcome = await _execute(
        registry,
        resilience,
        make_workflow,
        [
            {"name": "slow", "module": "test.flow.sleep", "params": {"delay": 0.1}, "outputAs": "s"},
            {"name": "make", "module": "test.flow.ambiguous", "outputAs": "x"},
            {"name": "gate", "module": "test.flow.echo", "condition": "{{x}}"},
        ],
    )

    assert outcome.status == RunStatus.ERROR
    assert outcome.error_step == "gate"
    assert outcome.error_type == "ValueError"
    assert _statuses(outcome)["slow"] == StepStatus.SUCCEEDED


class _BrokenSkipStore(InMemoryRunStore):
    async def mark_step_skipped(self, run_id, step_name):
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_unexpected_error_ends_run_in_error(registry, resilience, make_workflow):
    store = _BrokenSkipStore()
    executor = RunExecutor(registry, resilience, store)
    definition = make_workflow(
        [
            {"name": "slow", "module": "test.flow.sleep", "params": {"delay": 0.5}, "outputAs": "s"},
            {"name": "later", "module": "test.flow.echo", "condition": "false"},
        ]
    )
    run = RunRecord(workflow_id=definition.id, tenant_id="default", definition=definition.to_dict())
    await store.create_run(run)

    result = await executor.execute_run(run)

    assert result.status == RunStatus.ERROR
    assert result.error == "disk full"
    assert result.error_type == "RuntimeError"
    assert result.error_step == "slow"
    stored = await store.get_run(run.id)
    assert stored.status == RunStatus.ERROR
    assert stored.completed_at is not None
    assert stored.step("slow").status == StepStatus.FAILED
    assert executor.active_runs == set()


@pytest.mark.asyncio
async def test_corrupt_snapshot_ends_run_in_error(executor, store):
    run = RunRecord(workflow_id="wf", tenant_id="default", definition={"steps": "not a list"})
    await store.create_run(run)

    result = await executor.execute_run(run)

    assert result.status == RunStatus.ERROR
    assert result.error_step is None
    assert (await store.get_run(run.id)).status == RunStatus.ERROR

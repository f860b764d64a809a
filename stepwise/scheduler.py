"""Dependency-driven concurrent execution of a workflow's steps."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .conditions import evaluate_condition
from .contracts import RunStatus, StepDefinition, StepResult, StepStatus, WorkflowDefinition, utcnow
from .errors import ModuleExecutionError, StepwiseError
from .graph import build_dependency_graph
from .persistence import RunStore
from .registry import ModuleRegistry
from .resilience import ResilienceService
from .variables import INPUT_ROOT, resolve

logger = logging.getLogger(__name__)

_DONE = (StepStatus.SUCCEEDED, StepStatus.SKIPPED)


@dataclass
class RunContext:
    """Per-run state handed to the scheduler."""

    run_id: str
    tenant_id: str = "default"
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class ExecutionOutcome:
    """Final state of one scheduler pass over a workflow."""

    status: RunStatus
    output: Any = None
    error: Optional[str] = None
    error_step: Optional[str] = None
    error_type: Optional[str] = None
    steps: List[StepResult] = field(default_factory=list)


def error_message(exc: BaseException) -> str:
    """Message recorded for a failed step."""
    if isinstance(exc, ModuleExecutionError):
        return str(exc.cause)
    return str(exc)


class StepScheduler:
    """Runs the steps of one workflow as their dependencies are satisfied.

    Every step whose dependencies have all succeeded or been skipped is
    started at once as its own task. When any task finishes, readiness is
    re-evaluated. The first failure stops further dispatch; steps already
    in flight are allowed to finish.
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        resilience: ResilienceService | None = None,
        store: RunStore | None = None,
    ) -> None:
        self._registry = registry
        self._resilience = resilience or ResilienceService()
        self._store = store

    async def execute(self, definition: WorkflowDefinition, ctx: RunContext) -> ExecutionOutcome:
        graph = build_dependency_graph(definition)
        states: Dict[str, StepStatus] = {step.name: StepStatus.PENDING for step in definition.steps}
        results: Dict[str, StepResult] = {}
        bag: Dict[str, Any] = {INPUT_ROOT: ctx.trigger_data}
        running: Dict[asyncio.Task, StepDefinition] = {}
        failure: Optional[tuple[str, BaseException]] = None
        cancelled = False

        try:
            while True:
                if failure is None and not cancelled:
                    if await self._cancel_requested(ctx):
                        cancelled = True
                        logger.info(f"Cancellation requested for run_id={ctx.run_id}, no further steps dispatched")
                    else:
                        failure = await self._dispatch_ready(
                            definition, graph, states, results, bag, running, ctx
                        )

                if not running:
                    break

                done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    step = running.pop(task)
                    result = results[step.name]
                    result.finished_at = utcnow()
                    exc = task.exception()
                    if exc is None:
                        states[step.name] = result.status = StepStatus.SUCCEEDED
                        result.output = task.result()
                        if step.output_as:
                            bag[step.output_as] = result.output
                        logger.info(f"Step '{step.name}' succeeded for run_id={ctx.run_id}")
                        await self._record_completed(ctx, result)
                        continue

                    states[step.name] = result.status = StepStatus.FAILED
                    result.error = error_message(exc)
                    result.error_type = type(exc).__name__
                    logger.warning(f"Step '{step.name}' failed for run_id={ctx.run_id}: {exc}")
                    await self._record_completed(ctx, result)
                    if failure is None:
                        failure = (step.name, exc)
        except BaseException:
            for task in running:
                task.cancel()
            raise

        steps = list(results.values())
        if failure is not None:
            step_name, exc = failure
            return ExecutionOutcome(
                status=RunStatus.ERROR,
                error=error_message(exc),
                error_step=step_name,
                error_type=type(exc).__name__,
                steps=steps,
            )
        if cancelled:
            return ExecutionOutcome(status=RunStatus.CANCELLED, error="Run cancelled", steps=steps)

        stalled = next((s.name for s in definition.steps if states[s.name] == StepStatus.PENDING), None)
        if stalled is not None:
            message = f"Step '{stalled}' can never run: its dependencies form a cycle"
            logger.error(f"{message} (run_id={ctx.run_id})")
            results[stalled] = StepResult(
                step_name=stalled,
                status=StepStatus.FAILED,
                error=message,
                error_type="ValidationError",
                finished_at=utcnow(),
            )
            await self._record_completed(ctx, results[stalled])
            return ExecutionOutcome(
                status=RunStatus.ERROR,
                error=message,
                error_step=stalled,
                error_type="ValidationError",
                steps=list(results.values()),
            )

        return ExecutionOutcome(
            status=RunStatus.SUCCESS,
            output=self._select_output(definition, states, bag),
            steps=steps,
        )

    async def _dispatch_ready(
        self,
        definition: WorkflowDefinition,
        graph: Dict[str, Set[str]],
        states: Dict[str, StepStatus],
        results: Dict[str, StepResult],
        bag: Dict[str, Any],
        running: Dict[asyncio.Task, StepDefinition],
        ctx: RunContext,
    ) -> Optional[tuple[str, BaseException]]:
        """Start or skip every ready step. Returns a failure if one occurs."""
        progressed = True
        # skipping a step can make later steps ready, so scan until stable
        while progressed:
            progressed = False
            for step in definition.steps:
                if states[step.name] != StepStatus.PENDING:
                    continue
                if any(states[dep] not in _DONE for dep in graph[step.name]):
                    continue
                progressed = True

                if step.condition:
                    try:
                        should_run = evaluate_condition(step.condition, bag, step.name)
                    except Exception as exc:
                        states[step.name] = StepStatus.FAILED
                        results[step.name] = StepResult(
                            step_name=step.name,
                            status=StepStatus.FAILED,
                            error=str(exc),
                            error_type=type(exc).__name__,
                            finished_at=utcnow(),
                        )
                        logger.warning(f"Condition of step '{step.name}' failed for run_id={ctx.run_id}: {exc}")
                        await self._record_completed(ctx, results[step.name])
                        return step.name, exc
                    if not should_run:
                        states[step.name] = StepStatus.SKIPPED
                        results[step.name] = StepResult(
                            step_name=step.name, status=StepStatus.SKIPPED, finished_at=utcnow()
                        )
                        logger.info(f"Step '{step.name}' skipped for run_id={ctx.run_id}: condition is false")
                        if self._store is not None:
                            await self._store.mark_step_skipped(ctx.run_id, step.name)
                        continue

                states[step.name] = StepStatus.RUNNING
                results[step.name] = StepResult(
                    step_name=step.name, status=StepStatus.RUNNING, started_at=utcnow()
                )
                if step.priority is not None or step.concurrency is not None:
                    logger.debug(
                        f"Step '{step.name}' hints priority={step.priority} concurrency={step.concurrency}"
                    )
                if self._store is not None:
                    await self._store.mark_step_started(ctx.run_id, step.name)
                task = asyncio.create_task(self._run_step(step, bag, ctx), name=f"{ctx.run_id}:{step.name}")
                running[task] = step
        return None

    async def _run_step(self, step: StepDefinition, bag: Dict[str, Any], ctx: RunContext) -> Any:
        descriptor = self._registry.lookup(step.module)
        payload = resolve(step.params, bag, step.name)
        logger.debug(f"Invoking {descriptor.path} for step '{step.name}' run_id={ctx.run_id}")
        try:
            return await self._resilience.invoke(descriptor, payload, tenant_id=ctx.tenant_id)
        except StepwiseError:
            raise
        except Exception as exc:
            raise ModuleExecutionError(step.name, descriptor.path, exc) from exc

    async def _cancel_requested(self, ctx: RunContext) -> bool:
        if ctx.cancel_event.is_set():
            return True
        if self._store is not None and await self._store.is_cancel_requested(ctx.run_id):
            ctx.cancel_event.set()
            return True
        return False

    async def _record_completed(self, ctx: RunContext, result: StepResult) -> None:
        if self._store is None:
            return
        await self._store.mark_step_completed(
            ctx.run_id,
            result.step_name,
            result.status,
            output=result.output,
            error=result.error,
            error_type=result.error_type,
        )

    @staticmethod
    def _select_output(
        definition: WorkflowDefinition, states: Dict[str, StepStatus], bag: Dict[str, Any]
    ) -> Any:
        if definition.output_step:
            step = definition.step(definition.output_step)
            if step and step.output_as and states.get(step.name) == StepStatus.SUCCEEDED:
                return bag.get(step.output_as)
            return None
        for step in reversed(definition.steps):
            if step.output_as and states[step.name] == StepStatus.SUCCEEDED:
                return bag[step.output_as]
        return None


__all__ = [
    "ExecutionOutcome",
    "RunContext",
    "StepScheduler",
    "build_dependency_graph",
    "error_message",
]

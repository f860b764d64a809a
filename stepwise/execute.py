"""Run execution: the inline executor and the queue worker."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from .config import QueueConfig
from .contracts import JobMessage, RunResult, RunStatus, StepStatus
from .errors import NON_RETRYABLE_ERRORS, QueueUnavailableError, RunNotFoundError, TerminalRunError
from .persistence import RunRecord, RunStore, get_store
from .registry import ModuleRegistry
from .resilience import ResilienceService
from .scheduler import RunContext, StepScheduler
from .transports import BaseTransport
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class RunExecutor:
    """Executes persisted runs through the step scheduler.

    The same executor serves inline submissions and queue workers, so both
    paths produce identical run records.
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        resilience: ResilienceService | None = None,
        store: RunStore | None = None,
    ) -> None:
        self.registry = registry
        self.resilience = resilience or ResilienceService()
        self.store = store or get_store()
        self._scheduler = StepScheduler(registry, self.resilience, self.store)
        self._active: Dict[str, asyncio.Event] = {}

    @property
    def active_runs(self) -> Set[str]:
        return set(self._active)

    async def execute_run(self, run: RunRecord | str) -> RunResult:
        """Execute ``run`` to a terminal state and return its result."""
        if isinstance(run, str):
            found = await self.store.get_run(run)
            if found is None:
                raise RunNotFoundError(f"Run {run} not found")
            run = found

        if await self.store.is_cancel_requested(run.id):
            logger.info(f"Run {run.id} cancelled before start")
            await self.store.mark_run_completed(run.id, RunStatus.CANCELLED, error="Run cancelled")
            return await self._result(run.id)

        ctx = RunContext(run_id=run.id, tenant_id=run.tenant_id, trigger_data=run.trigger_data)
        self._active[run.id] = ctx.cancel_event
        try:
            definition = run.snapshot()
            await self.store.mark_run_started(run.id)
            logger.info(
                f"Starting run_id={run.id} workflow={definition.name} tenant={run.tenant_id} attempt={run.attempt}"
            )
            outcome = await self._scheduler.execute(definition, ctx)
        except TerminalRunError:
            raise
        except Exception as exc:
            logger.exception(f"Run {run.id} aborted by an unexpected error")
            await self._record_abort(run.id, exc)
            return await self._result(run.id)
        finally:
            self._active.pop(run.id, None)

        await self.store.mark_run_completed(
            run.id,
            outcome.status,
            output=outcome.output,
            error=outcome.error,
            error_step=outcome.error_step,
            error_type=outcome.error_type,
        )
        if outcome.status == RunStatus.ERROR:
            logger.warning(f"Run {run.id} failed at step '{outcome.error_step}': {outcome.error}")
        else:
            logger.info(f"Run {run.id} finished with status {outcome.status.value}")
        return await self._result(run.id)

    async def cancel(self, run_id: str) -> bool:
        """Request cooperative cancellation of ``run_id``.

        Returns False when the run does not exist or already finished.
        """
        requested = await self.store.request_cancel(run_id)
        event = self._active.get(run_id)
        if event is not None:
            event.set()
        if requested:
            logger.info(f"Cancellation requested for run_id={run_id}")
        return requested

    async def _record_abort(self, run_id: str, exc: Exception) -> None:
        """Fail the run, and any step still marked running, after an unexpected error."""
        record = await self.store.get_run(run_id)
        running = [s.step_name for s in record.steps if s.status == StepStatus.RUNNING] if record else []
        for step_name in running:
            await self.store.mark_step_completed(
                run_id, step_name, StepStatus.FAILED, error=str(exc), error_type=type(exc).__name__
            )
        await self.store.mark_run_completed(
            run_id,
            RunStatus.ERROR,
            error=str(exc),
            error_step=running[0] if running else None,
            error_type=type(exc).__name__,
        )

    async def _result(self, run_id: str) -> RunResult:
        record = await self.store.get_run(run_id)
        if record is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return record.to_result()


class WorkflowWorker:
    """Consumes run jobs from the durable queue with bounded concurrency."""

    def __init__(
        self,
        transport: BaseTransport,
        executor: RunExecutor,
        queue: QueueConfig | None = None,
    ) -> None:
        self._transport = transport
        self._executor = executor
        self._queue = queue or QueueConfig()
        self.processed: list[str] = []

    @property
    def store(self) -> RunStore:
        return self._executor.store

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Process jobs until ``lifespan`` seconds have elapsed (forever if None)."""
        semaphore = asyncio.Semaphore(self._queue.worker_concurrency)
        tasks: Set[asyncio.Task] = set()
        logger.info(
            f"Worker listening on topic={self._queue.topic} concurrency={self._queue.worker_concurrency}"
        )

        def _finished(task: asyncio.Task) -> None:
            tasks.discard(task)
            semaphore.release()

        try:
            async for raw_message, job in self._transport.subscribe(self._queue.topic, lifespan=lifespan):
                await semaphore.acquire()
                task = asyncio.create_task(self._process(raw_message, job))
                tasks.add(task)
                task.add_done_callback(_finished)
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

    async def _process(self, raw_message: Any, job: JobMessage) -> None:
        try:
            await self.handle(job)
        except Exception:
            logger.exception(f"Job {job.job_id} for run_id={job.run_id} crashed")
            await self._transport.nack(raw_message, requeue=False)
            return
        await self._transport.ack(raw_message)

    async def handle(self, job: JobMessage) -> RunResult | None:
        """Execute the run carried by ``job`` and schedule a retry if warranted."""
        run = await self.store.get_run(job.run_id)
        if run is None:
            logger.error(f"Job {job.job_id} references unknown run_id={job.run_id}")
            return None
        if run.status.is_terminal:
            logger.info(f"Run {run.id} already {run.status.value}, skipping job {job.job_id}")
            return run.to_result()

        result = await self._executor.execute_run(run)
        self.processed.append(run.id)

        if result.status == RunStatus.ERROR:
            if result.error_type in NON_RETRYABLE_ERRORS:
                logger.info(f"Run {run.id} failed with {result.error_type}, not retrying")
            elif job.can_retry:
                await self._retry(job, run)
            else:
                logger.warning(f"Run {run.id} exhausted {job.max_attempts} attempts")
        return result

    async def _retry(self, job: JobMessage, failed: RunRecord) -> None:
        delay = await schedule_retry(job.attempt, self._queue.backoff_base, self._queue.backoff_jitter)
        retry_run = RunRecord(
            workflow_id=failed.workflow_id,
            tenant_id=failed.tenant_id,
            trigger_type=failed.trigger_type,
            trigger_data=failed.trigger_data,
            definition=failed.definition,
            attempt=job.attempt + 1,
            retry_of=failed.id,
            priority=job.priority,
        )
        await self.store.create_run(retry_run)
        next_job = job.bump_attempt(retry_run.id)
        await self.store.assign_job(retry_run.id, next_job.job_id)
        logger.info(
            f"Retrying run {failed.id} as run_id={retry_run.id} attempt={next_job.attempt} after {delay:.2f}s"
        )
        try:
            await self._transport.publish(self._queue.topic, next_job)
        except QueueUnavailableError as exc:
            logger.warning(f"Queue unavailable for retry of run {failed.id}, executing inline: {exc}")
            await self.handle(next_job)

"""Workflow dispatcher: turns trigger submissions into runs."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .config import QueueConfig
from .contracts import JobMessage, RunResult, RunStatus, TriggerSubmission, TriggerType, WorkflowDefinition
from .errors import QueueUnavailableError, RunNotFoundError, WorkflowNotFoundError
from .execute import RunExecutor
from .persistence import RunRecord, RunStatusView, RunStore
from .registry import ensure_valid
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class WorkflowDispatcher:
    """Service responsible for dispatching workflow runs.

    Submissions are published to the durable queue when it is reachable and
    executed inline otherwise. Both paths go through the same
    :class:`RunExecutor`, so a caller cannot tell them apart except by the
    ``queued`` flag of the returned result.
    """

    def __init__(
        self,
        executor: RunExecutor,
        transport: BaseTransport | None = None,
        queue: QueueConfig | None = None,
    ) -> None:
        self._executor = executor
        self._transport = transport
        self._queue = queue or QueueConfig()

    @property
    def store(self) -> RunStore:
        return self._executor.store

    async def _load(self, workflow_id: str, tenant_id: str) -> WorkflowDefinition:
        definition = await self.store.get_workflow(workflow_id)
        if definition is None or definition.tenant_id != tenant_id:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found for tenant {tenant_id}")
        ensure_valid(definition, self._executor.registry)
        return definition

    async def _create_run(
        self,
        definition: WorkflowDefinition,
        trigger_type: TriggerType,
        trigger_data: Optional[Dict[str, Any]],
        priority: int,
    ) -> RunRecord:
        run = RunRecord(
            workflow_id=definition.id,
            tenant_id=definition.tenant_id,
            trigger_type=trigger_type,
            trigger_data=trigger_data or {},
            definition=definition.to_dict(),
            priority=priority,
        )
        await self.store.create_run(run)
        return run

    async def _transport_available(self) -> bool:
        if self._transport is None:
            return False
        try:
            return await self._transport.is_available()
        except QueueUnavailableError:
            return False

    async def submit(
        self,
        workflow_id: str,
        tenant_id: str,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        trigger_data: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
    ) -> RunResult:
        """Queue a run of ``workflow_id``, or execute it inline if the queue is down.

        Raises:
            WorkflowNotFoundError: no such workflow for ``tenant_id``.
            ValidationError: the stored definition no longer validates.
        """
        definition = await self._load(workflow_id, tenant_id)
        priority = self._queue.default_priority if priority is None else priority
        run = await self._create_run(definition, TriggerType(trigger_type), trigger_data, priority)

        if await self._transport_available():
            job = JobMessage(
                run_id=run.id,
                workflow_id=definition.id,
                tenant_id=tenant_id,
                trigger_type=run.trigger_type,
                trigger_data=run.trigger_data,
                priority=priority,
                max_attempts=self._queue.max_attempts,
            )
            try:
                await self._transport.publish(self._queue.topic, job)
            except QueueUnavailableError as exc:
                logger.warning(f"Queue unavailable for run_id={run.id}, executing inline: {exc}")
            else:
                await self.store.assign_job(run.id, job.job_id)
                logger.info(f"Queued run_id={run.id} job_id={job.job_id} priority={priority}")
                return RunResult(run_id=run.id, job_id=job.job_id, queued=True, status=RunStatus.QUEUED)
        else:
            logger.info(f"No queue available, executing run_id={run.id} inline")

        return await self._executor.execute_run(run)

    async def submit_trigger(self, submission: TriggerSubmission) -> RunResult:
        return await self.submit(
            submission.workflow_id,
            submission.tenant_id,
            submission.trigger_type,
            submission.trigger_data,
            submission.priority,
        )

    async def execute_inline(
        self,
        workflow_id: str,
        tenant_id: str,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> RunResult:
        """Run ``workflow_id`` to completion without the queue."""
        definition = await self._load(workflow_id, tenant_id)
        run = await self._create_run(
            definition, TriggerType(trigger_type), trigger_data, self._queue.default_priority
        )
        return await self._executor.execute_run(run)

    async def cancel(self, run_id: str) -> bool:
        if await self.store.get_run(run_id) is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return await self._executor.cancel(run_id)

    async def get_run_status(self, run_id: str) -> RunStatusView:
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run.to_status()

"""Queue a run on Redis and process it with a worker.

Requires a Redis server on localhost:6379.
"""

import asyncio

from stepwise import RunExecutor, WorkflowDefinition, WorkflowDispatcher, WorkflowWorker, register_builtin_modules
from stepwise.config import QueueConfig
from stepwise.persistence import SQLiteRunStore
from stepwise.registry import ModuleRegistry
from stepwise.transports.redis import RedisTransport


async def main():
    registry = register_builtin_modules(ModuleRegistry())
    store = SQLiteRunStore("stepwise.db")
    executor = RunExecutor(registry, store=store)
    queue = QueueConfig(worker_concurrency=2)

    transport = RedisTransport()
    await transport.connect()

    workflow = WorkflowDefinition.model_validate(
        {
            "name": "fetch-status",
            "steps": [
                {
                    "name": "fetch",
                    "module": "http.client.request",
                    "params": {"url": "https://httpbin.org/json"},
                    "outputAs": "status",
                }
            ],
        }
    )
    await store.save_workflow(workflow)

    dispatcher = WorkflowDispatcher(executor, transport, queue)
    submitted = await dispatcher.submit(workflow.id, "default", priority=1)
    print(f"Queued run {submitted.run_id} (job {submitted.job_id})")

    # Process jobs for a few seconds, then report
    await WorkflowWorker(transport, executor, queue).start(lifespan=5)
    status = await dispatcher.get_run_status(submitted.run_id)
    print(f"Run {submitted.run_id}: {status.status.value}")

    await transport.disconnect()


if __name__ == "__main__":
    asyncio.run(main())

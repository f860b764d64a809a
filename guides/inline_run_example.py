"""Simple example showing an inline workflow run."""

import asyncio

from stepwise import (
    ModuleRegistry,
    RunExecutor,
    WorkflowDefinition,
    WorkflowDispatcher,
    register_builtin_modules,
)
from stepwise.persistence import InMemoryRunStore


async def main():
    """Run a two-step workflow without a queue."""
    registry = register_builtin_modules(ModuleRegistry())

    @registry.register_function("crm.contacts.lookup", params=["email"], integration="crm")
    async def lookup(payload):
        return {"email": payload["email"], "tier": "gold"}

    store = InMemoryRunStore()
    dispatcher = WorkflowDispatcher(RunExecutor(registry, store=store))

    workflow = WorkflowDefinition.model_validate(
        {
            "name": "greet-lead",
            "steps": [
                {"name": "lookup", "module": "crm.contacts.lookup", "params": {"email": "{{input.email}}"}, "outputAs": "lead"},
                {
                    "name": "greet",
                    "module": "utils.text.join",
                    "condition": "{{lead.tier}} === 'gold'",
                    "params": {"items": ["Welcome back,", "{{lead.email}}"]},
                    "outputAs": "greeting",
                },
            ],
        }
    )
    await store.save_workflow(workflow)

    result = await dispatcher.submit(workflow.id, "default", trigger_data={"email": "ada@example.com"})

    print(f"Run {result.run_id}: {result.status.value}")
    print(f"Output: {result.output}")
    for step in result.steps:
        print(f"  {step.step_name}: {step.status.value}")


if __name__ == "__main__":
    asyncio.run(main())

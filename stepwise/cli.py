"""Command line interface for stepwise workflows and workers."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pydantic
import typer
import yaml

from .config import StepwiseConfig, load_config
from .contracts import RunStatus, WorkflowDefinition
from .dispatch import WorkflowDispatcher
from .errors import StepwiseError, ValidationError
from .execute import RunExecutor, WorkflowWorker
from .modules import register_builtin_modules
from .persistence import RunStore, get_store
from .registry import MODULES, ModuleRegistry, validate_definition
from .resilience import ResilienceService
from .transports import BaseTransport, InMemoryTransport, get_transport

logger = logging.getLogger(__name__)

app = typer.Typer(help="CLI for stepwise workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running queue workers")
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
run_app = typer.Typer(help="Commands for inspecting workflow runs")
modules_app = typer.Typer(help="Commands for inspecting registered modules")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(run_app, name="run")
app.add_typer(modules_app, name="modules")


@dataclass
class Runtime:
    config: StepwiseConfig
    registry: ModuleRegistry
    store: RunStore
    transport: Optional[BaseTransport]
    executor: RunExecutor
    dispatcher: WorkflowDispatcher


def load_registry(config: StepwiseConfig) -> ModuleRegistry:
    """Populate the default registry with built-ins and configured module packages.

    The registry is frozen once loaded, so later registrations raise.
    """
    if MODULES.frozen:
        return MODULES
    register_builtin_modules(MODULES)
    for name in config.modules:
        importlib.import_module(name)
    MODULES.freeze()
    logger.info(f"Loaded {len(MODULES)} workflow modules")
    return MODULES


def build_runtime(config: StepwiseConfig) -> Runtime:
    registry = load_registry(config)
    store = get_store(config=config)
    transport = get_transport(config=config)
    executor = RunExecutor(registry, ResilienceService(config.resilience), store)
    dispatcher = WorkflowDispatcher(executor, transport, config.queue)
    return Runtime(config, registry, store, transport, executor, dispatcher)


def _config(ctx: typer.Context) -> StepwiseConfig:
    return ctx.obj if isinstance(ctx.obj, StepwiseConfig) else load_config()


def _read_definition(path: Path) -> WorkflowDefinition:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    # JSON is a subset of YAML, so one loader covers both formats
    data = yaml.safe_load(path.read_text()) or {}
    try:
        return WorkflowDefinition.model_validate(data)
    except pydantic.ValidationError as exc:
        typer.secho(f"Malformed workflow definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_input(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON input: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Input must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config.yaml"),
) -> None:
    """Stepwise CLI entry point."""
    config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = config


@worker_app.command("start")
def worker_start(
    ctx: typer.Context,
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run before exiting"),
    concurrency: Optional[int] = typer.Option(None, help="Runs processed in parallel"),
) -> None:
    """
    Run a worker that consumes queued workflow runs.

    Example:
        stepwise worker start --concurrency 10
    """
    config = _config(ctx)
    if concurrency:
        config.queue.worker_concurrency = concurrency
    runtime = build_runtime(config)
    if runtime.transport is None:
        typer.secho("No queue configured (transport backend is 'none')", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    worker = WorkflowWorker(runtime.transport, runtime.executor, config.queue)
    typer.echo(f"Starting worker on topic {config.queue.topic}")
    asyncio.run(worker.start(lifespan=lifespan))


@workflow_app.command("validate")
def workflow_validate(ctx: typer.Context, path: Path) -> None:
    """
    Validate a workflow definition file (JSON or YAML).

    Exits with code 1 when the definition has errors. Warnings are printed
    but do not fail validation.
    """
    registry = load_registry(_config(ctx))
    definition = _read_definition(path)
    report = validate_definition(definition, registry)
    for warning in report.warnings:
        typer.secho(f"warning: {warning}", fg=typer.colors.YELLOW)
    for error in report.errors:
        typer.secho(f"error: {error}", fg=typer.colors.RED)
    if not report.valid:
        raise typer.Exit(code=1)
    typer.echo(f"Workflow '{definition.name}' is valid")


@workflow_app.command("save")
def workflow_save(ctx: typer.Context, path: Path) -> None:
    """Validate a workflow definition file and store it."""
    runtime = build_runtime(_config(ctx))
    definition = _read_definition(path)
    report = validate_definition(definition, runtime.registry)
    if not report.valid:
        for error in report.errors:
            typer.secho(f"error: {error}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    asyncio.run(runtime.store.save_workflow(definition))
    typer.echo(f"Saved workflow {definition.id} ({definition.name})")


@workflow_app.command("list")
def workflow_list(
    ctx: typer.Context, tenant: Optional[str] = typer.Option(None, help="Only this tenant")
) -> None:
    """List stored workflow definitions."""
    store = get_store(config=_config(ctx))
    workflows = asyncio.run(store.list_workflows(tenant))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.tenant_id}\t{wf.name}\t{len(wf.steps)} steps")


@workflow_app.command("run")
def workflow_run(
    ctx: typer.Context,
    workflow_id: str,
    tenant: str = typer.Option("default", help="Tenant owning the workflow"),
    input_json: Optional[str] = typer.Option(None, "--input", help="Trigger data as a JSON object"),
    priority: Optional[int] = typer.Option(None, help="Lower numbers are served first"),
    inline: bool = typer.Option(False, help="Execute in this process instead of queueing"),
) -> None:
    """
    Trigger a workflow run.

    Example:
        stepwise workflow run 3f2c... --input '{"email": "a@b.c"}'
    """
    runtime = build_runtime(_config(ctx))
    trigger_data = _parse_input(input_json)
    # an in-process queue would be lost when this command exits
    if isinstance(runtime.transport, InMemoryTransport):
        inline = True

    try:
        if inline or runtime.transport is None:
            result = asyncio.run(
                runtime.dispatcher.execute_inline(workflow_id, tenant, trigger_data=trigger_data)
            )
        else:
            result = asyncio.run(
                runtime.dispatcher.submit(workflow_id, tenant, trigger_data=trigger_data, priority=priority)
            )
    except ValidationError as exc:
        for error in exc.errors:
            typer.secho(f"error: {error}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except StepwiseError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    if result.queued:
        typer.echo(f"Queued run {result.run_id} (job {result.job_id})")
        return
    typer.echo(f"Run {result.run_id}: {result.status.value}")
    if result.status == RunStatus.ERROR:
        typer.secho(f"Failed at step '{result.error_step}': {result.error}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(result.output, indent=2, default=str))


@run_app.command("list")
def run_list(
    ctx: typer.Context,
    workflow_id: Optional[str] = typer.Option(None, "--workflow"),
    tenant: Optional[str] = typer.Option(None),
    status: Optional[RunStatus] = typer.Option(None),
    limit: int = typer.Option(50),
) -> None:
    """List runs, newest first."""
    store = get_store(config=_config(ctx))
    runs = asyncio.run(store.list_runs(workflow_id, tenant, status, limit))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow_id}\t{run.status.value}\tattempt {run.attempt}")


@run_app.command("show")
def run_show(ctx: typer.Context, run_id: str) -> None:
    """
    Show a run with its step-by-step history.

    Example:
        stepwise run show abc123
        # Output: Run abc123: error (failed at step 'send')
        #         - fetch: succeeded (2024-01-01 10:00 -> 10:01)
        #         - send: failed: HTTP 500
    """
    store = get_store(config=_config(ctx))
    run = asyncio.run(store.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    headline = f"Run {run.id}: {run.status.value}"
    if run.error_step:
        headline += f" (failed at step '{run.error_step}')"
    typer.echo(headline)
    if run.retry_of:
        typer.echo(f"Retry of {run.retry_of}, attempt {run.attempt}")
    for step in run.steps:
        line = f"- {step.step_name}: {step.status.value}"
        if step.started_at or step.finished_at:
            line += f" ({step.started_at} -> {step.finished_at})"
        if step.error:
            line += f": {step.error}"
        typer.echo(line)
    if run.output is not None:
        typer.echo(f"Output: {json.dumps(run.output, default=str)}")


@run_app.command("cancel")
def run_cancel(ctx: typer.Context, run_id: str) -> None:
    """Request cancellation of a queued or running run."""
    store = get_store(config=_config(ctx))
    if asyncio.run(store.request_cancel(run_id)):
        typer.echo(f"Cancellation requested for run {run_id}")
    else:
        typer.echo("Run not found or already finished")
        raise typer.Exit(code=1)


@run_app.command("stats")
def run_stats(ctx: typer.Context, tenant: Optional[str] = typer.Option(None)) -> None:
    """Show run counts by status."""
    store = get_store(config=_config(ctx))
    stats = asyncio.run(store.run_stats(tenant))
    typer.echo(f"Workflows: {stats.workflows}")
    typer.echo(f"Total runs: {stats.total_runs}")
    typer.echo(f"Successful: {stats.successful_runs}")
    typer.echo(f"Failed: {stats.failed_runs}")
    for status, count in sorted(stats.by_status.items()):
        typer.echo(f"  {status}: {count}")


@modules_app.command("list")
def modules_list(ctx: typer.Context) -> None:
    """Print the catalog of registered modules."""
    registry = load_registry(_config(ctx))
    typer.echo(registry.describe())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()

"""Command line interface for pagewright workflows."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from pagewright.config import load_config
from pagewright.constants import Stage, WorkflowType
from pagewright.contracts import RunStatus, TaskStatus
from pagewright.errors import PagewrightError
from pagewright.handlers import build_default_registry
from pagewright.persistence import get_repository
from pagewright.registry import HandlerRegistry
from pagewright.service import WorkflowService

app = typer.Typer(help="CLI for pagewright content workflows")

run_app = typer.Typer(help="Commands for managing workflow runs")
task_app = typer.Typer(help="Commands for inspecting and steering tasks")

app.add_typer(run_app, name="run")
app.add_typer(task_app, name="task")

OwnerOption = typer.Option("cli", "--owner", envvar="PAGEWRIGHT_OWNER", help="Calling owner")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    """pagewright CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _service(registry: Optional[HandlerRegistry] = None) -> WorkflowService:
    return WorkflowService(
        registry or HandlerRegistry(),
        repository=get_repository(),
        config=load_config(),
    )


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except PagewrightError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"{option} is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _load_registry(locator: str) -> HandlerRegistry:
    """Import ``module:attr`` naming a registry or a zero-argument factory."""
    module_name, _, attr = locator.partition(":")
    if not attr:
        raise typer.BadParameter("expected 'module:attribute'", param_hint="--handlers")
    target = getattr(importlib.import_module(module_name), attr)
    registry = target if isinstance(target, HandlerRegistry) else target()
    if not isinstance(registry, HandlerRegistry):
        raise typer.BadParameter(f"{locator} did not produce a HandlerRegistry")
    return registry


# ----------------------------------------------------------------------
# Runs


@run_app.command("start")
def run_start(
    workflow_type: WorkflowType = typer.Option(WorkflowType.SITE_BUILD, "--type"),
    intake: Optional[Path] = typer.Option(
        None, help="YAML or JSON file with the business questionnaire"
    ),
    proposal_id: Optional[str] = None,
    owner: str = OwnerOption,
) -> None:
    """
    Start a workflow run and queue its intake task.

    Example:
        pagewright run start --type site_build --intake business.yaml
    """
    questionnaire = None
    if intake is not None:
        with open(intake) as f:
            questionnaire = yaml.safe_load(f) or {}
    run = _run(_service().start_run(owner, workflow_type, questionnaire, proposal_id))
    typer.echo(run.id)


@run_app.command("list")
def run_list(
    status: Optional[RunStatus] = None,
    owner: str = OwnerOption,
) -> None:
    """List runs with their status and current stage."""
    runs = _run(_service().list_runs(owner, status))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(
            f"{run.id}\t{run.workflow_type.value}\t{run.status.value}\t{run.current_stage.value}"
        )


@run_app.command("show")
def run_show(run_id: str, owner: str = OwnerOption) -> None:
    """
    Show status, progress, health and tasks of a run.

    Example:
        pagewright run show 5f0c...
        # Output: Run 5f0c...: running (stage: Research, 25%)
        #         Health: warning
        #         - <task id> research [blocked_user] Waiting for input
    """
    view = _run(_service().get_status(owner, run_id))
    run, progress, health = view.run, view.progress, view.health
    typer.echo(
        f"Run {run.id}: {run.status.value} "
        f"(stage: {progress.current_stage_label}, {progress.overall_percent}%)"
    )
    if run.pause_reason:
        typer.echo(f"Reason: {run.pause_reason}")
    typer.echo(f"Health: {health.status.value}")
    for issue in health.issues:
        typer.echo(f"  ! {issue}")
    for task in view.tasks:
        line = f"- {task.id} {task.task_type.value} [{task.status.value}]"
        if task.last_error:
            line += f" {task.last_error}"
        typer.echo(line)


@run_app.command("pause")
def run_pause(
    run_id: str, reason: Optional[str] = None, owner: str = OwnerOption
) -> None:
    run = _run(_service().pause_run(owner, run_id, reason))
    typer.echo(f"Run {run.id}: {run.status.value}")


@run_app.command("resume")
def run_resume(run_id: str, owner: str = OwnerOption) -> None:
    run = _run(_service().resume_run(owner, run_id))
    typer.echo(f"Run {run.id}: {run.status.value}")


@run_app.command("cancel")
def run_cancel(
    run_id: str, reason: Optional[str] = None, owner: str = OwnerOption
) -> None:
    run = _run(_service().cancel_run(owner, run_id, reason))
    typer.echo(f"Run {run.id}: {run.status.value}")


# ----------------------------------------------------------------------
# Tasks


@task_app.command("list")
def task_list(
    run_id: str,
    task_type: Optional[Stage] = typer.Option(None, "--type"),
    status: Optional[TaskStatus] = None,
    owner: str = OwnerOption,
) -> None:
    """List the tasks of a run, optionally filtered by type and status."""
    tasks = _run(_service().list_tasks(owner, run_id, task_type, status))
    if not tasks:
        typer.echo("No tasks found")
        return
    for task in tasks:
        typer.echo(
            f"{task.id}\t{task.task_type.value}\t{task.status.value}\t"
            f"{task.target_entity or ''}\t{task.attempt_count}"
        )


@task_app.command("show")
def task_show(task_id: str, owner: str = OwnerOption) -> None:
    task = _run(_service().get_task(owner, task_id))
    typer.echo(json.dumps(task.model_dump(mode="json"), indent=2))


@task_app.command("unblock")
def task_unblock(
    task_id: str,
    input_json: Optional[str] = typer.Option(None, "--input", help="JSON object to merge"),
    owner: str = OwnerOption,
) -> None:
    """
    Supply missing input to a blocked task and queue it again.

    Example:
        pagewright task unblock 9ab1... --input '{"prompt": "A bakery interior"}'
    """
    supplied = _parse_json(input_json, "--input")
    task = _run(_service().unblock_task(owner, task_id, supplied))
    typer.echo(f"Task {task.id}: {task.status.value}")


@task_app.command("retry")
def task_retry(task_id: str, owner: str = OwnerOption) -> None:
    """Requeue a failed task with a fresh retry budget."""
    task = _run(_service().retry_task(owner, task_id))
    typer.echo(f"Task {task.id}: {task.status.value}")


@task_app.command("create")
def task_create(
    run_id: str,
    task_type: Stage,
    target: Optional[str] = None,
    input_json: Optional[str] = typer.Option(None, "--input", help="JSON object"),
    depends_on: List[str] = typer.Option([], "--depends-on"),
    priority: int = 0,
    owner: str = OwnerOption,
) -> None:
    """Create an ad-hoc task in a run."""
    params = {
        "run_id": run_id,
        "task_type": task_type,
        "target_entity": target,
        "input": _parse_json(input_json, "--input"),
        "depends_on": depends_on,
        "priority": priority,
    }
    task = _run(_service().create_task(owner, params))
    typer.echo(task.id)


# ----------------------------------------------------------------------
# Processing


@app.command("process")
def process(
    handlers: Optional[str] = typer.Option(
        None, help="module:attribute of a HandlerRegistry or a factory returning one"
    ),
    cycles: int = typer.Option(1, min=1, help="Number of ticks to run"),
    interval: float = typer.Option(0.0, min=0.0, help="Seconds between ticks"),
    run_id: Optional[str] = None,
) -> None:
    """
    Recover stale tasks and dispatch eligible ones.

    Example:
        pagewright process --cycles 10 --interval 5
        pagewright process --handlers myproject.handlers:registry
    """
    config = load_config()
    registry = _load_registry(handlers) if handlers else build_default_registry(config)
    service = WorkflowService(registry, repository=get_repository(), config=config)

    async def _loop() -> None:
        for number in range(cycles):
            report = await service.tick(run_id)
            cycle = report.cycle
            typer.echo(
                f"Cycle {number + 1}: {cycle.claimed} claimed, {cycle.succeeded} done, "
                f"{cycle.requeued} requeued, {cycle.failed} failed, "
                f"{cycle.blocked} blocked"
            )
            if interval and number + 1 < cycles:
                await asyncio.sleep(interval)

    _run(_loop())

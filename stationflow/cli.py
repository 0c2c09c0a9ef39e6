"""Command line interface for running stationflow workers."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
import yaml
from pydantic import ValidationError

from .config import load_config
from .engine import WorkflowEngine, build_engine
from .errors import StationflowError

T = TypeVar("T")

app = typer.Typer(help="CLI for stationflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow graphs")
instance_app = typer.Typer(help="Commands for managing workflow instances")
hook_app = typer.Typer(help="Commands for completing hook nodes")

app.add_typer(workflow_app, name="workflow")
app.add_typer(instance_app, name="instance")
app.add_typer(hook_app, name="hook")


@app.callback()
def main() -> None:
    """stationflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _with_engine(func: Callable[[WorkflowEngine], Awaitable[T]]) -> T:
    async def runner() -> T:
        async with build_engine() as engine:
            return await func(engine)

    try:
        return asyncio.run(runner())
    except StationflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(raw: Optional[str], option: str) -> Any:
    if raw is None:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON for {option}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _dump(value: Any) -> str:
    return json.dumps(value, default=str)


@app.command("worker")
def worker(lifespan: Optional[float] = None) -> None:
    """
    Run a worker that executes queued node activations.

    Args:
        lifespan: Worker timeout in seconds (default: run indefinitely)

    Example:
        stationflow worker
        stationflow worker --lifespan 300
    """
    typer.echo("Starting activation worker")
    _with_engine(lambda engine: engine.run_worker(lifespan=lifespan))


@app.command("timers")
def timers(lifespan: Optional[float] = None) -> None:
    """
    Run the consumer that resumes instances when their timers fire.

    Example:
        stationflow timers --lifespan 300
    """
    typer.echo("Starting timer consumer")
    _with_engine(lambda engine: engine.run_timers(lifespan=lifespan))


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """
    Load a workflow graph from a YAML or JSON file.

    Example:
        stationflow workflow load ./workflows/order.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    try:
        workflow = _with_engine(lambda engine: engine.load_workflow(data))
    except ValidationError as exc:
        typer.secho(f"Invalid workflow: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Loaded workflow {workflow.id} ({len(workflow.nodes)} nodes)")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show the nodes and edges of a workflow.

    Example:
        stationflow workflow show order
        # Output: Workflow order: Order processing
        #         - charge [http]
        #         charge -> wait (normal)
    """
    workflow = _with_engine(lambda engine: engine.graph.workflow(workflow_id))
    typer.echo(f"Workflow {workflow.id}: {workflow.name}")
    for node in workflow.nodes:
        typer.echo(f"- {node.id} [{node.kind.value}] {node.label}".rstrip())
    for edge in workflow.edges:
        condition = f" when {edge.condition}" if edge.condition else ""
        typer.echo(f"{edge.source_id} -> {edge.target_id} ({edge.kind.value}){condition}")


@instance_app.command("start")
def instance_start(
    workflow_id: str,
    input: Optional[str] = typer.Option(None, help="JSON input of the instance"),
) -> None:
    """
    Start a new instance of a workflow.

    Example:
        stationflow instance start order --input '{"orderId": 42}'
        # Output: Started instance 6f1c...
    """
    payload = _parse_json(input, "--input")
    instance = _with_engine(lambda engine: engine.start_instance(workflow_id, payload))
    typer.echo(f"Started instance {instance.id}")


@instance_app.command("list")
def instance_list(
    workflow_id: Optional[str] = typer.Option(None, help="Only this workflow"),
) -> None:
    """
    List instances with their status.

    Example:
        stationflow instance list
        # Output: 6f1c...    order    running
    """
    instances = _with_engine(
        lambda engine: engine.repository.list_instances(workflow_id)
    )
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        typer.echo(f"{instance.id}\t{instance.workflow_id}\t{instance.status.value}")


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show an instance, its state and its activities in creation order.
    """

    async def load(engine: WorkflowEngine):
        instance = await engine.repository.get_instance(instance_id)
        if instance is None:
            return None, [], {}
        activities = await engine.repository.list_activities(instance_id)
        state = await engine.instance_state(instance_id)
        return instance, activities, state

    instance, activities, state = _with_engine(load)
    if instance is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    typer.echo(f"Instance {instance.id}: {instance.status.value}")
    typer.echo(f"Workflow: {instance.workflow_id}")
    if instance.error:
        typer.echo(f"Error: {instance.error}")
    typer.echo(f"State: {_dump(state)}")
    for activity in activities:
        typer.echo(
            f"- {activity.node_id}: {activity.status.value}"
            + (f" {_dump(activity.output)}" if activity.output is not None else "")
        )


@hook_app.command("complete")
def hook_complete(
    workflow_id: str,
    node_id: str,
    instance_id: str,
    body: Optional[str] = typer.Option(None, help="JSON callback body"),
) -> None:
    """
    Complete a waiting hook node and continue the instance.

    Example:
        stationflow hook complete order approval 6f1c... --body '{"approved": true}'
    """
    payload = _parse_json(body, "--body")
    closure = _with_engine(
        lambda engine: engine.complete_hook(workflow_id, node_id, instance_id, payload)
    )
    if closure is None:
        typer.echo("No hook waiting")
        return
    typer.echo(f"Hook {node_id} completed")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()

"""Command line entry point for the workflow engine."""

import asyncio
import json
from pathlib import Path

import click
import structlog
from rich.console import Console
from rich.table import Table

from app.config import get_settings
from core.exceptions import WorkflowEngineError
from core.logging_config import setup_logging
from tasks.registry import get_task_registry
from workflow.definitions import DEFINITION_SUFFIXES, DefinitionStore
from workflow.engine import WorkflowEngine

logger = structlog.get_logger(__name__)

console = Console()


def _parse_vars(pairs: tuple) -> dict:
    """Turn ``key=value`` pairs into variables. Values are JSON when they parse as JSON."""
    variables = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--var")
        key, raw = pair.split("=", 1)
        try:
            variables[key] = json.loads(raw)
        except json.JSONDecodeError:
            variables[key] = raw
    return variables


@click.group()
@click.pass_context
def cli(ctx):
    """Workflow Automation Engine - run declarative multi-step workflows."""
    ctx.ensure_object(dict)
    settings = get_settings()
    setup_logging(stream=click.get_text_stream("stderr"), settings=settings)
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
def validate(paths):
    """Validate workflow definition files or directories."""
    registry = get_task_registry()
    store = DefinitionStore(known_types=lambda: registry.available_types)
    failed = False

    table = Table()
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Steps", justify="right")
    table.add_column("Schedule")

    for path in paths:
        path = Path(path)
        if path.is_dir():
            files = sorted(p for p in path.iterdir() if p.suffix.lower() in DEFINITION_SUFFIXES)
        else:
            files = [path]
        for file in files:
            try:
                definition = store.load_file(file)
            except WorkflowEngineError as e:
                failed = True
                click.secho(f"✗ {file}: {e.message}", fg="red", err=True)
                continue
            schedule = definition.schedule.type if definition.schedule else "-"
            table.add_row(definition.id, definition.name, definition.version, str(len(definition.steps)), schedule)

    console.print(table)
    if failed:
        raise SystemExit(1)


@cli.command()
@click.argument("definition", type=click.Path(exists=True, dir_okay=False))
@click.option("--var", "-v", "pairs", multiple=True, help="Initial variable as key=value (repeatable)")
@click.option("--timeout", "-t", type=float, default=None, help="Give up after this many seconds")
@click.option("--logs", is_flag=True, help="Print the instance log after the run")
@click.pass_context
def run(ctx, definition, pairs, timeout, logs):
    """Run one workflow definition to completion and print its status."""
    variables = _parse_vars(pairs)

    async def _run() -> dict:
        engine = WorkflowEngine(settings=ctx.obj["settings"])
        loaded = engine.store.load_file(definition)
        async with engine:
            instance_id = engine.start_workflow(loaded.id, variables)
            status = await engine.wait_for_instance(instance_id, timeout=timeout)
            if logs:
                status["logs"] = engine.get_workflow_logs(instance_id)
            return status

    try:
        status = asyncio.run(_run())
    except WorkflowEngineError as e:
        click.secho(f"Error: {e.message}", fg="red", err=True)
        raise SystemExit(1)
    except asyncio.TimeoutError:
        click.secho(f"Timed out after {timeout}s", fg="red", err=True)
        raise SystemExit(2)

    click.echo(json.dumps(status, indent=2, default=str))
    if status["status"] != "completed":
        raise SystemExit(1)


@cli.command()
@click.option(
    "--definitions", "-d", "definitions_path",
    type=click.Path(file_okay=False),
    default=None,
    help="Definitions directory (defaults to DEFINITIONS_PATH)",
)
@click.pass_context
def serve(ctx, definitions_path):
    """Load a definitions directory and run scheduled workflows until interrupted."""
    settings = ctx.obj["settings"]
    path = definitions_path or settings.DEFINITIONS_PATH

    async def _serve() -> None:
        engine = WorkflowEngine(settings=settings)
        engine.store.load_directory(path)
        async with engine:
            for trigger in engine.scheduler.list_triggers():
                console.print(f"  {trigger['definition_id']}: next run {trigger['next_run_at']}")
            logger.info("Serving workflows", path=str(path), definitions=len(engine.store))
            await asyncio.Event().wait()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/]")
    except WorkflowEngineError as e:
        click.secho(f"Error: {e.message}", fg="red", err=True)
        raise SystemExit(1)


@cli.command("step-types")
def step_types():
    """List registered step types."""
    table = Table()
    table.add_column("Type")
    table.add_column("Name")
    table.add_column("Description")
    for item in get_task_registry().list_all():
        table.add_row(item["task_type"], item["display_name"], item["description"])
    console.print(table)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()

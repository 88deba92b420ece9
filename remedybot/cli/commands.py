"""CLI commands for remedybot.

Single entry point: top-level commands (init, worker, enqueue, waves) plus the
dlq and sandbox command groups.
"""

import asyncio
import importlib
import json
import signal
import uuid
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from remedybot import __logo__, __version__
from remedybot.cli.command_groups.dlq_command import register_dlq_commands
from remedybot.cli.command_groups.sandbox_command import register_sandbox_commands
from remedybot.cli.shared.logging_utils import configure_console, ensure_rotating_log_file

app = typer.Typer(
    name="remedybot",
    help=f"{__logo__} remedybot - orchestrated codebase remediation",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} remedybot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """remedybot - orchestrated codebase remediation."""
    pass


def load_factory(spec: str):
    """Resolve 'package.module:function' to a callable."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise typer.BadParameter("factory must look like 'package.module:function'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise typer.BadParameter(f"{spec} is not callable")
    return factory


@app.command()
def init(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
):
    """Write a default config file to ~/.remedybot/config.json."""
    from remedybot.config.loader import get_config_path, save_config
    from remedybot.config.schema import Config

    path = get_config_path()
    if path.exists() and not force:
        console.print(f"[yellow]Config already exists at {path}[/yellow] (use --force to overwrite)")
        raise typer.Exit(1)
    save_config(Config(), path)
    console.print(f"[green]✓[/green] Wrote default config to {path}")


@app.command()
def worker(
    factory: str = typer.Option(..., "--factory", "-f", help="module:function returning an Orchestrator"),
    consumer: str = typer.Option(None, "--consumer", "-c", help="Consumer name (default worker-<pid>)"),
    log_level: str = typer.Option(None, "--log-level", help="Override logging.level"),
):
    """Consume the task stream and run orchestrations and agents."""
    from remedybot.config.loader import load_config
    from remedybot.orchestrator.engine import Orchestrator
    from remedybot.queue.retry import RetryPolicy
    from remedybot.queue.streams import StreamStore
    from remedybot.queue.worker import AgentWorker

    config = load_config()
    level = log_level or config.logging.level
    configure_console(level)
    log_path = ensure_rotating_log_file(config.logging.file or "worker", level=level)

    orchestrator = load_factory(factory)(config)
    if not isinstance(orchestrator, Orchestrator):
        console.print(f"[red]{factory} returned {type(orchestrator).__name__}, expected Orchestrator[/red]")
        raise typer.Exit(1)

    streams = StreamStore(config.queue_db_path)
    agent_worker = AgentWorker(
        streams=streams,
        orchestrator=orchestrator,
        retry=RetryPolicy(streams, config.retry, dead_letter_stream=config.queue.dead_letter_stream),
        config=config.queue,
        consumer=consumer,
    )
    console.print(f"{__logo__} Worker {agent_worker.consumer} on stream [cyan]{config.queue.stream}[/cyan]")
    console.print(f"[dim]Logs: {log_path}[/dim]")

    async def _run() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, agent_worker.stop)
            except NotImplementedError:
                pass
        await agent_worker.run()

    asyncio.run(_run())


@app.command()
def enqueue(
    role: str = typer.Option("orchestrate", "--role", "-r", help="orchestrate, approve or an agent kind"),
    request: str = typer.Option(None, "--request", "-m", help="Request text (orchestrate) or task description"),
    orchestration_id: str = typer.Option(None, "--orchestration-id", help="Orchestration to approve"),
    context_file: Path = typer.Option(None, "--context", help="JSON file with the orchestration context"),
    task_id: str = typer.Option(None, "--task-id", help="Task id (default: random)"),
):
    """Publish a task to the task stream."""
    from remedybot.config.loader import load_config
    from remedybot.queue.streams import StreamStore

    config = load_config()
    payload: dict = {"taskId": task_id or f"task-{uuid.uuid4().hex[:12]}", "role": role}
    if request:
        payload["request" if role == "orchestrate" else "description"] = request
    if orchestration_id:
        payload["orchestrationId"] = orchestration_id
    if context_file:
        try:
            payload["context"] = json.loads(context_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            console.print(f"[red]Cannot read context file: {e}[/red]")
            raise typer.Exit(1)
    if role == "orchestrate" and not request:
        console.print("[red]--request is required for role orchestrate[/red]")
        raise typer.Exit(1)
    if role == "approve" and not orchestration_id:
        console.print("[red]--orchestration-id is required for role approve[/red]")
        raise typer.Exit(1)

    entry_id = StreamStore(config.queue_db_path).add(config.queue.stream, payload)
    console.print(f"[green]✓[/green] Enqueued {payload['taskId']} as entry {entry_id}")


@app.command()
def waves(
    plan_file: Path = typer.Argument(..., help="Plan JSON (planner output)"),
):
    """Print the execution waves of a plan."""
    from remedybot.orchestrator.models import parse_plan
    from remedybot.orchestrator.waves import compute_waves, forced_subtasks
    from remedybot.utils.exceptions import PlanInvalid

    try:
        plan = parse_plan(plan_file.read_text(encoding="utf-8"))
    except OSError as e:
        console.print(f"[red]Cannot read {plan_file}: {e}[/red]")
        raise typer.Exit(1)
    except PlanInvalid as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    forced = set(forced_subtasks(plan))
    table = Table(title=f"{plan.summary} (risk: {plan.risk_level})")
    table.add_column("Wave", justify="right", style="cyan")
    table.add_column("Subtask")
    table.add_column("Agent")
    table.add_column("Priority")
    table.add_column("Depends on")
    for idx, wave in enumerate(compute_waves(plan), start=1):
        for task in wave:
            marker = " [yellow](forced)[/yellow]" if task.id in forced else ""
            table.add_row(str(idx), f"{task.id}{marker}", task.agent, task.priority, ", ".join(task.dependencies))
    console.print(table)


register_dlq_commands(app, console)
register_sandbox_commands(app, console)

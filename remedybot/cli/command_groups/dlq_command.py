"""Dead-letter command group: inspect and replay exhausted tasks."""

from __future__ import annotations

import json

import typer
from rich.console import Console
from rich.table import Table


def register_dlq_commands(app: typer.Typer, console: Console) -> None:
    """Register dlq command group."""
    dlq_app = typer.Typer(help="Inspect and replay dead-lettered tasks")
    app.add_typer(dlq_app, name="dlq")

    def _policy():
        from remedybot.config.loader import load_config
        from remedybot.queue.retry import RetryPolicy
        from remedybot.queue.streams import StreamStore

        config = load_config()
        streams = StreamStore(config.queue_db_path)
        policy = RetryPolicy(streams, config.retry, dead_letter_stream=config.queue.dead_letter_stream)
        return config, policy

    @dlq_app.command("list")
    def dlq_list(
        limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries to show"),
        as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
    ) -> None:
        """List dead-lettered tasks."""
        _, policy = _policy()
        entries = policy.list_dead_letters(count=limit)
        if as_json:
            console.print_json(json.dumps([{"id": e.id, "data": e.fields} for e in entries], default=str))
            return
        if not entries:
            console.print("Dead-letter stream is empty.")
            return
        table = Table(title=f"Dead letters ({policy.dead_letter_stream})")
        table.add_column("ID", style="cyan")
        table.add_column("Task")
        table.add_column("Role")
        table.add_column("Attempts", justify="right")
        table.add_column("Reason", style="red")
        table.add_column("Sent at")
        for entry in entries:
            data = entry.fields
            table.add_row(
                entry.id,
                str(data.get("_originalTaskId", "")),
                str(data.get("role", "")),
                str(data.get("_finalAttempt", "")),
                str(data.get("_dlqReason", ""))[:80],
                str(data.get("_sentToDLQAt", "")),
            )
        console.print(table)

    @dlq_app.command("replay")
    def dlq_replay(
        entry_id: str = typer.Argument(..., help="Dead-letter entry id"),
        stream: str = typer.Option(None, "--stream", "-s", help="Target stream (default: primary task stream)"),
    ) -> None:
        """Move a dead-lettered task back to the task stream."""
        config, policy = _policy()
        target = stream or config.queue.stream
        new_id = policy.replay_dead_letter(entry_id, target)
        if new_id is None:
            console.print(f"[red]Dead-letter entry {entry_id} not found[/red]")
            raise typer.Exit(1)
        console.print(f"[green]✓[/green] Replayed {entry_id} to {target} as {new_id}")

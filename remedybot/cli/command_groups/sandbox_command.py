"""Sandbox command group: capability report and command linting."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table


def register_sandbox_commands(app: typer.Typer, console: Console) -> None:
    """Register sandbox command group."""
    sandbox_app = typer.Typer(help="Sandbox runtime tools")
    app.add_typer(sandbox_app, name="sandbox")

    @sandbox_app.command("caps")
    def sandbox_caps(
        runner: str = typer.Option(None, "--runner", help="Shell runner script to check"),
    ) -> None:
        """Show which isolation tiers this host offers."""
        from remedybot.config.loader import load_config
        from remedybot.sandbox.docker_backend import DockerProbe
        from remedybot.sandbox.runner import get_sandbox_capabilities

        config = load_config()
        probe = DockerProbe(timeout=config.sandbox.probe_timeout_s)
        caps = asyncio.run(get_sandbox_capabilities(probe, runner or config.sandbox.runner_path))

        table = Table(title="Sandbox capabilities")
        table.add_column("Tier", style="cyan")
        table.add_column("Available")
        for tier in ("container", "runsc", "shell", "native"):
            table.add_row(tier, "[green]✓[/green]" if caps[tier] else "[dim]✗[/dim]")
        console.print(table)
        console.print(f"Recommended: [bold]{caps['recommended']}[/bold]")

    @sandbox_app.command("lint")
    def sandbox_lint(
        commands: list[str] = typer.Argument(..., help="Commands to check"),
    ) -> None:
        """Check commands against the sandbox safety linter."""
        from remedybot.sandbox.linter import validate_harness_commands

        report = validate_harness_commands(commands)
        for message in report["blocked"]:
            console.print(f"[red]✗ {message}[/red]")
        for message in report["warnings"]:
            console.print(f"[yellow]! {message}[/yellow]")
        if report["valid"]:
            console.print("[green]✓[/green] No blocked patterns found")
        else:
            raise typer.Exit(1)

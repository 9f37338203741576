"""Main Typer app definition and commands."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from storyloop import __version__
from storyloop.cli.common import get_console, get_orchestrator, run_async, set_config_path
from storyloop.cli.display import (
    history_table,
    show_loop_result,
    show_pipeline_result,
    show_status,
)
from storyloop.models import RoleId

app = typer.Typer(
    name="storyloop",
    help="Drive an LLM-backed epic/story/task development pipeline",
    add_completion=False,
)

console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"storyloop version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to storyloop.yaml (default: ./storyloop.yaml if present)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Storyloop - orchestration for LLM-driven software generation.

    Decomposes requirements into epics, stories and tasks, and drives the
    develop/review/test loop until the project passes integration testing.
    """
    set_config_path(config)
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


@app.command()
def run(
    project_id: str = typer.Argument(..., help="Project identifier"),
    document: Optional[Path] = typer.Option(
        None, "--document", "-d", help="Source document for requirements analysis",
    ),
    title: str = typer.Option("", "--title", "-t", help="Project title"),
) -> None:
    """Run the full pipeline, resuming from whatever already exists."""
    text = ""
    if document is not None:
        if not document.is_file():
            console.print(f"[red]Document not found: {document}[/red]")
            raise typer.Exit(1)
        text = document.read_text(encoding="utf-8")
    orchestrator = get_orchestrator()
    result = run_async(orchestrator.run_pipeline(project_id, title=title, document=text))
    show_pipeline_result(console, result)
    if result.status != "completed":
        raise typer.Exit(3)


@app.command()
def develop(
    project_id: str = typer.Argument(..., help="Project identifier"),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", "-n", help="Override the configured iteration cap",
    ),
) -> None:
    """Run only the development loop."""
    orchestrator = get_orchestrator()
    result = run_async(orchestrator.run_development_loop(project_id, max_iterations=max_iterations))
    show_loop_result(console, result)


@app.command()
def pause(project_id: str = typer.Argument(..., help="Project identifier")) -> None:
    """Stop the development loop before its next iteration."""
    run_async(get_orchestrator().pause(project_id))
    console.print(f"[yellow]Pause requested for {project_id}[/yellow]")


@app.command()
def resume(
    project_id: str = typer.Argument(..., help="Project identifier"),
    restart: bool = typer.Option(
        True, "--restart/--no-restart", help="Start the loop if none is active",
    ),
) -> None:
    """Clear the pause flag and reset failed tasks to pending."""
    result = run_async(get_orchestrator().resume(project_id, restart=restart))
    if result is None:
        console.print(f"[green]Resumed {project_id}[/green]")
    else:
        show_loop_result(console, result)


@app.command()
def reset(
    project_id: str = typer.Argument(..., help="Project identifier"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Archive development history so the loop starts over."""
    if not yes and not typer.confirm(
        f"Archive all development records for {project_id}?", default=False,
    ):
        raise typer.Exit(0)
    archived = run_async(get_orchestrator().reset_development(project_id))
    console.print(f"Archived {archived} development records for {project_id}")


@app.command()
def status(project_id: str = typer.Argument(..., help="Project identifier")) -> None:
    """Show the current phase and task table."""
    show_status(console, run_async(get_orchestrator().project_status(project_id)))


@app.command()
def history(
    project_id: str = typer.Argument(..., help="Project identifier"),
    role: Optional[str] = typer.Option(None, "--role", "-r", help="Only this role id"),
    limit: int = typer.Option(30, "--limit", "-l", help="Newest N records"),
) -> None:
    """List execution records, newest first."""
    roles = None
    if role is not None:
        try:
            roles = [RoleId(role)]
        except ValueError:
            console.print(f"[red]Unknown role: {role}[/red]")
            raise typer.Exit(1)
    orchestrator = get_orchestrator()
    records = run_async(orchestrator.store.latest(project_id, roles, limit=limit))
    if not records:
        console.print(f"[dim]No records for {project_id}[/dim]")
        return
    console.print(history_table(records))


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]

"""Shared CLI state: console, config path and the orchestrator factory."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

import typer
from rich.console import Console

from storyloop.config import ConfigError, StoryloopConfig, get_config
from storyloop.errors import StoryloopError
from storyloop.models import SchemaValidationError
from storyloop.orchestrator import Orchestrator

T = TypeVar("T")

# Set by the --config option on the main callback
_config_path: Optional[str] = None

_console: Optional[Console] = None


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_config_path(path: Optional[str]) -> None:
    global _config_path
    _config_path = path


def load_cli_config() -> StoryloopConfig:
    """Load config for a command, exiting with a message when it is invalid."""
    try:
        return get_config(_config_path)
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(2)


def get_orchestrator() -> Orchestrator:
    return Orchestrator(load_cli_config())


def run_async(awaitable: Awaitable[T]) -> T:
    """
    Run a coroutine to completion for a command.

    Engine errors are printed and turned into exit code 1.
    """
    try:
        return asyncio.run(awaitable)  # type: ignore[arg-type]
    except (StoryloopError, SchemaValidationError) as e:
        console = get_console()
        console.print(f"[red]Error ({type(e).__name__}):[/red] {e}")
        needs_human: Any = getattr(e, "needs_human", None)
        if needs_human is True:
            console.print("[yellow]This failure needs human attention before re-running.[/yellow]")
        elif needs_human is False:
            console.print("[dim]Transient failure; safe to re-run.[/dim]")
        raise typer.Exit(1)

"""CLI package for storyloop.

Modules:
    app.py      - Typer app, version callback and commands
    display.py  - Rich formatting for phases, task tables and history
    common.py   - Console singleton, config loading, async runner

Usage:
    from storyloop.cli import app, cli_main
"""
from storyloop.cli.app import app, cli_main

__all__ = ["app", "cli_main"]

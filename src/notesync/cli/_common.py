"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the engine factory and the
formatting helpers used across every command group.
"""

from __future__ import annotations

import logging
from pathlib import Path

import click
from rich.console import Console

from .. import NOTESYNC_HOME
from ..sync.engine import SyncEngine
from ..sync.story import StepResult, describe_error

console = Console()
logger = logging.getLogger("notesync.cli")

home_option = click.option(
    "--home",
    default=NOTESYNC_HOME,
    type=click.Path(),
    help="NoteSync home directory.",
)


def get_engine(home: str, **kwargs) -> SyncEngine:
    """Build an engine for the ``--home`` directory."""
    return SyncEngine(Path(home).expanduser(), **kwargs)


def print_result(result: StepResult) -> None:
    """Summarize how a synchronization run ended."""
    if result.error is not None:
        console.print(f"  [bold red]Failed:[/] {describe_error(result.error)}")
    elif result.needs_attention:
        console.print("  [yellow]Needs attention:[/] run [cyan]notesync sync run[/] interactively.")
    else:
        console.print("  [green]Done.[/]")

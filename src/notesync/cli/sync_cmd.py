"""Sync commands: run, oauth-redirect, startup, shutdown, status."""

from __future__ import annotations

import asyncio
import json
import sys

import click
from rich.table import Table

from ..cloud.base import InvalidParameterError
from ._common import console, get_engine, home_option, print_result
from .console_ui import ConsoleUi


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Encrypted cloud synchronization.

        One encrypted blob in your cloud, merged on every device.
        """

    @sync.command("run")
    @home_option
    @click.option("--force", is_flag=True, help="Skip the setup check, use stored credentials.")
    @click.option("--change-storage", is_flag=True, help="Choose another cloud storage first.")
    def sync_run(home, force, change_storage):
        """Synchronize the notes with the cloud storage."""
        engine = get_engine(home, ui=ConsoleUi())
        console.print("\n  Synchronizing notes...")
        if change_storage:
            result = asyncio.run(engine.change_cloud_storage())
        else:
            result = asyncio.run(engine.synchronize(force=force))
        print_result(result)
        if result.error is not None:
            sys.exit(1)

    @sync.command("oauth-redirect")
    @home_option
    @click.argument("redirect_url")
    def sync_oauth_redirect(home, redirect_url):
        """Finish a cloud storage login with the URL the browser was sent to."""
        engine = get_engine(home, ui=ConsoleUi())
        try:
            result = asyncio.run(engine.resume_oauth(redirect_url))
        except InvalidParameterError as exc:
            console.print(f"  [bold red]{exc}[/]")
            sys.exit(1)
        print_result(result)
        if result.error is not None:
            sys.exit(1)

    def _print_silent_report(report, as_json: bool) -> None:
        if as_json:
            click.echo(json.dumps(report.__dict__, indent=2))
            return
        if report.skipped:
            console.print("  [dim]Skipped.[/]")
        elif report.error:
            console.print(f"  [bold red]Failed:[/] {report.error}")
        elif report.needs_attention:
            console.print("  [yellow]Needs attention, run notesync sync run.[/]")
        else:
            changed = "changed" if report.changed else "unchanged"
            console.print(f"  [green]Synchronized[/] [dim](local notes {changed})[/]")

    @sync.command("startup")
    @home_option
    @click.option("--json-out", is_flag=True, help="Print the report as JSON.")
    def sync_startup(home, json_out):
        """Silent synchronization for app start."""
        report = asyncio.run(get_engine(home).synchronize_at_startup())
        _print_silent_report(report, json_out)

    @sync.command("shutdown")
    @home_option
    @click.option("--json-out", is_flag=True, help="Print the report as JSON.")
    def sync_shutdown(home, json_out):
        """Silent synchronization for app exit, only if notes changed."""
        report = asyncio.run(get_engine(home).synchronize_at_shutdown())
        _print_silent_report(report, json_out)

    @sync.command("status")
    @home_option
    @click.option("--json-out", is_flag=True, help="Print the status as JSON.")
    def sync_status(home, json_out):
        """Show cloud storage, transfer code and last synchronization."""
        status = get_engine(home).status()
        if json_out:
            click.echo(json.dumps(status, indent=2))
            return

        table = Table(title="NoteSync status", show_header=False)
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        for key, value in status.items():
            table.add_row(key.replace("_", " "), "-" if value is None else str(value))
        console.print(table)

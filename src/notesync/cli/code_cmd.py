"""Transfer code commands: show, new, set, history."""

from __future__ import annotations

import sys

import click

from ..sync.transfer_code import (
    format_for_display,
    generate_code,
    is_code_set,
    is_valid_code,
    sanitize_user_input,
)
from ._common import console, get_engine, home_option, logger
from .console_ui import print_transfer_code


def register_code_commands(main: click.Group) -> None:
    """Register the transfer code command group."""

    @main.group()
    def code():
        """Manage the transfer code that protects the cloud repository."""

    @code.command("show")
    @home_option
    def code_show(home):
        """Show the current transfer code."""
        settings = get_engine(home).settings_service.load_or_default()
        if not is_code_set(settings.transfer_code):
            console.print("  [yellow]No transfer code yet.[/] It is created on the first upload.")
            return
        print_transfer_code(settings.transfer_code)

    @code.command("new")
    @home_option
    def code_new(home):
        """Create a new transfer code, the old one goes to the history.

        The cloud repository is re-encrypted with the new code on the
        next synchronization.
        """
        service = get_engine(home).settings_service
        settings = service.load_or_default()
        settings.adopt_transfer_code(generate_code())
        if not service.try_save(settings):
            console.print("  [bold red]Could not save the settings.[/]")
            sys.exit(1)
        logger.info("Generated a new transfer code")
        print_transfer_code(settings.transfer_code)
        console.print("  [dim]Write it down, other devices need it.[/]")

    @code.command("set")
    @home_option
    @click.argument("transfer_code")
    def code_set(home, transfer_code):
        """Use TRANSFER_CODE from another device."""
        sanitized = sanitize_user_input(transfer_code)
        if not is_valid_code(sanitized):
            console.print("  [bold red]Not a valid transfer code.[/] It has 16 letters and digits.")
            sys.exit(1)
        service = get_engine(home).settings_service
        settings = service.load_or_default()
        settings.adopt_transfer_code(sanitized)
        if not service.try_save(settings):
            console.print("  [bold red]Could not save the settings.[/]")
            sys.exit(1)
        print_transfer_code(settings.transfer_code)

    @code.command("history")
    @home_option
    def code_history(home):
        """List retired transfer codes, most recent first."""
        settings = get_engine(home).settings_service.load_or_default()
        if not settings.transfer_code_history:
            console.print("  [dim]No retired transfer codes.[/]")
            return
        for index, old_code in enumerate(settings.transfer_code_history, start=1):
            console.print(f"  {index}. {format_for_display(old_code)}")

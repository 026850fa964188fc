"""
NoteSync CLI: encrypted note synchronization from the command line.

This package organizes the CLI into modular command groups.
Each group lives in its own module and is registered on the
main Click group via its register function.

Entry point: notesync.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="notesync")
@click.option("--verbose", "-v", is_flag=True, help="Log what the synchronization does.")
def main(verbose):
    """NoteSync: encrypted two-way note synchronization.

    Your notes. Any cloud. Never readable there.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .sync_cmd import register_sync_commands
from .code_cmd import register_code_commands

register_sync_commands(main)
register_code_commands(main)

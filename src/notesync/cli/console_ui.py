"""Terminal front end for the synchronization story."""

from __future__ import annotations

from typing import Optional

import click
from rich.panel import Panel

from ..cloud.base import CloudStorageCredentials, CredentialsRequirements
from ..sync.transfer_code import format_for_display
from ..sync.ui import MergeChoice, SyncUi, ToastSeverity
from ._common import console

_SEVERITY_STYLES = {
    ToastSeverity.INFO: "cyan",
    ToastSeverity.WARNING: "yellow",
    ToastSeverity.ERROR: "bold red",
}


class ConsoleUi(SyncUi):
    """Asks questions with click prompts and prints with Rich."""

    async def confirm_first_time(self) -> bool:
        console.print(Panel(
            "Your notes are encrypted on this device and stored as one blob "
            "in a cloud storage of your choice. The storage never sees a "
            "readable note.",
            title="Cloud synchronization",
            border_style="cyan",
        ))
        return click.confirm("Set up synchronization now?", default=True)

    async def choose_cloud_storage(self, storage_ids: list[str]) -> Optional[str]:
        for index, storage_id in enumerate(storage_ids, start=1):
            console.print(f"  [cyan]{index}[/] {storage_id}")
        choice = click.prompt(
            "Cloud storage (0 to cancel)",
            type=click.IntRange(0, len(storage_ids)),
            default=1,
        )
        return storage_ids[choice - 1] if choice else None

    async def enter_credentials(
        self,
        storage_id: str,
        requirements: CredentialsRequirements,
        current: Optional[CloudStorageCredentials],
    ) -> Optional[CloudStorageCredentials]:
        current = current or CloudStorageCredentials(cloud_storage_id=storage_id)
        values = current.model_dump()
        values["cloud_storage_id"] = storage_id
        if CredentialsRequirements.URL in requirements:
            values["url"] = click.prompt("URL or folder", default=current.url or "")
        if CredentialsRequirements.USERNAME in requirements:
            values["username"] = click.prompt("User name", default=current.username or "")
        if CredentialsRequirements.PASSWORD in requirements:
            values["password"] = click.prompt("Password", hide_input=True)
        if CredentialsRequirements.ACCEPT_UNSAFE_CERTIFICATE in requirements:
            values["accept_unsafe_certificate"] = click.confirm(
                "Accept self-signed certificates?",
                default=current.accept_unsafe_certificate,
            )
        if not click.confirm("Use these credentials?", default=True):
            return None
        return CloudStorageCredentials(**values)

    async def open_oauth_url(self, url: str) -> None:
        console.print("\n  Log in to the cloud storage:")
        console.print(f"  [link={url}]{url}[/link]\n")
        click.launch(url)

    async def enter_transfer_code(self) -> Optional[str]:
        console.print(
            "  The cloud repository is protected by a transfer code. "
            "You find it on the device that created the repository."
        )
        text = click.prompt("Transfer code (empty to cancel)", default="", show_default=False)
        return text or None

    async def choose_merge_strategy(self) -> Optional[MergeChoice]:
        console.print(Panel(
            "The cloud holds notes that were not created from this device's "
            "repository.\n\n"
            "  [cyan]merge[/]      combine both note collections\n"
            "  [cyan]use_local[/]  replace the cloud notes with the notes of this device\n"
            "  [cyan]use_cloud[/]  replace the notes of this device with the cloud notes",
            title="Different repositories",
            border_style="yellow",
        ))
        choice = click.prompt(
            "Strategy (empty to cancel)",
            type=click.Choice([c.value for c in MergeChoice] + [""]),
            default="",
            show_default=False,
        )
        return MergeChoice(choice) if choice else None

    def show_toast(self, text: str, severity: ToastSeverity = ToastSeverity.INFO) -> None:
        console.print(f"  [{_SEVERITY_STYLES[severity]}]{text}[/]")

    async def show_message(self, text: str) -> None:
        console.print(Panel(text, border_style="green"))


def print_transfer_code(code: str) -> None:
    console.print(f"  Transfer code: [bold cyan]{format_for_display(code)}[/]")

"""CLI command implementations — chat, ask, download, folders."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import click
from rich.console import Console

from mailagent.agent.engine import MailAgent
from mailagent.agent.scheduler import BackgroundSync
from mailagent.agent.session import CommandHistory, ConversationSession, TerminalModes
from mailagent.imap.client import MailboxConnectionError, ProtocolOperationError
from mailagent.imap.downloader import EmailDownloader
from mailagent.imap.types import SpecialUse
from mailagent.processing.actions import MailActions, RichPrompter
from mailagent.processing.backends import BackendSelector

if TYPE_CHECKING:
    from mailagent.cli.main import CliState

logger = logging.getLogger(__name__)
console = Console()


@click.command()
@click.pass_obj
def chat(state: CliState) -> None:
    """Start an interactive conversation with your mailbox."""
    selector = BackendSelector.from_settings(state.settings, console=console)
    modes = TerminalModes()
    agent = MailAgent(
        state.settings,
        state.cache,
        selector=selector,
        prompter=RichPrompter(console, modes),
        console=console,
        interactive=True,
        conversation_mode=True,
    )
    logger.info("AI backends: %s", selector.describe())
    if not selector.available:
        console.print("[yellow]No AI backend available — using keyword matching only.[/yellow]")

    session = ConversationSession(
        agent,
        CommandHistory(state.settings.history_file),
        console=console,
        modes=modes,
        sync=BackgroundSync(state.settings, state.cache),
    )
    session.run()


@click.command()
@click.argument("query", nargs=-1, required=True)
@click.option(
    "--no-prompt",
    is_flag=True,
    help="Never ask for confirmation; moves and deletes are only previewed.",
)
@click.pass_obj
def ask(state: CliState, query: tuple[str, ...], no_prompt: bool) -> None:
    """Run a single request, e.g. `mailagent ask how many emails`."""
    interactive = sys.stdin.isatty() and not no_prompt
    agent = MailAgent(
        state.settings,
        state.cache,
        selector=BackendSelector.from_settings(state.settings, console=console),
        console=console,
        interactive=interactive,
    )
    result = agent.handle_conversation(" ".join(query))
    if result.kind == "error":
        raise SystemExit(1)


@click.command()
@click.option("--days", default=30, show_default=True, type=int, help="Days of history to fetch.")
@click.option("--folder", default=None, help="Only this folder (default: every folder).")
@click.pass_obj
def download(state: CliState, days: int, folder: str | None) -> None:
    """Fetch recent mail from the server into the local cache."""
    target = folder or "all folders"
    console.print(f"Downloading the last {days} day(s) from [bold]{target}[/bold]...")
    try:
        EmailDownloader(state.settings, state.cache, console).download(days, folder=folder)
    except (MailboxConnectionError, ProtocolOperationError) as exc:
        console.print(f"[red]Download failed: {exc}[/red]")
        raise SystemExit(1) from exc


@click.command()
@click.pass_obj
def folders(state: CliState) -> None:
    """List the folders on the mail server."""
    try:
        found = MailActions(state.settings, state.cache).list_folders()
    except MailboxConnectionError as exc:
        console.print(f"[red]Could not connect: {exc}[/red]")
        raise SystemExit(1) from exc

    console.print("\n📁 Email Folders:")
    for folder in found:
        special = ""
        if folder.special_use not in (SpecialUse.NONE, SpecialUse.INBOX):
            special = f" [dim]({folder.special_use.value})[/dim]"
        console.print(f"  • {folder.path}{special}")

"""Intent dispatch — one handler per IntentKind."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from rich.panel import Panel

from mailagent.imap.types import SpecialUse
from mailagent.processing.backends import AIBackendError, AIOptions
from mailagent.processing.prompts import SUMMARY_SYSTEM_PROMPT, build_summary_prompt
from mailagent.processing.types import ActionResult, Intent, IntentKind, build_filter

if TYPE_CHECKING:
    from mailagent.imap.downloader import EmailDownloader
    from mailagent.processing.actions import ActionContext
    from mailagent.processing.backends import BackendSelector
    from mailagent.storage.models import CachedMessage

logger = logging.getLogger(__name__)

_SEARCH_LIMIT = 10
_BULK_LIMIT = 1000
_FOLDER_PREVIEW = 10
_SUMMARY_LIMIT = 20
_FOLDER_DOWNLOAD_DAYS = 30

_SEARCH_ACTIONS = ("View details", "Delete selected emails", "Move to folder", "Cancel")


class IntentDispatcher:
    """Executes a resolved Intent against the cache and, for mutations, the server.

    Usage::

        dispatcher = IntentDispatcher(ctx, selector, downloader)
        result = dispatcher.dispatch(Intent(IntentKind.COUNT))
    """

    def __init__(
        self,
        ctx: ActionContext,
        selector: BackendSelector,
        downloader: EmailDownloader | None = None,
    ) -> None:
        self._ctx = ctx
        self._selector = selector
        self._downloader = downloader
        self._handlers: dict[IntentKind, Callable[[Intent], ActionResult]] = {
            IntentKind.SEARCH: self._search,
            IntentKind.DELETE: self._delete,
            IntentKind.MOVE: self._move,
            IntentKind.COUNT: self._count,
            IntentKind.LIST_FOLDERS: self._list_folders,
            IntentKind.LIST_FOLDER_CONTENTS: self._list_folder_contents,
            IntentKind.SUMMARIZE: self._summarize,
        }

    def dispatch(self, intent: Intent) -> ActionResult:
        logger.debug("Dispatching %s from %s: %s", intent.kind.value, intent.stage, intent.params)
        return self._handlers[intent.kind](intent)

    # ── SEARCH ─────────────────────────────────────────────────────────────────

    def _search(self, intent: Intent) -> ActionResult:
        ctx = self._ctx
        if intent.messages is not None:
            messages = list(intent.messages)
        else:
            messages = ctx.cache.query(build_filter(intent.params, limit=_SEARCH_LIMIT))
        result = ActionResult(kind=IntentKind.SEARCH.value, messages=messages, count=len(messages))

        if not messages:
            ctx.console.print("[yellow]No emails found matching your criteria.[/yellow]")
            return result

        if ctx.conversation_mode or ctx.prompter is None:
            self._print_found(messages)
            return result

        ctx.show_messages(messages, title=f"Found {len(messages)} emails:")
        picked = ctx.prompter.select_many("Select emails", len(messages))
        if not picked:
            ctx.console.print("[dim]Cancelled[/dim]")
            result.cancelled = True
            return result
        selected = [messages[i] for i in picked]
        ctx.console.print(f"\nSelected {len(selected)} email{'s' if len(selected) > 1 else ''}")

        action = ctx.prompter.choose(
            f"What would you like to do with {len(selected)} selected email(s)?",
            _SEARCH_ACTIONS,
            default="Cancel",
        )
        if action == "View details":
            for i, msg in enumerate(selected, start=1):
                self._print_details(msg, i, len(selected))
                if i < len(selected) and not ctx.prompter.confirm("View next email?", default=True):
                    break
            return result
        if action == "Delete selected emails":
            return ctx.delete(
                IntentKind.SEARCH.value, selected, f"Delete {len(selected)} emails?", show=False
            )
        if action == "Move to folder":
            target = self._pick_folder()
            if target:
                return ctx.move(
                    IntentKind.SEARCH.value,
                    selected,
                    target,
                    f"Move {len(selected)} emails to {target}?",
                    show=False,
                )
        result.cancelled = True
        ctx.console.print("[dim]Cancelled[/dim]")
        return result

    def _print_found(self, messages: list[CachedMessage]) -> None:
        console = self._ctx.console
        console.print(f"\n📧 Found {len(messages)} matching emails:\n")
        for i, msg in enumerate(messages, start=1):
            console.print(f"{i}. [bold]{msg.subject or '(no subject)'}[/bold]")
            console.print(f"   From: {msg.sender} | Date: {msg.date[:10]}\n")

    def _print_details(self, msg: CachedMessage, index: int, total: int) -> None:
        console = self._ctx.console
        heading = "Email Details" if total == 1 else f"Email {index} of {total}"
        console.print(f"\n[blue]--- {heading} ---[/blue]")
        console.print(f"[bold]From:[/bold] {msg.from_address}")
        console.print(f"[bold]To:[/bold] {msg.to_address}")
        console.print(f"[bold]Subject:[/bold] {msg.subject}")
        console.print(f"[bold]Date:[/bold] {msg.date}")
        console.print(f"[bold]Folder:[/bold] {msg.folder}")
        console.print(f"\n{msg.snippet}...\n")

    # ── DELETE / MOVE ──────────────────────────────────────────────────────────

    def _delete(self, intent: Intent) -> ActionResult:
        ctx = self._ctx
        messages = ctx.cache.query(build_filter(intent.params, limit=_BULK_LIMIT))
        if not messages:
            ctx.console.print("[yellow]No emails found to delete.[/yellow]")
            return ActionResult(kind=IntentKind.DELETE.value)
        return ctx.delete(IntentKind.DELETE.value, messages, f"Delete {len(messages)} emails?")

    def _move(self, intent: Intent) -> ActionResult:
        ctx = self._ctx
        messages = ctx.cache.query(build_filter(intent.params, limit=_BULK_LIMIT))
        if not messages:
            ctx.console.print("[yellow]No emails found to move.[/yellow]")
            return ActionResult(kind=IntentKind.MOVE.value)

        target = intent.params.target_folder
        if not target and ctx.prompter is not None:
            ctx.show_messages(messages)
            target = self._pick_folder()
            if not target:
                ctx.console.print("[dim]Move cancelled[/dim]")
                return ActionResult(
                    kind=IntentKind.MOVE.value,
                    messages=messages,
                    count=len(messages),
                    cancelled=True,
                    notes=["Move cancelled"],
                )
            return ctx.move(
                IntentKind.MOVE.value,
                messages,
                target,
                f"Move {len(messages)} emails to {target}?",
                show=False,
            )
        return ctx.move(
            IntentKind.MOVE.value,
            messages,
            target or "(unspecified folder)",
            f"Move {len(messages)} emails to {target}?",
        )

    def _pick_folder(self) -> str | None:
        ctx = self._ctx
        if ctx.prompter is None:
            return None
        folders = ctx.actions.list_folders()
        return ctx.prompter.choose("Move to which folder?", [f.path for f in folders])

    # ── COUNT / folders ────────────────────────────────────────────────────────

    def _count(self, intent: Intent) -> ActionResult:
        total = self._ctx.cache.count(build_filter(intent.params))
        self._ctx.console.print(f"[green]📊 Found {total} emails matching your criteria.[/green]")
        return ActionResult(kind=IntentKind.COUNT.value, count=total)

    def _list_folders(self, intent: Intent) -> ActionResult:
        console = self._ctx.console
        folders = self._ctx.actions.list_folders()
        console.print("\n📁 Email Folders:")
        for folder in folders:
            special = ""
            if folder.special_use not in (SpecialUse.NONE, SpecialUse.INBOX):
                special = f" [dim]({folder.special_use.value})[/dim]"
            console.print(f"  • {folder.path}{special}")
        return ActionResult(
            kind=IntentKind.LIST_FOLDERS.value,
            count=len(folders),
            text="\n".join(f.path for f in folders),
        )

    def _list_folder_contents(self, intent: Intent) -> ActionResult:
        ctx = self._ctx
        kind = IntentKind.LIST_FOLDER_CONTENTS.value
        folder = intent.params.folder
        if not folder:
            ctx.console.print("[yellow]Please specify which folder you want to see.[/yellow]")
            return ActionResult(kind=kind)

        ctx.console.print(f"\n📂 Checking folder: [bold]{folder}[/bold]")
        flt = build_filter(intent.params, limit=_FOLDER_PREVIEW)
        messages = ctx.cache.query(flt)
        if messages:
            ctx.show_messages(messages, title=f"Found {len(messages)} cached emails from {folder}:")
            return ActionResult(kind=kind, messages=messages, count=len(messages))

        ctx.console.print(f"[yellow]No cached emails from {folder}.[/yellow]")
        if (
            ctx.prompter is None
            or self._downloader is None
            or not ctx.prompter.confirm(f"Download recent emails from {folder}?", default=True)
        ):
            return ActionResult(kind=kind)

        ctx.console.print(f"Downloading emails from {folder}...")
        self._downloader.download(_FOLDER_DOWNLOAD_DAYS, folder=folder)
        messages = ctx.cache.query(flt)
        if messages:
            ctx.show_messages(messages, title=f"Downloaded {len(messages)} emails:")
        return ActionResult(kind=kind, messages=messages, count=len(messages))

    # ── SUMMARIZE ──────────────────────────────────────────────────────────────

    def _summarize(self, intent: Intent) -> ActionResult:
        ctx = self._ctx
        kind = IntentKind.SUMMARIZE.value
        messages = ctx.cache.query(build_filter(intent.params, limit=_SUMMARY_LIMIT))
        if not messages:
            ctx.console.print("[yellow]No recent emails to summarize.[/yellow]")
            return ActionResult(kind=kind)

        lines = [
            f"From: {m.from_address}, Subject: {m.subject}, Date: {m.date[:10]}" for m in messages
        ]
        result = ActionResult(kind=kind, messages=messages, count=len(messages))
        try:
            summary = self._selector.ask(
                SUMMARY_SYSTEM_PROMPT, build_summary_prompt(lines), AIOptions(max_tokens=500)
            )
        except AIBackendError as exc:
            logger.error("Summary failed: %s", exc)
            note = "AI summary unavailable; showing a plain listing instead"
            result.notes.append(note)
            ctx.console.print(f"[yellow]{note}[/yellow]")
            for line in lines:
                ctx.console.print(f"  • {line}")
            result.text = "\n".join(lines)
            return result

        result.text = summary
        ctx.console.print(Panel(summary, title="[bold]📧 Email Summary[/bold]", border_style="blue"))
        return result

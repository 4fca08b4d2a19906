"""Server mutations partitioned per source folder, and the prompts that guard them."""

from __future__ import annotations

import contextlib
import logging
import re
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ContextManager, Protocol

from rich import box
from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from mailagent.imap.client import MailboxClient, ProtocolOperationError, mailbox_session
from mailagent.imap.types import Folder, FolderOutcome
from mailagent.processing.types import ActionResult

if TYPE_CHECKING:
    from mailagent.config import Settings
    from mailagent.storage.db import MessageCache
    from mailagent.storage.models import CachedMessage

logger = logging.getLogger(__name__)

MailboxOpener = Callable[[], ContextManager[MailboxClient]]


class ActionCancelled(Exception):
    """Raised at a checkpoint when the user asked to stop a running action.

    ``report`` holds whatever partitions completed before the checkpoint.
    """

    def __init__(self, report: MutationReport | None = None) -> None:
        super().__init__("Action cancelled")
        self.report = report or MutationReport()


@dataclass
class MutationReport:
    """Per-folder outcomes of one move or delete, plus user-visible notes."""

    outcomes: list[FolderOutcome] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def affected(self) -> int:
        return sum(len(o.uids) for o in self.outcomes if o.ok)

    @property
    def failures(self) -> list[FolderOutcome]:
        return [o for o in self.outcomes if not o.ok]


# ── Prompting ──────────────────────────────────────────────────────────────────


class Prompter(Protocol):
    """Interactive questions asked before a mutation."""

    def confirm(self, message: str, default: bool = False) -> bool: ...

    def choose(self, message: str, choices: Sequence[str], default: str | None = None) -> str | None: ...

    def select_many(self, message: str, count: int) -> list[int]: ...


_RANGE = re.compile(r"^(\d+)\s*-\s*(\d+)$")


def parse_selection(answer: str, count: int) -> list[int]:
    """Turn "1,3-5" (1-based) into sorted zero-based indexes; "all" selects everything.

    Out-of-range numbers and junk tokens are ignored. Empty input selects nothing.
    """
    answer = answer.strip().lower()
    if answer in ("", "c", "cancel", "q"):
        return []
    if answer in ("all", "a", "*"):
        return list(range(count))
    picked: set[int] = set()
    for token in re.split(r"[,\s]+", answer):
        if not token:
            continue
        span = _RANGE.match(token)
        if span:
            lo, hi = sorted((int(span.group(1)), int(span.group(2))))
            picked.update(range(lo, hi + 1))
        elif token.isdigit():
            picked.add(int(token))
    return sorted(i - 1 for i in picked if 1 <= i <= count)


class RichPrompter:
    """Prompter backed by ``rich.prompt``.

    ``modes`` is any object with a ``prompt_mode()`` context manager; every
    question is asked inside it so the session can restore line editing after.
    """

    def __init__(self, console: Console | None = None, modes: object | None = None) -> None:
        self._console = console or Console()
        self._modes = modes

    def confirm(self, message: str, default: bool = False) -> bool:
        with self._prompting():
            return Confirm.ask(message, default=default, console=self._console)

    def choose(self, message: str, choices: Sequence[str], default: str | None = None) -> str | None:
        if not choices:
            return None
        for i, choice in enumerate(choices, start=1):
            self._console.print(f"  [dim]{i:>2}.[/dim] {choice}")
        with self._prompting():
            answer = Prompt.ask(
                message, default=default or "", console=self._console, show_default=bool(default)
            ).strip()
        if not answer:
            return default
        if answer.isdigit() and 1 <= int(answer) <= len(choices):
            return choices[int(answer) - 1]
        lowered = {c.lower(): c for c in choices}
        return lowered.get(answer.lower(), answer)

    def select_many(self, message: str, count: int) -> list[int]:
        with self._prompting():
            answer = Prompt.ask(
                f"{message} [dim](e.g. 1,3-5, all, or Enter to cancel)[/dim]",
                default="",
                console=self._console,
                show_default=False,
            )
        return parse_selection(answer, count)

    def _prompting(self) -> ContextManager[object]:
        if self._modes is None:
            return contextlib.nullcontext()
        return self._modes.prompt_mode()  # type: ignore[attr-defined]


# ── Mutations ──────────────────────────────────────────────────────────────────


class MailActions:
    """Runs moves and deletes against the server, one partition per source folder.

    Each call opens its own mailbox session. A failing partition is recorded
    and the remaining partitions still run. ``cancel_event`` is checked before
    every partition; once set, the call stops there with ActionCancelled.

    Usage::

        actions = MailActions(settings, cache)
        report = actions.move_by_folder(messages, "Archive")
    """

    def __init__(
        self,
        settings: Settings,
        cache: MessageCache | None = None,
        cancel_event: threading.Event | None = None,
        mailbox_opener: MailboxOpener | None = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self.cancel_event = cancel_event or threading.Event()
        self._open = mailbox_opener or (lambda: mailbox_session(self._settings, self._cache))

    def list_folders(self) -> list[Folder]:
        with self._open() as mailbox:
            return mailbox.list_folders()

    def move_by_folder(self, messages: Sequence[CachedMessage], target: str) -> MutationReport:
        def move(mailbox: MailboxClient, source: str, uids: list[int]) -> FolderOutcome:
            mailbox.move_messages(uids, source, target)
            return FolderOutcome(source, uids)

        return self._run(messages, move)

    def delete_by_folder(self, messages: Sequence[CachedMessage]) -> MutationReport:
        def delete(mailbox: MailboxClient, source: str, uids: list[int]) -> FolderOutcome:
            outcome = mailbox.delete_messages(uids, source)
            return FolderOutcome(source, uids, delete=outcome)

        report = self._run(messages, delete)
        for outcome in report.outcomes:
            if outcome.delete is not None and outcome.delete.method == "flagged":
                report.notes.append(
                    f"Warning: could not move {len(outcome.uids)} message(s) from "
                    f"{outcome.source} to {outcome.delete.trash_folder}; they were "
                    "flagged as deleted in place instead"
                )
        return report

    def _run(
        self,
        messages: Sequence[CachedMessage],
        op: Callable[[MailboxClient, str, list[int]], FolderOutcome],
    ) -> MutationReport:
        report = MutationReport()
        partitions = partition_by_folder(messages)
        if not partitions:
            return report

        with self._open() as mailbox:
            try:
                for source, uids in partitions.items():
                    if self.cancel_event.is_set():
                        logger.info("Cancelled before %s (%d partition(s) done)", source, len(report.outcomes))
                        raise ActionCancelled(report)
                    try:
                        report.outcomes.append(op(mailbox, source, uids))
                    except ProtocolOperationError as exc:
                        logger.error("Partition %s failed: %s", source, exc)
                        report.outcomes.append(FolderOutcome(source, uids, ok=False, error=str(exc)))
            finally:
                report.notes.extend(mailbox.notes)
                mailbox.notes.clear()
        return report


def partition_by_folder(messages: Sequence[CachedMessage]) -> dict[str, list[int]]:
    """Group uids by the folder each message was cached from, in first-seen order."""
    partitions: dict[str, list[int]] = {}
    for msg in messages:
        uids = partitions.setdefault(msg.folder, [])
        if msg.uid not in uids:
            uids.append(msg.uid)
    return partitions


# ── Handler context ────────────────────────────────────────────────────────────

_DISPLAY_LIMIT = 25


@dataclass
class ActionContext:
    """Everything a handler needs to query, show, confirm and mutate.

    ``prompter`` is None for non-interactive callers: mutations then only
    display what they would touch and return a cancelled result.
    """

    cache: MessageCache
    actions: MailActions
    console: Console
    prompter: Prompter | None = None
    conversation_mode: bool = False

    @property
    def interactive(self) -> bool:
        return self.prompter is not None

    def show_messages(self, messages: Sequence[CachedMessage], title: str | None = None) -> None:
        """Print ``messages`` as a table, capped at a screenful."""
        if title:
            self.console.print(f"\n[bold]{title}[/bold]")
        table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
        table.add_column("#", style="dim", width=3)
        table.add_column("Date", width=10)
        table.add_column("From", max_width=30)
        table.add_column("Subject", max_width=50)
        table.add_column("Folder", style="dim", max_width=16)
        for i, msg in enumerate(messages[:_DISPLAY_LIMIT], start=1):
            table.add_row(
                str(i), msg.date[:10], msg.sender, msg.subject or "(no subject)", msg.folder
            )
        self.console.print(table)
        if len(messages) > _DISPLAY_LIMIT:
            self.console.print(f"  [dim]... and {len(messages) - _DISPLAY_LIMIT} more[/dim]")

    def delete(
        self, kind: str, messages: Sequence[CachedMessage], question: str, show: bool = True
    ) -> ActionResult:
        """Confirm, then delete exactly ``messages`` per source folder."""
        return self._mutate(
            kind, messages, question, "Deletion", lambda: self.actions.delete_by_folder(messages), show
        )

    def move(
        self,
        kind: str,
        messages: Sequence[CachedMessage],
        target: str,
        question: str,
        show: bool = True,
    ) -> ActionResult:
        """Confirm, then move exactly ``messages`` to ``target`` per source folder."""
        return self._mutate(
            kind, messages, question, "Move", lambda: self.actions.move_by_folder(messages, target), show
        )

    def print_notes(self, notes: Sequence[str]) -> None:
        for note in notes:
            self.console.print(f"[yellow]{note}[/yellow]")

    def _mutate(
        self,
        kind: str,
        messages: Sequence[CachedMessage],
        question: str,
        label: str,
        run: Callable[[], MutationReport],
        show: bool,
    ) -> ActionResult:
        result = ActionResult(kind=kind, messages=list(messages), count=len(messages))
        if not messages:
            self.console.print("[yellow]No matching emails found.[/yellow]")
            return result
        if show:
            self.show_messages(messages)

        if self.prompter is None:
            note = f"{label} not performed: confirmation needs an interactive terminal"
            result.cancelled = True
            result.notes.append(note)
            self.print_notes([note])
            return result

        if not self.prompter.confirm(question, default=False):
            note = f"{label} cancelled"
            result.cancelled = True
            result.notes.append(note)
            self.console.print(f"[dim]{note}[/dim]")
            return result

        try:
            report = run()
        except ActionCancelled as exc:
            result.affected = exc.report.affected
            result.notes.extend(exc.report.notes)
            raise
        result.affected = report.affected
        result.notes.extend(report.notes)
        self._print_report(report, label)
        return result

    def _print_report(self, report: MutationReport, label: str) -> None:
        verb = "Deleted" if label == "Deletion" else "Moved"
        for outcome in report.outcomes:
            if outcome.ok:
                self.console.print(
                    f"  [green]✓[/green] {verb} {len(outcome.uids)} message(s) from {outcome.source}"
                )
            else:
                self.console.print(f"  [red]✗[/red] {outcome.source}: {outcome.error}")
        self.print_notes(report.notes)
        if report.failures:
            self.console.print(
                f"[yellow]{verb} {report.affected} message(s); "
                f"{len(report.failures)} folder(s) failed.[/yellow]"
            )
        else:
            self.console.print(f"[green]✅ {verb} {report.affected} message(s).[/green]")

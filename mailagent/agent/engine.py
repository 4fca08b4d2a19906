"""MailAgent — resolves a free-text request and carries it out."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from rich.console import Console

from mailagent.imap.client import MailboxConnectionError, ProtocolOperationError
from mailagent.imap.downloader import EmailDownloader
from mailagent.processing.actions import (
    ActionCancelled,
    ActionContext,
    MailActions,
    MailboxOpener,
    Prompter,
    RichPrompter,
)
from mailagent.processing.backends import BackendSelector
from mailagent.processing.dispatcher import IntentDispatcher
from mailagent.processing.pipeline import IntentResolver
from mailagent.processing.types import ActionResult

if TYPE_CHECKING:
    from mailagent.config import Settings
    from mailagent.storage.db import MessageCache

logger = logging.getLogger(__name__)


class MailAgent:
    """Entry point for one request: resolve, dispatch, report.

    With ``interactive=False`` nothing ever prompts: mutations show what they
    would touch and come back cancelled. ``conversation_mode`` prints search
    results instead of offering the select-then-act menu.

    Usage::

        agent = MailAgent(settings, cache, interactive=False)
        result = agent.handle_conversation("how many emails")
        print(result.count)
    """

    def __init__(
        self,
        settings: Settings,
        cache: MessageCache,
        selector: BackendSelector | None = None,
        prompter: Prompter | None = None,
        console: Console | None = None,
        interactive: bool = True,
        conversation_mode: bool = False,
        mailbox_opener: MailboxOpener | None = None,
        downloader: EmailDownloader | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.settings = settings
        self.console = console or Console()
        self.selector = selector or BackendSelector.from_settings(settings, console=self.console)
        self.cancel_event = cancel_event or threading.Event()
        self.last_stage: str | None = None

        if interactive and prompter is None:
            prompter = RichPrompter(self.console)
        self.actions = MailActions(
            settings, cache, cancel_event=self.cancel_event, mailbox_opener=mailbox_opener
        )
        self.context = ActionContext(
            cache=cache,
            actions=self.actions,
            console=self.console,
            prompter=prompter if interactive else None,
            conversation_mode=conversation_mode,
        )
        self.downloader = downloader or EmailDownloader(settings, cache, self.console)
        self.resolver = IntentResolver.default(self.context, self.selector)
        self.dispatcher = IntentDispatcher(self.context, self.selector, self.downloader)

    @property
    def interactive(self) -> bool:
        return self.context.interactive

    def handle_conversation(self, query: str) -> ActionResult:
        """Resolve and execute ``query``. Mailbox failures come back as notes, not raises."""
        self.cancel_event.clear()
        try:
            resolution = self.resolver.resolve(query)
            self.last_stage = resolution.stage
            if resolution.intent is None:
                return resolution.result or ActionResult(kind=resolution.stage)
            return self.dispatcher.dispatch(resolution.intent)
        except (MailboxConnectionError, ProtocolOperationError) as exc:
            logger.error("Mailbox operation failed for %r: %s", query, exc)
            self.console.print(f"[red]Mail server error: {exc}[/red]")
            return ActionResult(kind="error", notes=[str(exc)])
        except ActionCancelled as exc:
            done = exc.report.affected
            note = "Action cancelled" + (f" after {done} message(s)" if done else "")
            self.console.print(f"[yellow]{note}[/yellow]")
            return ActionResult(
                kind="cancelled",
                affected=done,
                cancelled=True,
                notes=[note, *exc.report.notes],
            )

"""Interactive conversation loop — history, terminal modes, and signal handling."""

from __future__ import annotations

import contextlib
import logging
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import FrameType
from typing import TYPE_CHECKING

from rich.console import Console

try:
    import readline
except ImportError:  # Windows
    readline = None  # type: ignore[assignment]

try:
    import termios
except ImportError:  # Windows
    termios = None  # type: ignore[assignment]

if TYPE_CHECKING:
    from mailagent.agent.engine import MailAgent
    from mailagent.agent.scheduler import BackgroundSync

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100
EXIT_COMMANDS = ("exit", "quit")


class HistoryIOError(OSError):
    """Raised when the history file cannot be read or written."""


@dataclass(frozen=True)
class ConversationTurn:
    query: str
    response: str
    stage: str | None = None


# ── History ────────────────────────────────────────────────────────────────────


class CommandHistory:
    """Accepted command lines, oldest first, persisted one per line.

    Consecutive duplicates are dropped and only the newest ``limit`` entries
    are kept.
    """

    def __init__(self, path: Path, limit: int = HISTORY_LIMIT) -> None:
        self.path = Path(path)
        self.limit = limit
        self.entries: list[str] = []

    def load(self) -> list[str]:
        """Replace in-memory entries with the file's. A missing file means no history.

        Raises:
            HistoryIOError: the file exists but could not be read.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self.entries = []
            return self.entries
        except OSError as exc:
            raise HistoryIOError(f"Could not read history {self.path}: {exc}") from exc
        lines = [line for line in text.splitlines() if line.strip()]
        self.entries = lines[-self.limit :]
        return self.entries

    def add(self, line: str) -> bool:
        """Append ``line`` unless it's blank or repeats the previous entry."""
        line = line.strip()
        if not line or (self.entries and self.entries[-1] == line):
            return False
        self.entries.append(line)
        del self.entries[: -self.limit]
        return True

    def recall(self) -> list[str]:
        """Entries newest first, the order arrow-key recall walks them."""
        return list(reversed(self.entries))

    def save(self) -> None:
        """Write entries to disk.

        Raises:
            HistoryIOError: the file could not be written.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            body = "\n".join(self.entries[-self.limit :])
            self.path.write_text(body + "\n" if body else "", encoding="utf-8")
        except OSError as exc:
            raise HistoryIOError(f"Could not write history {self.path}: {exc}") from exc


# ── Terminal ───────────────────────────────────────────────────────────────────


class TerminalMode(str, Enum):
    LINE = "line"
    PROMPT = "prompt"


class TerminalModes:
    """Two-state terminal adapter: LINE while reading commands, PROMPT while a
    nested question (confirm, pick a folder) is waiting for an answer.

    Leaving PROMPT flushes unread tty input and drops the answers the nested
    prompt pushed into readline's history, so the up arrow recalls commands only.
    """

    def __init__(self, stdin: object | None = None) -> None:
        self.mode = TerminalMode.LINE
        self._stdin = stdin if stdin is not None else sys.stdin

    @contextlib.contextmanager
    def prompt_mode(self) -> Iterator[TerminalModes]:
        before = readline.get_current_history_length() if readline is not None else 0
        previous = self.mode
        self.mode = TerminalMode.PROMPT
        try:
            yield self
        finally:
            self.mode = previous
            self._flush_input()
            self._trim_history(before)

    @property
    def prompting(self) -> bool:
        return self.mode == TerminalMode.PROMPT

    def _flush_input(self) -> None:
        if termios is None or not _isatty(self._stdin):
            return
        try:
            termios.tcflush(self._stdin, termios.TCIFLUSH)
        except (termios.error, OSError, ValueError) as exc:
            logger.debug("tcflush failed: %s", exc)

    @staticmethod
    def _trim_history(length: int) -> None:
        if readline is None:
            return
        while readline.get_current_history_length() > length:
            readline.remove_history_item(readline.get_current_history_length() - 1)


def _isatty(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    try:
        return bool(isatty and isatty())
    except ValueError:
        return False


# ── Session ────────────────────────────────────────────────────────────────────


class ConversationSession:
    """Read-eval loop around MailAgent.handle_conversation.

    While a turn runs, SIGINT/SIGTERM set the agent's cancel token; a pending
    nested prompt is interrupted at once, otherwise the action stops at its
    next checkpoint. Either way the session ends after that turn. History is
    flushed on every exit path.

    Usage::

        session = ConversationSession(agent, CommandHistory(path), modes=modes)
        session.run()
    """

    prompt = "email> "

    def __init__(
        self,
        agent: MailAgent,
        history: CommandHistory,
        console: Console | None = None,
        modes: TerminalModes | None = None,
        sync: BackgroundSync | None = None,
        input_fn: Callable[[str], str] = input,
        is_tty: bool | None = None,
    ) -> None:
        self.agent = agent
        self.history = history
        self.console = console or agent.console
        self.modes = modes or TerminalModes()
        self.sync = sync
        self.turns: list[ConversationTurn] = []
        self._input = input_fn
        self._tty = sys.stdin.isatty() if is_tty is None else is_tty
        self._interrupted = False

    def run(self) -> None:
        self._load_history()
        if self._tty:
            self._seed_readline()
            if self.sync is not None and self.sync.start():
                self.console.print("[dim]🔄 Checking for new emails in background...[/dim]")

        self.console.print(
            "[bold]📧 Email assistant[/bold] [dim]— ask about your mail, or type exit to quit[/dim]"
        )
        try:
            while True:
                try:
                    line = self._input(self.prompt)
                except (EOFError, KeyboardInterrupt):
                    self.console.print("\nGoodbye!")
                    break

                line = line.strip()
                if not line:
                    continue
                if line.lower() in EXIT_COMMANDS:
                    self.console.print("Goodbye!")
                    break
                self.history.add(line)
                self._run_turn(line)
                if self._interrupted:
                    self.console.print("[dim]Interrupted — goodbye[/dim]")
                    break
        finally:
            self._flush_history()
            if self.sync is not None:
                self.sync.shutdown()

    # ── Turns ──────────────────────────────────────────────────────────────────

    def _run_turn(self, line: str) -> None:
        with self._turn_signals():
            try:
                result = self.agent.handle_conversation(line)
            except KeyboardInterrupt:
                self._interrupted = True
                self.console.print("\n[yellow]Cancelled[/yellow]")
                self.turns.append(ConversationTurn(line, "cancelled", self.agent.last_stage))
                return
            except Exception as exc:  # noqa: BLE001
                logger.error("Turn failed for %r: %s", line, exc, exc_info=True)
                self.console.print(f"[red]Error: {exc}[/red]")
                self.turns.append(ConversationTurn(line, f"error: {exc}", self.agent.last_stage))
                return
        response = result.text or f"{result.kind}: {result.count} result(s)"
        self.turns.append(ConversationTurn(line, response, self.agent.last_stage))

    @contextlib.contextmanager
    def _turn_signals(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def handler(signum: int, frame: FrameType | None) -> None:
            self._interrupted = True
            self.agent.cancel_event.set()
            logger.info("Signal %d received; cancelling at the next checkpoint", signum)
            if self.modes.prompting:
                raise KeyboardInterrupt

        previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            yield
        finally:
            for sig, old in previous.items():
                signal.signal(sig, old)

    # ── History plumbing ───────────────────────────────────────────────────────

    def _load_history(self) -> None:
        try:
            self.history.load()
        except HistoryIOError as exc:
            logger.warning("%s", exc)

    def _flush_history(self) -> None:
        try:
            self.history.save()
        except HistoryIOError as exc:
            logger.warning("%s", exc)

    def _seed_readline(self) -> None:
        if readline is None:
            return
        readline.clear_history()
        readline.set_history_length(self.history.limit)
        for entry in self.history.entries:
            readline.add_history(entry)

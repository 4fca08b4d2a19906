"""Tests for the conversation loop, command history and terminal modes."""

import io
import signal
import threading
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from mailagent.agent.session import (
    CommandHistory,
    ConversationSession,
    HistoryIOError,
    TerminalMode,
    TerminalModes,
)
from mailagent.processing.types import ActionResult


def _make_agent(console: Console) -> MagicMock:
    agent = MagicMock()
    agent.console = console
    agent.cancel_event = threading.Event()
    agent.last_stage = "keyword"
    agent.handle_conversation.return_value = ActionResult(kind="search", count=2)
    return agent


def _scripted(lines: list[str]) -> MagicMock:
    """An input() stand-in that raises EOFError once the script runs out."""
    feed: Iterator[str] = iter(lines)

    def read(prompt: str) -> str:
        try:
            return next(feed)
        except StopIteration:
            raise EOFError from None

    return MagicMock(side_effect=read)


def _make_session(
    agent: MagicMock, history: CommandHistory, lines: list[str], sync: MagicMock | None = None
) -> ConversationSession:
    return ConversationSession(
        agent,
        history,
        modes=TerminalModes(stdin=io.StringIO()),
        sync=sync,
        input_fn=_scripted(lines),
        is_tty=False,
    )


# ── CommandHistory ─────────────────────────────────────────────────────────────


class TestCommandHistory:
    def test_round_trip(self, tmp_path: Path) -> None:
        history = CommandHistory(tmp_path / "history")
        history.add("show invoices")
        history.add("how many emails")
        history.save()

        reloaded = CommandHistory(tmp_path / "history")
        assert reloaded.load() == ["show invoices", "how many emails"]

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        assert CommandHistory(tmp_path / "nope").load() == []

    def test_consecutive_duplicates_and_blanks_skipped(self, tmp_path: Path) -> None:
        history = CommandHistory(tmp_path / "history")
        assert history.add("count")
        assert not history.add("count")
        assert not history.add("   ")
        assert history.add("show")
        assert history.add("count")
        assert history.entries == ["count", "show", "count"]

    def test_capped_at_limit(self, tmp_path: Path) -> None:
        history = CommandHistory(tmp_path / "history", limit=3)
        for i in range(5):
            history.add(f"query {i}")
        assert history.entries == ["query 2", "query 3", "query 4"]

    def test_load_keeps_newest(self, tmp_path: Path) -> None:
        path = tmp_path / "history"
        path.write_text("\n".join(f"q{i}" for i in range(150)) + "\n")
        entries = CommandHistory(path).load()
        assert len(entries) == 100
        assert entries[-1] == "q149"

    def test_recall_is_newest_first(self, tmp_path: Path) -> None:
        history = CommandHistory(tmp_path / "history")
        history.add("first")
        history.add("second")
        assert history.recall() == ["second", "first"]

    def test_unreadable_path_raises(self, tmp_path: Path) -> None:
        with pytest.raises(HistoryIOError):
            CommandHistory(tmp_path).load()
        with pytest.raises(HistoryIOError):
            CommandHistory(tmp_path).save()


# ── TerminalModes ──────────────────────────────────────────────────────────────


class TestTerminalModes:
    def test_prompt_mode_restores_line_mode(self) -> None:
        modes = TerminalModes(stdin=io.StringIO())
        assert modes.mode == TerminalMode.LINE

        with modes.prompt_mode():
            assert modes.prompting

        assert modes.mode == TerminalMode.LINE

    def test_restored_after_error(self) -> None:
        modes = TerminalModes(stdin=io.StringIO())
        with pytest.raises(KeyboardInterrupt):
            with modes.prompt_mode():
                raise KeyboardInterrupt
        assert not modes.prompting


# ── ConversationSession ────────────────────────────────────────────────────────


class TestConversationSession:
    def test_turns_and_exit(self, console: Console, tmp_path: Path) -> None:
        agent = _make_agent(console)
        history = CommandHistory(tmp_path / "history")
        session = _make_session(agent, history, ["show invoices", "", "exit", "never read"])

        session.run()

        agent.handle_conversation.assert_called_once_with("show invoices")
        assert [t.query for t in session.turns] == ["show invoices"]
        assert session.turns[0].response == "search: 2 result(s)"
        assert session.turns[0].stage == "keyword"
        assert (tmp_path / "history").read_text() == "show invoices\n"

    def test_quit_is_not_recorded(self, console: Console, tmp_path: Path) -> None:
        history = CommandHistory(tmp_path / "history")
        session = _make_session(_make_agent(console), history, ["count", "QUIT"])

        session.run()

        assert history.entries == ["count"]
        assert (tmp_path / "history").read_text() == "count\n"

    def test_eof_says_goodbye(self, console: Console, tmp_path: Path) -> None:
        session = _make_session(_make_agent(console), CommandHistory(tmp_path / "h"), [])
        session.run()
        assert "Goodbye!" in console.export_text()

    def test_turn_error_keeps_session_alive(self, console: Console, tmp_path: Path) -> None:
        agent = _make_agent(console)
        agent.handle_conversation.side_effect = [RuntimeError("db locked"), ActionResult(kind="count")]
        session = _make_session(agent, CommandHistory(tmp_path / "h"), ["first", "second"])

        session.run()

        assert [t.response for t in session.turns] == ["error: db locked", "count: 0 result(s)"]
        assert "Error: db locked" in console.export_text()

    def test_history_flushed_even_when_turn_crashes_loop(self, console: Console, tmp_path: Path) -> None:
        agent = _make_agent(console)
        history = CommandHistory(tmp_path / "h")
        session = _make_session(agent, history, ["show"])
        session._run_turn = MagicMock(side_effect=SystemExit(2))  # type: ignore[method-assign]

        with pytest.raises(SystemExit):
            session.run()

        assert (tmp_path / "h").read_text() == "show\n"

    def test_background_sync_only_on_a_tty(self, console: Console, tmp_path: Path) -> None:
        sync = MagicMock()
        session = _make_session(_make_agent(console), CommandHistory(tmp_path / "h"), [], sync=sync)

        session.run()

        sync.start.assert_not_called()
        sync.shutdown.assert_called_once()

    def test_signal_during_action_cancels_and_ends_session(self, console: Console, tmp_path: Path) -> None:
        agent = _make_agent(console)

        def handle(query: str) -> ActionResult:
            handler = signal.getsignal(signal.SIGINT)
            assert callable(handler)
            handler(signal.SIGINT, None)
            assert agent.cancel_event.is_set()
            return ActionResult(kind="cancelled", cancelled=True)

        agent.handle_conversation.side_effect = handle
        previous = signal.getsignal(signal.SIGINT)
        session = _make_session(agent, CommandHistory(tmp_path / "h"), ["delete spam", "show"])

        session.run()

        assert agent.handle_conversation.call_count == 1
        assert signal.getsignal(signal.SIGINT) is previous

    def test_signal_during_prompt_interrupts_it(self, console: Console, tmp_path: Path) -> None:
        agent = _make_agent(console)
        session = _make_session(agent, CommandHistory(tmp_path / "h"), ["delete spam"])

        def handle(query: str) -> ActionResult:
            with session.modes.prompt_mode():
                signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
            return ActionResult(kind="delete")

        agent.handle_conversation.side_effect = handle

        session.run()

        assert session.turns[0].response == "cancelled"
        assert "Cancelled" in console.export_text()
        assert session.modes.mode == TerminalMode.LINE

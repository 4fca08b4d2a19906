"""Tests for the intent pipeline stages and the resolver."""

from collections.abc import Callable
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from mailagent.processing.backends import AIBackendError
from mailagent.processing.pipeline import (
    AIFilterStage,
    ClassifierStage,
    IntentParseError,
    IntentResolver,
    KeywordStage,
    Resolution,
    keyword_intent,
    parse_intent,
    time_window,
)
from mailagent.processing.types import ActionResult, IntentKind
from mailagent.storage.db import MessageCache
from mailagent.storage.models import CachedMessage

AddMessage = Callable[..., CachedMessage]


def _selector(available: bool = True) -> MagicMock:
    selector = MagicMock()
    selector.available = available
    return selector


# ── Keyword fallback ───────────────────────────────────────────────────────────


class TestKeywordFallback:
    @pytest.mark.parametrize(
        ("query", "kind"),
        [
            ("delete the old ones", IntentKind.DELETE),
            ("remove spam", IntentKind.DELETE),
            ("trash it", IntentKind.DELETE),
            ("move receipts", IntentKind.MOVE),
            ("count unread", IntentKind.COUNT),
            ("how many from bob", IntentKind.COUNT),
            ("what folders exist", IntentKind.LIST_FOLDERS),
            ("summarise my week", IntentKind.SUMMARIZE),
            ("show me anything", IntentKind.SEARCH),
        ],
    )
    def test_keyword_table(self, query: str, kind: IntentKind) -> None:
        assert keyword_intent(query).kind == kind

    def test_content_carries_query(self) -> None:
        intent = keyword_intent("delete invoices")
        assert intent.params.content == "delete invoices"
        assert intent.stage == "keyword"

    @pytest.mark.parametrize("query", ["", "   ", "{}", "ümlaut 🤖", "\x00", "a" * 5000])
    def test_never_raises(self, query: str) -> None:
        resolution = KeywordStage().try_resolve(query)
        assert resolution.intent is not None
        assert isinstance(resolution.intent.kind, IntentKind)


# ── Classifier parsing ─────────────────────────────────────────────────────────


class TestParseIntent:
    def test_parses_wrapped_json(self) -> None:
        response = (
            "Sure!\n```json\n"
            '{"intent": "search", "parameters": {"from": "Lloyd Estates", "days": "3",'
            ' "excludeTypes": ["newsletters"]}}\n```'
        )
        intent = parse_intent(response)

        assert intent.kind == IntentKind.SEARCH
        assert intent.params.sender == "Lloyd Estates"
        assert intent.params.days == 3
        assert intent.params.exclude_types == ["newsletters"]

    def test_move_folder_means_target(self) -> None:
        intent = parse_intent('{"intent": "MOVE", "parameters": {"from": "Patreon", "folder": "Receipts"}}')
        assert intent.params.target_folder == "Receipts"
        assert intent.params.folder is None

    def test_move_with_explicit_target_keeps_source(self) -> None:
        intent = parse_intent(
            '{"intent": "MOVE", "parameters": {"folder": "INBOX", "targetFolder": "Receipts"}}'
        )
        assert intent.params.folder == "INBOX"
        assert intent.params.target_folder == "Receipts"

    @pytest.mark.parametrize(
        "response",
        [
            "I think you want to search.",
            '{"intent": "EXPLODE"}',
            '{"intent": "SEARCH", "parameters": {"days": "lots"}}',
            '{"intent": "SEARCH", "parameters": {"days": true}}',
            '{"intent": "SEARCH", "parameters": {"excludeTypes": "newsletters"}}',
            '{"intent": "SEARCH", "parameters": {"excludeTypes": ["spam"]}}',
            '{"intent": "SEARCH", "parameters": [1, 2]}',
            "{not json}",
        ],
    )
    def test_rejects_bad_payloads(self, response: str) -> None:
        with pytest.raises(IntentParseError):
            parse_intent(response)


class TestClassifierStage:
    def test_returns_intent(self) -> None:
        selector = _selector()
        selector.ask.return_value = '{"intent": "COUNT", "parameters": {"folder": "Sent"}}'

        resolution = ClassifierStage(selector, Console(record=True)).try_resolve("how many in Sent?")

        assert resolution is not None
        assert resolution.intent.kind == IntentKind.COUNT
        assert resolution.intent.params.folder == "Sent"

    def test_backend_failure_passes_with_notice(self) -> None:
        selector = _selector()
        selector.ask.side_effect = AIBackendError("CLI: timed out")
        console = Console(record=True, width=200)

        assert ClassifierStage(selector, console).try_resolve("anything") is None
        assert "Could not determine intent, using basic search fallback" in console.export_text()

    def test_parse_failure_passes(self) -> None:
        selector = _selector()
        selector.ask.return_value = "no idea"
        assert ClassifierStage(selector, Console(record=True)).try_resolve("anything") is None

    def test_skipped_without_backends(self) -> None:
        selector = _selector(available=False)
        assert ClassifierStage(selector, Console(record=True)).try_resolve("anything") is None
        selector.ask.assert_not_called()


# ── AI filter ──────────────────────────────────────────────────────────────────


class TestTimeWindow:
    NOW = datetime(2026, 10, 16, 15, 30)

    def test_today(self) -> None:
        assert time_window("personal mail from today", self.NOW) == (datetime(2026, 10, 16), None)

    def test_yesterday(self) -> None:
        assert time_window("show yesterday's", self.NOW) == (
            datetime(2026, 10, 15),
            datetime(2026, 10, 16),
        )

    def test_week(self) -> None:
        assert time_window("this week", self.NOW) == (self.NOW - timedelta(days=7), None)

    def test_none(self) -> None:
        assert time_window("show invoices", self.NOW) == (None, None)


class TestAIFilterStage:
    def test_needs_search_keyword(self, cache: MessageCache, add_message: AddMessage) -> None:
        add_message()
        selector = _selector()
        assert AIFilterStage(selector, cache, Console(record=True)).try_resolve("tidy up") is None
        selector.filter.assert_not_called()

    def test_needs_available_backend(self, cache: MessageCache, add_message: AddMessage) -> None:
        add_message()
        selector = _selector(available=False)
        assert AIFilterStage(selector, cache, Console(record=True)).try_resolve("show mail") is None

    def test_empty_cache_passes(self, cache: MessageCache) -> None:
        selector = _selector()
        assert AIFilterStage(selector, cache, Console(record=True)).try_resolve("show mail") is None
        selector.filter.assert_not_called()

    def test_returns_prefiltered_search(self, cache: MessageCache, add_message: AddMessage) -> None:
        personal = add_message("Dinner Friday?", from_address="sam@example.com")
        add_message("50% off", from_address="deals@shop.com")
        selector = _selector()
        selector.filter.return_value = [personal]

        resolution = AIFilterStage(selector, cache, Console(record=True)).try_resolve("show personal mail")

        assert resolution is not None
        assert resolution.intent.kind == IntentKind.SEARCH
        assert resolution.intent.messages == [personal]
        candidates = selector.filter.call_args.args[0]
        assert len(candidates) == 2

    def test_empty_answer_is_zero_results(self, cache: MessageCache, add_message: AddMessage) -> None:
        add_message()
        selector = _selector()
        selector.filter.return_value = []

        resolution = AIFilterStage(selector, cache, Console(record=True)).try_resolve("find important")

        assert resolution is not None
        assert resolution.intent.messages == []

    def test_failure_falls_through_with_notice(self, cache: MessageCache, add_message: AddMessage) -> None:
        add_message()
        selector = _selector()
        selector.filter.side_effect = AIBackendError("CLI: boom")
        console = Console(record=True, width=200)

        assert AIFilterStage(selector, cache, console).try_resolve("show mail") is None
        assert "AI filtering failed, falling back to basic search..." in console.export_text()


# ── Resolver ───────────────────────────────────────────────────────────────────


class _Stage:
    def __init__(self, name: str, resolution: Resolution | None) -> None:
        self.name = name
        self.resolution = resolution
        self.calls = 0

    def try_resolve(self, query: str) -> Resolution | None:
        self.calls += 1
        return self.resolution


class TestIntentResolver:
    def test_stops_at_first_resolution(self) -> None:
        first = _Stage("a", None)
        second = _Stage("b", Resolution("b", result=ActionResult(kind="count")))
        third = _Stage("c", Resolution("c", result=ActionResult(kind="never")))

        resolution = IntentResolver([first, second, third]).resolve("q")

        assert resolution.stage == "b"
        assert (first.calls, second.calls, third.calls) == (1, 1, 0)

    def test_empty_chain_still_resolves(self) -> None:
        resolution = IntentResolver([]).resolve("show me anything")
        assert resolution.stage == "keyword"
        assert resolution.intent.kind == IntentKind.SEARCH

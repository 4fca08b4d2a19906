"""Tests for intent type definitions and the params → filter translation."""

from datetime import datetime, timedelta

from mailagent.processing.types import (
    EXCLUDE_CATEGORIES,
    MUTATING_KINDS,
    IntentKind,
    IntentParams,
    build_filter,
)


class TestIntentKind:
    def test_all_values_present(self) -> None:
        expected = {
            "SEARCH", "DELETE", "MOVE", "COUNT",
            "LIST_FOLDERS", "LIST_FOLDER_CONTENTS", "SUMMARIZE",
        }
        assert {k.value for k in IntentKind} == expected

    def test_is_str_enum(self) -> None:
        assert isinstance(IntentKind.SEARCH, str)

    def test_round_trip(self) -> None:
        for k in IntentKind:
            assert IntentKind(k.value) is k

    def test_only_delete_and_move_mutate(self) -> None:
        assert MUTATING_KINDS == {IntentKind.DELETE, IntentKind.MOVE}


class TestBuildFilter:
    def test_copies_predicates(self) -> None:
        params = IntentParams(
            sender="Lloyd Estates", subject="rent", folder="INBOX", exclude_types=["newsletters"]
        )

        flt = build_filter(params, limit=10)

        assert flt.sender == "Lloyd Estates"
        assert flt.subject == "rent"
        assert flt.folder == "INBOX"
        assert flt.exclude_types == ["newsletters"]
        assert flt.limit == 10
        assert flt.exclude_types is not params.exclude_types

    def test_days_become_since(self) -> None:
        before = datetime.now()
        flt = build_filter(IntentParams(days=3))
        assert before - timedelta(days=3, seconds=5) < flt.since <= datetime.now() - timedelta(days=3)

    def test_explicit_since_wins(self) -> None:
        since = datetime(2026, 10, 1)
        assert build_filter(IntentParams(days=3, since=since)).since == since

    def test_empty_params_match_everything(self) -> None:
        flt = build_filter(IntentParams())
        assert flt.since is None
        assert flt.sender is None
        assert flt.limit is None

    def test_categories(self) -> None:
        assert EXCLUDE_CATEGORIES == ("newsletters", "advertisements", "automated")

"""Intent resolution — an ordered chain of stages, each allowed to pass.

Stages run cheapest-first: literal phrasings answered from the cache, AI
filtering of recent mail, structured intent classification, and finally a
keyword fallback that always produces an Intent.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from rich.console import Console

from mailagent.processing.backends import AIBackendError, AIOptions
from mailagent.processing.matchers import LITERAL_MATCHERS, Matcher
from mailagent.processing.prompts import INTENT_SYSTEM_PROMPT
from mailagent.processing.types import (
    EXCLUDE_CATEGORIES,
    ActionResult,
    Intent,
    IntentKind,
    IntentParams,
)
from mailagent.storage.models import MessageFilter

if TYPE_CHECKING:
    from mailagent.processing.actions import ActionContext
    from mailagent.processing.backends import BackendSelector
    from mailagent.storage.db import MessageCache

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class IntentParseError(ValueError):
    """Raised when a classifier answer is not a usable intent payload."""


@dataclass
class Resolution:
    """What a stage produced: an already-executed result, or an Intent to dispatch."""

    stage: str
    intent: Intent | None = None
    result: ActionResult | None = None


class Stage(Protocol):
    name: str

    def try_resolve(self, query: str) -> Resolution | None: ...


# ── Stage 1: literal commands ──────────────────────────────────────────────────


class LiteralCommandStage:
    """Fixed phrasings ("how many emails", "archive from X", ...) handled directly."""

    name = "literal"

    def __init__(self, ctx: ActionContext, matchers: Sequence[Matcher] = LITERAL_MATCHERS) -> None:
        self._ctx = ctx
        self.matchers = tuple(matchers)

    def try_resolve(self, query: str) -> Resolution | None:
        for matcher in self.matchers:
            result = matcher(self._ctx, query)
            if result is not None:
                logger.debug("Literal matcher %s handled %r", matcher.__name__, query)
                return Resolution(self.name, result=result)
        return None


# ── Stage 2: AI filtering ──────────────────────────────────────────────────────

SEARCH_KEYWORDS: tuple[str, ...] = (
    "show",
    "find",
    "search",
    "list",
    "personal",
    "important",
    "from",
    "about",
)


def time_window(query: str, now: datetime) -> tuple[datetime | None, datetime | None]:
    """(since, before) implied by "today", "yesterday" or "week" in ``query``."""
    lower = query.lower()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if "today" in lower:
        return midnight, None
    if "yesterday" in lower:
        return midnight - timedelta(days=1), midnight
    if "week" in lower:
        return now - timedelta(days=7), None
    return None, None


class AIFilterStage:
    """Lets the model pick matching messages out of a recent candidate set."""

    name = "ai_filter"
    candidate_limit = 200

    def __init__(
        self,
        selector: BackendSelector,
        cache: MessageCache,
        console: Console,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._selector = selector
        self._cache = cache
        self._console = console
        self._clock = clock

    def try_resolve(self, query: str) -> Resolution | None:
        lower = query.lower()
        if not any(k in lower for k in SEARCH_KEYWORDS) or not self._selector.available:
            return None

        since, before = time_window(query, self._clock())
        candidates = self._cache.query(
            MessageFilter(since=since, before=before, limit=self.candidate_limit)
        )
        if not candidates:
            return None

        self._console.print("[dim]🤖 Using AI to understand your request...[/dim]")
        try:
            chosen = self._selector.filter(candidates, query, "emails")
        except AIBackendError as exc:
            logger.warning("AI filtering failed: %s", exc)
            self._console.print("[yellow]AI filtering failed, falling back to basic search...[/yellow]")
            return None

        intent = Intent(
            IntentKind.SEARCH,
            IntentParams(since=since, before=before),
            stage=self.name,
            messages=chosen,
        )
        return Resolution(self.name, intent=intent)


# ── Stage 3: structured classification ─────────────────────────────────────────


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_intent(response: str, stage: str = "classifier") -> Intent:
    """Parse the classifier's JSON answer into a validated Intent.

    Raises:
        IntentParseError: no JSON object, unknown intent, or malformed parameters.
    """
    match = _JSON_OBJECT.search(response)
    if match is None:
        raise IntentParseError("no JSON object in response")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise IntentParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise IntentParseError("intent payload is not an object")

    try:
        kind = IntentKind(str(payload.get("intent", "")).strip().upper())
    except ValueError as exc:
        raise IntentParseError(f"unknown intent {payload.get('intent')!r}") from exc

    raw = payload.get("parameters") or {}
    if not isinstance(raw, dict):
        raise IntentParseError("parameters is not an object")

    days = raw.get("days")
    if days is not None:
        if isinstance(days, bool) or not isinstance(days, (int, float, str)):
            raise IntentParseError(f"days must be an integer, got {days!r}")
        try:
            days = int(days)
        except ValueError as exc:
            raise IntentParseError(f"days must be an integer, got {days!r}") from exc

    exclude = raw.get("excludeTypes") or []
    if not isinstance(exclude, list):
        raise IntentParseError("excludeTypes must be a list")
    unknown = [e for e in exclude if e not in EXCLUDE_CATEGORIES]
    if unknown:
        raise IntentParseError(f"unknown excludeTypes {unknown!r}")

    params = IntentParams(
        sender=_as_text(raw.get("from")),
        subject=_as_text(raw.get("subject")),
        content=_as_text(raw.get("content")),
        days=days or None,
        folder=_as_text(raw.get("folder")),
        target_folder=_as_text(raw.get("targetFolder")),
        exclude_types=list(exclude),
    )
    if kind == IntentKind.MOVE and params.target_folder is None and params.folder:
        params.target_folder, params.folder = params.folder, None
    return Intent(kind, params, stage=stage)


class ClassifierStage:
    """Asks the model which IntentKind the query is, with parameters."""

    name = "classifier"

    def __init__(self, selector: BackendSelector, console: Console) -> None:
        self._selector = selector
        self._console = console

    def try_resolve(self, query: str) -> Resolution | None:
        if not self._selector.available:
            logger.debug("No AI backend available; skipping classification")
            return None
        try:
            response = self._selector.ask(
                INTENT_SYSTEM_PROMPT, query, AIOptions(max_tokens=500, temperature=0.0)
            )
            intent = parse_intent(response, self.name)
        except (AIBackendError, IntentParseError) as exc:
            logger.warning("Intent classification failed: %s", exc)
            self._console.print(
                "[yellow]Could not determine intent, using basic search fallback[/yellow]"
            )
            self._console.print(f"[dim]Error: {exc}[/dim]")
            return None
        return Resolution(self.name, intent=intent)


# ── Stage 4: keyword fallback ──────────────────────────────────────────────────


def keyword_intent(query: str) -> Intent:
    """Map a query onto an Intent by keywords alone. Never raises."""
    lower = query.lower()
    content = query.strip() or None
    if any(k in lower for k in ("delete", "remove", "trash")):
        return Intent(IntentKind.DELETE, IntentParams(content=content), stage=KeywordStage.name)
    if "move" in lower:
        return Intent(IntentKind.MOVE, IntentParams(content=content), stage=KeywordStage.name)
    if "count" in lower or "how many" in lower:
        return Intent(IntentKind.COUNT, IntentParams(content=content), stage=KeywordStage.name)
    if "folder" in lower:
        return Intent(IntentKind.LIST_FOLDERS, stage=KeywordStage.name)
    if "summar" in lower:
        return Intent(IntentKind.SUMMARIZE, stage=KeywordStage.name)
    return Intent(IntentKind.SEARCH, IntentParams(content=content), stage=KeywordStage.name)


class KeywordStage:
    name = "keyword"

    def try_resolve(self, query: str) -> Resolution:
        return Resolution(self.name, intent=keyword_intent(query))


# ── Resolver ───────────────────────────────────────────────────────────────────


class IntentResolver:
    """Runs ``stages`` in order and returns the first resolution.

    Usage::

        resolver = IntentResolver.default(ctx, selector)
        resolution = resolver.resolve("show personal mail from today")
    """

    def __init__(self, stages: Sequence[Stage]) -> None:
        self.stages: tuple[Stage, ...] = tuple(stages)

    @classmethod
    def default(cls, ctx: ActionContext, selector: BackendSelector) -> IntentResolver:
        return cls(
            [
                LiteralCommandStage(ctx),
                AIFilterStage(selector, ctx.cache, ctx.console),
                ClassifierStage(selector, ctx.console),
                KeywordStage(),
            ]
        )

    def resolve(self, query: str) -> Resolution:
        for stage in self.stages:
            resolution = stage.try_resolve(query)
            if resolution is not None:
                logger.info("Resolved %r via %s", query, resolution.stage)
                return resolution
        return KeywordStage().try_resolve(query)

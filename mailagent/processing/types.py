"""Types for the intent resolution pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from mailagent.storage.models import CachedMessage, MessageFilter

#: Categories understood by MessageFilter.exclude_types.
EXCLUDE_CATEGORIES: tuple[str, ...] = ("newsletters", "advertisements", "automated")


class IntentKind(str, Enum):
    """What a query wants done. Values match the classifier's JSON vocabulary."""

    SEARCH = "SEARCH"
    DELETE = "DELETE"
    MOVE = "MOVE"
    COUNT = "COUNT"
    LIST_FOLDERS = "LIST_FOLDERS"
    LIST_FOLDER_CONTENTS = "LIST_FOLDER_CONTENTS"
    SUMMARIZE = "SUMMARIZE"


#: Kinds that change server state and therefore need confirmation.
MUTATING_KINDS: frozenset[IntentKind] = frozenset({IntentKind.DELETE, IntentKind.MOVE})


@dataclass
class IntentParams:
    """Filter-shaped parameters extracted from a query. Every field is optional."""

    sender: str | None = None
    subject: str | None = None
    content: str | None = None
    days: int | None = None
    folder: str | None = None
    target_folder: str | None = None
    exclude_types: list[str] = field(default_factory=list)
    since: datetime | None = None
    before: datetime | None = None


@dataclass
class Intent:
    """A resolved query, ready for the dispatcher.

    ``messages`` is set when the producing stage already knows the result set
    (the AI filter); the dispatcher then skips its own cache query.
    """

    kind: IntentKind
    params: IntentParams = field(default_factory=IntentParams)
    stage: str = ""
    messages: list[CachedMessage] | None = None


@dataclass
class ActionResult:
    """What every handler returns to handle_conversation callers."""

    kind: str
    messages: list[CachedMessage] = field(default_factory=list)
    count: int = 0
    affected: int = 0
    cancelled: bool = False
    notes: list[str] = field(default_factory=list)
    text: str = ""


def build_filter(params: IntentParams, limit: int | None = None) -> MessageFilter:
    """Translate intent parameters into a cache query.

    ``days`` becomes a ``since`` bound unless an explicit ``since`` is present.
    """
    since = params.since
    if since is None and params.days:
        since = datetime.now() - timedelta(days=params.days)
    return MessageFilter(
        sender=params.sender,
        subject=params.subject,
        content=params.content,
        since=since,
        before=params.before,
        folder=params.folder,
        exclude_types=list(params.exclude_types),
        limit=limit,
    )

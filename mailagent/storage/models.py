"""SQLite table schema, cached message rows, and the cache query filter."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

# ── DDL ────────────────────────────────────────────────────────────────────────

_CREATE_EMAILS = """
CREATE TABLE IF NOT EXISTS emails (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    uid           INTEGER NOT NULL,
    folder        TEXT NOT NULL DEFAULT 'INBOX',
    message_id    TEXT,
    from_address  TEXT NOT NULL DEFAULT '',
    from_name     TEXT NOT NULL DEFAULT '',
    to_address    TEXT NOT NULL DEFAULT '',
    subject       TEXT NOT NULL DEFAULT '',
    date          TEXT NOT NULL,
    snippet       TEXT NOT NULL DEFAULT '',
    flags         TEXT NOT NULL DEFAULT '[]',
    size          INTEGER NOT NULL DEFAULT 0,
    downloaded_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(uid, folder)
)
"""

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_emails_date ON emails(date)",
    "CREATE INDEX IF NOT EXISTS idx_emails_from ON emails(from_address)",
    "CREATE INDEX IF NOT EXISTS idx_emails_subject ON emails(subject)",
    "CREATE INDEX IF NOT EXISTS idx_emails_folder ON emails(folder)",
]

#: All DDL statements in creation order.
ALL_TABLES: list[str] = [_CREATE_EMAILS, *_INDEXES]

#: Folders hidden from unscoped queries unless include_trash is set.
TRASH_FOLDERS: tuple[str, ...] = ("Trash", "Deleted Messages", "Deleted Items")

#: LIKE patterns per exclusion category, split by the column they apply to.
EXCLUSION_PATTERNS: dict[str, dict[str, tuple[str, ...]]] = {
    "newsletters": {
        "from_address": ("%newsletter%", "%marketing%", "%news%"),
        "subject": ("%newsletter%", "%unsubscribe%"),
    },
    "advertisements": {
        "from_address": ("%promo%", "%offer%", "%deals%", "%sale%"),
        "subject": ("%sale%", "% off %"),
    },
    "automated": {
        "from_address": (
            "%noreply%",
            "%no-reply%",
            "%donotreply%",
            "%alerts%",
            "%notification%",
        ),
        "subject": ("%[MISSING]%", "%[REPORTING]%"),
    },
}


def to_utc_iso(value: datetime) -> str:
    """Normalise a datetime to the ISO-8601 UTC form stored in ``emails.date``.

    Naive datetimes are taken as local time.
    """
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


# ── Row types ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CachedMessage:
    """A local snapshot of one server message.

    ``uid`` is only meaningful together with ``folder``; never act on a uid
    against any other mailbox.
    """

    id: int
    uid: int
    folder: str
    from_address: str
    subject: str
    date: str
    from_name: str = ""
    to_address: str = ""
    snippet: str = ""

    @property
    def sender(self) -> str:
        """Display name when known, otherwise the address."""
        return self.from_name or self.from_address

    def to_prompt_dict(self) -> dict[str, object]:
        """The subset of fields handed to the AI filter."""
        return {
            "id": self.id,
            "from_address": self.from_address,
            "from_name": self.from_name,
            "subject": self.subject,
            "date": self.date,
            "folder": self.folder,
            "snippet": self.snippet[:120],
        }


@dataclass
class MessageFilter:
    """Predicates for MessageCache.query — all optional, AND-combined."""

    sender: str | None = None
    subject: str | None = None
    content: str | None = None
    since: datetime | None = None
    before: datetime | None = None
    folder: str | None = None
    exclude_types: list[str] = field(default_factory=list)
    include_trash: bool = False
    limit: int | None = None

"""SQLite message cache — the local query surface the engine reads from."""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from mailagent.storage.models import (
    ALL_TABLES,
    EXCLUSION_PATTERNS,
    TRASH_FOLDERS,
    CachedMessage,
    MessageFilter,
    to_utc_iso,
)

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/mailagent.db")

_SELECT_COLUMNS = (
    "id, uid, folder, from_address, from_name, to_address, subject, date, snippet"
)


class MessageCache:
    """Wraps SQLite for the locally synchronised copy of the mailbox.

    The connection is shared between the conversation thread and the
    background sync job, so every statement runs under one re-entrant lock.

    Usage::

        cache = MessageCache()
        rows = cache.query(MessageFilter(sender="github", limit=20))
    """

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            self._conn.close()

    # ── Read API ────────────────────────────────────────────────────────────────

    def query(self, flt: MessageFilter) -> list[CachedMessage]:
        """Return messages matching ``flt``, newest first."""
        sql, params = self._build_query(flt)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [CachedMessage(**dict(r)) for r in rows]

    def count(self, flt: MessageFilter) -> int:
        """Number of rows ``query`` would return without a limit."""
        sql, params = self._build_query(flt, select="COUNT(*)", ordered=False)
        with self._lock:
            return int(self._conn.execute(sql, params).fetchone()[0])

    def has_message(self, uid: int, folder: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM emails WHERE uid = ? AND folder = ?", (uid, folder)
            ).fetchone()
        return row is not None

    def folder_stats(self) -> list[tuple[str, int]]:
        """(folder, message count) pairs, largest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT folder, COUNT(*) AS n FROM emails GROUP BY folder ORDER BY n DESC"
            ).fetchall()
        return [(r["folder"], r["n"]) for r in rows]

    # ── Write API ───────────────────────────────────────────────────────────────

    def upsert(
        self,
        *,
        uid: int,
        folder: str,
        from_address: str,
        subject: str,
        date: datetime,
        from_name: str = "",
        to_address: str = "",
        snippet: str = "",
        message_id: str | None = None,
        flags: Iterable[str] = (),
        size: int = 0,
    ) -> None:
        """Insert or refresh a downloaded message keyed by (uid, folder)."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO emails
                    (uid, folder, message_id, from_address, from_name, to_address,
                     subject, date, snippet, flags, size)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(uid, folder) DO UPDATE SET
                    message_id   = excluded.message_id,
                    from_address = excluded.from_address,
                    from_name    = excluded.from_name,
                    to_address   = excluded.to_address,
                    subject      = excluded.subject,
                    date         = excluded.date,
                    snippet      = excluded.snippet,
                    flags        = excluded.flags,
                    size         = excluded.size
                """,
                (
                    uid,
                    folder,
                    message_id,
                    from_address,
                    from_name,
                    to_address,
                    subject,
                    to_utc_iso(date),
                    snippet,
                    json.dumps(list(flags)),
                    size,
                ),
            )

    def reassign_folder(self, uid: int, source: str, target: str) -> None:
        """Record that (uid, source) now lives in ``target`` after a server move.

        When ``target`` already caches a message under the same uid, that row
        is kept and the moved row is dropped; the next sync of ``target``
        picks the moved message up under its real uid.
        """
        with self._lock, self._conn:
            taken = self._conn.execute(
                "SELECT 1 FROM emails WHERE uid = ? AND folder = ?", (uid, target)
            ).fetchone()
            if taken:
                logger.debug(
                    "uid %s already cached in %s; dropping moved row from %s", uid, target, source
                )
                self._conn.execute(
                    "DELETE FROM emails WHERE uid = ? AND folder = ?", (uid, source)
                )
                return
            self._conn.execute(
                "UPDATE emails SET folder = ? WHERE uid = ? AND folder = ?",
                (target, uid, source),
            )

    def prune_missing(self, folder: str, since: datetime, server_uids: set[int]) -> int:
        """Drop rows in ``folder`` newer than ``since`` that the server no longer has.

        Returns the number of rows removed.
        """
        with self._lock, self._conn:
            rows = self._conn.execute(
                "SELECT uid FROM emails WHERE folder = ? AND date >= ?",
                (folder, to_utc_iso(since)),
            ).fetchall()
            stale = [r["uid"] for r in rows if r["uid"] not in server_uids]
            self._conn.executemany(
                "DELETE FROM emails WHERE uid = ? AND folder = ?",
                [(uid, folder) for uid in stale],
            )
        return len(stale)

    # ── Private ─────────────────────────────────────────────────────────────────

    def _create_tables(self) -> None:
        with self._lock, self._conn:
            for ddl in ALL_TABLES:
                self._conn.execute(ddl)

    @staticmethod
    def _build_query(
        flt: MessageFilter, select: str = _SELECT_COLUMNS, ordered: bool = True
    ) -> tuple[str, list[object]]:
        conditions: list[str] = []
        params: list[object] = []

        if not flt.include_trash and not flt.folder:
            conditions.append(f"folder NOT IN ({', '.join('?' * len(TRASH_FOLDERS))})")
            params.extend(TRASH_FOLDERS)
        if flt.sender:
            conditions.append("(from_address LIKE ? OR from_name LIKE ?)")
            params.extend([f"%{flt.sender}%"] * 2)
        if flt.subject:
            conditions.append("subject LIKE ?")
            params.append(f"%{flt.subject}%")
        if flt.content:
            conditions.append("(subject LIKE ? OR from_address LIKE ? OR snippet LIKE ?)")
            params.extend([f"%{flt.content}%"] * 3)
        if flt.since is not None:
            conditions.append("date >= ?")
            params.append(to_utc_iso(flt.since))
        if flt.before is not None:
            conditions.append("date <= ?")
            params.append(to_utc_iso(flt.before))
        if flt.folder:
            conditions.append("folder = ?")
            params.append(flt.folder)

        exclusions: list[str] = []
        for category in flt.exclude_types:
            for column, patterns in EXCLUSION_PATTERNS.get(category, {}).items():
                for pattern in patterns:
                    exclusions.append(f"{column} NOT LIKE ?")
                    params.append(pattern)
        if exclusions:
            conditions.append(f"({' AND '.join(exclusions)})")

        sql = f"SELECT {select} FROM emails"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        if ordered:
            sql += " ORDER BY date DESC, id DESC"
            if flt.limit:
                sql += " LIMIT ?"
                params.append(flt.limit)
        return sql, params

"""Incremental IMAP → SQLite downloader that keeps the message cache fresh."""

from __future__ import annotations

import email
import email.policy
import logging
import os
import tempfile
import time
from datetime import datetime, timedelta
from email.message import EmailMessage
from email.utils import parseaddr, parsedate_to_datetime
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console

from mailagent.imap.client import ClientFactory, ProtocolOperationError, mailbox_session
from mailagent.processing.prompts import SNIPPET_CHAR_LIMIT, strip_html

if TYPE_CHECKING:
    from mailagent.config import Settings
    from mailagent.imap.client import MailboxClient
    from mailagent.storage.db import MessageCache

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "mailagent-download.lock"
_STALE_LOCK_SECONDS = 5 * 60
_SKIPPED_FOLDERS = ("Notes",)


class EmailDownloader:
    """Pulls recent messages from every folder into the local cache.

    Only messages the cache does not already have are fetched. Rows whose uid
    has disappeared from the server within the window are pruned, so deletes
    made in other mail clients show up locally.

    Usage::

        downloader = EmailDownloader(settings, cache)
        new = downloader.download(days=30)
    """

    def __init__(
        self,
        settings: Settings,
        cache: MessageCache,
        console: Console | None = None,
        client_factory: ClientFactory | None = None,
        lock_dir: Path | None = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._console = console or Console()
        self._factory = client_factory
        self._lock_path = Path(lock_dir or tempfile.gettempdir()) / LOCK_FILE_NAME

    def download(self, days: int, folder: str | None = None, background: bool = False) -> int:
        """Sync the last ``days`` days. Returns the number of new messages stored.

        Returns 0 without touching the server when another download holds the lock.

        Raises:
            MailboxConnectionError: the session could not be opened.
        """
        if not self._acquire_lock():
            logger.info("Another download is in progress; skipping")
            if not background:
                self._console.print("[yellow]Another download is already running.[/yellow]")
            return 0

        try:
            return self._run(days, folder, background)
        finally:
            self._release_lock()

    # ── Sync ───────────────────────────────────────────────────────────────────

    def _run(self, days: int, folder: str | None, background: bool) -> int:
        since = (datetime.now() - timedelta(days=days)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        total_new = 0

        with mailbox_session(self._settings, self._cache, client_factory=self._factory) as mailbox:
            if folder:
                paths = [folder]
            else:
                paths = [f.path for f in mailbox.list_folders() if _should_sync(f.path)]

            for path in paths:
                try:
                    new, removed = self._sync_folder(mailbox, path, since)
                except ProtocolOperationError as exc:
                    logger.warning("Skipping folder %s: %s", path, exc)
                    if not background:
                        self._console.print(f"  [red]✗[/red] {path}: {exc}")
                    continue
                total_new += new
                if not background:
                    line = f"  {path}: [bold]{new}[/bold] new"
                    if removed:
                        line += f", [dim]{removed} removed[/dim]"
                    self._console.print(line)

        logger.info("Download finished: %d new message(s) since %s", total_new, since.date())
        if not background:
            self._console.print(f"[green]Done.[/green] {total_new} new message(s).")
        return total_new

    def _sync_folder(self, mailbox: MailboxClient, path: str, since: datetime) -> tuple[int, int]:
        with mailbox.mailbox_lock(path):
            server_uids = mailbox.search_since(since.date())
            missing = [uid for uid in server_uids if not self._cache.has_message(uid, path)]
            fetched = mailbox.fetch_raw(missing)

        stored = 0
        for uid, (raw, flags) in fetched.items():
            try:
                self._store(uid, path, raw, flags)
            except Exception as exc:  # noqa: BLE001
                logger.error("Could not store uid %s from %s: %s", uid, path, exc)
                continue
            stored += 1

        removed = self._cache.prune_missing(path, since, set(server_uids))
        return stored, removed

    def _store(self, uid: int, folder: str, raw: bytes, flags: list[str]) -> None:
        msg = email.message_from_bytes(raw, policy=email.policy.default)
        from_name, from_address = parseaddr(str(msg.get("From", "")))
        _, to_address = parseaddr(str(msg.get("To", "")))
        self._cache.upsert(
            uid=uid,
            folder=folder,
            from_address=from_address,
            from_name=from_name,
            to_address=to_address,
            subject=str(msg.get("Subject", "")),
            date=_message_date(msg),
            snippet=extract_snippet(msg),
            message_id=str(msg.get("Message-ID", "")) or None,
            flags=flags,
            size=len(raw),
        )

    # ── Lock file ──────────────────────────────────────────────────────────────

    def _acquire_lock(self) -> bool:
        try:
            age = time.time() - self._lock_path.stat().st_mtime
        except FileNotFoundError:
            age = None
        if age is not None and age < _STALE_LOCK_SECONDS:
            return False
        if age is not None:
            logger.warning("Removing stale download lock %s (%.0fs old)", self._lock_path, age)
        self._lock_path.write_text(str(os.getpid()))
        return True

    def _release_lock(self) -> None:
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            pass


def _should_sync(path: str) -> bool:
    return not path.startswith("[") and path not in _SKIPPED_FOLDERS


def _message_date(msg: EmailMessage) -> datetime:
    value = msg.get("Date")
    if value:
        try:
            return parsedate_to_datetime(str(value))
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header %r", value)
    return datetime.now()


def extract_snippet(msg: EmailMessage) -> str:
    """First plain-text part (or de-tagged HTML part), whitespace-collapsed."""
    body = msg.get_body(preferencelist=("plain", "html"))
    if body is None:
        return ""
    try:
        text = body.get_content()
    except (LookupError, ValueError) as exc:
        logger.debug("Could not decode body part: %s", exc)
        return ""
    if body.get_content_subtype() == "html":
        text = strip_html(text)
    return " ".join(str(text).split())[:SNIPPET_CHAR_LIMIT]

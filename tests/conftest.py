"""Shared pytest fixtures."""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from mailagent.config import Settings
from mailagent.storage.db import MessageCache
from mailagent.storage.models import CachedMessage, MessageFilter


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        account="me@example.com",
        password="app-password",
        imap_host="imap.example.com",
        db_path=tmp_path / "mail.db",
        history_file=tmp_path / "history",
    )


@pytest.fixture
def cache(tmp_path: Path) -> MessageCache:
    return MessageCache(db_path=tmp_path / "mail.db")


@pytest.fixture
def console() -> Console:
    return Console(record=True, width=200, force_terminal=False)


@pytest.fixture
def imap() -> MagicMock:
    """An IMAPClient stand-in with a plausible folder listing."""
    client = MagicMock()
    client.list_folders.return_value = [
        ((b"\\HasNoChildren",), b"/", "INBOX"),
        ((b"\\HasNoChildren", b"\\Trash"), b"/", "Deleted Messages"),
        ((b"\\HasNoChildren", b"\\Sent"), b"/", "Sent Messages"),
        ((b"\\HasNoChildren", b"\\Archive"), b"/", "Archive"),
    ]
    return client


@pytest.fixture
def add_message(cache: MessageCache) -> Callable[..., CachedMessage]:
    """Insert a row and return it as the cache reports it."""
    counter = {"uid": 100}

    def _add(
        subject: str = "Hello",
        from_address: str = "alice@example.com",
        folder: str = "INBOX",
        uid: int | None = None,
        from_name: str = "",
        snippet: str = "",
        age: timedelta = timedelta(hours=1),
    ) -> CachedMessage:
        if uid is None:
            counter["uid"] += 1
            uid = counter["uid"]
        cache.upsert(
            uid=uid,
            folder=folder,
            from_address=from_address,
            from_name=from_name,
            subject=subject,
            date=datetime.now(timezone.utc) - age,
            snippet=snippet,
        )
        rows = cache.query(MessageFilter(folder=folder, limit=10000))
        return next(r for r in rows if r.uid == uid)

    return _add

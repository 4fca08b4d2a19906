"""IMAP mailbox client — folder discovery, per-folder locks, move and delete."""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from datetime import date
from typing import TYPE_CHECKING, Any

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError

from mailagent.imap.types import (
    DEFAULT_TRASH,
    FALLBACK_FOLDERS,
    SPECIAL_USE_FLAGS,
    TRASH_PATH_NAMES,
    DeleteOutcome,
    Folder,
    SpecialUse,
)

if TYPE_CHECKING:
    from mailagent.config import Settings
    from mailagent.storage.db import MessageCache

logger = logging.getLogger(__name__)

_DELETED = b"\\Deleted"
_CONNECT_TIMEOUT_SECONDS = 30

#: Anything that builds an IMAPClient-compatible object from (host, port=, ssl=, timeout=).
ClientFactory = Callable[..., Any]

# Server-side failures: imapclient raises IMAPClientError subclasses for
# protocol errors and the socket layer raises OSError (ssl errors included).
_PROTOCOL_ERRORS = (IMAPClientError, OSError)


class MailboxConnectionError(ConnectionError):
    """Raised when a mailbox session cannot be established."""


class NotConnectedError(RuntimeError):
    """Raised when an operation needs a live session and there is none."""


class ProtocolOperationError(Exception):
    """Raised when a move, flag, or select fails on the server."""


class MailboxClient:
    """One authenticated IMAP session for a single account.

    Disconnected → Connected on ``connect()``; back to Disconnected on
    ``disconnect()``. Everything else requires Connected and raises
    NotConnectedError otherwise. Use ``mailbox_session()`` to get a client
    that is connected on entry and always logged out on exit.

    Mutations run under ``mailbox_lock(folder)``, which holds an exclusive
    per-folder lock and has the folder selected read-write.

    Usage::

        with mailbox_session(settings, cache) as mailbox:
            mailbox.move_messages([101, 102], "INBOX", "Archive")
    """

    def __init__(
        self,
        settings: Settings,
        cache: MessageCache | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._factory = client_factory or IMAPClient
        self._imap: Any = None
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        #: User-visible notes about absorbed bookkeeping failures; drained by callers.
        self.notes: list[str] = []

    # ── Session ────────────────────────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._imap is not None

    def connect(self, account: str | None = None) -> None:
        """Open and authenticate the session. No-op when already connected.

        Raises:
            MailboxConnectionError: credentials missing or the handshake/login failed.
        """
        if self._imap is not None:
            return
        account = account or self._settings.account
        if not account or not self._settings.password:
            raise MailboxConnectionError(
                "EMAIL_ACCOUNT and EMAIL_PASSWORD must be set to reach the mail server"
            )

        host, port = self._settings.imap_host, self._settings.imap_port
        try:
            imap = self._factory(host, port=port, ssl=True, timeout=_CONNECT_TIMEOUT_SECONDS)
            imap.login(account, self._settings.password)
        except _PROTOCOL_ERRORS as exc:
            raise MailboxConnectionError(f"Could not connect to {host}: {exc}") from exc

        self._imap = imap
        logger.info("Connected to %s as %s", host, account)

    def disconnect(self) -> None:
        """Log out. Safe to call when never connected."""
        if self._imap is None:
            return
        try:
            self._imap.logout()
        except _PROTOCOL_ERRORS as exc:
            logger.warning("Logout failed (session dropped anyway): %s", exc)
        finally:
            self._imap = None
        logger.info("Disconnected from %s", self._settings.imap_host)

    # ── Folders ────────────────────────────────────────────────────────────────

    def list_folders(self) -> list[Folder]:
        """Return the server's folders, or the fallback set if LIST fails."""
        imap = self._require()
        try:
            listing = imap.list_folders()
        except _PROTOCOL_ERRORS as exc:
            logger.warning("Folder listing failed, using fallback folders: %s", exc)
            return list(FALLBACK_FOLDERS)
        return [_parse_folder(flags, delimiter, name) for flags, delimiter, name in listing]

    def resolve_trash(self, folders: Sequence[Folder] | None = None) -> str:
        """Pick the trash folder: \\Trash flag, then conventional names, then "Trash"."""
        folders = self.list_folders() if folders is None else folders
        for folder in folders:
            if folder.special_use == SpecialUse.TRASH:
                return folder.path
        for folder in folders:
            if folder.path.lower() in TRASH_PATH_NAMES:
                return folder.path
        return DEFAULT_TRASH

    @contextlib.contextmanager
    def mailbox_lock(self, folder: str) -> Iterator[str]:
        """Hold the exclusive lock on ``folder`` with it selected read-write.

        The lock is released on every exit path, including select failures.
        """
        imap = self._require()
        lock = self._lock_for(folder)
        lock.acquire()
        try:
            try:
                imap.select_folder(folder, readonly=False)
            except _PROTOCOL_ERRORS as exc:
                raise ProtocolOperationError(f"Could not open {folder}: {exc}") from exc
            yield folder
        finally:
            lock.release()

    def is_locked(self, folder: str) -> bool:
        lock = self._locks.get(folder)
        return lock is not None and lock.locked()

    # ── Mutations ──────────────────────────────────────────────────────────────

    def move_messages(self, uids: Sequence[int], source: str, target: str) -> None:
        """Move ``uids`` from ``source`` to ``target``, then update the cache.

        Raises:
            ProtocolOperationError: the server rejected the move. The cache is untouched.
        """
        uids = list(uids)
        if not uids:
            return
        with self.mailbox_lock(source):
            try:
                self._imap.move(uids, target)
            except _PROTOCOL_ERRORS as exc:
                raise ProtocolOperationError(
                    f"Could not move {len(uids)} message(s) from {source} to {target}: {exc}"
                ) from exc
        logger.info("Moved %d message(s) from %s to %s", len(uids), source, target)
        self._record_move(uids, source, target)

    def delete_messages(self, uids: Sequence[int], source: str) -> DeleteOutcome:
        """Move ``uids`` to the trash folder, or flag them \\Deleted in place.

        Flagging is the fallback when the trash move is rejected, so a delete
        always has an effect on existing messages.

        Raises:
            ProtocolOperationError: both the move and the flag fallback failed.
        """
        uids = list(uids)
        trash = self.resolve_trash()
        try:
            self.move_messages(uids, source, trash)
        except ProtocolOperationError as move_exc:
            logger.warning("Trash move rejected, flagging as deleted instead: %s", move_exc)
            with self.mailbox_lock(source):
                try:
                    self._imap.add_flags(uids, [_DELETED])
                except _PROTOCOL_ERRORS as exc:
                    raise ProtocolOperationError(
                        f"Could not delete {len(uids)} message(s) in {source}: {exc}"
                    ) from exc
            return DeleteOutcome(source, tuple(uids), "flagged", trash, reason=str(move_exc))
        return DeleteOutcome(source, tuple(uids), "moved", trash)

    # ── Fetching (used by the downloader) ──────────────────────────────────────

    def search_since(self, since: date) -> list[int]:
        """UIDs in the selected folder received on or after ``since``."""
        try:
            return list(self._require().search(["SINCE", since]))
        except _PROTOCOL_ERRORS as exc:
            raise ProtocolOperationError(f"SEARCH failed: {exc}") from exc

    def fetch_raw(self, uids: Sequence[int]) -> dict[int, tuple[bytes, list[str]]]:
        """Full RFC 822 source and flags for ``uids`` in the selected folder."""
        if not uids:
            return {}
        try:
            response = self._require().fetch(list(uids), ["BODY.PEEK[]", "FLAGS"])
        except _PROTOCOL_ERRORS as exc:
            raise ProtocolOperationError(f"FETCH failed: {exc}") from exc
        result: dict[int, tuple[bytes, list[str]]] = {}
        for uid, data in response.items():
            raw = data.get(b"BODY[]") or b""
            flags = [_decode(f) for f in data.get(b"FLAGS", ())]
            result[int(uid)] = (raw, flags)
        return result

    # ── Internal helpers ───────────────────────────────────────────────────────

    def _require(self) -> Any:
        if self._imap is None:
            raise NotConnectedError("Not connected to email server")
        return self._imap

    def _lock_for(self, folder: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(folder, threading.Lock())

    def _record_move(self, uids: list[int], source: str, target: str) -> None:
        """Best-effort cache bookkeeping. The server move already succeeded."""
        if self._cache is None:
            return
        failed = 0
        for uid in uids:
            try:
                self._cache.reassign_folder(uid, source, target)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                logger.warning("Cache update failed for uid %s (%s → %s): %s", uid, source, target, exc)
        if failed:
            self.notes.append(
                f"Note: could not update the local cache for {failed} moved message(s)"
            )


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


def _parse_folder(flags: Sequence[bytes], delimiter: bytes | str | None, name: bytes | str) -> Folder:
    path = _decode(name)
    delim = _decode(delimiter) if delimiter else "/"
    special = SpecialUse.INBOX if path.upper() == "INBOX" else SpecialUse.NONE
    for flag in flags:
        key = flag if isinstance(flag, bytes) else str(flag).encode()
        if key in SPECIAL_USE_FLAGS:
            special = SPECIAL_USE_FLAGS[key]
            break
    return Folder(path=path, name=path.rsplit(delim, 1)[-1], special_use=special, delimiter=delim)


@contextlib.contextmanager
def mailbox_session(
    settings: Settings,
    cache: MessageCache | None = None,
    *,
    client_factory: ClientFactory | None = None,
) -> Iterator[MailboxClient]:
    """Context manager that yields a connected MailboxClient and always logs out.

    Each caller opens its own session; sessions are never shared between the
    conversation and the background sync.

    Example::

        with mailbox_session(settings) as mailbox:
            folders = mailbox.list_folders()
    """
    client = MailboxClient(settings, cache, client_factory=client_factory)
    client.connect()
    try:
        yield client
    finally:
        client.disconnect()

"""Tests for MailboxClient — IMAPClient is replaced by a MagicMock factory."""

import socket
from unittest.mock import MagicMock

import pytest
from imapclient.exceptions import IMAPClientError

from mailagent.config import Settings
from mailagent.imap.client import (
    MailboxClient,
    MailboxConnectionError,
    NotConnectedError,
    ProtocolOperationError,
    mailbox_session,
)
from mailagent.imap.types import FALLBACK_FOLDERS, SpecialUse
from mailagent.storage.db import MessageCache
from mailagent.storage.models import MessageFilter


def _connected(settings: Settings, imap: MagicMock, cache: MessageCache | None = None) -> MailboxClient:
    client = MailboxClient(settings, cache, client_factory=MagicMock(return_value=imap))
    client.connect()
    return client


# ── Session lifecycle ──────────────────────────────────────────────────────────


class TestConnect:
    def test_logs_in_over_ssl(self, settings: Settings, imap: MagicMock) -> None:
        factory = MagicMock(return_value=imap)
        client = MailboxClient(settings, client_factory=factory)

        client.connect()

        factory.assert_called_once_with("imap.example.com", port=993, ssl=True, timeout=30)
        imap.login.assert_called_once_with("me@example.com", "app-password")
        assert client.connected

    def test_second_connect_is_a_no_op(self, settings: Settings, imap: MagicMock) -> None:
        factory = MagicMock(return_value=imap)
        client = MailboxClient(settings, client_factory=factory)
        client.connect()
        client.connect()
        assert factory.call_count == 1

    def test_missing_credentials(self, settings: Settings) -> None:
        settings.password = ""
        factory = MagicMock()
        with pytest.raises(MailboxConnectionError):
            MailboxClient(settings, client_factory=factory).connect()
        factory.assert_not_called()

    def test_login_failure_is_a_connection_error(self, settings: Settings, imap: MagicMock) -> None:
        imap.login.side_effect = IMAPClientError("AUTHENTICATIONFAILED")
        client = MailboxClient(settings, client_factory=MagicMock(return_value=imap))

        with pytest.raises(ConnectionError):
            client.connect()
        assert not client.connected

    def test_socket_failure_is_a_connection_error(self, settings: Settings) -> None:
        factory = MagicMock(side_effect=socket.timeout("timed out"))
        with pytest.raises(MailboxConnectionError):
            MailboxClient(settings, client_factory=factory).connect()


class TestDisconnect:
    def test_never_connected_is_a_no_op(self, settings: Settings) -> None:
        MailboxClient(settings, client_factory=MagicMock()).disconnect()

    def test_logout_error_is_swallowed(self, settings: Settings, imap: MagicMock) -> None:
        imap.logout.side_effect = OSError("broken pipe")
        client = _connected(settings, imap)

        client.disconnect()

        assert not client.connected

    def test_operations_require_connection(self, settings: Settings) -> None:
        client = MailboxClient(settings, client_factory=MagicMock())
        with pytest.raises(NotConnectedError):
            client.list_folders()
        with pytest.raises(NotConnectedError):
            client.move_messages([1], "INBOX", "Archive")

    def test_session_context_always_logs_out(self, settings: Settings, imap: MagicMock) -> None:
        with pytest.raises(RuntimeError):
            with mailbox_session(settings, client_factory=MagicMock(return_value=imap)):
                raise RuntimeError("boom")
        imap.logout.assert_called_once()


# ── Folders ────────────────────────────────────────────────────────────────────


class TestFolders:
    def test_special_use_mapping(self, settings: Settings, imap: MagicMock) -> None:
        folders = _connected(settings, imap).list_folders()

        by_path = {f.path: f.special_use for f in folders}
        assert by_path == {
            "INBOX": SpecialUse.INBOX,
            "Deleted Messages": SpecialUse.TRASH,
            "Sent Messages": SpecialUse.SENT,
            "Archive": SpecialUse.ARCHIVE,
        }

    def test_nested_folder_name_uses_delimiter(self, settings: Settings, imap: MagicMock) -> None:
        imap.list_folders.return_value = [((), b".", "Projects.Acme")]
        (folder,) = _connected(settings, imap).list_folders()
        assert folder.name == "Acme"
        assert folder.delimiter == "."

    def test_fallback_is_deterministic(self, settings: Settings, imap: MagicMock) -> None:
        client = _connected(settings, imap)

        imap.list_folders.side_effect = IMAPClientError("LIST failed")
        first = client.list_folders()
        imap.list_folders.side_effect = OSError("connection reset")
        second = client.list_folders()

        assert first == second == list(FALLBACK_FOLDERS)
        assert first is not second

    def test_trash_prefers_special_use(self, settings: Settings, imap: MagicMock) -> None:
        assert _connected(settings, imap).resolve_trash() == "Deleted Messages"

    def test_trash_by_conventional_name(self, settings: Settings, imap: MagicMock) -> None:
        imap.list_folders.return_value = [((), b"/", "INBOX"), ((), b"/", "Deleted Items")]
        assert _connected(settings, imap).resolve_trash() == "Deleted Items"

    def test_trash_literal_default(self, settings: Settings, imap: MagicMock) -> None:
        imap.list_folders.return_value = [((), b"/", "INBOX")]
        assert _connected(settings, imap).resolve_trash() == "Trash"


# ── Locks and mutations ────────────────────────────────────────────────────────


class TestMailboxLock:
    def test_selects_read_write_and_releases(self, settings: Settings, imap: MagicMock) -> None:
        client = _connected(settings, imap)

        with client.mailbox_lock("INBOX"):
            assert client.is_locked("INBOX")

        imap.select_folder.assert_called_once_with("INBOX", readonly=False)
        assert not client.is_locked("INBOX")

    def test_released_when_select_fails(self, settings: Settings, imap: MagicMock) -> None:
        imap.select_folder.side_effect = IMAPClientError("NONEXISTENT")
        client = _connected(settings, imap)

        with pytest.raises(ProtocolOperationError):
            with client.mailbox_lock("Nope"):
                pass

        assert not client.is_locked("Nope")


class TestMoveMessages:
    def test_moves_and_updates_cache(
        self, settings: Settings, imap: MagicMock, cache: MessageCache, add_message
    ) -> None:
        add_message(uid=5)
        add_message(uid=6)
        client = _connected(settings, imap, cache)

        client.move_messages([5, 6], "INBOX", "Archive")

        imap.move.assert_called_once_with([5, 6], "Archive")
        assert cache.count(MessageFilter(folder="Archive")) == 2
        assert client.notes == []

    def test_move_never_overwrites_a_cached_target_message(
        self, settings: Settings, imap: MagicMock, cache: MessageCache, add_message
    ) -> None:
        add_message("Quarterly report", uid=3, folder="Archive")
        add_message("Alert", uid=3, folder="INBOX")
        client = _connected(settings, imap, cache)

        client.move_messages([3], "INBOX", "Archive")

        archived = cache.query(MessageFilter(folder="Archive"))
        assert [r.subject for r in archived] == ["Quarterly report"]
        assert cache.count(MessageFilter(folder="INBOX")) == 0
        assert client.notes == []

    def test_server_failure_leaves_cache_and_lock_alone(
        self, settings: Settings, imap: MagicMock, cache: MessageCache, add_message
    ) -> None:
        add_message(uid=5)
        imap.move.side_effect = IMAPClientError("NO [TRYCREATE]")
        client = _connected(settings, imap, cache)

        with pytest.raises(ProtocolOperationError):
            client.move_messages([5], "INBOX", "Missing")

        assert cache.count(MessageFilter(folder="INBOX")) == 1
        assert not client.is_locked("INBOX")

    def test_cache_failure_becomes_a_note(self, settings: Settings, imap: MagicMock) -> None:
        cache = MagicMock()
        cache.reassign_folder.side_effect = RuntimeError("database is locked")
        client = _connected(settings, imap, cache)

        client.move_messages([5, 6], "INBOX", "Archive")

        imap.move.assert_called_once()
        assert len(client.notes) == 1
        assert "2 moved message(s)" in client.notes[0]


class TestDeleteMessages:
    def test_moves_to_trash(self, settings: Settings, imap: MagicMock) -> None:
        outcome = _connected(settings, imap).delete_messages([9], "INBOX")

        imap.move.assert_called_once_with([9], "Deleted Messages")
        assert outcome.method == "moved"
        assert outcome.trash_folder == "Deleted Messages"
        assert outcome.uids == (9,)

    def test_flags_in_place_when_move_rejected(self, settings: Settings, imap: MagicMock) -> None:
        imap.move.side_effect = IMAPClientError("NO move not allowed")

        outcome = _connected(settings, imap).delete_messages([9, 10], "INBOX")

        imap.add_flags.assert_called_once_with([9, 10], [b"\\Deleted"])
        assert outcome.method == "flagged"
        assert "move not allowed" in (outcome.reason or "")

    def test_raises_when_flagging_also_fails(self, settings: Settings, imap: MagicMock) -> None:
        imap.move.side_effect = IMAPClientError("NO")
        imap.add_flags.side_effect = IMAPClientError("NO")
        client = _connected(settings, imap)

        with pytest.raises(ProtocolOperationError):
            client.delete_messages([9], "INBOX")
        assert not client.is_locked("INBOX")


class TestFetch:
    def test_fetch_raw_decodes_flags(self, settings: Settings, imap: MagicMock) -> None:
        imap.fetch.return_value = {3: {b"BODY[]": b"raw", b"FLAGS": (b"\\Seen",)}}

        fetched = _connected(settings, imap).fetch_raw([3])

        imap.fetch.assert_called_once_with([3], ["BODY.PEEK[]", "FLAGS"])
        assert fetched == {3: (b"raw", ["\\Seen"])}

    def test_fetch_nothing_skips_the_server(self, settings: Settings, imap: MagicMock) -> None:
        assert _connected(settings, imap).fetch_raw([]) == {}
        imap.fetch.assert_not_called()

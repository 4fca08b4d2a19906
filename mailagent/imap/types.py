"""Data types shared across IMAP client modules."""

from dataclasses import dataclass, field
from enum import Enum


class SpecialUse(str, Enum):
    """A folder's declared role (RFC 6154), or NONE for ordinary folders."""

    INBOX = "inbox"
    TRASH = "trash"
    SENT = "sent"
    DRAFTS = "drafts"
    JUNK = "junk"
    ARCHIVE = "archive"
    NONE = "none"


#: LIST flags → special use. Flags arrive as bytes from imapclient.
SPECIAL_USE_FLAGS: dict[bytes, SpecialUse] = {
    b"\\Trash": SpecialUse.TRASH,
    b"\\Sent": SpecialUse.SENT,
    b"\\Drafts": SpecialUse.DRAFTS,
    b"\\Junk": SpecialUse.JUNK,
    b"\\Archive": SpecialUse.ARCHIVE,
}

#: Path names that conventionally mean "trash" when no \Trash flag is advertised.
TRASH_PATH_NAMES: tuple[str, ...] = (
    "trash",
    "deleted messages",
    "deleted items",
    "[gmail]/trash",
)

DEFAULT_TRASH = "Trash"
DEFAULT_ARCHIVE = "Archive"


@dataclass(frozen=True)
class Folder:
    """A mailbox as reported by LIST. Never persisted — the server is authoritative."""

    path: str
    name: str
    special_use: SpecialUse = SpecialUse.NONE
    delimiter: str = "/"


#: Returned by MailboxClient.list_folders() whenever LIST fails.
FALLBACK_FOLDERS: tuple[Folder, ...] = (
    Folder("INBOX", "INBOX", SpecialUse.INBOX),
    Folder("Trash", "Trash", SpecialUse.TRASH),
    Folder("Sent", "Sent", SpecialUse.SENT),
    Folder("Drafts", "Drafts", SpecialUse.DRAFTS),
    Folder("Junk", "Junk", SpecialUse.JUNK),
)


@dataclass(frozen=True)
class DeleteOutcome:
    """How a delete was carried out for one source folder.

    ``method`` is ``"moved"`` when the messages reached ``trash_folder`` and
    ``"flagged"`` when the move was rejected and ``\\Deleted`` was set in place
    instead; ``reason`` then holds the server's complaint.
    """

    source: str
    uids: tuple[int, ...]
    method: str
    trash_folder: str
    reason: str | None = None


@dataclass
class FolderOutcome:
    """Result of one per-folder partition of a multi-folder move or delete."""

    source: str
    uids: list[int] = field(default_factory=list)
    ok: bool = True
    error: str | None = None
    delete: DeleteOutcome | None = None

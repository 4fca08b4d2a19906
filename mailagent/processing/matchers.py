"""Literal command matchers — phrasings answered straight from the cache, no AI involved.

Each matcher returns None when the query isn't its phrasing, otherwise it
runs its own query, confirmation and protocol action and returns the result.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable
from typing import TYPE_CHECKING

from mailagent.imap.types import DEFAULT_ARCHIVE
from mailagent.processing.types import ActionResult
from mailagent.storage.models import MessageFilter

if TYPE_CHECKING:
    from mailagent.processing.actions import ActionContext

logger = logging.getLogger(__name__)

#: Large enough to mean "everything" for a personal inbox.
_ALL = 10000
_BULK_LIMIT = 1000

_FROM_TOKEN = re.compile(r"from\s+([^\s]+)", re.IGNORECASE)
_FROM_ADDRESS = re.compile(r"from\s+([^\s]+@[^\s]+)", re.IGNORECASE)
_FROM_DOMAIN = re.compile(r"from\s+([^\s]+\.[^\s]+)", re.IGNORECASE)
_FROM_LAST_WORD = re.compile(r"from\s+(\S+)$", re.IGNORECASE)
_MESSAGES_FROM = re.compile(r"messages from\s+(\S+)", re.IGNORECASE)
_EMAILS_FROM = re.compile(r"emails from\s+(\S+)", re.IGNORECASE)
_QUOTES = re.compile(r"^[\"']|[\"']$")

Matcher = Callable[["ActionContext", str], "ActionResult | None"]


def _sender(pattern: re.Pattern[str], query: str) -> str | None:
    match = pattern.search(query)
    return match.group(1).rstrip("?.,!") if match else None


# ── Counting ───────────────────────────────────────────────────────────────────


def match_exact_count(ctx: ActionContext, query: str) -> ActionResult | None:
    lower = query.lower().strip().rstrip("?").strip()
    if lower not in ("how many", "count", "how many emails"):
        return None
    total = ctx.cache.count(MessageFilter(folder="INBOX"))
    ctx.console.print(f"\n📊 You have [bold]{total}[/bold] emails in your INBOX\n")
    return ActionResult(kind="count", count=total)


# ── Bulk mutations ─────────────────────────────────────────────────────────────


def match_archive_from(ctx: ActionContext, query: str) -> ActionResult | None:
    lower = query.lower()
    if not (lower.startswith("archive") or "archive all" in lower):
        return None
    sender = _sender(_FROM_TOKEN, lower)
    if not sender:
        return None
    messages = ctx.cache.query(MessageFilter(sender=sender, limit=_BULK_LIMIT))
    if not messages:
        ctx.console.print(f"[yellow]No emails found from {sender}[/yellow]")
        return ActionResult(kind="archive")
    return ctx.move(
        "archive",
        messages,
        DEFAULT_ARCHIVE,
        f"Archive {len(messages)} emails from {sender}?",
        show=False,
    )


def match_delete_these(ctx: ActionContext, query: str) -> ActionResult | None:
    lower = query.lower()
    if not (lower.startswith("delete these:") or ("delete these" in lower and ":" in query)):
        return None
    listed = query[query.index(":") + 1 :].strip()
    subjects = [_QUOTES.sub("", s.strip()) for s in re.split(r"[,\n]", listed)]
    subjects = [s for s in subjects if s]
    if not subjects:
        ctx.console.print("[yellow]No email subjects specified[/yellow]")
        return ActionResult(kind="delete")

    ctx.console.print(f"[dim]Looking for emails with subjects: {', '.join(subjects)}...[/dim]")
    inbox = ctx.cache.query(MessageFilter(folder="INBOX", limit=_BULK_LIMIT))
    wanted = [s.lower() for s in subjects]
    matches = [m for m in inbox if m.subject and any(w in m.subject.lower() for w in wanted)]
    if not matches:
        ctx.console.print("[yellow]No emails found matching those subjects[/yellow]")
        return ActionResult(kind="delete")

    ctx.console.print(f"\nFound {len(matches)} emails to delete:")
    for msg in matches:
        ctx.console.print(f"  • {msg.subject}")
    return ctx.delete(
        "delete", matches, f"[red]⚠️  Delete these {len(matches)} emails?[/red]", show=False
    )


def match_delete_from(ctx: ActionContext, query: str) -> ActionResult | None:
    lower = query.lower()
    if not (lower.startswith("delete") or "delete all" in lower or "remove" in lower):
        return None
    sender = (
        _sender(_FROM_ADDRESS, lower)
        or _sender(_MESSAGES_FROM, lower)
        or _sender(_EMAILS_FROM, lower)
    )
    if not sender:
        return None
    messages = ctx.cache.query(MessageFilter(sender=sender, limit=_BULK_LIMIT))
    if not messages:
        ctx.console.print(f"[yellow]No emails found from {sender}[/yellow]")
        return ActionResult(kind="delete")
    return ctx.delete(
        "delete", messages, f"Delete {len(messages)} emails from {sender}?", show=False
    )


# ── Listings ───────────────────────────────────────────────────────────────────


def match_show_subjects(ctx: ActionContext, query: str) -> ActionResult | None:
    lower = query.lower()
    if not (("show" in lower or "list" in lower) and "subject" in lower):
        return None
    sender = (
        _sender(_FROM_ADDRESS, lower)
        or _sender(_FROM_DOMAIN, lower)
        or _sender(_FROM_LAST_WORD, lower)
    )
    if sender:
        messages = ctx.cache.query(MessageFilter(sender=sender, limit=50))
        if not messages:
            ctx.console.print(f"[yellow]No emails found from {sender}[/yellow]")
            return ActionResult(kind="subjects")
        ctx.console.print(f"\n📧 Subjects of emails from [bold]{sender}[/bold]:\n")
    else:
        messages = ctx.cache.query(MessageFilter(limit=20))
        ctx.console.print("\n📧 Recent email subjects:\n")

    for i, msg in enumerate(messages, start=1):
        ctx.console.print(f"{i}. [bold]{msg.subject or '(no subject)'}[/bold]")
        ctx.console.print(f"   From: [dim]{msg.sender}[/dim] | Date: {msg.date[:10]}\n")
    return ActionResult(kind="subjects", messages=messages, count=len(messages))


def match_mail_from(ctx: ActionContext, query: str) -> ActionResult | None:
    lower = query.lower()
    if not any(p in lower for p in ("email from", "emails from", "mail from", "messages from")):
        return None
    sender = _sender(_FROM_TOKEN, lower)
    if not sender:
        return None
    messages = ctx.cache.query(MessageFilter(sender=sender, limit=20))
    if not messages:
        ctx.console.print(f"[yellow]No emails found from {sender}[/yellow]")
        return ActionResult(kind="search")
    ctx.console.print(f"\n📧 Found {len(messages)} emails from [bold]{sender}[/bold]:\n")
    for i, msg in enumerate(messages, start=1):
        ctx.console.print(f"{i}. [bold]{msg.subject or '(no subject)'}[/bold]")
        ctx.console.print(f"   Date: {msg.date[:10]}\n")
    return ActionResult(kind="search", messages=messages, count=len(messages))


# ── Sender statistics ──────────────────────────────────────────────────────────


def match_top_senders(ctx: ActionContext, query: str) -> ActionResult | None:
    lower = query.lower()
    if not any(p in lower for p in ("most message", "most email", "top sender", "sent the most")):
        return None
    inbox = ctx.cache.query(MessageFilter(folder="INBOX", limit=_ALL))
    counts = Counter((m.sender, m.from_address) for m in inbox)
    top = counts.most_common(10)
    if not top:
        ctx.console.print("[yellow]No emails found in INBOX[/yellow]")
        return ActionResult(kind="top_senders")

    ctx.console.print("\n📊 Top senders by message count:\n")
    lines = []
    for i, ((name, address), n) in enumerate(top, start=1):
        ctx.console.print(f"{i}. [bold]{name}[/bold] - [cyan]{n} messages[/cyan]")
        if name != address:
            ctx.console.print(f"   [dim]{address}[/dim]")
        lines.append(f"{name} <{address}>: {n}")
    return ActionResult(kind="top_senders", count=len(top), text="\n".join(lines))


def match_unique_senders(ctx: ActionContext, query: str) -> ActionResult | None:
    lower = query.lower()
    if not any(p in lower for p in ("unique sender", "who sent", "senders")):
        return None
    inbox = ctx.cache.query(MessageFilter(folder="INBOX", limit=_ALL))
    senders: dict[str, str] = {}
    for msg in inbox:
        senders.setdefault(msg.from_address or "Unknown", msg.from_name)
    if not senders:
        ctx.console.print("[yellow]No emails found in INBOX[/yellow]")
        return ActionResult(kind="senders")

    ctx.console.print(f"\n📧 Unique senders in INBOX ({len(senders)} total):\n")
    for i, (address, name) in enumerate(list(senders.items())[:20], start=1):
        if name and name != address and address not in name:
            ctx.console.print(f"  {i}. [bold]{name}[/bold] <[dim]{address}[/dim]>")
        else:
            ctx.console.print(f"  {i}. [dim]{address}[/dim]")
    if len(senders) > 20:
        ctx.console.print(f"\n  [dim]... and {len(senders) - 20} more[/dim]")
    return ActionResult(kind="senders", count=len(senders), text="\n".join(senders))


#: Tried in this order; the first non-None result wins.
LITERAL_MATCHERS: tuple[Matcher, ...] = (
    match_exact_count,
    match_archive_from,
    match_delete_these,
    match_delete_from,
    match_show_subjects,
    match_mail_from,
    match_top_senders,
    match_unique_senders,
)

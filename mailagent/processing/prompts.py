"""Prompt text for intent classification, AI filtering, and summaries."""

import json
from collections.abc import Sequence
from html.parser import HTMLParser
from typing import Any

#: Characters of plain-text body kept per cached message.
SNIPPET_CHAR_LIMIT = 200


# ── HTML stripper ───────────────────────────────────────────────────────────────


class _HTMLStripper(HTMLParser):
    """Minimal HTMLParser subclass that collects visible text nodes."""

    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []
        self._skip = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in ("script", "style"):
            self._skip += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in ("script", "style") and self._skip:
            self._skip -= 1

    def handle_data(self, data: str) -> None:
        text = data.strip()
        if text and not self._skip:
            self._parts.append(text)

    def get_text(self) -> str:
        return " ".join(self._parts)


def strip_html(text: str) -> str:
    """Return plain text from an HTML string.

    Input that doesn't look like HTML is returned unchanged.
    """
    if "<" not in text:
        return text
    stripper = _HTMLStripper()
    try:
        stripper.feed(text)
        stripper.close()
    except Exception:  # noqa: BLE001
        return text
    return stripper.get_text()


# ── Intent classification ───────────────────────────────────────────────────────

INTENT_SYSTEM_PROMPT = """You are an email assistant. Analyze the user's query and determine their intent.

Possible intents:
- SEARCH: User wants to find specific emails
- DELETE: User wants to delete/trash emails
- MOVE: User wants to move emails to a folder
- COUNT: User wants to know how many emails match criteria
- LIST_FOLDERS: User wants to see available folders
- LIST_FOLDER_CONTENTS: User wants to see emails in a specific folder
- SUMMARIZE: User wants a summary of recent emails

Return a JSON object with:
{
  "intent": "INTENT_NAME",
  "parameters": { ... }
}

For SEARCH/DELETE/MOVE/COUNT, parameters might include:
- from: sender email/name
- subject: subject keywords
- days: number of days back
- content: keywords in email body
- folder: folder name (for COUNT or LIST_FOLDER_CONTENTS), or the source folder
- targetFolder: destination folder (MOVE only)
- excludeTypes: email types to exclude, any of ["newsletters", "advertisements", "automated"]

IMPORTANT:
1. When the user asks about emails "in" a specific folder, extract the folder name.
2. When the user mentions a sender name or organization, use the "from" parameter.
3. Remove words like "mail", "emails", "messages" from search terms.
4. "Personal mail" means emails that are NOT newsletters, advertisements, or automated messages.

Examples:
- "how many messages in INBOX folder?" -> {"intent": "COUNT", "parameters": {"folder": "INBOX"}}
- "show emails in Sent folder" -> {"intent": "LIST_FOLDER_CONTENTS", "parameters": {"folder": "Sent"}}
- "show me Lloyd Estates mail" -> {"intent": "SEARCH", "parameters": {"from": "Lloyd Estates"}}
- "move Patreon messages to Receipts" -> {"intent": "MOVE", "parameters": {"from": "Patreon", "targetFolder": "Receipts"}}
- "Show personal mail from today" -> {"intent": "SEARCH", "parameters": {"days": 1, "excludeTypes": ["newsletters", "advertisements", "automated"]}}
- "today's mail" -> {"intent": "SEARCH", "parameters": {"days": 1}}

Respond with the JSON object only."""


# ── AI filtering ────────────────────────────────────────────────────────────────


def build_filter_system_prompt(item_type: str) -> str:
    return f"""You are a smart filter for {item_type}. The user will provide a natural language query and a list of items in JSON format.

Your response must be ONLY a valid JSON array containing the items that match the user's query. No other text, explanation, or formatting.

Use your understanding of natural language to interpret requests like:
- "personal emails" (exclude newsletters, marketing, automated messages)
- "important" (messages from real people that look like they need attention)
- "from last week" (date filtering)

For "personal" emails, ONLY include emails from real people. Exclude ALL:
- Marketing emails (sale, offer, deals, promo, discount, shop, store)
- Newsletters (newsletter, updates, news, digest)
- Automated messages (noreply, no-reply, alerts, notifications)
- Service/system emails ([MISSING], [REPORTING], monitoring, status)

Return each matching item unchanged, including its "id"."""


def build_filter_prompt(items: Sequence[dict[str, Any]], query: str) -> str:
    return (
        f'Query: "{query}"\n\n'
        f"Items to filter:\n{json.dumps(list(items), indent=2, default=str)}\n\n"
        "Return ONLY the JSON array of matching items."
    )


# ── Summaries ───────────────────────────────────────────────────────────────────

SUMMARY_SYSTEM_PROMPT = (
    "You are an email assistant. Provide a concise, organized summary of the emails."
)


def build_summary_prompt(lines: Sequence[str]) -> str:
    return (
        "Summarize these recent emails in a helpful way, grouping by sender or topic "
        "as appropriate:\n\n" + "\n".join(lines)
    )

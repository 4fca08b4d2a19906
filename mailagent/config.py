"""Environment-sourced settings for the mail agent."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _TRUTHY


def _float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


@dataclass
class Settings:
    """Account, AI backend and local path settings.

    Built once at startup (after ``load_dotenv()``) and passed down explicitly,
    so nothing below the CLI reads the environment on its own.
    """

    account: str = ""
    password: str = ""
    imap_host: str = "imap.mail.me.com"
    imap_port: int = 993
    anthropic_api_key: str = ""
    ai_command: list[str] = field(default_factory=lambda: ["claude", "-p"])
    ai_model: str = "claude-haiku-4-5-20251001"
    ai_timeout: float = 30.0
    ai_fallback_timeout: float = 15.0
    debug_ai: bool = False
    db_path: Path = field(default_factory=lambda: Path("data/mailagent.db"))
    history_file: Path = field(default_factory=lambda: Path.home() / ".email-cli-history")
    sync_days: int = 7

    @classmethod
    def from_env(cls) -> Settings:
        """Build Settings from environment variables."""
        defaults = cls()
        command = os.environ.get("MAILAGENT_AI_COMMAND", "")
        try:
            port = int(os.environ.get("EMAIL_IMAP_PORT", defaults.imap_port))
        except ValueError:
            port = defaults.imap_port
        try:
            sync_days = int(os.environ.get("MAILAGENT_SYNC_DAYS", defaults.sync_days))
        except ValueError:
            sync_days = defaults.sync_days
        history = os.environ.get("MAILAGENT_HISTORY_FILE")
        return cls(
            account=os.environ.get("EMAIL_ACCOUNT", ""),
            password=os.environ.get("EMAIL_PASSWORD", ""),
            imap_host=os.environ.get("EMAIL_IMAP_HOST", defaults.imap_host),
            imap_port=port,
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
            ai_command=shlex.split(command) if command.strip() else defaults.ai_command,
            ai_model=os.environ.get("MAILAGENT_AI_MODEL", defaults.ai_model),
            ai_timeout=_float("MAILAGENT_AI_TIMEOUT", defaults.ai_timeout),
            ai_fallback_timeout=_float(
                "MAILAGENT_AI_FALLBACK_TIMEOUT", defaults.ai_fallback_timeout
            ),
            debug_ai=_flag("MAILAGENT_DEBUG_AI"),
            db_path=Path(os.environ.get("MAILAGENT_DB_PATH", defaults.db_path)),
            history_file=Path(history).expanduser() if history else defaults.history_file,
            sync_days=sync_days,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.account and self.password)

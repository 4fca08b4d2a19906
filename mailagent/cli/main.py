"""CLI entry point for the natural-language mail agent."""

import logging
from dataclasses import dataclass

import click
from dotenv import load_dotenv

from mailagent.config import Settings
from mailagent.storage.db import MessageCache

logger = logging.getLogger(__name__)


@dataclass
class CliState:
    """Objects shared by every command through ``ctx.obj``."""

    settings: Settings
    cache: MessageCache


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log at INFO instead of WARNING.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Talk to your mailbox — search, count, archive and clean up in plain English."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    settings = Settings.from_env()
    cache = MessageCache(db_path=settings.db_path)
    ctx.obj = CliState(settings, cache)
    ctx.call_on_close(cache.close)


# Import and register commands after cli is defined to avoid circular imports.
from mailagent.cli.commands import ask, chat, download, folders  # noqa: E402

cli.add_command(chat)
cli.add_command(ask)
cli.add_command(download)
cli.add_command(folders)

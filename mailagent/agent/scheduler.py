"""APScheduler setup for the one-shot background mailbox sync."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler

from mailagent.imap.downloader import EmailDownloader

if TYPE_CHECKING:
    from mailagent.config import Settings
    from mailagent.storage.db import MessageCache

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "mailagent-background-sync"


class BackgroundSync:
    """Runs one silent download on a background thread when a session starts.

    The job owns its own IMAP session and never raises; failures are only
    logged. Without credentials ``start()`` does nothing.

    Usage::

        sync = BackgroundSync(settings, cache)
        sync.start()
        ...
        sync.shutdown()
    """

    def __init__(
        self,
        settings: Settings,
        cache: MessageCache,
        downloader_factory: Callable[[], EmailDownloader] | None = None,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._settings = settings
        self._factory = downloader_factory or (lambda: EmailDownloader(settings, cache))
        self._scheduler = scheduler or BackgroundScheduler(daemon=True)
        self.last_count: int | None = None

    def start(self) -> bool:
        """Schedule the sync to fire immediately. Returns False when skipped."""
        if not self._settings.has_credentials:
            logger.debug("Background sync skipped: no mail credentials configured")
            return False
        self._scheduler.add_job(self.run_once, "date", id=SYNC_JOB_ID, replace_existing=True)
        self._scheduler.start()
        logger.info("Background sync scheduled (%d day window)", self._settings.sync_days)
        return True

    def run_once(self) -> None:
        """The job body. Swallows every error."""
        try:
            self.last_count = self._factory().download(
                days=self._settings.sync_days, background=True
            )
            logger.info("Background sync completed: %d new message(s)", self.last_count)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Background sync failed: %s", exc, exc_info=True)

    def shutdown(self) -> None:
        """Stop the scheduler without waiting for a running download."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

"""Periodic dispatch of every organization served by this station.

This module provides:
- SyncScheduler: one APScheduler interval job per organization

Jobs of different organizations run in parallel on the scheduler's thread
pool. A job never overlaps with itself (max_instances=1) and missed runs
are coalesced into one.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from possync.core.sqltypes import utcnow

if TYPE_CHECKING:
    from possync.client.sync.dispatcher import SyncDispatcher
    from possync.client.sync.types import SyncResult

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = 60.0  # seconds


class SyncScheduler:
    """Runs dispatch cycles on a fixed interval."""

    def __init__(
        self,
        dispatcher: SyncDispatcher,
        organization_ids: Iterable[str],
        interval: float = DEFAULT_SYNC_INTERVAL,
    ) -> None:
        """Initialize the scheduler.

        Args:
            dispatcher: Dispatcher running the cycles.
            organization_ids: Organizations to keep in sync.
            interval: Seconds between two cycles of an organization.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._dispatcher = dispatcher
        self._organization_ids = list(dict.fromkeys(organization_ids))
        self._interval = interval
        self._cancel_event = threading.Event()
        self._scheduler: BackgroundScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def _sync_job(self, organization_id: str) -> None:
        """Job function for one organization."""
        try:
            result = self._dispatcher.run_cycle(organization_id, self._cancel_event)
            if result.skipped:
                logger.debug("Sync of %s skipped: %s", organization_id, result.skipped)
        except Exception:
            logger.exception("Error during scheduled sync of organization %s", organization_id)

    def start(self) -> None:
        """Start the scheduler; the first cycles run immediately."""
        if self._scheduler is not None:
            return  # Already running

        self._cancel_event.clear()
        self._scheduler = BackgroundScheduler()
        for organization_id in self._organization_ids:
            self._scheduler.add_job(
                self._sync_job,
                trigger=IntervalTrigger(seconds=self._interval),
                args=[organization_id],
                id=f"sync_{organization_id}",
                name=f"Sync organization {organization_id}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                next_run_time=utcnow(),
            )

        self._scheduler.start()
        logger.info(
            "Sync scheduler started for %d organization(s) (every %.0fs)",
            len(self._organization_ids),
            self._interval,
        )

    def stop(self, wait: bool = True) -> None:
        """Stop the scheduler and cancel the cycles in flight.

        Args:
            wait: Wait for running cycles to return.
        """
        if self._scheduler is None:
            return
        self._cancel_event.set()
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Sync scheduler stopped")

    def run_now(self, organization_id: str) -> SyncResult:
        """Run a cycle immediately in the calling thread (manual trigger)."""
        cancel_event = self._cancel_event if self.is_running else None
        return self._dispatcher.run_cycle(organization_id, cancel_event)

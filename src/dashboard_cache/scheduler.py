"""
Periodic sweeping of expired entries, and optional background refresh of
critical keys, with APScheduler.

CleanupScheduler owns one BackgroundScheduler per cache. Nothing starts on
construction: call start() (or use it as a context manager) and stop() on
teardown so no timer thread outlives its owner.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Mapping

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .cache import DataCache
from .loaders import Loader, RefreshResult

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = 2 * 60  # seconds
REFRESH_INTERVAL = 10 * 60
BACKGROUND_STALENESS_THRESHOLD = 8 * 60


class CleanupScheduler:
    """
    Sweeps a DataCache for expired entries on a fixed interval.

    Example:
        cache = DataCache()
        sweeper = CleanupScheduler(cache, interval_seconds=120)
        sweeper.start()
        ...
        sweeper.stop()

        # or scoped
        with CleanupScheduler(cache, stats_interval=300):
            serve()

        # keep critical data warm in the background
        CleanupScheduler(
            cache,
            refresh_loaders={"dashboard-data": api.fetch_dashboard},
            refresh_interval=600,
            staleness_threshold=480,
        ).start()

    Attributes:
        cache: cache to sweep
        interval_seconds: seconds between sweeps
        stats_interval: if set, seconds between INFO-level stats reports
        refresh_loaders: if set, loaders passed to smart_refresh every
            refresh_interval seconds
        staleness_threshold: freshness window for the background refresh
    """

    def __init__(
        self,
        cache: DataCache,
        interval_seconds: float = CLEANUP_INTERVAL,
        stats_interval: float | None = None,
        refresh_loaders: Mapping[str, Loader] | None = None,
        refresh_interval: float = REFRESH_INTERVAL,
        staleness_threshold: float = BACKGROUND_STALENESS_THRESHOLD,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if refresh_loaders and refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")
        self.cache = cache
        self.interval_seconds = interval_seconds
        self.stats_interval = stats_interval
        self.refresh_loaders = dict(refresh_loaders or {})
        self.refresh_interval = refresh_interval
        self.staleness_threshold = staleness_threshold
        self._scheduler: BackgroundScheduler | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start sweeping. Calling start() on a running scheduler is a no-op."""
        with self._lock:
            if self._scheduler is not None:
                return
            scheduler = BackgroundScheduler(daemon=True)
            scheduler.add_job(
                self._sweep_job,
                trigger=IntervalTrigger(seconds=self.interval_seconds),
                id="cache_cleanup",
                replace_existing=True,
            )
            if self.stats_interval:
                scheduler.add_job(
                    self._stats_job,
                    trigger=IntervalTrigger(seconds=self.stats_interval),
                    id="cache_stats",
                    replace_existing=True,
                )
            if self.refresh_loaders:
                scheduler.add_job(
                    self._refresh_job,
                    trigger=IntervalTrigger(seconds=self.refresh_interval),
                    id="cache_refresh",
                    replace_existing=True,
                )
            scheduler.start()
            self._scheduler = scheduler
            logger.info(
                f"Cache cleanup scheduler started (every {self.interval_seconds}s)"
            )

    def stop(self, wait: bool = True) -> None:
        """
        Stop sweeping and release the scheduler thread.

        Args:
            wait: Whether to wait for a running sweep to complete
        """
        with self._lock:
            if self._scheduler is None:
                return
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
            logger.info("Cache cleanup scheduler stopped")

    def run_once(self) -> int:
        """Sweep synchronously. Returns count of removed entries."""
        return self.cache.cleanup_expired()

    def refresh_once(self) -> list[RefreshResult]:
        """Run the background smart refresh synchronously on this thread."""
        return asyncio.run(
            self.cache.smart_refresh(self.refresh_loaders, self.staleness_threshold)
        )

    def _sweep_job(self) -> None:
        try:
            self.run_once()
        except Exception as e:
            logger.error(f"Cache cleanup failed: {e}", exc_info=True)

    def _refresh_job(self) -> None:
        try:
            results = self.refresh_once()
            refreshed = [r.key for r in results if r.refreshed]
            failed = [r.key for r in results if r.error is not None]
            if refreshed or failed:
                logger.info(
                    f"Background refresh: {len(refreshed)} refreshed, "
                    f"{len(failed)} failed"
                )
        except Exception as e:
            logger.error(f"Background refresh failed: {e}", exc_info=True)

    def _stats_job(self) -> None:
        try:
            stats = self.cache.get_stats()
            logger.info(
                f"Cache stats: {stats.total_entries} entries "
                f"({stats.active_entries} active, ratio {stats.active_ratio:.2f}), "
                f"{stats.total_size / 1024:.2f} KB total, "
                f"{stats.average_size / 1024:.2f} KB avg"
            )
        except Exception as e:
            logger.error(f"Cache stats report failed: {e}", exc_info=True)

    def __enter__(self) -> CleanupScheduler:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop(wait=False)

"""
Maintenance Task

Periodic reclamation of idle rate windows, expired in-process cache
entries and expired health facts, scheduled with APScheduler.
"""
from typing import Optional, Any
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from market_overview.data_providers.cache_manager import CacheStore
from market_overview.data_providers.health_monitor import ProviderHealthMonitor
from market_overview.data_providers.rate_limiter import RateLimiter


class MaintenanceTask:
    """
    Background maintenance for the resilience layer.

    Usage:
        task = MaintenanceTask(cache, rate_limiter, health_monitor, interval_seconds=300)
        task.start()
        ...
        task.stop()
    """

    JOB_ID = "market_overview_maintenance"

    def __init__(
        self,
        cache: CacheStore,
        rate_limiter: RateLimiter,
        health_monitor: ProviderHealthMonitor,
        interval_seconds: float = 5 * 60,
    ):
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.health_monitor = health_monitor
        self.interval_seconds = interval_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False
        self.runs = 0

    def start(self) -> None:
        """Start ticking. Must be called from inside a running event loop."""
        if self._is_running:
            return

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                'coalesce': True,  # Combine multiple missed runs into one
                'max_instances': 1,
            }
        )
        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Market data maintenance",
            replace_existing=True,
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(f"Maintenance task started (every {self.interval_seconds:.0f}s)")

    def stop(self) -> None:
        """Stop ticking."""
        if self.scheduler and self._is_running:
            self.scheduler.shutdown(wait=False)
            logger.info("Maintenance task stopped")
        self.scheduler = None
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def run_once(self) -> dict[str, Any]:
        """Run one maintenance pass."""
        result = {
            "rate_windows_removed": 0,
            "cache_entries_purged": 0,
            "health_facts_expired": 0,
        }

        try:
            result["rate_windows_removed"] = self.rate_limiter.cleanup()
            result["cache_entries_purged"] = await self.cache.purge_expired()
            result["health_facts_expired"] = self.health_monitor.cleanup()
        except Exception as e:
            logger.error(f"Maintenance pass failed: {e}")
            result["error"] = str(e)
            return result

        self.runs += 1
        logger.info(
            f"Maintenance: removed {result['rate_windows_removed']} rate windows, "
            f"purged {result['cache_entries_purged']} cache entries, "
            f"expired {result['health_facts_expired']} health facts"
        )
        return result

"""Marketplace service: owns the registry, locks, coordinator and GC timer"""

import asyncio
import logging
from typing import Optional

from deskmarket.config import MarketplaceSettings
from deskmarket.core.locks import KeyedLock
from deskmarket.core.marketplace.catalog import AppCatalog
from deskmarket.core.marketplace.coordinator import InstallationCoordinator
from deskmarket.core.marketplace.downloader import DownloadManager
from deskmarket.core.marketplace.jobs import JobRegistry

logger = logging.getLogger(__name__)


class MarketplaceService:
    """
    Process-wide marketplace state

    Built once at application startup and stored on ``app.state``. Nothing
    here is a module-level singleton, so tests can build as many
    independent services as they need.
    """

    def __init__(
        self,
        settings: MarketplaceSettings,
        downloader: Optional[DownloadManager] = None,
    ):
        self.settings = settings
        self.registry = JobRegistry(
            terminal_ttl=settings.terminal_job_ttl,
            active_ttl=settings.active_job_ttl,
        )
        self.locks = KeyedLock(default_timeout=settings.lock_timeout)
        self.coordinator = InstallationCoordinator(
            settings, self.registry, self.locks, downloader=downloader,
        )
        self.catalog = AppCatalog(settings.apps_dir)
        self._gc_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Create directories and start the GC timer"""
        self.settings.ensure_directories()
        if self._gc_task is None or self._gc_task.done():
            self._gc_task = asyncio.create_task(self._gc_loop())
        logger.info(
            f"Marketplace service started (dir: {self.settings.marketplace_dir}, "
            f"gc interval: {self.settings.gc_interval}s)"
        )

    async def shutdown(self) -> None:
        """Stop the GC timer and cancel running jobs"""
        if self._gc_task and not self._gc_task.done():
            self._gc_task.cancel()
            try:
                await self._gc_task
            except asyncio.CancelledError:
                pass
        self._gc_task = None

        await self.coordinator.shutdown()
        logger.info("Marketplace service stopped")

    def gc_tick(self) -> int:
        """Run one GC pass over the job registry"""
        return self.registry.gc_tick()

    async def _gc_loop(self) -> None:
        logger.debug("Job GC loop started")
        while True:
            await asyncio.sleep(self.settings.gc_interval)
            try:
                self.gc_tick()
            except Exception as e:
                logger.error(f"Error in job GC loop: {e}", exc_info=True)

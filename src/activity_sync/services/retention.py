"""Periodic retention sweep for notifications."""

import asyncio
from typing import Optional

import structlog

from .notifications import NotificationCoordinator

logger = structlog.get_logger()


class RetentionSweeper:
    """Runs ``cleanup_old_notifications`` on a fixed interval."""

    def __init__(self, notifications: NotificationCoordinator, interval: float) -> None:
        """Initialize the sweeper; the first sweep runs after one interval."""
        self.notifications = notifications
        self.interval = interval
        self.sweeps = 0
        self._task: Optional[asyncio.Task] = None
        logger.info("retention_sweeper_initialized", interval=interval)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep task."""
        if self._task is None:
            self._task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self) -> None:
        """Stop the sweep task."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def sweep(self) -> int:
        """Run one sweep now."""
        deleted = await self.notifications.cleanup_old_notifications()
        self.sweeps += 1
        return deleted

    async def _periodic_cleanup(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("retention_sweep_error", error=str(e))

"""
Background sweep that marks silent computers OFFLINE.
"""

import asyncio
import logging
from typing import Optional

from cyberhub.services.computers import ComputerService

logger = logging.getLogger(__name__)


class PresenceMonitor:
    """Runs :meth:`ComputerService.check_offline_computers` on an interval.

    Args:
        computers: Service used for the sweep.
        interval_seconds: Pause between sweeps; defaults to
            ``presence.sweep_interval_seconds``.
    """

    def __init__(self, computers: ComputerService, interval_seconds: Optional[float] = None) -> None:
        self._computers = computers
        self._interval = (
            interval_seconds
            if interval_seconds is not None
            else computers.settings.presence.sweep_interval_seconds
        )
        self._task: Optional[asyncio.Task] = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop on the running event loop (no-op if running)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="cyberhub-presence")
        logger.info("Presence monitor started", extra={"interval_seconds": self._interval})

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Presence monitor stopped", extra={"sweeps": self.sweeps})

    async def run_once(self) -> int:
        """One sweep; errors are logged and reported as zero computers."""
        try:
            return await self._computers.check_offline_computers()
        except Exception:
            logger.exception("Presence sweep failed")
            return 0
        finally:
            self.sweeps += 1

    async def _run(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)

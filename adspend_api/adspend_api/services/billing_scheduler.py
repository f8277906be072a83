"""Background task that periodically expires elapsed grace periods."""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import InterfaceError, OperationalError

from adspend_api.services.daily_billing_job import DailyBillingJob

logger = logging.getLogger(__name__)


class BillingSweepScheduler:
    """AsyncIO background task running the grace-period sweep.

    Database errors are logged and the loop carries on at the next tick;
    anything else is logged at CRITICAL and stops the loop.

    Parameters
    ----------
    job:
        The daily billing job whose sweep is run.
    interval_seconds:
        Delay between sweeps.
    """

    def __init__(self, job: DailyBillingJob, interval_seconds: float = 900.0) -> None:
        self._job = job
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the sweep loop is active."""
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("BillingSweepScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("BillingSweepScheduler started (interval=%.0fs)", self._interval)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("BillingSweepScheduler stopped")

    async def run_once(self) -> int:
        """Run a single sweep; returns the number of accounts marked FAILED."""
        marked = await self._job.sweep_expired_grace_periods()
        return len(marked)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("BillingSweepScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("BillingSweepScheduler unexpected error: %s", exc, exc_info=True)
                self._running = False
                raise
            await asyncio.sleep(self._interval)

"""Background task that flags past-due repayment installments as overdue."""

import asyncio
import logging
from typing import Optional

from core.config import AppSettings
from .repayment_schedule_engine import RepaymentScheduleEngine


logger = logging.getLogger(__name__)


class OverdueSweeper:
    """Periodically run ``sweep_overdue`` on the schedule engine."""

    def __init__(self, settings: AppSettings, schedule_engine: RepaymentScheduleEngine) -> None:
        self._settings = settings
        self._schedule_engine = schedule_engine
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def _is_enabled(self) -> bool:
        """Return whether the sweep is switched on in config."""
        return self._settings.overdue_sweep_enabled

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep loop in a background task if enabled."""
        if not self._is_enabled():
            logger.info("Overdue sweeper disabled by overdue_sweep.enabled=false")
            return
        if self.is_running:
            logger.info("Overdue sweeper already running.")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="overdue-sweeper")
        logger.info("Overdue sweeper started interval_sec=%s", self._settings.overdue_sweep_interval_sec)

    async def stop(self) -> None:
        """Gracefully stop the background task."""
        if not self._task:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Overdue sweeper task cancelled.")
        except Exception:
            logger.exception("Unexpected error while stopping overdue sweeper.")
        finally:
            self._task = None

    async def _run_loop(self) -> None:
        """Main loop: sweep, then wait for the interval or a stop signal."""
        logger.info("Overdue sweeper loop running.")
        while not self._stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Unhandled error during overdue sweep cycle.")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=float(self._settings.overdue_sweep_interval_sec),
                )
            except asyncio.TimeoutError:
                continue

    async def sweep_once(self) -> int:
        """Run one sweep off the event loop and return the number of installments flagged."""
        return await asyncio.to_thread(self._schedule_engine.sweep_overdue)

"""
Background trigger for due retries.

A single poll loop asks the scheduler to fire whatever is due, then waits
for the poll interval or the stop event, whichever comes first. Stopping
lets the running cycle finish, so in-flight gateway calls are drained
before stop() returns.
"""

import asyncio
import logging
from datetime import datetime

from retry_service.clock import Clock
from retry_service.scheduler import RetryScheduler

logger = logging.getLogger(__name__)


class RetryTrigger:
    def __init__(self, scheduler: RetryScheduler, clock: Clock, poll_interval: float) -> None:
        self._scheduler = scheduler
        self._clock = clock
        self._poll_interval = poll_interval
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            logger.debug("Retry trigger already running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="payment-retry-trigger")
        logger.info("Retry trigger started", extra={"poll_interval_s": self._poll_interval})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("Retry trigger stopped")

    async def run_once(self, as_of: datetime | None = None) -> int:
        """Run a single cycle and wait for every dispatched retry to finish."""
        return await self._scheduler.fire_due_retries(as_of or self._clock.now())

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Retry trigger cycle failed — will retry next poll")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

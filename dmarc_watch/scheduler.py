"""Periodic driver for ingestion cycles."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Awaitable, Callable, Optional

from croniter import CroniterBadDateError, croniter

logger = logging.getLogger(__name__)


class CycleScheduler:
    """Run a cycle, sleep until the next wake time, repeat until stopped.

    Cycles never overlap: the next sleep only starts once the running cycle
    has returned. A stop request interrupts the sleep but never a cycle in
    flight.
    """

    def __init__(
        self,
        run_cycle: Callable[[], Awaitable[object]],
        interval: float,
        schedule: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        if interval <= 0:
            raise ValueError("Cycle interval must be bigger than 0")
        self.run_cycle = run_cycle
        self.interval = interval
        self.schedule = schedule
        self.clock = clock
        self.cycles = 0
        self._stop = asyncio.Event()

    def stop(self) -> None:
        logger.info("Stop requested for cycle scheduler")
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def next_delay(self) -> float:
        """Seconds until the next cycle should start."""
        if not self.schedule:
            return float(self.interval)
        now = self.clock()
        try:
            upcoming = croniter(self.schedule, now).get_next(datetime)
        except CroniterBadDateError:
            logger.warning(
                "Schedule %r has no upcoming time, falling back to %s seconds",
                self.schedule,
                self.interval,
            )
            return float(self.interval)
        return max((upcoming - now).total_seconds(), 0.0)

    async def run(self) -> None:
        logger.info(
            "Starting cycle scheduler (interval=%ss, schedule=%s)", self.interval, self.schedule
        )
        while not self._stop.is_set():
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Ingestion cycle failed")
            self.cycles += 1

            if self._stop.is_set():
                break
            delay = self.next_delay()
            logger.info("Next ingestion cycle in %.2f seconds", delay)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
        logger.info("Cycle scheduler stopped after %s cycle(s)", self.cycles)

"""
Scan Scheduler — runs memory scans and feedback cycles on a cron schedule.

  WAITING → SCAN (patterns, repeated mistakes, feedback cycle) → WAITING

The schedule is a cron expression (`scan_schedule`), evaluated with
croniter.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from croniter import croniter

from pcal.models.feedback import FeedbackCycleResult
from pcal.runtime.context import PCALContext

logger = logging.getLogger(__name__)


class ScanScheduler:
    """Cron-driven driver for `PCALContext.run_scan`."""

    def __init__(self, context: PCALContext, schedule: Optional[str] = None):
        self.context = context
        self.schedule = schedule or context.settings.scan_schedule
        if not croniter.is_valid(self.schedule):
            raise ValueError(f"Invalid scan schedule: {self.schedule!r}")
        self._running = False
        self._results: List[FeedbackCycleResult] = []

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    @property
    def results(self) -> List[FeedbackCycleResult]:
        return list(self._results)

    def next_run_after(self, current_time: Optional[datetime] = None) -> datetime:
        if current_time is None:
            current_time = datetime.utcnow()
        return croniter(self.schedule, current_time).get_next(datetime)

    def seconds_until_next_run(self, current_time: Optional[datetime] = None) -> float:
        if current_time is None:
            current_time = datetime.utcnow()
        return max(0.0, (self.next_run_after(current_time) - current_time).total_seconds())

    def run_once(self, current_time: Optional[datetime] = None) -> Optional[FeedbackCycleResult]:
        """Run one scan. Returns None when PCAL is disabled."""
        if not self.context.enabled:
            return None
        result = self.context.run_scan(current_time)
        self._results.append(result)
        del self._results[:-50]
        logger.info(
            "scheduled scan completed",
            extra={
                "signals_detected": result.signals_detected,
                "recommendations_generated": result.recommendations_generated,
            },
        )
        return result

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Scan on every cron tick until `stop_event` is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.seconds_until_next_run(),
                    )
                except asyncio.TimeoutError:
                    self.run_once()
        finally:
            self._running = False

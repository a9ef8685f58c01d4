# services/scanner/scheduler.py
from __future__ import annotations
import asyncio
import logging
from typing import Optional, Callable, Awaitable, Set

from libs.common.models import ScanReport
from services.scanner.scanner import ScanOrchestrator

log = logging.getLogger("scanner.scheduler")

class ScanScheduler:
    """
    Fixed-period driver for ScanOrchestrator, plus on-demand runs.
    A tick (or manual trigger) that finds a cycle in flight is skipped, never queued.
    """
    def __init__(self, orchestrator: ScanOrchestrator, interval_s: float = 60.0,
                 on_report: Optional[Callable[[ScanReport], Awaitable[None]]] = None):
        self.orchestrator = orchestrator
        self.interval_s = float(interval_s)
        self.on_report = on_report
        self.last_report: Optional[ScanReport] = None
        self.cycles = 0
        self.skipped = 0
        self._running = False
        self._stop: Optional[asyncio.Event] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._running

    async def run_once(self, trigger: str = "schedule") -> Optional[ScanReport]:
        if self._running:
            self.skipped += 1
            log.info("[sched] %s tick skipped: cycle still running", trigger)
            return None
        # set before the first await: no other coroutine can slip in between
        self._running = True
        try:
            report = await self.orchestrator.run_cycle(trigger)
        finally:
            self._running = False

        self.cycles += 1
        self.last_report = report
        if self.on_report is not None:
            try:
                await self.on_report(report)
            except Exception as e:
                log.warning("[sched] on_report error: %r", e)
        return report

    async def _tick(self) -> None:
        try:
            await self.run_once("schedule")
        except Exception:
            log.exception("[sched] cycle crashed")

    async def loop(self) -> None:
        """Starts a cycle every interval_s until stop(); a long cycle does not delay the cadence."""
        # a stop() issued before the loop started still counts
        if self._stop is None:
            self._stop = asyncio.Event()
        log.info("[sched] started, every %.0fs", self.interval_s)
        while not self._stop.is_set():
            t = asyncio.create_task(self._tick())
            self._tasks.add(t)
            t.add_done_callback(self._tasks.discard)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
        log.info("[sched] stopped")

    def stop(self) -> None:
        if self._stop is None:
            self._stop = asyncio.Event()
        self._stop.set()

    async def drain(self) -> None:
        """Waits for the cycle in flight, if any (used on shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

import asyncio

from libs.common.models import ScanReport
from services.scanner.scheduler import ScanScheduler


class GatedOrchestrator:
    """run_cycle blocks until `gate` is set."""

    def __init__(self):
        self.gate = None
        self.calls = []

    async def run_cycle(self, trigger="schedule"):
        self.calls.append(trigger)
        if self.gate is not None:
            await self.gate.wait()
        return ScanReport(trigger=trigger, started_at="t0")


def test_overlapping_run_is_skipped_not_queued():
    orch = GatedOrchestrator()
    sch = ScanScheduler(orch, interval_s=60)

    async def go():
        orch.gate = asyncio.Event()
        first = asyncio.create_task(sch.run_once("schedule"))
        await asyncio.sleep(0)
        assert sch.busy is True
        second = await sch.run_once("manual")
        orch.gate.set()
        return await first, second

    first, second = asyncio.run(go())
    assert second is None
    assert first.trigger == "schedule"
    assert orch.calls == ["schedule"]
    assert sch.skipped == 1
    assert sch.cycles == 1
    assert sch.busy is False
    assert sch.last_report is first


def test_on_report_receives_each_report_and_errors_are_contained():
    seen = []

    async def on_report(report):
        seen.append(report.trigger)
        raise RuntimeError("redis down")

    sch = ScanScheduler(GatedOrchestrator(), interval_s=60, on_report=on_report)
    report = asyncio.run(sch.run_once("manual"))
    assert report is not None
    assert seen == ["manual"]


def test_crashing_cycle_releases_the_slot():
    class Boom:
        async def run_cycle(self, trigger="schedule"):
            raise RuntimeError("bug")

    sch = ScanScheduler(Boom(), interval_s=60)

    async def go():
        await sch._tick()
        return sch.busy

    assert asyncio.run(go()) is False


def test_loop_ticks_on_interval_until_stopped():
    orch = GatedOrchestrator()
    sch = ScanScheduler(orch, interval_s=0.01)

    async def go():
        task = asyncio.create_task(sch.loop())
        await asyncio.sleep(0.055)
        sch.stop()
        await task
        await sch.drain()

    asyncio.run(go())
    assert len(orch.calls) >= 3
    assert sch.cycles == len(orch.calls)


def test_long_cycle_makes_ticks_skip():
    orch = GatedOrchestrator()
    sch = ScanScheduler(orch, interval_s=0.01)

    async def go():
        orch.gate = asyncio.Event()
        task = asyncio.create_task(sch.loop())
        await asyncio.sleep(0.055)
        sch.stop()
        await task
        orch.gate.set()
        await sch.drain()

    asyncio.run(go())
    assert orch.calls == ["schedule"]
    assert sch.skipped >= 2


def test_stop_before_loop_starts_is_honored():
    orch = GatedOrchestrator()
    sch = ScanScheduler(orch, interval_s=60)
    sch.stop()

    asyncio.run(asyncio.wait_for(sch.loop(), timeout=1))
    assert orch.calls == []
    assert sch.cycles == 0

"""
Probe Scheduler

Runs every configured probe in its own asyncio loop, on its own interval
and with its own per-run deadline, until the scheduler is cancelled.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Sequence

from .classifier import classify
from .models import Deadline, Outcome, ProbeSchedule
from .sink import ResultSink

logger = logging.getLogger(__name__)

# Lets a step timeout that fires exactly at the deadline be classified by the probe.
HARD_STOP_SETTLE = 0.05


@dataclass
class ProbeState:
    """Last known state of one probe loop. Only that loop writes it."""
    runs: int = 0
    last_outcome: Optional[Outcome] = None
    last_run_at: Optional[str] = None
    last_duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
            "last_run_at": self.last_run_at,
            "last_duration_ms": self.last_duration_ms,
        }


class ProbeScheduler:
    """
    Scheduler owning one execution loop per probe schedule.

    Loops share nothing but the result sink. A probe error is recorded and
    the loop carries on; only cancellation stops a loop.

    Example:
        scheduler = ProbeScheduler(schedules, sink=PrometheusResultSink())
        task = asyncio.create_task(scheduler.start())
        # ...
        task.cancel()
    """

    def __init__(self, schedules: Sequence[ProbeSchedule], sink: ResultSink):
        """
        Initialize the scheduler.

        Args:
            schedules: Probe schedules; names must be unique
            sink: Receives every run's result

        Raises:
            ValueError: If two schedules share a name
        """
        names = set()
        for schedule in schedules:
            if schedule.name in names:
                raise ValueError(f"duplicate probe name: {schedule.name!r}")
            names.add(schedule.name)

        self.schedules: List[ProbeSchedule] = list(schedules)
        self.sink = sink
        self._states: Dict[str, ProbeState] = {s.name: ProbeState() for s in self.schedules}
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def last_outcomes(self) -> Dict[str, Optional[Outcome]]:
        return {name: state.last_outcome for name, state in self._states.items()}

    async def start(self) -> None:
        """
        Run every probe until cancelled.

        Blocks until every loop has exited. Cancelling the task running
        this coroutine cancels every loop, waits for all of them to unwind,
        then re-raises the cancellation.

        Raises:
            asyncio.CancelledError: When the scheduler is cancelled
            Exception: The first loop failure that was not a cancellation
        """
        if self.is_running:
            raise RuntimeError("probe scheduler is already running")

        self._tasks = [
            asyncio.create_task(self._schedule_probe(s), name=f"probe:{s.name}")
            for s in self.schedules
        ]
        logger.info(f"Probe scheduler started ({len(self._tasks)} probes)")

        try:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("Probe scheduler stopped")
            raise

        logger.info("Probe scheduler stopped")
        for result in results:
            if isinstance(result, Exception):
                raise result

    def stop(self) -> None:
        """Cancel every probe loop. ``start()`` returns once they unwind."""
        for task in self._tasks:
            task.cancel()

    async def run_now(self, name: str) -> Outcome:
        """
        Run one probe immediately, outside of its schedule.

        Raises:
            KeyError: If no probe has that name
        """
        schedule = next((s for s in self.schedules if s.name == name), None)
        if schedule is None:
            raise KeyError(name)
        return await self._run_once(schedule)

    def get_status(self) -> Dict[str, Any]:
        """Get scheduler status."""
        return {
            "running": self.is_running,
            "probes": [
                {
                    "name": s.name,
                    "type": s.probe_type,
                    "interval_seconds": s.interval,
                    "timeout_seconds": s.timeout,
                    **self._states[s.name].to_dict(),
                }
                for s in self.schedules
            ],
        }

    async def _schedule_probe(self, schedule: ProbeSchedule) -> None:
        """
        Loop of one probe: wait for the tick, run, repeat.

        A run that overruns its interval makes the next tick fire as soon
        as it finishes, then ticks realign to the interval grid. Ticks
        missed meanwhile are dropped, never queued.
        """
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + schedule.interval
        try:
            while True:
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
                await self._run_once(schedule)

                next_tick += schedule.interval
                now = loop.time()
                if next_tick < now:
                    missed = int((now - next_tick) // schedule.interval)
                    next_tick += missed * schedule.interval
                    logger.debug(f"Probe {schedule.name} overran its interval, dropped {missed} tick(s)")
        except asyncio.CancelledError:
            logger.debug(f"Probe loop {schedule.name} stopping")
            raise

    async def _run_once(self, schedule: ProbeSchedule) -> Outcome:
        """Run a probe under its deadline and report the result."""
        probe = schedule.probe
        deadline = Deadline.after(schedule.timeout)
        started = time.monotonic()

        outcome: Optional[Outcome] = None
        error: Optional[BaseException] = None
        try:
            async with asyncio.timeout_at(self._hard_stop(schedule, deadline)):
                outcome = await probe.run(deadline)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            logger.error(f"Probe {schedule.name} failed: {e!r}")

        duration = time.monotonic() - started
        result = classify(outcome, error)
        self._update_state(schedule.name, result, duration)
        self._report(schedule, outcome, error, duration)

        if result.is_healthy:
            logger.debug(f"Probe {schedule.name} healthy ({duration * 1000:.0f}ms)")
        else:
            logger.info(
                f"Probe {schedule.name} {result.status.value}: "
                f"code={result.code or '-'} message={result.message}"
            )
        return result

    @staticmethod
    def _hard_stop(schedule: ProbeSchedule, deadline: Deadline) -> float:
        """
        Loop time at which a run is cancelled, whatever the probe does.

        Probes fail their own steps at the deadline; the hard stop adds only
        the probe's cleanup grace and a short settle time on top.
        """
        grace = getattr(schedule.probe, "cleanup_grace", 0.0)
        return deadline.when + grace + HARD_STOP_SETTLE

    def _update_state(self, name: str, outcome: Outcome, duration: float) -> None:
        state = self._states[name]
        state.runs += 1
        state.last_outcome = outcome
        state.last_run_at = datetime.now(UTC).isoformat()
        state.last_duration_ms = duration * 1000

    def _report(
        self,
        schedule: ProbeSchedule,
        outcome: Optional[Outcome],
        error: Optional[BaseException],
        duration: float,
    ) -> None:
        try:
            self.sink.record(schedule.probe_type, schedule.name, outcome, error)
            observe = getattr(self.sink, "observe_duration", None)
            if observe is not None:
                observe(schedule.probe_type, schedule.name, duration)
        except Exception as e:
            logger.error(f"Failed to record result of probe {schedule.name}: {e}")

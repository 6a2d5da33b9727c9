"""
Cron scheduling of backup and cleanup cycles.

Manages:
- The registry of ScheduleSpec -> next due time, owned by one Scheduler
- Firing due schedules into the engine
- Recomputing next due times after every fire (missed fires are not replayed)
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from zfs2s3.models import ScheduleSpec
from zfs2s3.utils.cron import build_trigger, next_fire_after


logger = logging.getLogger(__name__)


class Scheduler:
    """
    Polls the schedules at a fixed tick interval and fires the due ones.

    Cycles run in the engine's worker pool; the scheduler itself never
    blocks on a cycle.
    """

    def __init__(self, specs: List[ScheduleSpec], engine, tick_interval: float = 1.0, now: Optional[datetime] = None):
        """
        Initialize scheduler.

        Args:
            specs: Schedules to register
            engine: Object with a ``trigger(kind)`` method
            tick_interval: Seconds between two ticks of ``run``
            now: Reference time for the first due times, defaults to now
        """
        self.engine = engine
        self.tick_interval = tick_interval
        self._triggers: Dict[ScheduleSpec, CronTrigger] = {}
        self._next_due: Dict[ScheduleSpec, Optional[datetime]] = {}

        now = now or datetime.now(timezone.utc)
        for spec in specs:
            trigger = build_trigger(spec.expression)
            self._triggers[spec] = trigger
            self._next_due[spec] = next_fire_after(trigger, now)
            logger.info(f"Scheduled {spec}, next run: {self._format(self._next_due[spec])}")

    @staticmethod
    def _format(when: Optional[datetime]) -> str:
        return when.isoformat() if when else 'never'

    def next_due(self) -> Dict[ScheduleSpec, Optional[datetime]]:
        """Copy of the registry of next due times."""
        return dict(self._next_due)

    def tick(self, now: Optional[datetime] = None) -> List[ScheduleSpec]:
        """
        Fire every schedule that is due at ``now``.

        Args:
            now: Current time, defaults to now

        Returns:
            Schedules fired by this tick
        """
        now = now or datetime.now(timezone.utc)
        fired = []

        for spec, due in self._next_due.items():
            if due is None or due > now:
                continue

            try:
                self.engine.trigger(spec.kind)
            except Exception:
                logger.exception(f"Failed to trigger {spec}")
            fired.append(spec)

            self._next_due[spec] = next_fire_after(self._triggers[spec], now)
            logger.debug(f"Next run of {spec}: {self._format(self._next_due[spec])}")

        return fired

    def run(self, stop_event: threading.Event):
        """Tick until ``stop_event`` is set."""
        logger.info(f"Scheduler started with {len(self._next_due)} schedules")
        while not stop_event.is_set():
            self.tick()
            stop_event.wait(self.tick_interval)
        logger.info("Scheduler stopped")

# app/core/background_tasks.py
"""
Background tasks: per-device Non-Report timers.

Each device with a usable non-report threshold has one outstanding timer that
fires threshold + delay after its last report and re-checks the device through
the Non-Report evaluator. Every report or settings change replaces the timer.
"""
import asyncio
import logging
from typing import Dict, Optional, Callable

from sqlmodel import Session, select

from app.core.config import settings
from app.core.deps import Dependencies
from app.core.locks import KeyedLocks
from app.database.engine import session_factory
from app.models.fleet import Device
from app.services.alert_evaluators import AlertDispatcher
from app.services.alert_notification import AlertNotifier
from app.services.command_channel import get_command_channel
import app.services.event_bus as event_bus_module

logger = logging.getLogger(__name__)


class NonReportTimerManager:
    """Manages the per-device Non-Report timers."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = session_factory,
        delay_ms: int = settings.NON_REPORT_DELAY_MS,
        max_threshold_ms: int = settings.MAX_NON_REPORT_THRESHOLD_MS,
        channel=None
    ):
        self.session_factory = session_factory
        self.delay_ms = delay_ms
        self.max_threshold_ms = max_threshold_ms
        self.channel = channel
        self.timers: Dict[int, asyncio.Task] = {}
        self.locks = KeyedLocks()

    def is_schedulable(self, threshold_ms: Optional[int]) -> bool:
        return threshold_ms is not None and threshold_ms <= self.max_threshold_ms

    async def reset(self, device_id: int, threshold_ms: Optional[int]) -> bool:
        """Replace the device's timer. Returns whether a new timer was scheduled."""
        async with self.locks.hold(device_id):
            self._clear(device_id)
            if not self.is_schedulable(threshold_ms):
                return False

            logger.info(f"NonReport alert event for device ID {device_id} will run in {threshold_ms} milliseconds.")
            delay = (threshold_ms + self.delay_ms) / 1000
            self.timers[device_id] = asyncio.create_task(self._fire_after(device_id, delay))
            return True

    async def cancel(self, device_id: int):
        async with self.locks.hold(device_id):
            self._clear(device_id)

    def _clear(self, device_id: int):
        task = self.timers.pop(device_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _fire_after(self, device_id: int, delay: float):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        # A timer replaced while firing must not run
        async with self.locks.hold(device_id):
            if self.timers.get(device_id) is not asyncio.current_task():
                return
            del self.timers[device_id]
        await self.run_check(device_id)

    async def run_check(self, device_id: int):
        """Evaluate the Non-Report alert of a device in its own session."""
        try:
            with self.session_factory() as db:
                deps = Dependencies.from_session(
                    db,
                    channel=self.channel or get_command_channel(),
                    event_bus=event_bus_module.event_bus
                )
                dispatcher = AlertDispatcher(deps, notifier=AlertNotifier(deps))
                await dispatcher.dispatch("report_timeout", {"id": device_id})
        except Exception as e:
            logger.error(f"Error in Non-Report check for device {device_id}: {e}")

    async def initialize(self, force_check: bool = True):
        """Schedule a timer for every device, optionally evaluating each one right away."""
        with self.session_factory() as db:
            devices = [(d.id, d.non_report_threshold) for d in db.exec(select(Device)).all()]

        scheduled = 0
        for device_id, threshold in devices:
            if await self.reset(device_id, threshold):
                scheduled += 1
                if force_check:
                    await self.run_check(device_id)
        logger.info(f"Initialized {scheduled} Non-Report timers")

    async def stop(self):
        """Cancel every timer."""
        for device_id in list(self.timers):
            await self.cancel(device_id)
        logger.info("Non-Report timers stopped")


# Global timer manager instance (initialized in main.py)
non_report_timers: Optional[NonReportTimerManager] = None


def get_non_report_timers() -> Optional[NonReportTimerManager]:
    """Get the global Non-Report timer manager, None before startup."""
    return non_report_timers

"""Wall-clock trigger firing the accrual job once a day in the operational timezone."""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, time as dtime

from accrual_engine.config import ACCRUAL_SETTINGS
from accrual_engine.models.db.enums import TriggerSource
from accrual_engine.services.accrual_scheduler import AccrualScheduler
from accrual_engine.services.transaction_coordinator import TransactionCoordinator
from accrual_engine.utils import get_logger
from accrual_engine.utils.time import utc_now, operational_zone

logger = get_logger(__name__)


def next_fire_time(now: datetime, *, hour: int | None = None, minute: int | None = None) -> datetime:
    """Next occurrence of hour:minute operational time strictly after ``now`` (returned in UTC)."""
    hour = int(hour if hour is not None else ACCRUAL_SETTINGS["run_hour"])
    minute = int(minute if minute is not None else ACCRUAL_SETTINGS["run_minute"])
    zone = operational_zone()
    local_now = now.astimezone(zone)
    candidate = datetime.combine(local_now.date(), dtime(hour, minute), tzinfo=zone)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), dtime(hour, minute), tzinfo=zone)
    return candidate.astimezone(now.tzinfo or zone)


class DailyAccrualTrigger:
    def __init__(self, scheduler: AccrualScheduler, coordinator: TransactionCoordinator | None = None):
        self.scheduler = scheduler
        self.coordinator = coordinator or scheduler.coordinator
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self.last_result: dict | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="daily-accrual-trigger", daemon=True)
        self._thread.start()
        logger.info("Daily accrual trigger started", next_run=next_fire_time(utc_now()).isoformat())

    def stop(self) -> None:
        self._stop_event.set()
        logger.info("Daily accrual trigger stop requested")

    def fire(self) -> dict:
        """One scheduled tick: housekeeping, then the catch-up accrual run.

        A failing housekeeping step is logged and never blocks the accrual run.
        """
        for step in (self.coordinator.expire_overdue_purchases, self.coordinator.retry_pending_licenses):
            try:
                step()
            except Exception as e:
                logger.error("Housekeeping step failed", step=getattr(step, "__name__", repr(step)), error=str(e), exc_info=True)
        result = self.scheduler.run(trigger=TriggerSource.AUTOMATIC)
        self.last_result = result
        return result

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            now = utc_now()
            wait_seconds = max(0.0, (next_fire_time(now) - now).total_seconds())
            if self._stop_event.wait(wait_seconds):
                break
            try:
                self.fire()
            except Exception as e:  # pragma: no cover
                logger.error("Scheduled accrual run failed", error=str(e), exc_info=True)


__all__ = ["DailyAccrualTrigger", "next_fire_time"]

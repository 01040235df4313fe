"""Background poller driving the outbox dispatcher."""
from __future__ import annotations

import threading
import time
from collections import deque

from accrual_engine.config import OUTBOX_SETTINGS
from accrual_engine.services.outbox_dispatcher import OutboxDispatcher
from accrual_engine.utils import get_logger

logger = get_logger(__name__)

# Loop errors kept for inspection
LAST_EXCEPTIONS: deque[dict] = deque(maxlen=50)


class OutboxWorker:
    def __init__(self, dispatcher: OutboxDispatcher, *, poll_interval: float | None = None):
        self.dispatcher = dispatcher
        self.poll_interval = float(poll_interval if poll_interval is not None else OUTBOX_SETTINGS["poll_interval_seconds"])
        self.purge_every = int(OUTBOX_SETTINGS["purge_every_polls"])
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._polls = 0

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running:  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="outbox-worker", daemon=True)
        self._thread.start()
        logger.info("Outbox worker started", poll_interval=self.poll_interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        logger.info("Outbox worker stop requested")
        if timeout is not None and self._thread is not None:
            self._thread.join(timeout)

    def poll_once(self) -> dict:
        summary = self.dispatcher.process_batch()
        self._polls += 1
        if self.purge_every and self._polls % self.purge_every == 0:
            self.dispatcher.purge()
        return summary

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error("Outbox worker loop error", error=str(e), exc_info=True)
                LAST_EXCEPTIONS.append({"error": str(e), "type": type(e).__name__})
                time.sleep(1)
            self._stop_event.wait(self.poll_interval)


__all__ = ["OutboxWorker", "LAST_EXCEPTIONS"]

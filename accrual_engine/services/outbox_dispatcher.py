"""Outbox dispatcher: deliver staged events to cache invalidation and realtime channels.

One ``process_batch`` call:

1. returns PROCESSING events whose claim timed out to PENDING,
2. fetches due PENDING events oldest first (batch size from config),
3. claims each (PENDING -> PROCESSING, attempts + 1), runs the handler for its
   type, and marks it PUBLISHED,
4. on handler failure appends to the error history and either schedules a
   retry with exponential backoff or dead-letters the event as FAILED.

Delivery is at-least-once. Handlers only delete cache keys and push
notifications, both safe to repeat.
"""
from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from accrual_engine import database
from accrual_engine.config import OUTBOX_SETTINGS
from accrual_engine.models.db.enums import OutboxEventType, OutboxStatus
from accrual_engine.models.db.outbox import OutboxEvent
from accrual_engine.services import outbox_store
from accrual_engine.services.cache_invalidation import CacheInvalidator
from accrual_engine.services.realtime import Notifier, NotificationChannel
from accrual_engine.utils import get_logger, log_performance
from accrual_engine.utils.time import utc_now

logger = get_logger(__name__)

Handler = Callable[[OutboxEvent], None]


class OutboxDispatcher:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        *,
        cache: Optional[CacheInvalidator] = None,
        notifier: Optional[Notifier] = None,
        batch_size: int | None = None,
    ):
        self._session_factory = session_factory
        self.cache = cache or CacheInvalidator()
        self.notifier = notifier or NotificationChannel()
        self.batch_size = int(batch_size or OUTBOX_SETTINGS["batch_size"])
        self._processing_lock = threading.Lock()
        self.is_processing = False
        self._handlers: Dict[OutboxEventType, Handler] = {
            OutboxEventType.PURCHASE_CONFIRMED: self._handle_purchase_event,
            OutboxEventType.PURCHASE_REJECTED: self._handle_purchase_event,
            OutboxEventType.PURCHASE_COMPLETED: self._handle_purchase_event,
            OutboxEventType.LICENSE_CREATED: self._handle_purchase_event,
            OutboxEventType.LICENSE_PAUSED: self._handle_purchase_event,
            OutboxEventType.LICENSE_RESUMED: self._handle_purchase_event,
            OutboxEventType.WITHDRAWAL_REQUESTED: self._handle_withdrawal_event,
            OutboxEventType.WITHDRAWAL_APPROVED: self._handle_withdrawal_event,
            OutboxEventType.WITHDRAWAL_REJECTED: self._handle_withdrawal_event,
            OutboxEventType.BENEFIT_PROCESSED: self._handle_benefit_processed,
            OutboxEventType.COMMISSION_UNLOCKED: self._handle_commission_unlocked,
        }

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory or database.SessionLocal

    def register_handler(self, event_type: OutboxEventType, handler: Handler) -> None:
        self._handlers[event_type] = handler

    # ------------------------------------------------------------------ #
    # Batch processing
    # ------------------------------------------------------------------ #
    def process_batch(self, *, now: datetime | None = None) -> Dict[str, Any]:
        if not self._processing_lock.acquire(blocking=False):
            return {"skipped": True, "reason": "already processing"}
        self.is_processing = True
        started = time.perf_counter()
        summary = {
            "skipped": False,
            "recovered": 0,
            "fetched": 0,
            "published": 0,
            "retried": 0,
            "dead_lettered": 0,
            "contended": 0,
        }
        try:
            now = now or utc_now()
            with self.session_factory() as session:
                summary["recovered"] = outbox_store.recover_stuck(session, now=now)
                events = outbox_store.fetch_due(session, limit=self.batch_size, now=now)
                summary["fetched"] = len(events)
                for event in events:
                    outcome = self._dispatch(session, event, now)
                    summary[outcome] += 1
        finally:
            self.is_processing = False
            self._processing_lock.release()

        if summary["fetched"]:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            log_performance("outbox_batch", duration_ms, {k: v for k, v in summary.items() if k != "skipped"})
        return summary

    def _dispatch(self, session, event: OutboxEvent, now: datetime) -> str:
        if not outbox_store.claim(session, event, now=now):
            return "contended"
        log = logger.bind(event_id=event.event_id, event_type=event.event_type.value)
        handler = self._handlers.get(event.event_type)
        try:
            if handler is None:
                raise LookupError(f"no handler for event type {event.event_type.value}")
            handler(event)
        except Exception as e:
            log.debug("Outbox handler raised", attempts=event.attempts, error=str(e))
            outbox_store.record_failure(session, event, f"{type(e).__name__}: {e}", now=now)
            return "retried" if event.status == OutboxStatus.PENDING else "dead_lettered"
        outbox_store.mark_published(session, event, now=now)
        log.debug("Outbox event published", attempts=event.attempts)
        return "published"

    def purge(self, *, older_than_days: int | None = None, now: datetime | None = None) -> int:
        with self.session_factory() as session:
            return outbox_store.purge_published(session, older_than_days=older_than_days, now=now)

    def stats(self) -> Dict[str, Any]:
        with self.session_factory() as session:
            counts = outbox_store.stats(session)
        return {"counts": counts, "is_processing": self.is_processing, "batch_size": self.batch_size}

    # ------------------------------------------------------------------ #
    # Handlers
    # ------------------------------------------------------------------ #
    def _message(self, event: OutboxEvent) -> Dict[str, Any]:
        return {
            "type": event.event_type.value,
            "event_id": event.event_id,
            "aggregate_id": event.aggregate_id,
            "data": event.payload,
        }

    def _notify_user(self, user_id: Any, event: OutboxEvent) -> None:
        if user_id is not None:
            self.notifier.send_user_update(int(user_id), self._message(event))

    def _invalidate(self, event: OutboxEvent, user_ids: List[Any]) -> None:
        ids = [int(u) for u in user_ids if u is not None]
        self.cache.invalidate_for_event(event.event_type.value, ids)

    def _handle_purchase_event(self, event: OutboxEvent) -> None:
        user_id = event.payload.get("user_id", event.user_id)
        self._invalidate(event, [user_id, *event.payload.get("beneficiaries", [])])
        self._notify_user(user_id, event)
        self.notifier.send_admin_update(self._message(event))

    def _handle_withdrawal_event(self, event: OutboxEvent) -> None:
        user_id = event.payload.get("user_id", event.user_id)
        self._invalidate(event, [user_id])
        self._notify_user(user_id, event)
        self.notifier.send_admin_update(self._message(event))

    def _handle_benefit_processed(self, event: OutboxEvent) -> None:
        user_id = event.payload.get("user_id", event.user_id)
        self._invalidate(event, [user_id])
        self._notify_user(user_id, event)

    def _handle_commission_unlocked(self, event: OutboxEvent) -> None:
        beneficiary = event.payload.get("beneficiary_id", event.user_id)
        self._invalidate(event, [beneficiary, event.payload.get("buyer_id")])
        self._notify_user(beneficiary, event)


__all__ = ["OutboxDispatcher"]

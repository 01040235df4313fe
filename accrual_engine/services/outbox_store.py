"""Outbox event persistence: staging, claiming, retry bookkeeping, retention.

``create_event`` only adds to the session it is handed and never commits;
it is meant to be called from a ``UnitOfWork`` so the event and the business
mutation land in the same transaction. The remaining functions are used by
the dispatcher and the admin surface and commit on their own session.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.orm import Session

from accrual_engine.config import OUTBOX_SETTINGS
from accrual_engine.exceptions import NotFound
from accrual_engine.models.db.enums import OutboxStatus, OutboxEventType, AggregateType
from accrual_engine.models.db.outbox import OutboxEvent
from accrual_engine.utils import get_logger
from accrual_engine.utils.backoff import next_retry_at
from accrual_engine.utils.time import utc_now, ensure_utc

logger = get_logger(__name__)


def generate_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


def create_event(
    session: Session,
    event_type: OutboxEventType,
    aggregate_id: Any,
    aggregate_type: AggregateType,
    payload: Dict[str, Any],
    context: Dict[str, Any] | None = None,
) -> OutboxEvent:
    context = context or {}
    event = OutboxEvent(
        event_id=generate_event_id(),
        event_type=event_type,
        aggregate_id=str(aggregate_id),
        aggregate_type=aggregate_type,
        payload=payload,
        user_id=context.get("user_id"),
        admin_id=context.get("admin_id"),
        status=OutboxStatus.PENDING,
        attempts=0,
        max_attempts=int(OUTBOX_SETTINGS["max_attempts"]),
        error_history=[],
        transaction_id=context.get("transaction_id"),
        created_at=context.get("now") or utc_now(),
    )
    session.add(event)
    session.flush()
    logger.debug(
        "Outbox event staged",
        event_id=event.event_id,
        event_type=event_type.value,
        aggregate_id=event.aggregate_id,
        transaction_id=event.transaction_id,
    )
    return event


def get_event(session: Session, event_id: str) -> OutboxEvent:
    event = session.execute(select(OutboxEvent).where(OutboxEvent.event_id == event_id)).scalar_one_or_none()
    if event is None:
        raise NotFound("outbox event", event_id)
    return event


def fetch_due(session: Session, *, limit: int | None = None, now: datetime | None = None) -> List[OutboxEvent]:
    """PENDING events whose retry time is unset or past, oldest first."""
    now = now or utc_now()
    limit = int(limit or OUTBOX_SETTINGS["batch_size"])
    stmt = (
        select(OutboxEvent)
        .where(OutboxEvent.status == OutboxStatus.PENDING)
        .where((OutboxEvent.next_retry_at.is_(None)) | (OutboxEvent.next_retry_at <= now))
        .order_by(OutboxEvent.created_at, OutboxEvent.id)
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def claim(session: Session, event: OutboxEvent, *, now: datetime | None = None) -> bool:
    """PENDING -> PROCESSING with attempts += 1. False if someone else got it."""
    now = now or utc_now()
    result = session.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event.id)
        .where(OutboxEvent.status == OutboxStatus.PENDING)
        .values(status=OutboxStatus.PROCESSING, attempts=OutboxEvent.attempts + 1, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if result.rowcount != 1:
        return False
    session.refresh(event)
    return True


def mark_published(session: Session, event: OutboxEvent, *, now: datetime | None = None) -> OutboxEvent:
    event.status = OutboxStatus.PUBLISHED
    event.published_at = now or utc_now()
    event.next_retry_at = None
    event.last_error = None
    session.commit()
    return event


def record_failure(session: Session, event: OutboxEvent, error: str, *, now: datetime | None = None) -> OutboxEvent:
    """Return to PENDING with backoff, or dead-letter once the budget is spent."""
    now = now or utc_now()
    history = list(event.error_history or [])
    history.append({"error": error, "attempt": event.attempts, "occurred_at": now.isoformat()})
    event.error_history = history
    event.last_error = error
    if event.attempts < event.max_attempts:
        event.status = OutboxStatus.PENDING
        event.next_retry_at = next_retry_at(event.attempts, now)
        logger.warning(
            "Outbox event delivery failed; retry scheduled",
            event_id=event.event_id,
            event_type=event.event_type.value,
            attempts=event.attempts,
            next_retry_at=event.next_retry_at.isoformat(),
            error=error,
        )
    else:
        event.status = OutboxStatus.FAILED
        event.next_retry_at = None
        logger.error(
            "Outbox event dead-lettered",
            event_id=event.event_id,
            event_type=event.event_type.value,
            attempts=event.attempts,
            error=error,
        )
    session.commit()
    return event


def recover_stuck(session: Session, *, timeout_seconds: float | None = None, now: datetime | None = None) -> int:
    """Return PROCESSING claims older than the timeout to PENDING."""
    now = now or utc_now()
    timeout = float(timeout_seconds if timeout_seconds is not None else OUTBOX_SETTINGS["processing_timeout_seconds"])
    cutoff = now - timedelta(seconds=timeout)
    result = session.execute(
        update(OutboxEvent)
        .where(OutboxEvent.status == OutboxStatus.PROCESSING)
        .where((OutboxEvent.claimed_at.is_(None)) | (OutboxEvent.claimed_at < cutoff))
        .values(status=OutboxStatus.PENDING, next_retry_at=None, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    recovered = result.rowcount or 0
    if recovered:
        logger.warning("Recovered stuck outbox events", recovered=recovered)
    return recovered


def list_failed(session: Session, *, limit: int = 100, offset: int = 0) -> List[OutboxEvent]:
    stmt = (
        select(OutboxEvent)
        .where(OutboxEvent.status == OutboxStatus.FAILED)
        .order_by(OutboxEvent.created_at.desc(), OutboxEvent.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def requeue(session: Session, event_id: str) -> OutboxEvent:
    """Manual re-drive of a dead-lettered event with a fresh attempt budget."""
    event = get_event(session, event_id)
    if event.status != OutboxStatus.FAILED:
        raise ValueError(f"event {event_id} is {event.status.value}, only FAILED events can be requeued")
    event.status = OutboxStatus.PENDING
    event.attempts = 0
    event.next_retry_at = None
    event.claimed_at = None
    session.commit()
    logger.info("Outbox event requeued", event_id=event_id, event_type=event.event_type.value)
    return event


def purge_published(session: Session, *, older_than_days: int | None = None, now: datetime | None = None) -> int:
    now = now or utc_now()
    days = int(older_than_days if older_than_days is not None else OUTBOX_SETTINGS["published_retention_days"])
    cutoff = now - timedelta(days=days)
    result = session.execute(
        delete(OutboxEvent)
        .where(OutboxEvent.status == OutboxStatus.PUBLISHED)
        .where(OutboxEvent.published_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    purged = result.rowcount or 0
    if purged:
        logger.info("Published outbox events purged", purged=purged, older_than_days=days)
    return purged


def stats(session: Session) -> Dict[str, int]:
    counts = {status.value: 0 for status in OutboxStatus}
    rows = session.execute(select(OutboxEvent.status, func.count(OutboxEvent.id)).group_by(OutboxEvent.status))
    for status, count in rows:
        counts[status.value] = int(count)
    counts["total"] = sum(counts[s.value] for s in OutboxStatus)
    return counts


def serialize_event(event: OutboxEvent) -> Dict[str, Any]:
    def _iso(value: Optional[datetime]):
        return ensure_utc(value).isoformat() if value else None
    return {
        "event_id": event.event_id,
        "event_type": event.event_type.value,
        "aggregate_id": event.aggregate_id,
        "aggregate_type": event.aggregate_type.value,
        "status": event.status.value,
        "attempts": event.attempts,
        "max_attempts": event.max_attempts,
        "next_retry_at": _iso(event.next_retry_at),
        "last_error": event.last_error,
        "error_history": event.error_history or [],
        "transaction_id": event.transaction_id,
        "created_at": _iso(event.created_at),
        "published_at": _iso(event.published_at),
        "payload": event.payload,
    }


__all__ = [
    "generate_event_id",
    "create_event",
    "get_event",
    "fetch_due",
    "claim",
    "mark_published",
    "record_failure",
    "recover_stuck",
    "list_failed",
    "requeue",
    "purge_published",
    "stats",
    "serialize_event",
]

"""Per-date and per-job processing state.

Two guards against double work:

* ``DailyProcessingState`` keyed by ISO date string: a COMPLETED date is never
  recomputed; a STARTED date blocks a second pass unless it went stale (crash).
* ``JobState`` keyed by job name: a RUNNING flag taken with a conditional
  UPDATE so only one multi-date pass runs at a time.

Functions commit on the session they are given so the state is visible to
other invocations immediately.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from accrual_engine import config
from accrual_engine.exceptions import DateAlreadyCompleted, DateInProgress
from accrual_engine.models.db.enums import ProcessingStatus, JobStatus, TriggerSource
from accrual_engine.models.db.processing_state import DailyProcessingState, JobState
from accrual_engine.utils import get_logger
from accrual_engine.utils import decimal_math as dm
from accrual_engine.utils.time import utc_now, ensure_utc

logger = get_logger(__name__)

# ------------------------------- Date state ------------------------------- #

def get_date_state(session: Session, process_date: str) -> Optional[DailyProcessingState]:
    return session.execute(
        select(DailyProcessingState).where(DailyProcessingState.process_date == process_date)
    ).scalar_one_or_none()


def _is_stale(state: DailyProcessingState, now: datetime) -> bool:
    started = ensure_utc(state.started_at)
    if started is None:
        return True
    hours = float(config.ACCRUAL_SETTINGS["stale_date_lock_hours"])
    return now - started > timedelta(hours=hours)


def mark_date_started(
    session: Session,
    process_date: str,
    trigger: TriggerSource = TriggerSource.AUTOMATIC,
    *,
    now: datetime | None = None,
) -> DailyProcessingState:
    """Claim ``process_date`` for processing.

    Raises ``DateAlreadyCompleted`` or ``DateInProgress``. FAILED rows and
    stale STARTED rows are restarted.
    """
    now = now or utc_now()
    state = get_date_state(session, process_date)
    if state is None:
        try:
            state = DailyProcessingState(
                process_date=process_date,
                status=ProcessingStatus.STARTED,
                trigger=trigger,
                timezone=config.OPERATIONAL_TIMEZONE,
                started_at=now,
                attempts=1,
            )
            session.add(state)
            session.commit()
            return state
        except IntegrityError:
            # Another invocation inserted the row between our read and write
            session.rollback()
            state = get_date_state(session, process_date)
            if state is None:  # pragma: no cover
                raise
    if state.status == ProcessingStatus.COMPLETED:
        raise DateAlreadyCompleted(process_date)
    if state.status == ProcessingStatus.STARTED and not _is_stale(state, now):
        raise DateInProgress(process_date)

    previous = state.status
    if previous == ProcessingStatus.STARTED:
        logger.warning("Taking over stale processing state", process_date=process_date, started_at=str(state.started_at))
    result = session.execute(
        update(DailyProcessingState)
        .where(DailyProcessingState.id == state.id)
        .where(DailyProcessingState.status == previous)
        .where(DailyProcessingState.attempts == state.attempts)
        .values(
            status=ProcessingStatus.STARTED,
            trigger=trigger,
            started_at=now,
            completed_at=None,
            error_message=None,
            attempts=state.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        raise DateInProgress(process_date)
    session.commit()
    session.refresh(state)
    return state


def mark_date_completed(session: Session, process_date: str, stats: Dict[str, Any], *, now: datetime | None = None) -> DailyProcessingState:
    state = get_date_state(session, process_date)
    if state is None:
        raise ValueError(f"no processing state for {process_date}")
    state.status = ProcessingStatus.COMPLETED
    state.completed_at = now or utc_now()
    state.stats = stats
    state.error_message = None
    session.commit()
    return state


def mark_date_failed(
    session: Session,
    process_date: str,
    error: str,
    partial_stats: Dict[str, Any] | None = None,
    *,
    now: datetime | None = None,
) -> DailyProcessingState:
    state = get_date_state(session, process_date)
    if state is None:
        raise ValueError(f"no processing state for {process_date}")
    state.status = ProcessingStatus.FAILED
    state.completed_at = now or utc_now()
    state.stats = partial_stats
    state.error_message = error
    session.commit()
    return state


def reset_date(session: Session, process_date: str) -> bool:
    """Drop the date guard (force re-run). Ledger idempotency keys still apply."""
    result = session.execute(delete(DailyProcessingState).where(DailyProcessingState.process_date == process_date))
    session.commit()
    removed = (result.rowcount or 0) > 0
    if removed:
        logger.warning("Processing state reset", process_date=process_date)
    return removed


def list_date_states(session: Session, start: str | None = None, end: str | None = None, limit: int = 100) -> List[DailyProcessingState]:
    stmt = select(DailyProcessingState)
    # ISO strings sort chronologically
    if start:
        stmt = stmt.where(DailyProcessingState.process_date >= start)
    if end:
        stmt = stmt.where(DailyProcessingState.process_date <= end)
    stmt = stmt.order_by(DailyProcessingState.process_date.desc()).limit(limit)
    return list(session.execute(stmt).scalars())


def cleanup_old_dates(session: Session, *, older_than_days: int | None = None, now: datetime | None = None) -> int:
    days = int(older_than_days if older_than_days is not None else config.ACCRUAL_SETTINGS["state_retention_days"])
    now = now or utc_now()
    cutoff = (now - timedelta(days=days)).date().isoformat()
    result = session.execute(
        delete(DailyProcessingState)
        .where(DailyProcessingState.process_date < cutoff)
        .where(DailyProcessingState.status != ProcessingStatus.STARTED)
    )
    session.commit()
    removed = result.rowcount or 0
    if removed:
        logger.info("Old processing states removed", removed=removed, cutoff=cutoff)
    return removed


def serialize_date_state(state: DailyProcessingState) -> Dict[str, Any]:
    return {
        "process_date": state.process_date,
        "status": state.status.value,
        "trigger": state.trigger.value if state.trigger else None,
        "timezone": state.timezone,
        "attempts": state.attempts,
        "started_at": ensure_utc(state.started_at).isoformat() if state.started_at else None,
        "completed_at": ensure_utc(state.completed_at).isoformat() if state.completed_at else None,
        "stats": state.stats,
        "error_message": state.error_message,
    }

# -------------------------------- Job state -------------------------------- #

def get_job_state(session: Session, job: str) -> Optional[JobState]:
    return session.execute(select(JobState).where(JobState.job == job)).scalar_one_or_none()


def _ensure_job(session: Session, job: str) -> JobState:
    state = get_job_state(session, job)
    if state is not None:
        return state
    try:
        state = JobState(job=job, status=JobStatus.IDLE, processed=0, errors=0, total_amount=dm.ZERO)
        session.add(state)
        session.commit()
        return state
    except IntegrityError:
        session.rollback()
        return session.execute(select(JobState).where(JobState.job == job)).scalar_one()


def acquire_job(session: Session, job: str, *, now: datetime | None = None) -> bool:
    """Flip ``job`` to RUNNING. False while another live invocation holds it."""
    now = now or utc_now()
    _ensure_job(session, job)
    stale_cutoff = now - timedelta(hours=float(config.ACCRUAL_SETTINGS["stale_job_lock_hours"]))
    result = session.execute(
        update(JobState)
        .where(JobState.job == job)
        .where(or_(
            JobState.status != JobStatus.RUNNING,
            JobState.started_at.is_(None),
            JobState.started_at < stale_cutoff,
        ))
        .values(status=JobStatus.RUNNING, started_at=now, error_message=None)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    acquired = result.rowcount == 1
    if not acquired:
        logger.warning("Job already running", job=job)
    return acquired


def finish_job(
    session: Session,
    job: str,
    *,
    status: JobStatus,
    processed: int = 0,
    errors: int = 0,
    total_amount: dm.Number = None,
    duration_ms: int | None = None,
    error_message: str | None = None,
    succeeded: bool = False,
    now: datetime | None = None,
) -> JobState:
    """Release the RUNNING flag and record the run.

    ``last_success_at`` only moves when ``succeeded`` (every owed date completed).
    """
    now = now or utc_now()
    state = _ensure_job(session, job)
    state.status = status
    state.last_run_at = now
    state.processed = processed
    state.errors = errors
    state.total_amount = dm.quantize(total_amount)
    state.duration_ms = duration_ms
    state.error_message = error_message
    if succeeded:
        state.last_success_at = now
    session.commit()
    return state


def serialize_job_state(state: JobState | None) -> Dict[str, Any] | None:
    if state is None:
        return None
    def _iso(value):
        return ensure_utc(value).isoformat() if value else None
    return {
        "job": state.job,
        "status": state.status.value,
        "started_at": _iso(state.started_at),
        "last_run_at": _iso(state.last_run_at),
        "last_success_at": _iso(state.last_success_at),
        "processed": state.processed,
        "errors": state.errors,
        "total_amount": dm.to_str(state.total_amount),
        "duration_ms": state.duration_ms,
        "error_message": state.error_message,
    }


__all__ = [
    "get_date_state",
    "mark_date_started",
    "mark_date_completed",
    "mark_date_failed",
    "reset_date",
    "list_date_states",
    "cleanup_old_dates",
    "serialize_date_state",
    "get_job_state",
    "acquire_job",
    "finish_job",
    "serialize_job_state",
]

from datetime import timedelta

import pytest

from accrual_engine.exceptions import DateAlreadyCompleted, DateInProgress
from accrual_engine.models.db.enums import JobStatus, ProcessingStatus, TriggerSource
from accrual_engine.services import processing_state as state_store

from conftest import NOW


def test_date_lifecycle_started_completed(db_session):
    state = state_store.mark_date_started(db_session, "2025-03-10", TriggerSource.MANUAL, now=NOW)
    assert state.status == ProcessingStatus.STARTED
    assert state.trigger == TriggerSource.MANUAL
    assert state.timezone == "America/Bogota"
    assert state.attempts == 1

    state_store.mark_date_completed(db_session, "2025-03-10", {"processed": 3}, now=NOW)
    with pytest.raises(DateAlreadyCompleted):
        state_store.mark_date_started(db_session, "2025-03-10", now=NOW)
    assert state_store.get_date_state(db_session, "2025-03-10").stats == {"processed": 3}


def test_started_date_blocks_second_pass_until_stale(db_session):
    state_store.mark_date_started(db_session, "2025-03-10", now=NOW)
    with pytest.raises(DateInProgress):
        state_store.mark_date_started(db_session, "2025-03-10", now=NOW + timedelta(minutes=30))

    taken = state_store.mark_date_started(db_session, "2025-03-10", now=NOW + timedelta(hours=3))
    assert taken.status == ProcessingStatus.STARTED
    assert taken.attempts == 2


def test_failed_date_can_restart(db_session):
    state_store.mark_date_started(db_session, "2025-03-10", now=NOW)
    state_store.mark_date_failed(db_session, "2025-03-10", "boom", {"processed": 1}, now=NOW)
    failed = state_store.get_date_state(db_session, "2025-03-10")
    assert failed.status == ProcessingStatus.FAILED
    assert failed.error_message == "boom"

    restarted = state_store.mark_date_started(db_session, "2025-03-10", now=NOW)
    assert restarted.status == ProcessingStatus.STARTED
    assert restarted.error_message is None


def test_reset_and_list_dates(db_session):
    for day in ("2025-03-08", "2025-03-09", "2025-03-10"):
        state_store.mark_date_started(db_session, day, now=NOW)
        state_store.mark_date_completed(db_session, day, {}, now=NOW)

    listed = state_store.list_date_states(db_session, start="2025-03-09")
    assert {s.process_date for s in listed} == {"2025-03-09", "2025-03-10"}

    assert state_store.reset_date(db_session, "2025-03-09") is True
    assert state_store.get_date_state(db_session, "2025-03-09") is None
    assert state_store.reset_date(db_session, "2025-03-09") is False


def test_cleanup_old_dates(db_session):
    state_store.mark_date_started(db_session, "2024-10-01", now=NOW)
    state_store.mark_date_completed(db_session, "2024-10-01", {}, now=NOW)
    state_store.mark_date_started(db_session, "2025-03-01", now=NOW)
    state_store.mark_date_completed(db_session, "2025-03-01", {}, now=NOW)

    removed = state_store.cleanup_old_dates(db_session, now=NOW)
    assert removed == 1
    assert state_store.get_date_state(db_session, "2024-10-01") is None
    assert state_store.get_date_state(db_session, "2025-03-01") is not None


def test_job_lock_is_exclusive_and_released(db_session):
    assert state_store.acquire_job(db_session, "benefits", now=NOW) is True
    assert state_store.acquire_job(db_session, "benefits", now=NOW + timedelta(minutes=5)) is False

    state_store.finish_job(db_session, "benefits", status=JobStatus.SUCCESS, processed=4, succeeded=True, now=NOW)
    job = state_store.get_job_state(db_session, "benefits")
    assert job.status == JobStatus.SUCCESS
    assert job.processed == 4
    assert job.last_success_at is not None

    assert state_store.acquire_job(db_session, "benefits", now=NOW + timedelta(minutes=10)) is True


def test_stale_job_lock_taken_over(db_session):
    assert state_store.acquire_job(db_session, "benefits", now=NOW) is True
    assert state_store.acquire_job(db_session, "benefits", now=NOW + timedelta(hours=7)) is True


def test_failed_run_does_not_advance_last_success(db_session):
    state_store.acquire_job(db_session, "benefits", now=NOW)
    state_store.finish_job(db_session, "benefits", status=JobStatus.ERROR, error_message="x", succeeded=False, now=NOW)
    job = state_store.get_job_state(db_session, "benefits")
    assert job.status == JobStatus.ERROR
    assert job.last_success_at is None
    assert state_store.serialize_job_state(job)["error_message"] == "x"

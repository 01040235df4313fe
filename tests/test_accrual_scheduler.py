from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func, select

from accrual_engine.models.db import BenefitLedgerEntry, OutboxEvent, Purchase
from accrual_engine.models.db.enums import (
    JobStatus,
    LedgerEntryKind,
    OutboxEventType,
    ProcessingStatus,
    TriggerSource,
)
from accrual_engine.services import processing_state as state_store

from conftest import NOW, TODAY, days_after


def _benefit_entries(db_session, purchase_id):
    db_session.rollback()
    return db_session.execute(
        select(BenefitLedgerEntry)
        .where(BenefitLedgerEntry.purchase_id == purchase_id, BenefitLedgerEntry.kind == LedgerEntryKind.BENEFIT)
        .order_by(BenefitLedgerEntry.scheduled_date)
    ).scalars().all()


def test_first_day_pays_principal_times_rate(scheduler, user_factory, active_purchase_factory, balance_of, db_session):
    buyer = user_factory("Buyer")
    pid = active_purchase_factory(buyer, "1000")

    result = scheduler.run_for_date(TODAY, now=NOW)
    assert result["success"] is True
    assert result["already_completed"] is False
    stats = result["stats"]
    assert stats["processed"] == 1
    assert stats["total_amount"] == "125.00000000"

    entries = _benefit_entries(db_session, pid)
    assert len(entries) == 1
    assert entries[0].amount == Decimal("125.00000000")
    assert (entries[0].cycle, entries[0].day) == (1, 1)
    assert balance_of(buyer.id).available == Decimal("125.00000000")

    events = db_session.execute(
        select(OutboxEvent).where(OutboxEvent.event_type == OutboxEventType.BENEFIT_PROCESSED)
    ).scalars().all()
    assert len(events) == 1
    assert events[0].payload["amount"] == "125.00000000"
    assert events[0].transaction_id == entries[0].transaction_id


def test_rerunning_a_date_is_idempotent(scheduler, user_factory, active_purchase_factory, balance_of, db_session):
    buyer = user_factory()
    pid = active_purchase_factory(buyer)

    scheduler.run_for_date(TODAY, now=NOW)
    again = scheduler.run_for_date(TODAY, now=NOW)
    assert again["already_completed"] is True
    assert again["stats"]["processed"] == 1

    forced = scheduler.run_for_date(TODAY, force=True, now=NOW)
    assert forced["already_completed"] is False
    assert forced["stats"]["processed"] == 0
    assert forced["stats"]["skipped"] == 1
    assert forced["stats"]["benefits"]["outcomes"][0]["reason"] == "already processed"

    assert len(_benefit_entries(db_session, pid)) == 1
    assert balance_of(buyer.id).available == Decimal("125.00000000")


def test_day_eight_entry_and_counter_roll(scheduler, user_factory, active_purchase_factory, db_session):
    buyer = user_factory()
    pid = active_purchase_factory(buyer)

    for n in range(8):
        scheduler.run_for_date(days_after(n), now=NOW + timedelta(days=n))

    entries = _benefit_entries(db_session, pid)
    assert [(e.cycle, e.day) for e in entries][-1] == (1, 8)
    purchase = db_session.get(Purchase, pid)
    assert (purchase.current_cycle, purchase.current_day) == (2, 0)


def test_full_plan_then_completion(scheduler, user_factory, active_purchase_factory, balance_of, db_session):
    buyer = user_factory()
    pid = active_purchase_factory(buyer)

    for n in range(40):
        scheduler.run_for_date(days_after(n), now=NOW + timedelta(days=n))

    entries = _benefit_entries(db_session, pid)
    assert len(entries) == 40
    assert (entries[-1].cycle, entries[-1].day) == (5, 8)
    assert balance_of(buyer.id).available == Decimal("5000.00000000")

    day_41 = scheduler.run_for_date(days_after(40), now=NOW + timedelta(days=40))
    stats = day_41["stats"]
    assert stats["processed"] == 0
    assert stats["skipped"] == 1
    assert stats["benefits"]["outcomes"][0]["reason"] == "cycles completed"

    db_session.rollback()
    purchase = db_session.get(Purchase, pid)
    assert purchase.completed_at is not None
    assert purchase.current_cycle == 6
    assert len(_benefit_entries(db_session, pid)) == 40

    completed = db_session.execute(
        select(func.count(OutboxEvent.id)).where(OutboxEvent.event_type == OutboxEventType.PURCHASE_COMPLETED)
    ).scalar_one()
    assert completed == 1


def test_completed_purchase_skipped_without_new_transaction(scheduler, coordinator, user_factory, active_purchase_factory, db_session, monkeypatch):
    pid = active_purchase_factory(user_factory())

    first = scheduler.run_for_date(days_after(40), now=NOW + timedelta(days=40))
    assert first["stats"]["benefits"]["outcomes"][0]["reason"] == "cycles completed"
    db_session.rollback()
    assert db_session.get(Purchase, pid).completed_at is not None

    calls = []
    real_complete = coordinator.complete_purchase
    monkeypatch.setattr(coordinator, "complete_purchase", lambda *a, **kw: calls.append(a) or real_complete(*a, **kw))
    executed = []
    real_execute = coordinator.execute
    monkeypatch.setattr(coordinator, "execute", lambda op, ctx: executed.append(ctx["operation"]) or real_execute(op, ctx))

    later = scheduler.run_for_date(days_after(41), now=NOW + timedelta(days=41))
    assert later["stats"]["skipped"] == 1
    assert later["stats"]["benefits"]["outcomes"][0]["reason"] == "cycles completed"
    assert calls == []
    assert "complete_purchase" not in executed


def test_catch_up_capped_to_window(scheduler, user_factory, active_purchase_factory, db_session):
    buyer = user_factory()
    active_purchase_factory(buyer, now=NOW - timedelta(days=20))
    state_store.finish_job(db_session, "benefits", status=JobStatus.SUCCESS, succeeded=True, now=NOW - timedelta(days=10))

    plan = scheduler.owed_dates(NOW)
    assert len(plan["dates"]) == 7
    assert plan["dates"][0] == days_after(-6)
    assert plan["dates"][-1] == TODAY
    assert plan["skipped_dates"] == [days_after(-9), days_after(-8), days_after(-7)]

    summary = scheduler.run(now=NOW)
    assert summary["success"] is True
    assert summary["dates"] == [d.isoformat() for d in plan["dates"]]
    assert len(summary["skipped_dates"]) == 3
    assert summary["processed"] == 7

    db_session.rollback()
    assert state_store.get_date_state(db_session, days_after(-7).isoformat()) is None
    assert state_store.get_date_state(db_session, days_after(-6).isoformat()).status == ProcessingStatus.COMPLETED
    job = state_store.get_job_state(db_session, "benefits")
    assert job.status == JobStatus.SUCCESS
    assert job.processed == 7


def test_first_run_processes_today_only(scheduler, user_factory, active_purchase_factory):
    buyer = user_factory()
    active_purchase_factory(buyer, now=NOW - timedelta(days=5))

    summary = scheduler.run(now=NOW)
    assert summary["dates"] == [TODAY.isoformat()]
    assert summary["processed"] == 1


def test_run_refused_while_job_running(scheduler, db_session):
    assert state_store.acquire_job(db_session, "benefits", now=NOW) is True
    result = scheduler.run(now=NOW + timedelta(minutes=1))
    assert result == {"success": False, "reason": "Job already running"}


def test_second_run_same_day_reuses_completed_state(scheduler, user_factory, active_purchase_factory, db_session):
    buyer = user_factory()
    pid = active_purchase_factory(buyer)

    scheduler.run(now=NOW)
    second = scheduler.run(now=NOW + timedelta(hours=2))
    assert second["success"] is True
    assert second["results"][0]["already_completed"] is True
    assert len(_benefit_entries(db_session, pid)) == 1


def test_one_failing_purchase_does_not_stop_the_pass(scheduler, coordinator, user_factory, active_purchase_factory, db_session, monkeypatch):
    good = active_purchase_factory(user_factory())
    bad = active_purchase_factory(user_factory())

    original = coordinator.pay_benefit

    def flaky(purchase_id, *args, **kwargs):
        if purchase_id == bad:
            raise RuntimeError("ledger unavailable")
        return original(purchase_id, *args, **kwargs)

    monkeypatch.setattr(coordinator, "pay_benefit", flaky)

    result = scheduler.run_for_date(TODAY, now=NOW)
    stats = result["stats"]
    assert stats["processed"] == 1
    assert stats["errors"] == 1
    outcomes = {o["purchase_id"]: o for o in stats["benefits"]["outcomes"]}
    assert outcomes[bad]["outcome"] == "error"
    assert outcomes[good]["outcome"] == "processed"

    db_session.rollback()
    assert state_store.get_date_state(db_session, TODAY.isoformat()).status == ProcessingStatus.COMPLETED
    assert len(_benefit_entries(db_session, bad)) == 0


def test_batch_failure_marks_date_failed_and_stops_run(scheduler, user_factory, active_purchase_factory, db_session, monkeypatch):
    active_purchase_factory(user_factory())

    def broken(target, tally, now):
        raise RuntimeError("database went away")

    monkeypatch.setattr(scheduler, "_benefit_pass", broken)
    summary = scheduler.run(now=NOW)
    assert summary["success"] is False
    assert "database went away" in summary["error"]

    db_session.rollback()
    state = state_store.get_date_state(db_session, TODAY.isoformat())
    assert state.status == ProcessingStatus.FAILED
    job = state_store.get_job_state(db_session, "benefits")
    assert job.status == JobStatus.ERROR
    assert job.last_success_at is None


def test_paused_purchase_is_not_accrued(scheduler, coordinator, user_factory, active_purchase_factory, db_session):
    pid = active_purchase_factory(user_factory())
    coordinator.pause_purchase(pid, now=NOW)

    result = scheduler.run_for_date(TODAY, now=NOW)
    assert result["stats"]["processed"] == 0
    assert len(_benefit_entries(db_session, pid)) == 0

    coordinator.resume_purchase(pid, now=NOW)
    later = scheduler.run_for_date(days_after(1), now=NOW + timedelta(days=1))
    assert later["stats"]["processed"] == 1
    entries = _benefit_entries(db_session, pid)
    assert (entries[0].cycle, entries[0].day) == (1, 2)


def test_processing_stats_reports_job_and_dates(scheduler, user_factory, active_purchase_factory):
    active_purchase_factory(user_factory())
    scheduler.run(now=NOW, trigger=TriggerSource.MANUAL)

    stats = scheduler.processing_stats(now=NOW)
    assert stats["timezone"] == "America/Bogota"
    assert stats["job"]["status"] == "SUCCESS"
    assert stats["recent_dates"][0]["process_date"] == TODAY.isoformat()

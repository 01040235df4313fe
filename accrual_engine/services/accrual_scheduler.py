"""Daily accrual scheduler.

``run()`` is the job entry point (daily trigger and admin "run now"): under
the job-level RUNNING flag it works out which operational dates are owed
since the last fully successful run, bounded by the catch-up window, and
processes them oldest to newest.

``run_for_date()`` processes one date:

1. COMPLETED date -> stored stats are returned untouched (unless ``force``).
2. Date marked STARTED with its trigger tag.
3. Benefit pass over ACTIVE purchases activated on/before the date. Position
   is derived from the calendar (``cycle = days // dpc + 1``,
   ``day = days % dpc + 1``), never from the stored counters, so a rerun or
   a catch-up date computes the same idempotency key.
4. Commission pass over schedule days releasing on the date, REFERRER first
   then PARENT.
5. Date marked COMPLETED with stats, or FAILED with partial stats when the
   pass itself blows up (that error is re-raised to ``run()``).

Per-purchase failures never abort the pass: validation errors count as
*skipped* with a reason, anything else as an *error*.
"""
from __future__ import annotations

import time
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from accrual_engine import config, database
from accrual_engine.exceptions import AccrualValidationError, DateInProgress
from accrual_engine.models.db import (
    BenefitLedgerEntry,
    CommissionSchedule,
    CommissionScheduleDay,
    benefit_idempotency_key,
)
from accrual_engine.models.db.enums import (
    CommissionType,
    JobStatus,
    ProcessingStatus,
    ScheduleDayStatus,
    ScheduleStatus,
    TriggerSource,
)
from accrual_engine.services import processing_state as state_store
from accrual_engine.services import purchase_lifecycle as lifecycle
from accrual_engine.services.transaction_coordinator import TransactionCoordinator
from accrual_engine.utils import get_logger, log_business_event, log_performance
from accrual_engine.utils import decimal_math as dm
from accrual_engine.utils.time import utc_now, operational_date, operational_today

logger = get_logger(__name__)

COMMISSION_ORDER = (CommissionType.REFERRER, CommissionType.PARENT)


def _empty_tally() -> Dict[str, Any]:
    return {"processed": 0, "skipped": 0, "errors": 0, "total_amount": dm.to_str(0), "outcomes": []}


class AccrualScheduler:
    def __init__(
        self,
        coordinator: TransactionCoordinator | None = None,
        session_factory: Optional[sessionmaker] = None,
        *,
        job_name: str | None = None,
    ):
        self._session_factory = session_factory
        self.coordinator = coordinator or TransactionCoordinator(session_factory)
        self.job_name = job_name or str(config.ACCRUAL_SETTINGS["job_name"])

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory or database.SessionLocal

    # ------------------------------------------------------------------ #
    # Catch-up planning
    # ------------------------------------------------------------------ #
    def owed_dates(self, now: datetime | None = None) -> Dict[str, Any]:
        """Dates owed since the last successful run, split into run/skipped."""
        now = now or utc_now()
        today = operational_today(now)
        with self.session_factory() as session:
            job = state_store.get_job_state(session, self.job_name)
            last_success = job.last_success_at if job is not None else None

        if last_success is None:
            # First run: never backfill history
            return {"today": today, "last_success_date": None, "dates": [today], "skipped_dates": []}

        last_date = operational_date(last_success)
        owed: List[date] = []
        cursor = last_date + timedelta(days=1)
        while cursor <= today:
            owed.append(cursor)
            cursor += timedelta(days=1)
        if not owed:
            owed = [today]

        window = int(config.ACCRUAL_SETTINGS["max_catchup_days"])
        skipped = owed[:-window] if len(owed) > window else []
        dates = owed[-window:]
        return {"today": today, "last_success_date": last_date, "dates": dates, "skipped_dates": skipped}

    # ------------------------------------------------------------------ #
    # Job entry point
    # ------------------------------------------------------------------ #
    def run(self, *, now: datetime | None = None, trigger: TriggerSource = TriggerSource.AUTOMATIC) -> Dict[str, Any]:
        now = now or utc_now()
        started = time.perf_counter()
        with self.session_factory() as session:
            if not state_store.acquire_job(session, self.job_name, now=now):
                return {"success": False, "reason": "Job already running"}

        results: List[Dict[str, Any]] = []
        processed = errors = 0
        total_amount = dm.ZERO
        all_completed = True
        failure: str | None = None
        plan: Dict[str, Any] = {"dates": [], "skipped_dates": []}
        try:
            plan = self.owed_dates(now)
            for skipped_date in plan["skipped_dates"]:
                logger.warning(
                    "Owed date outside catch-up window skipped",
                    date=skipped_date.isoformat(),
                    max_catchup_days=config.ACCRUAL_SETTINGS["max_catchup_days"],
                )
            if plan["skipped_dates"]:
                log_business_event("accrual_dates_skipped", {"dates": [d.isoformat() for d in plan["skipped_dates"]]})

            logger.info(
                "Accrual run started",
                job=self.job_name,
                trigger=trigger.value,
                dates=[d.isoformat() for d in plan["dates"]],
            )
            for target in plan["dates"]:
                try:
                    outcome = self.run_for_date(target, trigger=trigger, now=now)
                except DateInProgress as e:
                    all_completed = False
                    results.append({"date": target.isoformat(), "success": False, "reason": str(e)})
                    logger.warning("Date skipped: already in progress", date=target.isoformat())
                    continue
                except Exception as e:
                    # Batch-level failure: stop so later dates don't run ahead of this one
                    all_completed = False
                    failure = f"{target.isoformat()}: {e}"
                    results.append({"date": target.isoformat(), "success": False, "error": str(e)})
                    break
                results.append(outcome)
                stats = outcome.get("stats") or {}
                processed += int(stats.get("processed", 0))
                errors += int(stats.get("errors", 0))
                total_amount = dm.add(total_amount, stats.get("total_amount", 0))
        except Exception as e:
            failure = str(e)
            all_completed = False
            logger.error("Accrual run aborted", job=self.job_name, error=str(e), exc_info=True)

        duration_ms = int((time.perf_counter() - started) * 1000)
        with self.session_factory() as session:
            state_store.finish_job(
                session,
                self.job_name,
                status=JobStatus.SUCCESS if failure is None else JobStatus.ERROR,
                processed=processed,
                errors=errors,
                total_amount=total_amount,
                duration_ms=duration_ms,
                error_message=failure,
                succeeded=all_completed,
                now=now,
            )
            if all_completed:
                state_store.cleanup_old_dates(session, now=now)

        summary = {
            "success": failure is None,
            "job": self.job_name,
            "trigger": trigger.value,
            "dates": [r["date"] for r in results],
            "skipped_dates": [d.isoformat() for d in plan["skipped_dates"]],
            "processed": processed,
            "errors": errors,
            "total_amount": dm.to_str(total_amount),
            "duration_ms": duration_ms,
            "results": results,
        }
        if failure is not None:
            summary["error"] = failure
        log_business_event(
            "accrual_run_finished",
            {k: summary[k] for k in ("success", "job", "trigger", "processed", "errors", "total_amount")},
        )
        log_performance("accrual_run", duration_ms, {"dates": len(results), "processed": processed})
        return summary

    # ------------------------------------------------------------------ #
    # Single date
    # ------------------------------------------------------------------ #
    def run_for_date(
        self,
        target: date,
        *,
        force: bool = False,
        trigger: TriggerSource = TriggerSource.MANUAL,
        now: datetime | None = None,
    ) -> Dict[str, Any]:
        now = now or utc_now()
        date_str = target.isoformat()
        log = logger.bind(date=date_str, trigger=trigger.value)
        with self.session_factory() as session:
            existing = state_store.get_date_state(session, date_str)
            if existing is not None and existing.status == ProcessingStatus.COMPLETED:
                if not force:
                    log.info("Date already completed; returning stored stats")
                    return {"date": date_str, "success": True, "already_completed": True, "stats": existing.stats}
                log.warning("Forcing reprocessing of completed date")
                state_store.reset_date(session, date_str)
            state_store.mark_date_started(session, date_str, trigger, now=now)

        benefits = _empty_tally()
        commissions = _empty_tally()
        try:
            self._benefit_pass(target, benefits, now)
            self._commission_pass(target, commissions, now)
        except Exception as e:
            partial = self._combine(date_str, benefits, commissions)
            with self.session_factory() as session:
                state_store.mark_date_failed(session, date_str, str(e), partial, now=now)
            log.error("Accrual pass failed", error=str(e), exc_info=True)
            raise

        stats = self._combine(date_str, benefits, commissions)
        with self.session_factory() as session:
            state_store.mark_date_completed(session, date_str, stats, now=now)
        log.info(
            "Accrual date completed",
            processed=stats["processed"],
            skipped=stats["skipped"],
            errors=stats["errors"],
            total_amount=stats["total_amount"],
        )
        return {"date": date_str, "success": True, "already_completed": False, "stats": stats}

    @staticmethod
    def _combine(date_str: str, benefits: Dict[str, Any], commissions: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "date": date_str,
            "processed": benefits["processed"] + commissions["processed"],
            "skipped": benefits["skipped"] + commissions["skipped"],
            "errors": benefits["errors"] + commissions["errors"],
            "total_amount": dm.to_str(dm.add(benefits["total_amount"], commissions["total_amount"])),
            "benefits": benefits,
            "commissions": commissions,
        }

    def _already_paid(self, key: str) -> bool:
        with self.session_factory() as session:
            return session.execute(
                select(BenefitLedgerEntry.id).where(BenefitLedgerEntry.idempotency_key == key)
            ).scalar_one_or_none() is not None

    def _benefit_pass(self, target: date, tally: Dict[str, Any], now: datetime) -> None:
        with self.session_factory() as session:
            purchases = session.execute(lifecycle.eligible_purchases_query(target)).scalars().all()
            candidates = [
                (p.id, p.total_cycles, p.completed_at is not None, lifecycle.calendar_position(p, target))
                for p in purchases
            ]

        for purchase_id, total_cycles, completed, (days_since, cycle, day) in candidates:
            try:
                if cycle > total_cycles:
                    # Finished purchases stay ACTIVE; the completion stamp is written once
                    if not completed:
                        self.coordinator.complete_purchase(purchase_id, now=now)
                    self._skip(tally, purchase_id, "cycles completed", cycle=cycle, day=day)
                    continue
                key = benefit_idempotency_key(purchase_id, cycle, day, target)
                if self._already_paid(key):
                    self._skip(tally, purchase_id, "already processed", cycle=cycle, day=day)
                    continue
                result = self.coordinator.pay_benefit(purchase_id, target, cycle, day, now=now)
                tally["processed"] += 1
                tally["total_amount"] = dm.to_str(dm.add(tally["total_amount"], result["amount"]))
                tally["outcomes"].append({
                    "purchase_id": purchase_id,
                    "outcome": "processed",
                    "cycle": cycle,
                    "day": day,
                    "amount": result["amount"],
                })
            except AccrualValidationError as e:
                self._skip(tally, purchase_id, str(e), cycle=cycle, day=day)
            except Exception as e:
                tally["errors"] += 1
                tally["outcomes"].append({"purchase_id": purchase_id, "outcome": "error", "error": str(e)})
                logger.error(
                    "Benefit processing failed",
                    purchase_id=purchase_id,
                    date=target.isoformat(),
                    error=str(e),
                    exc_info=True,
                )

    def _commission_pass(self, target: date, tally: Dict[str, Any], now: datetime) -> None:
        for ctype in COMMISSION_ORDER:
            with self.session_factory() as session:
                due = session.execute(
                    select(CommissionScheduleDay.id, CommissionSchedule.purchase_id)
                    .join(CommissionSchedule, CommissionScheduleDay.schedule_id == CommissionSchedule.id)
                    .where(CommissionSchedule.commission_type == ctype)
                    .where(CommissionSchedule.status == ScheduleStatus.ACTIVE)
                    .where(CommissionScheduleDay.status == ScheduleDayStatus.PENDING)
                    .where(CommissionScheduleDay.release_date == target)
                    .order_by(CommissionScheduleDay.id)
                ).all()

            for day_id, purchase_id in due:
                try:
                    result = self.coordinator.pay_commission(day_id, target, now=now)
                    tally["processed"] += 1
                    tally["total_amount"] = dm.to_str(dm.add(tally["total_amount"], result["amount"]))
                    tally["outcomes"].append({
                        "schedule_day_id": day_id,
                        "purchase_id": purchase_id,
                        "commission_type": ctype.value,
                        "outcome": "processed",
                        "amount": result["amount"],
                    })
                except AccrualValidationError as e:
                    tally["skipped"] += 1
                    tally["outcomes"].append({
                        "schedule_day_id": day_id,
                        "purchase_id": purchase_id,
                        "commission_type": ctype.value,
                        "outcome": "skipped",
                        "reason": str(e),
                    })
                    logger.info("Commission skipped", schedule_day_id=day_id, reason=str(e))
                except Exception as e:
                    tally["errors"] += 1
                    tally["outcomes"].append({
                        "schedule_day_id": day_id,
                        "purchase_id": purchase_id,
                        "commission_type": ctype.value,
                        "outcome": "error",
                        "error": str(e),
                    })
                    logger.error("Commission processing failed", schedule_day_id=day_id, error=str(e), exc_info=True)

    @staticmethod
    def _skip(tally: Dict[str, Any], purchase_id: int, reason: str, **extra: Any) -> None:
        tally["skipped"] += 1
        tally["outcomes"].append({"purchase_id": purchase_id, "outcome": "skipped", "reason": reason, **extra})

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #
    def processing_stats(self, *, now: datetime | None = None, limit: int = 14) -> Dict[str, Any]:
        plan = self.owed_dates(now)
        with self.session_factory() as session:
            job = state_store.serialize_job_state(state_store.get_job_state(session, self.job_name))
            recent = [state_store.serialize_date_state(s) for s in state_store.list_date_states(session, limit=limit)]
        return {
            "job": job,
            "timezone": config.OPERATIONAL_TIMEZONE,
            "today": plan["today"].isoformat(),
            "owed_dates": [d.isoformat() for d in plan["dates"]],
            "skipped_dates": [d.isoformat() for d in plan["skipped_dates"]],
            "recent_dates": recent,
        }


__all__ = ["AccrualScheduler", "COMMISSION_ORDER"]

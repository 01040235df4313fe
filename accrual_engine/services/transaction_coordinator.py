"""Transaction coordinator: business mutation + outbox event in one unit of work.

``TransactionCoordinator.execute(operation, context)`` opens a session, begins
a transaction, hands the operation a ``UnitOfWork`` and commits. Any exception
rolls back every write made inside (ledger entry, balance increment, counters,
staged outbox events) and propagates. Each invocation gets a transaction id
stamped on the ledger entries and events it produced.

Balances are only changed through atomic ``UPDATE ... SET col = col + :delta``
statements; nothing reads a balance, adds in Python and writes it back.

The public operations return plain dicts, built before commit, so callers
never touch expired ORM state.
"""
from __future__ import annotations

import secrets
import threading
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from accrual_engine import config, database
from accrual_engine.exceptions import (
    BenefitAlreadyProcessed,
    CommissionAlreadyReleased,
    CyclesCompleted,
    InsufficientBalance,
    InvalidStateTransition,
    NotFound,
    PendingWithdrawalExists,
    PurchaseNotActive,
)
from accrual_engine.models.db import (
    BenefitLedgerEntry,
    CommissionSchedule,
    CommissionScheduleDay,
    License,
    OutboxEvent,
    Purchase,
    User,
    UserBalance,
    Withdrawal,
    benefit_idempotency_key,
    commission_idempotency_key,
)
from accrual_engine.models.db.enums import (
    AggregateType,
    CommissionType,
    LedgerEntryKind,
    LedgerEntryStatus,
    LicenseStatus,
    OutboxEventType,
    PurchaseStatus,
    ScheduleDayStatus,
    ScheduleStatus,
    WithdrawalStatus,
)
from accrual_engine.services import outbox_store
from accrual_engine.services import purchase_lifecycle as lifecycle
from accrual_engine.utils import get_logger, log_business_event
from accrual_engine.utils import decimal_math as dm
from accrual_engine.utils.time import utc_now, operational_date

logger = get_logger(__name__)

T = TypeVar("T")


def generate_transaction_id() -> str:
    return f"txn_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class UnitOfWork:
    """Transactional handle passed to coordinator operations."""

    def __init__(self, session: Session, transaction_id: str, context: Dict[str, Any], now: datetime):
        self.session = session
        self.transaction_id = transaction_id
        self.context = context
        self.now = now
        self.staged_events: List[OutboxEvent] = []

    def stage_event(
        self,
        event_type: OutboxEventType,
        aggregate_id: Any,
        aggregate_type: AggregateType,
        payload: Dict[str, Any],
        *,
        user_id: int | None = None,
        admin_id: int | None = None,
    ) -> OutboxEvent:
        event = outbox_store.create_event(
            self.session,
            event_type,
            aggregate_id,
            aggregate_type,
            payload,
            {
                "user_id": user_id,
                "admin_id": admin_id if admin_id is not None else self.context.get("admin_id"),
                "transaction_id": self.transaction_id,
                "now": self.now,
            },
        )
        self.staged_events.append(event)
        return event


def _default_license_factory(session: Session, purchase: Purchase, now: datetime) -> License:
    license_ = License(
        purchase_id=purchase.id,
        user_id=purchase.user_id,
        principal_amount=purchase.principal_amount,
        status=LicenseStatus.ACTIVE,
        days_per_cycle=purchase.days_per_cycle,
        total_cycles=purchase.total_cycles,
        activated_at=purchase.activated_at or now,
    )
    session.add(license_)
    session.flush()
    return license_


class TransactionCoordinator:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        *,
        license_factory: Callable[[Session, Purchase, datetime], License] = _default_license_factory,
    ):
        self._session_factory = session_factory
        self._license_factory = license_factory
        self._transactions: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    @property
    def session_factory(self) -> sessionmaker:
        # Resolved lazily so a rebound database.SessionLocal is honoured
        return self._session_factory or database.SessionLocal

    # ------------------------------------------------------------------ #
    # Core primitive
    # ------------------------------------------------------------------ #
    def execute(self, operation: Callable[[UnitOfWork], T], context: Dict[str, Any] | None = None) -> T:
        context = dict(context or {})
        now: datetime = context.pop("now", None) or utc_now()
        name = context.get("operation") or getattr(operation, "__name__", "operation")
        transaction_id = generate_transaction_id()
        self._record_start(transaction_id, name, context, now)

        session: Session = self.session_factory()
        try:
            with session.begin():
                uow = UnitOfWork(session, transaction_id, context, now)
                result = operation(uow)
        except Exception as e:
            self._record_end(transaction_id, "ABORTED", error=str(e))
            logger.warning(
                "Transaction rolled back",
                transaction_id=transaction_id,
                operation=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            session.close()

        self._record_end(transaction_id, "COMMITTED")
        logger.debug(
            "Transaction committed",
            transaction_id=transaction_id,
            operation=name,
            events_staged=len(uow.staged_events),
        )
        return result

    # ------------------------------------------------------------------ #
    # Active transaction side table
    # ------------------------------------------------------------------ #
    def _record_start(self, transaction_id: str, name: str, context: Dict[str, Any], now: datetime) -> None:
        with self._lock:
            self._transactions[transaction_id] = {
                "transaction_id": transaction_id,
                "operation": name,
                "context": {k: v for k, v in context.items() if isinstance(v, (str, int, float, bool)) or v is None},
                "status": "ACTIVE",
                "started_at": utc_now(),
                "ended_at": None,
                "error": None,
            }

    def _record_end(self, transaction_id: str, status: str, *, error: str | None = None) -> None:
        with self._lock:
            record = self._transactions.get(transaction_id)
            if record is not None:
                record["status"] = status
                record["ended_at"] = utc_now()
                record["error"] = error
        self.prune_transactions()

    def prune_transactions(self, *, now: datetime | None = None) -> int:
        now = now or utc_now()
        cutoff = now - timedelta(seconds=int(config.TRANSACTION_SETTINGS["retention_seconds"]))
        with self._lock:
            stale = [
                tid for tid, rec in self._transactions.items()
                if rec["ended_at"] is not None and rec["ended_at"] < cutoff
            ]
            for tid in stale:
                del self._transactions[tid]
        return len(stale)

    def get_transaction_status(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._transactions.get(transaction_id)
            return dict(record) if record else None

    def active_transactions(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._transactions.values() if r["status"] == "ACTIVE"]

    # ------------------------------------------------------------------ #
    # Shared helpers (run inside a unit of work)
    # ------------------------------------------------------------------ #
    @staticmethod
    def _get_purchase(session: Session, purchase_id: int) -> Purchase:
        purchase = session.execute(
            select(Purchase).where(Purchase.id == purchase_id).with_for_update()
        ).scalar_one_or_none()
        if purchase is None:
            raise NotFound("purchase", purchase_id)
        return purchase

    @staticmethod
    def _ensure_balance(session: Session, user_id: int, currency: str) -> None:
        exists = session.execute(
            select(UserBalance.id).where(UserBalance.user_id == user_id, UserBalance.currency == currency)
        ).scalar_one_or_none()
        if exists is not None:
            return
        try:
            with session.begin_nested():
                session.add(UserBalance(
                    user_id=user_id,
                    currency=currency,
                    available=dm.ZERO,
                    total=dm.ZERO,
                    reserved=dm.ZERO,
                ))
        except IntegrityError:
            logger.debug("Balance row created concurrently", user_id=user_id, currency=currency)

    def _credit(self, session: Session, user_id: int, currency: str, amount: Decimal, now: datetime) -> None:
        self._ensure_balance(session, user_id, currency)
        session.execute(
            update(UserBalance)
            .where(UserBalance.user_id == user_id, UserBalance.currency == currency)
            .values(
                available=UserBalance.available + amount,
                total=UserBalance.total + amount,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _ledger_exists(session: Session, key: str) -> bool:
        return session.execute(
            select(BenefitLedgerEntry.id).where(BenefitLedgerEntry.idempotency_key == key)
        ).scalar_one_or_none() is not None

    @staticmethod
    def _entry_code() -> str:
        return f"LED_{secrets.token_hex(8).upper()}"

    def _seed_commission_schedules(self, session: Session, purchase: Purchase, start: date) -> List[Dict[str, Any]]:
        buyer = session.get(User, purchase.user_id)
        referrer = buyer.referred_by if buyer is not None else None
        parent = referrer.referred_by if referrer is not None else None
        seeded: List[Dict[str, Any]] = []
        for ctype, beneficiary in ((CommissionType.REFERRER, referrer), (CommissionType.PARENT, parent)):
            if beneficiary is None or beneficiary.id == purchase.user_id:
                continue
            rule = config.COMMISSION_SETTINGS[ctype.value]
            rate = dm.to_decimal(rule["rate"])
            day_index = int(rule["release_day"])
            schedule = CommissionSchedule(
                purchase_id=purchase.id,
                beneficiary_id=beneficiary.id,
                commission_type=ctype,
                rate=rate,
                amount=dm.commission_amount(purchase.principal_amount, rate),
                start_date=start,
                status=ScheduleStatus.ACTIVE,
            )
            session.add(schedule)
            session.flush()
            release_date = start + timedelta(days=day_index - 1)
            session.add(CommissionScheduleDay(
                schedule_id=schedule.id,
                day_index=day_index,
                release_date=release_date,
                status=ScheduleDayStatus.PENDING,
            ))
            seeded.append({
                "schedule_id": schedule.id,
                "commission_type": ctype.value,
                "beneficiary_id": beneficiary.id,
                "amount": dm.to_str(schedule.amount),
                "day_index": day_index,
                "release_date": release_date.isoformat(),
            })
        session.flush()
        return seeded

    def _try_create_license(self, session: Session, purchase: Purchase, now: datetime) -> Optional[int]:
        """Secondary side effect inside a SAVEPOINT; failure flags the purchase instead of aborting."""
        try:
            with session.begin_nested():
                license_ = self._license_factory(session, purchase, now)
            purchase.license_pending = False
            return license_.id
        except Exception as e:
            purchase.license_pending = True
            logger.error(
                "License creation failed; flagged for retry",
                purchase_id=purchase.id,
                error=str(e),
                exc_info=True,
            )
            return None

    # ------------------------------------------------------------------ #
    # Purchase operations
    # ------------------------------------------------------------------ #
    def confirm_purchase(
        self,
        purchase_id: int,
        admin_id: int | None = None,
        *,
        tx_hash: str | None = None,
        now: datetime | None = None,
    ) -> Dict[str, Any]:
        """CONFIRMING -> APPROVED -> ACTIVE, seed commissions, create license, stage events."""
        def _confirm(uow: UnitOfWork) -> Dict[str, Any]:
            s = uow.session
            purchase = self._get_purchase(s, purchase_id)
            if purchase.status == PurchaseStatus.PENDING_PAYMENT and tx_hash:
                lifecycle.submit_payment(purchase, tx_hash, now=uow.now)
            lifecycle.approve(purchase, admin_id, now=uow.now)
            lifecycle.activate(purchase, now=uow.now)
            s.flush()

            schedules = self._seed_commission_schedules(s, purchase, operational_date(uow.now))
            license_id = self._try_create_license(s, purchase, uow.now)

            uow.stage_event(
                OutboxEventType.PURCHASE_CONFIRMED,
                purchase.id,
                AggregateType.PURCHASE,
                {
                    "purchase_id": purchase.id,
                    "purchase_code": purchase.purchase_code,
                    "user_id": purchase.user_id,
                    "principal_amount": dm.to_str(purchase.principal_amount),
                    "activated_at": uow.now.isoformat(),
                    "beneficiaries": [sch["beneficiary_id"] for sch in schedules],
                },
                user_id=purchase.user_id,
                admin_id=admin_id,
            )
            if license_id is not None:
                uow.stage_event(
                    OutboxEventType.LICENSE_CREATED,
                    license_id,
                    AggregateType.LICENSE,
                    {"license_id": license_id, "purchase_id": purchase.id, "user_id": purchase.user_id},
                    user_id=purchase.user_id,
                    admin_id=admin_id,
                )
            return {
                "purchase_id": purchase.id,
                "status": purchase.status.value,
                "activated_at": uow.now.isoformat(),
                "license_id": license_id,
                "license_pending": purchase.license_pending,
                "commission_schedules": schedules,
                "transaction_id": uow.transaction_id,
            }

        result = self.execute(_confirm, {"operation": "confirm_purchase", "purchase_id": purchase_id, "admin_id": admin_id, "now": now})
        log_business_event(
            "purchase_confirmed",
            {"purchase_id": purchase_id, "license_pending": result["license_pending"]},
            transaction_id=result["transaction_id"],
        )
        return result

    def reject_purchase(self, purchase_id: int, admin_id: int | None, reason: str, *, now: datetime | None = None) -> Dict[str, Any]:
        def _reject(uow: UnitOfWork) -> Dict[str, Any]:
            purchase = self._get_purchase(uow.session, purchase_id)
            lifecycle.reject(purchase, reason, now=uow.now)
            uow.stage_event(
                OutboxEventType.PURCHASE_REJECTED,
                purchase.id,
                AggregateType.PURCHASE,
                {"purchase_id": purchase.id, "user_id": purchase.user_id, "reason": reason},
                user_id=purchase.user_id,
                admin_id=admin_id,
            )
            return {"purchase_id": purchase.id, "status": purchase.status.value, "reason": reason}

        return self.execute(_reject, {"operation": "reject_purchase", "purchase_id": purchase_id, "admin_id": admin_id, "now": now})

    def _set_hold(self, purchase_id: int, admin_id: int | None, *, paused: bool, now: datetime | None) -> Dict[str, Any]:
        def _hold(uow: UnitOfWork) -> Dict[str, Any]:
            s = uow.session
            purchase = self._get_purchase(s, purchase_id)
            if paused:
                lifecycle.pause(purchase)
            else:
                lifecycle.resume(purchase)
            license_ = s.execute(select(License).where(License.purchase_id == purchase.id)).scalar_one_or_none()
            if license_ is not None and license_.status != LicenseStatus.COMPLETED:
                license_.status = LicenseStatus.PAUSED if paused else LicenseStatus.ACTIVE
            uow.stage_event(
                OutboxEventType.LICENSE_PAUSED if paused else OutboxEventType.LICENSE_RESUMED,
                purchase.id,
                AggregateType.PURCHASE,
                {"purchase_id": purchase.id, "user_id": purchase.user_id, "status": purchase.status.value},
                user_id=purchase.user_id,
                admin_id=admin_id,
            )
            return {"purchase_id": purchase.id, "status": purchase.status.value}

        op = "pause_purchase" if paused else "resume_purchase"
        return self.execute(_hold, {"operation": op, "purchase_id": purchase_id, "admin_id": admin_id, "now": now})

    def pause_purchase(self, purchase_id: int, admin_id: int | None = None, *, now: datetime | None = None) -> Dict[str, Any]:
        return self._set_hold(purchase_id, admin_id, paused=True, now=now)

    def resume_purchase(self, purchase_id: int, admin_id: int | None = None, *, now: datetime | None = None) -> Dict[str, Any]:
        return self._set_hold(purchase_id, admin_id, paused=False, now=now)

    def expire_overdue_purchases(self, *, now: datetime | None = None) -> Dict[str, Any]:
        def _expire(uow: UnitOfWork) -> Dict[str, Any]:
            overdue = uow.session.execute(
                select(Purchase)
                .where(Purchase.status == PurchaseStatus.PENDING_PAYMENT)
                .where(Purchase.payment_deadline.is_not(None))
                .where(Purchase.payment_deadline < uow.now)
            ).scalars().all()
            expired = []
            for purchase in overdue:
                lifecycle.expire(purchase, now=uow.now)
                expired.append(purchase.id)
            return {"expired": len(expired), "purchase_ids": expired}

        result = self.execute(_expire, {"operation": "expire_overdue_purchases", "now": now})
        if result["expired"]:
            logger.info("Overdue purchases expired", count=result["expired"])
        return result

    def retry_pending_licenses(self, *, now: datetime | None = None) -> Dict[str, Any]:
        """Out-of-band retry for purchases whose license creation failed at confirmation."""
        with self.session_factory() as session:
            pending_ids = list(session.execute(
                select(Purchase.id).where(Purchase.license_pending.is_(True))
            ).scalars())

        created: List[int] = []
        failed: List[int] = []
        for pid in pending_ids:
            def _retry(uow: UnitOfWork, pid: int = pid) -> Optional[int]:
                s = uow.session
                purchase = self._get_purchase(s, pid)
                existing = s.execute(select(License).where(License.purchase_id == pid)).scalar_one_or_none()
                if existing is not None:
                    purchase.license_pending = False
                    return existing.id
                license_id = self._try_create_license(s, purchase, uow.now)
                if license_id is not None:
                    uow.stage_event(
                        OutboxEventType.LICENSE_CREATED,
                        license_id,
                        AggregateType.LICENSE,
                        {"license_id": license_id, "purchase_id": pid, "user_id": purchase.user_id},
                        user_id=purchase.user_id,
                    )
                return license_id

            license_id = self.execute(_retry, {"operation": "retry_pending_license", "purchase_id": pid, "now": now})
            (created if license_id is not None else failed).append(pid)

        if pending_ids:
            logger.info("Pending license retry finished", retried=len(pending_ids), created=len(created), failed=len(failed))
        return {"retried": len(pending_ids), "created": created, "failed": failed}

    # ------------------------------------------------------------------ #
    # Accrual operations
    # ------------------------------------------------------------------ #
    def pay_benefit(
        self,
        purchase_id: int,
        target_date: date,
        cycle: int,
        day: int,
        *,
        now: datetime | None = None,
    ) -> Dict[str, Any]:
        """Ledger entry + balance credit + counter advance + BENEFIT_PROCESSED, atomically."""
        def _pay(uow: UnitOfWork) -> Dict[str, Any]:
            s = uow.session
            purchase = self._get_purchase(s, purchase_id)
            if purchase.status != PurchaseStatus.ACTIVE:
                raise PurchaseNotActive(purchase.id, purchase.status.value)
            if cycle > purchase.total_cycles:
                raise CyclesCompleted(purchase.id)
            key = benefit_idempotency_key(purchase.id, cycle, day, target_date)
            if self._ledger_exists(s, key):
                raise BenefitAlreadyProcessed(key)

            progress = lifecycle.process_daily_benefit(purchase, now=uow.now, position=(cycle, day))
            amount: Decimal = progress["amount"]
            entry = BenefitLedgerEntry(
                entry_code=self._entry_code(),
                purchase_id=purchase.id,
                user_id=purchase.user_id,
                kind=LedgerEntryKind.BENEFIT,
                cycle=cycle,
                day=day,
                scheduled_date=target_date,
                amount=amount,
                rate=purchase.daily_rate,
                principal_snapshot=purchase.principal_amount,
                currency=purchase.currency,
                status=LedgerEntryStatus.PROCESSED,
                processed_at=uow.now,
                transaction_id=uow.transaction_id,
                idempotency_key=key,
            )
            s.add(entry)
            s.flush()
            self._credit(s, purchase.user_id, purchase.currency, amount, uow.now)

            uow.stage_event(
                OutboxEventType.BENEFIT_PROCESSED,
                purchase.id,
                AggregateType.PURCHASE,
                {
                    "purchase_id": purchase.id,
                    "user_id": purchase.user_id,
                    "ledger_entry_id": entry.id,
                    "amount": dm.to_str(amount),
                    "cycle": cycle,
                    "day": day,
                    "date": target_date.isoformat(),
                },
                user_id=purchase.user_id,
            )
            if progress["completed"]:
                self._complete_license(s, purchase.id)
                uow.stage_event(
                    OutboxEventType.PURCHASE_COMPLETED,
                    purchase.id,
                    AggregateType.PURCHASE,
                    {
                        "purchase_id": purchase.id,
                        "user_id": purchase.user_id,
                        "total_benefits_paid": dm.to_str(purchase.total_benefits_paid),
                    },
                    user_id=purchase.user_id,
                )
            return {
                "purchase_id": purchase.id,
                "user_id": purchase.user_id,
                "ledger_entry_id": entry.id,
                "idempotency_key": key,
                "amount": dm.to_str(amount),
                "cycle": cycle,
                "day": day,
                "current_cycle": purchase.current_cycle,
                "current_day": purchase.current_day,
                "completed": progress["completed"],
                "transaction_id": uow.transaction_id,
            }

        return self.execute(_pay, {"operation": "pay_benefit", "purchase_id": purchase_id, "date": target_date.isoformat(), "now": now})

    @staticmethod
    def _complete_license(session: Session, purchase_id: int) -> None:
        license_ = session.execute(select(License).where(License.purchase_id == purchase_id)).scalar_one_or_none()
        if license_ is not None:
            license_.status = LicenseStatus.COMPLETED

    def complete_purchase(self, purchase_id: int, *, now: datetime | None = None) -> Dict[str, Any]:
        """Stamp completion for a purchase whose calendar ran past its last cycle."""
        def _complete(uow: UnitOfWork) -> Dict[str, Any]:
            s = uow.session
            purchase = self._get_purchase(s, purchase_id)
            stamped = lifecycle.mark_cycles_completed(purchase, now=uow.now)
            if stamped:
                self._complete_license(s, purchase.id)
                uow.stage_event(
                    OutboxEventType.PURCHASE_COMPLETED,
                    purchase.id,
                    AggregateType.PURCHASE,
                    {
                        "purchase_id": purchase.id,
                        "user_id": purchase.user_id,
                        "total_benefits_paid": dm.to_str(purchase.total_benefits_paid),
                    },
                    user_id=purchase.user_id,
                )
            return {"purchase_id": purchase.id, "completed": stamped}

        return self.execute(_complete, {"operation": "complete_purchase", "purchase_id": purchase_id, "now": now})

    def pay_commission(self, schedule_day_id: int, target_date: date | None = None, *, now: datetime | None = None) -> Dict[str, Any]:
        """Ledger entry + credit + schedule-day release + COMMISSION_UNLOCKED, atomically."""
        def _pay(uow: UnitOfWork) -> Dict[str, Any]:
            s = uow.session
            sched_day = s.get(CommissionScheduleDay, schedule_day_id)
            if sched_day is None:
                raise NotFound("commission schedule day", schedule_day_id)
            schedule = sched_day.schedule
            if sched_day.status == ScheduleDayStatus.RELEASED:
                raise CommissionAlreadyReleased(schedule_day_id)
            purchase = self._get_purchase(s, schedule.purchase_id)
            if purchase.status != PurchaseStatus.ACTIVE:
                raise PurchaseNotActive(purchase.id, purchase.status.value)
            key = commission_idempotency_key(purchase.id, schedule.commission_type.value, sched_day.day_index)
            if self._ledger_exists(s, key):
                raise CommissionAlreadyReleased(schedule_day_id)

            amount = dm.quantize(schedule.amount)
            entry = BenefitLedgerEntry(
                entry_code=self._entry_code(),
                purchase_id=purchase.id,
                user_id=schedule.beneficiary_id,
                kind=LedgerEntryKind(schedule.commission_type.value),
                cycle=None,
                day=sched_day.day_index,
                scheduled_date=target_date or sched_day.release_date,
                amount=amount,
                rate=schedule.rate,
                principal_snapshot=purchase.principal_amount,
                currency=purchase.currency,
                status=LedgerEntryStatus.PROCESSED,
                processed_at=uow.now,
                transaction_id=uow.transaction_id,
                idempotency_key=key,
            )
            s.add(entry)
            s.flush()
            self._credit(s, schedule.beneficiary_id, purchase.currency, amount, uow.now)

            sched_day.status = ScheduleDayStatus.RELEASED
            sched_day.released_at = uow.now
            sched_day.ledger_entry_id = entry.id
            sched_day.error_message = None
            if all(d.status == ScheduleDayStatus.RELEASED for d in schedule.days):
                schedule.status = ScheduleStatus.COMPLETED

            uow.stage_event(
                OutboxEventType.COMMISSION_UNLOCKED,
                schedule.id,
                AggregateType.COMMISSION,
                {
                    "schedule_id": schedule.id,
                    "schedule_day_id": sched_day.id,
                    "commission_type": schedule.commission_type.value,
                    "beneficiary_id": schedule.beneficiary_id,
                    "buyer_id": purchase.user_id,
                    "purchase_id": purchase.id,
                    "ledger_entry_id": entry.id,
                    "amount": dm.to_str(amount),
                    "day_index": sched_day.day_index,
                },
                user_id=schedule.beneficiary_id,
            )
            return {
                "schedule_id": schedule.id,
                "schedule_day_id": sched_day.id,
                "commission_type": schedule.commission_type.value,
                "beneficiary_id": schedule.beneficiary_id,
                "purchase_id": purchase.id,
                "ledger_entry_id": entry.id,
                "idempotency_key": key,
                "amount": dm.to_str(amount),
                "transaction_id": uow.transaction_id,
            }

        return self.execute(_pay, {"operation": "pay_commission", "schedule_day_id": schedule_day_id, "now": now})

    # ------------------------------------------------------------------ #
    # Withdrawal operations
    # ------------------------------------------------------------------ #
    def request_withdrawal(
        self,
        user_id: int,
        amount: dm.Number,
        destination_address: str,
        *,
        network: str | None = None,
        currency: str | None = None,
        now: datetime | None = None,
    ) -> Dict[str, Any]:
        """Reserve ``amount + fee`` on the balance. Nothing is deducted until approval."""
        amount_dec = dm.quantize(amount)
        minimum = dm.quantize(config.WITHDRAWAL_SETTINGS["minimum_amount"])
        if amount_dec < minimum:
            raise ValueError(f"withdrawal below minimum {dm.to_str(minimum)}")
        if not destination_address or not destination_address.strip():
            raise ValueError("destination address required")
        fee = dm.quantize(config.WITHDRAWAL_SETTINGS["network_fee"])
        total = dm.add(amount_dec, fee)
        currency = currency or config.SETTLEMENT_CURRENCY

        def _request(uow: UnitOfWork) -> Dict[str, Any]:
            s = uow.session
            pending = s.execute(
                select(Withdrawal.id)
                .where(Withdrawal.user_id == user_id, Withdrawal.status == WithdrawalStatus.PENDING)
            ).first()
            if pending is not None:
                raise PendingWithdrawalExists(user_id)
            self._ensure_balance(s, user_id, currency)
            # Conditional reservation: succeeds only if free funds cover it at write time
            result = s.execute(
                update(UserBalance)
                .where(UserBalance.user_id == user_id, UserBalance.currency == currency)
                .where(UserBalance.available - UserBalance.reserved >= total)
                .values(reserved=UserBalance.reserved + total, updated_at=uow.now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                balance = s.execute(
                    select(UserBalance).where(UserBalance.user_id == user_id, UserBalance.currency == currency)
                ).scalar_one()
                free = dm.subtract(balance.available, balance.reserved)
                raise InsufficientBalance(dm.to_str(free), dm.to_str(total))

            withdrawal = Withdrawal(
                withdrawal_code=f"WD_{secrets.token_hex(6).upper()}",
                user_id=user_id,
                currency=currency,
                amount=amount_dec,
                network_fee=fee,
                total_reserved=total,
                destination_address=destination_address.strip(),
                network=network or config.WITHDRAWAL_SETTINGS["default_network"],
                status=WithdrawalStatus.PENDING,
                requested_at=uow.now,
            )
            s.add(withdrawal)
            s.flush()
            uow.stage_event(
                OutboxEventType.WITHDRAWAL_REQUESTED,
                withdrawal.id,
                AggregateType.WITHDRAWAL,
                {
                    "withdrawal_id": withdrawal.id,
                    "user_id": user_id,
                    "amount": dm.to_str(amount_dec),
                    "network_fee": dm.to_str(fee),
                    "total_reserved": dm.to_str(total),
                    "network": withdrawal.network,
                },
                user_id=user_id,
            )
            return {
                "withdrawal_id": withdrawal.id,
                "withdrawal_code": withdrawal.withdrawal_code,
                "status": withdrawal.status.value,
                "amount": dm.to_str(amount_dec),
                "network_fee": dm.to_str(fee),
                "total_reserved": dm.to_str(total),
                "transaction_id": uow.transaction_id,
            }

        return self.execute(_request, {"operation": "request_withdrawal", "user_id": user_id, "now": now})

    def _decide_withdrawal(
        self,
        withdrawal_id: int,
        admin_id: int | None,
        *,
        approve: bool,
        reason: str | None,
        now: datetime | None,
    ) -> Dict[str, Any]:
        def _decide(uow: UnitOfWork) -> Dict[str, Any]:
            s = uow.session
            withdrawal = s.get(Withdrawal, withdrawal_id)
            if withdrawal is None:
                raise NotFound("withdrawal", withdrawal_id)
            target = WithdrawalStatus.APPROVED if approve else WithdrawalStatus.REJECTED
            if withdrawal.status != WithdrawalStatus.PENDING:
                raise InvalidStateTransition("withdrawal", withdrawal.status.value, target.value)
            total = dm.quantize(withdrawal.total_reserved)
            values: Dict[str, Any] = {"reserved": UserBalance.reserved - total, "updated_at": uow.now}
            if approve:
                values["available"] = UserBalance.available - total
                values["total"] = UserBalance.total - total
            s.execute(
                update(UserBalance)
                .where(UserBalance.user_id == withdrawal.user_id, UserBalance.currency == withdrawal.currency)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            withdrawal.status = target
            withdrawal.decided_at = uow.now
            withdrawal.decided_by_id = admin_id
            if not approve:
                withdrawal.rejection_reason = reason
            uow.stage_event(
                OutboxEventType.WITHDRAWAL_APPROVED if approve else OutboxEventType.WITHDRAWAL_REJECTED,
                withdrawal.id,
                AggregateType.WITHDRAWAL,
                {
                    "withdrawal_id": withdrawal.id,
                    "user_id": withdrawal.user_id,
                    "total_reserved": dm.to_str(total),
                    "reason": reason,
                },
                user_id=withdrawal.user_id,
                admin_id=admin_id,
            )
            return {"withdrawal_id": withdrawal.id, "status": target.value, "total_reserved": dm.to_str(total)}

        op = "approve_withdrawal" if approve else "reject_withdrawal"
        return self.execute(_decide, {"operation": op, "withdrawal_id": withdrawal_id, "admin_id": admin_id, "now": now})

    def approve_withdrawal(self, withdrawal_id: int, admin_id: int | None = None, *, now: datetime | None = None) -> Dict[str, Any]:
        return self._decide_withdrawal(withdrawal_id, admin_id, approve=True, reason=None, now=now)

    def reject_withdrawal(self, withdrawal_id: int, admin_id: int | None = None, reason: str = "", *, now: datetime | None = None) -> Dict[str, Any]:
        return self._decide_withdrawal(withdrawal_id, admin_id, approve=False, reason=reason, now=now)


__all__ = ["TransactionCoordinator", "UnitOfWork", "generate_transaction_id"]

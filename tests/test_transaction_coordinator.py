from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from accrual_engine.exceptions import (
    BenefitAlreadyProcessed,
    InsufficientBalance,
    InvalidStateTransition,
    NotFound,
    PendingWithdrawalExists,
    PurchaseNotActive,
)
from accrual_engine.models.db import BenefitLedgerEntry, License, OutboxEvent, Purchase, Withdrawal
from accrual_engine.models.db.enums import (
    AggregateType,
    LicenseStatus,
    OutboxEventType,
    PurchaseStatus,
    WithdrawalStatus,
)
from accrual_engine.services import purchase_lifecycle as lifecycle
from accrual_engine.services.transaction_coordinator import TransactionCoordinator
from accrual_engine.utils.time import utc_now

from conftest import NOW, TODAY, TestingSessionLocal


def _events(db_session, event_type=None):
    db_session.rollback()
    stmt = select(OutboxEvent).order_by(OutboxEvent.id)
    if event_type is not None:
        stmt = stmt.where(OutboxEvent.event_type == event_type)
    return db_session.execute(stmt).scalars().all()


def _count(db_session, model):
    db_session.rollback()
    return db_session.execute(select(func.count(model.id))).scalar_one()


def _submit_payment(purchase_id, tx_hash="0xfeed"):
    with TestingSessionLocal() as s:
        purchase = s.get(Purchase, purchase_id)
        lifecycle.submit_payment(purchase, tx_hash, now=NOW)
        s.commit()


# ---------- Atomicity ----------

def test_failed_operation_leaves_no_trace(coordinator, user_factory, balance_of, db_session):
    user = user_factory()

    def _op(uow):
        coordinator._credit(uow.session, user.id, "USDT", Decimal("50"), uow.now)
        uow.stage_event(OutboxEventType.BENEFIT_PROCESSED, user.id, AggregateType.USER, {"user_id": user.id}, user_id=user.id)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        coordinator.execute(_op, {"operation": "doomed", "now": NOW})

    assert _events(db_session) == []
    assert balance_of(user.id) is None


def test_benefit_rolls_back_when_credit_fails(coordinator, user_factory, active_purchase_factory, db_session, monkeypatch):
    pid = active_purchase_factory(user_factory())
    before = len(_events(db_session))

    def _broken_credit(*args, **kwargs):
        raise RuntimeError("balance table locked")

    monkeypatch.setattr(coordinator, "_credit", _broken_credit)
    with pytest.raises(RuntimeError):
        coordinator.pay_benefit(pid, TODAY, 1, 1, now=NOW)

    assert _count(db_session, BenefitLedgerEntry) == 0
    assert len(_events(db_session)) == before
    purchase = db_session.get(Purchase, pid)
    assert (purchase.current_cycle, purchase.current_day) == (1, 0)
    assert purchase.total_benefits_paid == Decimal("0")


def test_pay_benefit_rejects_duplicate_key(coordinator, user_factory, active_purchase_factory):
    pid = active_purchase_factory(user_factory())
    result = coordinator.pay_benefit(pid, TODAY, 1, 1, now=NOW)
    assert result["amount"] == "125.00000000"
    assert result["idempotency_key"] == f"benefit:{pid}:1:1:{TODAY.isoformat()}"

    with pytest.raises(BenefitAlreadyProcessed):
        coordinator.pay_benefit(pid, TODAY, 1, 1, now=NOW)


def test_transaction_side_table(coordinator, user_factory, active_purchase_factory):
    pid = active_purchase_factory(user_factory())
    result = coordinator.pay_benefit(pid, TODAY, 1, 1, now=NOW)

    record = coordinator.get_transaction_status(result["transaction_id"])
    assert record["status"] == "COMMITTED"
    assert record["operation"] == "pay_benefit"
    assert coordinator.active_transactions() == []

    with pytest.raises(BenefitAlreadyProcessed):
        coordinator.pay_benefit(pid, TODAY, 1, 1, now=NOW)
    aborted = [r for r in coordinator._transactions.values() if r["status"] == "ABORTED"]
    assert aborted and aborted[0]["error"] == "already processed"

    assert coordinator.prune_transactions(now=utc_now() + timedelta(days=1)) >= 2
    assert coordinator.get_transaction_status(result["transaction_id"]) is None


# ---------- Purchase operations ----------

def test_confirm_stages_purchase_and_license_events(coordinator, user_factory, pending_purchase_factory, db_session):
    user = user_factory()
    pid = pending_purchase_factory(user)

    result = coordinator.confirm_purchase(pid, tx_hash="0xABC", now=NOW)
    assert result["status"] == "ACTIVE"
    assert result["license_id"] is not None
    assert result["license_pending"] is False

    events = _events(db_session)
    assert [e.event_type for e in events] == [OutboxEventType.PURCHASE_CONFIRMED, OutboxEventType.LICENSE_CREATED]
    assert {e.transaction_id for e in events} == {result["transaction_id"]}
    assert events[0].user_id == user.id

    purchase = db_session.get(Purchase, pid)
    assert purchase.tx_hash == "0xabc"
    assert purchase.current_cycle == 1
    assert purchase.license.status == LicenseStatus.ACTIVE


def test_license_failure_flags_purchase_and_retry_creates_it(user_factory, pending_purchase_factory, db_session):
    def _broken_factory(session, purchase, now):
        raise RuntimeError("license service down")

    flaky = TransactionCoordinator(license_factory=_broken_factory)
    pid = pending_purchase_factory(user_factory())
    result = flaky.confirm_purchase(pid, tx_hash="0x1", now=NOW)
    assert result["status"] == "ACTIVE"
    assert result["license_pending"] is True
    assert result["license_id"] is None
    assert [e.event_type for e in _events(db_session)] == [OutboxEventType.PURCHASE_CONFIRMED]

    retry = TransactionCoordinator().retry_pending_licenses(now=NOW)
    assert retry["retried"] == 1
    assert retry["created"] == [pid]

    db_session.rollback()
    purchase = db_session.get(Purchase, pid)
    assert purchase.license_pending is False
    assert db_session.execute(select(License).where(License.purchase_id == pid)).scalar_one() is not None
    assert len(_events(db_session, OutboxEventType.LICENSE_CREATED)) == 1


def test_confirm_rejects_wrong_state(coordinator, user_factory, active_purchase_factory):
    pid = active_purchase_factory(user_factory())
    with pytest.raises(InvalidStateTransition):
        coordinator.confirm_purchase(pid, now=NOW)


def test_confirm_unknown_purchase(coordinator):
    with pytest.raises(NotFound):
        coordinator.confirm_purchase(999999, now=NOW)


def test_reject_purchase(coordinator, user_factory, pending_purchase_factory, db_session):
    pid = pending_purchase_factory(user_factory())
    _submit_payment(pid)

    result = coordinator.reject_purchase(pid, None, "payment not found on chain", now=NOW)
    assert result["status"] == "REJECTED"
    events = _events(db_session, OutboxEventType.PURCHASE_REJECTED)
    assert events[0].payload["reason"] == "payment not found on chain"


def test_pause_and_resume_toggle_license(coordinator, user_factory, active_purchase_factory, db_session):
    pid = active_purchase_factory(user_factory())

    assert coordinator.pause_purchase(pid, now=NOW)["status"] == "PAUSED"
    db_session.rollback()
    assert db_session.get(Purchase, pid).license.status == LicenseStatus.PAUSED

    with pytest.raises(PurchaseNotActive):
        coordinator.pay_benefit(pid, TODAY, 1, 1, now=NOW)

    assert coordinator.resume_purchase(pid, now=NOW)["status"] == "ACTIVE"
    db_session.rollback()
    assert db_session.get(Purchase, pid).license.status == LicenseStatus.ACTIVE

    types = [e.event_type for e in _events(db_session)]
    assert OutboxEventType.LICENSE_PAUSED in types
    assert OutboxEventType.LICENSE_RESUMED in types


def test_expire_overdue_purchases(coordinator, user_factory, pending_purchase_factory, db_session):
    user = user_factory()
    stale = pending_purchase_factory(user, now=NOW - timedelta(hours=30))
    fresh = pending_purchase_factory(user, now=NOW - timedelta(hours=2))

    result = coordinator.expire_overdue_purchases(now=NOW)
    assert result["purchase_ids"] == [stale]

    db_session.rollback()
    assert db_session.get(Purchase, stale).status == PurchaseStatus.EXPIRED
    assert db_session.get(Purchase, fresh).status == PurchaseStatus.PENDING_PAYMENT


def test_complete_purchase_only_stamps_once(coordinator, user_factory, active_purchase_factory, db_session):
    pid = active_purchase_factory(user_factory())
    assert coordinator.complete_purchase(pid, now=NOW)["completed"] is True
    assert coordinator.complete_purchase(pid, now=NOW)["completed"] is False

    assert len(_events(db_session, OutboxEventType.PURCHASE_COMPLETED)) == 1
    purchase = db_session.get(Purchase, pid)
    assert purchase.current_cycle == purchase.total_cycles + 1
    assert purchase.license.status == LicenseStatus.COMPLETED


# ---------- Withdrawals ----------

def test_withdrawal_reserves_amount_plus_fee(coordinator, user_factory, fund_user, balance_of, db_session):
    user = user_factory()
    fund_user(user.id, "100")

    result = coordinator.request_withdrawal(user.id, "50", "TXyz123", now=NOW)
    assert result["status"] == "PENDING"
    assert result["total_reserved"] == "51.00000000"

    balance = balance_of(user.id)
    assert balance.available == Decimal("100.00000000")
    assert balance.reserved == Decimal("51.00000000")
    assert len(_events(db_session, OutboxEventType.WITHDRAWAL_REQUESTED)) == 1

    with pytest.raises(PendingWithdrawalExists):
        coordinator.request_withdrawal(user.id, "10", "TXyz123", now=NOW)


def test_withdrawal_needs_free_funds(coordinator, user_factory, fund_user, balance_of):
    user = user_factory()
    fund_user(user.id, "20")

    with pytest.raises(InsufficientBalance) as exc:
        coordinator.request_withdrawal(user.id, "20", "TXyz123", now=NOW)
    assert exc.value.required == "21.00000000"
    assert balance_of(user.id).reserved == Decimal("0")


def test_withdrawal_validation(coordinator, user_factory):
    user = user_factory()
    with pytest.raises(ValueError):
        coordinator.request_withdrawal(user.id, "9.99", "TXyz123", now=NOW)
    with pytest.raises(ValueError):
        coordinator.request_withdrawal(user.id, "25", "   ", now=NOW)


def test_approve_withdrawal_deducts_and_releases_reserve(coordinator, user_factory, fund_user, balance_of):
    user = user_factory()
    admin = user_factory(is_admin=True)
    fund_user(user.id, "100")
    wid = coordinator.request_withdrawal(user.id, "50", "TXyz123", now=NOW)["withdrawal_id"]

    assert coordinator.approve_withdrawal(wid, admin.id, now=NOW)["status"] == "APPROVED"
    balance = balance_of(user.id)
    assert balance.available == Decimal("49.00000000")
    assert balance.total == Decimal("49.00000000")
    assert balance.reserved == Decimal("0")

    with pytest.raises(InvalidStateTransition):
        coordinator.reject_withdrawal(wid, admin.id, "too late", now=NOW)


def test_reject_withdrawal_only_releases_reserve(coordinator, user_factory, fund_user, balance_of, db_session):
    user = user_factory()
    fund_user(user.id, "100")
    wid = coordinator.request_withdrawal(user.id, "50", "TXyz123", now=NOW)["withdrawal_id"]

    coordinator.reject_withdrawal(wid, None, "address flagged", now=NOW)
    balance = balance_of(user.id)
    assert balance.available == Decimal("100.00000000")
    assert balance.reserved == Decimal("0")

    withdrawal = db_session.get(Withdrawal, wid)
    assert withdrawal.status == WithdrawalStatus.REJECTED
    assert withdrawal.rejection_reason == "address flagged"

    # A decided withdrawal no longer blocks a new request
    coordinator.request_withdrawal(user.id, "10", "TXyz123", now=NOW)

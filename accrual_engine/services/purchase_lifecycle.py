"""Purchase lifecycle state machine and benefit progression.

Transitions::

    PENDING_PAYMENT -> CONFIRMING -> APPROVED -> ACTIVE <-> PAUSED
    CONFIRMING -> REJECTED
    PENDING_PAYMENT -> EXPIRED

Every transition function validates the source state first and raises
``InvalidStateTransition`` without touching the purchase otherwise. Functions
mutate the ORM object in place; persistence is the caller's unit of work.

Derived values (days remaining, progress...) are plain functions computed on
read and never stored.
"""
from __future__ import annotations

import secrets
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Tuple

from sqlalchemy import select, Select

from accrual_engine.config import PURCHASE_SETTINGS, SETTLEMENT_CURRENCY
from accrual_engine.exceptions import InvalidStateTransition, CyclesCompleted, PurchaseNotActive
from accrual_engine.models.db.enums import PurchaseStatus
from accrual_engine.models.db.packages import Package
from accrual_engine.models.db.purchases import Purchase
from accrual_engine.utils import decimal_math as dm
from accrual_engine.utils.time import utc_now, ensure_utc, operational_date, end_of_operational_day

BENEFIT_INTERVAL = timedelta(hours=24)


def _require(purchase: Purchase, allowed: tuple[PurchaseStatus, ...], target: PurchaseStatus) -> None:
    if purchase.status not in allowed:
        raise InvalidStateTransition("purchase", purchase.status.value, target.value)


def generate_purchase_code() -> str:
    return f"{PURCHASE_SETTINGS['code_prefix']}{secrets.token_hex(6).upper()}"


def create_purchase(
    user_id: int,
    principal: dm.Number,
    *,
    package: Package | None = None,
    daily_rate: dm.Number = None,
    days_per_cycle: int | None = None,
    total_cycles: int | None = None,
    now: datetime | None = None,
) -> Purchase:
    """Build a PENDING_PAYMENT purchase with its plan snapshot computed once."""
    now = now or utc_now()
    principal_dec = dm.quantize(principal)
    if principal_dec <= 0:
        raise ValueError("principal must be positive")
    if package is not None:
        if principal_dec < dm.quantize(package.min_principal):
            raise ValueError(f"principal below package minimum {dm.to_str(package.min_principal)}")
        if package.max_principal is not None and principal_dec > dm.quantize(package.max_principal):
            raise ValueError(f"principal above package maximum {dm.to_str(package.max_principal)}")
        rate = package.daily_rate if daily_rate is None else daily_rate
        dpc = days_per_cycle or package.days_per_cycle
        cycles = total_cycles or package.total_cycles
    else:
        rate = PURCHASE_SETTINGS["daily_rate"] if daily_rate is None else daily_rate
        dpc = days_per_cycle or int(PURCHASE_SETTINGS["days_per_cycle"])
        cycles = total_cycles or int(PURCHASE_SETTINGS["total_cycles"])
    if dpc < 1 or cycles < 1:
        raise ValueError("days_per_cycle and total_cycles must be >= 1")

    return Purchase(
        purchase_code=generate_purchase_code(),
        user_id=user_id,
        package_id=package.id if package is not None else None,
        principal_amount=principal_dec,
        currency=SETTLEMENT_CURRENCY,
        status=PurchaseStatus.PENDING_PAYMENT,
        payment_deadline=now + timedelta(hours=int(PURCHASE_SETTINGS["payment_window_hours"])),
        daily_rate=dm.to_decimal(rate),
        days_per_cycle=int(dpc),
        total_cycles=int(cycles),
        current_cycle=0,
        current_day=0,
        total_benefits_paid=dm.ZERO,
        license_pending=False,
    )

# ----------------------------- Transitions ------------------------------ #

def submit_payment(purchase: Purchase, tx_hash: str, *, now: datetime | None = None) -> Purchase:
    _require(purchase, (PurchaseStatus.PENDING_PAYMENT,), PurchaseStatus.CONFIRMING)
    if not tx_hash or not tx_hash.strip():
        raise ValueError("tx_hash required")
    purchase.tx_hash = tx_hash.strip().lower()
    purchase.payment_submitted_at = now or utc_now()
    purchase.status = PurchaseStatus.CONFIRMING
    return purchase


def approve(purchase: Purchase, admin_id: int | None, *, now: datetime | None = None) -> Purchase:
    _require(purchase, (PurchaseStatus.CONFIRMING,), PurchaseStatus.APPROVED)
    purchase.approved_at = now or utc_now()
    purchase.approved_by_id = admin_id
    purchase.status = PurchaseStatus.APPROVED
    return purchase


def activate(purchase: Purchase, *, now: datetime | None = None) -> Purchase:
    _require(purchase, (PurchaseStatus.APPROVED,), PurchaseStatus.ACTIVE)
    now = now or utc_now()
    purchase.activated_at = now
    purchase.current_cycle = 1
    purchase.current_day = 0
    purchase.next_benefit_at = now + BENEFIT_INTERVAL
    purchase.status = PurchaseStatus.ACTIVE
    return purchase


def reject(purchase: Purchase, reason: str, *, now: datetime | None = None) -> Purchase:
    _require(purchase, (PurchaseStatus.CONFIRMING,), PurchaseStatus.REJECTED)
    purchase.rejected_at = now or utc_now()
    purchase.rejection_reason = reason
    purchase.status = PurchaseStatus.REJECTED
    return purchase


def expire(purchase: Purchase, *, now: datetime | None = None) -> Purchase:
    _require(purchase, (PurchaseStatus.PENDING_PAYMENT,), PurchaseStatus.EXPIRED)
    now = now or utc_now()
    deadline = ensure_utc(purchase.payment_deadline)
    if deadline is not None and now < deadline:
        raise InvalidStateTransition("purchase", "PENDING_PAYMENT (deadline not reached)", PurchaseStatus.EXPIRED.value)
    purchase.status = PurchaseStatus.EXPIRED
    return purchase


def pause(purchase: Purchase) -> Purchase:
    _require(purchase, (PurchaseStatus.ACTIVE,), PurchaseStatus.PAUSED)
    purchase.status = PurchaseStatus.PAUSED
    return purchase


def resume(purchase: Purchase) -> Purchase:
    _require(purchase, (PurchaseStatus.PAUSED,), PurchaseStatus.ACTIVE)
    purchase.status = PurchaseStatus.ACTIVE
    return purchase

# --------------------------- Benefit progression --------------------------- #

def calendar_position(purchase: Purchase, target: date) -> Tuple[int, int, int]:
    """(days_since_activation, cycle, day_in_cycle) for ``target``.

    Both dates are operational calendar dates, so the difference is a whole
    number of days regardless of activation time of day.
    """
    if purchase.activated_at is None:
        raise InvalidStateTransition("purchase", purchase.status.value, "calendar position without activation")
    days_since = (target - operational_date(purchase.activated_at)).days
    if days_since < 0:
        raise ValueError(f"target {target.isoformat()} precedes activation")
    cycle = days_since // purchase.days_per_cycle + 1
    day = days_since % purchase.days_per_cycle + 1
    return days_since, cycle, day


def is_completed(purchase: Purchase) -> bool:
    return purchase.current_cycle > purchase.total_cycles


def _advance(purchase: Purchase, cycle: int, day: int) -> Tuple[int, int]:
    # day reaching days_per_cycle rolls to the next cycle at day 0
    if day >= purchase.days_per_cycle:
        return cycle + 1, 0
    return cycle, day


def process_daily_benefit(
    purchase: Purchase,
    *,
    now: datetime | None = None,
    position: Tuple[int, int] | None = None,
) -> Dict[str, Any]:
    """Advance counters by one benefit day and accumulate the amount paid.

    ``position`` is the calendar-derived ``(cycle, day)`` being paid. Counters
    are moved to the position following it but never backwards, so replaying
    an older date cannot rewind a purchase.
    """
    if purchase.status != PurchaseStatus.ACTIVE:
        raise PurchaseNotActive(purchase.id, purchase.status.value)
    if is_completed(purchase):
        raise CyclesCompleted(purchase.id)
    now = now or utc_now()

    if position is None:
        paid_cycle, paid_day = purchase.current_cycle, purchase.current_day + 1
    else:
        paid_cycle, paid_day = position
        if paid_cycle > purchase.total_cycles:
            raise CyclesCompleted(purchase.id)

    amount = daily_benefit_amount(purchase)
    next_pos = _advance(purchase, paid_cycle, paid_day)
    if next_pos > (purchase.current_cycle, purchase.current_day):
        purchase.current_cycle, purchase.current_day = next_pos
    purchase.total_benefits_paid = dm.add(purchase.total_benefits_paid, amount)

    completed_now = False
    if is_completed(purchase):
        if purchase.completed_at is None:
            purchase.completed_at = now
            completed_now = True
        purchase.next_benefit_at = None
    else:
        purchase.next_benefit_at = now + BENEFIT_INTERVAL

    return {
        "amount": amount,
        "cycle": paid_cycle,
        "day": paid_day,
        "current_cycle": purchase.current_cycle,
        "current_day": purchase.current_day,
        "completed": completed_now,
    }


def mark_cycles_completed(purchase: Purchase, *, now: datetime | None = None) -> bool:
    """Stamp completion once the calendar is past the last cycle. Returns True if stamped."""
    if purchase.completed_at is not None:
        return False
    purchase.completed_at = now or utc_now()
    purchase.current_cycle = purchase.total_cycles + 1
    purchase.current_day = 0
    purchase.next_benefit_at = None
    return True

# ------------------------------ Eligibility ------------------------------- #

def is_eligible_on(purchase: Purchase, target: date) -> bool:
    return (
        purchase.status == PurchaseStatus.ACTIVE
        and purchase.activated_at is not None
        and operational_date(purchase.activated_at) <= target
    )


def eligible_purchases_query(target: date) -> Select:
    cutoff = end_of_operational_day(target)
    return (
        select(Purchase)
        .where(Purchase.status == PurchaseStatus.ACTIVE)
        .where(Purchase.activated_at.is_not(None))
        .where(Purchase.activated_at < cutoff)
        .order_by(Purchase.activated_at, Purchase.id)
    )

# ---------------------------- Read-side values ---------------------------- #

def daily_benefit_amount(purchase: Purchase) -> Decimal:
    return dm.daily_benefit(purchase.principal_amount, purchase.daily_rate)


def expected_total_benefit(purchase: Purchase) -> Decimal:
    return dm.multiply(daily_benefit_amount(purchase), purchase.days_per_cycle * purchase.total_cycles)


def days_elapsed(purchase: Purchase) -> int:
    if purchase.current_cycle == 0:
        return 0
    if is_completed(purchase):
        return purchase.days_per_cycle * purchase.total_cycles
    return (purchase.current_cycle - 1) * purchase.days_per_cycle + purchase.current_day


def days_remaining_in_cycle(purchase: Purchase) -> int:
    if purchase.current_cycle == 0 or is_completed(purchase):
        return 0
    return purchase.days_per_cycle - purchase.current_day


def cycles_remaining(purchase: Purchase) -> int:
    if purchase.current_cycle == 0:
        return purchase.total_cycles
    return max(0, purchase.total_cycles - purchase.current_cycle + 1)


def total_days_remaining(purchase: Purchase) -> int:
    return purchase.days_per_cycle * purchase.total_cycles - days_elapsed(purchase)


def progress_percent(purchase: Purchase) -> Decimal:
    total_days = purchase.days_per_cycle * purchase.total_cycles
    return dm.divide(days_elapsed(purchase) * 100, total_days).quantize(Decimal("0.01"))


def summarize(purchase: Purchase) -> Dict[str, Any]:
    return {
        "purchase_id": purchase.id,
        "purchase_code": purchase.purchase_code,
        "status": purchase.status.value,
        "principal_amount": dm.to_str(purchase.principal_amount),
        "current_cycle": purchase.current_cycle,
        "current_day": purchase.current_day,
        "total_benefits_paid": dm.to_str(purchase.total_benefits_paid),
        "daily_benefit": dm.to_str(daily_benefit_amount(purchase)),
        "days_remaining_in_cycle": days_remaining_in_cycle(purchase),
        "cycles_remaining": cycles_remaining(purchase),
        "total_days_remaining": total_days_remaining(purchase),
        "progress_percent": str(progress_percent(purchase)),
        "completed_at": purchase.completed_at.isoformat() if purchase.completed_at else None,
    }


__all__ = [
    "create_purchase",
    "generate_purchase_code",
    "submit_payment",
    "approve",
    "activate",
    "reject",
    "expire",
    "pause",
    "resume",
    "calendar_position",
    "is_completed",
    "process_daily_benefit",
    "mark_cycles_completed",
    "is_eligible_on",
    "eligible_purchases_query",
    "daily_benefit_amount",
    "expected_total_benefit",
    "days_elapsed",
    "days_remaining_in_cycle",
    "cycles_remaining",
    "total_days_remaining",
    "progress_percent",
    "summarize",
]

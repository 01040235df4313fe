from .users import User, UserBalance
from .packages import Package
from .purchases import Purchase, License
from .ledger import BenefitLedgerEntry, benefit_idempotency_key, commission_idempotency_key
from .commissions import CommissionSchedule, CommissionScheduleDay
from .processing_state import DailyProcessingState, JobState
from .outbox import OutboxEvent
from .withdrawals import Withdrawal

__all__ = [
    "User",
    "UserBalance",
    "Package",
    "Purchase",
    "License",
    "BenefitLedgerEntry",
    "benefit_idempotency_key",
    "commission_idempotency_key",
    "CommissionSchedule",
    "CommissionScheduleDay",
    "DailyProcessingState",
    "JobState",
    "OutboxEvent",
    "Withdrawal",
]

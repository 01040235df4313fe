"""Central Enum definitions for every state machine in the engine.

Closed types instead of loose status strings: DB columns, schemas and
services all share these.
"""
from __future__ import annotations
import enum


class PurchaseStatus(str, enum.Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMING = "CONFIRMING"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class LicenseStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"

# ------------------------ Ledger / Commission Enums ------------------------ #

class LedgerEntryKind(str, enum.Enum):
    BENEFIT = "BENEFIT"
    REFERRER = "REFERRER"
    PARENT = "PARENT"


class LedgerEntryStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"


class CommissionType(str, enum.Enum):
    REFERRER = "REFERRER"  # direct referrer of the buyer
    PARENT = "PARENT"      # referrer's referrer


class ScheduleStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ScheduleDayStatus(str, enum.Enum):
    PENDING = "PENDING"
    RELEASED = "RELEASED"
    FAILED = "FAILED"

# ---------------------------- Processing Enums ---------------------------- #

class ProcessingStatus(str, enum.Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobStatus(str, enum.Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class TriggerSource(str, enum.Enum):
    AUTOMATIC = "AUTOMATIC"
    MANUAL = "MANUAL"

# ------------------------------ Outbox Enums ------------------------------ #

class OutboxStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"


class OutboxEventType(str, enum.Enum):
    PURCHASE_CONFIRMED = "PURCHASE_CONFIRMED"
    PURCHASE_REJECTED = "PURCHASE_REJECTED"
    PURCHASE_COMPLETED = "PURCHASE_COMPLETED"
    LICENSE_CREATED = "LICENSE_CREATED"
    LICENSE_PAUSED = "LICENSE_PAUSED"
    LICENSE_RESUMED = "LICENSE_RESUMED"
    WITHDRAWAL_REQUESTED = "WITHDRAWAL_REQUESTED"
    WITHDRAWAL_APPROVED = "WITHDRAWAL_APPROVED"
    WITHDRAWAL_REJECTED = "WITHDRAWAL_REJECTED"
    BENEFIT_PROCESSED = "BENEFIT_PROCESSED"
    COMMISSION_UNLOCKED = "COMMISSION_UNLOCKED"


class AggregateType(str, enum.Enum):
    PURCHASE = "PURCHASE"
    LICENSE = "LICENSE"
    WITHDRAWAL = "WITHDRAWAL"
    USER = "USER"
    COMMISSION = "COMMISSION"
    BENEFIT_LEDGER = "BENEFIT_LEDGER"


class WithdrawalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


__all__ = [
    "PurchaseStatus",
    "LicenseStatus",
    "LedgerEntryKind",
    "LedgerEntryStatus",
    "CommissionType",
    "ScheduleStatus",
    "ScheduleDayStatus",
    "ProcessingStatus",
    "JobStatus",
    "TriggerSource",
    "OutboxStatus",
    "OutboxEventType",
    "AggregateType",
    "WithdrawalStatus",
]

"""Domain exception hierarchy.

``AccrualValidationError`` subclasses are expected outcomes: the accrual pass
records them as *skipped* with the message as reason and keeps going. Anything
else raised inside a per-purchase unit is counted as an *error*.
"""
from __future__ import annotations


class AccrualError(Exception):
    """Base class for engine errors surfaced to callers."""

    status_code = 400


class AccrualValidationError(AccrualError):
    pass


class InvalidStateTransition(AccrualValidationError):
    status_code = 409

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition for {entity}: {current} -> {target}")


class CyclesCompleted(AccrualValidationError):
    def __init__(self, purchase_id: int):
        self.purchase_id = purchase_id
        super().__init__("cycles completed")


class BenefitAlreadyProcessed(AccrualValidationError):
    status_code = 409

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__("already processed")


class PurchaseNotActive(AccrualValidationError):
    status_code = 409

    def __init__(self, purchase_id: int, status: str):
        self.purchase_id = purchase_id
        self.status = status
        super().__init__(f"purchase {purchase_id} not ACTIVE (status={status})")


class CommissionAlreadyReleased(AccrualValidationError):
    status_code = 409

    def __init__(self, schedule_day_id: int):
        self.schedule_day_id = schedule_day_id
        super().__init__("commission already released")


class DateAlreadyCompleted(AccrualError):
    status_code = 409

    def __init__(self, process_date: str):
        self.process_date = process_date
        super().__init__(f"date {process_date} already completed")


class DateInProgress(AccrualError):
    status_code = 409

    def __init__(self, process_date: str):
        self.process_date = process_date
        super().__init__(f"date {process_date} is being processed")


class InsufficientBalance(AccrualError):
    def __init__(self, available: str, required: str):
        self.available = available
        self.required = required
        super().__init__(f"insufficient balance: available {available}, required {required}")


class PendingWithdrawalExists(AccrualError):
    status_code = 409

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"user {user_id} already has a pending withdrawal")


class NotFound(AccrualError):
    status_code = 404

    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class DivisionByZeroError(AccrualError, ZeroDivisionError):
    def __init__(self, dividend):
        super().__init__(f"division by zero (dividend={dividend})")


__all__ = [
    "AccrualError",
    "AccrualValidationError",
    "InvalidStateTransition",
    "CyclesCompleted",
    "BenefitAlreadyProcessed",
    "PurchaseNotActive",
    "CommissionAlreadyReleased",
    "DateAlreadyCompleted",
    "DateInProgress",
    "InsufficientBalance",
    "PendingWithdrawalExists",
    "NotFound",
    "DivisionByZeroError",
]

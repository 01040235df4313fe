from .base import ResponseBase
from .accrual import RunDateRequest
from .outbox import PurgeRequest

__all__ = [
    "ResponseBase",
    "RunDateRequest",
    "PurgeRequest",
]

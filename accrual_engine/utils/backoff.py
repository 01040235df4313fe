"""Exponential backoff helpers for outbox redelivery."""
from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Optional

from accrual_engine.config import BACKOFF_POLICY


def compute_backoff_seconds(attempts: int, *, base: Optional[float] = None, factor: Optional[float] = None, max_seconds: Optional[float] = None, jitter_pct: Optional[float] = None) -> float:
    """Delay after ``attempts`` failed deliveries: ``min(base * factor**attempts, max)``."""
    if attempts < 0:
        attempts = 0
    base = float(base if base is not None else BACKOFF_POLICY["base_seconds"])
    factor = float(factor if factor is not None else BACKOFF_POLICY["factor"])
    max_seconds = float(max_seconds if max_seconds is not None else BACKOFF_POLICY["max_seconds"])
    jitter_pct = float(jitter_pct if jitter_pct is not None else BACKOFF_POLICY["jitter_pct"])

    delay = min(base * (factor ** attempts), max_seconds)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = min(random.uniform(delay - jitter_amount, delay + jitter_amount), max_seconds)
    return max(delay, 0.0)


def next_retry_at(attempts: int, now: datetime) -> datetime:
    return now + timedelta(seconds=compute_backoff_seconds(attempts))


__all__ = ["compute_backoff_seconds", "next_retry_at"]

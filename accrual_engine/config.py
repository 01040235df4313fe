"""Core application configuration & tunable accrual rules.

Every business rule that may evolve (benefit plan defaults, commission rates and
commission release days, catch-up window, outbox retry budget, retention windows) is
centralized here so it can be adjusted without diving into service logic. Values
are module constants read from the environment once at import; tests monkeypatch
the dicts directly.
"""
from __future__ import annotations

import os

SQLALCHEMY_DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./accrual.db")
REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Bearer token guarding the administrative trigger surface.
ADMIN_API_TOKEN: str | None = os.getenv("ADMIN_API_TOKEN") or None

# Background timers (daily accrual trigger + outbox poller) started in app lifespan.
ENABLE_BACKGROUND_JOBS: bool = os.getenv("ENABLE_BACKGROUND_JOBS", "true").lower() in ("1", "true", "yes")

# Operational calendar. Every "date" in the engine is a date in this zone.
OPERATIONAL_TIMEZONE: str = os.getenv("OPERATIONAL_TIMEZONE", "America/Bogota")

SETTLEMENT_CURRENCY: str = "USDT"

# ------------------------------ Accrual Job ------------------------------- #
ACCRUAL_SETTINGS: dict[str, int | str] = {
	"job_name": "benefits",
	"run_hour": int(os.getenv("ACCRUAL_RUN_HOUR", "3")),  # 03:00 operational time
	"run_minute": int(os.getenv("ACCRUAL_RUN_MINUTE", "0")),
	"max_catchup_days": int(os.getenv("MAX_CATCHUP_DAYS", "7")),
	# STARTED date rows older than this are considered abandoned by a crash
	"stale_date_lock_hours": 2,
	# RUNNING job rows older than this are taken over
	"stale_job_lock_hours": 6,
	"state_retention_days": 90,
}

# ---------------------------- Benefit Defaults ---------------------------- #
PURCHASE_SETTINGS: dict[str, str | int] = {
	"daily_rate": "0.125",      # 12.5% of principal per day
	"days_per_cycle": 8,
	"total_cycles": 5,
	"payment_window_hours": 24,
	"code_prefix": "PUR_",
}

# ------------------------------ Commissions ------------------------------- #
# release_day is 1-based from activation day: day 1 is the activation date
COMMISSION_SETTINGS: dict[str, dict[str, str | int]] = {
	"REFERRER": {
		"rate": "0.10",
		"release_day": 8,
	},
	"PARENT": {
		"rate": "0.10",
		"release_day": 17,
	},
}

# --------------------------------- Outbox --------------------------------- #
OUTBOX_SETTINGS: dict[str, int | float] = {
	"poll_interval_seconds": 5.0,
	"batch_size": 50,
	"max_attempts": 5,
	"published_retention_days": 7,
	# PROCESSING claims older than this are returned to PENDING
	"processing_timeout_seconds": 300,
	"purge_every_polls": 720,
}

# --------------------------------- Backoff -------------------------------- #
# Outbox retry delay: min(base * factor^attempts, max) seconds, no jitter.
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 1,
	"factor": 2,
	"max_seconds": 300,
	"jitter_pct": 0.0,
}

# ----------------------------- Transactions ------------------------------- #
TRANSACTION_SETTINGS: dict[str, int] = {
	"retention_seconds": 3600,
}

# ------------------------------ Withdrawals ------------------------------- #
WITHDRAWAL_SETTINGS: dict[str, str] = {
	"network_fee": "1.00",
	"minimum_amount": "10.00",
	"default_network": "TRC20",
}

# --------------------------------- Cache ---------------------------------- #
CACHE_SETTINGS: dict[str, bool | list[str] | float] = {
	"enabled": os.getenv("CACHE_INVALIDATION_ENABLED", "true").lower() in ("1", "true", "yes"),
	"user_key_patterns": [
		"user:{user_id}:*",
		"dashboard:{user_id}:*",
		"me:{user_id}:*",
		"balances:{user_id}:*",
		"purchases:{user_id}:*",
		"commissions:{user_id}:*",
		"withdrawals:{user_id}:*",
	],
	"admin_key_patterns": [
		"admin:dashboard:*",
		"admin:stats:*",
	],
	"socket_timeout_seconds": 2.0,
}

# ------------------------------ Notifications ----------------------------- #
NOTIFICATION_SETTINGS: dict[str, str] = {
	"backend": os.getenv("NOTIFICATION_BACKEND", "memory"),  # memory | redis
	"user_channel_prefix": "realtime:user:",
	"admin_channel": "realtime:admin",
}

__all__ = [
	"SQLALCHEMY_DATABASE_URL",
	"REDIS_URL",
	"ADMIN_API_TOKEN",
	"ENABLE_BACKGROUND_JOBS",
	"OPERATIONAL_TIMEZONE",
	"SETTLEMENT_CURRENCY",
	# Rule groups
	"ACCRUAL_SETTINGS",
	"PURCHASE_SETTINGS",
	"COMMISSION_SETTINGS",
	"OUTBOX_SETTINGS",
	"BACKOFF_POLICY",
	"TRANSACTION_SETTINGS",
	"WITHDRAWAL_SETTINGS",
	"CACHE_SETTINGS",
	"NOTIFICATION_SETTINGS",
]

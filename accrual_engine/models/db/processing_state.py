from __future__ import annotations
"""SQLAlchemy models for per-date processing state and per-job run state."""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Integer, String, DateTime, Numeric, Enum, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from accrual_engine.database import Base
from .enums import ProcessingStatus, JobStatus, TriggerSource


class DailyProcessingState(Base):
    __tablename__ = "daily_processing_states"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    process_date: Mapped[str] = mapped_column(String(10), unique=True, nullable=False, index=True)  # YYYY-MM-DD
    status: Mapped[ProcessingStatus] = mapped_column(Enum(ProcessingStatus), nullable=False, index=True)
    trigger: Mapped[TriggerSource] = mapped_column(Enum(TriggerSource), default=TriggerSource.AUTOMATIC)
    timezone: Mapped[str] = mapped_column(String, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class JobState(Base):
    __tablename__ = "job_states"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    job: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    status: Mapped[JobStatus] = mapped_column(Enum(JobStatus), default=JobStatus.IDLE)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Only advanced when every owed date of a run completed; catch-up anchors on it
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[int] = mapped_column(Integer, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=Decimal("0"))
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

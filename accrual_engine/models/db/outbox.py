from __future__ import annotations
"""SQLAlchemy model for transactional outbox events."""
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, Enum, Text, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from accrual_engine.database import Base
from .enums import OutboxStatus, OutboxEventType, AggregateType


class OutboxEvent(Base):
    __tablename__ = "outbox_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    event_id: Mapped[str] = mapped_column(String, unique=True, nullable=False, index=True)
    event_type: Mapped[OutboxEventType] = mapped_column(Enum(OutboxEventType), nullable=False, index=True)
    aggregate_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    aggregate_type: Mapped[AggregateType] = mapped_column(Enum(AggregateType), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    admin_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[OutboxStatus] = mapped_column(Enum(OutboxStatus), default=OutboxStatus.PENDING, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_history: Mapped[list | None] = mapped_column(JSON, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        Index("ix_outbox_status_next_retry", "status", "next_retry_at"),
    )

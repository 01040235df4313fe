from __future__ import annotations
"""SQLAlchemy models for referral commission schedules and their per-day release status."""
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy import Integer, String, Date, DateTime, Numeric, Enum, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.sql import func
from accrual_engine.database import Base
from .enums import CommissionType, ScheduleStatus, ScheduleDayStatus


class CommissionSchedule(Base):
    __tablename__ = "commission_schedules"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    purchase_id: Mapped[int] = mapped_column(Integer, ForeignKey("purchases.id"), nullable=False, index=True)
    beneficiary_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    commission_type: Mapped[CommissionType] = mapped_column(Enum(CommissionType), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(10, 8), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[ScheduleStatus] = mapped_column(Enum(ScheduleStatus), default=ScheduleStatus.ACTIVE, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    days: Mapped[list["CommissionScheduleDay"]] = relationship(
        "CommissionScheduleDay", back_populates="schedule", order_by="CommissionScheduleDay.day_index"
    )
    purchase = relationship("Purchase")

    __table_args__ = (
        UniqueConstraint("purchase_id", "commission_type", name="uq_commission_schedule_purchase_type"),
    )


class CommissionScheduleDay(Base):
    __tablename__ = "commission_schedule_days"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    schedule_id: Mapped[int] = mapped_column(Integer, ForeignKey("commission_schedules.id"), nullable=False, index=True)
    day_index: Mapped[int] = mapped_column(Integer, nullable=False)
    release_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[ScheduleDayStatus] = mapped_column(Enum(ScheduleDayStatus), default=ScheduleDayStatus.PENDING, index=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ledger_entry_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("benefit_ledger.id"), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    schedule: Mapped["CommissionSchedule"] = relationship("CommissionSchedule", back_populates="days")

    __table_args__ = (
        UniqueConstraint("schedule_id", "day_index", name="uq_commission_schedule_day"),
    )

from __future__ import annotations
"""SQLAlchemy model for withdrawal requests (balance reservations pending admin decision)."""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Integer, String, DateTime, Numeric, Enum, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from accrual_engine.database import Base
from .enums import WithdrawalStatus


class Withdrawal(Base):
    __tablename__ = "withdrawals"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    withdrawal_code: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USDT")
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    network_fee: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    # amount + fee, held in UserBalance.reserved until decided
    total_reserved: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    destination_address: Mapped[str] = mapped_column(String, nullable=False)
    network: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(Enum(WithdrawalStatus), default=WithdrawalStatus.PENDING, index=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

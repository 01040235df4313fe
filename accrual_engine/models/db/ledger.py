from __future__ import annotations
"""SQLAlchemy model for benefit/commission ledger entries.

``idempotency_key`` is the unit-of-work identity:
  benefit     -> ``benefit:{purchase_id}:{cycle}:{day}:{YYYY-MM-DD}``
  commission  -> ``commission:{purchase_id}:{REFERRER|PARENT}:{day_index}``
"""
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy import Integer, String, Date, DateTime, Numeric, Enum, ForeignKey, Index
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.sql import func
from accrual_engine.database import Base
from .enums import LedgerEntryKind, LedgerEntryStatus


def benefit_idempotency_key(purchase_id: int, cycle: int, day: int, target: date) -> str:
    return f"benefit:{purchase_id}:{cycle}:{day}:{target.isoformat()}"


def commission_idempotency_key(purchase_id: int, commission_type: str, day_index: int) -> str:
    return f"commission:{purchase_id}:{commission_type}:{day_index}"


class BenefitLedgerEntry(Base):
    __tablename__ = "benefit_ledger"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    entry_code: Mapped[str] = mapped_column(String, unique=True)
    purchase_id: Mapped[int] = mapped_column(Integer, ForeignKey("purchases.id"), nullable=False, index=True)
    # Credited user: owner for BENEFIT, upline for REFERRER/PARENT
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    kind: Mapped[LedgerEntryKind] = mapped_column(Enum(LedgerEntryKind), nullable=False, index=True)

    cycle: Mapped[int | None] = mapped_column(Integer, nullable=True)
    day: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(10, 8), nullable=False)
    principal_snapshot: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USDT")

    status: Mapped[LedgerEntryStatus] = mapped_column(Enum(LedgerEntryStatus), default=LedgerEntryStatus.PROCESSED)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    purchase = relationship("Purchase")

    __table_args__ = (
        Index("ix_benefit_ledger_purchase_kind", "purchase_id", "kind"),
    )

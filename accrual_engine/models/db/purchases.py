from __future__ import annotations
"""SQLAlchemy models for purchases (principal-bearing contracts) and their licenses."""
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String, DateTime, Boolean, Numeric, Enum, ForeignKey, Text, CheckConstraint
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .users import User
    from .packages import Package
from sqlalchemy.sql import func
from accrual_engine.database import Base
from .enums import PurchaseStatus, LicenseStatus


class Purchase(Base):
    __tablename__ = "purchases"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    purchase_code: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    package_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("packages.id"), nullable=True)

    principal_amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USDT")
    status: Mapped[PurchaseStatus] = mapped_column(Enum(PurchaseStatus), default=PurchaseStatus.PENDING_PAYMENT, index=True)

    # Payment lifecycle
    tx_hash: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    payment_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Benefit plan snapshot, copied from the package at creation
    daily_rate: Mapped[Decimal] = mapped_column(Numeric(10, 8), nullable=False)
    days_per_cycle: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cycles: Mapped[int] = mapped_column(Integer, nullable=False)

    # Progress counters (0/0 until activation)
    current_cycle: Mapped[int] = mapped_column(Integer, default=0)
    current_day: Mapped[int] = mapped_column(Integer, default=0)
    total_benefits_paid: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=Decimal("0"))
    next_benefit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Set when license creation failed during confirmation; retried out of band
    license_pending: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    user: Mapped["User"] = relationship("User", back_populates="purchases", foreign_keys=[user_id])
    approved_by: Mapped["User | None"] = relationship("User", foreign_keys=[approved_by_id])
    package: Mapped["Package | None"] = relationship("Package")
    license: Mapped["License | None"] = relationship("License", back_populates="purchase", uselist=False)

    __table_args__ = (
        CheckConstraint("current_cycle >= 0 AND current_cycle <= total_cycles + 1", name="purchase_cycle_bounds"),
        CheckConstraint("current_day >= 0", name="purchase_day_non_negative"),
    )


class License(Base):
    """Entitlement derived from a confirmed purchase."""
    __tablename__ = "licenses"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    purchase_id: Mapped[int] = mapped_column(Integer, ForeignKey("purchases.id"), nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    principal_amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    status: Mapped[LicenseStatus] = mapped_column(Enum(LicenseStatus), default=LicenseStatus.ACTIVE, index=True)
    days_per_cycle: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cycles: Mapped[int] = mapped_column(Integer, nullable=False)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    purchase: Mapped["Purchase"] = relationship("Purchase", back_populates="license")

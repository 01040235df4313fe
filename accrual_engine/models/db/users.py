from __future__ import annotations
"""SQLAlchemy models for users (with referral link) and per-currency balances."""
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String, DateTime, Boolean, Numeric, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .purchases import Purchase
from sqlalchemy.sql import func
from accrual_engine.database import Base


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)

    # Direct referrer; the referrer's own referrer is the "parent" upline
    referred_by_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    referred_by: Mapped["User | None"] = relationship("User", remote_side=[id])
    purchases: Mapped[list["Purchase"]] = relationship("Purchase", back_populates="user", foreign_keys="Purchase.user_id")
    balances: Mapped[list["UserBalance"]] = relationship("UserBalance", back_populates="user")


class UserBalance(Base):
    """Mutated only through atomic ``UPDATE ... SET x = x + :delta`` statements."""
    __tablename__ = "user_balances"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USDT")
    available: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=Decimal("0"))
    reserved: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=Decimal("0"))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="balances")

    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_user_balance_currency"),
    )

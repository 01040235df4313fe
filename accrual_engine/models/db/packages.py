from __future__ import annotations
"""SQLAlchemy model for sellable packages (benefit plan templates)."""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Integer, String, DateTime, Boolean, Numeric
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from accrual_engine.database import Base


class Package(Base):
    __tablename__ = "packages"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Plan snapshot source; purchases copy these at creation time
    daily_rate: Mapped[Decimal] = mapped_column(Numeric(10, 8), nullable=False, default=Decimal("0.125"))
    days_per_cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=8)
    total_cycles: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    min_principal: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=Decimal("10"))
    max_principal: Mapped[Decimal | None] = mapped_column(Numeric(20, 8), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

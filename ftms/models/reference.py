"""Reference data owned by other FTMS modules and read by the revenue core."""

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import String, Numeric, Integer, Boolean, DateTime, JSON, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from ftms.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstallmentFrequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class RevenueCategory(Base):
    """Boundary, Percentage, Bus Rental, Other, ..."""
    __tablename__ = "revenue_categories"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PaymentStatus(Base):
    """Configurable payment status (Pending, Partially Paid, Paid, Overpaid, ...).

    ``applicable_modules`` lists the FTMS modules a status may be used in;
    the revenue core only accepts statuses that include ``"revenue"``.
    """
    __tablename__ = "payment_statuses"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    applicable_modules: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    def applies_to(self, module: str) -> bool:
        return module in (self.applicable_modules or [])


class SystemConfiguration(Base):
    """Admin-editable defaults for shortage receivables (single row)."""
    __tablename__ = "system_configuration"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    driver_share_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    conductor_share_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    default_frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    default_number_of_payments: Mapped[int] = mapped_column(Integer, nullable=False)
    receivable_due_date_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    updated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

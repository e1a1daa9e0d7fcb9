"""Local mirror of bus-trip assignments owned by the Operations system."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Numeric, Boolean, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ftms.database import Base
from ftms.models.reference import utcnow


class BusTripCache(Base):
    __tablename__ = "bus_trip_cache"
    __table_args__ = (
        UniqueConstraint("assignment_id", "bus_trip_id", name="uq_bus_trip_assignment"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    assignment_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    bus_trip_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    bus_plate_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    bus_route: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Boundary | Percentage | Bus Rental
    assignment_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    # Boundary: fixed fee. Percentage: company share as a fraction (0.22 == 22%).
    assignment_value: Mapped[Decimal | None] = mapped_column(Numeric(20, 4), nullable=True)
    trip_revenue: Mapped[Decimal | None] = mapped_column(Numeric(20, 4), nullable=True)
    trip_fuel_expense: Mapped[Decimal | None] = mapped_column(Numeric(20, 4), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    date_assigned: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    driver_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    driver_employee_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    conductor_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    conductor_employee_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    is_revenue_recorded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

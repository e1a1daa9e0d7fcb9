"""Shortage loans: per-employee receivables generated from Boundary shortfalls."""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String, Numeric, Integer, Enum, DateTime, Date, ForeignKey, Text,
    UniqueConstraint, CheckConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column

from ftms.database import Base
from ftms.models.reference import utcnow
from ftms.models.revenue import InstallmentStatus


class EmployeeRole(str, enum.Enum):
    DRIVER = "driver"
    CONDUCTOR = "conductor"
    OTHER = "other"


class LoanStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class ShortageLoan(Base):
    __tablename__ = "shortage_loans"
    __table_args__ = (
        UniqueConstraint("revenue_id", "employee_role", "employee_key", name="uq_loan_revenue_employee"),
        CheckConstraint("amount >= 0", name="ck_loan_amount_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    revenue_id: Mapped[int] = mapped_column(
        ForeignKey("revenue_records.id"), nullable=False, index=True
    )
    employee_role: Mapped[EmployeeRole] = mapped_column(Enum(EmployeeRole), nullable=False)
    # Upsert key inside a role: employee number when known, else a slug of the name
    employee_key: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    employee_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    employee_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Snapshot of the computation that produced the share
    assignment_value: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    trip_revenue: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    collected_amount: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    shortfall: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(20, 4), default=Decimal("0"), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    status: Mapped[LoanStatus] = mapped_column(
        Enum(LoanStatus), default=LoanStatus.PENDING, nullable=False
    )

    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    number_of_payments: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class LoanInstallment(Base):
    __tablename__ = "loan_installments"
    __table_args__ = (
        UniqueConstraint("loan_id", "installment_number", name="uq_loan_installment_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(
        ForeignKey("shortage_loans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_due: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(20, 4), default=Decimal("0"), nullable=False)
    status: Mapped[InstallmentStatus] = mapped_column(
        Enum(InstallmentStatus), default=InstallmentStatus.PENDING, nullable=False
    )


class LoanPayment(Base):
    __tablename__ = "loan_payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_loan_payment_amount_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(
        ForeignKey("shortage_loans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    installment_id: Mapped[int] = mapped_column(
        ForeignKey("loan_installments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    payment_method_id: Mapped[int] = mapped_column(ForeignKey("payment_methods.id"), nullable=False)
    paid_date: Mapped[date] = mapped_column(Date, nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

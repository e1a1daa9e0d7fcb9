"""Revenue record, installment and payment models."""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String, Numeric, Integer, Enum, DateTime, Date, ForeignKey, Text, Boolean,
    Index, UniqueConstraint, CheckConstraint, func, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ftms.database import Base
from ftms.models.reference import utcnow


class InstallmentStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERPAID = "overpaid"
    LATE = "late"


class RevenueRecord(Base):
    __tablename__ = "revenue_records"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_revenue_total_non_negative"),
        CheckConstraint("outstanding_balance >= 0", name="ck_revenue_outstanding_non_negative"),
        # Business-level uniqueness, enforced alongside the advisory lock in the repository
        Index(
            "uq_revenue_assignment_date_category",
            "assignment_id", "collection_date", "category_id",
            unique=True,
            postgresql_where=text("is_deleted = false AND assignment_id IS NOT NULL"),
        ),
        Index(
            "uq_revenue_category_amount_date",
            "category_id", "total_amount", "collection_date",
            unique=True,
            postgresql_where=text("is_deleted = false AND assignment_id IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    revenue_code: Mapped[str] = mapped_column(String(20), unique=True, index=True, nullable=False)

    # Bus trip linkage (mirrored from Operations)
    assignment_id: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    bus_trip_id: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)

    category_id: Mapped[int] = mapped_column(ForeignKey("revenue_categories.id"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    collection_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payment_method_id: Mapped[int | None] = mapped_column(
        ForeignKey("payment_methods.id"), nullable=True, index=True
    )
    payment_status_id: Mapped[int] = mapped_column(ForeignKey("payment_statuses.id"), nullable=False)

    # Accounts receivable
    is_receivable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payer_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    interest_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    outstanding_balance: Mapped[Decimal] = mapped_column(
        Numeric(20, 4), default=Decimal("0"), nullable=False
    )

    remarks: Mapped[str] = mapped_column(String(500), nullable=False)
    source_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class RevenueInstallment(Base):
    __tablename__ = "revenue_installments"
    __table_args__ = (
        UniqueConstraint("revenue_id", "installment_number", name="uq_revenue_installment_number"),
        CheckConstraint("amount_due > 0", name="ck_installment_amount_due_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    revenue_id: Mapped[int] = mapped_column(
        ForeignKey("revenue_records.id"), nullable=False, index=True
    )
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_due: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(20, 4), default=Decimal("0"), nullable=False)
    status: Mapped[InstallmentStatus] = mapped_column(
        Enum(InstallmentStatus), default=InstallmentStatus.PENDING, nullable=False
    )
    payment_method_id: Mapped[int | None] = mapped_column(ForeignKey("payment_methods.id"), nullable=True)
    payment_status_id: Mapped[int | None] = mapped_column(ForeignKey("payment_statuses.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class RevenuePayment(Base):
    __tablename__ = "revenue_payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_revenue_payment_amount_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    revenue_id: Mapped[int] = mapped_column(
        ForeignKey("revenue_records.id"), nullable=False, index=True
    )
    installment_id: Mapped[int | None] = mapped_column(
        ForeignKey("revenue_installments.id"), nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    payment_method_id: Mapped[int] = mapped_column(ForeignKey("payment_methods.id"), nullable=False)
    payment_status_id: Mapped[int] = mapped_column(ForeignKey("payment_statuses.id"), nullable=False)
    paid_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class RevenueAttachment(Base):
    __tablename__ = "revenue_attachments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    revenue_id: Mapped[int] = mapped_column(
        ForeignKey("revenue_records.id"), nullable=False, index=True
    )
    file_id: Mapped[str] = mapped_column(String(255), nullable=False)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

"""Seed reference data for the revenue core (development only)."""

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ftms.config import settings
from ftms.models.reference import (
    PaymentMethod,
    PaymentStatus,
    RevenueCategory,
    SystemConfiguration,
)

logger = logging.getLogger(__name__)


DEFAULT_CATEGORIES = [
    ("Boundary", "Fixed daily fee remitted by the crew"),
    ("Percentage", "Company share of the trip revenue"),
    ("Bus Rental", "Charter and rental income"),
    ("Other", None),
]

DEFAULT_STATUSES = [
    ("Pending", ["revenue", "expense"]),
    ("Partially Paid", ["revenue", "expense"]),
    ("Paid", ["revenue", "expense"]),
    ("Overpaid", ["revenue"]),
]

DEFAULT_METHODS = [
    ("CASH", "Cash"),
    ("BANK_TRANSFER", "Bank Transfer"),
    ("E_WALLET", "E-Wallet"),
    ("REIMBURSEMENT", "Reimbursement"),
]


async def _ensure_category(db: AsyncSession, name: str, description: str | None) -> None:
    res = await db.execute(select(RevenueCategory).where(RevenueCategory.name == name))
    if res.scalar_one_or_none():
        return
    db.add(RevenueCategory(name=name, description=description, is_active=True))


async def _ensure_status(db: AsyncSession, name: str, modules: list[str]) -> None:
    res = await db.execute(select(PaymentStatus).where(PaymentStatus.name == name))
    if res.scalars().first():
        return
    db.add(PaymentStatus(name=name, applicable_modules=modules))


async def _ensure_method(db: AsyncSession, code: str, name: str) -> None:
    res = await db.execute(select(PaymentMethod).where(PaymentMethod.code == code))
    if res.scalar_one_or_none():
        return
    db.add(PaymentMethod(code=code, name=name, is_active=True))


async def _ensure_system_config(db: AsyncSession) -> None:
    res = await db.execute(select(SystemConfiguration).limit(1))
    if res.scalar_one_or_none():
        return
    db.add(SystemConfiguration(
        driver_share_percentage=Decimal(str(settings.default_driver_share_percentage)),
        conductor_share_percentage=Decimal(str(settings.default_conductor_share_percentage)),
        default_frequency=settings.default_installment_frequency,
        default_number_of_payments=settings.default_number_of_payments,
        receivable_due_date_days=settings.receivable_due_date_days,
        updated_by="seed",
    ))


async def seed_reference_data(db: AsyncSession) -> None:
    for name, description in DEFAULT_CATEGORIES:
        await _ensure_category(db, name, description)
    for name, modules in DEFAULT_STATUSES:
        await _ensure_status(db, name, modules)
    for code, name in DEFAULT_METHODS:
        await _ensure_method(db, code, name)
    await _ensure_system_config(db)
    await db.commit()
    logger.info("Reference data seeded")

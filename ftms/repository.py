"""Typed persistence boundary for the revenue aggregate.

``RevenueStore`` wraps one request-scoped ``AsyncSession``.  Services never
touch the session directly: they go through the store so that row locks,
advisory locks and integrity-error mapping stay in one place.
"""

import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Optional, Sequence

from sqlalchemy import select, delete, update, func, text, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ftms.models.audit import AuditLog
from ftms.models.bus_trip import BusTripCache
from ftms.models.loan import ShortageLoan, LoanInstallment, LoanPayment
from ftms.models.reference import (
    RevenueCategory, PaymentMethod, PaymentStatus, SystemConfiguration,
)
from ftms.models.revenue import (
    RevenueRecord, RevenueInstallment, RevenuePayment, RevenueAttachment,
)
from ftms.services.errors import ConflictError

logger = logging.getLogger(__name__)

REVENUE_MODULE = "revenue"
CODE_PREFIX = "REV-"

# Unique indexes that back duplicate detection; other violations are real errors.
DUPLICATE_CONSTRAINTS = frozenset({
    "uq_revenue_assignment_date_category",
    "uq_revenue_category_amount_date",
    "ix_revenue_records_revenue_code",
})

SORT_COLUMNS = {
    "code": RevenueRecord.revenue_code,
    "date": RevenueRecord.collection_date,
    "amount": RevenueRecord.total_amount,
}


def is_duplicate_violation(exc: IntegrityError) -> bool:
    """True when *exc* was raised by one of the duplicate-detection indexes.

    asyncpg sets ``constraint_name`` on the driver error; PostgreSQL drivers
    without it still name the constraint in the message.
    """
    orig = exc.orig
    for err in (orig, getattr(orig, "__cause__", None)):
        name = getattr(err, "constraint_name", None)
        if name:
            return name in DUPLICATE_CONSTRAINTS
    message = str(orig)
    return any(name in message for name in DUPLICATE_CONSTRAINTS)


@dataclass
class RevenueQuery:
    page: int = 1
    limit: int = 20
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    category_id: Optional[int] = None
    payment_status_id: Optional[int] = None
    is_receivable: Optional[bool] = None
    search: Optional[str] = None
    sort_by: str = "date"
    descending: bool = True


class RevenueStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Unit of work ──────────────────────────────────────────────

    async def flush(self) -> None:
        try:
            await self.session.flush()
        except IntegrityError as exc:
            if is_duplicate_violation(exc):
                raise ConflictError("Duplicate revenue transaction") from exc
            raise

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            if is_duplicate_violation(exc):
                raise ConflictError("Duplicate revenue transaction") from exc
            raise

    async def rollback(self) -> None:
        await self.session.rollback()

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        """Nested transaction; an exception rolls back only the savepoint."""
        async with self.session.begin_nested():
            yield

    async def lock_key(self, key: str) -> None:
        """Transaction-scoped advisory lock on an arbitrary business key."""
        if self.session.bind is None or self.session.bind.dialect.name != "postgresql":
            return
        digest = hashlib.sha1(key.encode("utf-8")).digest()
        lock_id = int.from_bytes(digest[:8], "big", signed=True)
        await self.session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": lock_id})

    # ── Reference data ────────────────────────────────────────────

    async def get_category(self, category_id: int) -> Optional[RevenueCategory]:
        return await self.session.get(RevenueCategory, category_id)

    async def get_category_by_name(self, name: str) -> Optional[RevenueCategory]:
        result = await self.session.execute(
            select(RevenueCategory).where(func.lower(RevenueCategory.name) == name.lower())
        )
        return result.scalar_one_or_none()

    async def get_payment_method(self, method_id: int) -> Optional[PaymentMethod]:
        return await self.session.get(PaymentMethod, method_id)

    async def get_payment_method_by_code(self, code: str) -> Optional[PaymentMethod]:
        result = await self.session.execute(
            select(PaymentMethod).where(func.upper(PaymentMethod.code) == code.upper())
        )
        return result.scalar_one_or_none()

    async def get_payment_status(self, status_id: int) -> Optional[PaymentStatus]:
        return await self.session.get(PaymentStatus, status_id)

    async def get_payment_status_by_name(self, name: str) -> Optional[PaymentStatus]:
        result = await self.session.execute(
            select(PaymentStatus)
            .where(func.lower(PaymentStatus.name) == name.lower())
            .order_by(PaymentStatus.id)
        )
        for status in result.scalars().all():
            if status.applies_to(REVENUE_MODULE):
                return status
        return None

    async def get_system_config(self) -> Optional[SystemConfiguration]:
        result = await self.session.execute(
            select(SystemConfiguration).order_by(SystemConfiguration.id).limit(1)
        )
        return result.scalar_one_or_none()

    async def add_system_config(self, config: SystemConfiguration) -> SystemConfiguration:
        self.session.add(config)
        await self.session.flush()
        return config

    # ── Bus-trip cache ────────────────────────────────────────────

    async def get_bus_trip(
        self, bus_trip_id: str, assignment_id: Optional[str] = None
    ) -> Optional[BusTripCache]:
        stmt = select(BusTripCache).where(
            BusTripCache.bus_trip_id == bus_trip_id, BusTripCache.is_deleted.is_(False)
        )
        if assignment_id:
            stmt = stmt.where(BusTripCache.assignment_id == assignment_id)
        result = await self.session.execute(stmt.order_by(BusTripCache.id).limit(1))
        return result.scalar_one_or_none()

    async def get_assignment(self, assignment_id: str) -> Optional[BusTripCache]:
        result = await self.session.execute(
            select(BusTripCache)
            .where(BusTripCache.assignment_id == assignment_id, BusTripCache.is_deleted.is_(False))
            .order_by(BusTripCache.date_assigned.desc(), BusTripCache.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add_bus_trip(self, trip: BusTripCache) -> BusTripCache:
        self.session.add(trip)
        await self.session.flush()
        return trip

    async def list_unrecorded_trips(
        self, limit: int = 50, offset: int = 0, assignment_type: Optional[str] = None
    ) -> tuple[list[BusTripCache], int]:
        conditions = [
            BusTripCache.is_deleted.is_(False),
            BusTripCache.is_revenue_recorded.is_(False),
        ]
        if assignment_type:
            conditions.append(func.lower(BusTripCache.assignment_type) == assignment_type.lower())
        total = (
            await self.session.execute(select(func.count(BusTripCache.id)).where(*conditions))
        ).scalar() or 0
        result = await self.session.execute(
            select(BusTripCache)
            .where(*conditions)
            .order_by(BusTripCache.date_assigned.desc(), BusTripCache.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    # ── Revenue records ───────────────────────────────────────────

    async def get_revenue(
        self, revenue_id: int, *, for_update: bool = False
    ) -> Optional[RevenueRecord]:
        stmt = select(RevenueRecord).where(RevenueRecord.id == revenue_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_revenue_by_code(
        self, revenue_code: str, *, for_update: bool = False
    ) -> Optional[RevenueRecord]:
        stmt = select(RevenueRecord).where(RevenueRecord.revenue_code == revenue_code)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_duplicate(
        self,
        *,
        category_id: int,
        collection_date: datetime,
        assignment_id: Optional[str] = None,
        total_amount: Optional[Decimal] = None,
        exclude_id: Optional[int] = None,
    ) -> Optional[RevenueRecord]:
        """Non-deleted record sharing the business key of a new transaction.

        Linked records are keyed by (assignment_id, collection_date, category);
        unlinked ones by (category, total_amount, collection_date).
        """
        stmt = select(RevenueRecord).where(
            RevenueRecord.is_deleted.is_(False),
            RevenueRecord.category_id == category_id,
            RevenueRecord.collection_date == collection_date,
        )
        if assignment_id:
            stmt = stmt.where(RevenueRecord.assignment_id == assignment_id)
        else:
            stmt = stmt.where(
                RevenueRecord.assignment_id.is_(None),
                RevenueRecord.total_amount == total_amount,
            )
        if exclude_id is not None:
            stmt = stmt.where(RevenueRecord.id != exclude_id)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def find_by_bus_trip(
        self, bus_trip_id: str, assignment_id: Optional[str] = None
    ) -> Optional[RevenueRecord]:
        stmt = select(RevenueRecord).where(
            RevenueRecord.bus_trip_id == bus_trip_id, RevenueRecord.is_deleted.is_(False)
        )
        if assignment_id:
            stmt = stmt.where(RevenueRecord.assignment_id == assignment_id)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def next_revenue_code(self) -> str:
        """REV-00001, REV-00002, ...  Serialised by an advisory lock on the prefix."""
        await self.lock_key(CODE_PREFIX)
        result = await self.session.execute(
            select(func.max(RevenueRecord.revenue_code))
            .where(RevenueRecord.revenue_code.like(f"{CODE_PREFIX}%"))
        )
        last = result.scalar_one_or_none()
        seq = int(last.replace(CODE_PREFIX, "")) + 1 if last else 1
        return f"{CODE_PREFIX}{seq:05d}"

    async def add_revenue(self, record: RevenueRecord) -> RevenueRecord:
        self.session.add(record)
        await self.flush()
        return record

    async def remove_revenue(self, record: RevenueRecord) -> None:
        """Hard delete; only used to compensate a failed create."""
        await self.session.execute(
            delete(RevenueInstallment).where(RevenueInstallment.revenue_id == record.id)
        )
        await self.session.delete(record)
        await self.session.flush()

    async def list_revenues(self, query: RevenueQuery) -> tuple[list[RevenueRecord], int]:
        conditions = [RevenueRecord.is_deleted.is_(False)]
        if query.date_from:
            conditions.append(RevenueRecord.collection_date >= query.date_from)
        if query.date_to:
            conditions.append(RevenueRecord.collection_date < query.date_to)
        if query.category_id:
            conditions.append(RevenueRecord.category_id == query.category_id)
        if query.payment_status_id:
            conditions.append(RevenueRecord.payment_status_id == query.payment_status_id)
        if query.is_receivable is not None:
            conditions.append(RevenueRecord.is_receivable.is_(query.is_receivable))
        if query.search:
            pattern = f"%{query.search}%"
            conditions.append(or_(
                RevenueRecord.revenue_code.ilike(pattern),
                RevenueRecord.remarks.ilike(pattern),
                RevenueRecord.payer_name.ilike(pattern),
            ))

        total = (
            await self.session.execute(select(func.count(RevenueRecord.id)).where(*conditions))
        ).scalar() or 0

        column = SORT_COLUMNS.get(query.sort_by, RevenueRecord.collection_date)
        order = column.desc() if query.descending else column.asc()
        result = await self.session.execute(
            select(RevenueRecord)
            .where(*conditions)
            .order_by(order, RevenueRecord.id.desc())
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        )
        return list(result.scalars().all()), total

    # ── Installments and payments ─────────────────────────────────

    async def get_installment(self, installment_id: int) -> Optional[RevenueInstallment]:
        return await self.session.get(RevenueInstallment, installment_id)

    async def list_installments(self, revenue_id: int) -> list[RevenueInstallment]:
        result = await self.session.execute(
            select(RevenueInstallment)
            .where(RevenueInstallment.revenue_id == revenue_id)
            .order_by(RevenueInstallment.installment_number)
        )
        return list(result.scalars().all())

    async def add_installments(
        self, installments: Sequence[RevenueInstallment]
    ) -> list[RevenueInstallment]:
        self.session.add_all(installments)
        await self.flush()
        return list(installments)

    async def add_payment(self, payment: RevenuePayment) -> RevenuePayment:
        self.session.add(payment)
        await self.flush()
        return payment

    async def list_payments(self, revenue_id: int) -> list[RevenuePayment]:
        result = await self.session.execute(
            select(RevenuePayment)
            .where(RevenuePayment.revenue_id == revenue_id)
            .order_by(RevenuePayment.paid_date, RevenuePayment.id)
        )
        return list(result.scalars().all())

    async def sum_payments(self, revenue_id: int) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(RevenuePayment.amount), 0))
            .where(RevenuePayment.revenue_id == revenue_id)
        )
        return Decimal(str(result.scalar() or 0))

    async def sum_installment_payments(self, installment_id: int) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(RevenuePayment.amount), 0))
            .where(RevenuePayment.installment_id == installment_id)
        )
        return Decimal(str(result.scalar() or 0))

    async def has_payment_with_status(self, revenue_id: int, status_id: int) -> bool:
        result = await self.session.execute(
            select(func.count(RevenuePayment.id)).where(
                RevenuePayment.revenue_id == revenue_id,
                RevenuePayment.payment_status_id == status_id,
            )
        )
        return (result.scalar() or 0) > 0

    # ── Shortage loans ────────────────────────────────────────────

    async def list_loans(self, revenue_id: Optional[int] = None) -> list[ShortageLoan]:
        stmt = select(ShortageLoan)
        if revenue_id is not None:
            stmt = stmt.where(ShortageLoan.revenue_id == revenue_id)
        result = await self.session.execute(stmt.order_by(ShortageLoan.id))
        return list(result.scalars().all())

    async def get_loan(self, loan_id: int, *, for_update: bool = False) -> Optional[ShortageLoan]:
        stmt = select(ShortageLoan).where(ShortageLoan.id == loan_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_loan(self, loan: ShortageLoan) -> ShortageLoan:
        self.session.add(loan)
        await self.flush()
        return loan

    async def remove_loan(self, loan: ShortageLoan) -> None:
        await self.session.execute(delete(LoanInstallment).where(LoanInstallment.loan_id == loan.id))
        await self.session.delete(loan)
        await self.session.flush()

    async def get_loan_installment(self, installment_id: int) -> Optional[LoanInstallment]:
        return await self.session.get(LoanInstallment, installment_id)

    async def list_loan_installments(self, loan_id: int) -> list[LoanInstallment]:
        result = await self.session.execute(
            select(LoanInstallment)
            .where(LoanInstallment.loan_id == loan_id)
            .order_by(LoanInstallment.installment_number)
        )
        return list(result.scalars().all())

    async def add_loan_installments(
        self, installments: Sequence[LoanInstallment]
    ) -> list[LoanInstallment]:
        self.session.add_all(installments)
        await self.session.flush()
        return list(installments)

    async def remove_loan_installments(self, installments: Sequence[LoanInstallment]) -> None:
        for inst in installments:
            await self.session.delete(inst)
        await self.session.flush()

    async def add_loan_payment(self, payment: LoanPayment) -> LoanPayment:
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def list_loan_payments(self, loan_id: int) -> list[LoanPayment]:
        result = await self.session.execute(
            select(LoanPayment).where(LoanPayment.loan_id == loan_id).order_by(LoanPayment.id)
        )
        return list(result.scalars().all())

    # ── Attachments ───────────────────────────────────────────────

    async def add_attachment(self, attachment: RevenueAttachment) -> RevenueAttachment:
        self.session.add(attachment)
        await self.session.flush()
        return attachment

    async def list_attachments(
        self, revenue_id: int, *, include_deleted: bool = False
    ) -> list[RevenueAttachment]:
        stmt = select(RevenueAttachment).where(RevenueAttachment.revenue_id == revenue_id)
        if not include_deleted:
            stmt = stmt.where(RevenueAttachment.is_deleted.is_(False))
        result = await self.session.execute(stmt.order_by(RevenueAttachment.id))
        return list(result.scalars().all())

    async def soft_delete_attachments(self, revenue_id: int) -> int:
        result = await self.session.execute(
            update(RevenueAttachment)
            .where(RevenueAttachment.revenue_id == revenue_id, RevenueAttachment.is_deleted.is_(False))
            .values(is_deleted=True)
        )
        return result.rowcount or 0

    async def remove_attachments(self, attachment_ids: Sequence[int]) -> None:
        if not attachment_ids:
            return
        await self.session.execute(
            delete(RevenueAttachment).where(RevenueAttachment.id.in_(list(attachment_ids)))
        )
        await self.session.flush()

    # ── Audit ─────────────────────────────────────────────────────

    async def add_audit(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        *,
        performed_by: Optional[str] = None,
        old_values: Optional[dict[str, Any]] = None,
        new_values: Optional[dict[str, Any]] = None,
        details: Optional[str] = None,
    ) -> AuditLog:
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            performed_by=performed_by,
            old_values=old_values,
            new_values=new_values,
            details=details,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

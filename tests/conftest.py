"""Shared fixtures: an in-memory ``RevenueStore`` double and seeded reference data.

``FakeStore`` mirrors the public surface of :class:`ftms.repository.RevenueStore`
over plain dicts.  ``commit`` snapshots every row's column values and
``rollback`` restores them, so compensation paths can be exercised without a
database.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

from ftms.models.audit import AuditLog
from ftms.models.bus_trip import BusTripCache
from ftms.models.reference import (
    PaymentMethod, PaymentStatus, RevenueCategory, SystemConfiguration,
)
from ftms.services.revenue_calc import ZERO

_TABLES = (
    "categories", "methods", "statuses", "configs", "trips", "revenues",
    "installments", "payments", "loans", "loan_installments", "loan_payments",
    "attachments", "audits",
)
_STAMPS = ("created_at", "updated_at", "uploaded_at", "synced_at")


def _columns(obj) -> dict:
    return {k: v for k, v in vars(obj).items() if not k.startswith("_")}


class FakeSession:
    """Stands in for the AsyncSession that ``log_error`` writes to."""

    def __init__(self):
        self.added = []

    def add(self, obj):
        self.added.append(obj)

    async def flush(self):
        return None


class FakeStore:
    def __init__(self):
        self.session = FakeSession()
        self.commits = 0
        self.rollbacks = 0
        self.locked_keys: list[str] = []
        self._next_id = 0
        for name in _TABLES:
            setattr(self, name, {})
        self._committed = self._capture()

    # ── Bookkeeping ───────────────────────────────────────────────

    def _capture(self) -> dict:
        return {
            name: {pk: (obj, _columns(obj)) for pk, obj in getattr(self, name).items()}
            for name in _TABLES
        }

    def _restore(self, state: dict) -> None:
        for name, rows in state.items():
            table = {}
            for pk, (obj, values) in rows.items():
                for key, value in values.items():
                    setattr(obj, key, value)
                table[pk] = obj
            setattr(self, name, table)

    def _insert(self, table: str, obj):
        self._next_id += 1
        if getattr(obj, "id", None) is None:
            obj.id = self._next_id
        now = datetime.now(timezone.utc)
        for stamp in _STAMPS:
            if hasattr(type(obj), stamp) and getattr(obj, stamp, None) is None:
                setattr(obj, stamp, now)
        getattr(self, table)[obj.id] = obj
        return obj

    # ── Unit of work ──────────────────────────────────────────────

    async def flush(self):
        return None

    async def commit(self):
        self.commits += 1
        self._committed = self._capture()

    async def rollback(self):
        self.rollbacks += 1
        self._restore(self._committed)

    @asynccontextmanager
    async def savepoint(self):
        state = self._capture()
        try:
            yield
        except Exception:
            self._restore(state)
            raise

    async def lock_key(self, key: str):
        self.locked_keys.append(key)

    # ── Reference data ────────────────────────────────────────────

    async def get_category(self, category_id):
        return self.categories.get(category_id)

    async def get_category_by_name(self, name):
        return next(
            (c for c in self.categories.values() if c.name.lower() == name.lower()), None
        )

    async def get_payment_method(self, method_id):
        return self.methods.get(method_id)

    async def get_payment_method_by_code(self, code):
        return next((m for m in self.methods.values() if m.code.upper() == code.upper()), None)

    async def get_payment_status(self, status_id):
        return self.statuses.get(status_id)

    async def get_payment_status_by_name(self, name):
        return next(
            (s for s in sorted(self.statuses.values(), key=lambda s: s.id)
             if s.name.lower() == name.lower() and s.applies_to("revenue")),
            None,
        )

    async def get_system_config(self):
        return next(iter(sorted(self.configs.values(), key=lambda c: c.id)), None)

    async def add_system_config(self, config):
        return self._insert("configs", config)

    # ── Bus-trip cache ────────────────────────────────────────────

    async def get_bus_trip(self, bus_trip_id, assignment_id=None):
        for trip in sorted(self.trips.values(), key=lambda t: t.id):
            if trip.bus_trip_id != bus_trip_id or trip.is_deleted:
                continue
            if assignment_id and trip.assignment_id != assignment_id:
                continue
            return trip
        return None

    async def get_assignment(self, assignment_id):
        matches = [
            t for t in self.trips.values()
            if t.assignment_id == assignment_id and not t.is_deleted
        ]
        matches.sort(key=lambda t: (t.date_assigned or datetime.min.replace(tzinfo=timezone.utc), t.id))
        return matches[-1] if matches else None

    async def add_bus_trip(self, trip):
        if trip.is_deleted is None:
            trip.is_deleted = False
        if trip.is_revenue_recorded is None:
            trip.is_revenue_recorded = False
        return self._insert("trips", trip)

    async def list_unrecorded_trips(self, limit=50, offset=0, assignment_type=None):
        rows = [
            t for t in self.trips.values()
            if not t.is_deleted and not t.is_revenue_recorded
            and (not assignment_type or (t.assignment_type or "").lower() == assignment_type.lower())
        ]
        rows.sort(key=lambda t: t.id, reverse=True)
        return rows[offset:offset + limit], len(rows)

    # ── Revenue records ───────────────────────────────────────────

    async def get_revenue(self, revenue_id, *, for_update=False):
        return self.revenues.get(revenue_id)

    async def get_revenue_by_code(self, revenue_code, *, for_update=False):
        return next((r for r in self.revenues.values() if r.revenue_code == revenue_code), None)

    async def find_duplicate(
        self, *, category_id, collection_date, assignment_id=None, total_amount=None, exclude_id=None
    ):
        for r in self.revenues.values():
            if r.is_deleted or r.id == exclude_id:
                continue
            if r.category_id != category_id or r.collection_date != collection_date:
                continue
            if assignment_id:
                if r.assignment_id == assignment_id:
                    return r
            elif r.assignment_id is None and r.total_amount == total_amount:
                return r
        return None

    async def find_by_bus_trip(self, bus_trip_id, assignment_id=None):
        for r in self.revenues.values():
            if r.bus_trip_id == bus_trip_id and not r.is_deleted:
                if not assignment_id or r.assignment_id == assignment_id:
                    return r
        return None

    async def next_revenue_code(self):
        numbers = [int(r.revenue_code.replace("REV-", "")) for r in self.revenues.values()]
        return f"REV-{max(numbers, default=0) + 1:05d}"

    async def add_revenue(self, record):
        return self._insert("revenues", record)

    async def remove_revenue(self, record):
        for inst in [i for i in self.installments.values() if i.revenue_id == record.id]:
            del self.installments[inst.id]
        self.revenues.pop(record.id, None)

    async def list_revenues(self, query):
        rows = [r for r in self.revenues.values() if not r.is_deleted]
        if query.date_from:
            rows = [r for r in rows if r.collection_date >= query.date_from]
        if query.date_to:
            rows = [r for r in rows if r.collection_date < query.date_to]
        if query.category_id:
            rows = [r for r in rows if r.category_id == query.category_id]
        if query.payment_status_id:
            rows = [r for r in rows if r.payment_status_id == query.payment_status_id]
        if query.is_receivable is not None:
            rows = [r for r in rows if r.is_receivable == query.is_receivable]
        if query.search:
            needle = query.search.lower()
            rows = [
                r for r in rows
                if needle in r.revenue_code.lower()
                or needle in (r.remarks or "").lower()
                or needle in (r.payer_name or "").lower()
            ]
        column = {"code": "revenue_code", "date": "collection_date", "amount": "total_amount"}[query.sort_by]
        rows.sort(key=lambda r: (getattr(r, column), r.id), reverse=query.descending)
        start = (query.page - 1) * query.limit
        return rows[start:start + query.limit], len(rows)

    # ── Installments and payments ─────────────────────────────────

    async def get_installment(self, installment_id):
        return self.installments.get(installment_id)

    async def list_installments(self, revenue_id):
        rows = [i for i in self.installments.values() if i.revenue_id == revenue_id]
        return sorted(rows, key=lambda i: i.installment_number)

    async def add_installments(self, installments):
        return [self._insert("installments", i) for i in installments]

    async def add_payment(self, payment):
        return self._insert("payments", payment)

    async def list_payments(self, revenue_id):
        rows = [p for p in self.payments.values() if p.revenue_id == revenue_id]
        return sorted(rows, key=lambda p: (p.paid_date, p.id))

    async def sum_payments(self, revenue_id):
        return sum((p.amount for p in self.payments.values() if p.revenue_id == revenue_id), ZERO)

    async def sum_installment_payments(self, installment_id):
        return sum(
            (p.amount for p in self.payments.values() if p.installment_id == installment_id), ZERO
        )

    async def has_payment_with_status(self, revenue_id, status_id):
        return any(
            p.revenue_id == revenue_id and p.payment_status_id == status_id
            for p in self.payments.values()
        )

    # ── Shortage loans ────────────────────────────────────────────

    async def list_loans(self, revenue_id=None):
        rows = [l for l in self.loans.values() if revenue_id is None or l.revenue_id == revenue_id]
        return sorted(rows, key=lambda l: l.id)

    async def get_loan(self, loan_id, *, for_update=False):
        return self.loans.get(loan_id)

    async def add_loan(self, loan):
        return self._insert("loans", loan)

    async def remove_loan(self, loan):
        for inst in [i for i in self.loan_installments.values() if i.loan_id == loan.id]:
            del self.loan_installments[inst.id]
        self.loans.pop(loan.id, None)

    async def get_loan_installment(self, installment_id):
        return self.loan_installments.get(installment_id)

    async def list_loan_installments(self, loan_id):
        rows = [i for i in self.loan_installments.values() if i.loan_id == loan_id]
        return sorted(rows, key=lambda i: i.installment_number)

    async def add_loan_installments(self, installments):
        return [self._insert("loan_installments", i) for i in installments]

    async def remove_loan_installments(self, installments):
        for inst in installments:
            self.loan_installments.pop(inst.id, None)

    async def add_loan_payment(self, payment):
        return self._insert("loan_payments", payment)

    async def list_loan_payments(self, loan_id):
        return sorted(
            (p for p in self.loan_payments.values() if p.loan_id == loan_id), key=lambda p: p.id
        )

    # ── Attachments ───────────────────────────────────────────────

    async def add_attachment(self, attachment):
        return self._insert("attachments", attachment)

    async def list_attachments(self, revenue_id, *, include_deleted=False):
        rows = [
            a for a in self.attachments.values()
            if a.revenue_id == revenue_id and (include_deleted or not a.is_deleted)
        ]
        return sorted(rows, key=lambda a: a.id)

    async def soft_delete_attachments(self, revenue_id):
        count = 0
        for a in self.attachments.values():
            if a.revenue_id == revenue_id and not a.is_deleted:
                a.is_deleted = True
                count += 1
        return count

    async def remove_attachments(self, attachment_ids):
        for pk in attachment_ids:
            self.attachments.pop(pk, None)

    # ── Audit ─────────────────────────────────────────────────────

    async def add_audit(
        self, entity_type, entity_id, action, *,
        performed_by=None, old_values=None, new_values=None, details=None,
    ):
        return self._insert("audits", AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            performed_by=performed_by,
            old_values=old_values,
            new_values=new_values,
            details=details,
        ))


# ═══════════════════════════════════════════════════════════════════════════
# Seeded reference data
# ═══════════════════════════════════════════════════════════════════════════

BOUNDARY_ID, PERCENTAGE_ID, BUS_RENTAL_ID, OTHER_ID = 1, 2, 3, 4
PENDING_ID, PARTIAL_ID, PAID_ID, OVERPAID_ID, EXPENSE_ONLY_ID = 1, 2, 3, 4, 5
CASH_ID, BANK_ID = 1, 2


def seed_reference(store: FakeStore) -> FakeStore:
    for pk, name in ((BOUNDARY_ID, "Boundary"), (PERCENTAGE_ID, "Percentage"),
                     (BUS_RENTAL_ID, "Bus Rental"), (OTHER_ID, "Other")):
        store.categories[pk] = RevenueCategory(id=pk, name=name, is_active=True)
    for pk, name, modules in (
        (PENDING_ID, "Pending", ["revenue", "expense"]),
        (PARTIAL_ID, "Partially Paid", ["revenue", "expense"]),
        (PAID_ID, "Paid", ["revenue", "expense"]),
        (OVERPAID_ID, "Overpaid", ["revenue"]),
        (EXPENSE_ONLY_ID, "Reimbursed", ["expense"]),
    ):
        store.statuses[pk] = PaymentStatus(id=pk, name=name, applicable_modules=modules)
    for pk, code, name in ((CASH_ID, "CASH", "Cash"), (BANK_ID, "BANK_TRANSFER", "Bank Transfer")):
        store.methods[pk] = PaymentMethod(id=pk, code=code, name=name, is_active=True)
    store._next_id = 100
    store._committed = store._capture()
    return store


def make_trip(
    store: FakeStore,
    *,
    assignment_id: str = "ASG-001",
    bus_trip_id: str = "BT-001",
    assignment_type: str = "Boundary",
    assignment_value: str = "2000",
    trip_revenue: str = "2200",
    trip_fuel_expense: Optional[str] = None,
    payment_method: Optional[str] = "CASH",
    days_ago: int = 1,
) -> BusTripCache:
    trip = BusTripCache(
        assignment_id=assignment_id,
        bus_trip_id=bus_trip_id,
        bus_plate_number="ABC-1234",
        bus_route="Cubao - Baclaran",
        assignment_type=assignment_type,
        assignment_value=Decimal(assignment_value),
        trip_revenue=Decimal(trip_revenue),
        trip_fuel_expense=Decimal(trip_fuel_expense) if trip_fuel_expense else None,
        payment_method=payment_method,
        date_assigned=datetime.now(timezone.utc) - timedelta(days=days_ago),
        driver_name="Juan Dela Cruz",
        driver_employee_number="EMP-100",
        conductor_name="Pedro Santos",
        conductor_employee_number="EMP-200",
        is_revenue_recorded=False,
        is_deleted=False,
    )
    store._insert("trips", trip)
    store._committed = store._capture()
    return trip


def set_config(store: FakeStore, driver: str = "50", conductor: str = "50",
               frequency: str = "weekly", payments: int = 3) -> SystemConfiguration:
    config = SystemConfiguration(
        driver_share_percentage=Decimal(driver),
        conductor_share_percentage=Decimal(conductor),
        default_frequency=frequency,
        default_number_of_payments=payments,
        receivable_due_date_days=7,
    )
    store._insert("configs", config)
    store._committed = store._capture()
    return config


@pytest.fixture
def store() -> FakeStore:
    return seed_reference(FakeStore())


@pytest.fixture
def boundary_trip(store) -> BusTripCache:
    return make_trip(store)

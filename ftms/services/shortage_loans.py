"""Shortage loans for Boundary revenue.

When a crew remits less than the boundary fee, the gap is split between the
driver, the conductor and any additional employees, and each share becomes a
loan repaid in installments.  Loans for a revenue are upserted on every
create or amount change and clamped so their principals never sum above the
revenue's outstanding balance.

Loan generation is a secondary effect: callers that run it after the primary
write catch its errors and report them as warnings.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from ftms.config import settings
from ftms.models.bus_trip import BusTripCache
from ftms.models.loan import (
    EmployeeRole, LoanStatus, ShortageLoan, LoanInstallment, LoanPayment,
)
from ftms.models.reference import InstallmentFrequency
from ftms.models.revenue import InstallmentStatus, RevenueRecord
from ftms.repository import RevenueStore
from ftms.services.errors import NotFoundError, ValidationError
from ftms.services.revenue_calc import (
    ZERO, BOUNDARY, EmployeeShare, ShortageSplit,
    category_key, compute_boundary_shortfall, split_shortfall, validate_share_sum,
    build_installment_schedule, installment_due_date, safe_decimal,
)
from ftms.services.revenue_ledger import derive_installment_status
from ftms.services.revenue_rules import as_utc, loan_cap_adjustments

logger = logging.getLogger(__name__)


@dataclass
class ShortageConfig:
    """Effective shortage defaults: the configuration row, else settings."""
    driver_share_percentage: Decimal
    conductor_share_percentage: Decimal
    default_frequency: str
    default_number_of_payments: int
    receivable_due_date_days: int
    is_default: bool = False


@dataclass
class LoanComputation:
    applied: bool
    reason: Optional[str] = None
    shortfall: Decimal = ZERO
    split: Optional[ShortageSplit] = None
    loans: list[ShortageLoan] = field(default_factory=list)


@dataclass
class LoanPaymentResult:
    loan: ShortageLoan
    installment: LoanInstallment
    payment: LoanPayment


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

async def load_config(store: RevenueStore) -> ShortageConfig:
    """Read on every call; admins can edit the row at runtime."""
    row = await store.get_system_config()
    if row is None:
        return ShortageConfig(
            driver_share_percentage=Decimal(str(settings.default_driver_share_percentage)),
            conductor_share_percentage=Decimal(str(settings.default_conductor_share_percentage)),
            default_frequency=settings.default_installment_frequency,
            default_number_of_payments=settings.default_number_of_payments,
            receivable_due_date_days=settings.receivable_due_date_days,
            is_default=True,
        )
    return ShortageConfig(
        driver_share_percentage=safe_decimal(row.driver_share_percentage),
        conductor_share_percentage=safe_decimal(row.conductor_share_percentage),
        default_frequency=row.default_frequency,
        default_number_of_payments=row.default_number_of_payments,
        receivable_due_date_days=row.receivable_due_date_days,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _employee_key(name: Optional[str], number: Optional[str], fallback: str) -> str:
    if number:
        return number.strip()
    if name:
        return re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-") or fallback
    return fallback


def derive_loan_status(amount: Decimal, paid: Decimal) -> LoanStatus:
    if paid <= 0:
        return LoanStatus.PENDING
    if paid >= amount:
        return LoanStatus.PAID
    return LoanStatus.PARTIALLY_PAID


async def _set_loan_principal(
    store: RevenueStore, loan: ShortageLoan, amount: Decimal
) -> Optional[ShortageLoan]:
    """Change a loan's principal and rebuild its unpaid schedule.

    The principal never drops below what was already repaid.  Installments
    that carry payments are kept; the rest are replaced by a fresh schedule
    over the remaining count.  Returns ``None`` when the loan was removed.
    """
    paid = safe_decimal(loan.paid_amount)
    amount = max(safe_decimal(amount), paid)
    if amount <= 0:
        await store.remove_loan(loan)
        return None

    installments = await store.list_loan_installments(loan.id)
    kept = [i for i in installments if safe_decimal(i.amount_paid) > 0]
    unpaid = [i for i in installments if safe_decimal(i.amount_paid) <= 0]

    kept_total = sum((safe_decimal(i.amount_due) for i in kept), ZERO)
    excess = kept_total - amount
    for inst in reversed(kept):
        if excess <= 0:
            break
        slack = safe_decimal(inst.amount_due) - safe_decimal(inst.amount_paid)
        cut = min(slack, excess)
        if cut > 0:
            inst.amount_due = safe_decimal(inst.amount_due) - cut
            inst.status = derive_installment_status(inst.amount_due, inst.amount_paid)
            excess -= cut
    kept_total = sum((safe_decimal(i.amount_due) for i in kept), ZERO)

    if unpaid:
        await store.remove_loan_installments(unpaid)

    remaining = amount - kept_total
    last_number = max((i.installment_number for i in kept), default=0)
    count = max(1, loan.number_of_payments - len(kept))
    fresh: list[LoanInstallment] = []
    for item in build_installment_schedule(remaining, count, loan.frequency, loan.start_date):
        number = last_number + item.installment_number
        fresh.append(LoanInstallment(
            loan_id=loan.id,
            installment_number=number,
            due_date=installment_due_date(loan.start_date, number, loan.frequency),
            amount_due=item.amount_due,
            amount_paid=ZERO,
            status=InstallmentStatus.PENDING,
        ))
    if fresh:
        await store.add_loan_installments(fresh)

    loan.amount = amount
    loan.balance = amount - paid
    loan.status = derive_loan_status(amount, paid)
    due_dates = [i.due_date for i in kept + fresh]
    loan.due_date = max(due_dates) if due_dates else loan.due_date
    await store.flush()
    return loan


async def _revenue_or_404(store: RevenueStore, revenue_id: int) -> RevenueRecord:
    revenue = await store.get_revenue(revenue_id)
    if revenue is None or revenue.is_deleted:
        raise NotFoundError("Revenue not found", field="revenue_id")
    return revenue


# ---------------------------------------------------------------------------
# Cap enforcement
# ---------------------------------------------------------------------------

async def enforce_loan_cap(store: RevenueStore, revenue_id: int) -> list[ShortageLoan]:
    """Clamp the revenue's loans so their principals fit its outstanding balance."""
    revenue = await _revenue_or_404(store, revenue_id)
    loans = await store.list_loans(revenue.id)
    if not loans:
        return []

    adjustment = loan_cap_adjustments(
        {loan.id: loan.amount for loan in loans}, revenue.outstanding_balance
    )
    if not adjustment.changed:
        return loans

    survivors: list[ShortageLoan] = []
    for loan in loans:
        if adjustment.delete_all:
            target = ZERO
        elif loan.id in adjustment.amounts:
            target = adjustment.amounts[loan.id]
        else:
            survivors.append(loan)
            continue
        updated = await _set_loan_principal(store, loan, target)
        if updated is not None:
            survivors.append(updated)

    logger.info(
        "Clamped loans of %s to outstanding %s", revenue.revenue_code, revenue.outstanding_balance
    )
    return survivors


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------

async def clear_loans(store: RevenueStore, revenue_id: int) -> None:
    """Drop the unpaid part of every loan on a revenue."""
    for loan in await store.list_loans(revenue_id):
        await _set_loan_principal(store, loan, ZERO)


async def upsert_boundary_loan_for_revenue(
    store: RevenueStore,
    revenue_id: int,
    assignment_value: Any,
    trip_revenue: Any,
    total_amount: Any,
    additional_employees: Optional[Sequence[EmployeeShare]] = None,
    trip: Optional[BusTripCache] = None,
) -> LoanComputation:
    revenue = await _revenue_or_404(store, revenue_id)
    category = await store.get_category(revenue.category_id)
    if category is None or category_key(category.name) != BOUNDARY:
        return LoanComputation(applied=False, reason="Revenue category is not Boundary")

    shortfall = compute_boundary_shortfall(assignment_value, total_amount)
    existing = await store.list_loans(revenue.id)

    if shortfall <= 0:
        await clear_loans(store, revenue.id)
        remaining = await store.list_loans(revenue.id)
        return LoanComputation(applied=True, shortfall=ZERO, loans=remaining)

    config = await load_config(store)
    split = split_shortfall(
        shortfall,
        config.driver_share_percentage,
        config.conductor_share_percentage,
        additional_employees,
    )
    shares = [split.driver, split.conductor] + [s.amount for s in split.additional]
    if not validate_share_sum(shortfall, shares):
        raise ValidationError(
            f"Employee shares ({split.total}) must add up to the shortfall ({shortfall})",
            field="additional_employees",
        )

    if trip is None and revenue.assignment_id:
        trip = await store.get_assignment(revenue.assignment_id)

    desired = [
        EmployeeShare(
            role=EmployeeRole.DRIVER.value, amount=split.driver,
            name=trip.driver_name if trip else None,
            employee_number=trip.driver_employee_number if trip else None,
        ),
        EmployeeShare(
            role=EmployeeRole.CONDUCTOR.value, amount=split.conductor,
            name=trip.conductor_name if trip else None,
            employee_number=trip.conductor_employee_number if trip else None,
        ),
    ] + [
        EmployeeShare(
            role=EmployeeRole.OTHER.value, amount=s.amount,
            name=s.name, employee_number=s.employee_number,
        )
        for s in split.additional
    ]

    by_key = {(loan.employee_role.value, loan.employee_key): loan for loan in existing}
    start = as_utc(revenue.collection_date).date()
    frequency = InstallmentFrequency(config.default_frequency.lower()).value
    touched: set[int] = set()

    for position, share in enumerate(desired):
        key = _employee_key(share.name, share.employee_number, f"{share.role}-{position}")
        loan = by_key.get((share.role, key))
        if loan is None and share.role != EmployeeRole.OTHER.value:
            # driver/conductor rows keep their slot when the name changes
            loan = next((l for l in existing if l.employee_role.value == share.role
                         and l.id not in touched), None)

        if loan is None:
            if share.amount <= 0:
                continue
            loan = await store.add_loan(ShortageLoan(
                revenue_id=revenue.id,
                employee_role=EmployeeRole(share.role),
                employee_key=key,
                employee_name=share.name,
                employee_number=share.employee_number,
                assignment_value=safe_decimal(assignment_value),
                trip_revenue=safe_decimal(trip_revenue),
                collected_amount=safe_decimal(total_amount),
                shortfall=shortfall,
                amount=ZERO,
                paid_amount=ZERO,
                balance=ZERO,
                status=LoanStatus.PENDING,
                frequency=frequency,
                number_of_payments=config.default_number_of_payments,
                start_date=start,
            ))
        else:
            loan.employee_key = key
            loan.employee_name = share.name
            loan.employee_number = share.employee_number
            loan.assignment_value = safe_decimal(assignment_value)
            loan.trip_revenue = safe_decimal(trip_revenue)
            loan.collected_amount = safe_decimal(total_amount)
            loan.shortfall = shortfall
        touched.add(loan.id)
        await _set_loan_principal(store, loan, share.amount)

    for loan in existing:
        if loan.id not in touched:
            await _set_loan_principal(store, loan, ZERO)

    loans = await enforce_loan_cap(store, revenue.id)
    logger.info(
        "Shortage of %s on %s split into %d loans", shortfall, revenue.revenue_code, len(loans)
    )
    return LoanComputation(applied=True, shortfall=shortfall, split=split, loans=loans)


async def generate_loan(
    store: RevenueStore,
    revenue_id: int,
    additional_employees: Optional[Sequence[EmployeeShare]] = None,
) -> LoanComputation:
    """Explicit (re)generation: the revenue must be Boundary and linked to a trip."""
    revenue = await _revenue_or_404(store, revenue_id)
    category = await store.get_category(revenue.category_id)
    if category is None or category_key(category.name) != BOUNDARY:
        raise ValidationError("Loan generation only applies to Boundary revenue", field="category_id")
    if not revenue.assignment_id:
        raise ValidationError("Revenue is not linked to an assignment", field="assignment_id")
    trip = await store.get_assignment(revenue.assignment_id)
    if trip is None:
        raise ValidationError("Assignment data is not available", field="assignment_id")

    return await upsert_boundary_loan_for_revenue(
        store,
        revenue.id,
        assignment_value=trip.assignment_value,
        trip_revenue=trip.trip_revenue,
        total_amount=revenue.total_amount,
        additional_employees=additional_employees,
        trip=trip,
    )


async def preview_shortage_split(
    store: RevenueStore,
    assignment_value: Any,
    collected_amount: Any,
    additional_employees: Optional[Sequence[EmployeeShare]] = None,
    driver_share: Any = None,
    conductor_share: Any = None,
) -> ShortageSplit:
    """Pre-submit check of a shortage split.

    Without explicit driver/conductor shares the configured split is used.
    When the caller supplies shares they must add up to the shortfall.
    """
    shortfall = compute_boundary_shortfall(assignment_value, collected_amount)
    config = await load_config(store)
    split = split_shortfall(
        shortfall,
        config.driver_share_percentage,
        config.conductor_share_percentage,
        additional_employees,
    )
    if driver_share is not None:
        split.driver = safe_decimal(driver_share)
    if conductor_share is not None:
        split.conductor = safe_decimal(conductor_share)

    shares = [split.driver, split.conductor] + [s.amount for s in split.additional]
    if not validate_share_sum(shortfall, shares):
        raise ValidationError(
            f"Employee shares ({split.total}) must add up to the shortfall ({shortfall})",
            field="additional_employees",
        )
    return split


# ---------------------------------------------------------------------------
# Repayment
# ---------------------------------------------------------------------------

async def record_loan_payment(
    store: RevenueStore,
    loan_installment_id: int,
    amount: Any,
    payment_method_id: int,
    paid_date: Optional[date] = None,
    reference_number: Optional[str] = None,
    remarks: Optional[str] = None,
) -> LoanPaymentResult:
    installment = await store.get_loan_installment(loan_installment_id)
    if installment is None:
        raise NotFoundError("Loan installment not found", field="installment_id")
    loan = await store.get_loan(installment.loan_id, for_update=True)
    if loan is None:
        raise NotFoundError("Loan not found", field="loan_id")

    pay = safe_decimal(amount)
    if pay <= 0:
        raise ValidationError("amount must be greater than 0", field="amount")
    if not payment_method_id or await store.get_payment_method(payment_method_id) is None:
        raise ValidationError("Invalid payment_method_id", field="payment_method_id")
    if pay > safe_decimal(loan.balance):
        raise ValidationError(
            f"Payment amount ({pay}) exceeds loan balance ({loan.balance})", field="amount"
        )

    paid_on = paid_date or datetime.now(timezone.utc).date()
    payment = await store.add_loan_payment(LoanPayment(
        loan_id=loan.id,
        installment_id=installment.id,
        amount=pay,
        payment_method_id=payment_method_id,
        paid_date=paid_on,
        reference_number=reference_number,
        remarks=remarks,
    ))

    installment.amount_paid = safe_decimal(installment.amount_paid) + pay
    installment.status = derive_installment_status(installment.amount_due, installment.amount_paid)
    loan.paid_amount = safe_decimal(loan.paid_amount) + pay
    loan.balance = safe_decimal(loan.amount) - loan.paid_amount
    loan.status = derive_loan_status(safe_decimal(loan.amount), loan.paid_amount)
    loan.last_payment_date = paid_on
    await store.flush()

    logger.info("Loan %s repaid %s, balance %s", loan.id, pay, loan.balance)
    return LoanPaymentResult(loan=loan, installment=installment, payment=payment)


async def list_loans(store: RevenueStore, revenue_id: Optional[int] = None) -> list[ShortageLoan]:
    if revenue_id is not None:
        await _revenue_or_404(store, revenue_id)
    return await store.list_loans(revenue_id)

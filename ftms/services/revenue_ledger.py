"""Installment and payment ledger for revenue records.

Every payment or installment batch is followed by :func:`recalculate`:

1. the touched installment gets ``amount_paid`` re-summed from its payments
   and its status re-derived;
2. the revenue's ``outstanding_balance`` becomes
   ``max(0, round(total_amount - total_paid, 4))``;
3. the revenue's payment status is re-derived, or left alone when no rule
   applies.

Paths that compare a payment against the outstanding balance lock the
revenue row first and recompute the balance from the payment lines, so two
concurrent payments cannot both pass the overpay guard.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from ftms.models.reference import PaymentStatus
from ftms.models.revenue import (
    InstallmentStatus, RevenueRecord, RevenueInstallment, RevenuePayment,
)
from ftms.repository import RevenueStore
from ftms.services.errors import NotFoundError, ValidationError
from ftms.services.revenue_calc import ZERO, round_ledger, safe_decimal
from ftms.services.revenue_rules import (
    as_utc, check_installment_lines, check_payment_line, is_overpaid_status,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = "Pending"
STATUS_PARTIALLY_PAID = "Partially Paid"
STATUS_PAID = "Paid"
STATUS_OVERPAID = "Overpaid"


@dataclass
class PaymentLine:
    amount: Any
    payment_method_id: Optional[int] = None
    payment_status_id: Optional[int] = None
    installment_id: Optional[int] = None
    paid_date: Optional[datetime] = None
    reference_number: Optional[str] = None
    remarks: Optional[str] = None


@dataclass
class RecalcResult:
    total_paid: Decimal
    outstanding: Decimal
    status_name: Optional[str]


@dataclass
class PaymentResult:
    revenue: RevenueRecord
    payments: list[RevenuePayment] = field(default_factory=list)
    installment: Optional[RevenueInstallment] = None


# ---------------------------------------------------------------------------
# Status derivation (pure)
# ---------------------------------------------------------------------------

def derive_installment_status(amount_due: Any, amount_paid: Any) -> InstallmentStatus:
    due = safe_decimal(amount_due)
    paid = safe_decimal(amount_paid)
    if paid <= 0:
        return InstallmentStatus.PENDING
    if paid < due:
        return InstallmentStatus.PARTIAL
    if paid == due:
        return InstallmentStatus.PAID
    return InstallmentStatus.OVERPAID


def effective_installment_status(
    status: InstallmentStatus, due_date: date, today: Optional[date] = None
) -> InstallmentStatus:
    """Display status: unpaid or partly paid installments past due read as LATE."""
    today = today or datetime.now(timezone.utc).date()
    if status in (InstallmentStatus.PENDING, InstallmentStatus.PARTIAL) and due_date < today:
        return InstallmentStatus.LATE
    return status


def derive_revenue_payment_status(
    total_amount: Any,
    total_paid: Any,
    outstanding: Any,
    has_overpaid_line: bool = False,
) -> Optional[str]:
    """Status name the revenue should move to, or ``None`` to keep the current one."""
    total = safe_decimal(total_amount)
    paid = safe_decimal(total_paid)
    left = safe_decimal(outstanding)
    if has_overpaid_line and paid > total:
        return STATUS_OVERPAID
    if left == 0 and total > 0:
        return STATUS_PAID
    if 0 < paid < total:
        return STATUS_PARTIALLY_PAID
    return None


# ---------------------------------------------------------------------------
# Recalculation
# ---------------------------------------------------------------------------

async def _fresh_outstanding(store: RevenueStore, revenue: RevenueRecord) -> Decimal:
    paid = await store.sum_payments(revenue.id)
    left = round_ledger(safe_decimal(revenue.total_amount) - paid)
    return left if left > 0 else ZERO


async def recalculate(
    store: RevenueStore,
    revenue: RevenueRecord,
    installment_id: Optional[int] = None,
) -> RecalcResult:
    if installment_id is not None:
        installment = await store.get_installment(installment_id)
        if installment is not None:
            installment.amount_paid = await store.sum_installment_payments(installment_id)
            installment.status = derive_installment_status(
                installment.amount_due, installment.amount_paid
            )

    total_paid = await store.sum_payments(revenue.id)
    outstanding = round_ledger(safe_decimal(revenue.total_amount) - total_paid)
    if outstanding < 0:
        outstanding = ZERO
    revenue.outstanding_balance = outstanding

    overpaid = await store.get_payment_status_by_name(STATUS_OVERPAID)
    has_overpaid_line = bool(overpaid) and await store.has_payment_with_status(
        revenue.id, overpaid.id
    )
    status_name = derive_revenue_payment_status(
        revenue.total_amount, total_paid, outstanding, has_overpaid_line
    )
    if status_name:
        status = await store.get_payment_status_by_name(status_name)
        if status is None:
            logger.warning("Payment status %r is not configured for revenue", status_name)
        else:
            revenue.payment_status_id = status.id

    await store.flush()
    return RecalcResult(total_paid=total_paid, outstanding=outstanding, status_name=status_name)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def _locked_revenue(store: RevenueStore, revenue_id: int) -> RevenueRecord:
    revenue = await store.get_revenue(revenue_id, for_update=True)
    if revenue is None or revenue.is_deleted:
        raise NotFoundError("Revenue not found", field="revenue_id")
    return revenue


async def _resolve_line_status(
    store: RevenueStore, status_id: Optional[int]
) -> PaymentStatus:
    if status_id:
        status = await store.get_payment_status(status_id)
        if status is None or not status.applies_to("revenue"):
            raise ValidationError("Invalid payment_status_id", field="payment_status_id")
        return status
    status = await store.get_payment_status_by_name(STATUS_PARTIALLY_PAID)
    if status is None:
        raise ValidationError("payment_status_id is required", field="payment_status_id")
    return status


async def _check_method(store: RevenueStore, method_id: int) -> None:
    if await store.get_payment_method(method_id) is None:
        raise ValidationError("Invalid payment_method_id", field="payment_method_id")


def _paid_at(value: Optional[datetime]) -> datetime:
    return as_utc(value) if value else datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def add_installments(
    store: RevenueStore, revenue_id: int, lines: Sequence[Any]
) -> list[RevenueInstallment]:
    """Append installments to a receivable.

    A receivable shell (total 0) takes the sum of its installments as its
    total so that the outstanding balance tracks what is owed.
    """
    revenue = await _locked_revenue(store, revenue_id)
    if not revenue.is_receivable:
        raise ValidationError(
            "Installments can only be added to receivable revenue", field="is_receivable"
        )
    cleaned = check_installment_lines(lines)

    existing = await store.list_installments(revenue.id)
    start = max((i.installment_number for i in existing), default=0)
    created = [
        RevenueInstallment(
            revenue_id=revenue.id,
            installment_number=start + n,
            due_date=due,
            amount_due=amount,
            amount_paid=ZERO,
            status=InstallmentStatus.PENDING,
            payment_method_id=revenue.payment_method_id,
        )
        for n, (due, amount) in enumerate(cleaned, start=1)
    ]
    await store.add_installments(created)

    if safe_decimal(revenue.total_amount) == 0:
        revenue.total_amount = sum((i.amount_due for i in existing + created), ZERO)

    await recalculate(store, revenue)
    logger.info("Added %d installments to %s", len(created), revenue.revenue_code)
    return created


async def record_installment_payment(
    store: RevenueStore, installment_id: int, line: PaymentLine
) -> PaymentResult:
    """Pay against one installment.

    Method and status fall back to the installment's, then the status falls
    back to Partially Paid.  The overpay guard uses the balance recomputed
    under the revenue row lock.
    """
    from ftms.services.shortage_loans import enforce_loan_cap

    installment = await store.get_installment(installment_id)
    if installment is None:
        raise NotFoundError("Installment not found", field="installment_id")
    revenue = await _locked_revenue(store, installment.revenue_id)

    amount = safe_decimal(line.amount)
    if amount <= 0:
        raise ValidationError("pay_amount must be greater than 0", field="pay_amount")
    method_id = line.payment_method_id or installment.payment_method_id or revenue.payment_method_id
    if not method_id:
        raise ValidationError("payment_method_id is required", field="payment_method_id")
    await _check_method(store, method_id)
    status = await _resolve_line_status(
        store, line.payment_status_id or installment.payment_status_id
    )

    outstanding = await _fresh_outstanding(store, revenue)
    if amount > outstanding and not is_overpaid_status(status.name):
        raise ValidationError(
            "Payment exceeds outstanding balance; mark as Overpaid to continue",
            field="pay_amount",
        )

    payment = await store.add_payment(RevenuePayment(
        revenue_id=revenue.id,
        installment_id=installment.id,
        amount=amount,
        payment_method_id=method_id,
        payment_status_id=status.id,
        paid_date=_paid_at(line.paid_date),
        reference_number=line.reference_number,
        remarks=line.remarks,
    ))
    installment.payment_method_id = method_id
    installment.payment_status_id = status.id

    await recalculate(store, revenue, installment.id)
    await enforce_loan_cap(store, revenue.id)
    return PaymentResult(revenue=revenue, payments=[payment], installment=installment)


async def record_payments(
    store: RevenueStore, revenue_id: int, lines: Sequence[PaymentLine]
) -> PaymentResult:
    """Batch payment submission.

    Lines are validated one by one, then the batch total is checked against
    the balance before anything is written.  Lines are inserted in order with
    a recalculation after each; the whole batch shares the caller's
    transaction, so a failure leaves nothing behind.
    """
    from ftms.services.shortage_loans import enforce_loan_cap

    if not lines:
        raise ValidationError("payments must not be empty", field="payments")
    revenue = await _locked_revenue(store, revenue_id)

    prepared: list[tuple[PaymentLine, Decimal, PaymentStatus]] = []
    for index, line in enumerate(lines):
        amount = check_payment_line(index, line.amount, line.payment_method_id)
        await _check_method(store, line.payment_method_id)
        status = await _resolve_line_status(store, line.payment_status_id)
        if line.installment_id is not None:
            installment = await store.get_installment(line.installment_id)
            if installment is None or installment.revenue_id != revenue.id:
                raise NotFoundError(
                    f"payments[{index}].installment_id not found", field="installment_id"
                )
        prepared.append((line, amount, status))

    batch_total = sum((amount for _, amount, _ in prepared), ZERO)
    outstanding = await _fresh_outstanding(store, revenue)
    if batch_total > outstanding and not any(is_overpaid_status(s.name) for _, _, s in prepared):
        raise ValidationError(
            "Payments exceed outstanding balance; mark as Overpaid to continue",
            field="payments",
        )

    created: list[RevenuePayment] = []
    for line, amount, status in prepared:
        payment = await store.add_payment(RevenuePayment(
            revenue_id=revenue.id,
            installment_id=line.installment_id,
            amount=amount,
            payment_method_id=line.payment_method_id,
            payment_status_id=status.id,
            paid_date=_paid_at(line.paid_date),
            reference_number=line.reference_number,
            remarks=line.remarks,
        ))
        created.append(payment)
        await recalculate(store, revenue, line.installment_id)

    await enforce_loan_cap(store, revenue.id)
    logger.info(
        "Recorded %d payments totalling %s on %s", len(created), batch_total, revenue.revenue_code
    )
    return PaymentResult(revenue=revenue, payments=created)


async def list_payments(store: RevenueStore, revenue_id: int) -> list[RevenuePayment]:
    revenue = await store.get_revenue(revenue_id)
    if revenue is None or revenue.is_deleted:
        raise NotFoundError("Revenue not found", field="revenue_id")
    return await store.list_payments(revenue.id)

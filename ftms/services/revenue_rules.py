"""Validation rules for revenue records.

Each ``check_*`` function is pure: it either returns the normalised value or
raises :class:`ValidationError` naming the offending field.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional

from dateutil.relativedelta import relativedelta

from ftms.services.errors import ValidationError
from ftms.services.revenue_calc import (
    ZERO, CENT, safe_decimal, round_cents, validate_amount_against_trip,
)

COLLECTION_WINDOW = relativedelta(months=3)
REMARKS_MIN = 5
REMARKS_MAX = 500


def as_utc(value: date | datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_paid_status(status_name: Optional[str]) -> bool:
    return (status_name or "").strip().lower() == "paid"


def is_overpaid_status(status_name: Optional[str]) -> bool:
    return (status_name or "").strip().lower() == "overpaid"


# ---------------------------------------------------------------------------
# Collection-date windows
# ---------------------------------------------------------------------------

def check_collection_date_for_add(
    collection_date: date | datetime, now: Optional[datetime] = None
) -> datetime:
    """Collection date must be within the last 3 months and not in the future."""
    now = as_utc(now or datetime.now(timezone.utc))
    collected = as_utc(collection_date)
    if collected > now:
        raise ValidationError("collection_date cannot be in the future", field="collection_date")
    if collected < now - COLLECTION_WINDOW:
        raise ValidationError(
            "collection_date must be within the last 3 months", field="collection_date"
        )
    return collected


def check_collection_date_for_edit(
    collection_date: date | datetime,
    created_at: datetime,
    now: Optional[datetime] = None,
) -> datetime:
    """Same window as on add, but anchored to the record's creation time."""
    now = as_utc(now or datetime.now(timezone.utc))
    collected = as_utc(collection_date)
    earliest = as_utc(created_at) - COLLECTION_WINDOW
    if collected > now or collected < earliest:
        raise ValidationError(
            "collection_date must be within 3 months before the record creation "
            "date and not in the future",
            field="collection_date",
        )
    return collected


# ---------------------------------------------------------------------------
# Payment metadata
# ---------------------------------------------------------------------------

def check_payment_method_when_remitted(
    total_amount: Any,
    is_receivable: bool,
    payment_method_id: Optional[int],
    payment_status_name: Optional[str],
) -> None:
    if payment_method_id:
        return
    if is_paid_status(payment_status_name):
        raise ValidationError(
            "payment_method_id is required when payment status is Paid",
            field="payment_method_id",
        )
    if not is_receivable and safe_decimal(total_amount) > 0:
        raise ValidationError(
            "payment_method_id is required when an amount is remitted",
            field="payment_method_id",
        )


def check_payment_line(index: int, amount: Any, payment_method_id: Optional[int]) -> Decimal:
    amt = safe_decimal(amount)
    if amt <= 0:
        raise ValidationError(f"payments[{index}].amount must be greater than 0", field="amount")
    if not payment_method_id:
        raise ValidationError(
            f"payments[{index}].payment_method_id is required", field="payment_method_id"
        )
    return amt


# ---------------------------------------------------------------------------
# Accounts receivable
# ---------------------------------------------------------------------------

@dataclass
class ReceivableFields:
    due_date: Optional[date] = None
    payer_name: Optional[str] = None
    interest_rate: Optional[Decimal] = None


def check_receivable_fields(
    is_receivable: bool,
    due_date: Optional[date],
    payer_name: Optional[str],
    interest_rate: Any,
    collection_date: date | datetime,
) -> ReceivableFields:
    """Non-receivables get all AR fields cleared."""
    if not is_receivable:
        return ReceivableFields()
    if due_date is None:
        raise ValidationError("due_date is required for receivables", field="due_date")
    name = (payer_name or "").strip()
    if not name:
        raise ValidationError("payer_name is required for receivables", field="payer_name")

    if interest_rate is None or interest_rate == "":
        rate = ZERO
    else:
        try:
            rate = Decimal(str(interest_rate).strip())
        except InvalidOperation:
            raise ValidationError("interest_rate must be a number", field="interest_rate") from None
        if not rate.is_finite():
            raise ValidationError("interest_rate must be a number", field="interest_rate")
    if rate < 0:
        raise ValidationError("interest_rate cannot be negative", field="interest_rate")

    collected_on = as_utc(collection_date).date()
    if due_date < collected_on:
        raise ValidationError(
            "due_date cannot be earlier than collection_date", field="due_date"
        )
    return ReceivableFields(due_date=due_date, payer_name=name, interest_rate=rate)


# ---------------------------------------------------------------------------
# Text and amounts
# ---------------------------------------------------------------------------

def check_remarks(remarks: Optional[str]) -> str:
    text = (remarks or "").strip()
    if not (REMARKS_MIN <= len(text) <= REMARKS_MAX):
        raise ValidationError(
            f"remarks must be between {REMARKS_MIN} and {REMARKS_MAX} characters",
            field="remarks",
        )
    return text


def check_amount_against_trip(category: Optional[str], amount: Any, trip_revenue: Any) -> None:
    message = validate_amount_against_trip(category, amount, trip_revenue)
    if message:
        raise ValidationError(message, field="total_amount")


def _line_value(line: Any, name: str) -> Any:
    if isinstance(line, Mapping):
        return line.get(name)
    return getattr(line, name, None)


def check_installment_lines(lines: Iterable[Any]) -> list[tuple[date, Decimal]]:
    """Each installment needs a due date and a positive amount."""
    cleaned: list[tuple[date, Decimal]] = []
    for i, line in enumerate(lines):
        due = _line_value(line, "due_date")
        if isinstance(due, datetime):
            due = due.date()
        if not isinstance(due, date):
            raise ValidationError(f"installments[{i}].due_date is required", field="due_date")
        amount = safe_decimal(_line_value(line, "amount_due"))
        if amount <= 0:
            raise ValidationError(
                f"installments[{i}].amount_due must be greater than 0", field="amount_due"
            )
        cleaned.append((due, amount))
    if not cleaned:
        raise ValidationError("installments must not be empty", field="installments")
    return cleaned


# ---------------------------------------------------------------------------
# Loan cap
# ---------------------------------------------------------------------------

@dataclass
class LoanCapAdjustment:
    """Outcome of clamping loan principals to a revenue's outstanding balance."""
    delete_all: bool = False
    # loan id -> new principal; only loans that change are listed
    amounts: dict[int, Decimal] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.delete_all or bool(self.amounts)


def loan_cap_adjustments(loans: Mapping[int, Any], outstanding: Any) -> LoanCapAdjustment:
    """Scale loan principals down proportionally so their sum fits *outstanding*.

    No change when the sum already fits.  When nothing is outstanding every
    loan goes.  Scaled amounts are rounded to cents and never sum above the
    outstanding balance.
    """
    amounts = {loan_id: safe_decimal(amount) for loan_id, amount in loans.items()}
    total = sum(amounts.values(), ZERO)
    cap = safe_decimal(outstanding)
    if total <= cap:
        return LoanCapAdjustment()
    if cap <= 0:
        return LoanCapAdjustment(delete_all=True)

    ids = sorted(amounts)
    scaled = {loan_id: round_cents(amounts[loan_id] * cap / total) for loan_id in ids}
    overshoot = sum(scaled.values(), ZERO) - cap
    if overshoot > 0:
        last = ids[-1]
        scaled[last] = max(ZERO, scaled[last] - overshoot.quantize(CENT))
    return LoanCapAdjustment(
        amounts={k: v for k, v in scaled.items() if v != amounts[k]}
    )

"""Amount calculator for bus-trip revenue.

Pure functions, no I/O.  Two subtractions live here and must not be merged:

* ``get_boundary_loss_info`` asks whether the contractual boundary fee itself
  exceeds what the trip earned (``trip_revenue - assignment_value``).
* ``compute_boundary_shortfall`` asks whether the collector remitted the full
  boundary fee (``assignment_value - collected``).
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, ROUND_DOWN
from typing import Any, Iterable, Optional

from dateutil.relativedelta import relativedelta

from ftms.models.reference import InstallmentFrequency

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")
LEDGER_PLACES = Decimal("0.0001")
SHARE_TOLERANCE = Decimal("0.01")

BOUNDARY = "boundary"
PERCENTAGE = "percentage"
BUS_RENTAL = "bus rental"

# Categories whose amount is capped by the linked trip's revenue
TRIP_CAPPED_CATEGORIES = frozenset({BOUNDARY, PERCENTAGE, BUS_RENTAL})


@dataclass(frozen=True)
class BoundaryLossInfo:
    is_loss: bool
    loss_amount: Decimal


@dataclass
class EmployeeShare:
    """One employee's part of a shortfall."""
    role: str
    amount: Decimal
    name: Optional[str] = None
    employee_number: Optional[str] = None


@dataclass
class ShortageSplit:
    shortfall: Decimal
    driver: Decimal
    conductor: Decimal
    additional: list[EmployeeShare] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return self.driver + self.conductor + sum((s.amount for s in self.additional), ZERO)


@dataclass(frozen=True)
class ScheduledInstallment:
    installment_number: int
    due_date: date
    amount_due: Decimal


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def normalize_category_name(name: Optional[str]) -> str:
    """``"Bus_Rental "`` -> ``"Bus Rental"``."""
    return (name or "").replace("_", " ").strip()


def category_key(name: Optional[str]) -> str:
    return normalize_category_name(name).lower()


def safe_decimal(value: Any) -> Decimal:
    """Parse *value* as a Decimal; anything non-numeric or missing becomes 0."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return ZERO
    return result if result.is_finite() else ZERO


def round_ledger(value: Decimal) -> Decimal:
    return value.quantize(LEDGER_PLACES, rounding=ROUND_HALF_UP)


def round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _figure(assignment: Any, name: str) -> Decimal:
    if assignment is None:
        return ZERO
    if isinstance(assignment, dict):
        return safe_decimal(assignment.get(name))
    return safe_decimal(getattr(assignment, name, None))


# ---------------------------------------------------------------------------
# Auto amount and structural loss
# ---------------------------------------------------------------------------

def compute_auto_amount(category: Optional[str], assignment: Any) -> Decimal:
    """Company revenue implied by an assignment.

    Boundary: ``trip_revenue - assignment_value`` (negative means a loss).
    Percentage: ``trip_revenue * assignment_value`` (value is a fraction).
    Anything else falls back to ``trip_revenue``.
    """
    trip_revenue = _figure(assignment, "trip_revenue")
    value = _figure(assignment, "assignment_value")
    key = category_key(category)
    if key == BOUNDARY:
        return trip_revenue - value
    if key == PERCENTAGE:
        return trip_revenue * value
    return trip_revenue


def get_boundary_loss_info(category: Optional[str], assignment: Any) -> BoundaryLossInfo:
    if category_key(category) != BOUNDARY:
        return BoundaryLossInfo(is_loss=False, loss_amount=ZERO)
    auto = compute_auto_amount(category, assignment)
    if auto < 0:
        return BoundaryLossInfo(is_loss=True, loss_amount=abs(auto))
    return BoundaryLossInfo(is_loss=False, loss_amount=ZERO)


def validate_amount_against_trip(
    category: Optional[str], amount: Any, trip_revenue: Any
) -> Optional[str]:
    """Return an error message when *amount* falls outside ``(0, trip_revenue]``.

    Only Boundary, Percentage and Bus Rental are capped; other categories
    always pass and ``None`` is returned.
    """
    if category_key(category) not in TRIP_CAPPED_CATEGORIES:
        return None
    amt = safe_decimal(amount)
    cap = safe_decimal(trip_revenue)
    if amt <= 0 or amt > cap:
        return f"total_amount must be greater than 0 and at most the trip revenue ({cap:f})"
    return None


# ---------------------------------------------------------------------------
# Remittance and shortfall
# ---------------------------------------------------------------------------

def compute_expected_remittance(
    assignment_type: Optional[str],
    trip_revenue: Any,
    assignment_value: Any,
    fuel_expense: Any = None,
) -> Decimal:
    """What the crew owes the company for one trip, fuel reimbursement included."""
    revenue = safe_decimal(trip_revenue)
    value = safe_decimal(assignment_value)
    fuel = safe_decimal(fuel_expense)
    key = category_key(assignment_type)
    if key == BOUNDARY:
        return value + fuel
    if key == PERCENTAGE:
        return revenue * value + fuel
    return revenue


def compute_boundary_shortfall(assignment_value: Any, collected: Any) -> Decimal:
    gap = safe_decimal(assignment_value) - safe_decimal(collected)
    return gap if gap > 0 else ZERO


def split_shortfall(
    shortfall: Any,
    driver_pct: Any,
    conductor_pct: Any,
    additional: Optional[Iterable[EmployeeShare]] = None,
) -> ShortageSplit:
    """Split *shortfall* between driver, conductor and any additional employees.

    Additional employees carry manually entered shares.  Whatever is left is
    divided in the driver:conductor ratio, rounded to cents, with the
    conductor absorbing the rounding remainder.
    """
    total = round_cents(safe_decimal(shortfall))
    extras = [
        EmployeeShare(
            role=s.role, amount=round_cents(safe_decimal(s.amount)),
            name=s.name, employee_number=s.employee_number,
        )
        for s in (additional or [])
    ]
    manual = sum((s.amount for s in extras), ZERO)
    remainder = total - manual
    if remainder < 0:
        remainder = ZERO

    d_pct = safe_decimal(driver_pct)
    c_pct = safe_decimal(conductor_pct)
    ratio_base = d_pct + c_pct
    if ratio_base <= 0:
        driver = remainder
    else:
        driver = round_cents(remainder * d_pct / ratio_base)
    conductor = remainder - driver

    return ShortageSplit(shortfall=total, driver=driver, conductor=conductor, additional=extras)


def validate_share_sum(shortfall: Any, shares: Iterable[Any]) -> bool:
    """True when the shares add up to the shortfall within one cent."""
    total = sum((safe_decimal(s) for s in shares), ZERO)
    return abs(total - safe_decimal(shortfall)) <= SHARE_TOLERANCE


# ---------------------------------------------------------------------------
# Installment schedules
# ---------------------------------------------------------------------------

def installment_due_date(start: date, number: int, frequency: str) -> date:
    """Due date of the *number*-th installment counted from *start*."""
    freq = InstallmentFrequency(str(frequency).lower())
    if freq == InstallmentFrequency.DAILY:
        return start + timedelta(days=number)
    if freq == InstallmentFrequency.WEEKLY:
        return start + timedelta(weeks=number)
    if freq == InstallmentFrequency.BIWEEKLY:
        return start + timedelta(weeks=2 * number)
    return start + relativedelta(months=number)


def build_installment_schedule(
    total: Any, count: int, frequency: str, start: date
) -> list[ScheduledInstallment]:
    """Equal installments in cents; the last one absorbs the rounding."""
    amount = round_cents(safe_decimal(total))
    if count < 1:
        raise ValueError("number_of_payments must be at least 1")
    if amount <= 0:
        return []

    base = (amount / count).quantize(CENT, rounding=ROUND_DOWN)
    schedule: list[ScheduledInstallment] = []
    allocated = ZERO
    for n in range(1, count + 1):
        if n == count:
            due = amount - allocated
        else:
            due = base
            allocated += base
        if due <= 0:
            continue
        schedule.append(
            ScheduledInstallment(
                installment_number=len(schedule) + 1,
                due_date=installment_due_date(start, n, frequency),
                amount_due=due,
            )
        )
    return schedule

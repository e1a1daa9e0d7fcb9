"""Revenue create/update orchestrator.

Create runs, in order: reference resolution, remarks and receivable checks,
source resolution (manual or bus trip), collection-date window, duplicate
check under an advisory lock, trip cap, persist with installments and ledger
recalculation, commit, attachment upload (compensated on failure), and
finally the best-effort hooks (shortage loans, audit) whose failures come
back as ``warnings`` instead of failing the request.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Sequence

from dateutil.relativedelta import relativedelta

from ftms.config import settings
from ftms.models.bus_trip import BusTripCache
from ftms.models.error_log import ErrorSeverity
from ftms.models.loan import ShortageLoan, LoanInstallment
from ftms.models.reference import (
    InstallmentFrequency, PaymentMethod, PaymentStatus, RevenueCategory, SystemConfiguration,
)
from ftms.models.revenue import (
    InstallmentStatus, RevenueRecord, RevenueInstallment, RevenuePayment, RevenueAttachment,
)
from ftms.repository import RevenueQuery, RevenueStore
from ftms.schemas import RevenueCreate, RevenueUpdate, SystemConfigUpdate
from ftms.services import revenue_ledger, shortage_loans
from ftms.services.attachments import AttachmentStore, IncomingFile
from ftms.services.error_logger import log_error
from ftms.services.errors import (
    ConflictError, DependencyError, NotFoundError, ValidationError,
)
from ftms.services.revenue_calc import (
    BOUNDARY, EmployeeShare, category_key,
    get_boundary_loss_info, normalize_category_name, safe_decimal, split_shortfall,
    compute_boundary_shortfall, validate_share_sum,
)
from ftms.services.revenue_rules import (
    as_utc, check_amount_against_trip, check_collection_date_for_add,
    check_collection_date_for_edit, check_payment_method_when_remitted,
    check_receivable_fields, check_remarks, is_paid_status,
)

logger = logging.getLogger(__name__)

Hook = Callable[[], Awaitable[Any]]


@dataclass
class LoanView:
    loan: ShortageLoan
    installments: list[LoanInstallment] = field(default_factory=list)


@dataclass
class RevenueResult:
    """A revenue record joined with everything the detail view shows."""
    revenue: RevenueRecord
    category: Optional[RevenueCategory] = None
    payment_method: Optional[PaymentMethod] = None
    payment_status: Optional[PaymentStatus] = None
    installments: list[RevenueInstallment] = field(default_factory=list)
    installment_display_status: dict[int, InstallmentStatus] = field(default_factory=dict)
    payments: list[RevenuePayment] = field(default_factory=list)
    loans: list[LoanView] = field(default_factory=list)
    attachments: list[RevenueAttachment] = field(default_factory=list)
    boundary_loss: Optional[Decimal] = None
    warnings: list[str] = field(default_factory=list)
    created: bool = True


@dataclass
class DeleteResult:
    revenue: RevenueRecord
    attachments_deleted: int = 0
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Reference resolution
# ---------------------------------------------------------------------------

async def _resolve_category(store: RevenueStore, category_id: Optional[int]) -> RevenueCategory:
    category = await store.get_category(category_id) if category_id else None
    if category is None or not category.is_active:
        raise NotFoundError("Revenue category not found", field="category_id")
    return category


async def _resolve_status(store: RevenueStore, status_id: Optional[int]) -> PaymentStatus:
    status = await store.get_payment_status(status_id) if status_id else None
    if status is None or not status.applies_to("revenue"):
        raise ValidationError("Invalid payment_status_id for revenue", field="payment_status_id")
    return status


async def _resolve_method(store: RevenueStore, method_id: Optional[int]) -> Optional[PaymentMethod]:
    if not method_id:
        return None
    method = await store.get_payment_method(method_id)
    if method is None or not method.is_active:
        raise ValidationError("Invalid payment_method_id", field="payment_method_id")
    return method


async def resolve_revenue_id(store: RevenueStore, revenue_code: str) -> int:
    revenue = await store.get_revenue_by_code(revenue_code)
    if revenue is None or revenue.is_deleted:
        raise NotFoundError(f"Revenue {revenue_code} not found", field="revenue_code")
    return revenue.id


def _employee_shares(items: Optional[Sequence[Any]]) -> list[EmployeeShare]:
    return [
        EmployeeShare(role="other", amount=safe_decimal(i.amount), name=i.name,
                      employee_number=i.employee_number)
        for i in (items or [])
    ]


def _snapshot(revenue: RevenueRecord) -> dict:
    return {
        "revenue_code": revenue.revenue_code,
        "category_id": revenue.category_id,
        "total_amount": str(revenue.total_amount),
        "collection_date": as_utc(revenue.collection_date).isoformat(),
        "payment_method_id": revenue.payment_method_id,
        "payment_status_id": revenue.payment_status_id,
        "is_receivable": revenue.is_receivable,
        "outstanding_balance": str(revenue.outstanding_balance),
        "remarks": revenue.remarks,
    }


def _duplicate_key(
    category_id: int, collection_date: datetime, assignment_id: Optional[str], total: Decimal
) -> str:
    stamp = as_utc(collection_date).isoformat()
    if assignment_id:
        return f"revenue:{assignment_id}:{stamp}:{category_id}"
    return f"revenue:{category_id}:{total}:{stamp}"


# ---------------------------------------------------------------------------
# Best-effort hooks
# ---------------------------------------------------------------------------

async def _run_hooks(
    store: RevenueStore, revenue: RevenueRecord, hooks: Sequence[tuple[str, Hook]]
) -> list[str]:
    """Run each hook in its own savepoint; failures are logged and returned."""
    warnings: list[str] = []
    for name, hook in hooks:
        try:
            async with store.savepoint():
                await hook()
        except Exception as exc:
            logger.warning(
                "%s failed for %s: %s", name, revenue.revenue_code, exc, exc_info=True
            )
            warnings.append(f"{name} failed: {exc}")
            await log_error(
                exc,
                db=store.session,
                severity=ErrorSeverity.WARNING,
                module=__name__,
                function_name=name,
                revenue_code=revenue.revenue_code,
            )
    await store.commit()
    return warnings


def _loan_hook(
    store: RevenueStore,
    revenue: RevenueRecord,
    trip: BusTripCache,
    additional: list[EmployeeShare],
) -> Hook:
    async def hook():
        await shortage_loans.upsert_boundary_loan_for_revenue(
            store,
            revenue.id,
            assignment_value=trip.assignment_value,
            trip_revenue=trip.trip_revenue,
            total_amount=revenue.total_amount,
            additional_employees=additional,
            trip=trip,
        )
    return hook


def _audit_hook(
    store: RevenueStore,
    revenue: RevenueRecord,
    action: str,
    performed_by: Optional[str],
    old_values: Optional[dict] = None,
) -> Hook:
    async def hook():
        await store.add_audit(
            "revenue", revenue.id, action,
            performed_by=performed_by,
            old_values=old_values,
            new_values=_snapshot(revenue),
        )
    return hook


def _check_additional_shares(
    category: RevenueCategory,
    trip: Optional[BusTripCache],
    total: Decimal,
    additional: list[EmployeeShare],
) -> None:
    """Reject a manual split that cannot add up before anything is written."""
    if not additional or trip is None or category_key(category.name) != BOUNDARY:
        return
    shortfall = compute_boundary_shortfall(trip.assignment_value, total)
    split = split_shortfall(shortfall, 50, 50, additional)
    shares = [split.driver, split.conductor] + [s.amount for s in split.additional]
    if not validate_share_sum(shortfall, shares):
        raise ValidationError(
            f"Employee shares ({split.total}) must add up to the shortfall ({shortfall})",
            field="additional_employees",
        )


# ---------------------------------------------------------------------------
# Attachment saga
# ---------------------------------------------------------------------------

async def _attach_files(
    store: RevenueStore,
    revenue: RevenueRecord,
    files: Sequence[IncomingFile],
    attachment_store: AttachmentStore,
    trip: Optional[BusTripCache],
) -> None:
    """Upload after the revenue commit; on failure undo files, rows, then the revenue."""
    revenue_id = revenue.id
    revenue_code = revenue.revenue_code
    stored: list[str] = []
    try:
        for incoming in files:
            saved = attachment_store.save(revenue_code, incoming)
            stored.append(saved.file_id)
            await store.add_attachment(RevenueAttachment(
                revenue_id=revenue_id,
                file_id=saved.file_id,
                original_name=saved.original_name,
                mime_type=saved.mime_type,
                size_bytes=saved.size_bytes,
                is_deleted=False,
            ))
        await store.commit()
    except Exception as exc:
        logger.error("Attachment upload failed for %s, rolling back", revenue_code, exc_info=True)
        await store.rollback()
        for file_id in stored:
            try:
                attachment_store.delete(file_id)
            except OSError:
                logger.warning("Could not remove orphaned file %s", file_id, exc_info=True)
        rows = await store.list_attachments(revenue_id, include_deleted=True)
        await store.remove_attachments([row.id for row in rows])
        record = await store.get_revenue(revenue_id)
        if record is not None:
            await store.remove_revenue(record)
        if trip is not None:
            cached = await store.get_bus_trip(trip.bus_trip_id, trip.assignment_id)
            if cached is not None:
                cached.is_revenue_recorded = False
        await store.commit()
        if isinstance(exc, ValidationError):
            raise
        raise DependencyError(f"Attachment upload failed: {exc}", field="files") from exc


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

async def _create(
    store: RevenueStore,
    data: RevenueCreate,
    *,
    category: RevenueCategory,
    status: PaymentStatus,
    method: Optional[PaymentMethod],
    total: Decimal,
    collection_date: datetime,
    trip: Optional[BusTripCache],
    files: Optional[Sequence[IncomingFile]],
    attachment_store: Optional[AttachmentStore],
) -> RevenueResult:
    if is_paid_status(status.name) and method is None:
        raise ValidationError(
            "payment_method_id is required when payment status is Paid", field="payment_method_id"
        )
    remarks = check_remarks(data.remarks)
    ar = check_receivable_fields(
        data.is_receivable, data.due_date, data.payer_name, data.interest_rate, collection_date
    )
    if data.installments and not data.is_receivable:
        raise ValidationError("installments require is_receivable", field="installments")
    check_payment_method_when_remitted(
        total, data.is_receivable, method.id if method else None, status.name
    )
    collected = check_collection_date_for_add(collection_date)

    assignment_id = trip.assignment_id if trip else None
    await store.lock_key(_duplicate_key(category.id, collected, assignment_id, total))
    duplicate = await store.find_duplicate(
        category_id=category.id,
        collection_date=collected,
        assignment_id=assignment_id,
        total_amount=total,
    )
    if duplicate is not None:
        raise ConflictError(
            f"Duplicate revenue transaction (existing {duplicate.revenue_code})",
            field="collection_date",
        )

    if trip is not None:
        check_amount_against_trip(category.name, total, trip.trip_revenue)
    additional = _employee_shares(data.additional_employees)
    _check_additional_shares(category, trip, total, additional)

    revenue = await store.add_revenue(RevenueRecord(
        revenue_code=await store.next_revenue_code(),
        assignment_id=assignment_id,
        bus_trip_id=trip.bus_trip_id if trip else None,
        category_id=category.id,
        total_amount=total,
        collection_date=collected,
        payment_method_id=method.id if method else None,
        payment_status_id=status.id,
        is_receivable=data.is_receivable,
        due_date=ar.due_date,
        payer_name=ar.payer_name,
        interest_rate=ar.interest_rate,
        outstanding_balance=total,
        remarks=remarks,
        source_ref=data.source_ref,
        created_by=data.created_by,
        is_deleted=False,
    ))

    if data.installments:
        await revenue_ledger.add_installments(store, revenue.id, data.installments)
    else:
        await revenue_ledger.recalculate(store, revenue)
    if trip is not None:
        trip.is_revenue_recorded = True
    await store.commit()
    logger.info("Created revenue %s (%s, %s)", revenue.revenue_code, category.name, total)

    if files:
        await _attach_files(
            store, revenue, files, attachment_store or AttachmentStore(), trip
        )

    hooks: list[tuple[str, Hook]] = []
    if trip is not None and category_key(category.name) == BOUNDARY:
        hooks.append(("loan_generation", _loan_hook(store, revenue, trip, additional)))
    hooks.append(("audit", _audit_hook(store, revenue, "create", data.created_by)))
    warnings = await _run_hooks(store, revenue, hooks)

    result = await get_revenue(store, revenue.id)
    result.warnings = warnings
    return result


async def create_revenue(
    store: RevenueStore,
    data: RevenueCreate,
    files: Optional[Sequence[IncomingFile]] = None,
    attachment_store: Optional[AttachmentStore] = None,
) -> RevenueResult:
    if data.bus_trip_id:
        return await create_revenue_from_bus_trip(store, data, files, attachment_store)

    category = await _resolve_category(store, data.category_id)
    status = await _resolve_status(store, data.payment_status_id)
    method = await _resolve_method(store, data.payment_method_id)
    if data.total_amount is None:
        raise ValidationError("total_amount is required", field="total_amount")

    trip = None
    if data.assignment_id:
        trip = await store.get_assignment(data.assignment_id)
        if trip is None:
            raise NotFoundError("Assignment not found", field="assignment_id")

    return await _create(
        store, data,
        category=category,
        status=status,
        method=method,
        total=safe_decimal(data.total_amount),
        collection_date=data.collection_date,
        trip=trip,
        files=files,
        attachment_store=attachment_store,
    )


async def create_revenue_from_bus_trip(
    store: RevenueStore,
    data: RevenueCreate,
    files: Optional[Sequence[IncomingFile]] = None,
    attachment_store: Optional[AttachmentStore] = None,
) -> RevenueResult:
    """Record revenue for a cached bus trip.

    Idempotent on (bus_trip_id, assignment_id): a trip that already has a
    live revenue returns it with ``created=False``.  Category comes from the
    assignment type and the amount defaults to the expected remittance.
    """
    trip = await store.get_bus_trip(data.bus_trip_id, data.assignment_id)
    if trip is None:
        raise NotFoundError("Bus trip not found", field="bus_trip_id")

    existing = await store.find_by_bus_trip(trip.bus_trip_id, trip.assignment_id)
    if existing is not None:
        result = await get_revenue(store, existing.id)
        result.created = False
        return result

    if data.category_id:
        category = await _resolve_category(store, data.category_id)
    else:
        category = await store.get_category_by_name(normalize_category_name(trip.assignment_type))
        if category is None:
            raise NotFoundError(
                f"No revenue category for assignment type {trip.assignment_type!r}",
                field="category_id",
            )

    if data.payment_status_id:
        status = await _resolve_status(store, data.payment_status_id)
    else:
        status = await store.get_payment_status_by_name(revenue_ledger.STATUS_PENDING)
        if status is None:
            raise ValidationError("payment_status_id is required", field="payment_status_id")

    method = await _resolve_method(store, data.payment_method_id)
    if method is None and trip.payment_method:
        method = await store.get_payment_method_by_code(trip.payment_method)

    # Without an override the record holds what the trip actually collected.
    if data.total_amount is not None:
        total = safe_decimal(data.total_amount)
    else:
        total = safe_decimal(trip.trip_revenue)

    collection_date = data.collection_date or trip.date_assigned or datetime.now(timezone.utc)

    return await _create(
        store, data,
        category=category,
        status=status,
        method=method,
        total=total,
        collection_date=collection_date,
        trip=trip,
        files=files,
        attachment_store=attachment_store,
    )


# ---------------------------------------------------------------------------
# Update / delete
# ---------------------------------------------------------------------------

async def update_revenue(
    store: RevenueStore, revenue_id: int, data: RevenueUpdate
) -> RevenueResult:
    revenue = await store.get_revenue(revenue_id, for_update=True)
    if revenue is None or revenue.is_deleted:
        raise NotFoundError("Revenue not found", field="revenue_id")
    sent = data.model_fields_set
    old_values = _snapshot(revenue)

    category = await _resolve_category(
        store, data.category_id if "category_id" in sent else revenue.category_id
    )
    status = await _resolve_status(
        store, data.payment_status_id if "payment_status_id" in sent else revenue.payment_status_id
    )
    method_id = data.payment_method_id if "payment_method_id" in sent else revenue.payment_method_id
    method = await _resolve_method(store, method_id)

    collection_date = revenue.collection_date
    if "collection_date" in sent and data.collection_date is not None:
        collection_date = check_collection_date_for_edit(data.collection_date, revenue.created_at)

    is_receivable = data.is_receivable if data.is_receivable is not None else revenue.is_receivable
    ar = check_receivable_fields(
        is_receivable,
        data.due_date if "due_date" in sent else revenue.due_date,
        data.payer_name if "payer_name" in sent else revenue.payer_name,
        data.interest_rate if "interest_rate" in sent else revenue.interest_rate,
        collection_date,
    )

    total = revenue.total_amount
    if "total_amount" in sent:
        if data.total_amount is None:
            raise ValidationError("total_amount must be a number", field="total_amount")
        total = safe_decimal(data.total_amount)

    check_payment_method_when_remitted(total, is_receivable, method.id if method else None, status.name)
    remarks = check_remarks(data.remarks) if "remarks" in sent else revenue.remarks

    trip = await store.get_assignment(revenue.assignment_id) if revenue.assignment_id else None
    if trip is not None:
        check_amount_against_trip(category.name, total, trip.trip_revenue)
    additional = _employee_shares(data.additional_employees)
    _check_additional_shares(category, trip, total, additional)

    key_changed = (
        category.id != revenue.category_id
        or as_utc(collection_date) != as_utc(revenue.collection_date)
        or (not revenue.assignment_id and total != revenue.total_amount)
    )
    if key_changed:
        await store.lock_key(_duplicate_key(category.id, collection_date, revenue.assignment_id, total))
        duplicate = await store.find_duplicate(
            category_id=category.id,
            collection_date=as_utc(collection_date),
            assignment_id=revenue.assignment_id,
            total_amount=total,
            exclude_id=revenue.id,
        )
        if duplicate is not None:
            raise ConflictError(
                f"Duplicate revenue transaction (existing {duplicate.revenue_code})",
                field="collection_date",
            )

    revenue.category_id = category.id
    revenue.payment_status_id = status.id
    revenue.payment_method_id = method.id if method else None
    revenue.collection_date = as_utc(collection_date)
    revenue.is_receivable = is_receivable
    revenue.due_date = ar.due_date
    revenue.payer_name = ar.payer_name
    revenue.interest_rate = ar.interest_rate
    revenue.total_amount = total
    revenue.remarks = remarks

    await revenue_ledger.recalculate(store, revenue)
    if category_key(category.name) != BOUNDARY:
        await shortage_loans.clear_loans(store, revenue.id)
    await shortage_loans.enforce_loan_cap(store, revenue.id)
    await store.commit()
    logger.info("Updated revenue %s", revenue.revenue_code)

    hooks: list[tuple[str, Hook]] = []
    if trip is not None and category_key(category.name) == BOUNDARY:
        hooks.append(("loan_generation", _loan_hook(store, revenue, trip, additional)))
    hooks.append(("audit", _audit_hook(store, revenue, "update", data.updated_by, old_values)))
    warnings = await _run_hooks(store, revenue, hooks)

    result = await get_revenue(store, revenue.id)
    result.warnings = warnings
    return result


async def delete_revenue(
    store: RevenueStore,
    revenue_id: int,
    attachment_store: Optional[AttachmentStore] = None,
    hard_delete_files: Optional[bool] = None,
    performed_by: Optional[str] = None,
) -> DeleteResult:
    """Soft delete; attachments follow.  Stored files go only when asked to."""
    revenue = await store.get_revenue(revenue_id, for_update=True)
    if revenue is None or revenue.is_deleted:
        raise NotFoundError("Revenue not found", field="revenue_id")

    attachments = await store.list_attachments(revenue.id)
    revenue.is_deleted = True
    count = await store.soft_delete_attachments(revenue.id)
    if revenue.bus_trip_id:
        trip = await store.get_bus_trip(revenue.bus_trip_id, revenue.assignment_id)
        if trip is not None:
            trip.is_revenue_recorded = False
    await store.commit()
    logger.info("Soft-deleted revenue %s with %d attachments", revenue.revenue_code, count)

    warnings: list[str] = []
    if hard_delete_files is None:
        hard_delete_files = settings.revenue_attachments_hard_delete
    if hard_delete_files and attachments:
        files = attachment_store or AttachmentStore()
        for attachment in attachments:
            try:
                files.delete(attachment.file_id)
            except (OSError, ValidationError) as exc:
                logger.warning("Could not delete file %s: %s", attachment.file_id, exc)
                warnings.append(f"file {attachment.original_name} not removed: {exc}")

    warnings += await _run_hooks(
        store, revenue, [("audit", _audit_hook(store, revenue, "delete", performed_by))]
    )
    return DeleteResult(revenue=revenue, attachments_deleted=count, warnings=warnings)


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------

async def get_revenue(
    store: RevenueStore, revenue_id: int, today: Optional[date] = None
) -> RevenueResult:
    revenue = await store.get_revenue(revenue_id)
    if revenue is None or revenue.is_deleted:
        raise NotFoundError("Revenue not found", field="revenue_id")

    category = await store.get_category(revenue.category_id)
    installments = await store.list_installments(revenue.id)
    loans = [
        LoanView(loan=loan, installments=await store.list_loan_installments(loan.id))
        for loan in await store.list_loans(revenue.id)
    ]

    boundary_loss = None
    if revenue.assignment_id and category is not None:
        trip = await store.get_assignment(revenue.assignment_id)
        if trip is not None:
            loss = get_boundary_loss_info(category.name, trip)
            boundary_loss = loss.loss_amount if loss.is_loss else None

    return RevenueResult(
        revenue=revenue,
        category=category,
        payment_method=(
            await store.get_payment_method(revenue.payment_method_id)
            if revenue.payment_method_id else None
        ),
        payment_status=await store.get_payment_status(revenue.payment_status_id),
        installments=installments,
        installment_display_status={
            i.id: revenue_ledger.effective_installment_status(i.status, i.due_date, today)
            for i in installments
        },
        payments=await store.list_payments(revenue.id),
        loans=loans,
        attachments=await store.list_attachments(revenue.id),
        boundary_loss=boundary_loss,
    )


def period_bounds(period: str, anchor: date) -> tuple[datetime, datetime]:
    """[start, end) of the Day/Month/Year containing *anchor*, in UTC."""
    key = period.strip().lower()
    if key == "day":
        start = date(anchor.year, anchor.month, anchor.day)
        end = start + timedelta(days=1)
    elif key == "month":
        start = date(anchor.year, anchor.month, 1)
        end = start + relativedelta(months=1)
    elif key == "year":
        start = date(anchor.year, 1, 1)
        end = start + relativedelta(years=1)
    else:
        raise ValidationError("period must be one of Day, Month, Year", field="period")
    return as_utc(start), as_utc(end)


def build_revenue_query(
    *,
    page: int = 1,
    limit: int = 20,
    period: Optional[str] = None,
    anchor: Optional[date] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    category_id: Optional[int] = None,
    payment_status_id: Optional[int] = None,
    is_receivable: Optional[bool] = None,
    search: Optional[str] = None,
    sort_by: str = "date",
    order: str = "desc",
) -> RevenueQuery:
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive", field="page")
    if sort_by not in ("code", "date", "amount"):
        raise ValidationError("sort_by must be one of code, date, amount", field="sort_by")

    start = end = None
    if period:
        start, end = period_bounds(period, anchor or datetime.now(timezone.utc).date())
    else:
        if date_from:
            start = as_utc(date_from)
        if date_to:
            end = as_utc(date_to + timedelta(days=1))
        if start and end and start >= end:
            raise ValidationError("date_from must not be after date_to", field="date_from")

    return RevenueQuery(
        page=page,
        limit=min(limit, 100),
        date_from=start,
        date_to=end,
        category_id=category_id,
        payment_status_id=payment_status_id,
        is_receivable=is_receivable,
        search=search.strip() if search else None,
        sort_by=sort_by,
        descending=order.lower() != "asc",
    )


async def list_revenues(
    store: RevenueStore, query: RevenueQuery
) -> tuple[list[RevenueResult], int]:
    rows, total = await store.list_revenues(query)
    categories: dict[int, Optional[RevenueCategory]] = {}
    statuses: dict[int, Optional[PaymentStatus]] = {}
    methods: dict[int, Optional[PaymentMethod]] = {}
    results: list[RevenueResult] = []
    for row in rows:
        if row.category_id not in categories:
            categories[row.category_id] = await store.get_category(row.category_id)
        if row.payment_status_id not in statuses:
            statuses[row.payment_status_id] = await store.get_payment_status(row.payment_status_id)
        if row.payment_method_id and row.payment_method_id not in methods:
            methods[row.payment_method_id] = await store.get_payment_method(row.payment_method_id)
        results.append(RevenueResult(
            revenue=row,
            category=categories[row.category_id],
            payment_status=statuses[row.payment_status_id],
            payment_method=methods.get(row.payment_method_id) if row.payment_method_id else None,
        ))
    return results, total


# ---------------------------------------------------------------------------
# System configuration
# ---------------------------------------------------------------------------

async def get_system_config(store: RevenueStore) -> shortage_loans.ShortageConfig:
    return await shortage_loans.load_config(store)


async def update_system_config(
    store: RevenueStore, data: SystemConfigUpdate
) -> shortage_loans.ShortageConfig:
    if data.driver_share_percentage + data.conductor_share_percentage != 100:
        raise ValidationError(
            "driver and conductor share percentages must add up to 100",
            field="driver_share_percentage",
        )
    frequency = InstallmentFrequency(data.default_frequency.lower()).value

    row = await store.get_system_config()
    if row is None:
        row = await store.add_system_config(SystemConfiguration(
            driver_share_percentage=data.driver_share_percentage,
            conductor_share_percentage=data.conductor_share_percentage,
            default_frequency=frequency,
            default_number_of_payments=data.default_number_of_payments,
            receivable_due_date_days=data.receivable_due_date_days,
            updated_by=data.updated_by,
        ))
    else:
        row.driver_share_percentage = data.driver_share_percentage
        row.conductor_share_percentage = data.conductor_share_percentage
        row.default_frequency = frequency
        row.default_number_of_payments = data.default_number_of_payments
        row.receivable_due_date_days = data.receivable_due_date_days
        row.updated_by = data.updated_by
    await store.commit()
    logger.info(
        "System configuration updated: %s/%s split, %s x %d",
        data.driver_share_percentage, data.conductor_share_percentage,
        frequency, data.default_number_of_payments,
    )
    return await shortage_loans.load_config(store)

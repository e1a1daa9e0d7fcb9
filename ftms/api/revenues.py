"""Revenue endpoints: create, query, update, delete, installments and payments."""

import logging
import math
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError
from slowapi import Limiter
from slowapi.util import get_remote_address

from ftms.api.deps import get_store, loan_response, revenue_detail, revenue_summary
from ftms.repository import RevenueStore
from ftms.schemas import (
    DeleteResponse,
    InstallmentBatchIn,
    InstallmentPaymentIn,
    InstallmentPaymentResponse,
    InstallmentResponse,
    LoanComputationResponse,
    LoanGenerateIn,
    LoanPreviewIn,
    PaymentBatchIn,
    PaymentBatchResponse,
    PaymentResponse,
    RevenueCreate,
    RevenueDetailResponse,
    RevenueResponse,
    RevenueUpdate,
    ShareResponse,
    ShortageSplitResponse,
)
from ftms.services import revenue_ledger, revenue_service, shortage_loans
from ftms.services.attachments import IncomingFile
from ftms.services.revenue_calc import EmployeeShare

logger = logging.getLogger(__name__)
router = APIRouter()
limiter = Limiter(key_func=get_remote_address)


def _shares(items) -> list[EmployeeShare]:
    return [
        EmployeeShare(role="other", amount=i.amount, name=i.name, employee_number=i.employee_number)
        for i in items
    ]


# ── Create ───────────────────────────────────────────────────

@router.post("", response_model=RevenueDetailResponse, status_code=201)
@limiter.limit("60/minute")
async def create_revenue(
    data: RevenueCreate,
    request: Request,
    response: Response,
    store: RevenueStore = Depends(get_store),
):
    result = await revenue_service.create_revenue(store, data)
    if not result.created:
        response.status_code = 200
    return revenue_detail(result)


@router.post("/with-attachments", response_model=RevenueDetailResponse, status_code=201)
@limiter.limit("30/minute")
async def create_revenue_with_attachments(
    request: Request,
    response: Response,
    payload: str = Form(...),
    files: list[UploadFile] = File(default=[]),
    store: RevenueStore = Depends(get_store),
):
    """Multipart create: ``payload`` is the JSON revenue body, ``files`` the attachments."""
    try:
        data = RevenueCreate.model_validate_json(payload)
    except PydanticValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc

    incoming = [
        IncomingFile(
            filename=upload.filename or "attachment",
            content=await upload.read(),
            mime_type=upload.content_type,
        )
        for upload in files
    ]
    result = await revenue_service.create_revenue(store, data, files=incoming)
    if not result.created:
        response.status_code = 200
    return revenue_detail(result)


# ── Query ────────────────────────────────────────────────────

@router.get("", response_model=list[RevenueResponse])
async def list_revenues(
    response: Response,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    period: Optional[str] = Query(None, description="Day, Month or Year"),
    anchor: Optional[date] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    category_id: Optional[int] = Query(None),
    payment_status_id: Optional[int] = Query(None),
    is_receivable: Optional[bool] = Query(None),
    search: Optional[str] = Query(None),
    sort_by: str = Query("date"),
    order: str = Query("desc"),
    store: RevenueStore = Depends(get_store),
):
    query = revenue_service.build_revenue_query(
        page=page, limit=limit, period=period, anchor=anchor,
        date_from=date_from, date_to=date_to,
        category_id=category_id, payment_status_id=payment_status_id,
        is_receivable=is_receivable, search=search,
        sort_by=sort_by, order=order,
    )
    results, total = await revenue_service.list_revenues(store, query)
    response.headers["X-Total-Count"] = str(total)
    response.headers["X-Page"] = str(query.page)
    response.headers["X-Limit"] = str(query.limit)
    response.headers["X-Total-Pages"] = str(math.ceil(total / query.limit) if total else 0)
    return [revenue_summary(r) for r in results]


# ── Shortage loan preview ────────────────────────────────────

@router.post("/loan/preview", response_model=ShortageSplitResponse)
async def preview_loan(data: LoanPreviewIn, store: RevenueStore = Depends(get_store)):
    split = await shortage_loans.preview_shortage_split(
        store,
        data.assignment_value,
        data.collected_amount,
        additional_employees=_shares(data.additional_employees),
        driver_share=data.driver_share,
        conductor_share=data.conductor_share,
    )
    return ShortageSplitResponse(
        shortfall=split.shortfall,
        driver=split.driver,
        conductor=split.conductor,
        additional=[
            ShareResponse(role=s.role, name=s.name, employee_number=s.employee_number, amount=s.amount)
            for s in split.additional
        ],
        total=split.total,
    )


# ── Installment payment ──────────────────────────────────────

@router.put("/installments/{installment_id}/pay", response_model=InstallmentPaymentResponse)
async def pay_installment(
    installment_id: int,
    data: InstallmentPaymentIn,
    store: RevenueStore = Depends(get_store),
):
    result = await revenue_ledger.record_installment_payment(
        store,
        installment_id,
        revenue_ledger.PaymentLine(
            amount=data.pay_amount,
            payment_method_id=data.payment_method_id,
            payment_status_id=data.payment_status_id,
            paid_date=data.paid_date,
            reference_number=data.reference_number,
            remarks=data.remarks,
        ),
    )
    await store.commit()
    return InstallmentPaymentResponse(
        installment=InstallmentResponse.model_validate(result.installment),
        payment=PaymentResponse.model_validate(result.payments[0]),
        outstanding_balance=result.revenue.outstanding_balance,
        payment_status_id=result.revenue.payment_status_id,
    )


# ── Single record ────────────────────────────────────────────

@router.get("/{revenue_code}", response_model=RevenueDetailResponse)
async def get_revenue(revenue_code: str, store: RevenueStore = Depends(get_store)):
    revenue_id = await revenue_service.resolve_revenue_id(store, revenue_code)
    return revenue_detail(await revenue_service.get_revenue(store, revenue_id))


@router.put("/{revenue_code}", response_model=RevenueDetailResponse)
async def update_revenue(
    revenue_code: str,
    data: RevenueUpdate,
    store: RevenueStore = Depends(get_store),
):
    revenue_id = await revenue_service.resolve_revenue_id(store, revenue_code)
    return revenue_detail(await revenue_service.update_revenue(store, revenue_id, data))


@router.delete("/{revenue_code}", response_model=DeleteResponse)
async def delete_revenue(
    revenue_code: str,
    deleted_by: Optional[str] = Query(None, max_length=100),
    store: RevenueStore = Depends(get_store),
):
    revenue_id = await revenue_service.resolve_revenue_id(store, revenue_code)
    result = await revenue_service.delete_revenue(store, revenue_id, performed_by=deleted_by)
    return DeleteResponse(
        revenue_code=result.revenue.revenue_code,
        attachments_deleted=result.attachments_deleted,
        warnings=result.warnings,
    )


# ── Installments / payments ──────────────────────────────────

@router.post(
    "/{revenue_code}/installments", response_model=list[InstallmentResponse], status_code=201
)
async def add_installments(
    revenue_code: str,
    data: InstallmentBatchIn,
    store: RevenueStore = Depends(get_store),
):
    revenue_id = await revenue_service.resolve_revenue_id(store, revenue_code)
    created = await revenue_ledger.add_installments(store, revenue_id, data.installments)
    await store.commit()
    return [InstallmentResponse.model_validate(i) for i in created]


@router.get("/{revenue_code}/payments", response_model=list[PaymentResponse])
async def list_payments(revenue_code: str, store: RevenueStore = Depends(get_store)):
    revenue_id = await revenue_service.resolve_revenue_id(store, revenue_code)
    payments = await revenue_ledger.list_payments(store, revenue_id)
    return [PaymentResponse.model_validate(p) for p in payments]


@router.post("/{revenue_code}/payments", response_model=PaymentBatchResponse, status_code=201)
async def record_payments(
    revenue_code: str,
    data: PaymentBatchIn,
    store: RevenueStore = Depends(get_store),
):
    revenue_id = await revenue_service.resolve_revenue_id(store, revenue_code)
    lines = [
        revenue_ledger.PaymentLine(**line.model_dump()) for line in data.payments
    ]
    result = await revenue_ledger.record_payments(store, revenue_id, lines)
    await store.commit()
    return PaymentBatchResponse(
        payments=[PaymentResponse.model_validate(p) for p in result.payments],
        outstanding_balance=result.revenue.outstanding_balance,
        payment_status_id=result.revenue.payment_status_id,
    )


# ── Shortage loan generation ─────────────────────────────────

@router.post("/{revenue_code}/loan/generate", response_model=LoanComputationResponse)
async def generate_loan(
    revenue_code: str,
    data: Optional[LoanGenerateIn] = None,
    store: RevenueStore = Depends(get_store),
):
    revenue_id = await revenue_service.resolve_revenue_id(store, revenue_code)
    computation = await shortage_loans.generate_loan(
        store, revenue_id, _shares(data.additional_employees if data else [])
    )
    await store.commit()
    loans = [
        loan_response(loan, await store.list_loan_installments(loan.id))
        for loan in computation.loans
    ]
    return LoanComputationResponse(
        applied=computation.applied,
        reason=computation.reason,
        shortfall=computation.shortfall,
        loans=loans,
    )

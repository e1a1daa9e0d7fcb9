"""Pydantic schemas for request/response validation."""

from datetime import datetime, date
from decimal import Decimal
from typing import Optional, Literal
from pydantic import BaseModel, Field, model_validator
from pydantic_core import PydanticCustomError

from ftms.models.error_log import ErrorSeverity
from ftms.models.loan import EmployeeRole, LoanStatus
from ftms.models.revenue import InstallmentStatus


# ── Revenue input ─────────────────────────────────────

class InstallmentLineIn(BaseModel):
    due_date: date
    amount_due: Decimal = Field(gt=0)


class AdditionalEmployeeIn(BaseModel):
    """Extra crew member carrying a manually entered share of a shortage."""
    name: str = Field(min_length=1, max_length=150)
    employee_number: Optional[str] = Field(None, max_length=20)
    amount: Decimal = Field(ge=0)


class RevenueCreate(BaseModel):
    category_id: Optional[int] = None
    total_amount: Optional[Decimal] = Field(None, ge=0)
    collection_date: Optional[datetime] = None
    payment_method_id: Optional[int] = None
    payment_status_id: Optional[int] = None
    assignment_id: Optional[str] = Field(None, max_length=50)
    bus_trip_id: Optional[str] = Field(None, max_length=50)
    remarks: str = ""
    is_receivable: bool = False
    due_date: Optional[date] = None
    payer_name: Optional[str] = Field(None, max_length=150)
    interest_rate: Optional[Decimal] = None
    installments: list[InstallmentLineIn] = []
    additional_employees: list[AdditionalEmployeeIn] = []
    source_ref: Optional[str] = Field(None, max_length=100)
    created_by: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="after")
    def _check_source(self) -> "RevenueCreate":
        if not self.bus_trip_id:
            for name in ("category_id", "total_amount", "collection_date", "payment_status_id"):
                if getattr(self, name) is None:
                    raise PydanticCustomError(
                        "missing_field", "{field} is required", {"field": name}
                    )
        return self


class RevenueUpdate(BaseModel):
    """Partial update; only fields that are sent are applied."""
    category_id: Optional[int] = None
    total_amount: Optional[Decimal] = Field(None, ge=0)
    collection_date: Optional[datetime] = None
    payment_method_id: Optional[int] = None
    payment_status_id: Optional[int] = None
    remarks: Optional[str] = None
    is_receivable: Optional[bool] = None
    due_date: Optional[date] = None
    payer_name: Optional[str] = Field(None, max_length=150)
    interest_rate: Optional[Decimal] = None
    additional_employees: Optional[list[AdditionalEmployeeIn]] = None
    updated_by: Optional[str] = Field(None, max_length=100)


class InstallmentBatchIn(BaseModel):
    installments: list[InstallmentLineIn] = Field(min_length=1)


class PaymentLineIn(BaseModel):
    amount: Decimal
    payment_method_id: Optional[int] = None
    payment_status_id: Optional[int] = None
    installment_id: Optional[int] = None
    paid_date: Optional[datetime] = None
    reference_number: Optional[str] = Field(None, max_length=50)
    remarks: Optional[str] = None


class PaymentBatchIn(BaseModel):
    payments: list[PaymentLineIn] = Field(min_length=1)


class InstallmentPaymentIn(BaseModel):
    pay_amount: Decimal
    payment_method_id: Optional[int] = None
    payment_status_id: Optional[int] = None
    paid_date: Optional[datetime] = None
    reference_number: Optional[str] = Field(None, max_length=50)
    remarks: Optional[str] = None


# ── Revenue output ────────────────────────────────────

class InstallmentResponse(BaseModel):
    id: int
    installment_number: int
    due_date: date
    amount_due: Decimal
    amount_paid: Decimal
    status: InstallmentStatus
    payment_method_id: Optional[int] = None
    payment_status_id: Optional[int] = None

    model_config = {"from_attributes": True}


class PaymentResponse(BaseModel):
    id: int
    revenue_id: int
    installment_id: Optional[int] = None
    amount: Decimal
    payment_method_id: int
    payment_status_id: int
    paid_date: datetime
    reference_number: Optional[str] = None
    remarks: Optional[str] = None

    model_config = {"from_attributes": True}


class AttachmentResponse(BaseModel):
    id: int
    file_id: str
    original_name: str
    mime_type: Optional[str] = None
    size_bytes: int
    uploaded_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class LoanInstallmentResponse(BaseModel):
    id: int
    installment_number: int
    due_date: date
    amount_due: Decimal
    amount_paid: Decimal
    status: InstallmentStatus

    model_config = {"from_attributes": True}


class LoanResponse(BaseModel):
    id: int
    revenue_id: int
    employee_role: EmployeeRole
    employee_name: Optional[str] = None
    employee_number: Optional[str] = None
    assignment_value: Decimal
    trip_revenue: Decimal
    collected_amount: Decimal
    shortfall: Decimal
    amount: Decimal
    paid_amount: Decimal
    balance: Decimal
    status: LoanStatus
    frequency: str
    number_of_payments: int
    start_date: date
    due_date: Optional[date] = None
    installments: list[LoanInstallmentResponse] = []

    model_config = {"from_attributes": True}


class RevenueResponse(BaseModel):
    id: int
    revenue_code: str
    assignment_id: Optional[str] = None
    bus_trip_id: Optional[str] = None
    category_id: int
    category_name: Optional[str] = None
    total_amount: Decimal
    collection_date: datetime
    payment_method_id: Optional[int] = None
    payment_method_name: Optional[str] = None
    payment_status_id: int
    payment_status_name: Optional[str] = None
    is_receivable: bool
    due_date: Optional[date] = None
    payer_name: Optional[str] = None
    interest_rate: Optional[Decimal] = None
    outstanding_balance: Decimal
    remarks: str
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RevenueDetailResponse(RevenueResponse):
    boundary_loss: Optional[Decimal] = None
    installments: list[InstallmentResponse] = []
    payments: list[PaymentResponse] = []
    loans: list[LoanResponse] = []
    attachments: list[AttachmentResponse] = []
    warnings: list[str] = []


class PaymentBatchResponse(BaseModel):
    payments: list[PaymentResponse]
    outstanding_balance: Decimal
    payment_status_id: int


class InstallmentPaymentResponse(BaseModel):
    installment: InstallmentResponse
    payment: PaymentResponse
    outstanding_balance: Decimal
    payment_status_id: int


class DeleteResponse(BaseModel):
    revenue_code: str
    deleted: bool = True
    attachments_deleted: int = 0
    warnings: list[str] = []


# ── Shortage loans ────────────────────────────────────

class LoanGenerateIn(BaseModel):
    additional_employees: list[AdditionalEmployeeIn] = []


class LoanPreviewIn(BaseModel):
    assignment_value: Decimal = Field(ge=0)
    collected_amount: Decimal = Field(ge=0)
    driver_share: Optional[Decimal] = Field(None, ge=0)
    conductor_share: Optional[Decimal] = Field(None, ge=0)
    additional_employees: list[AdditionalEmployeeIn] = []


class ShareResponse(BaseModel):
    role: str
    name: Optional[str] = None
    employee_number: Optional[str] = None
    amount: Decimal


class ShortageSplitResponse(BaseModel):
    shortfall: Decimal
    driver: Decimal
    conductor: Decimal
    additional: list[ShareResponse] = []
    total: Decimal


class LoanComputationResponse(BaseModel):
    applied: bool
    reason: Optional[str] = None
    shortfall: Decimal
    loans: list[LoanResponse] = []


class LoanPaymentIn(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_method_id: int
    paid_date: Optional[date] = None
    reference_number: Optional[str] = Field(None, max_length=50)
    remarks: Optional[str] = None


class LoanPaymentResponse(BaseModel):
    loan: LoanResponse
    installment: LoanInstallmentResponse
    payment_id: int
    amount: Decimal


# ── Bus trips ─────────────────────────────────────────

class BusTripResponse(BaseModel):
    id: int
    assignment_id: str
    bus_trip_id: str
    bus_plate_number: Optional[str] = None
    bus_route: Optional[str] = None
    assignment_type: Optional[str] = None
    assignment_value: Optional[Decimal] = None
    trip_revenue: Optional[Decimal] = None
    trip_fuel_expense: Optional[Decimal] = None
    date_assigned: Optional[datetime] = None
    driver_name: Optional[str] = None
    conductor_name: Optional[str] = None
    expected_remittance: Decimal
    boundary_loss: Decimal

    model_config = {"from_attributes": True}


class BusTripRefreshResponse(BaseModel):
    fetched: int
    created: int
    updated: int


# ── System configuration ──────────────────────────────

class SystemConfigResponse(BaseModel):
    driver_share_percentage: Decimal
    conductor_share_percentage: Decimal
    default_frequency: str
    default_number_of_payments: int
    receivable_due_date_days: int
    is_default: bool = False

    model_config = {"from_attributes": True}


class SystemConfigUpdate(BaseModel):
    driver_share_percentage: Decimal = Field(ge=0, le=100)
    conductor_share_percentage: Decimal = Field(ge=0, le=100)
    default_frequency: Literal["daily", "weekly", "biweekly", "monthly"] = "weekly"
    default_number_of_payments: int = Field(ge=1, le=365)
    receivable_due_date_days: int = Field(7, ge=0, le=365)
    updated_by: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="before")
    @classmethod
    def _lowercase_frequency(cls, data):
        if isinstance(data, dict) and isinstance(data.get("default_frequency"), str):
            data = {**data, "default_frequency": data["default_frequency"].lower()}
        return data

    @model_validator(mode="after")
    def _check_shares(self) -> "SystemConfigUpdate":
        if self.driver_share_percentage + self.conductor_share_percentage != 100:
            raise ValueError("driver and conductor share percentages must add up to 100")
        return self


# ── Error logs ────────────────────────────────────────

class ErrorLogResponse(BaseModel):
    id: int
    severity: ErrorSeverity
    error_type: str
    message: str
    module: Optional[str] = None
    function_name: Optional[str] = None
    request_method: Optional[str] = None
    request_path: Optional[str] = None
    status_code: Optional[int] = None
    revenue_code: Optional[str] = None
    resolved: bool
    created_at: datetime

    model_config = {"from_attributes": True}
